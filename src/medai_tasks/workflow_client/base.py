from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
from typing import Callable, Iterable, Iterator, Mapping


class ApplicationMode(str, Enum):
    WORKFLOW = 'workflow'
    ADVANCED_CHAT = 'advanced-chat'
    CHAT = 'chat'
    AGENT_CHAT = 'agent-chat'
    COMPLETION = 'completion'


def normalize_mode(value: str | ApplicationMode | None) -> ApplicationMode | None:
    if isinstance(value, ApplicationMode):
        return value
    text = str(value or '').strip().lower()
    for mode in ApplicationMode:
        if mode.value == text:
            return mode
    return None


DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class DifyConfig:
    base_url: str
    api_key: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS

    @property
    def normalized_base_url(self) -> str:
        return str(self.base_url or '').strip().rstrip('/')


@dataclass(frozen=True)
class InputValidationResult:
    is_valid: bool
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class StreamEvent:
    event: str
    task_id: str | None = None
    run_id: str | None = None
    data: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one remote run, flattened across application modes.

    ``id`` is the workflow run id or message id; ``task_id`` is the handle
    the remote stop endpoint accepts.
    """

    id: str | None
    mode: str
    status: str
    task_id: str | None = None
    outputs: dict | None = None
    answer: str | None = None
    text: str | None = None
    error: str | None = None
    total_tokens: int | None = None
    total_price: str | None = None
    currency: str | None = None
    latency: float | None = None
    conversation_id: str | None = None
    message_id: str | None = None

    @property
    def remote_execution_id(self) -> str | None:
        return self.task_id or self.id

    def output_payload(self) -> dict:
        if self.outputs is not None:
            return dict(self.outputs)
        payload: dict[str, object] = {}
        if self.answer is not None:
            payload['answer'] = self.answer
        if self.text is not None:
            payload['text'] = self.text
        return payload


StreamCallback = Callable[[StreamEvent], None]


def iter_sse_payloads(lines: Iterable[str]) -> Iterator[dict]:
    """Yield the JSON body of each ``data: {...}`` line, skipping anything else."""
    for raw in lines:
        line = str(raw or '').strip()
        if not line.startswith('data:'):
            continue
        body = line[len('data:'):].strip()
        if not body:
            continue
        try:
            parsed = json.loads(body)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            yield parsed


def to_stream_event(payload: Mapping[str, object]) -> StreamEvent:
    data = payload.get('data')
    return StreamEvent(
        event=str(payload.get('event') or ''),
        task_id=_opt_str(payload.get('task_id')),
        run_id=_opt_str(payload.get('workflow_run_id') or payload.get('message_id')),
        data=dict(data) if isinstance(data, dict) else {},
        raw=dict(payload),
    )


def _opt_str(value: object) -> str | None:
    text = str(value or '').strip()
    return text or None


def usage_from_metadata(metadata: object) -> dict:
    if not isinstance(metadata, dict):
        return {}
    usage = metadata.get('usage')
    return dict(usage) if isinstance(usage, dict) else {}
