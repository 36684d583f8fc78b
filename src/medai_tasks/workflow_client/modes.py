"""Request/response shapes for each remote application mode.

A mode protocol knows which endpoint to call, how to build the request body,
how to read a blocking response and how to fold a stream of events into a
final :class:`ExecutionResult`. HTTP, retries and error mapping stay in
:mod:`medai_tasks.workflow_client.client`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Mapping

from medai_tasks.domain.errors import ExecutionError, ValidationError
from medai_tasks.workflow_client.base import (
    ApplicationMode,
    ExecutionResult,
    StreamEvent,
    usage_from_metadata,
)

# Keys a caller may pass at the top level of the inputs to shape a chat or
# completion request instead of supplying bare form variables.
_ENVELOPE_KEYS = frozenset({'query', 'inputs', 'conversation_id', 'files', 'auto_generate_name'})


def _float_or_none(value: object) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _int_or_none(value: object) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def render_query(inputs: Mapping[str, object]) -> str:
    return '\n'.join(f'{key}: {value}' for key, value in inputs.items())


def _split_envelope(inputs: Mapping[str, object]) -> tuple[dict, dict]:
    envelope = {k: v for k, v in inputs.items() if k in _ENVELOPE_KEYS}
    nested = envelope.get('inputs')
    if isinstance(nested, dict):
        form = dict(nested)
    else:
        form = {k: v for k, v in inputs.items() if k not in _ENVELOPE_KEYS}
    return envelope, form


class StreamAccumulator:
    """Mutable scratchpad while a stream is being consumed."""

    def __init__(self):
        self.task_id: str | None = None
        self.run_id: str | None = None
        self.conversation_id: str | None = None
        self.chunks: list[str] = []

    def observe_ids(self, event: StreamEvent) -> None:
        if event.task_id and not self.task_id:
            self.task_id = event.task_id
        if event.run_id and not self.run_id:
            self.run_id = event.run_id
        conversation_id = event.raw.get('conversation_id')
        if conversation_id and not self.conversation_id:
            self.conversation_id = str(conversation_id)


class ModeProtocol(ABC):
    mode: ApplicationMode
    endpoint: str
    terminal_event: str
    supports_blocking = True

    def request_path(self) -> str:
        return self.endpoint

    def stop_path(self, remote_execution_id: str) -> str:
        return f'{self.endpoint}/{remote_execution_id}/stop'

    @abstractmethod
    def build_request(
        self,
        inputs: Mapping[str, object],
        *,
        user: str,
        response_mode: str,
        conversation_id: str | None = None,
        files: list[dict] | None = None,
    ) -> dict:
        raise NotImplementedError

    @abstractmethod
    def parse_blocking(self, body: Mapping[str, object]) -> ExecutionResult:
        raise NotImplementedError

    def consume_event(self, state: StreamAccumulator, event: StreamEvent) -> ExecutionResult | None:
        """Fold one event into *state*; return the final result on the terminal event."""
        state.observe_ids(event)
        if event.event == 'error':
            raise ExecutionError(
                str(event.raw.get('message') or 'remote stream reported an error'),
                code=str(event.raw.get('code') or '') or None,
                status_code=_int_or_none(event.raw.get('status')),
                details=event.raw,
            )
        return self._consume(state, event)

    @abstractmethod
    def _consume(self, state: StreamAccumulator, event: StreamEvent) -> ExecutionResult | None:
        raise NotImplementedError


class WorkflowProtocol(ModeProtocol):
    mode = ApplicationMode.WORKFLOW
    endpoint = '/workflows/run'
    terminal_event = 'workflow_finished'

    def stop_path(self, remote_execution_id: str) -> str:
        return f'/workflows/tasks/{remote_execution_id}/stop'

    def build_request(self, inputs, *, user, response_mode, conversation_id=None, files=None) -> dict:
        body: dict[str, object] = {
            'inputs': dict(inputs),
            'response_mode': response_mode,
            'user': user,
            'files': list(files or []),
        }
        if conversation_id:
            body['conversation_id'] = conversation_id
        return body

    def parse_blocking(self, body: Mapping[str, object]) -> ExecutionResult:
        data = body.get('data') if isinstance(body.get('data'), dict) else {}
        return self._result_from_run(
            run_id=body.get('workflow_run_id') or data.get('id'),
            task_id=body.get('task_id'),
            data=data,
        )

    def _consume(self, state: StreamAccumulator, event: StreamEvent) -> ExecutionResult | None:
        if event.event != self.terminal_event:
            return None
        return self._result_from_run(
            run_id=state.run_id or event.data.get('id'),
            task_id=state.task_id,
            data=event.data,
        )

    def _result_from_run(self, *, run_id, task_id, data: Mapping[str, object]) -> ExecutionResult:
        status = str(data.get('status') or 'succeeded')
        if status in {'failed', 'stopped'}:
            raise ExecutionError(
                str(data.get('error') or f'workflow run {status}'),
                details=dict(data),
            )
        usage = usage_from_metadata(data.get('metadata'))
        outputs = data.get('outputs')
        return ExecutionResult(
            id=str(run_id) if run_id else None,
            task_id=str(task_id) if task_id else None,
            mode=self.mode.value,
            status=status,
            outputs=dict(outputs) if isinstance(outputs, dict) else {},
            error=data.get('error') or None,
            total_tokens=_int_or_none(data.get('total_tokens') or usage.get('total_tokens')),
            total_price=usage.get('total_price'),
            currency=usage.get('currency'),
            latency=_float_or_none(data.get('elapsed_time')),
        )


class ChatProtocol(ModeProtocol):
    endpoint = '/chat-messages'
    terminal_event = 'message_end'
    _ANSWER_EVENTS = frozenset({'message', 'agent_message'})

    def __init__(self, mode: ApplicationMode = ApplicationMode.CHAT):
        self.mode = mode
        # Agent apps only answer over a stream.
        self.supports_blocking = mode != ApplicationMode.AGENT_CHAT

    def build_request(self, inputs, *, user, response_mode, conversation_id=None, files=None) -> dict:
        envelope, form = _split_envelope(inputs)
        query = envelope.get('query')
        if query is None or not str(query).strip():
            query = render_query(form)
        if not str(query).strip():
            raise ValidationError('chat applications need a non-empty query', details={'field': 'query'})
        return {
            'query': str(query),
            'inputs': form,
            'response_mode': response_mode,
            'user': user,
            'conversation_id': conversation_id or envelope.get('conversation_id') or '',
            'files': list(files or envelope.get('files') or []),
            'auto_generate_name': bool(envelope.get('auto_generate_name', False)),
        }

    def parse_blocking(self, body: Mapping[str, object]) -> ExecutionResult:
        usage = usage_from_metadata(body.get('metadata'))
        message_id = body.get('message_id') or body.get('id')
        return ExecutionResult(
            id=str(message_id) if message_id else None,
            task_id=str(body.get('task_id')) if body.get('task_id') else None,
            mode=self.mode.value,
            status='succeeded',
            answer=str(body.get('answer') or ''),
            total_tokens=_int_or_none(usage.get('total_tokens')),
            total_price=usage.get('total_price'),
            currency=usage.get('currency'),
            latency=_float_or_none(usage.get('latency')),
            conversation_id=body.get('conversation_id') or None,
            message_id=str(message_id) if message_id else None,
        )

    def _consume(self, state: StreamAccumulator, event: StreamEvent) -> ExecutionResult | None:
        if event.event in self._ANSWER_EVENTS:
            state.chunks.append(str(event.raw.get('answer') or ''))
            return None
        if event.event != self.terminal_event:
            return None
        usage = usage_from_metadata(event.raw.get('metadata'))
        return ExecutionResult(
            id=state.run_id,
            task_id=state.task_id,
            mode=self.mode.value,
            status='succeeded',
            answer=''.join(state.chunks),
            total_tokens=_int_or_none(usage.get('total_tokens')),
            total_price=usage.get('total_price'),
            currency=usage.get('currency'),
            latency=_float_or_none(usage.get('latency')),
            conversation_id=state.conversation_id,
            message_id=state.run_id,
        )


class CompletionProtocol(ModeProtocol):
    mode = ApplicationMode.COMPLETION
    endpoint = '/completion-messages'
    terminal_event = 'message_end'

    def build_request(self, inputs, *, user, response_mode, conversation_id=None, files=None) -> dict:
        envelope, form = _split_envelope(inputs)
        return {
            'inputs': form,
            'response_mode': response_mode,
            'user': user,
            'files': list(files or envelope.get('files') or []),
        }

    def parse_blocking(self, body: Mapping[str, object]) -> ExecutionResult:
        usage = usage_from_metadata(body.get('metadata'))
        message_id = body.get('message_id') or body.get('id')
        return ExecutionResult(
            id=str(message_id) if message_id else None,
            task_id=str(body.get('task_id')) if body.get('task_id') else None,
            mode=self.mode.value,
            status='succeeded',
            answer=str(body.get('answer') or ''),
            total_tokens=_int_or_none(usage.get('total_tokens')),
            total_price=usage.get('total_price'),
            currency=usage.get('currency'),
            latency=_float_or_none(usage.get('latency')),
            message_id=str(message_id) if message_id else None,
        )

    def _consume(self, state: StreamAccumulator, event: StreamEvent) -> ExecutionResult | None:
        if event.event == 'message':
            state.chunks.append(str(event.raw.get('answer') or ''))
            return None
        if event.event != self.terminal_event:
            return None
        usage = usage_from_metadata(event.raw.get('metadata'))
        return ExecutionResult(
            id=state.run_id,
            task_id=state.task_id,
            mode=self.mode.value,
            status='succeeded',
            answer=''.join(state.chunks),
            total_tokens=_int_or_none(usage.get('total_tokens')),
            latency=_float_or_none(usage.get('latency')),
            message_id=state.run_id,
        )


def protocol_for(mode: ApplicationMode) -> ModeProtocol:
    if mode == ApplicationMode.WORKFLOW:
        return WorkflowProtocol()
    if mode in {ApplicationMode.CHAT, ApplicationMode.ADVANCED_CHAT, ApplicationMode.AGENT_CHAT}:
        return ChatProtocol(mode)
    if mode == ApplicationMode.COMPLETION:
        return CompletionProtocol()
    raise ValidationError(f'unsupported application mode: {mode}')
