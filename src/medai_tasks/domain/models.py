from __future__ import annotations

from enum import Enum

from medai_tasks.domain.errors import InvalidTransitionError


class TaskStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


TASK_STATUS_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.RUNNING}),
    TaskStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


def _coerce_status(value: str | TaskStatus) -> TaskStatus | None:
    if isinstance(value, TaskStatus):
        return value
    text = str(value or '').strip().lower()
    try:
        return TaskStatus(text)
    except ValueError:
        return None


def is_valid_transition(current: str | TaskStatus, target: str | TaskStatus) -> bool:
    """Return True only for edges listed in ``TASK_STATUS_TRANSITIONS``.

    Unknown statuses and self-transitions are rejected.
    """
    source = _coerce_status(current)
    destination = _coerce_status(target)
    if source is None or destination is None:
        return False
    return destination in TASK_STATUS_TRANSITIONS[source]


def ensure_transition(task_id: str, current: str | TaskStatus, target: str | TaskStatus) -> None:
    if not is_valid_transition(current, target):
        source = _coerce_status(current)
        destination = _coerce_status(target)
        raise InvalidTransitionError(
            task_id,
            current=source.value if source else str(current),
            target=destination.value if destination else str(target),
        )


def is_terminal(status: str | TaskStatus) -> bool:
    return _coerce_status(status) in TERMINAL_STATUSES
