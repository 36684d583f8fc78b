from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    TASK_CANCELLED = 'task_cancelled'
    TASK_COMPLETED = 'task_completed'
    TASK_CREATED = 'task_created'
    TASK_FAILED = 'task_failed'
    TASK_RETRIED = 'task_retried'
    TASK_STARTED = 'task_started'
    REMOTE_ACCEPTED = 'remote_accepted'
    REMOTE_STOP_FAILED = 'remote_stop_failed'
    RESULT_DISCARDED = 'result_discarded'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text
