from medai_tasks.domain.errors import (
    ExecutionError,
    InvalidCredentialsError,
    InvalidTransitionError,
    NetworkError,
    PreconditionError,
    RateLimitError,
    RemoteNotFoundError,
    RemoteServerError,
    RemoteTimeoutError,
    RetryLimitExceededError,
    TaskEngineError,
    TaskNotFoundError,
    ValidationError,
    WorkflowClientError,
)
from medai_tasks.domain.events import EventType, normalize_event_type
from medai_tasks.domain.models import (
    TASK_STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    TaskStatus,
    ensure_transition,
    is_terminal,
    is_valid_transition,
)

__all__ = [
    'EventType',
    'ExecutionError',
    'InvalidCredentialsError',
    'InvalidTransitionError',
    'NetworkError',
    'PreconditionError',
    'RateLimitError',
    'RemoteNotFoundError',
    'RemoteServerError',
    'RemoteTimeoutError',
    'RetryLimitExceededError',
    'TASK_STATUS_TRANSITIONS',
    'TERMINAL_STATUSES',
    'TaskEngineError',
    'TaskNotFoundError',
    'TaskStatus',
    'ValidationError',
    'WorkflowClientError',
    'ensure_transition',
    'is_terminal',
    'is_valid_transition',
    'normalize_event_type',
]
