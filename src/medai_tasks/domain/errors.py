from __future__ import annotations


class TaskEngineError(Exception):
    code = 'task_engine_error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PreconditionError(TaskEngineError):
    """Raised by ``enqueue`` when the order or service configuration cannot be used."""

    code = 'precondition_failed'

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class TaskNotFoundError(TaskEngineError):
    code = 'task_not_found'

    def __init__(self, task_id: str):
        super().__init__(f"task '{task_id}' was not found")
        self.task_id = task_id


class InvalidTransitionError(TaskEngineError):
    code = 'invalid_transition'

    def __init__(self, task_id: str, *, current: str, target: str, message: str | None = None):
        super().__init__(message or f'task {task_id} cannot move from {current} to {target}')
        self.task_id = task_id
        self.current = current
        self.target = target


class RetryLimitExceededError(InvalidTransitionError):
    code = 'max_retries_reached'

    def __init__(self, task_id: str, *, current: str, retry_count: int, max_retries: int):
        super().__init__(
            task_id,
            current=current,
            target='pending',
            message=f'max retries reached for task {task_id}: {retry_count}/{max_retries}',
        )
        self.retry_count = retry_count
        self.max_retries = max_retries


class WorkflowClientError(TaskEngineError):
    """Base class for failures talking to the remote workflow application.

    ``retryable`` decides whether the transport retry loop tries again.
    """

    code = 'internal_error'
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: object = None,
    ):
        super().__init__(message)
        if code:
            self.code = code
        self.status_code = status_code
        self.details = details


class ValidationError(WorkflowClientError):
    code = 'invalid_parameters'
    retryable = False


class InvalidCredentialsError(WorkflowClientError):
    code = 'invalid_api_key'
    retryable = False


class RemoteNotFoundError(WorkflowClientError):
    code = 'workflow_not_found'
    retryable = False


class ExecutionError(WorkflowClientError):
    code = 'execution_failed'
    retryable = False


class NetworkError(WorkflowClientError):
    code = 'network_error'


class RemoteTimeoutError(NetworkError):
    code = 'timeout'


class RateLimitError(NetworkError):
    code = 'rate_limit_exceeded'


class RemoteServerError(NetworkError):
    code = 'internal_error'
