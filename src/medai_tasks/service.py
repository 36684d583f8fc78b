from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from medai_tasks.collaborators import OrderDirectory, ServiceConfig, ServiceConfigDirectory
from medai_tasks.domain.errors import (
    InvalidTransitionError,
    PreconditionError,
    RetryLimitExceededError,
    TaskNotFoundError,
)
from medai_tasks.domain.events import EventType
from medai_tasks.domain.models import TaskStatus, ensure_transition, is_terminal
from medai_tasks.executor import TaskExecutor
from medai_tasks.notifier import RealtimeNotifier
from medai_tasks.observability import get_logger, get_tracer, set_task_context, span
from medai_tasks.repository import TaskCreateRecord, TaskFilters, TaskRepository, parse_iso_datetime
from medai_tasks.workflow_client import ExecutionResult, StreamEvent, WorkflowClientFactory

_log = get_logger('medai_tasks.service')
_tracer = get_tracer('medai_tasks.service')

DEFAULT_MAX_RETRIES = 3
RESPONSE_MODES = ('blocking', 'streaming')

# Running tasks approach 80% over five minutes; the rest is reserved for completion.
_PROGRESS_WINDOW_SECONDS = 300
_PROGRESS_RUNNING_CAP = 80
_PROGRESS_RUNNING_UNKNOWN = 10


@dataclass(frozen=True)
class TaskView:
    task_id: str
    order_id: str
    service_id: str
    status: TaskStatus
    remote_execution_id: str | None
    input_data: dict
    output_data: dict | None
    error_message: str | None
    retry_count: int
    execution_time: int | None
    started_at: str | None
    completed_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class TaskPage:
    items: list[TaskView]
    total: int
    page: int
    limit: int


@dataclass(frozen=True)
class StatsView:
    total_tasks: int
    status_counts: dict[str, int]
    average_execution_time: float
    success_rate: float


def task_progress(view: TaskView, *, now: datetime | None = None) -> int:
    """Coarse 0-100 progress figure for display; remote apps report none."""
    status = view.status
    if status == TaskStatus.PENDING:
        return 0
    if status == TaskStatus.RUNNING:
        started = parse_iso_datetime(view.started_at)
        if started is None:
            return _PROGRESS_RUNNING_UNKNOWN
        current = now or datetime.now(timezone.utc)
        elapsed = max(0.0, (current - started).total_seconds())
        return int(min(elapsed / _PROGRESS_WINDOW_SECONDS * _PROGRESS_RUNNING_CAP, _PROGRESS_RUNNING_CAP))
    if status == TaskStatus.COMPLETED:
        return 100
    return 100 if view.execution_time is not None else 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_seconds(started_at: object, finished: datetime) -> int | None:
    started = parse_iso_datetime(started_at)
    if started is None:
        return None
    return max(0, int(round((finished - started).total_seconds())))


class OrchestratorService:
    def __init__(
        self,
        *,
        repository: TaskRepository,
        orders: OrderDirectory,
        service_configs: ServiceConfigDirectory,
        client_factory: WorkflowClientFactory,
        notifier: RealtimeNotifier,
        executor: TaskExecutor,
        max_retries: int = DEFAULT_MAX_RETRIES,
        response_mode: str = 'blocking',
        database_probe: Callable[[], bool] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        mode = str(response_mode or 'blocking').strip().lower()
        if mode not in RESPONSE_MODES:
            raise ValueError(f'response_mode must be one of {RESPONSE_MODES}, got {response_mode!r}')
        self.repository = repository
        self.orders = orders
        self.service_configs = service_configs
        self.client_factory = client_factory
        self.notifier = notifier
        self.executor = executor
        self.max_retries = max(0, int(max_retries))
        self.response_mode = mode
        self.database_probe = database_probe
        self._clock = clock or _utc_now

    # -- commands -----------------------------------------------------------

    def enqueue(self, order_id: str, service_id: str, input_data: dict | None = None) -> TaskView:
        order_key = str(order_id or '').strip()
        service_key = str(service_id or '').strip()
        if not order_key:
            raise PreconditionError('order_id is required', field='order_id')
        if not service_key:
            raise PreconditionError('service_id is required', field='service_id')

        order = self.orders.get_order(order_key)
        if order is None:
            raise PreconditionError(f'order {order_key} was not found', field='order_id')
        if order.service_id and order.service_id != service_key:
            raise PreconditionError(
                f'order {order_key} belongs to service {order.service_id}, not {service_key}',
                field='service_id',
            )
        self._usable_config(service_key)

        payload = dict(input_data) if input_data is not None else dict(order.input_payload or {})
        row = self.repository.create_task(
            TaskCreateRecord(order_id=order_key, service_id=service_key, input_data=payload)
        )
        task_id = row['task_id']
        set_task_context(task_id=task_id, order_id=order_key)
        _log.info('task_created task_id=%s order_id=%s service_id=%s', task_id, order_key, service_key)

        try:
            self.orders.mark_processing(order_key)
        except Exception:
            _log.warning('order_mark_processing_failed order_id=%s task_id=%s', order_key, task_id, exc_info=True)

        self._emit(EventType.TASK_CREATED, row)
        self._schedule(task_id)
        return self._to_view(row)

    def retry(self, task_id: str) -> TaskView:
        row = self._require_task(task_id)
        current = row['status']
        ensure_transition(task_id, current, TaskStatus.PENDING)
        retry_count = int(row.get('retry_count') or 0)
        if retry_count >= self.max_retries:
            raise RetryLimitExceededError(
                task_id,
                current=current,
                retry_count=retry_count,
                max_retries=self.max_retries,
            )

        updated = self.repository.update_task_status_if(
            task_id,
            expected_status=current,
            status=TaskStatus.PENDING.value,
            changes={
                'retry_count': retry_count + 1,
                'remote_execution_id': None,
                'output_data': None,
                'error_message': None,
                'execution_time': None,
                'started_at': None,
                'completed_at': None,
            },
        )
        if updated is None:
            latest = self._require_task(task_id)
            raise InvalidTransitionError(
                task_id,
                current=latest['status'],
                target=TaskStatus.PENDING.value,
                message=f'task {task_id} changed state to {latest["status"]} before the retry was applied',
            )

        _log.info('task_retried task_id=%s retry_count=%d/%d', task_id, retry_count + 1, self.max_retries)
        self._emit(EventType.TASK_RETRIED, updated, {'retry_count': retry_count + 1})
        self._schedule(task_id)
        return self._to_view(updated)

    def cancel(self, task_id: str) -> bool:
        """Store ``cancelled``, then stop the remote run (best effort)."""
        for _ in range(3):
            row = self._require_task(task_id)
            current = row['status']
            ensure_transition(task_id, current, TaskStatus.CANCELLED)

            now = self._clock()
            changes: dict[str, object] = {'completed_at': now}
            elapsed = _elapsed_seconds(row.get('started_at'), now)
            if elapsed is not None:
                changes['execution_time'] = elapsed
            updated = self.repository.update_task_status_if(
                task_id,
                expected_status=current,
                status=TaskStatus.CANCELLED.value,
                changes=changes,
            )
            if updated is None:
                # Lost a race with the worker; re-read and re-validate.
                continue
            _log.info('task_cancelled task_id=%s from_status=%s', task_id, current)
            self._emit(EventType.TASK_CANCELLED, updated, {'from_status': current})
            if current == TaskStatus.RUNNING.value and updated.get('remote_execution_id'):
                self._stop_remote(updated)
            return True

        latest = self._require_task(task_id)
        raise InvalidTransitionError(
            task_id,
            current=latest['status'],
            target=TaskStatus.CANCELLED.value,
            message=f'task {task_id} kept changing state; cancel not applied',
        )

    def archive_task(self, task_id: str) -> TaskView:
        row = self._require_task(task_id)
        if not is_terminal(row['status']):
            raise InvalidTransitionError(
                task_id,
                current=row['status'],
                target='archived',
                message=f'task {task_id} is {row["status"]}; only finished tasks can be archived',
            )
        try:
            archived = self.repository.soft_delete_task(task_id)
        except KeyError as exc:
            raise TaskNotFoundError(task_id) from exc
        _log.info('task_archived task_id=%s', task_id)
        return self._to_view(archived)

    # -- queries ------------------------------------------------------------

    def get_status(self, task_id: str) -> TaskView | None:
        row = self.repository.get_task(task_id)
        return self._to_view(row) if row is not None else None

    def list_tasks(self, filters: TaskFilters | None = None, *, page: int = 1, limit: int = 20) -> TaskPage:
        page = max(1, int(page))
        limit = max(1, min(100, int(limit)))
        rows = self.repository.list_tasks(filters=filters, limit=limit, offset=(page - 1) * limit)
        total = self.repository.count_tasks(filters=filters)
        return TaskPage(items=[self._to_view(r) for r in rows], total=total, page=page, limit=limit)

    def get_stats(self, filters: TaskFilters | None = None) -> StatsView:
        total = self.repository.count_tasks(filters=filters)
        rows = self.repository.list_tasks(filters=filters, limit=max(total, 1), offset=0) if total else []
        counts = {status.value: 0 for status in TaskStatus}
        durations: list[int] = []
        for row in rows:
            status = str(row.get('status') or '')
            counts[status] = counts.get(status, 0) + 1
            if row.get('execution_time') is not None:
                durations.append(int(row['execution_time']))
        average = round(sum(durations) / len(durations), 2) if durations else 0.0
        success_rate = round(counts[TaskStatus.COMPLETED.value] / total * 100, 2) if total else 0.0
        return StatsView(
            total_tasks=total,
            status_counts=counts,
            average_execution_time=average,
            success_rate=success_rate,
        )

    def list_events(self, task_id: str) -> list[dict]:
        try:
            return self.repository.list_events(task_id)
        except KeyError as exc:
            raise TaskNotFoundError(task_id) from exc

    def health_check(self) -> dict:
        database_ok = True
        if self.database_probe is not None:
            try:
                database_ok = bool(self.database_probe())
            except Exception:
                _log.warning('health_database_probe_failed', exc_info=True)
                database_ok = False
        pending = 0
        if database_ok:
            try:
                pending = self.repository.count_tasks(filters=TaskFilters(status=TaskStatus.PENDING.value))
            except Exception:
                _log.warning('health_pending_count_failed', exc_info=True)
                database_ok = False
        return {
            'status': 'healthy' if database_ok else 'unhealthy',
            'database': 'connected' if database_ok else 'unavailable',
            'pending_tasks': pending,
            'in_flight_tasks': self.executor.in_flight_count,
            'subscribers': self.notifier.subscriber_count,
            'response_mode': self.response_mode,
        }

    # -- background execution -------------------------------------------------

    def _schedule(self, task_id: str) -> None:
        self.executor.submit(task_id, self._execute)

    def _execute(self, task_id: str) -> None:
        set_task_context(task_id=task_id)
        try:
            with span(_tracer, 'task.execute', {'task.id': task_id, 'response_mode': self.response_mode}):
                self._run_task(task_id)
        except Exception:
            _log.error('task_execution_crashed task_id=%s', task_id, exc_info=True)
        finally:
            set_task_context(task_id=None)

    def _run_task(self, task_id: str) -> None:
        row = self.repository.get_task(task_id)
        if row is None:
            _log.warning('task_execution_skipped task_id=%s reason=missing', task_id)
            return
        if row['status'] != TaskStatus.PENDING.value:
            _log.info('task_execution_skipped task_id=%s status=%s', task_id, row['status'])
            return

        started_at = self._clock()
        running = self.repository.update_task_status_if(
            task_id,
            expected_status=TaskStatus.PENDING.value,
            status=TaskStatus.RUNNING.value,
            changes={'started_at': started_at},
        )
        if running is None:
            _log.info('task_execution_skipped task_id=%s reason=status_changed', task_id)
            return
        _log.info('task_started task_id=%s service_id=%s', task_id, running['service_id'])
        self._emit(EventType.TASK_STARTED, running)

        try:
            config = self._usable_config(running['service_id'])
            client = self.client_factory.for_service(config)
            with span(_tracer, 'task.remote_call', {'task.id': task_id, 'service.id': config.service_id}):
                result = self._invoke(client, task_id, dict(running.get('input_data') or {}))
        except Exception as exc:
            self._finish_failed(task_id, started_at, exc)
            return
        self._finish_completed(task_id, started_at, result)

    def _invoke(self, client, task_id: str, inputs: dict) -> ExecutionResult:
        user = f'task-{task_id}'
        if self.response_mode == 'blocking':
            return client.execute(inputs, user=user)

        recorded: list[str] = []

        def on_event(event: StreamEvent) -> None:
            if recorded or not event.task_id:
                return
            recorded.append(event.task_id)
            updated = self.repository.update_task_status_if(
                task_id,
                expected_status=TaskStatus.RUNNING.value,
                status=TaskStatus.RUNNING.value,
                changes={'remote_execution_id': event.task_id},
            )
            if updated is not None:
                _log.info('remote_accepted task_id=%s remote_id=%s', task_id, event.task_id)
                self._emit(EventType.REMOTE_ACCEPTED, updated, {'remote_execution_id': event.task_id})

        return client.execute_streaming(inputs, on_event, user=user)

    def _finish_completed(self, task_id: str, started_at: datetime, result: ExecutionResult) -> None:
        completed_at = self._clock()
        execution_time = _elapsed_seconds(started_at, completed_at) or 0
        updated = self.repository.update_task_status_if(
            task_id,
            expected_status=TaskStatus.RUNNING.value,
            status=TaskStatus.COMPLETED.value,
            changes={
                'remote_execution_id': result.remote_execution_id,
                'output_data': result.output_payload(),
                'execution_time': execution_time,
                'completed_at': completed_at,
            },
        )
        if updated is None:
            self._discard_result(task_id, outcome=TaskStatus.COMPLETED.value)
            return
        _log.info('task_completed task_id=%s execution_time=%ds remote_id=%s', task_id, execution_time, result.remote_execution_id)
        self._emit(EventType.TASK_COMPLETED, updated, {'execution_time': execution_time})

    def _finish_failed(self, task_id: str, started_at: datetime, exc: Exception) -> None:
        completed_at = self._clock()
        execution_time = _elapsed_seconds(started_at, completed_at) or 0
        message = str(getattr(exc, 'message', None) or exc) or exc.__class__.__name__
        code = getattr(exc, 'code', None)
        _log.warning('task_remote_failed task_id=%s code=%s error=%s', task_id, code, message)
        updated = self.repository.update_task_status_if(
            task_id,
            expected_status=TaskStatus.RUNNING.value,
            status=TaskStatus.FAILED.value,
            changes={
                'error_message': message,
                'execution_time': execution_time,
                'completed_at': completed_at,
            },
        )
        if updated is None:
            self._discard_result(task_id, outcome=TaskStatus.FAILED.value)
            return
        _log.info('task_failed task_id=%s execution_time=%ds', task_id, execution_time)
        self._emit(EventType.TASK_FAILED, updated, {'error_message': message, 'error_code': code})

    def _discard_result(self, task_id: str, *, outcome: str) -> None:
        latest = self.repository.get_task(task_id, include_deleted=True)
        status = latest['status'] if latest else None
        _log.info('result_discarded task_id=%s outcome=%s current_status=%s', task_id, outcome, status)
        if latest is not None:
            self._record_event(task_id, EventType.RESULT_DISCARDED, {'outcome': outcome, 'status': status})

    def _stop_remote(self, row: dict) -> None:
        task_id = row['task_id']
        remote_id = row['remote_execution_id']
        try:
            config = self._usable_config(row['service_id'])
            self.client_factory.for_service(config).stop(remote_id, user=f'task-{task_id}')
            _log.info('remote_stopped task_id=%s remote_id=%s', task_id, remote_id)
        except Exception as exc:
            _log.warning('remote_stop_failed task_id=%s remote_id=%s error=%s', task_id, remote_id, exc)
            self._record_event(task_id, EventType.REMOTE_STOP_FAILED, {'remote_execution_id': remote_id, 'error': str(exc)})

    # -- helpers --------------------------------------------------------------

    def _usable_config(self, service_id: str) -> ServiceConfig:
        config = self.service_configs.get_service_config(service_id)
        if config is None:
            raise PreconditionError(f'service {service_id} was not found', field='service_id')
        if not config.is_active:
            raise PreconditionError(f'service {service_id} is not active', field='service_id')
        if not config.has_credentials:
            raise PreconditionError(f'service {service_id} has no remote credentials configured', field='service_id')
        return config

    def _require_task(self, task_id: str) -> dict:
        row = self.repository.get_task(task_id)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _emit(self, event_type: EventType, row: dict, extra: dict | None = None) -> None:
        payload = {
            'task_id': row['task_id'],
            'order_id': row['order_id'],
            'service_id': row['service_id'],
            'status': row['status'],
        }
        payload.update(extra or {})
        self._record_event(row['task_id'], event_type, payload)
        self.notifier.broadcast(event_type.value, payload)

    def _record_event(self, task_id: str, event_type: EventType, payload: dict) -> None:
        try:
            self.repository.append_event(task_id, event_type=event_type.value, payload=payload)
        except Exception:
            _log.warning('event_append_failed task_id=%s type=%s', task_id, event_type.value, exc_info=True)

    @staticmethod
    def _to_view(row: dict) -> TaskView:
        return TaskView(
            task_id=row['task_id'],
            order_id=row['order_id'],
            service_id=row['service_id'],
            status=TaskStatus(row['status']),
            remote_execution_id=row.get('remote_execution_id'),
            input_data=dict(row.get('input_data') or {}),
            output_data=row.get('output_data'),
            error_message=row.get('error_message'),
            retry_count=int(row.get('retry_count') or 0),
            execution_time=row.get('execution_time'),
            started_at=row.get('started_at'),
            completed_at=row.get('completed_at'),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )
