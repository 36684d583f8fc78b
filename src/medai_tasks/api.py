from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import datetime
import logging

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from medai_tasks.collaborators import InMemoryCatalog
from medai_tasks.domain.errors import (
    InvalidTransitionError,
    PreconditionError,
    TaskEngineError,
    TaskNotFoundError,
)
from medai_tasks.domain.models import TaskStatus
from medai_tasks.executor import TaskExecutor
from medai_tasks.notifier import RealtimeNotifier
from medai_tasks.repository import InMemoryTaskRepository, TaskFilters, TaskRepository
from medai_tasks.service import OrchestratorService, TaskView, task_progress
from medai_tasks.workflow_client import WorkflowClientFactory

_log = logging.getLogger(__name__)


class EnqueueTaskRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    service_id: str = Field(min_length=1, max_length=64)
    input_data: dict | None = Field(default=None)


class TaskActionRequest(BaseModel):
    task_id: str = Field(min_length=1, max_length=64)


class TaskResponse(BaseModel):
    task_id: str
    order_id: str
    service_id: str
    status: str
    progress: int
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


class TaskListResponse(BaseModel):
    items: list[TaskResponse]
    total: int
    page: int
    limit: int


class CancelResponse(BaseModel):
    task_id: str
    cancelled: bool


class EventResponse(BaseModel):
    seq: int
    task_id: str
    type: str
    payload: dict
    created_at: str


class StatsResponse(BaseModel):
    total_tasks: int
    status_counts: dict[str, int]
    average_execution_time: float
    success_rate: float


class HealthResponse(BaseModel):
    status: str
    database: str
    pending_tasks: int
    in_flight_tasks: int
    subscribers: int
    response_mode: str


class ErrorResponse(BaseModel):
    code: str
    message: str
    field: str | None = None


class AppState:
    def __init__(self, service: OrchestratorService):
        self.service = service


def _to_task_response(task: TaskView) -> TaskResponse:
    return TaskResponse(
        task_id=task.task_id,
        order_id=task.order_id,
        service_id=task.service_id,
        status=task.status.value,
        progress=task_progress(task),
        remote_execution_id=task.remote_execution_id,
        input_data=task.input_data,
        output_data=task.output_data,
        error_message=task.error_message,
        retry_count=task.retry_count,
        execution_time=task.execution_time,
        started_at=task.started_at,
        completed_at=task.completed_at,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )


def _error_status(exc: TaskEngineError) -> int:
    if isinstance(exc, TaskNotFoundError):
        return 404
    if isinstance(exc, PreconditionError):
        return 422
    if isinstance(exc, InvalidTransitionError):
        return 409
    return 500


def build_default_service(repository: TaskRepository | None = None) -> OrchestratorService:
    catalog = InMemoryCatalog()
    return OrchestratorService(
        repository=repository or InMemoryTaskRepository(),
        orders=catalog,
        service_configs=catalog,
        client_factory=WorkflowClientFactory(),
        notifier=RealtimeNotifier(),
        executor=TaskExecutor(),
    )


def create_app(
    *,
    repository: TaskRepository | None = None,
    service: OrchestratorService | None = None,
) -> FastAPI:
    if service is None:
        service = build_default_service(repository)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        current = app.state.container.service
        current.executor.shutdown(wait=False)
        current.notifier.close()
        current.client_factory.close()

    app = FastAPI(title='medai task engine api', version='0.1.0', lifespan=lifespan)
    app.state.container = AppState(service=service)

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
        parts = list(loc)
        if parts and str(parts[0]) in source_prefixes:
            parts = parts[1:]
        if not parts:
            return None

        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
                continue
            text = str(part)
            field = f'{field}.{text}' if field else text
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=message, field=field),
        )

    @app.exception_handler(TaskEngineError)
    async def handle_task_engine_error(request: Request, exc: TaskEngineError):  # noqa: ARG001
        status_code = _error_status(exc)
        if status_code >= 500:
            _log.error('unhandled_engine_error path=%s code=%s', request.url.path, exc.code, exc_info=exc)
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(
                message=exc.message,
                field=getattr(exc, 'field', None),
                code=exc.code,
            ),
        )

    def get_service() -> OrchestratorService:
        return app.state.container.service

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/api/health', response_model=HealthResponse)
    def health(service: OrchestratorService = Depends(get_service)):
        report = service.health_check()
        status_code = 200 if report['status'] == 'healthy' else 503
        return JSONResponse(status_code=status_code, content=HealthResponse(**report).model_dump())

    @app.post('/api/tasks', response_model=TaskResponse, status_code=201)
    def enqueue_task(
        payload: EnqueueTaskRequest,
        service: OrchestratorService = Depends(get_service),
    ) -> TaskResponse:
        task = service.enqueue(payload.order_id, payload.service_id, payload.input_data)
        return _to_task_response(task)

    @app.get('/api/tasks', response_model=TaskListResponse)
    def list_tasks(
        service: OrchestratorService = Depends(get_service),
        order_id: str | None = Query(default=None, max_length=64),
        service_id: str | None = Query(default=None, max_length=64),
        status: TaskStatus | None = Query(default=None),
        date_from: datetime | None = Query(default=None),
        date_to: datetime | None = Query(default=None),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
    ) -> TaskListResponse:
        filters = TaskFilters(
            order_id=order_id,
            service_id=service_id,
            status=status.value if status is not None else None,
            date_from=date_from,
            date_to=date_to,
        )
        result = service.list_tasks(filters, page=page, limit=limit)
        return TaskListResponse(
            items=[_to_task_response(t) for t in result.items],
            total=result.total,
            page=result.page,
            limit=result.limit,
        )

    @app.get('/api/stats', response_model=StatsResponse)
    def stats(
        service: OrchestratorService = Depends(get_service),
        service_id: str | None = Query(default=None, max_length=64),
        date_from: datetime | None = Query(default=None),
        date_to: datetime | None = Query(default=None),
    ) -> StatsResponse:
        filters = TaskFilters(service_id=service_id, date_from=date_from, date_to=date_to)
        view = service.get_stats(filters)
        return StatsResponse(
            total_tasks=view.total_tasks,
            status_counts=view.status_counts,
            average_execution_time=view.average_execution_time,
            success_rate=view.success_rate,
        )

    @app.post('/api/tasks/retry', response_model=TaskResponse)
    def retry_task(payload: TaskActionRequest, service: OrchestratorService = Depends(get_service)) -> TaskResponse:
        return _to_task_response(service.retry(payload.task_id))

    @app.post('/api/tasks/cancel', response_model=CancelResponse)
    def cancel_task(payload: TaskActionRequest, service: OrchestratorService = Depends(get_service)) -> CancelResponse:
        cancelled = service.cancel(payload.task_id)
        return CancelResponse(task_id=payload.task_id, cancelled=cancelled)

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(task_id: str, service: OrchestratorService = Depends(get_service)) -> TaskResponse:
        task = service.get_status(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return _to_task_response(task)

    @app.delete('/api/tasks/{task_id}', response_model=TaskResponse)
    def archive_task(task_id: str, service: OrchestratorService = Depends(get_service)) -> TaskResponse:
        return _to_task_response(service.archive_task(task_id))

    @app.get('/api/tasks/{task_id}/events', response_model=list[EventResponse])
    def list_events(task_id: str, service: OrchestratorService = Depends(get_service)) -> list[EventResponse]:
        rows = service.list_events(task_id)
        return [
            EventResponse(
                seq=int(row['seq']),
                task_id=str(row['task_id']),
                type=str(row['type']),
                payload=dict(row.get('payload', {})),
                created_at=str(row['created_at']),
            )
            for row in rows
        ]

    @app.websocket('/ws/tasks')
    async def task_updates(websocket: WebSocket, task_id: str | None = None) -> None:
        service = get_service()
        await websocket.accept()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[dict] = asyncio.Queue()

        def forward(message: dict) -> None:
            if task_id and message.get('payload', {}).get('task_id') != task_id:
                return
            loop.call_soon_threadsafe(queue.put_nowait, message)

        unsubscribe = service.notifier.subscribe(forward)
        await websocket.send_json({'type': 'subscribed', 'channel': service.notifier.channel, 'task_id': task_id})

        async def pump() -> None:
            while True:
                message = await queue.get()
                await websocket.send_json(message)

        async def drain() -> None:
            while True:
                await websocket.receive_text()

        sender = asyncio.create_task(pump())
        receiver = asyncio.create_task(drain())
        try:
            done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            unsubscribe()
            for job in (sender, receiver):
                job.cancel()
            for job in (sender, receiver):
                with suppress(asyncio.CancelledError, Exception):
                    await job

        if receiver in done:
            _log.debug('ws_client_disconnected task_id=%s', task_id)
            return
        _log.warning('ws_send_failed task_id=%s', task_id, exc_info=sender.exception())
        with suppress(RuntimeError, WebSocketDisconnect):
            await websocket.close(code=1011)

    return app
