from __future__ import annotations

from medai_tasks.collaborators import InMemoryCatalog, OrderRecord, ServiceConfig
from medai_tasks.executor import InlineExecutor
from medai_tasks.notifier import RealtimeNotifier
from medai_tasks.repository import InMemoryTaskRepository
from medai_tasks.service import OrchestratorService
from medai_tasks.workflow_client import ExecutionResult


def ok_result(answer: str = 'ok', *, remote_id: str = 'msg-1', task_id: str = 'remote-task-1') -> ExecutionResult:
    return ExecutionResult(id=remote_id, task_id=task_id, mode='chat', status='succeeded', answer=answer)


class FakeWorkflowClient:
    def __init__(
        self,
        *,
        result: ExecutionResult | None = None,
        error: Exception | None = None,
        stream_events=(),
        stop_error: Exception | None = None,
        on_execute=None,
    ):
        self.result = result or ok_result()
        self.error = error
        self.stream_events = list(stream_events)
        self.stop_error = stop_error
        self.on_execute = on_execute
        self.calls: list[tuple[dict, str]] = []
        self.stop_calls: list[tuple[str, str]] = []

    def execute(self, inputs, *, user, conversation_id=None, files=None):
        self.calls.append((dict(inputs), user))
        if self.on_execute is not None:
            self.on_execute()
        if self.error is not None:
            raise self.error
        return self.result

    def execute_streaming(self, inputs, on_event, *, user, conversation_id=None, files=None):
        self.calls.append((dict(inputs), user))
        for event in self.stream_events:
            on_event(event)
        if self.on_execute is not None:
            self.on_execute()
        if self.error is not None:
            raise self.error
        return self.result

    def stop(self, remote_execution_id, *, user):
        self.stop_calls.append((remote_execution_id, user))
        if self.stop_error is not None:
            raise self.stop_error
        return {'result': 'success'}


class FakeClientFactory:
    def __init__(self, client: FakeWorkflowClient):
        self.client = client
        self.requested: list[str] = []
        self.closed = False

    def for_service(self, config):
        self.requested.append(config.service_id)
        return self.client

    def close(self):
        self.closed = True


class DeferredExecutor:
    """Collects submissions so tests decide when background work runs."""

    def __init__(self):
        self.pending: list[tuple[str, object]] = []
        self.in_flight_count = 0

    def submit(self, task_id, runner):
        self.pending.append((task_id, runner))
        return True

    def run_all(self):
        while self.pending:
            task_id, runner = self.pending.pop(0)
            runner(task_id)

    def shutdown(self, *, wait=True):
        return None


def seeded_catalog() -> InMemoryCatalog:
    return InMemoryCatalog(
        orders=[
            OrderRecord(
                order_id='order-1',
                user_id='user-1',
                service_id='svc-1',
                input_payload={'symptoms': 'cough', 'age': 42},
            ),
            OrderRecord(order_id='order-2', user_id='user-2', service_id='svc-off', input_payload={}),
            OrderRecord(order_id='order-3', user_id='user-3', service_id='svc-nokey', input_payload={}),
        ],
        services=[
            ServiceConfig(
                service_id='svc-1',
                display_name='Symptom triage',
                api_key='app-key',
                base_url='https://dify.example.test/v1',
            ),
            ServiceConfig(
                service_id='svc-off',
                display_name='Retired',
                api_key='app-key',
                base_url='https://dify.example.test/v1',
                is_active=False,
            ),
            ServiceConfig(
                service_id='svc-nokey',
                display_name='Unconfigured',
                api_key='',
                base_url='https://dify.example.test/v1',
            ),
        ],
    )


def build_service(
    client: FakeWorkflowClient | None = None,
    *,
    repository=None,
    catalog: InMemoryCatalog | None = None,
    executor=None,
    notifier: RealtimeNotifier | None = None,
    max_retries: int = 3,
    response_mode: str = 'blocking',
    database_probe=None,
    clock=None,
) -> OrchestratorService:
    catalog = catalog or seeded_catalog()
    return OrchestratorService(
        repository=repository or InMemoryTaskRepository(),
        orders=catalog,
        service_configs=catalog,
        client_factory=FakeClientFactory(client or FakeWorkflowClient()),
        notifier=notifier or RealtimeNotifier(),
        executor=executor or InlineExecutor(),
        max_retries=max_retries,
        response_mode=response_mode,
        database_probe=database_probe,
        clock=clock,
    )
