from __future__ import annotations

from fastapi.testclient import TestClient
import pytest
from starlette.websockets import WebSocketDisconnect

from support import DeferredExecutor, FakeWorkflowClient, build_service

from medai_tasks.api import create_app
from medai_tasks.domain.errors import NetworkError


def build_client(client: FakeWorkflowClient | None = None, **kwargs) -> TestClient:
    service = build_service(client or FakeWorkflowClient(), **kwargs)
    return TestClient(create_app(service=service))


def _create(api: TestClient, order_id: str = 'order-1', service_id: str = 'svc-1', **extra) -> dict:
    resp = api.post('/api/tasks', json={'order_id': order_id, 'service_id': service_id, **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_healthz():
    resp = build_client().get('/healthz')
    assert resp.status_code == 200
    assert resp.json() == {'status': 'ok'}


def test_create_task_and_read_it_back():
    api = build_client()

    created = _create(api, input_data={'symptoms': 'fever'})
    assert created['status'] == 'pending'
    assert created['progress'] == 0
    assert created['input_data'] == {'symptoms': 'fever'}

    resp = api.get(f"/api/tasks/{created['task_id']}")
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'completed'
    assert body['progress'] == 100
    assert body['output_data'] == {'answer': 'ok'}
    assert body['retry_count'] == 0


def test_create_task_validation_error_shape():
    resp = build_client().post('/api/tasks', json={'service_id': 'svc-1'})
    assert resp.status_code == 400
    body = resp.json()
    assert body['code'] == 'validation_error'
    assert body['field'] == 'order_id'


@pytest.mark.parametrize(
    ('order_id', 'service_id', 'field'),
    [('missing', 'svc-1', 'order_id'), ('order-2', 'svc-off', 'service_id'), ('order-3', 'svc-nokey', 'service_id')],
)
def test_create_task_precondition_failures(order_id, service_id, field):
    api = build_client()
    resp = api.post('/api/tasks', json={'order_id': order_id, 'service_id': service_id})
    assert resp.status_code == 422
    assert resp.json()['code'] == 'precondition_failed'
    assert resp.json()['field'] == field
    assert api.get('/api/tasks').json()['total'] == 0


def test_get_unknown_task_returns_404():
    resp = build_client().get('/api/tasks/nope')
    assert resp.status_code == 404
    assert resp.json()['code'] == 'task_not_found'


def test_retry_until_limit_then_conflict():
    api = build_client(FakeWorkflowClient(error=NetworkError('down')), max_retries=2)
    task_id = _create(api)['task_id']
    assert api.get(f'/api/tasks/{task_id}').json()['status'] == 'failed'

    for expected in (1, 2):
        resp = api.post('/api/tasks/retry', json={'task_id': task_id})
        assert resp.status_code == 200
        assert resp.json()['retry_count'] == expected

    resp = api.post('/api/tasks/retry', json={'task_id': task_id})
    assert resp.status_code == 409
    assert resp.json()['code'] == 'max_retries_reached'


def test_retry_completed_task_is_conflict():
    api = build_client()
    task_id = _create(api)['task_id']
    resp = api.post('/api/tasks/retry', json={'task_id': task_id})
    assert resp.status_code == 409
    assert resp.json()['code'] == 'invalid_transition'


def test_retry_unknown_task_is_404():
    resp = build_client().post('/api/tasks/retry', json={'task_id': 'missing'})
    assert resp.status_code == 404


def test_cancel_pending_task():
    executor = DeferredExecutor()
    api = build_client(executor=executor)
    task_id = _create(api)['task_id']

    resp = api.post('/api/tasks/cancel', json={'task_id': task_id})
    assert resp.status_code == 200
    assert resp.json() == {'task_id': task_id, 'cancelled': True}

    executor.run_all()
    assert api.get(f'/api/tasks/{task_id}').json()['status'] == 'cancelled'

    again = api.post('/api/tasks/cancel', json={'task_id': task_id})
    assert again.status_code == 409


def test_list_tasks_filters_and_pages():
    client = FakeWorkflowClient()
    api = build_client(client)
    for _ in range(3):
        _create(api)
    client.error = NetworkError('down')
    failed = _create(api)

    first = api.get('/api/tasks', params={'limit': 2, 'page': 1}).json()
    second = api.get('/api/tasks', params={'limit': 2, 'page': 2}).json()
    assert first['total'] == 4
    assert len(first['items']) == 2 and len(second['items']) == 2
    ids = {t['task_id'] for t in first['items']} | {t['task_id'] for t in second['items']}
    assert len(ids) == 4

    only_failed = api.get('/api/tasks', params={'status': 'failed'}).json()
    assert [t['task_id'] for t in only_failed['items']] == [failed['task_id']]

    by_order = api.get('/api/tasks', params={'order_id': 'order-1', 'service_id': 'svc-1'}).json()
    assert by_order['total'] == 4


@pytest.mark.parametrize('params', [{'status': 'archived'}, {'limit': 101}, {'page': 0}, {'date_from': 'yesterday'}])
def test_list_tasks_rejects_bad_query(params):
    resp = build_client().get('/api/tasks', params=params)
    assert resp.status_code == 400
    assert resp.json()['code'] == 'validation_error'


def test_stats_endpoint():
    client = FakeWorkflowClient()
    api = build_client(client)
    _create(api)
    client.error = NetworkError('down')
    _create(api)

    body = api.get('/api/stats').json()
    assert body['total_tasks'] == 2
    assert body['status_counts']['completed'] == 1
    assert body['status_counts']['failed'] == 1
    assert body['success_rate'] == 50.0


def test_events_endpoint_lists_lifecycle():
    api = build_client()
    task_id = _create(api)['task_id']

    resp = api.get(f'/api/tasks/{task_id}/events')
    assert resp.status_code == 200
    events = resp.json()
    assert [e['type'] for e in events] == ['task_created', 'task_started', 'task_completed']
    assert [e['seq'] for e in events] == [1, 2, 3]

    assert api.get('/api/tasks/missing/events').status_code == 404


def test_archive_hides_finished_task():
    executor = DeferredExecutor()
    api = build_client(executor=executor)
    task_id = _create(api)['task_id']

    assert api.delete(f'/api/tasks/{task_id}').status_code == 409

    executor.run_all()
    resp = api.delete(f'/api/tasks/{task_id}')
    assert resp.status_code == 200
    assert resp.json()['status'] == 'completed'
    assert api.get(f'/api/tasks/{task_id}').status_code == 404
    assert api.get('/api/tasks').json()['total'] == 0


def test_health_endpoint_reports_database_state():
    healthy = build_client(database_probe=lambda: True).get('/api/health')
    assert healthy.status_code == 200
    assert healthy.json()['status'] == 'healthy'

    degraded = build_client(database_probe=lambda: False).get('/api/health')
    assert degraded.status_code == 503
    assert degraded.json()['database'] == 'unavailable'


def test_websocket_streams_updates_for_one_task():
    executor = DeferredExecutor()
    api = build_client(executor=executor)
    task_id = _create(api)['task_id']
    other_id = _create(api)['task_id']

    with api.websocket_connect(f'/ws/tasks?task_id={task_id}') as ws:
        hello = ws.receive_json()
        assert hello == {'type': 'subscribed', 'channel': 'task-updates', 'task_id': task_id}

        executor.run_all()

        started = ws.receive_json()
        completed = ws.receive_json()

    assert started['type'] == 'task_started'
    assert started['payload']['task_id'] == task_id
    assert completed['type'] == 'task_completed'
    assert completed['payload']['status'] == 'completed'
    assert other_id != task_id


def test_websocket_closes_and_unsubscribes_when_a_send_fails():
    api = build_client()
    notifier = api.app.state.container.service.notifier

    with api.websocket_connect('/ws/tasks') as ws:
        assert ws.receive_json()['type'] == 'subscribed'
        assert notifier.subscriber_count == 1

        notifier.broadcast('task_started', {'task_id': 't-1', 'unserializable': object()})

        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()

    assert exc_info.value.code == 1011
    assert notifier.subscriber_count == 0


def test_websocket_unsubscribes_on_client_disconnect():
    api = build_client()
    notifier = api.app.state.container.service.notifier

    with api.websocket_connect('/ws/tasks') as ws:
        ws.receive_json()
        assert notifier.subscriber_count == 1

    assert notifier.subscriber_count == 0
