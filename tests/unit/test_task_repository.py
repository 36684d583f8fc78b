from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from medai_tasks.db import Database, SqlTaskRepository
from medai_tasks.repository import InMemoryTaskRepository, TaskCreateRecord, TaskFilters


def _sqlite_repo(tmp_path: Path) -> SqlTaskRepository:
    db = Database(f"sqlite+pysqlite:///{(tmp_path / 'tasks.sqlite3').as_posix()}")
    db.create_schema()
    return SqlTaskRepository(db)


@pytest.fixture(params=['memory', 'sqlite'])
def repo(request, tmp_path: Path):
    if request.param == 'memory':
        return InMemoryTaskRepository()
    return _sqlite_repo(tmp_path)


def test_create_task_starts_pending_with_zero_retries(repo):
    row = repo.create_task(TaskCreateRecord(order_id='o-1', service_id='s-1', input_data={'q': '头痛'}))
    assert row['status'] == 'pending'
    assert row['retry_count'] == 0
    assert row['input_data'] == {'q': '头痛'}
    assert row['output_data'] is None
    assert row['started_at'] is None
    assert row['completed_at'] is None
    assert row['deleted_at'] is None

    loaded = repo.get_task(row['task_id'])
    assert loaded is not None
    assert loaded['order_id'] == 'o-1'
    assert loaded['input_data'] == {'q': '头痛'}


def test_update_task_status_if_applies_changes_when_status_matches(repo):
    row = repo.create_task(TaskCreateRecord(order_id='o-1', service_id='s-1'))
    started = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    updated = repo.update_task_status_if(
        row['task_id'],
        expected_status='pending',
        status='running',
        changes={'started_at': started},
    )
    assert updated is not None
    assert updated['status'] == 'running'
    assert datetime.fromisoformat(updated['started_at']) == started

    done = repo.update_task_status_if(
        row['task_id'],
        expected_status='running',
        status='completed',
        changes={'output_data': {'answer': 'ok'}, 'execution_time': 7, 'completed_at': started + timedelta(seconds=7)},
    )
    assert done is not None
    assert done['output_data'] == {'answer': 'ok'}
    assert done['execution_time'] == 7


def test_update_task_status_if_returns_none_on_status_mismatch(repo):
    row = repo.create_task(TaskCreateRecord(order_id='o-1', service_id='s-1'))
    result = repo.update_task_status_if(
        row['task_id'],
        expected_status='running',
        status='completed',
        changes={'output_data': {'answer': 'late'}},
    )
    assert result is None
    current = repo.get_task(row['task_id'])
    assert current['status'] == 'pending'
    assert current['output_data'] is None


def test_update_task_status_if_missing_task_raises_key_error(repo):
    with pytest.raises(KeyError):
        repo.update_task_status_if('missing', expected_status='pending', status='running')


def test_update_task_status_if_rejects_unknown_fields(repo):
    row = repo.create_task(TaskCreateRecord(order_id='o-1', service_id='s-1'))
    with pytest.raises(ValueError):
        repo.update_task_status_if(
            row['task_id'],
            expected_status='pending',
            status='running',
            changes={'order_id': 'other'},
        )


def test_update_can_clear_fields(repo):
    row = repo.create_task(TaskCreateRecord(order_id='o-1', service_id='s-1'))
    now = datetime.now(timezone.utc)
    repo.update_task_status_if(row['task_id'], expected_status='pending', status='running', changes={'started_at': now})
    repo.update_task_status_if(
        row['task_id'],
        expected_status='running',
        status='failed',
        changes={'error_message': 'boom', 'completed_at': now, 'execution_time': 0},
    )
    cleared = repo.update_task_status_if(
        row['task_id'],
        expected_status='failed',
        status='pending',
        changes={'retry_count': 1, 'error_message': None, 'started_at': None, 'completed_at': None, 'execution_time': None},
    )
    assert cleared['retry_count'] == 1
    assert cleared['error_message'] is None
    assert cleared['started_at'] is None
    assert cleared['completed_at'] is None
    assert cleared['execution_time'] is None


def test_soft_delete_hides_row_from_reads(repo):
    row = repo.create_task(TaskCreateRecord(order_id='o-1', service_id='s-1'))
    deleted = repo.soft_delete_task(row['task_id'])
    assert deleted['deleted_at'] is not None
    assert repo.get_task(row['task_id']) is None
    assert repo.get_task(row['task_id'], include_deleted=True) is not None
    assert repo.count_tasks() == 0
    with pytest.raises(KeyError):
        repo.soft_delete_task(row['task_id'])


def test_list_tasks_filters_and_pages_newest_first(repo):
    ids = []
    for i in range(5):
        service = 's-1' if i % 2 == 0 else 's-2'
        ids.append(repo.create_task(TaskCreateRecord(order_id=f'o-{i}', service_id=service))['task_id'])

    assert repo.count_tasks() == 5
    assert repo.count_tasks(filters=TaskFilters(service_id='s-1')) == 3
    assert repo.count_tasks(filters=TaskFilters(order_id='o-3')) == 1

    first_page = repo.list_tasks(limit=2, offset=0)
    second_page = repo.list_tasks(limit=2, offset=2)
    assert len(first_page) == 2
    assert len(second_page) == 2
    seen = {r['task_id'] for r in first_page} | {r['task_id'] for r in second_page}
    assert len(seen) == 4
    assert first_page[0]['created_at'] >= first_page[1]['created_at']


def test_list_tasks_filters_by_status_and_date(repo):
    row = repo.create_task(TaskCreateRecord(order_id='o-1', service_id='s-1'))
    repo.create_task(TaskCreateRecord(order_id='o-2', service_id='s-1'))
    repo.update_task_status_if(row['task_id'], expected_status='pending', status='running')

    running = repo.list_tasks(filters=TaskFilters(status='running'))
    assert [r['task_id'] for r in running] == [row['task_id']]

    future = datetime.now(timezone.utc) + timedelta(days=1)
    past = datetime.now(timezone.utc) - timedelta(days=1)
    assert repo.count_tasks(filters=TaskFilters(date_from=future)) == 0
    assert repo.count_tasks(filters=TaskFilters(date_from=past, date_to=future)) == 2


def test_events_are_sequenced_per_task(repo):
    a = repo.create_task(TaskCreateRecord(order_id='o-1', service_id='s-1'))
    b = repo.create_task(TaskCreateRecord(order_id='o-2', service_id='s-1'))
    repo.append_event(a['task_id'], event_type='task_created', payload={'status': 'pending'})
    repo.append_event(b['task_id'], event_type='task_created', payload={'status': 'pending'})
    repo.append_event(a['task_id'], event_type='TASK_STARTED', payload={'status': 'running'})

    events = repo.list_events(a['task_id'])
    assert [e['seq'] for e in events] == [1, 2]
    assert [e['type'] for e in events] == ['task_created', 'task_started']
    assert events[1]['payload'] == {'status': 'running'}
    assert [e['seq'] for e in repo.list_events(b['task_id'])] == [1]


def test_events_for_missing_task_raise_key_error(repo):
    with pytest.raises(KeyError):
        repo.list_events('missing')
    with pytest.raises(KeyError):
        repo.append_event('missing', event_type='task_created', payload={})


def test_in_memory_rows_are_copies():
    repo = InMemoryTaskRepository()
    row = repo.create_task(TaskCreateRecord(order_id='o-1', service_id='s-1', input_data={'a': 1}))
    row['input_data']['a'] = 99
    assert repo.get_task(row['task_id'])['input_data'] == {'a': 1}


def test_sqlite_lock_retry_backoff_is_capped(tmp_path: Path):
    repo = _sqlite_repo(tmp_path)
    assert repo._sqlite_lock_retry_attempts() == 8
    assert repo._sqlite_lock_backoff_seconds(1) == pytest.approx(0.02)
    assert repo._sqlite_lock_backoff_seconds(10) == pytest.approx(0.2)
    assert repo._is_sqlite_lock_error(Exception('database is locked'))
    assert not repo._is_sqlite_lock_error(Exception('no such table'))
