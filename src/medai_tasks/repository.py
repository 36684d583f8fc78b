from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import copy
from threading import Lock
from typing import Mapping, Protocol
from uuid import uuid4

from medai_tasks.domain.events import normalize_event_type
from medai_tasks.domain.models import TaskStatus

# Columns the orchestrator may write alongside a status change.
MUTABLE_TASK_FIELDS = frozenset(
    {
        'remote_execution_id',
        'output_data',
        'error_message',
        'retry_count',
        'execution_time',
        'started_at',
        'completed_at',
    }
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


def parse_iso_datetime(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_changes(changes: Mapping[str, object] | None) -> dict[str, object]:
    values = dict(changes or {})
    unknown = sorted(set(values) - MUTABLE_TASK_FIELDS)
    if unknown:
        raise ValueError(f'unsupported task fields: {", ".join(unknown)}')
    return values


@dataclass(frozen=True)
class TaskCreateRecord:
    order_id: str
    service_id: str
    input_data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TaskFilters:
    order_id: str | None = None
    service_id: str | None = None
    status: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def matches(self, row: dict) -> bool:
        if self.order_id and row.get('order_id') != self.order_id:
            return False
        if self.service_id and row.get('service_id') != self.service_id:
            return False
        if self.status and row.get('status') != self.status:
            return False
        created = parse_iso_datetime(row.get('created_at'))
        if self.date_from is not None and (created is None or created < parse_iso_datetime(self.date_from)):
            return False
        if self.date_to is not None and (created is None or created > parse_iso_datetime(self.date_to)):
            return False
        return True


class TaskRepository(Protocol):
    def create_task(self, record: TaskCreateRecord) -> dict:
        ...

    def get_task(self, task_id: str, *, include_deleted: bool = False) -> dict | None:
        ...

    def list_tasks(
        self,
        *,
        filters: TaskFilters | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict]:
        ...

    def count_tasks(self, *, filters: TaskFilters | None = None) -> int:
        ...

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        changes: Mapping[str, object] | None = None,
    ) -> dict | None:
        """Atomically update status only if current status matches *expected_status*.

        Returns the updated row on success, or ``None`` if the current status
        did not match (a concurrent transition already happened). Raises
        ``KeyError`` when the task does not exist.
        """
        ...

    def soft_delete_task(self, task_id: str) -> dict:
        ...

    def append_event(self, task_id: str, *, event_type: str, payload: dict) -> dict:
        ...

    def list_events(self, task_id: str) -> list[dict]:
        ...


class InMemoryTaskRepository:
    def __init__(self):
        self.items: dict[str, dict] = {}
        self.events: dict[str, list[dict]] = {}
        self._lock = Lock()

    def create_task(self, record: TaskCreateRecord) -> dict:
        now = _utc_now_iso()
        task_id = str(uuid4())
        row = {
            'task_id': task_id,
            'order_id': str(record.order_id),
            'service_id': str(record.service_id),
            'status': TaskStatus.PENDING.value,
            'remote_execution_id': None,
            'input_data': copy.deepcopy(dict(record.input_data or {})),
            'output_data': None,
            'error_message': None,
            'retry_count': 0,
            'execution_time': None,
            'started_at': None,
            'completed_at': None,
            'created_at': now,
            'updated_at': now,
            'deleted_at': None,
        }
        with self._lock:
            self.items[task_id] = row
            self.events[task_id] = []
            return copy.deepcopy(row)

    def get_task(self, task_id: str, *, include_deleted: bool = False) -> dict | None:
        with self._lock:
            row = self.items.get(task_id)
            if row is None:
                return None
            if row.get('deleted_at') and not include_deleted:
                return None
            return copy.deepcopy(row)

    def list_tasks(
        self,
        *,
        filters: TaskFilters | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict]:
        rows = self._visible_rows(filters)
        rows.sort(key=lambda r: (r.get('created_at', ''), r.get('task_id', '')), reverse=True)
        start = max(0, int(offset))
        return rows[start:start + max(0, int(limit))]

    def count_tasks(self, *, filters: TaskFilters | None = None) -> int:
        return len(self._visible_rows(filters))

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        changes: Mapping[str, object] | None = None,
    ) -> dict | None:
        values = validate_changes(changes)
        with self._lock:
            row = self.items.get(task_id)
            if row is None:
                raise KeyError(task_id)
            if row['status'] != expected_status:
                return None
            row['status'] = status
            for key, value in values.items():
                if key in {'started_at', 'completed_at'}:
                    value = _to_iso(value)
                row[key] = copy.deepcopy(value)
            row['updated_at'] = _utc_now_iso()
            return copy.deepcopy(row)

    def soft_delete_task(self, task_id: str) -> dict:
        with self._lock:
            row = self.items.get(task_id)
            if row is None or row.get('deleted_at'):
                raise KeyError(task_id)
            now = _utc_now_iso()
            row['deleted_at'] = now
            row['updated_at'] = now
            return copy.deepcopy(row)

    def append_event(self, task_id: str, *, event_type: str, payload: dict) -> dict:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            bucket = self.events.setdefault(task_id, [])
            event = {
                'seq': len(bucket) + 1,
                'task_id': task_id,
                'type': normalize_event_type(event_type),
                'payload': copy.deepcopy(payload),
                'created_at': _utc_now_iso(),
            }
            bucket.append(event)
            return copy.deepcopy(event)

    def list_events(self, task_id: str) -> list[dict]:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            return copy.deepcopy(self.events.get(task_id, []))

    def _visible_rows(self, filters: TaskFilters | None) -> list[dict]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self.items.values() if not r.get('deleted_at')]
        if filters is None:
            return rows
        return [r for r in rows if filters.matches(r)]
