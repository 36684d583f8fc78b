from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import time
from typing import Iterator, Mapping
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from medai_tasks.collaborators import OrderRecord, ServiceConfig
from medai_tasks.domain.events import normalize_event_type
from medai_tasks.domain.models import TaskStatus
from medai_tasks.repository import TaskCreateRecord, TaskFilters, parse_iso_datetime, validate_changes


def _iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _as_utc(value) -> datetime | None:
    parsed = parse_iso_datetime(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc)


def _load_json(text: str | None):
    if text is None:
        return None
    return json.loads(text)


def _dump_json(value) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


class Base(DeclarativeBase):
    pass


class TaskEntity(Base):
    __tablename__ = 'tasks'

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    remote_execution_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    input_data_json: Mapped[str] = mapped_column(Text(), nullable=False)
    output_data_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text(), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    execution_time: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TaskEventEntity(Base):
    __tablename__ = 'task_events'
    __table_args__ = (
        UniqueConstraint('task_id', 'seq', name='uq_task_events_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('tasks.task_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskEventCounterEntity(Base):
    __tablename__ = 'task_event_counters'

    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('tasks.task_id'), primary_key=True)
    next_seq: Mapped[int] = mapped_column(Integer(), nullable=False)


class AiServiceEntity(Base):
    __tablename__ = 'ai_services'

    service_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key: Mapped[str | None] = mapped_column(Text(), nullable=True)
    base_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=True)


class OrderEntity(Base):
    __tablename__ = 'orders'

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_id: Mapped[str] = mapped_column(String(64), nullable=False)
    input_payload_json: Mapped[str] = mapped_column(Text(), nullable=False, default='{}')
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Worker threads and API handlers share the engine.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql('SELECT 1')
            return True
        except SQLAlchemyError:
            return False

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            if self.engine.url.database not in (None, '', ':memory:'):
                conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class _SqliteLockRetry:
    db: Database

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _with_lock_retry(self, operation_name: str, fn):
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{operation_name}_retry_exhausted')


class SqlTaskRepository(_SqliteLockRetry):
    def __init__(self, db: Database):
        self.db = db

    def create_task(self, record: TaskCreateRecord) -> dict:
        now = datetime.now(timezone.utc)
        task = TaskEntity(
            task_id=str(uuid4()),
            order_id=str(record.order_id),
            service_id=str(record.service_id),
            status=TaskStatus.PENDING.value,
            remote_execution_id=None,
            input_data_json=_dump_json(dict(record.input_data or {})),
            output_data_json=None,
            error_message=None,
            retry_count=0,
            execution_time=None,
            started_at=None,
            completed_at=None,
            created_at=now,
            updated_at=now,
            deleted_at=None,
        )

        def _insert() -> dict:
            with self.db.session() as session:
                session.add(task)
            return self._task_to_dict(task)

        return self._with_lock_retry('create_task', _insert)

    def get_task(self, task_id: str, *, include_deleted: bool = False) -> dict | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            if row is None:
                return None
            if row.deleted_at is not None and not include_deleted:
                return None
            return self._task_to_dict(row)

    def list_tasks(
        self,
        *,
        filters: TaskFilters | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict]:
        stmt = self._apply_filters(select(TaskEntity), filters)
        stmt = (
            stmt.order_by(TaskEntity.created_at.desc(), TaskEntity.task_id.desc())
            .offset(max(0, int(offset)))
            .limit(max(0, int(limit)))
        )
        with self.db.session() as session:
            rows = session.execute(stmt).scalars().all()
            return [self._task_to_dict(r) for r in rows]

    def count_tasks(self, *, filters: TaskFilters | None = None) -> int:
        stmt = self._apply_filters(select(func.count()).select_from(TaskEntity), filters)
        with self.db.session() as session:
            return int(session.execute(stmt).scalar_one())

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        changes: Mapping[str, object] | None = None,
    ) -> dict | None:
        values = validate_changes(changes)

        def _update() -> dict | None:
            now = datetime.now(timezone.utc)
            with self.db.session() as session:
                columns: dict[str, object] = {
                    'status': status,
                    'updated_at': now,
                }
                for key, value in values.items():
                    if key == 'output_data':
                        columns['output_data_json'] = _dump_json(value)
                    elif key in {'started_at', 'completed_at'}:
                        columns[key] = _as_utc(value)
                    elif key in {'retry_count', 'execution_time'} and value is not None:
                        columns[key] = int(value)
                    else:
                        columns[key] = value

                result = session.execute(
                    update(TaskEntity)
                    .where(
                        TaskEntity.task_id == task_id,
                        TaskEntity.status == expected_status,
                    )
                    .values(**columns)
                )
                session.flush()
                if int(result.rowcount or 0) == 0:
                    existing = session.get(TaskEntity, task_id)
                    if existing is None:
                        raise KeyError(task_id)
                    return None

                row = session.get(TaskEntity, task_id, populate_existing=True)
                if row is None:
                    raise KeyError(task_id)
                return self._task_to_dict(row)

        return self._with_lock_retry('update_task_status_if', _update)

    def soft_delete_task(self, task_id: str) -> dict:
        def _delete() -> dict:
            now = datetime.now(timezone.utc)
            with self.db.session() as session:
                row = session.get(TaskEntity, task_id)
                if row is None or row.deleted_at is not None:
                    raise KeyError(task_id)
                row.deleted_at = now
                row.updated_at = now
                session.add(row)
                session.flush()
                return self._task_to_dict(row)

        return self._with_lock_retry('soft_delete_task', _delete)

    def append_event(self, task_id: str, *, event_type: str, payload: dict) -> dict:
        now = datetime.now(timezone.utc)
        max_attempts = max(3, self._sqlite_lock_retry_attempts())
        for attempt in range(max_attempts):
            try:
                with self.db.session() as session:
                    task = session.get(TaskEntity, task_id)
                    if task is None:
                        raise KeyError(task_id)

                    next_seq = self._reserve_next_event_seq(session, task_id)
                    event = TaskEventEntity(
                        task_id=task_id,
                        seq=next_seq,
                        event_type=normalize_event_type(event_type),
                        payload_json=json.dumps(payload, ensure_ascii=False),
                        created_at=now,
                    )
                    session.add(event)
                    session.flush()
                    return self._event_to_dict(event)
            except IntegrityError:
                if attempt + 1 >= max_attempts:
                    raise
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt + 1 >= max_attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt + 1))
        raise RuntimeError('append_event_retry_exhausted')

    def list_events(self, task_id: str) -> list[dict]:
        with self.db.session() as session:
            task = session.get(TaskEntity, task_id)
            if task is None:
                raise KeyError(task_id)
            rows = session.execute(
                select(TaskEventEntity)
                .where(TaskEventEntity.task_id == task_id)
                .order_by(TaskEventEntity.seq.asc())
            ).scalars().all()
            return [self._event_to_dict(r) for r in rows]

    @staticmethod
    def _apply_filters(stmt, filters: TaskFilters | None):
        stmt = stmt.where(TaskEntity.deleted_at.is_(None))
        if filters is None:
            return stmt
        if filters.order_id:
            stmt = stmt.where(TaskEntity.order_id == filters.order_id)
        if filters.service_id:
            stmt = stmt.where(TaskEntity.service_id == filters.service_id)
        if filters.status:
            stmt = stmt.where(TaskEntity.status == filters.status)
        if filters.date_from is not None:
            stmt = stmt.where(TaskEntity.created_at >= _as_utc(filters.date_from))
        if filters.date_to is not None:
            stmt = stmt.where(TaskEntity.created_at <= _as_utc(filters.date_to))
        return stmt

    @staticmethod
    def _reserve_next_event_seq(session: Session, task_id: str) -> int:
        initial_next_seq = (
            select((func.coalesce(func.max(TaskEventEntity.seq), 0) + 2))
            .where(TaskEventEntity.task_id == task_id)
            .scalar_subquery()
        )
        bind = session.get_bind()
        dialect_name = bind.dialect.name if bind is not None else ''

        if dialect_name in {'sqlite', 'postgresql'}:
            insert = sqlite_insert if dialect_name == 'sqlite' else pg_insert
            stmt = (
                insert(TaskEventCounterEntity)
                .values(task_id=task_id, next_seq=initial_next_seq)
                .on_conflict_do_update(
                    index_elements=[TaskEventCounterEntity.task_id],
                    set_={'next_seq': TaskEventCounterEntity.next_seq + 1},
                )
                .returning(TaskEventCounterEntity.next_seq)
            )
            return int(session.execute(stmt).scalar_one()) - 1

        counter = session.get(TaskEventCounterEntity, task_id, with_for_update=True)
        if counter is None:
            max_seq = int(
                session.execute(
                    select(func.coalesce(func.max(TaskEventEntity.seq), 0))
                    .where(TaskEventEntity.task_id == task_id)
                ).scalar_one()
            )
            session.add(TaskEventCounterEntity(task_id=task_id, next_seq=max_seq + 2))
            session.flush()
            return max_seq + 1

        assigned_seq = int(counter.next_seq)
        counter.next_seq = assigned_seq + 1
        session.add(counter)
        session.flush()
        return assigned_seq

    @staticmethod
    def _task_to_dict(row: TaskEntity) -> dict:
        return {
            'task_id': row.task_id,
            'order_id': row.order_id,
            'service_id': row.service_id,
            'status': row.status,
            'remote_execution_id': row.remote_execution_id,
            'input_data': _load_json(row.input_data_json) or {},
            'output_data': _load_json(row.output_data_json),
            'error_message': row.error_message,
            'retry_count': int(row.retry_count or 0),
            'execution_time': row.execution_time,
            'started_at': _iso_utc(row.started_at),
            'completed_at': _iso_utc(row.completed_at),
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
            'deleted_at': _iso_utc(row.deleted_at),
        }

    @staticmethod
    def _event_to_dict(row: TaskEventEntity) -> dict:
        return {
            'seq': row.seq,
            'task_id': row.task_id,
            'type': row.event_type,
            'payload': json.loads(row.payload_json),
            'created_at': _iso_utc(row.created_at),
        }


class SqlCatalog(_SqliteLockRetry):
    """Order and service-config directory over the shared marketplace tables."""

    def __init__(self, db: Database):
        self.db = db

    def get_order(self, order_id: str) -> OrderRecord | None:
        with self.db.session() as session:
            row = session.get(OrderEntity, order_id)
            if row is None:
                return None
            return OrderRecord(
                order_id=row.order_id,
                user_id=row.user_id,
                service_id=row.service_id,
                input_payload=_load_json(row.input_payload_json) or {},
                status=row.status,
            )

    def mark_processing(self, order_id: str) -> None:
        def _mark() -> None:
            with self.db.session() as session:
                result = session.execute(
                    update(OrderEntity)
                    .where(OrderEntity.order_id == order_id)
                    .values(status='processing', updated_at=datetime.now(timezone.utc))
                )
                if int(result.rowcount or 0) == 0:
                    raise KeyError(order_id)

        self._with_lock_retry('mark_processing', _mark)

    def get_service_config(self, service_id: str) -> ServiceConfig | None:
        with self.db.session() as session:
            row = session.get(AiServiceEntity, service_id)
            if row is None:
                return None
            return ServiceConfig(
                service_id=row.service_id,
                display_name=row.display_name,
                api_key=row.api_key,
                base_url=row.base_url,
                is_active=bool(row.is_active),
            )

    def upsert_service(self, config: ServiceConfig) -> None:
        with self.db.session() as session:
            row = session.get(AiServiceEntity, config.service_id)
            if row is None:
                row = AiServiceEntity(service_id=config.service_id)
            row.display_name = config.display_name
            row.api_key = config.api_key
            row.base_url = config.base_url
            row.is_active = bool(config.is_active)
            session.add(row)

    def add_order(self, order: OrderRecord) -> None:
        with self.db.session() as session:
            session.add(
                OrderEntity(
                    order_id=order.order_id,
                    user_id=order.user_id,
                    service_id=order.service_id,
                    input_payload_json=_dump_json(dict(order.input_payload or {})),
                    status=order.status,
                    updated_at=datetime.now(timezone.utc),
                )
            )
