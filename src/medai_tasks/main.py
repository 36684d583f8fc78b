from __future__ import annotations

import logging

from medai_tasks.api import create_app
from medai_tasks.collaborators import InMemoryCatalog
from medai_tasks.config import load_settings
from medai_tasks.db import Database, SqlCatalog, SqlTaskRepository
from medai_tasks.executor import TaskExecutor
from medai_tasks.notifier import RealtimeNotifier
from medai_tasks.observability import configure_observability
from medai_tasks.repository import InMemoryTaskRepository
from medai_tasks.service import OrchestratorService
from medai_tasks.workflow_client import WorkflowClientFactory

_log = logging.getLogger(__name__)


def build_service(settings=None) -> OrchestratorService:
    settings = settings or load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        level=settings.log_level,
    )

    database_probe = None
    try:
        db = Database(settings.database_url)
        db.create_schema()
        repo = SqlTaskRepository(db)
        catalog = SqlCatalog(db)
        database_probe = db.ping
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        repo = InMemoryTaskRepository()
        catalog = InMemoryCatalog()

    return OrchestratorService(
        repository=repo,
        orders=catalog,
        service_configs=catalog,
        client_factory=WorkflowClientFactory(
            timeout_seconds=settings.dify_timeout_seconds,
            max_retries=settings.dify_max_retries,
            retry_delay_seconds=settings.dify_retry_delay_seconds,
        ),
        notifier=RealtimeNotifier(channel=settings.realtime_channel),
        executor=TaskExecutor(max_workers=settings.max_concurrent_tasks),
        max_retries=settings.max_task_retries,
        response_mode=settings.response_mode,
        database_probe=database_probe,
    )


def build_app():
    return create_app(service=build_service())


app = build_app()
