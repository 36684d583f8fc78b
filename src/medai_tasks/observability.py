from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import json
import logging
import sys
from threading import Lock
from typing import Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

LOGGER_ROOT = 'medai_tasks'

_task_id_var: ContextVar[str | None] = ContextVar('task_id', default=None)
_order_id_var: ContextVar[str | None] = ContextVar('order_id', default=None)


def set_task_context(task_id: str | None = None, order_id: str | None = None) -> None:
    """Set correlation context for structured log output."""
    _task_id_var.set(task_id)
    _order_id_var.set(order_id)


def get_task_id() -> str | None:
    return _task_id_var.get(None)


def get_order_id() -> str | None:
    return _order_id_var.get(None)


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        task_id = getattr(record, 'task_id', None) or _task_id_var.get(None)
        if task_id:
            payload['task_id'] = task_id
        order_id = getattr(record, 'order_id', None) or _order_id_var.get(None)
        if order_id:
            payload['order_id'] = order_id
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def get_tracer(name: str):
    return trace.get_tracer(name)


@contextmanager
def span(tracer, name: str, attributes: dict | None = None) -> Iterator[object]:
    clean = {k: v for k, v in (attributes or {}).items() if v is not None}
    with tracer.start_as_current_span(name, attributes=clean) as current:
        yield current


def configure_observability(*, service_name: str, otlp_endpoint: str | None, level: str = 'INFO') -> None:
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger(LOGGER_ROOT)
            has_json_handler = any(
                isinstance(handler, logging.StreamHandler)
                and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
                for handler in root.handlers
            )
            if not has_json_handler:
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(getattr(logging, str(level or 'INFO').upper(), logging.INFO))
            _configured = True

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return
        provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _configured_otlp_endpoint = endpoint
    logging.getLogger(f'{LOGGER_ROOT}.observability').info('tracing_enabled endpoint=%s', endpoint)
