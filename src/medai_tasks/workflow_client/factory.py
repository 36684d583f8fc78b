from __future__ import annotations

from threading import Lock
import time
from typing import Callable

import httpx

from medai_tasks.collaborators import ServiceConfig
from medai_tasks.domain.errors import PreconditionError
from medai_tasks.workflow_client.base import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    DifyConfig,
)
from medai_tasks.workflow_client.client import DifyClient


class WorkflowClientFactory:
    """Hands out one cached :class:`DifyClient` per (base_url, api_key)."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.timeout_seconds = float(timeout_seconds)
        self.max_retries = int(max_retries)
        self.retry_delay_seconds = float(retry_delay_seconds)
        self._transport = transport
        self._sleep = sleep
        self._clients: dict[tuple[str, str], DifyClient] = {}
        self._lock = Lock()

    def for_service(self, config: ServiceConfig) -> DifyClient:
        if not config.has_credentials:
            raise PreconditionError(
                f'service {config.service_id} has no remote credentials configured',
                field='service_id',
            )
        key = (str(config.base_url).strip().rstrip('/'), str(config.api_key).strip())
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = DifyClient(
                    DifyConfig(
                        base_url=key[0],
                        api_key=key[1],
                        timeout_seconds=self.timeout_seconds,
                        max_retries=self.max_retries,
                        retry_delay_seconds=self.retry_delay_seconds,
                    ),
                    transport=self._transport,
                    sleep=self._sleep,
                )
                self._clients[key] = client
            return client

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()


__all__ = ['WorkflowClientFactory']
