"""Read-side views of the order and AI-service tables owned by other parts of the platform.

The task engine reads an order once at enqueue time and the service
configuration whenever it needs to reach the remote workflow application.
The only write it asks for is flipping a paid order to ``processing``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol


@dataclass(frozen=True)
class OrderRecord:
    order_id: str
    user_id: str
    service_id: str
    input_payload: dict = field(default_factory=dict)
    status: str = 'paid'


@dataclass(frozen=True)
class ServiceConfig:
    service_id: str
    display_name: str
    api_key: str | None
    base_url: str | None
    is_active: bool = True

    @property
    def has_credentials(self) -> bool:
        return bool(str(self.api_key or '').strip()) and bool(str(self.base_url or '').strip())


class OrderDirectory(Protocol):
    def get_order(self, order_id: str) -> OrderRecord | None:
        ...

    def mark_processing(self, order_id: str) -> None:
        ...


class ServiceConfigDirectory(Protocol):
    def get_service_config(self, service_id: str) -> ServiceConfig | None:
        ...


class InMemoryCatalog:
    """Order and service-config directory backed by plain dicts."""

    def __init__(
        self,
        *,
        orders: list[OrderRecord] | None = None,
        services: list[ServiceConfig] | None = None,
    ):
        self._lock = Lock()
        self.orders: dict[str, OrderRecord] = {o.order_id: o for o in (orders or [])}
        self.services: dict[str, ServiceConfig] = {s.service_id: s for s in (services or [])}

    def add_order(self, order: OrderRecord) -> None:
        with self._lock:
            self.orders[order.order_id] = order

    def add_service(self, service: ServiceConfig) -> None:
        with self._lock:
            self.services[service.service_id] = service

    def get_order(self, order_id: str) -> OrderRecord | None:
        with self._lock:
            return self.orders.get(order_id)

    def mark_processing(self, order_id: str) -> None:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None:
                raise KeyError(order_id)
            self.orders[order_id] = OrderRecord(
                order_id=order.order_id,
                user_id=order.user_id,
                service_id=order.service_id,
                input_payload=dict(order.input_payload),
                status='processing',
            )

    def get_service_config(self, service_id: str) -> ServiceConfig | None:
        with self._lock:
            return self.services.get(service_id)
