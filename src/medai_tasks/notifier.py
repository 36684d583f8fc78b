from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Callable
from uuid import uuid4

from medai_tasks.domain.events import normalize_event_type
from medai_tasks.observability import get_logger

_log = get_logger('medai_tasks.notifier')

DEFAULT_CHANNEL = 'task-updates'

Subscriber = Callable[[dict], None]


class RealtimeNotifier:
    """Fan lifecycle events out to in-process subscribers.

    Delivery is best-effort: a subscriber that raises is logged and the
    remaining subscribers still receive the message.
    """

    def __init__(self, *, channel: str = DEFAULT_CHANNEL):
        self.channel = str(channel or DEFAULT_CHANNEL)
        self._subscribers: dict[str, Subscriber] = {}
        self._lock = Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        token = uuid4().hex
        with self._lock:
            self._subscribers[token] = callback

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return _unsubscribe

    def broadcast(self, event_type: str, payload: dict) -> int:
        message = {
            'channel': self.channel,
            'type': normalize_event_type(event_type),
            'payload': dict(payload or {}),
            'ts': datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            subscribers = list(self._subscribers.values())
        delivered = 0
        for callback in subscribers:
            try:
                callback(message)
                delivered += 1
            except Exception:
                _log.warning('broadcast_subscriber_failed channel=%s type=%s', self.channel, message['type'], exc_info=True)
        return delivered

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()
