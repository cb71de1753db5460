import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

Listener = Callable[[], None]
Unsubscribe = Callable[[], None]


class NotificationHub:
    """
    Synchronous in-process fan-out to zero-argument listeners.

    ``notify`` snapshots the listener set before calling anyone, so a listener
    that subscribes or unsubscribes during delivery only affects the next
    round. Delivery is best-effort: a failing listener is logged and the
    others still run.
    """

    def __init__(self) -> None:
        self._listeners: dict[int, Listener] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Unsubscribe:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def notify(self) -> None:
        with self._lock:
            snapshot = list(self._listeners.values())

        for listener in snapshot:
            try:
                listener()
            except Exception:
                logger.exception("Change listener %r failed", listener)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
