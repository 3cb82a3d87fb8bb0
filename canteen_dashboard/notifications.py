from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class ChangeFeed:
    """Per-canteen "something changed" notifications without payload.

    Listeners may be registered and fired from any thread. A failing listener
    is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Listener]] = {}

    def subscribe(self, canteen_id: str, on_change: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(canteen_id, []).append(on_change)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(canteen_id, [])
                if on_change in listeners:
                    listeners.remove(on_change)
                if not listeners:
                    self._listeners.pop(canteen_id, None)

        return unsubscribe

    def publish(self, canteen_id: str) -> int:
        with self._lock:
            listeners = list(self._listeners.get(canteen_id, []))
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Change listener failed for canteen=%s", canteen_id)
        return len(listeners)

    def listener_count(self, canteen_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(canteen_id, []))
