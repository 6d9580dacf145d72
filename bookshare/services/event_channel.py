from __future__ import annotations

import itertools
import logging
from typing import Callable, Dict, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class EventChannel(Generic[T]):
    """Fan-out publish/subscribe channel for one event type.

    Every subscription gets its own token, so subscribing the same callable
    twice yields two independent subscriptions. Publishing iterates over a
    snapshot, so listeners may subscribe or unsubscribe from inside a
    callback. A failing listener is logged and does not stop delivery to
    the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: Dict[int, Callable[[T], None]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, listener: Callable[[T], None]) -> Unsubscribe:
        token = next(self._ids)
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def publish(self, event: T) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener on '{self.name}' channel failed")

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
