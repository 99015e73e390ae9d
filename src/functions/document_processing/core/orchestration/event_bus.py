"""Publish/subscribe channel for orchestrator state-change events."""

from __future__ import annotations

import logging
from typing import Callable, List

from ..contracts.state_events import StateEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[StateEvent], None]


class StateEventBus:
    """Delivers state events synchronously, in publish order, to every subscriber."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; the returned function unsubscribes it."""

        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: StateEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:  # subscriber faults never reach the scheduler
                logger.exception("State subscriber %r failed handling %s", callback, type(event).__name__)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
