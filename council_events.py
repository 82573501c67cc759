"""Progress events for observers of a collection run.

Delivery is best-effort: an observer that raises or a queue that is full
loses the event, and the pipeline carries on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

STARTED = "started"
ENGINE_DONE = "engine_done"
SYNTHESIZING = "synthesizing"
COMPLETE = "complete"


@dataclass(frozen=True)
class ProgressEvent:
    kind: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "timestamp": self.timestamp, **self.data}


Observer = Callable[[ProgressEvent], Any]


class ProgressBus:
    def __init__(self) -> None:
        self._observers: list[Observer] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a callable that unsubscribes it."""
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def publish(self, kind: str, **data: Any) -> ProgressEvent:
        event = ProgressEvent(kind=kind, data=data)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.warning("Progress observer %r failed on '%s'", observer, kind, exc_info=True)
        return event

    def queue_subscriber(self, maxsize: int = 100) -> asyncio.Queue:
        """Subscribe an asyncio.Queue. Events are dropped while it is full."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def put(event: ProgressEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Progress queue full, dropping '%s'", event.kind)

        self.subscribe(put)
        return queue
