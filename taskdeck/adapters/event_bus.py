"""Broadcast hub fanning engine events out to connected observers.

Each observer owns a bounded outbound queue. Publishing never awaits:
an observer whose queue is full is dropped and must reconnect, which
gets it a fresh ``init`` snapshot instead of a replay.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any, Callable

from taskdeck.adapters.events import DeckEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Observer:
    """One connected client's outbound queue."""

    def __init__(self, observer_id: str, maxsize: int = 1000) -> None:
        self.id = observer_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, message: dict[str, Any]) -> bool:
        """Enqueue without waiting. False when the queue is full or closed."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> list[dict[str, Any]]:
        """Remove and return everything queued (tests and shutdown)."""
        items: list[dict[str, Any]] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                items.append(item)
        return items

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Make room for the sentinel so a blocked consumer wakes up.
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def consume(self) -> AsyncIterator[dict[str, Any]]:
        """Yield queued messages until the observer is closed."""
        while True:
            message = await self._queue.get()
            if message is _CLOSED:
                return
            yield message


class BroadcastHub:
    """Fan-out of task/workspace/archive events to all observers."""

    def __init__(
        self,
        snapshot: Callable[[], DeckEvent] | None = None,
        queue_size: int = 1000,
    ) -> None:
        self._snapshot = snapshot
        self._queue_size = queue_size
        self._observers: dict[str, Observer] = {}
        self._drop_callbacks: list[Callable[[str], Any]] = []
        self._background: set[asyncio.Task] = set()

    def set_snapshot(self, snapshot: Callable[[], DeckEvent]) -> None:
        self._snapshot = snapshot

    def on_disconnect(self, callback: Callable[[str], Any]) -> None:
        """Register ``callback(observer_id)``; coroutine results are scheduled."""
        self._drop_callbacks.append(callback)

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def get(self, observer_id: str) -> Observer | None:
        return self._observers.get(observer_id)

    def connect(self, observer_id: str | None = None) -> Observer:
        """Register a new observer with the init snapshot already queued.

        The snapshot is enqueued before the observer joins the fan-out, so
        no delta can reach it ahead of the state it applies to.
        """
        observer = Observer(observer_id or f"obs-{uuid.uuid4().hex[:8]}", self._queue_size)
        if self._snapshot is not None:
            observer.offer(self._snapshot().to_message())
        self._observers[observer.id] = observer
        logger.info(
            "Observer %s connected (%d total)", observer.id, len(self._observers)
        )
        return observer

    def publish(self, event: DeckEvent) -> None:
        """Send ``event`` to every observer without blocking."""
        message = event.to_message()
        for observer in list(self._observers.values()):
            if not observer.offer(message):
                logger.warning(
                    "Observer %s fell behind (%d queued), dropping it",
                    observer.id, observer.pending(),
                )
                self.disconnect(observer.id)

    def send(self, observer_id: str | None, event: DeckEvent) -> bool:
        """Send ``event`` to one observer. False if it is gone."""
        if observer_id is None:
            return False
        observer = self._observers.get(observer_id)
        if observer is None:
            return False
        if observer.offer(event.to_message()):
            return True
        logger.warning("Observer %s fell behind on a direct reply, dropping it", observer_id)
        self.disconnect(observer_id)
        return False

    def disconnect(self, observer_id: str) -> None:
        observer = self._observers.pop(observer_id, None)
        if observer is None:
            return
        observer.close()
        logger.info(
            "Observer %s disconnected (%d remaining)",
            observer_id, len(self._observers),
        )
        for callback in self._drop_callbacks:
            try:
                result = callback(observer_id)
            except Exception:
                logger.exception("Observer drop callback failed for %s", observer_id)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._background.discard)

    def close(self) -> None:
        for observer_id in list(self._observers):
            self.disconnect(observer_id)
