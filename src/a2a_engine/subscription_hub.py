"""
Per-task fan-out of update events to streaming subscribers.

Each subscriber owns a bounded buffer. Publishing never waits on a consumer:
an event is appended to every buffer of the task, and a subscriber whose
buffer is full is dropped (its iterator raises ``SubscriberOverflow`` once it
has drained what it already holds). Other subscribers and the task itself are
unaffected.

Publishing is safe from any thread. Delivery into a subscriber always runs on
the event loop the subscriber was created on.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from .a2a.models import TaskStatusUpdateEvent
from .errors import SubscriberOverflow, TaskStreamClosed, UnsupportedOperation

logger = logging.getLogger(__name__)


def event_sequence(event: Any) -> Optional[int]:
    """Status sequence number carried by a status event, if any."""
    if isinstance(event, TaskStatusUpdateEvent) and event.metadata:
        sequence = event.metadata.get("sequence")
        if isinstance(sequence, int):
            return sequence
    return None


def is_final(event: Any) -> bool:
    return isinstance(event, TaskStatusUpdateEvent) and event.final


class Subscriber:
    """Async iterator over the update events of one task."""

    def __init__(
        self,
        hub: "SubscriptionHub",
        task_id: str,
        loop: asyncio.AbstractEventLoop,
        max_queue_size: int,
    ):
        self.id = str(uuid.uuid4())
        self.task_id = task_id
        self.connected_at = datetime.now(timezone.utc)
        self._hub = hub
        self._loop = loop
        self._max_queue_size = max_queue_size
        self._buffer: Deque[Any] = deque()
        self._ready = asyncio.Event()
        self._finished = False
        self._error: Optional[Exception] = None
        self._last_sequence = -1
        self.delivered = 0

    @property
    def finished(self) -> bool:
        return self._finished

    def _call_soon(self, callback: Callable[..., None], *args: Any) -> None:
        """Run ``callback`` on this subscriber's loop."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            callback(*args)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    def _offer(self, event: Any) -> None:
        if self._finished:
            return

        if len(self._buffer) >= self._max_queue_size:
            logger.warning(
                "Subscriber buffer full, dropping subscriber",
                extra={"task_id": self.task_id, "subscriber_id": self.id},
            )
            self._hub._discard(self, dropped=True)
            self._finish(SubscriberOverflow(self.task_id, event_sequence(event)))
            return

        self._buffer.append(event)
        if is_final(event):
            self._finished = True
        self._ready.set()

    def _finish(self, error: Optional[Exception] = None) -> None:
        if not self._finished:
            self._finished = True
            self._error = error
        self._ready.set()

    def __aiter__(self) -> "Subscriber":
        return self

    async def __anext__(self) -> Any:
        event = await self._next()
        if event is None:
            raise StopAsyncIteration
        return event

    async def get(self, timeout: Optional[float] = None) -> Optional[Any]:
        """Next event, or None once the stream has ended.

        Raises ``asyncio.TimeoutError`` when no event arrives within ``timeout``.
        """
        if timeout is None:
            return await self._next()
        return await asyncio.wait_for(self._next(), timeout)

    async def _next(self) -> Optional[Any]:
        while True:
            while self._buffer:
                event = self._buffer.popleft()
                sequence = event_sequence(event)
                if sequence is not None:
                    if sequence <= self._last_sequence:
                        continue
                    self._last_sequence = sequence
                self.delivered += 1
                if is_final(event):
                    self._buffer.clear()
                    self._error = None
                return event

            if self._finished:
                if self._error is not None:
                    error, self._error = self._error, None
                    raise error
                return None

            self._ready.clear()
            await self._ready.wait()

    async def close(self) -> None:
        """Stop receiving events; the iterator ends after buffered events."""
        self._hub._discard(self)
        self._finish()

    async def __aenter__(self) -> "Subscriber":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class SubscriptionHub:
    """
    Fans out task update events to the subscribers of each task.

    The hub remembers the final event of every finished task so that a
    subscriber arriving afterwards receives it immediately and closes.
    """

    def __init__(self, max_queue_size: int = 100, max_subscribers_per_task: int = 50):
        self.max_queue_size = max_queue_size
        self.max_subscribers_per_task = max_subscribers_per_task
        self._subscribers: Dict[str, Dict[str, Subscriber]] = {}
        self._final_events: Dict[str, TaskStatusUpdateEvent] = {}
        self._lock = threading.Lock()
        self._published = 0
        self._dropped = 0

    def subscribe(self, task_id: str) -> Subscriber:
        """Register a subscriber for ``task_id`` on the running event loop."""
        loop = asyncio.get_running_loop()
        subscriber = Subscriber(self, task_id, loop, self.max_queue_size)

        with self._lock:
            final_event = self._final_events.get(task_id)
            if final_event is None:
                current = self._subscribers.setdefault(task_id, {})
                if len(current) >= self.max_subscribers_per_task:
                    raise UnsupportedOperation(
                        f"Too many subscribers for task {task_id}",
                        data={"taskId": task_id, "limit": self.max_subscribers_per_task},
                    )
                current[subscriber.id] = subscriber

        if final_event is not None:
            subscriber._offer(final_event.model_copy(deep=True))
        else:
            logger.debug(
                "Subscriber registered",
                extra={"task_id": task_id, "subscriber_id": subscriber.id},
            )
        return subscriber

    def remember_final(self, task_id: str, event: TaskStatusUpdateEvent) -> None:
        """Record the final event of a task finished outside this hub's view."""
        with self._lock:
            self._final_events.setdefault(task_id, event.model_copy(deep=True))

    def publish(self, task_id: str, event: Any) -> None:
        """Deliver ``event`` to every current subscriber of ``task_id`` without blocking."""
        final = is_final(event)
        with self._lock:
            self._published += 1
            if final:
                self._final_events[task_id] = event.model_copy(deep=True)
                subscribers = list(self._subscribers.pop(task_id, {}).values())
            else:
                subscribers = list(self._subscribers.get(task_id, {}).values())

        for subscriber in subscribers:
            subscriber._call_soon(subscriber._offer, event.model_copy(deep=True))

    def _discard(self, subscriber: Subscriber, dropped: bool = False) -> None:
        with self._lock:
            current = self._subscribers.get(subscriber.task_id)
            if current is None or current.pop(subscriber.id, None) is None:
                return
            if dropped:
                self._dropped += 1
            if not current:
                del self._subscribers[subscriber.task_id]

    def has_subscribers(self, task_id: str) -> bool:
        with self._lock:
            return bool(self._subscribers.get(task_id))

    def subscriber_count(self, task_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(task_id, {}))

    def close_task(self, task_id: str, reason: str = "task deleted") -> int:
        """End every stream of ``task_id`` with ``TaskStreamClosed``."""
        with self._lock:
            subscribers = list(self._subscribers.pop(task_id, {}).values())
            self._final_events.pop(task_id, None)

        for subscriber in subscribers:
            subscriber._call_soon(subscriber._finish, TaskStreamClosed(task_id, reason))

        if subscribers:
            logger.info(
                "Closed task streams",
                extra={"task_id": task_id, "subscribers": len(subscribers), "reason": reason},
            )
        return len(subscribers)

    def forget(self, task_id: str) -> None:
        """Drop the remembered final event of ``task_id``."""
        with self._lock:
            self._final_events.pop(task_id, None)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "tasks": len(self._subscribers),
                "subscribers": sum(len(subs) for subs in self._subscribers.values()),
                "finished_tasks": len(self._final_events),
                "published": self._published,
                "dropped": self._dropped,
            }

    def close(self) -> None:
        """End every open stream gracefully."""
        with self._lock:
            subscribers: List[Subscriber] = [
                sub for subs in self._subscribers.values() for sub in subs.values()
            ]
            self._subscribers.clear()
            self._final_events.clear()

        for subscriber in subscribers:
            subscriber._call_soon(subscriber._finish)
        logger.info("Subscription hub closed", extra={"subscribers": len(subscribers)})
