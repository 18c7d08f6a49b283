"""
Topic-based notification fabric for the agent monitor.

Observers subscribe to named topics (``agents``, ``tasks``, ``messages``,
``system`` or ``agent:<id>``) and receive every event published to those
topics while they are subscribed. Delivery is a non-blocking put on a
bounded per-observer queue; nothing is buffered for observers that join
later.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Callable, Coroutine, Iterable

from pydantic_core import to_jsonable_python

from agent_monitor.types import MonitorEvent, OverflowPolicy

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[[MonitorEvent], Coroutine[Any, Any, None] | None]

TOPIC_AGENTS = "agents"
TOPIC_TASKS = "tasks"
TOPIC_MESSAGES = "messages"
TOPIC_SYSTEM = "system"

_observer_ids = itertools.count(1)


def agent_topic(agent_id: str) -> str:
    """Reserved topic carrying point-to-point commands for one agent."""
    return f"agent:{agent_id}"


class Observer:
    """A subscriber endpoint with a bounded outbound queue."""

    def __init__(
        self,
        observer_id: str | None = None,
        max_queue: int = 256,
        overflow_policy: OverflowPolicy = "drop_oldest",
    ) -> None:
        self.id = observer_id or f"observer-{next(_observer_ids)}"
        self.overflow_policy = overflow_policy
        self.dropped = 0
        self._queue: asyncio.Queue[MonitorEvent] = asyncio.Queue(maxsize=max_queue)
        self._closed = False
        self._closing = asyncio.Event()

    def __repr__(self) -> str:
        return f"Observer({self.id!r})"

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def deliver(self, event: MonitorEvent) -> bool:
        """Enqueue without blocking.

        Returns ``False`` when the queue is full and the policy asks for a
        disconnect instead of dropping the oldest event.
        """
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            if self.overflow_policy == "disconnect":
                return False
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(event)
            logger.warning("Observer %s queue full, dropped oldest event", self.id)
            return True

    async def get(self) -> MonitorEvent:
        return await self._queue.get()

    def get_nowait(self) -> MonitorEvent:
        return self._queue.get_nowait()

    def drain(self) -> list[MonitorEvent]:
        """Take every queued event without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    async def events(self) -> AsyncIterator[MonitorEvent]:
        """Yield events until the observer is closed and its queue empty."""
        while not (self._closed and self._queue.empty()):
            yield await self._queue.get()

    async def wait_closed(self) -> None:
        await self._closing.wait()

    def close(self) -> None:
        self._closed = True
        self._closing.set()


class NotificationFabric:
    """Maps topics to their subscribed observers and fans events out."""

    def __init__(self, max_queue: int = 256, overflow_policy: OverflowPolicy = "drop_oldest") -> None:
        self._topics: dict[str, set[Observer]] = defaultdict(set)
        self._memberships: dict[Observer, set[str]] = defaultdict(set)
        self._max_queue = max_queue
        self._overflow_policy = overflow_policy
        self._listen_tasks: dict[Observer, asyncio.Task[None]] = {}

    def observer(self, observer_id: str | None = None) -> Observer:
        """Create an observer using this fabric's queue settings."""
        return Observer(observer_id, max_queue=self._max_queue, overflow_policy=self._overflow_policy)

    def subscribe(self, observer: Observer, topics: Iterable[str]) -> None:
        """Add ``observer`` to each topic. Repeated calls are harmless.

        Closed observers are ignored.
        """
        if observer.closed:
            logger.debug("Ignoring subscribe from closed %s", observer.id)
            return
        for topic in topics:
            self._topics[topic].add(observer)
            self._memberships[observer].add(topic)
        logger.debug("%s subscribed to %s", observer.id, sorted(self._memberships.get(observer, ())))

    def unsubscribe(self, observer: Observer, topics: Iterable[str]) -> None:
        """Remove ``observer`` from each topic; unknown memberships are ignored."""
        for topic in topics:
            members = self._topics.get(topic)
            if members is not None:
                members.discard(observer)
                if not members:
                    del self._topics[topic]
            joined = self._memberships.get(observer)
            if joined is not None:
                joined.discard(topic)
                if not joined:
                    del self._memberships[observer]

    def disconnect(self, observer: Observer) -> None:
        """Drop every membership of ``observer`` and close it."""
        self.unsubscribe(observer, list(self._memberships.get(observer, ())))
        observer.close()
        task = self._listen_tasks.pop(observer, None)
        if task is not None and not task.done():
            task.cancel()
        logger.debug("%s disconnected", observer.id)

    def topics(self) -> list[str]:
        return sorted(self._topics)

    def subscribers(self, topic: str) -> list[Observer]:
        return list(self._topics.get(topic, ()))

    def subscriptions(self, observer: Observer) -> set[str]:
        return set(self._memberships.get(observer, ()))

    def publish(self, topic: str, event_name: str, payload: Any) -> int:
        """Deliver an event to every observer currently on ``topic``.

        The payload is converted to JSON-ready data once, before fan-out, so
        observers never share mutable state with the caller. Returns the
        number of observers the event reached.
        """
        data = to_jsonable_python(payload, by_alias=True)
        event = MonitorEvent(type=event_name, topic=topic, data=data)

        delivered = 0
        overflowed = []
        for observer in list(self._topics.get(topic, ())):
            if observer.deliver(event):
                delivered += 1
            else:
                overflowed.append(observer)

        for observer in overflowed:
            logger.warning("Disconnecting %s: outbound queue overflow", observer.id)
            self.disconnect(observer)

        logger.debug("Published %s on %s to %d observer(s)", event_name, topic, delivered)
        return delivered

    def route_command(self, agent_id: str, command: str, payload: dict[str, Any] | None = None) -> int:
        """Send a command to whoever listens on ``agent:<agent_id>``."""
        data = {"agentId": agent_id, "command": command}
        if payload:
            data["payload"] = payload
        return self.publish(agent_topic(agent_id), "command", data)

    # ---- Callback observers ----

    def attach(self, handler: EventHandler, topics: Iterable[str]) -> Observer:
        """Subscribe a callback; events are dispatched from a background task."""
        observer = self.observer()
        self.subscribe(observer, topics)
        self._listen_tasks[observer] = asyncio.create_task(self._listen_loop(observer, handler))
        return observer

    async def _listen_loop(self, observer: Observer, handler: EventHandler) -> None:
        """Drain an observer's queue into its handler."""
        try:
            async for event in observer.events():
                try:
                    result = handler(event)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:
                    logger.exception("Error in event handler for %s", event.type)
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        """Disconnect every observer and stop callback dispatch."""
        tasks = list(self._listen_tasks.values())
        for observer in list(self._memberships):
            self.disconnect(observer)
        for observer in list(self._listen_tasks):
            self.disconnect(observer)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
