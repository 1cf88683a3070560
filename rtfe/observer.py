"""
Observer Pattern – EventBus
===========================
An in-process publish/subscribe bus used by the coordinator to keep side
effects (alerting, statistics, logging) off the main evaluation path.

Events are queued by priority and drained by a single loop guarded by an
in-flight flag: each event's listeners are awaited together before the
next event is dequeued, so a slow listener delays but never duplicates
later dispatches.  Listener failures are logged per listener and never
abort the batch.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, Union

logger = logging.getLogger(__name__)

MAX_HISTORY = 1000
MAX_QUEUE = 100


class EventType(Enum):
    """Categories of engine events."""

    EVALUATION_COMPLETED = "evaluation_completed"
    FEEDBACK_GENERATED = "feedback_generated"
    OPTIMIZATION_STARTED = "optimization_started"
    OPTIMIZATION_COMPLETED = "optimization_completed"
    WEIGHT_ADJUSTED = "weight_adjusted"
    SYSTEM_ERROR = "system_error"
    SYSTEM_STARTED = "system_started"
    CONFIGURATION_UPDATED = "configuration_updated"
    AGENT_ACTIVATED = "agent_activated"
    AGENT_DEACTIVATED = "agent_deactivated"
    QUALITY_THRESHOLD_CROSSED = "quality_threshold_crossed"
    CONSISTENCY_ALERT = "consistency_alert"


class EventPriority(Enum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass
class EventMetadata:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)
    source: str = "system"
    priority: EventPriority = EventPriority.MEDIUM


@dataclass
class Event:
    """A single engine event."""

    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    metadata: EventMetadata = field(default_factory=EventMetadata)


Listener = Callable[[Event], Union[None, Awaitable[None]]]
EventFilter = Callable[[Event], bool]


class EventObserver(Protocol):
    """Protocol that any object-style subscriber must satisfy."""

    def on_event(self, event: Event) -> None: ...


@dataclass
class _Registration:
    listener_id: str
    callback: Listener
    once: bool = False
    priority: int = 0
    filter: EventFilter | None = None


class EventBus:
    """Priority-ordered async pub-sub bus.

    Usage::

        bus = EventBus()
        bus.on(EventType.EVALUATION_COMPLETED, handler, priority=10)
        await bus.emit(EventType.EVALUATION_COMPLETED, {"overall_score": 0.8})
    """

    def __init__(self, max_history: int = MAX_HISTORY, max_queue: int = MAX_QUEUE) -> None:
        self._listeners: dict[EventType, list[_Registration]] = {}
        self._history: deque[Event] = deque(maxlen=max_history)
        self._queue: list[tuple[int, int, Event]] = []
        self._max_queue = max_queue
        self._seq = itertools.count()
        self._draining = False
        self._closed = False
        self._dropped = 0
        self._avg_dispatch_ms = 0.0
        self._pending_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------ #
    #  Subscription
    # ------------------------------------------------------------------ #

    def on(
        self,
        event_type: EventType,
        callback: Listener | EventObserver,
        *,
        once: bool = False,
        priority: int = 0,
        filter: EventFilter | None = None,
    ) -> str:
        """Register *callback* for *event_type* and return its listener id.

        Higher *priority* listeners are invoked first.
        """
        fn = getattr(callback, "on_event", callback)
        reg = _Registration(
            listener_id=uuid.uuid4().hex[:12],
            callback=fn,
            once=once,
            priority=priority,
            filter=filter,
        )
        regs = self._listeners.setdefault(event_type, [])
        regs.append(reg)
        regs.sort(key=lambda r: r.priority, reverse=True)
        return reg.listener_id

    def once(
        self,
        event_type: EventType,
        callback: Listener | EventObserver,
        *,
        priority: int = 0,
        filter: EventFilter | None = None,
    ) -> str:
        return self.on(event_type, callback, once=True, priority=priority, filter=filter)

    def subscribe_all(self, callback: Listener | EventObserver, *, priority: int = 0) -> list[str]:
        """Register *callback* for **every** event type."""
        return [self.on(et, callback, priority=priority) for et in EventType]

    def off(self, event_type: EventType, listener_id: str) -> bool:
        """Remove a listener. Returns ``True`` if it was registered."""
        regs = self._listeners.get(event_type, [])
        for i, reg in enumerate(regs):
            if reg.listener_id == listener_id:
                del regs[i]
                return True
        return False

    def remove_all_listeners(self, event_type: EventType | None = None) -> None:
        if event_type is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event_type, None)

    def has_listeners(self, event_type: EventType) -> bool:
        return bool(self._listeners.get(event_type))

    def listener_count(self, event_type: EventType | None = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, []))
        return sum(len(regs) for regs in self._listeners.values())

    # ------------------------------------------------------------------ #
    #  Emission
    # ------------------------------------------------------------------ #

    def _make_event(
        self,
        event_type: EventType,
        payload: dict[str, Any] | None,
        message: str,
        source: str,
        priority: EventPriority,
    ) -> Event:
        return Event(
            event_type=event_type,
            payload=dict(payload or {}),
            message=message,
            metadata=EventMetadata(source=source, priority=priority),
        )

    async def emit(
        self,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        *,
        message: str = "",
        source: str = "system",
        priority: EventPriority = EventPriority.MEDIUM,
    ) -> Event:
        """Queue an event and drain the queue unless a drain is already running."""
        event = self._make_event(event_type, payload, message, source, priority)
        if self._closed:
            logger.debug("EventBus closed; dropping %s", event_type.value)
            return event

        self._history.append(event)
        self._enqueue(event)
        if not self._draining:
            await self._drain()
        return event

    def emit_sync(
        self,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        *,
        message: str = "",
        source: str = "system",
        priority: EventPriority = EventPriority.HIGH,
    ) -> Event:
        """Deliver an event immediately, bypassing the queue.

        Synchronous listeners run before this returns.  Coroutine listeners
        are scheduled on the running loop; without one they are skipped.
        """
        event = self._make_event(event_type, payload, message, source, priority)
        if self._closed:
            return event
        self._history.append(event)
        for awaitable in self._invoke_listeners(event):
            self._schedule(awaitable, event)
        return event

    def _enqueue(self, event: Event) -> None:
        if len(self._queue) >= self._max_queue:
            oldest = min(range(len(self._queue)), key=lambda i: self._queue[i][1])
            dropped = self._queue.pop(oldest)[2]
            self._dropped += 1
            logger.warning(
                "Event queue full (%d); dropped %s", self._max_queue, dropped.event_type.value
            )
        item = (-event.metadata.priority.value, next(self._seq), event)
        # Higher priority first, FIFO within a priority.
        idx = len(self._queue)
        for i, queued in enumerate(self._queue):
            if item[:2] < queued[:2]:
                idx = i
                break
        self._queue.insert(idx, item)

    async def _drain(self) -> None:
        self._draining = True
        try:
            while self._queue:
                _, _, event = self._queue.pop(0)
                await self._dispatch(event)
        finally:
            self._draining = False

    async def _dispatch(self, event: Event) -> None:
        t0 = time.perf_counter()
        pending = self._invoke_listeners(event)
        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for res in results:
                if isinstance(res, Exception):
                    logger.error(
                        "Async listener raised for %s",
                        event.event_type.value,
                        exc_info=res,
                    )
        elapsed_ms = (time.perf_counter() - t0) * 1000
        self._avg_dispatch_ms = self._avg_dispatch_ms * 0.9 + elapsed_ms * 0.1

    def _invoke_listeners(self, event: Event) -> list[Awaitable[Any]]:
        """Call every matching listener; return the awaitables they produced."""
        regs = list(self._listeners.get(event.event_type, []))
        pending: list[Awaitable[Any]] = []
        for reg in regs:
            try:
                if reg.filter is not None and not reg.filter(event):
                    continue
            except Exception:
                logger.exception("Listener filter raised for %s", event.event_type.value)
                continue

            if reg.once:
                self.off(event.event_type, reg.listener_id)

            try:
                result = reg.callback(event)
            except Exception:
                logger.exception("Listener raised for %s", event.event_type.value)
                continue
            if inspect.isawaitable(result):
                pending.append(result)
        return pending

    def _schedule(self, awaitable: Awaitable[Any], event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running loop; async listener for %s skipped", event.event_type.value
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(_guarded(awaitable, event))
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    # ------------------------------------------------------------------ #
    #  Introspection
    # ------------------------------------------------------------------ #

    def history(
        self,
        event_type: EventType | None = None,
        *,
        source: str | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Return retained events, newest first, optionally filtered."""
        events = [
            e
            for e in reversed(self._history)
            if (event_type is None or e.event_type is event_type)
            and (source is None or e.metadata.source == source)
            and (since is None or e.metadata.timestamp >= since)
        ]
        return events[:limit] if limit is not None else events

    def statistics(self) -> dict[str, Any]:
        distribution = Counter(e.event_type.value for e in self._history)
        return {
            "total_events": len(self._history),
            "active_listeners": self.listener_count(),
            "queue_size": len(self._queue),
            "dropped_events": self._dropped,
            "average_dispatch_ms": self._avg_dispatch_ms,
            "event_distribution": dict(distribution),
        }

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Drop listeners, pending events and history; further emits are ignored."""
        self._closed = True
        self._listeners.clear()
        self._queue.clear()
        self._history.clear()
        for task in list(self._pending_tasks):
            task.cancel()


async def _guarded(awaitable: Awaitable[Any], event: Event) -> None:
    try:
        await awaitable
    except Exception:
        logger.exception("Async listener raised for %s", event.event_type.value)


class LoggingObserver:
    """Default observer that writes every event to Python's logging module."""

    def on_event(self, event: Event) -> None:
        logger.info("[%s] %s", event.event_type.name, event.message or event.payload)
