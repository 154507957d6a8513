"""Typed event bus with a bounded queue per subscriber.

Publishing never blocks and never raises: each subscriber owns an
``asyncio.Queue`` drained by its own worker task. A full queue drops the
event for that subscriber only and counts the drop, so backpressure and
failing subscribers stay visible through :meth:`IncidentEventBus.stats`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from irdesk.messaging.topics import EventEnvelope

logger = structlog.get_logger()

EventHandler = Callable[[EventEnvelope], Awaitable[None]]


@dataclass
class Subscription:
    """A named consumer of bus events."""

    name: str
    handler: EventHandler
    queue: asyncio.Queue[EventEnvelope]
    event_types: frozenset[str] | None = None
    delivered: int = 0
    dropped: int = 0
    failed: int = 0
    _task: asyncio.Task[None] | None = field(default=None, repr=False)

    def accepts(self, event_type: str) -> bool:
        return self.event_types is None or event_type in self.event_types

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "queued": self.queue.qsize(),
            "delivered": self.delivered,
            "dropped": self.dropped,
            "failed": self.failed,
            "running": self._task is not None and not self._task.done(),
        }


class IncidentEventBus:
    """Fan incident events out to subscribers without blocking the publisher.

    Usage::

        bus = IncidentEventBus()
        bus.subscribe("audit", audit_forwarder(sink), event_types={AUDIT_RECORD})
        await bus.start()
        bus.publish(INCIDENT_CREATED, {"incident_id": "INC-1"})
        await bus.stop()
    """

    def __init__(self, queue_size: int = 1000) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self._queue_size = queue_size
        self._subscriptions: dict[str, Subscription] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(
        self,
        name: str,
        handler: EventHandler,
        event_types: Iterable[str] | None = None,
        queue_size: int | None = None,
    ) -> Subscription:
        if name in self._subscriptions:
            raise ValueError(f"Subscriber {name!r} already registered")
        sub = Subscription(
            name=name,
            handler=handler,
            queue=asyncio.Queue(maxsize=queue_size or self._queue_size),
            event_types=frozenset(event_types) if event_types is not None else None,
        )
        self._subscriptions[name] = sub
        if self._running:
            sub._task = asyncio.create_task(self._worker(sub), name=f"bus-{name}")
        logger.info("event_bus.subscribed", subscriber=name)
        return sub

    async def unsubscribe(self, name: str) -> bool:
        sub = self._subscriptions.pop(name, None)
        if sub is None:
            return False
        await self._cancel(sub)
        return True

    # ── Publishing ───────────────────────────────────────────────────────

    def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        correlation_id: str | None = None,
    ) -> EventEnvelope:
        """Enqueue an event for every interested subscriber."""
        envelope = EventEnvelope(
            event_type=event_type,
            payload=payload,
            correlation_id=correlation_id,
        )
        for sub in list(self._subscriptions.values()):
            if not sub.accepts(event_type):
                continue
            try:
                sub.queue.put_nowait(envelope)
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.warning(
                    "event_bus.subscriber_queue_full",
                    subscriber=sub.name,
                    event_type=event_type,
                    dropped=sub.dropped,
                )
        return envelope

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for sub in self._subscriptions.values():
            sub._task = asyncio.create_task(self._worker(sub), name=f"bus-{sub.name}")
        logger.info("event_bus.started", subscribers=len(self._subscriptions))

    async def stop(self, drain: bool = True) -> None:
        """Stop all workers, delivering queued events first when *drain* is set."""
        if drain:
            await self.drain()
        self._running = False
        for sub in self._subscriptions.values():
            await self._cancel(sub)
        logger.info("event_bus.stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        if self._running:
            await asyncio.gather(*(s.queue.join() for s in self._subscriptions.values()))
            return
        for sub in list(self._subscriptions.values()):
            while not sub.queue.empty():
                envelope = sub.queue.get_nowait()
                await self._deliver(sub, envelope)
                sub.queue.task_done()

    def stats(self) -> list[dict[str, Any]]:
        return [s.stats() for s in self._subscriptions.values()]

    # ── Internals ────────────────────────────────────────────────────────

    async def _worker(self, sub: Subscription) -> None:
        while True:
            envelope = await sub.queue.get()
            try:
                await self._deliver(sub, envelope)
            finally:
                sub.queue.task_done()

    async def _deliver(self, sub: Subscription, envelope: EventEnvelope) -> None:
        try:
            await sub.handler(envelope)
            sub.delivered += 1
        except Exception as e:
            sub.failed += 1
            logger.warning(
                "event_bus.subscriber_error",
                subscriber=sub.name,
                event_type=envelope.event_type,
                error=str(e),
            )

    async def _cancel(self, sub: Subscription) -> None:
        task, sub._task = sub._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
