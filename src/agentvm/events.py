"""Typed lifecycle notifications.

Every VM status change, and a few orchestrator-level milestones, is
published as a LifecycleEvent on an EventBus.  Subscribers are either
callbacks (sync or async) or bounded queues consumed with ``async for``.

Usage:
    async with orchestrator.events.subscribe() as events:
        async for event in events:
            if event.kind is EventKind.STARTED:
                ...
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field

from agentvm._logging import get_logger
from agentvm.models import utcnow
from agentvm.subprocess_utils import log_task_exception
from agentvm.vm_types import VmStatus

logger = get_logger(__name__)


class EventKind(str, Enum):
    CREATED = "created"
    BOOTING = "booting"
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    STOPPED = "stopped"
    ERROR = "error"
    DELETED = "deleted"
    RESTORED = "restored"
    SNAPSHOT_CREATED = "snapshot_created"
    METADATA_UPDATED = "metadata_updated"
    INITIALIZED = "initialized"
    SHUTDOWN = "shutdown"


class LifecycleEvent(BaseModel):
    """One notification.  ``vm_id``/``status`` are None for orchestrator-level events."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    vm_id: str | None = None
    status: VmStatus | None = None
    error: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
    at: datetime = Field(default_factory=utcnow)


EventCallback = Callable[[LifecycleEvent], Awaitable[None] | None]


class Subscription:
    """Bounded queue of events; drops the oldest event when full."""

    def __init__(self, bus: EventBus, maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[LifecycleEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, event: LifecycleEvent | None) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                with contextlib.suppress(asyncio.QueueEmpty):
                    self._queue.get_nowait()
                    self.dropped += 1
                    logger.warning("Event subscriber queue full, dropped oldest event")

    async def get(self) -> LifecycleEvent | None:
        """Next event, or None once the bus has closed."""
        return await self._queue.get()

    def get_nowait(self) -> LifecycleEvent | None:
        return self._queue.get_nowait()

    def close(self) -> None:
        self._bus._subscriptions.discard(self)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> LifecycleEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Fan-out publisher.  A failing subscriber never affects others or the publisher."""

    def __init__(self) -> None:
        self._callbacks: list[EventCallback] = []
        self._subscriptions: set[Subscription] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def add_listener(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return remove

    def subscribe(self, maxsize: int = 256) -> Subscription:
        subscription = Subscription(self, maxsize)
        self._subscriptions.add(subscription)
        return subscription

    def publish(self, event: LifecycleEvent) -> None:
        logger.debug("Lifecycle event", extra={"kind": event.kind.value, "vm_id": event.vm_id})
        for subscription in list(self._subscriptions):
            subscription._offer(event)
        for callback in list(self._callbacks):
            try:
                result = callback(event)
            except Exception:
                logger.error("Event listener failed", extra={"kind": event.kind.value}, exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                task.add_done_callback(log_task_exception)

    async def close(self) -> None:
        """End every subscription and wait for in-flight async callbacks."""
        for subscription in list(self._subscriptions):
            subscription._offer(None)
        self._subscriptions.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
