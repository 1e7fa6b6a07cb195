"""Tests for EventBus fan-out to callbacks and queue subscriptions."""

import asyncio

from agentvm.events import EventBus, EventKind, LifecycleEvent
from agentvm.vm_types import VmStatus


def event(kind: EventKind = EventKind.STARTED, vm_id: str | None = "fc-1") -> LifecycleEvent:
    return LifecycleEvent(kind=kind, vm_id=vm_id, status=VmStatus.RUNNING if vm_id else None)


class TestCallbacks:
    async def test_sync_callback_receives_events(self) -> None:
        bus = EventBus()
        seen: list[LifecycleEvent] = []
        bus.add_listener(seen.append)

        bus.publish(event())

        assert [e.kind for e in seen] == [EventKind.STARTED]

    async def test_async_callback_awaited_on_close(self) -> None:
        bus = EventBus()
        seen: list[str | None] = []

        async def listener(e: LifecycleEvent) -> None:
            await asyncio.sleep(0)
            seen.append(e.vm_id)

        bus.add_listener(listener)
        bus.publish(event(vm_id="fc-9"))
        await bus.close()

        assert seen == ["fc-9"]

    async def test_failing_callback_does_not_affect_others(self) -> None:
        bus = EventBus()
        seen: list[LifecycleEvent] = []

        def broken(_: LifecycleEvent) -> None:
            raise RuntimeError("listener bug")

        bus.add_listener(broken)
        bus.add_listener(seen.append)

        bus.publish(event())

        assert len(seen) == 1

    async def test_remove_listener(self) -> None:
        bus = EventBus()
        seen: list[LifecycleEvent] = []
        remove = bus.add_listener(seen.append)

        remove()
        remove()
        bus.publish(event())

        assert seen == []


class TestSubscriptions:
    async def test_async_iteration_ends_on_close(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe()

        bus.publish(event(EventKind.CREATED))
        bus.publish(event(EventKind.BOOTING))
        await bus.close()

        kinds = [e.kind async for e in subscription]
        assert kinds == [EventKind.CREATED, EventKind.BOOTING]

    async def test_full_queue_drops_oldest(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe(maxsize=2)

        for kind in (EventKind.CREATED, EventKind.BOOTING, EventKind.STARTED):
            bus.publish(event(kind))

        assert subscription.dropped == 1
        assert subscription.get_nowait().kind is EventKind.BOOTING
        assert subscription.get_nowait().kind is EventKind.STARTED

    async def test_closed_subscription_stops_receiving(self) -> None:
        bus = EventBus()
        async with bus.subscribe() as subscription:
            bus.publish(event())
        bus.publish(event(EventKind.STOPPED))

        assert subscription.get_nowait().kind is EventKind.STARTED
        assert subscription._queue.empty()

    async def test_orchestrator_level_event(self) -> None:
        lifecycle = event(EventKind.INITIALIZED, vm_id=None)

        assert lifecycle.vm_id is None
        assert lifecycle.status is None
        assert lifecycle.detail == {}
