"""
Tests for events.py: the event channel.
"""

import asyncio
import threading

import pytest

from conftest import wait_until
from events import EventBus, FrameReady, Paired, PeerDiscovered, SessionEnded


@pytest.mark.asyncio
class TestEventBus:
    async def test_dispatch_to_every_subscriber(self):
        bus = EventBus()
        first, second = [], []

        async def on_first(event):
            first.append(event)

        async def on_second(event):
            second.append(event)

        bus.subscribe(on_first)
        bus.subscribe(on_second)
        await bus.start()
        try:
            bus.publish(PeerDiscovered(hostname="host-a", identity="id-a"))
            bus.publish(SessionEnded(hostname="host-a", identity="id-a"))
            await bus.drain()
        finally:
            await bus.stop()

        assert [e.type for e in first] == ["peer_discovered", "session_ended"]
        assert [e.type for e in second] == ["peer_discovered", "session_ended"]

    async def test_failing_subscriber_does_not_stop_dispatch(self):
        bus = EventBus()
        seen = []

        async def broken(event):
            raise RuntimeError("subscriber bug")

        async def healthy(event):
            seen.append(event)

        bus.subscribe(broken)
        bus.subscribe(healthy)
        await bus.start()
        try:
            bus.publish(Paired(hostname="h", identity="i", ends_at=0.0))
            bus.publish(Paired(hostname="h", identity="i", ends_at=1.0, renewed=True))
            await bus.drain()
        finally:
            await bus.stop()
        assert len(seen) == 2
        assert seen[1].renewed

    async def test_publish_from_worker_thread(self):
        bus = EventBus()
        seen = []

        async def on_event(event):
            seen.append(event)

        bus.subscribe(on_event)
        await bus.start()
        try:
            worker = threading.Thread(
                target=bus.publish_threadsafe, args=(FrameReady(frame_id=7, frame=b"jpeg"),)
            )
            worker.start()
            worker.join()
            assert await wait_until(lambda: seen)
        finally:
            await bus.stop()
        assert seen[0].frame_id == 7
        assert seen[0].frame == b"jpeg"

    async def test_publish_before_start_is_dropped(self):
        bus = EventBus()
        bus.publish(PeerDiscovered(hostname="h", identity="i"))
        bus.publish_threadsafe(PeerDiscovered(hostname="h", identity="i"))
        await bus.start()
        await bus.drain()
        await bus.stop()

    async def test_full_queue_drops_events(self):
        bus = EventBus(maxsize=1)
        seen = []

        async def on_event(event):
            seen.append(event)

        bus.subscribe(on_event)
        await bus.start()
        try:
            for i in range(5):
                bus.publish(FrameReady(frame_id=i))
            await bus.drain()
        finally:
            await bus.stop()
        assert len(seen) == 1


class TestEventSerialization:
    def test_frame_excluded_from_dump(self):
        event = FrameReady(frame_id=3, frame=object())
        data = event.model_dump(mode="json")
        assert "frame" not in data
        assert data["type"] == "frame_ready"
        assert data["frame_id"] == 3

    def test_session_ended_defaults(self):
        event = SessionEnded()
        assert event.reason == "timer"
        assert event.hostname is None
