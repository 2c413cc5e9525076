"""
EventBus: per-store publish/subscribe.
"""
import asyncio

import pytest

from infrastructure.event_bus import EventBus, EventType, GraphEvent, publish_alert


def event(event_type=EventType.NODE_CREATED):
    return GraphEvent(type=event_type, payload={"node_id": "video-1"}, timestamp=0.0, source="test")


class TestSyncHandlers:

    def test_typed_subscription(self):
        bus, seen = EventBus(), []
        bus.subscribe(EventType.NODE_CREATED, seen.append)
        bus.publish(event(EventType.NODE_CREATED))
        bus.publish(event(EventType.NODE_DELETED))
        assert [e.type for e in seen] == [EventType.NODE_CREATED]

    def test_duplicate_subscription_ignored(self):
        bus, seen = EventBus(), []
        bus.subscribe(EventType.NODE_CREATED, seen.append)
        bus.subscribe(EventType.NODE_CREATED, seen.append)
        bus.publish(event())
        assert len(seen) == 1

    def test_wildcard_and_unsubscribe(self):
        bus, seen = EventBus(), []
        unsubscribe = bus.subscribe_all(seen.append)
        bus.publish(event(EventType.EDGE_UPDATED))
        unsubscribe()
        bus.publish(event(EventType.EDGE_UPDATED))
        assert len(seen) == 1

    def test_handler_errors_are_contained(self):
        bus, seen = EventBus(), []

        def broken(_):
            raise KeyError("boom")

        bus.subscribe(EventType.NODE_CREATED, broken)
        bus.subscribe(EventType.NODE_CREATED, seen.append)
        bus.publish(event())
        assert len(seen) == 1

    def test_subscriber_count(self):
        bus = EventBus()
        bus.subscribe(EventType.NODE_CREATED, lambda e: None)
        bus.subscribe_all(lambda e: None)
        assert bus.subscriber_count(EventType.NODE_CREATED) == 2
        assert bus.subscriber_count(EventType.NODE_DELETED) == 1
        bus.clear_subscribers()
        assert bus.subscriber_count() == 0

    def test_async_handler_without_loop_is_skipped(self):
        bus = EventBus()

        async def handler(_):
            pass

        bus.subscribe_all(handler, is_async=True)
        bus.publish(event())


@pytest.mark.asyncio
async def test_async_handlers_are_scheduled():
    bus, seen = EventBus(), []

    async def handler(e):
        seen.append(e.type)

    bus.subscribe_async(EventType.ALERT, handler)
    publish_alert(bus, "source has no media id", node_id="video-2", error_type="PreconditionFailure")
    await asyncio.sleep(0)
    assert seen == [EventType.ALERT]


def test_publish_alert_payload():
    bus, seen = EventBus(), []
    bus.subscribe(EventType.ALERT, seen.append)
    returned = publish_alert(bus, "batch failed", source="image_generation")
    assert seen == [returned]
    assert returned.payload == {"message": "batch failed", "node_id": None, "error_type": "Exception"}
    assert returned.source == "image_generation"
