import pytest

from events import EventBus, FeedDisabled, FeedErrored, FeedRefreshed, event_payload


def test_event_names_and_payloads():
    assert FeedRefreshed(1, (2, 3), 4).name == "feed.refreshed"
    assert FeedErrored(1, "timeout", 2).name == "feed.errored"
    assert event_payload(FeedDisabled(9)) == {"feed_id": 9, "event": "feed.disabled"}


@pytest.mark.asyncio
async def test_sync_and_async_handlers_receive_events_in_order():
    bus = EventBus()
    received = []

    def on_sync(event):
        received.append(("sync", event.feed_id))

    async def on_async(event):
        received.append(("async", event.feed_id))

    bus.subscribe(on_sync)
    bus.subscribe(on_async)
    await bus.emit(FeedDisabled(5))

    assert received == [("sync", 5), ("async", 5)]


@pytest.mark.asyncio
async def test_handler_failure_is_contained():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    await bus.emit(FeedErrored(1, "http_status", 1))
    bus.unsubscribe(received.append)
    await bus.emit(FeedErrored(1, "http_status", 2))

    assert [event.consecutive_attempts for event in received] == [1]
