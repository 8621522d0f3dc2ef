"""Tests for the in-memory event bus."""

import asyncio
import logging

from app.services.event_bus import EventBus


async def test_handlers_receive_event_data():
    bus = EventBus()
    received = []

    async def handler(data):
        received.append(data)

    bus.on("scan.uploaded", handler)
    await bus.publish("scan.uploaded", {"scan_id": "s1"})
    await bus.drain()

    assert received == [{"scan_id": "s1"}]


async def test_publish_does_not_wait_for_handlers():
    bus = EventBus()
    release = asyncio.Event()
    finished = []

    async def slow_handler(data):
        await release.wait()
        finished.append(data)

    bus.on("triage.requested", slow_handler)
    await bus.publish("triage.requested", {"encounter_id": "e1"})

    assert finished == []
    release.set()
    await bus.drain()
    assert finished == [{"encounter_id": "e1"}]


async def test_global_subscribers_see_every_event():
    bus = EventBus()
    queue = bus.subscribe_all()

    await bus.publish("a", {"n": 1})
    await bus.publish("b", {"n": 2})

    assert queue.get_nowait() == {"name": "a", "data": {"n": 1}}
    assert queue.get_nowait() == {"name": "b", "data": {"n": 2}}

    bus.unsubscribe_all(queue)
    await bus.publish("c", {"n": 3})
    assert queue.empty()


async def test_failing_handler_is_logged_and_isolated(caplog):
    bus = EventBus()
    calls = []

    async def broken(data):
        raise RuntimeError("handler blew up")

    async def healthy(data):
        calls.append(data)

    bus.on("report.generated", broken)
    bus.on("report.generated", healthy)

    with caplog.at_level(logging.ERROR, logger="app.services.event_bus"):
        await bus.publish("report.generated", {"report_id": "RPT-1"})
        await bus.drain()

    assert calls == [{"report_id": "RPT-1"}]
    assert "failed for event report.generated" in caplog.text


async def test_drain_waits_for_chained_events():
    bus = EventBus()
    seen = []

    async def first(data):
        await bus.publish("second", data)

    async def second(data):
        seen.append(data)

    bus.on("first", first)
    bus.on("second", second)
    await bus.publish("first", {"x": 1})
    await bus.drain()

    assert seen == [{"x": 1}]
