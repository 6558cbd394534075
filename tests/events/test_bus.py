"""Tests for the event bus."""

import pytest

from morphos.events.bus import EventBus, Event


@pytest.mark.asyncio
async def test_emit_and_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("evolution.cycle_started", handler)
    await bus.emit("evolution.cycle_started", {"cycle_id": "c1"})

    assert len(received) == 1
    assert received[0].topic == "evolution.cycle_started"
    assert received[0].data["cycle_id"] == "c1"


@pytest.mark.asyncio
async def test_wildcard_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("safety.*", handler)
    await bus.emit("safety.rollback_started")
    await bus.emit("safety.rollback_completed", {"backup_id": "b1"})
    await bus.emit("evolution.mutation_applied")  # should NOT match

    assert [e.topic for e in received] == ["safety.rollback_started", "safety.rollback_completed"]


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("evolution.*", handler)
    await bus.emit("evolution.cycle_failed")
    bus.unsubscribe("evolution.*", handler)
    await bus.emit("evolution.cycle_failed")

    assert len(received) == 1


@pytest.mark.asyncio
async def test_failing_handler_does_not_reach_emitter():
    bus = EventBus()
    received = []

    async def broken(event: Event):
        raise RuntimeError("subscriber bug")

    async def healthy(event: Event):
        received.append(event)

    bus.subscribe("*", broken)
    bus.subscribe("*", healthy)
    event = await bus.emit("evolution.cycle_completed", source="evolution_engine")

    assert event.source == "evolution_engine"
    assert len(received) == 1


@pytest.mark.asyncio
async def test_history_filter_and_limit():
    bus = EventBus(history_limit=3)
    await bus.emit("evolution.candidate_rejected", {"i": 1})
    await bus.emit("evolution.candidate_evaluated", {"i": 2})
    await bus.emit("safety.backup_created", {"i": 3})
    await bus.emit("evolution.mutation_applied", {"i": 4})

    history = bus.history()
    assert len(history) == 3
    assert history[0].data["i"] == 4  # most recent first
    assert {e.topic for e in bus.history(topic_filter="evolution.*")} == {
        "evolution.candidate_evaluated",
        "evolution.mutation_applied",
    }


@pytest.mark.asyncio
async def test_subscriber_count_and_topics():
    bus = EventBus()

    async def h(e):
        pass

    bus.subscribe("evolution.*", h)
    bus.subscribe("safety.*", h)
    assert bus.subscriber_count == 2

    await bus.emit("safety.post_check_failed")
    await bus.emit("safety.post_check_failed")
    assert bus.topics() == ["safety.post_check_failed"]


@pytest.mark.asyncio
async def test_cycle_events_in_emission_order():
    bus = EventBus()
    await bus.emit("evolution.cycle_started", {"cycle_id": "c1"})
    await bus.emit("evolution.cycle_started", {"cycle_id": "c2"})
    await bus.emit("safety.backup_created", {"backup_id": "b1"})
    await bus.emit("evolution.cycle_failed", {"cycle_id": "c1", "error": "boom"})

    events = bus.cycle_events("c1")

    assert [e.topic for e in events] == ["evolution.cycle_started", "evolution.cycle_failed"]
    assert bus.cycle_events("missing") == []


def test_unsubscribing_unknown_handler_is_harmless():
    bus = EventBus()

    async def h(e):
        pass

    bus.unsubscribe("*", h)
    assert bus.subscriber_count == 0
