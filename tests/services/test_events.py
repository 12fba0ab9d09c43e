"""Tests for the event bus."""

import logging

import pytest

from orchestrator.models.events import SandboxCreated, SandboxDestroyed
from orchestrator.services.events import EventBus


def created(sandbox_id: str = "sandbox_1") -> SandboxCreated:
    return SandboxCreated(sandbox_id=sandbox_id, user_id="user-1", project_id="proj1")


def test_subscribe_filters_by_type():
    bus = EventBus()
    everything, destroyed = [], []
    bus.subscribe(everything.append)
    bus.subscribe(destroyed.append, SandboxDestroyed)

    bus.publish(created())
    bus.publish(SandboxDestroyed(sandbox_id="sandbox_1"))

    assert len(everything) == 2
    assert [type(event) for event in destroyed] == [SandboxDestroyed]


def test_unsubscribe():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(received.append)

    unsubscribe()
    unsubscribe()
    bus.publish(created())

    assert received == []


def test_failing_subscriber_does_not_block_others(caplog):
    """Test that one broken callback cannot break publishing."""
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)

    with caplog.at_level(logging.ERROR):
        bus.publish(created())

    assert len(received) == 1
    assert "subscriber bug" in caplog.text


@pytest.mark.asyncio
async def test_channel_delivers_to_queue():
    bus = EventBus()
    queue, unsubscribe = bus.channel(SandboxCreated)

    bus.publish(created("sandbox_a"))
    bus.publish(SandboxDestroyed(sandbox_id="sandbox_a"))

    event = await queue.get()
    assert event.sandbox_id == "sandbox_a"
    assert queue.empty()

    unsubscribe()
    bus.publish(created("sandbox_b"))
    assert queue.empty()


@pytest.mark.asyncio
async def test_full_channel_drops_events(caplog):
    bus = EventBus()
    queue, _ = bus.channel(maxsize=1)

    with caplog.at_level(logging.WARNING):
        bus.publish(created("sandbox_a"))
        bus.publish(created("sandbox_b"))

    assert queue.qsize() == 1
    assert (await queue.get()).sandbox_id == "sandbox_a"
    assert "dropping" in caplog.text
