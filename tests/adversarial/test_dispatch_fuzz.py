"""Adversarial tests — dispatch resilience under hostile handlers and load.

These tests verify that:
1. Notifications flooded from many threads are each dispatched exactly once
2. Handlers raising arbitrary exception types never reach the transport
3. A release callback that throws does not poison later deliveries
4. Ambiguous or unbuildable handlers fail per delivery, not per engine
5. Unchecked values (unhashable, incomparable) do not break change filtering
"""

from __future__ import annotations

import threading

import pytest

from edgerelay.core.activator import Activator, ScopedHandler
from edgerelay.core.dispatch import DispatchEngine, SubscriptionState
from edgerelay.core.handlers import MessageHandler
from edgerelay.models.values import Quality
from edgerelay.transport.memory import InMemoryConnection

# ---------------------------------------------------------------------------
# Test handlers
# ---------------------------------------------------------------------------


class CountingHandler(MessageHandler):
    """Counts deliveries per value across all instances."""

    payload_type = int
    lock = threading.Lock()
    seen: list[int] = []

    def handle(self, message, context):
        with CountingHandler.lock:
            CountingHandler.seen.append(message.value)


class VariousExceptionsHandler(MessageHandler):
    """Raises a different exception type depending on the value."""

    payload_type = int
    errors = (ValueError, KeyError, TypeError, ZeroDivisionError, AttributeError)

    def handle(self, message, context):
        raise self.errors[message.value % len(self.errors)](f"value {message.value}")


class AmbiguousHandler(MessageHandler):
    payload_type = int

    def __init__(self, conn: InMemoryConnection) -> None:
        self.conn = conn

    def handle(self, message, context):
        return None


class Incomparable:
    """A value whose equality check itself raises."""

    def __eq__(self, other):
        raise RuntimeError("cannot compare")

    __hash__ = None


@pytest.fixture(autouse=True)
def _reset():
    CountingHandler.seen = []


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestThreadFlood:
    """Many producer threads against one engine."""

    @pytest.mark.asyncio
    async def test_every_notification_dispatched_once(self, plc, make_engine, make_registration):
        await plc.connect()
        engine = make_engine()
        engine.start()
        await engine.subscribe_registration(
            make_registration(CountingHandler, payload_type=int, on_change_only=False)
        )

        def produce(offset: int) -> None:
            for i in range(50):
                plc.set_value("Line4.Temperature", offset * 1000 + i)

        threads = [threading.Thread(target=produce, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert await engine.drain(timeout=5.0)
        assert sorted(CountingHandler.seen) == sorted(
            n * 1000 + i for n in range(8) for i in range(50)
        )
        assert engine.pending == 0
        assert engine.delivered == 400


class TestHostileHandlers:
    """Exceptions of any type stay inside the engine."""

    @pytest.mark.asyncio
    async def test_various_exception_types_contained(self, plc, make_engine, make_registration):
        await plc.connect()
        engine = make_engine(error_threshold=1000)
        engine.start()
        await engine.subscribe_registration(
            make_registration(VariousExceptionsHandler, payload_type=int, on_change_only=False)
        )

        for value in range(25):
            plc.set_value("Line4.Temperature", value)
        await engine.drain()

        assert engine.failed == 25
        assert engine.state_of("Line4.Temperature") is SubscriptionState.ACTIVE

    @pytest.mark.asyncio
    async def test_failing_release_does_not_poison_engine(self, plc, make_registration):
        releases: list[int] = []

        def explode_on_release() -> None:
            releases.append(1)
            raise OSError("release failed")

        def factory(requested: object) -> object:
            if requested is CountingHandler:
                return ScopedHandler(CountingHandler(), [explode_on_release])
            return None

        engine = DispatchEngine(
            plc, Activator(factory, connections=[plc]), error_log_interval_s=0.0
        )
        await plc.connect()
        engine.start()
        await engine.subscribe_registration(
            make_registration(CountingHandler, payload_type=int)
        )

        for value in (1, 2, 3):
            plc.set_value("Line4.Temperature", value)
        await engine.drain()

        assert CountingHandler.seen == [1, 2, 3]
        assert len(releases) == 3
        assert engine.failed == 0

    @pytest.mark.asyncio
    async def test_ambiguous_handler_fails_per_delivery(self, plc, make_registration):
        broker = InMemoryConnection("broker")
        engine = DispatchEngine(
            plc,
            Activator(connections=[plc, broker]),
            error_threshold=2,
            error_log_interval_s=0.0,
        )
        await plc.connect()
        engine.start()
        await engine.subscribe_registration(
            make_registration(AmbiguousHandler, payload_type=int, on_change_only=False)
        )
        await engine.subscribe("Line4.Other", lambda m, c: CountingHandler.seen.append(m.value))

        for value in range(4):
            plc.set_value("Line4.Temperature", value)
            plc.set_value("Line4.Other", value)
            await engine.drain()

        assert engine.state_of("Line4.Temperature") is SubscriptionState.SUPPRESSED
        assert engine.state_of("Line4.Other") is SubscriptionState.ACTIVE
        assert CountingHandler.seen == [0, 1, 2, 3]


class TestHostileValues:
    @pytest.mark.asyncio
    async def test_incomparable_values_are_delivered(self, plc, make_engine):
        await plc.connect()
        engine = make_engine()
        engine.start()
        seen: list[object] = []
        await engine.subscribe("Line4.Blob", lambda m, c: seen.append(m.value))

        first, second = Incomparable(), Incomparable()
        plc.set_value("Line4.Blob", first)
        plc.set_value("Line4.Blob", second)
        await engine.drain()

        assert len(seen) == 2
        assert seen[0] is first and seen[1] is second

    @pytest.mark.asyncio
    async def test_unhashable_values_filtered_by_equality(self, plc, make_engine):
        await plc.connect()
        engine = make_engine()
        engine.start()
        seen: list[object] = []
        await engine.subscribe("Line4.Array", lambda m, c: seen.append(m.value))

        for raw in ([1, 2], [1, 2], {"a": 1}, {"a": 1}, [1, 2]):
            plc.set_value("Line4.Array", raw)
        await engine.drain()

        assert seen == [[1, 2], {"a": 1}, [1, 2]]

    @pytest.mark.asyncio
    async def test_garbage_quality_values(self, plc, make_engine):
        await plc.connect()
        engine = make_engine()
        engine.start()
        seen: list[object] = []
        await engine.subscribe("Line4.Q", lambda m, c: seen.append(m.quality), on_change_only=False)

        for quality in (Quality.GOOD, "good", "uncertain", 42, None):
            engine.on_changed("Line4.Q", 1, quality)
        await engine.drain()

        assert seen == [
            Quality.GOOD,
            Quality.GOOD,
            Quality.UNCERTAIN,
            Quality.BAD,
            Quality.BAD,
        ]
