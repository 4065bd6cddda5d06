"""Unit tests for edgerelay.events.mediator — ordering, pre-reads and isolation."""

from __future__ import annotations

import asyncio
import logging

import pytest

from edgerelay.core.activator import Activator
from edgerelay.core.discovery import event, pre_read
from edgerelay.core.handlers import EventHandler
from edgerelay.errors import DiscoveryError
from edgerelay.events.mediator import EventMediator
from edgerelay.events.results import ReadResults
from edgerelay.models.values import Quality
from edgerelay.transport.memory import InMemoryConnection


CALLS: list[str] = []


# ---------------------------------------------------------------------------
# Handler fixtures
# ---------------------------------------------------------------------------


@event("order.check", priority=1)
class LowPriority(EventHandler):
    result_type = str

    def handle(self, data, reads):
        CALLS.append("low")
        return "low"


@event("order.check", priority=10)
class HighPriority(EventHandler):
    result_type = str

    async def handle(self, data, reads):
        CALLS.append("high")
        return "high"


@event("order.check", priority=1)
class LowPriorityNoResult(EventHandler):
    def handle(self, data, reads):
        CALLS.append("low-silent")
        return "ignored"


@event("recipe.requested")
@pre_read("plc", "Line4.Recipe", alias="recipe", value_type="DINT")
@pre_read("plc", "Line4.Temperature", alias="temperature", value_type=float)
class RecipeHandler(EventHandler):
    event_data_type = int
    result_type = dict

    def handle(self, data: int, reads: ReadResults) -> dict:
        return {
            "line": data,
            "recipe": reads.get("recipe"),
            "temperature": reads.get("temperature"),
            "quality": reads.get_read("temperature").quality,
        }


@event("strict.requested", priority=5)
@pre_read("plc", "Line4.Batch", continue_on_failure=False)
class StrictHandler(EventHandler):
    result_type = str

    def handle(self, data, reads):
        CALLS.append("strict")
        return "strict"


@event("strict.requested", priority=1)
class AfterStrictHandler(EventHandler):
    result_type = str

    def handle(self, data, reads):
        CALLS.append("after")
        return "after"


@event("boom")
class ExplodingHandler(EventHandler):
    result_type = str

    def handle(self, data, reads):
        raise RuntimeError("exploded")


@event("boom", priority=-1)
class SurvivorHandler(EventHandler):
    result_type = str

    def handle(self, data, reads):
        return "survived"


@event("background", fire_and_forget=True)
class BackgroundHandler(EventHandler):
    async def handle(self, data, reads):
        await asyncio.sleep(0.01)
        CALLS.append(f"background:{data}")


@event("background.fail", fire_and_forget=True)
class FailingBackgroundHandler(EventHandler):
    async def handle(self, data, reads):
        raise RuntimeError("background exploded")


class NotDecorated(EventHandler):
    def handle(self, data, reads):
        return None


@pytest.fixture(autouse=True)
def _reset_calls():
    CALLS.clear()


@pytest.fixture
def mediator(plc: InMemoryConnection, activator: Activator) -> EventMediator:
    return EventMediator(activator, connections=[plc])


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_priority_order_with_stable_ties(self, mediator):
        mediator.register_handlers([LowPriority, HighPriority, LowPriorityNoResult])
        order = [r.handler_type for r in mediator.registrations_for("order.check")]
        assert order == [HighPriority, LowPriority, LowPriorityNoResult]

    def test_duplicate_registration_skipped(self, mediator):
        assert mediator.register(mediator.register_handler(LowPriority)) is False
        assert len(mediator.registrations_for("order.check")) == 1

    def test_undecorated_handler_rejected(self, mediator):
        with pytest.raises(DiscoveryError):
            mediator.register_handler(NotDecorated)

    def test_sources_scanned_lazily(self, activator, plc):
        mediator = EventMediator(activator, [plc], handler_sources=[LowPriority, HighPriority])
        assert mediator.event_names == ["order.check"]
        mediator.add_handler_source(SurvivorHandler)
        assert mediator.event_names == ["boom", "order.check"]


# ---------------------------------------------------------------------------
# Emit
# ---------------------------------------------------------------------------


class TestEmit:
    @pytest.mark.asyncio
    async def test_emit_one_returns_first_result(self, mediator):
        mediator.register_handlers([LowPriority, HighPriority])
        assert await mediator.emit_one("order.check") == "high"
        assert CALLS == ["high", "low"]

    @pytest.mark.asyncio
    async def test_emit_all_collects_declared_results(self, mediator):
        mediator.register_handlers([LowPriority, HighPriority, LowPriorityNoResult])
        assert await mediator.emit_all("order.check") == ["high", "low"]
        assert CALLS == ["high", "low", "low-silent"]

    @pytest.mark.asyncio
    async def test_emit_discards_results(self, mediator):
        mediator.register_handler(HighPriority)
        assert await mediator.emit("order.check") is None
        assert CALLS == ["high"]

    @pytest.mark.asyncio
    async def test_no_handlers_warns(self, mediator, caplog):
        with caplog.at_level(logging.WARNING, logger="edgerelay.events.mediator"):
            assert await mediator.emit_all("nobody.listens") == []
        assert "No handlers registered" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_others(self, mediator):
        mediator.register_handlers([ExplodingHandler, SurvivorHandler])
        assert await mediator.emit_all("boom") == ["survived"]

    @pytest.mark.asyncio
    async def test_closed_mediator_emits_nothing(self, mediator):
        mediator.register_handler(HighPriority)
        mediator.close()
        assert await mediator.emit_one("order.check") is None
        assert CALLS == []


class TestPreReads:
    @pytest.mark.asyncio
    async def test_values_converted_and_data_typed(self, mediator, plc):
        await plc.connect()
        plc.set_value("Line4.Recipe", "17")
        plc.set_value("Line4.Temperature", 21)
        mediator.register_handler(RecipeHandler)

        result = await mediator.emit_one("recipe.requested", "4")

        assert result == {
            "line": 4,
            "recipe": 17,
            "temperature": 21.0,
            "quality": Quality.GOOD,
        }

    @pytest.mark.asyncio
    async def test_optional_failure_recorded_as_comm_error(self, mediator, plc):
        await plc.connect()
        plc.set_value("Line4.Recipe", 3)
        plc.fail_reads("Line4.Temperature")
        mediator.register_handler(RecipeHandler)

        result = await mediator.emit_one("recipe.requested", 1)

        assert result["recipe"] == 3
        assert result["temperature"] is None
        assert result["quality"] is Quality.COMM_ERROR

    @pytest.mark.asyncio
    async def test_missing_key_reported_not_found(self, mediator, plc):
        await plc.connect()
        mediator.register_handler(RecipeHandler)

        result = await mediator.emit_one("recipe.requested", 1)

        assert result["quality"] is Quality.NOT_FOUND

    @pytest.mark.asyncio
    async def test_mandatory_failure_skips_only_that_handler(self, mediator, plc, caplog):
        await plc.connect()
        plc.fail_reads("Line4.Batch")
        mediator.register_handlers([StrictHandler, AfterStrictHandler])

        with caplog.at_level(logging.ERROR, logger="edgerelay.events.mediator"):
            results = await mediator.emit_all("strict.requested")

        assert results == ["after"]
        assert CALLS == ["after"]
        assert "Pre-read 'Line4.Batch'" in caplog.text

    @pytest.mark.asyncio
    async def test_mandatory_missing_key_skips_handler(self, mediator, plc, caplog):
        await plc.connect()
        mediator.register_handlers([StrictHandler, AfterStrictHandler])

        with caplog.at_level(logging.ERROR, logger="edgerelay.events.mediator"):
            results = await mediator.emit_all("strict.requested")

        assert results == ["after"]
        assert CALLS == ["after"]
        assert "quality not_found" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_connection_is_a_failed_read(self, activator):
        mediator = EventMediator(activator, connections=[])
        mediator.register_handlers([StrictHandler, AfterStrictHandler])
        assert await mediator.emit_all("strict.requested") == ["after"]


class TestFireAndForget:
    @pytest.mark.asyncio
    async def test_not_awaited_then_drained(self, mediator):
        mediator.register_handler(BackgroundHandler)

        assert await mediator.emit_one("background", "x") is None
        assert CALLS == []
        assert mediator.pending == 1

        assert await mediator.drain(timeout=1.0)
        assert CALLS == ["background:x"]
        assert mediator.pending == 0

    @pytest.mark.asyncio
    async def test_background_failure_logged(self, mediator, caplog):
        mediator.register_handler(FailingBackgroundHandler)

        with caplog.at_level(logging.ERROR, logger="edgerelay.events.mediator"):
            await mediator.emit("background.fail")
            await mediator.drain(timeout=1.0)
            await asyncio.sleep(0)

        assert "background exploded" in caplog.text
