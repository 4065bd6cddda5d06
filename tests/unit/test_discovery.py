"""Unit tests for edgerelay.core.discovery — declarations and scans."""

from __future__ import annotations

import sys

import pytest

from edgerelay.core.discovery import (
    discover,
    discover_events,
    discover_module,
    disable_handler,
    event,
    event_of,
    event_registration_for,
    module_types,
    pre_read,
    pre_reads_of,
    registration_for,
    subscribe,
)
from edgerelay.core.handlers import EventHandler, MessageHandler
from edgerelay.errors import DiscoveryError
from edgerelay.models.registrations import SubscriptionMode


# ---------------------------------------------------------------------------
# Handler fixtures
# ---------------------------------------------------------------------------


@subscribe("plc", "Line4.Temperature", deadband=0.5)
@subscribe("plc", "Line4.Pressure", on_change_only=False, poll_interval_ms=250)
class TwoKeyHandler(MessageHandler):
    payload_type = float

    def handle(self, message, context):
        return None


@subscribe("broker", "alarms/#", mode=SubscriptionMode.UNSOLICITED)
class AlarmHandler(MessageHandler):
    payload_type = str

    def handle(self, message, context):
        return None


@subscribe("plc", "Line4.Speed")
class NoPayloadHandler(MessageHandler):
    def handle(self, message, context):
        return None


class UndeclaredHandler(MessageHandler):
    payload_type = int

    def handle(self, message, context):
        return None


@disable_handler
@subscribe("plc", "Line4.Disabled")
class DisabledHandler(MessageHandler):
    payload_type = int

    def handle(self, message, context):
        return None


@subscribe("plc", "Line4.Abstract")
class AbstractHandler(MessageHandler):
    payload_type = int


class SubclassedHandler(TwoKeyHandler):
    pass


@subscribe("plc", "Line4.NotAHandler")
class NotAHandler:
    payload_type = int


@event("recipe.requested", priority=5)
@pre_read("plc", "Line4.Recipe", alias="recipe", value_type=int)
@pre_read("plc", "Line4.Batch", continue_on_failure=False)
class RecipeHandler(EventHandler):
    event_data_type = dict
    result_type = dict

    def handle(self, data, reads):
        return {}


@event("recipe.requested", fire_and_forget=True)
class AuditHandler(EventHandler):
    def handle(self, data, reads):
        return None


class NoEventHandler(EventHandler):
    def handle(self, data, reads):
        return None


# ---------------------------------------------------------------------------
# Message handlers
# ---------------------------------------------------------------------------


class TestDiscover:
    """Scanning for message handler registrations."""

    def test_one_registration_per_declaration_in_order(self):
        registrations = discover([TwoKeyHandler])
        assert [r.key for r in registrations] == ["Line4.Temperature", "Line4.Pressure"]
        temperature, pressure = registrations
        assert temperature.deadband == 0.5
        assert temperature.payload_type is float
        assert pressure.on_change_only is False
        assert pressure.poll_interval_ms == 250
        assert all(r.handler_type is TwoKeyHandler for r in registrations)

    def test_mode_and_connection_carried(self):
        (registration,) = discover([AlarmHandler])
        assert registration.connection_name == "broker"
        assert registration.mode is SubscriptionMode.UNSOLICITED

    def test_unusable_types_skipped_silently(self):
        candidates = [
            NoPayloadHandler,
            UndeclaredHandler,
            DisabledHandler,
            AbstractHandler,
            NotAHandler,
            "not a type",
            42,
        ]
        assert discover(candidates) == []

    def test_declarations_not_inherited(self):
        assert discover([SubclassedHandler]) == []

    def test_input_order_preserved(self):
        keys = [r.key for r in discover([AlarmHandler, TwoKeyHandler])]
        assert keys == ["alarms/#", "Line4.Temperature", "Line4.Pressure"]

    def test_discovery_does_not_instantiate(self, monkeypatch):
        def refuse(self):
            raise AssertionError("handler instantiated during discovery")

        monkeypatch.setattr(TwoKeyHandler, "__init__", refuse)
        assert len(discover([TwoKeyHandler])) == 2


class TestRegistrationFor:
    def test_returns_registrations(self):
        assert len(registration_for(TwoKeyHandler)) == 2

    @pytest.mark.parametrize(
        "handler_type, reason",
        [
            (UndeclaredHandler, "declares no subscriptions"),
            (NoPayloadHandler, "declares no payload_type"),
            (DisabledHandler, "is disabled"),
            (NotAHandler, "does not subclass MessageHandler"),
        ],
    )
    def test_unusable_type_raises(self, handler_type, reason):
        with pytest.raises(DiscoveryError, match=reason):
            registration_for(handler_type)


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------


class TestEvents:
    """Event declarations and pre-reads."""

    def test_event_registration(self):
        registration = event_registration_for(RecipeHandler)
        assert registration.event_name == "recipe.requested"
        assert registration.priority == 5
        assert registration.event_data_type is dict
        assert registration.returns_result is True
        assert registration.fire_and_forget is False

    def test_pre_reads_in_declaration_order(self):
        reads = pre_reads_of(RecipeHandler)
        assert [r.key for r in reads] == ["Line4.Recipe", "Line4.Batch"]
        assert reads[0].result_alias == "recipe"
        assert reads[1].result_alias == "Line4.Batch"
        assert reads[1].continue_on_failure is False

    def test_fire_and_forget_flag(self):
        registration = event_registration_for(AuditHandler)
        assert registration.fire_and_forget is True
        assert registration.returns_result is False
        assert registration.pre_reads == ()

    def test_missing_event_raises(self):
        with pytest.raises(DiscoveryError, match="declares no @event"):
            event_registration_for(NoEventHandler)

    def test_scan_skips_non_event_types(self):
        registrations = discover_events([RecipeHandler, NoEventHandler, TwoKeyHandler, AuditHandler])
        assert [r.handler_type for r in registrations] == [RecipeHandler, AuditHandler]

    def test_event_declared_twice_rejected(self):
        with pytest.raises(DiscoveryError, match="already declares event"):

            @event("second")
            @event("first")
            class Twice(EventHandler):
                def handle(self, data, reads):
                    return None

    def test_event_of_undeclared_is_none(self):
        assert event_of(NoEventHandler) is None


# ---------------------------------------------------------------------------
# Module scanning
# ---------------------------------------------------------------------------


class TestModuleScan:
    def test_module_types_only_local_classes(self):
        module = sys.modules[__name__]
        types = module_types(module)
        assert TwoKeyHandler in types
        assert MessageHandler not in types

    def test_module_types_sorted_by_name(self):
        names = [t.__name__ for t in module_types(__name__)]
        assert names == sorted(names)

    def test_discover_module(self):
        keys = {r.key for r in discover_module(sys.modules[__name__])}
        assert keys == {"Line4.Temperature", "Line4.Pressure", "alarms/#"}
