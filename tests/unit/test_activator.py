"""Unit tests for edgerelay.core.activator — greedy construction and scopes."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import pytest

from edgerelay.core.activator import Activator, ScopedHandler
from edgerelay.errors import ActivationError
from edgerelay.transport.memory import InMemoryConnection, InMemoryPublisher


# ---------------------------------------------------------------------------
# Handler fixtures (module level so annotations resolve)
# ---------------------------------------------------------------------------


class Clock:
    def __init__(self, tick: int = 0) -> None:
        self.tick = tick


class NoArgs:
    pass


class NeedsClock:
    def __init__(self, clock: Clock) -> None:
        self.clock = clock


class Ticking(Protocol):
    tick: int


class NeedsTicking:
    def __init__(self, clock: Ticking) -> None:
        self.clock = clock


class OptionalClock:
    def __init__(self, clock: Clock | None = None, label: str = "x") -> None:
        self.clock = clock
        self.label = label


class Untyped:
    def __init__(self, thing) -> None:
        self.thing = thing


class NeedsConnection:
    def __init__(self, plc: InMemoryConnection) -> None:
        self.connection = plc


class NeedsPublisher:
    def __init__(self, publisher: InMemoryPublisher) -> None:
        self.publisher = publisher


class NamedConnections:
    def __init__(self, plc: InMemoryConnection, broker: InMemoryConnection) -> None:
        self.plc = plc
        self.broker = broker


class AmbiguousConnection:
    def __init__(self, conn: InMemoryConnection) -> None:
        self.conn = conn


class NeedsLogger:
    def __init__(self, log: logging.Logger) -> None:
        self.log = log


class NeedsRoot:
    def __init__(self, root: FakeRoot) -> None:
        self.root = root


class FakeRoot:
    pass


class Closable:
    closed = 0

    def close(self) -> None:
        Closable.closed += 1


class Exploding:
    def __init__(self) -> None:
        raise RuntimeError("boom")


class Greedy:
    def __init__(self, clock: Clock) -> None:
        self.clock = clock
        self.via = "init"


class OptionalAnnotation:
    def __init__(self, clock: Optional[Clock]) -> None:
        self.clock = clock


def _factory_for(mapping: dict) -> object:
    def factory(requested: object) -> object:
        return mapping.get(requested)

    return factory


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    """Parameter resolution by annotation."""

    def test_no_arg_constructor(self):
        assert isinstance(Activator().create_instance(NoArgs), NoArgs)

    def test_dependency_from_factory(self):
        clock = Clock(7)
        instance = Activator(_factory_for({Clock: clock})).create_instance(NeedsClock)
        assert instance.clock is clock

    def test_optional_annotation_is_unwrapped(self):
        clock = Clock(3)
        instance = Activator(_factory_for({Clock: clock})).create_instance(OptionalAnnotation)
        assert instance.clock is clock

    def test_defaults_used_when_unresolved(self):
        instance = Activator().create_instance(OptionalClock)
        assert instance.clock is None
        assert instance.label == "x"

    def test_unresolved_dependency_names_both_types(self):
        with pytest.raises(ActivationError) as excinfo:
            Activator().create_instance(NeedsClock)
        assert excinfo.value.handler_type is NeedsClock
        assert excinfo.value.parameter_type is Clock
        assert "NeedsClock" in str(excinfo.value)
        assert "Clock" in str(excinfo.value)

    def test_plain_protocol_parameter_is_an_activation_error(self):
        with pytest.raises(ActivationError) as excinfo:
            Activator(root=object()).create_instance(NeedsTicking)
        assert excinfo.value.handler_type is NeedsTicking
        assert excinfo.value.parameter_type is Ticking

    def test_plain_protocol_parameter_from_factory(self):
        clock = Clock(5)
        activator = Activator(_factory_for({Ticking: clock}), root=object())
        assert activator.create_instance(NeedsTicking).clock is clock

    def test_factory_returning_none_is_unresolved(self):
        with pytest.raises(ActivationError):
            Activator(_factory_for({})).create_instance(NeedsClock)

    def test_factory_lookup_error_falls_through(self):
        def factory(requested: object) -> object:
            raise LookupError(requested)

        assert isinstance(Activator(factory).create_instance(NoArgs), NoArgs)

    def test_untyped_parameter_rejected(self):
        with pytest.raises(ActivationError, match="no type annotation"):
            Activator().create_instance(Untyped)

    def test_constructor_failure_wrapped(self):
        with pytest.raises(ActivationError, match="boom"):
            Activator().create_instance(Exploding)

    def test_factory_instance_preferred(self):
        prebuilt = NeedsClock(Clock(1))
        instance = Activator(_factory_for({NeedsClock: prebuilt})).create_instance(NeedsClock)
        assert instance is prebuilt


class TestInjection:
    """Root, connections, publishers and loggers."""

    def test_root_injected(self):
        root = FakeRoot()
        assert Activator(root=root).create_instance(NeedsRoot).root is root

    def test_connection_by_type(self, plc: InMemoryConnection):
        instance = Activator(connections=[plc]).create_instance(NeedsConnection)
        assert instance.connection is plc

    def test_publisher_by_type(self, plc: InMemoryConnection):
        instance = Activator(connections=[plc]).create_instance(NeedsPublisher)
        assert instance.publisher is plc.publisher

    def test_several_connections_resolved_by_name(self, plc: InMemoryConnection):
        broker = InMemoryConnection("broker")
        instance = Activator(connections=[plc, broker]).create_instance(NamedConnections)
        assert instance.plc is plc
        assert instance.broker is broker

    def test_ambiguous_connection_rejected(self, plc: InMemoryConnection):
        broker = InMemoryConnection("broker")
        with pytest.raises(ActivationError, match="matches 2 connections") as excinfo:
            Activator(connections=[plc, broker]).create_instance(AmbiguousConnection)
        assert excinfo.value.handler_type is AmbiguousConnection

    def test_missing_connection_type_is_unresolved(self):
        with pytest.raises(ActivationError, match="no connection of that type"):
            Activator().create_instance(NeedsConnection)

    def test_logger_defaults_to_null_logger(self):
        log = Activator().create_instance(NeedsLogger).log
        assert isinstance(log, logging.Logger)
        assert log.propagate is False

    def test_logger_from_factory(self):
        custom = logging.getLogger("tests.activator")
        instance = Activator(_factory_for({logging.Logger: custom})).create_instance(NeedsLogger)
        assert instance.log is custom

    def test_bind_replaces_connections(self, plc: InMemoryConnection):
        activator = Activator()
        activator.bind(connections=[plc])
        assert activator.create_instance(NeedsConnection).connection is plc


class TestBuilders:
    """Greedy choice among constructor candidates."""

    def test_builder_with_more_parameters_wins(self):
        clock = Clock(9)
        activator = Activator(_factory_for({Clock: clock}))

        def build(clock: Clock, label: str = "builder") -> Greedy:
            made = Greedy(clock)
            made.via = label
            return made

        activator.register_builder(Greedy, build)
        instance = activator.create_instance(Greedy)
        assert instance.via == "builder"
        assert instance.clock is clock

    def test_fewer_parameters_loses(self):
        activator = Activator(_factory_for({Clock: Clock()}))
        activator.register_builder(Greedy, lambda: Greedy(Clock(-1)))
        assert activator.create_instance(Greedy).via == "init"

    def test_tie_rejected_at_registration(self):
        activator = Activator()

        def other(clock: Clock) -> Greedy:
            return Greedy(clock)

        with pytest.raises(ActivationError, match="Ambiguous constructors"):
            activator.register_builder(Greedy, other)

    def test_builder_only_target(self):
        activator = Activator()
        activator.register_builder("widget", lambda: {"kind": "widget"})
        assert activator.create_instance("widget") == {"kind": "widget"}

    def test_nothing_to_build(self):
        with pytest.raises(ActivationError, match="No usable constructor"):
            Activator().create_instance("widget")


class TestScopes:
    """Scoped instances and release semantics."""

    def test_release_runs_close_once(self):
        Closable.closed = 0
        scope = Activator().create_scoped_instance(Closable)
        scope.release()
        scope.release()
        assert scope.released
        assert Closable.closed == 1

    def test_context_manager_releases(self):
        Closable.closed = 0
        with Activator().create_scoped_instance(Closable) as handler:
            assert isinstance(handler, Closable)
        assert Closable.closed == 1

    def test_factory_scope_returned_as_is(self):
        released: list[str] = []
        scope = ScopedHandler(NoArgs(), [lambda: released.append("done")])
        activator = Activator(_factory_for({NoArgs: scope}))
        assert activator.create_scoped_instance(NoArgs) is scope
        assert activator.create_instance(NoArgs) is scope.instance

    def test_factory_instance_not_closed(self):
        Closable.closed = 0
        activator = Activator(_factory_for({Closable: Closable()}))
        activator.create_scoped_instance(Closable).release()
        assert Closable.closed == 0

    def test_release_callback_errors_are_logged(self, caplog):
        def fail() -> None:
            raise RuntimeError("release failed")

        scope = ScopedHandler(NoArgs(), [fail])
        with caplog.at_level(logging.ERROR, logger="edgerelay.core.activator"):
            scope.release()
        assert scope.released
        assert "release failed" in caplog.text
