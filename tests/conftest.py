"""Shared test fixtures for edgerelay."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from edgerelay.core.activator import Activator
from edgerelay.core.dispatch import DispatchEngine
from edgerelay.core.marshaller import ValueMarshaller
from edgerelay.models.registrations import Registration, SubscriptionMode
from edgerelay.transport.memory import InMemoryConnection


@pytest.fixture
def plc() -> InMemoryConnection:
    """Provide a disconnected in-memory connection named ``plc``."""
    return InMemoryConnection("plc")


@pytest.fixture
def marshaller() -> ValueMarshaller:
    """Provide a marshaller with the default payload registry."""
    return ValueMarshaller()


@pytest.fixture
def activator(plc: InMemoryConnection) -> Activator:
    """Provide an activator that knows the ``plc`` connection and no factory."""
    return Activator(connections=[plc])


@pytest.fixture
def make_engine(
    plc: InMemoryConnection, activator: Activator, marshaller: ValueMarshaller
) -> Callable[..., DispatchEngine]:
    """Factory fixture: build a DispatchEngine over the ``plc`` connection.

    The engine is not started; tests call ``engine.start()`` from inside
    their running event loop.
    """

    def _factory(**overrides: Any) -> DispatchEngine:
        overrides.setdefault("error_log_interval_s", 0.0)
        return DispatchEngine(plc, activator, marshaller, **overrides)

    return _factory


@pytest.fixture
def make_registration() -> Callable[..., Registration]:
    """Factory fixture: build a Registration with sensible defaults."""

    def _factory(handler_type: type, **overrides: Any) -> Registration:
        defaults: dict[str, Any] = {
            "key": "Line4.Temperature",
            "handler_type": handler_type,
            "payload_type": float,
            "connection_name": "plc",
            "poll_interval_ms": 0,
            "on_change_only": True,
            "deadband": 0.0,
            "mode": SubscriptionMode.POLLING,
        }
        defaults.update(overrides)
        return Registration(**defaults)

    return _factory
