"""Transport contract — what the dispatch core requires from a connection.

A transport owns the wire protocol.  The core only needs async
read/write/subscribe primitives and a synchronous notification callback the
transport invokes, from whatever thread it owns, each time it observes a
value for a subscribed key.

Any object with the members below satisfies ``Connection``; no base class is
required.  ``Publisher`` is the optional publishing capability a connection
exposes through its ``publisher`` attribute.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from edgerelay.models.connection import ConnectionState, DeliverySemantics
from edgerelay.models.registrations import SubscriptionMode
from edgerelay.models.values import Quality, ReadValue

NotificationCallback = Callable[[str, Any, Quality], None]


class TransportError(RuntimeError):
    """Raised when a transport-level operation fails."""


@runtime_checkable
class Publisher(Protocol):
    """Publishing capability of a connection."""

    async def publish(
        self,
        destination: str,
        payload: Any,
        delivery: DeliverySemantics = DeliverySemantics.AT_LEAST_ONCE,
        retain: bool = False,
    ) -> None:
        ...


@runtime_checkable
class Connection(Protocol):
    """Connection capability required by the dispatch engine and mediator."""

    connection_name: str

    @property
    def state(self) -> ConnectionState:
        ...

    @property
    def publisher(self) -> Publisher | None:
        ...

    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def read_once(self, key: str, value_type: Any = None) -> ReadValue:
        """Read *key* once.  Failures surface as a non-GOOD ``ReadValue``."""
        ...

    async def write_once(self, key: str, value: Any) -> None:
        ...

    async def subscribe(
        self,
        key: str,
        mode: SubscriptionMode = SubscriptionMode.POLLING,
        poll_interval_ms: int = 0,
    ) -> None:
        ...

    async def unsubscribe(self, key: str) -> None:
        ...

    def set_notification_callback(self, callback: NotificationCallback | None) -> None:
        ...


def is_connection_type(candidate: Any) -> bool:
    """True if *candidate* is ``Connection`` or a class providing its members."""
    return _provides(candidate, Connection)


def is_publisher_type(candidate: Any) -> bool:
    """True if *candidate* is ``Publisher`` or a class providing its members."""
    return _provides(candidate, Publisher)


_PROTOCOL_MEMBERS: dict[type, tuple[str, ...]] = {
    Connection: (
        "connect",
        "disconnect",
        "read_once",
        "write_once",
        "subscribe",
        "unsubscribe",
        "set_notification_callback",
    ),
    Publisher: ("publish",),
}


def _provides(candidate: Any, protocol: type) -> bool:
    if candidate is protocol:
        return True
    if not isinstance(candidate, type) or candidate is object:
        return False
    return all(hasattr(candidate, member) for member in _PROTOCOL_MEMBERS[protocol])
