"""Exception hierarchy shared across edgerelay.

Every error raised by the dispatch core derives from ``EdgeRelayError`` so
application code can catch the whole family at one boundary.  Errors that
belong to a single component (for example ``CapacityError``) are still
defined here so transports and handlers can import them without pulling in
the component itself.
"""

from __future__ import annotations

from typing import Any


class EdgeRelayError(RuntimeError):
    """Base class for all edgerelay errors."""


class DiscoveryError(EdgeRelayError):
    """Raised when an explicitly registered type lacks a required declaration."""


class ActivationError(EdgeRelayError):
    """Raised when a handler instance cannot be constructed.

    Attributes
    ----------
    handler_type:
        The type that was being constructed.
    parameter_type:
        The constructor parameter type that could not be satisfied, or
        ``None`` when the failure is not tied to a single parameter.
    """

    def __init__(
        self,
        message: str,
        *,
        handler_type: Any = None,
        parameter_type: Any = None,
    ) -> None:
        super().__init__(message)
        self.handler_type = handler_type
        self.parameter_type = parameter_type


class DispatchError(EdgeRelayError):
    """A single handler dispatch failed.

    Never propagates out of a notification callback; it is logged and
    counted toward per-key suppression.
    """


class MarshallingError(EdgeRelayError):
    """Raised when a value cannot be converted to or from its raw form."""


class CapacityError(MarshallingError):
    """Raised when a string does not fit its fixed-capacity representation."""

    def __init__(self, length: int, capacity: int) -> None:
        super().__init__(
            f"Encoded string length {length} exceeds capacity {capacity}"
        )
        self.length = length
        self.capacity = capacity


class CommError(EdgeRelayError):
    """Raised by a transport when a read or write cannot be completed."""


class ConnectionNotFoundError(CommError):
    """Raised when a connection name or type is not configured."""


class PreReadError(EdgeRelayError):
    """Raised when a mandatory pre-read fails before an event handler runs."""

    def __init__(self, alias: str, connection_name: str, reason: str) -> None:
        super().__init__(
            f"Pre-read {alias!r} on connection {connection_name!r} failed: {reason}"
        )
        self.alias = alias
        self.connection_name = connection_name
