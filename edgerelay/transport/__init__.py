"""Transport contract, reconnect loop and the in-memory transport."""

from edgerelay.transport.base import (
    Connection,
    NotificationCallback,
    Publisher,
    TransportError,
)
from edgerelay.transport.memory import InMemoryConnection, InMemoryPublisher, PublishedMessage
from edgerelay.transport.reconnect import ReconnectLoop

__all__ = [
    "Connection",
    "InMemoryConnection",
    "InMemoryPublisher",
    "NotificationCallback",
    "PublishedMessage",
    "Publisher",
    "ReconnectLoop",
    "TransportError",
]
