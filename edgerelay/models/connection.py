"""Connection-level models shared by every transport."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ConnectionState(str, Enum):
    """Lifecycle state of a transport connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    FAULTED = "faulted"
    RECONNECTING = "reconnecting"


class DeliverySemantics(str, Enum):
    """Publish delivery guarantee requested from a broker."""

    AT_MOST_ONCE = "at_most_once"
    AT_LEAST_ONCE = "at_least_once"
    EXACTLY_ONCE = "exactly_once"


class ConnectionOptions(BaseModel):
    """Per-connection options.

    Values left at ``None`` fall back to the process-wide settings in
    ``edgerelay.config``.
    """

    model_config = ConfigDict(frozen=True)

    connection_name: str = "default"
    default_poll_interval_ms: int | None = Field(default=None, gt=0)
    auto_reconnect: bool | None = None
    reconnect_initial_delay_s: float | None = Field(default=None, gt=0)
    reconnect_max_delay_s: float | None = Field(default=None, gt=0)
