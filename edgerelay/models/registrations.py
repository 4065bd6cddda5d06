"""Registration records produced by discovery.

All records are frozen.  They are created once at startup and never
mutated; the dispatch engine and the event mediator keep their own
mutable runtime state alongside them.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionMode(str, Enum):
    """Notification cadence requested from the transport."""

    POLLING = "polling"  # periodic read-driven
    UNSOLICITED = "unsolicited"  # push-driven, as fast as the source allows


class SubscriptionSpec(BaseModel):
    """One subscription declaration attached to a handler class."""

    model_config = ConfigDict(frozen=True)

    connection_name: str
    key: str
    poll_interval_ms: int = Field(default=0, ge=0)  # 0 = connection default
    on_change_only: bool = True
    deadband: float = Field(default=0.0, ge=0.0)
    mode: SubscriptionMode = SubscriptionMode.POLLING


class Registration(BaseModel):
    """Binds one key on one connection to a handler type and payload type."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    handler_type: type
    payload_type: Any
    connection_name: str
    poll_interval_ms: int = 0
    on_change_only: bool = True
    deadband: float = 0.0
    mode: SubscriptionMode = SubscriptionMode.POLLING


class PreRead(BaseModel):
    """A value fetched from a connection before an event handler runs."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    connection_name: str
    key: str
    value_type: Any = None
    alias: str | None = None
    continue_on_failure: bool = True

    @property
    def result_alias(self) -> str:
        """Name the value is stored under in the handler's read results."""
        return self.alias or self.key


class EventDeclaration(BaseModel):
    """The ``@event`` declaration attached to an event handler class."""

    model_config = ConfigDict(frozen=True)

    name: str
    priority: int = 0
    fire_and_forget: bool = False


class EventRegistration(BaseModel):
    """Binds an event name to a handler type, with its pre-reads."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    event_name: str
    handler_type: type
    event_data_type: Any = None
    result_type: Any = None
    priority: int = 0
    fire_and_forget: bool = False
    pre_reads: tuple[PreRead, ...] = ()

    @property
    def returns_result(self) -> bool:
        return self.result_type is not None
