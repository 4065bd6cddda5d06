"""edgerelay data models — Pydantic v2, frozen unless noted."""

from edgerelay.models.connection import (
    ConnectionOptions,
    ConnectionState,
    DeliverySemantics,
)
from edgerelay.models.datatypes import (
    DATA_TYPE_MAP,
    Control,
    Counter,
    FixedString,
    String256,
    String512,
    Timer,
    resolve_data_type,
)
from edgerelay.models.messages import MessageContext
from edgerelay.models.registrations import (
    EventDeclaration,
    EventRegistration,
    PreRead,
    Registration,
    SubscriptionMode,
    SubscriptionSpec,
)
from edgerelay.models.values import Quality, ReadValue, TagValue

__all__ = [
    # connection
    "ConnectionOptions",
    "ConnectionState",
    "DeliverySemantics",
    # datatypes
    "DATA_TYPE_MAP",
    "Control",
    "Counter",
    "FixedString",
    "String256",
    "String512",
    "Timer",
    "resolve_data_type",
    # messages
    "MessageContext",
    # registrations
    "EventDeclaration",
    "EventRegistration",
    "PreRead",
    "Registration",
    "SubscriptionMode",
    "SubscriptionSpec",
    # values
    "Quality",
    "ReadValue",
    "TagValue",
]
