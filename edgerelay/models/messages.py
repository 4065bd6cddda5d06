"""Per-notification context handed to message handlers."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from edgerelay.models.values import Quality, utc_now


class MessageContext(BaseModel):
    """Context accompanying a single delivered value.

    ``publisher`` is the publishing capability of the connection that raised
    the notification, or ``None`` when the transport cannot publish.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    connection_name: str
    raw_value: Any = None
    quality: Quality = Quality.GOOD
    received_at: datetime = Field(default_factory=utc_now)
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    publisher: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
