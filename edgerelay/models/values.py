"""Value models — quality-tagged reads and the typed container handed to handlers."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Quality(str, Enum):
    """Reliability indicator attached to every value read from a transport.

    Only ``GOOD`` values take part in change and deadband comparisons.
    """

    GOOD = "good"
    UNCERTAIN = "uncertain"
    BAD = "bad"
    COMM_ERROR = "comm_error"
    NOT_FOUND = "not_found"


class ReadValue(BaseModel):
    """A single value read from a transport, with its quality and timestamp."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    value: Any = None
    quality: Quality = Quality.GOOD
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def is_good(self) -> bool:
        return self.quality is Quality.GOOD

    @classmethod
    def comm_error(cls, key: str) -> ReadValue:
        """Placeholder recorded when a read could not be completed."""
        return cls(key=key, value=None, quality=Quality.COMM_ERROR)


class TagValue(BaseModel, Generic[T]):
    """Typed value delivered to a message handler.

    ``previous_value`` is the last value observed for the same key, or
    ``None`` on the first observation.

    Examples
    --------
    >>> first = TagValue(key="Temp", value=21.5)
    >>> first.is_initial_read, first.has_changed
    (True, False)
    >>> second = TagValue(key="Temp", value=22.0, previous_value=21.5)
    >>> second.has_changed
    True
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    value: T | None = None
    previous_value: T | None = None
    quality: Quality = Quality.GOOD
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def is_initial_read(self) -> bool:
        return self.previous_value is None

    @property
    def has_changed(self) -> bool:
        if self.is_initial_read:
            return False
        return self.value != self.previous_value

    @property
    def is_good(self) -> bool:
        return self.quality is Quality.GOOD
