"""Controller data types: fixed-capacity strings and common structures.

Industrial controllers store strings as a length word plus a fixed-size
ASCII buffer, and expose timers, counters and control blocks as small
structures with named members.  These models give handlers typed access to
those values; ``edgerelay.core.marshaller`` converts them to and from the raw
form a transport produces.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict

from edgerelay.errors import CapacityError


# ---------------------------------------------------------------------------
# Fixed-capacity strings
# ---------------------------------------------------------------------------


class FixedString(BaseModel):
    """Controller string with a declared capacity (82 characters by default).

    The raw form is a mapping ``{"length": n, "data": bytes}`` where ``data``
    is the ASCII encoding padded with NUL bytes up to ``capacity``.

    Examples
    --------
    >>> FixedString(value="Line 4").encode()["length"]
    6
    """

    model_config = ConfigDict(frozen=True)

    capacity: ClassVar[int] = 82

    value: str = ""

    def encode(self) -> dict[str, Any]:
        """Return the raw fixed-capacity representation.

        Raises
        ------
        CapacityError
            If the ASCII-encoded text is longer than ``capacity``.
        """
        data = self.value.encode("ascii", errors="replace")
        if len(data) > self.capacity:
            raise CapacityError(len(data), self.capacity)
        return {"length": len(data), "data": data.ljust(self.capacity, b"\x00")}

    @classmethod
    def decode(cls, raw: Any) -> FixedString:
        """Build an instance from a raw mapping, byte buffer or plain text."""
        return cls(value=decode_text(raw))

    def __str__(self) -> str:
        return self.value


class String256(FixedString):
    capacity: ClassVar[int] = 256


class String512(FixedString):
    capacity: ClassVar[int] = 512


def decode_text(raw: Any) -> str:
    """Extract text from any raw string representation a transport may emit."""
    if raw is None:
        return ""
    if isinstance(raw, FixedString):
        return raw.value
    if isinstance(raw, dict) and "data" in raw:
        data = raw["data"]
        if isinstance(data, str):
            data = data.encode("ascii", errors="replace")
        length = raw.get("length", len(data))
        return bytes(data[:length]).decode("ascii", errors="replace")
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).rstrip(b"\x00").decode("ascii", errors="replace")
    return str(raw)


# ---------------------------------------------------------------------------
# Common structures
# ---------------------------------------------------------------------------


class Timer(BaseModel):
    """Timer block: preset, accumulated and status bits."""

    model_config = ConfigDict(frozen=True)

    pre: int = 0
    acc: int = 0
    en: bool = False
    tt: bool = False
    dn: bool = False


class Counter(BaseModel):
    """Up/down counter block."""

    model_config = ConfigDict(frozen=True)

    pre: int = 0
    acc: int = 0
    cu: bool = False
    cd: bool = False
    dn: bool = False
    ov: bool = False
    un: bool = False


class Control(BaseModel):
    """File/sequencer control block."""

    model_config = ConfigDict(frozen=True)

    length: int = 0
    pos: int = 0
    en: bool = False
    eu: bool = False
    dn: bool = False
    em: bool = False
    er: bool = False
    ul: bool = False
    inhibit: bool = False
    fd: bool = False


# ---------------------------------------------------------------------------
# Data type table
# ---------------------------------------------------------------------------

DATA_TYPE_MAP: dict[str, Any] = {
    "BOOL": bool,
    "SINT": int,
    "INT": int,
    "DINT": int,
    "LINT": int,
    "USINT": int,
    "UINT": int,
    "UDINT": int,
    "ULINT": int,
    "REAL": float,
    "LREAL": float,
    "DECIMAL": Decimal,
    "STRING": FixedString,
    "STRING256": String256,
    "STRING512": String512,
    "TIMER": Timer,
    "COUNTER": Counter,
    "CONTROL": Control,
}


def resolve_data_type(name: str) -> Any:
    """Map a controller type name (case-insensitive) to its Python type.

    Raises
    ------
    KeyError
        If the name is not a known controller data type.
    """
    try:
        return DATA_TYPE_MAP[name.upper()]
    except KeyError:
        raise KeyError(f"Unknown controller data type: {name!r}") from None
