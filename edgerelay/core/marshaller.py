"""ValueMarshaller — raw transport values to typed payloads and back.

Transports hand the dispatch engine untyped values: scalars, sequences, field
lists for structures, or fixed-capacity string buffers.  Handlers declare the
payload type they expect.  The marshaller bridges the two without reflection
over generic containers: every payload type either has a codec in the
``PayloadTypeRegistry`` or falls into one of three generic shapes.

Decision order for ``to_typed``
-------------------------------
1. A codec registered for the exact target type.
2. Structured types (pydantic models and dataclasses): populated
   field-by-field, in declared order, from a sequence or a mapping.
3. Array types (``list[T]``, ``tuple[T, ...]``): each element converted,
   keeping the unconverted element when its conversion fails.
4. Primitive conversion, falling back to the raw value unmodified.

Only fixed-capacity string overflow raises (``CapacityError``); every other
conversion failure falls back to the raw value.
"""

from __future__ import annotations

import dataclasses
import logging
import types
import typing
from collections.abc import Callable, Mapping, Sequence
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel

from edgerelay.errors import MarshallingError
from edgerelay.models.datatypes import FixedString, decode_text, resolve_data_type

logger = logging.getLogger(__name__)

_CONVERSION_ERRORS = (TypeError, ValueError, ArithmeticError, InvalidOperation)
_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off", ""})


class PayloadCodec(NamedTuple):
    """Constructor/serializer pair for one payload type."""

    decode: Callable[[Any], Any]
    encode: Callable[[Any], Any] | None = None


# ---------------------------------------------------------------------------
# Primitive decoders
# ---------------------------------------------------------------------------


def _unwrap_single(raw: Any) -> Any:
    if isinstance(raw, (list, tuple)) and len(raw) == 1:
        return raw[0]
    return raw


def _decode_bool(raw: Any) -> bool:
    raw = _unwrap_single(raw)
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"Not a boolean: {raw!r}")
    if isinstance(raw, (bool, int, float, Decimal)):
        return bool(raw)
    raise TypeError(f"Cannot convert {type(raw).__name__} to bool")


def _decode_int(raw: Any) -> int:
    raw = _unwrap_single(raw)
    if isinstance(raw, str):
        text = raw.strip()
        try:
            return int(text)
        except ValueError:
            return int(float(text))
    if isinstance(raw, (bytes, bytearray)):
        return int.from_bytes(raw, "little", signed=True)
    return int(raw)


def _decode_float(raw: Any) -> float:
    raw = _unwrap_single(raw)
    if isinstance(raw, (bytes, bytearray)):
        raise TypeError("Byte buffers need a registered codec to become floats")
    return float(raw)


def _decode_decimal(raw: Any) -> Decimal:
    raw = _unwrap_single(raw)
    if isinstance(raw, float):
        return Decimal(repr(raw))
    return Decimal(raw)


def _decode_bytes(raw: Any) -> bytes:
    if isinstance(raw, str):
        return raw.encode("utf-8")
    return bytes(raw)


def _decode_str(raw: Any) -> str:
    return decode_text(_unwrap_single(raw))


def _encode_str(value: str) -> dict[str, Any]:
    return FixedString(value=value).encode()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class PayloadTypeRegistry:
    """Maps payload types to their codecs.

    A fresh registry already knows ``bool``, ``int``, ``float``, ``Decimal``,
    ``str``, ``bytes`` and every ``FixedString`` subclass it meets.  Register
    additional types with ``register``.

    Examples
    --------
    >>> registry = PayloadTypeRegistry()
    >>> registry.register(complex, complex, lambda c: [c.real, c.imag])
    >>> registry.lookup(complex).decode("1+2j")
    (1+2j)
    """

    def __init__(self) -> None:
        self._codecs: dict[Any, PayloadCodec] = {}
        self.register(bool, _decode_bool)
        self.register(int, _decode_int)
        self.register(float, _decode_float)
        self.register(Decimal, _decode_decimal, str)
        self.register(str, _decode_str, _encode_str)
        self.register(bytes, _decode_bytes)

    def register(
        self,
        payload_type: Any,
        decode: Callable[[Any], Any],
        encode: Callable[[Any], Any] | None = None,
    ) -> None:
        """Register (or replace) the codec for *payload_type*."""
        self._codecs[payload_type] = PayloadCodec(decode=decode, encode=encode)
        logger.debug("Registered payload codec for %r", payload_type)

    def unregister(self, payload_type: Any) -> None:
        self._codecs.pop(payload_type, None)

    def lookup(self, payload_type: Any) -> PayloadCodec | None:
        """Return the codec for *payload_type*, or ``None`` if it has none."""
        codec = self._codecs.get(payload_type)
        if codec is not None:
            return codec
        if is_class(payload_type) and issubclass(payload_type, FixedString):
            return PayloadCodec(decode=payload_type.decode, encode=payload_type.encode)
        return None

    def lookup_instance(self, value: Any) -> PayloadCodec | None:
        """Return the codec registered for the exact type of *value*."""
        return self._codecs.get(type(value))

    def __contains__(self, payload_type: Any) -> bool:
        return self.lookup(payload_type) is not None


# ---------------------------------------------------------------------------
# Type inspection helpers
# ---------------------------------------------------------------------------


def is_class(target_type: Any) -> bool:
    """True for plain classes; parameterized generics such as ``list[int]`` are not."""
    return isinstance(target_type, type) and typing.get_origin(target_type) is None


def is_structured(target_type: Any) -> bool:
    """True for types with named fields (pydantic models and dataclasses)."""
    if not is_class(target_type):
        return False
    if issubclass(target_type, FixedString):
        return False
    if issubclass(target_type, BaseModel):
        return True
    return dataclasses.is_dataclass(target_type)


def structured_fields(target_type: type) -> list[tuple[str, Any]]:
    """Return ``(name, annotation)`` pairs in declared order."""
    if issubclass(target_type, BaseModel):
        return [
            (name, info.annotation)
            for name, info in target_type.model_fields.items()
        ]
    try:
        hints = typing.get_type_hints(target_type)
    except Exception:  # noqa: BLE001
        hints = {}
    return [
        (field.name, hints.get(field.name, field.type))
        for field in dataclasses.fields(target_type)
        if field.init
    ]


def array_element_types(target_type: Any) -> tuple[Any, ...] | None:
    """Element types for list/tuple targets, or ``None`` if not an array type.

    A homogeneous array yields a one-element tuple with ``Ellipsis`` appended
    (``(T, ...)``); a fixed-shape tuple yields its positional types.
    """
    origin = typing.get_origin(target_type)
    args = typing.get_args(target_type)
    if target_type in (list, tuple) or origin in (list, Sequence):
        return (args[0] if args else Any, ...)
    if origin is tuple:
        if not args:
            return (Any, ...)
        if len(args) == 2 and args[1] is Ellipsis:
            return (args[0], ...)
        return args
    return None


def _strip_optional(target_type: Any) -> tuple[Any, bool]:
    origin = typing.get_origin(target_type)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(target_type) if a is not type(None)]
        optional = len(args) < len(typing.get_args(target_type))
        if len(args) == 1:
            return args[0], optional
        return target_type, optional
    return target_type, False


# ---------------------------------------------------------------------------
# Marshaller
# ---------------------------------------------------------------------------


class ValueMarshaller:
    """Converts raw transport values to typed payloads and back.

    Parameters
    ----------
    registry:
        Codec registry.  A default registry is created when omitted.
    """

    def __init__(self, registry: PayloadTypeRegistry | None = None) -> None:
        self.registry = registry or PayloadTypeRegistry()

    # ------------------------------------------------------------------
    # Raw -> typed
    # ------------------------------------------------------------------

    def to_typed(self, raw_value: Any, target_type: Any) -> Any:
        """Convert *raw_value* into an instance of *target_type*.

        *target_type* may also be a controller type name such as ``"REAL"``
        (see ``edgerelay.models.datatypes.DATA_TYPE_MAP``).  On any
        conversion failure the raw value is returned unmodified.
        """
        if target_type is None or target_type is Any:
            return raw_value
        if isinstance(target_type, str):
            try:
                target_type = resolve_data_type(target_type)
            except KeyError:
                logger.debug("Unknown data type name %r; passing value through", target_type)
                return raw_value

        target_type, optional = _strip_optional(target_type)
        if raw_value is None:
            return None
        if is_class(target_type) and type(raw_value) is target_type:
            return raw_value

        codec = self.registry.lookup(target_type)
        if codec is not None:
            return self._decode_with(codec, raw_value, target_type)

        if is_structured(target_type):
            return self._populate_structured(raw_value, target_type)

        element_types = array_element_types(target_type)
        if element_types is not None:
            return self._convert_array(raw_value, target_type, element_types)

        if is_class(target_type) and issubclass(target_type, Enum):
            try:
                return target_type(_unwrap_single(raw_value))
            except _CONVERSION_ERRORS:
                return raw_value

        if is_class(target_type):
            try:
                return target_type(raw_value)
            except _CONVERSION_ERRORS:
                logger.debug(
                    "Could not convert %r to %s; passing value through",
                    raw_value,
                    target_type.__name__,
                )
                return raw_value
        return raw_value

    def _decode_with(self, codec: PayloadCodec, raw_value: Any, target_type: Any) -> Any:
        try:
            return codec.decode(raw_value)
        except _CONVERSION_ERRORS as exc:
            logger.debug(
                "Codec for %r rejected %r (%s); passing value through",
                target_type,
                raw_value,
                exc,
            )
            return raw_value

    def _populate_structured(self, raw_value: Any, target_type: type) -> Any:
        if isinstance(raw_value, target_type):
            return raw_value

        fields = structured_fields(target_type)
        values: dict[str, Any] = {}
        if isinstance(raw_value, Mapping):
            lowered = {str(k).lower(): v for k, v in raw_value.items()}
            for name, annotation in fields:
                if name in raw_value:
                    values[name] = self.to_typed(raw_value[name], annotation)
                elif name.lower() in lowered:
                    values[name] = self.to_typed(lowered[name.lower()], annotation)
        elif isinstance(raw_value, (list, tuple)):
            for (name, annotation), item in zip(fields, raw_value):
                values[name] = self.to_typed(item, annotation)
        else:
            logger.debug(
                "Cannot populate %s from %s; passing value through",
                target_type.__name__,
                type(raw_value).__name__,
            )
            return raw_value

        try:
            return target_type(**values)
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "Failed to construct %s from %r: %s", target_type.__name__, raw_value, exc
            )
            return raw_value

    def _convert_array(
        self, raw_value: Any, target_type: Any, element_types: tuple[Any, ...]
    ) -> Any:
        if isinstance(raw_value, (str, bytes, bytearray)) or not isinstance(
            raw_value, Sequence
        ):
            raw_items: Sequence[Any] = [raw_value]
        else:
            raw_items = raw_value

        homogeneous = len(element_types) == 2 and element_types[1] is Ellipsis
        converted: list[Any] = []
        for index, item in enumerate(raw_items):
            if homogeneous:
                element_type = element_types[0]
            elif index < len(element_types):
                element_type = element_types[index]
            else:
                element_type = Any
            converted.append(self._convert_element(item, element_type))

        origin = typing.get_origin(target_type) or target_type
        if origin is tuple:
            return tuple(converted)
        return converted

    def _convert_element(self, item: Any, element_type: Any) -> Any:
        try:
            return self.to_typed(item, element_type)
        except MarshallingError:
            return item

    # ------------------------------------------------------------------
    # Typed -> raw
    # ------------------------------------------------------------------

    def to_raw(self, value: Any) -> Any:
        """Convert a typed value into the raw form a transport writes.

        Raises
        ------
        CapacityError
            If a string does not fit its fixed-capacity representation.
        """
        if value is None:
            return None
        if isinstance(value, FixedString):
            return value.encode()
        if isinstance(value, Enum):
            return value.value

        codec = self.registry.lookup_instance(value)
        if codec is not None and codec.encode is not None:
            return codec.encode(value)

        if isinstance(value, BaseModel) or (
            dataclasses.is_dataclass(value) and not isinstance(value, type)
        ):
            return [
                self.to_raw(getattr(value, name))
                for name, _ in structured_fields(type(value))
            ]
        if isinstance(value, (list, tuple)):
            return self._flatten(value)
        return value

    def _flatten(self, items: Sequence[Any]) -> list[Any]:
        flat: list[Any] = []
        for item in items:
            raw = self.to_raw(item)
            if isinstance(raw, list):
                flat.extend(raw)
            else:
                flat.append(raw)
        return flat

