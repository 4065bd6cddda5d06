"""ReadResults — pre-read values handed to an event handler.

Lookups are case-insensitive on the alias.  The container is built once per
handler invocation and is read-only to the handler.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, TypeVar

from edgerelay.models.values import ReadValue

T = TypeVar("T")


class ReadResults:
    """Alias to ``ReadValue`` map with typed accessors.

    Examples
    --------
    >>> results = ReadResults({"Temp": ReadValue(key="Line4.Temp", value=21.5)})
    >>> results.get("temp")
    21.5
    >>> results.get("Pressure", 0.0)
    0.0
    """

    def __init__(self, values: Mapping[str, ReadValue] | None = None) -> None:
        self._values: dict[str, ReadValue] = {}
        self._names: dict[str, str] = {}
        for alias, value in (values or {}).items():
            self._values[alias.lower()] = value
            self._names[alias.lower()] = alias

    @classmethod
    def empty(cls) -> ReadResults:
        return cls()

    # -- Container protocol --------------------------------------------------

    def __getitem__(self, alias: str) -> ReadValue:
        return self._values[alias.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._names.values())

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, alias: object) -> bool:
        return isinstance(alias, str) and alias.lower() in self._values

    # -- Typed accessors ----------------------------------------------------

    def get(self, alias: str, default: Any = None, expected_type: type[T] | None = None) -> Any:
        """Return the value under *alias*, or *default* when absent or mistyped."""
        read = self._values.get(alias.lower())
        if read is None or read.value is None:
            return default
        if expected_type is not None and not isinstance(read.value, expected_type):
            return default
        return read.value

    def get_required(self, alias: str, expected_type: type[T] | None = None) -> Any:
        """Return the value under *alias*.

        Raises
        ------
        KeyError
            If *alias* is absent.
        TypeError
            If the value is not an instance of *expected_type*.
        """
        read = self._values.get(alias.lower())
        if read is None:
            raise KeyError(
                f"Pre-read {alias!r} not found; available: {', '.join(self.names) or 'none'}"
            )
        if expected_type is not None and not isinstance(read.value, expected_type):
            raise TypeError(
                f"Pre-read {alias!r} holds {type(read.value).__name__}, "
                f"not {expected_type.__name__}"
            )
        return read.value

    def get_read(self, alias: str) -> ReadValue | None:
        """Return the full ``ReadValue`` (value, quality, timestamp) or ``None``."""
        return self._values.get(alias.lower())

    # -- Summary ------------------------------------------------------------

    @property
    def names(self) -> list[str]:
        return list(self._names.values())

    @property
    def all_good_quality(self) -> bool:
        return all(read.is_good for read in self._values.values())

    @property
    def bad_quality(self) -> list[str]:
        """Aliases whose value is not GOOD."""
        return [self._names[k] for k, read in self._values.items() if not read.is_good]

    def __repr__(self) -> str:
        return f"ReadResults({self.names!r})"
