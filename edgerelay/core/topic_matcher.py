"""Hierarchical key matching with single- and multi-level wildcards.

Keys and patterns are ``/``-delimited.  ``+`` matches exactly one segment;
``#`` matches every remaining segment (including none) and is only legal as
the final segment of a pattern.
"""

from __future__ import annotations

SEPARATOR = "/"
SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"


def matches(pattern: str, key: str) -> bool:
    """Return ``True`` if *key* is matched by *pattern*.

    Examples
    --------
    >>> matches("a/+/c", "a/b/c")
    True
    >>> matches("a/+/c", "a/b/c/d")
    False
    >>> matches("a/#", "a")
    True
    """
    if not pattern or not key:
        return False
    if pattern == key:
        return True

    pattern_parts = pattern.split(SEPARATOR)
    key_parts = key.split(SEPARATOR)

    for index, segment in enumerate(pattern_parts):
        if segment == MULTI_LEVEL:
            return index == len(pattern_parts) - 1
        if index >= len(key_parts):
            return False
        if segment != SINGLE_LEVEL and segment != key_parts[index]:
            return False

    return len(pattern_parts) == len(key_parts)


def is_valid_pattern(pattern: str) -> bool:
    """Check wildcard placement: ``#`` alone and last, ``+`` alone in its segment."""
    if not pattern:
        return False

    segments = pattern.split(SEPARATOR)
    for index, segment in enumerate(segments):
        if MULTI_LEVEL in segment:
            if segment != MULTI_LEVEL or index != len(segments) - 1:
                return False
        if SINGLE_LEVEL in segment and segment != SINGLE_LEVEL:
            return False
    return True


def has_wildcards(pattern: str) -> bool:
    return SINGLE_LEVEL in pattern or MULTI_LEVEL in pattern
