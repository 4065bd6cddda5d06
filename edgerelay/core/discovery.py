"""Declarative handler metadata and the discovery scan.

Decorators attach declarations to handler classes; ``discover`` and
``discover_events`` turn those declarations into immutable registration
records.  Declarations are stored on the decorated class itself, so a
subclass does not inherit its parent's subscriptions.

Discovery is pure: it reads declarations and never instantiates handlers.
Malformed or incomplete types are skipped silently by the scans; only the
explicit single-type calls (``registration_for``,
``event_registration_for``) raise ``DiscoveryError``.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from collections.abc import Callable, Iterable
from types import ModuleType
from typing import Any, TypeVar

from edgerelay.core.handlers import EventHandler, MessageHandler
from edgerelay.errors import DiscoveryError
from edgerelay.models.registrations import (
    EventDeclaration,
    EventRegistration,
    PreRead,
    Registration,
    SubscriptionMode,
    SubscriptionSpec,
)

logger = logging.getLogger(__name__)

C = TypeVar("C", bound=type)

_SUBSCRIPTIONS_ATTR = "__edgerelay_subscriptions__"
_PRE_READS_ATTR = "__edgerelay_pre_reads__"
_EVENT_ATTR = "__edgerelay_event__"
_DISABLED_ATTR = "__edgerelay_disabled__"


# ---------------------------------------------------------------------------
# Decorators
# ---------------------------------------------------------------------------


def _prepend(cls: type, attr: str, item: Any) -> None:
    # Class decorators apply bottom-up; prepending keeps top-to-bottom order.
    existing = cls.__dict__.get(attr, ())
    setattr(cls, attr, (item,) + tuple(existing))


def subscribe(
    connection_name: str,
    key: str,
    *,
    poll_interval_ms: int = 0,
    on_change_only: bool = True,
    deadband: float = 0.0,
    mode: SubscriptionMode = SubscriptionMode.POLLING,
) -> Callable[[C], C]:
    """Declare a subscription on a ``MessageHandler``.  Repeatable.

    Parameters
    ----------
    connection_name:
        Name of the connection the key lives on.
    key:
        Tag name or topic.  Topics may use ``+`` and ``#`` wildcards.
    poll_interval_ms:
        Polling interval; ``0`` uses the connection default.
    on_change_only:
        Deliver only values that differ from the previous observation.
    deadband:
        Numeric tolerance below which a change is ignored.
    mode:
        ``POLLING`` (default) or ``UNSOLICITED``.
    """
    spec = SubscriptionSpec(
        connection_name=connection_name,
        key=key,
        poll_interval_ms=poll_interval_ms,
        on_change_only=on_change_only,
        deadband=deadband,
        mode=mode,
    )

    def decorator(cls: C) -> C:
        _prepend(cls, _SUBSCRIPTIONS_ATTR, spec)
        return cls

    return decorator


def disable_handler(cls: C) -> C:
    """Exclude a handler from discovery regardless of its other declarations."""
    setattr(cls, _DISABLED_ATTR, True)
    return cls


def event(
    name: str, *, priority: int = 0, fire_and_forget: bool = False
) -> Callable[[C], C]:
    """Declare the event an ``EventHandler`` responds to.

    Higher *priority* runs first.  A *fire_and_forget* handler is launched
    without being awaited; its failures are only logged.
    """
    declaration = EventDeclaration(
        name=name, priority=priority, fire_and_forget=fire_and_forget
    )

    def decorator(cls: C) -> C:
        if _EVENT_ATTR in cls.__dict__:
            raise DiscoveryError(
                f"{cls.__qualname__} already declares event "
                f"{cls.__dict__[_EVENT_ATTR].name!r}"
            )
        setattr(cls, _EVENT_ATTR, declaration)
        return cls

    return decorator


def pre_read(
    connection_name: str,
    key: str,
    *,
    value_type: Any = None,
    alias: str | None = None,
    continue_on_failure: bool = True,
) -> Callable[[C], C]:
    """Declare a value to read before an event handler runs.  Repeatable.

    The value is stored in the handler's ``ReadResults`` under *alias*
    (default: *key*).  With ``continue_on_failure=False`` a failed read
    aborts the handler invocation.
    """
    read = PreRead(
        connection_name=connection_name,
        key=key,
        value_type=value_type,
        alias=alias,
        continue_on_failure=continue_on_failure,
    )

    def decorator(cls: C) -> C:
        _prepend(cls, _PRE_READS_ATTR, read)
        return cls

    return decorator


# ---------------------------------------------------------------------------
# Declaration accessors
# ---------------------------------------------------------------------------


def subscriptions_of(cls: type) -> tuple[SubscriptionSpec, ...]:
    return tuple(cls.__dict__.get(_SUBSCRIPTIONS_ATTR, ()))


def pre_reads_of(cls: type) -> tuple[PreRead, ...]:
    return tuple(cls.__dict__.get(_PRE_READS_ATTR, ()))


def event_of(cls: type) -> EventDeclaration | None:
    return cls.__dict__.get(_EVENT_ATTR)


def is_disabled(cls: type) -> bool:
    return bool(cls.__dict__.get(_DISABLED_ATTR, False))


# ---------------------------------------------------------------------------
# Message handler discovery
# ---------------------------------------------------------------------------


def _message_handler_problem(candidate: Any) -> str | None:
    """Return why *candidate* is not a discoverable message handler, or None."""
    if not isinstance(candidate, type):
        return "not a class"
    if not issubclass(candidate, MessageHandler):
        return "does not subclass MessageHandler"
    if inspect.isabstract(candidate):
        return "is abstract"
    if is_disabled(candidate):
        return "is disabled"
    if not subscriptions_of(candidate):
        return "declares no subscriptions"
    if candidate.payload_type is None:
        return "declares no payload_type"
    return None


def _registrations(cls: type) -> list[Registration]:
    return [
        Registration(
            key=spec.key,
            handler_type=cls,
            payload_type=cls.payload_type,
            connection_name=spec.connection_name,
            poll_interval_ms=spec.poll_interval_ms,
            on_change_only=spec.on_change_only,
            deadband=spec.deadband,
            mode=spec.mode,
        )
        for spec in subscriptions_of(cls)
    ]


def discover(types: Iterable[Any]) -> list[Registration]:
    """Produce one ``Registration`` per subscription declaration.

    Types that are not message handlers, are disabled, declare no
    subscriptions or lack a payload type are skipped.  Output order follows
    input order, then declaration order.
    """
    registrations: list[Registration] = []
    for candidate in types:
        problem = _message_handler_problem(candidate)
        if problem is not None:
            logger.debug("Skipping %r: %s", candidate, problem)
            continue
        registrations.extend(_registrations(candidate))
    return registrations


def registration_for(cls: type) -> list[Registration]:
    """Explicitly register one handler type.

    Raises
    ------
    DiscoveryError
        If *cls* is not a usable message handler.
    """
    problem = _message_handler_problem(cls)
    if problem is not None:
        raise DiscoveryError(f"{getattr(cls, '__qualname__', cls)!r} {problem}")
    return _registrations(cls)


# ---------------------------------------------------------------------------
# Event handler discovery
# ---------------------------------------------------------------------------


def _event_handler_problem(candidate: Any) -> str | None:
    if not isinstance(candidate, type):
        return "not a class"
    if not issubclass(candidate, EventHandler):
        return "does not subclass EventHandler"
    if inspect.isabstract(candidate):
        return "is abstract"
    if is_disabled(candidate):
        return "is disabled"
    if event_of(candidate) is None:
        return "declares no @event"
    return None


def _event_registration(cls: type) -> EventRegistration:
    declaration = event_of(cls)
    return EventRegistration(
        event_name=declaration.name,
        handler_type=cls,
        event_data_type=cls.event_data_type,
        result_type=cls.result_type,
        priority=declaration.priority,
        fire_and_forget=declaration.fire_and_forget,
        pre_reads=pre_reads_of(cls),
    )


def discover_events(types: Iterable[Any]) -> list[EventRegistration]:
    """Produce one ``EventRegistration`` per usable event handler type."""
    registrations: list[EventRegistration] = []
    for candidate in types:
        problem = _event_handler_problem(candidate)
        if problem is not None:
            logger.debug("Skipping %r: %s", candidate, problem)
            continue
        registrations.append(_event_registration(candidate))
    return registrations


def event_registration_for(cls: type) -> EventRegistration:
    """Explicitly register one event handler type.

    Raises
    ------
    DiscoveryError
        If *cls* lacks ``@event`` or does not subclass ``EventHandler``.
    """
    problem = _event_handler_problem(cls)
    if problem is not None:
        raise DiscoveryError(f"{getattr(cls, '__qualname__', cls)!r} {problem}")
    return _event_registration(cls)


# ---------------------------------------------------------------------------
# Module scanning
# ---------------------------------------------------------------------------


def module_types(module: ModuleType | str) -> list[type]:
    """Classes defined in *module* (a module object or dotted name), by name."""
    if isinstance(module, str):
        module = importlib.import_module(module)
    return [
        obj
        for _, obj in sorted(vars(module).items())
        if isinstance(obj, type) and obj.__module__ == module.__name__
    ]


def discover_module(module: ModuleType | str) -> list[Registration]:
    return discover(module_types(module))


def discover_module_events(module: ModuleType | str) -> list[EventRegistration]:
    return discover_events(module_types(module))
