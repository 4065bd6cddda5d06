"""Activator — builds handler instances without a DI container.

Resolution order for ``create_instance(target_type)``:

1. The external factory, if one was supplied.  A ``None`` result or a
   ``LookupError`` means "not registered here" and falls through.
2. Greedy construction: among the class constructor and any builders
   registered with ``register_builder``, the candidate with the most
   parameters is used.  Two candidates tied for the most parameters are
   rejected when the second one is registered.
3. Each constructor parameter is resolved by annotation:

   a. the root orchestrator (``EdgeRelay``) the activator is bound to;
   b. a live connection, matched by type, then by parameter name when
      several connections satisfy the type;
   c. a publisher exposed by a live connection;
   d. ``logging.Logger``, from the factory or a no-op logger;
   e. anything else, from the factory.

Any parameter that stays unresolved (and has no default) raises
``ActivationError`` naming both the parameter type and the handler type.
"""

from __future__ import annotations

import inspect
import logging
import threading
import typing
from collections.abc import Callable, Iterable
from typing import Any, NamedTuple

from edgerelay.core.marshaller import is_class
from edgerelay.errors import ActivationError
from edgerelay.transport.base import is_connection_type, is_publisher_type

logger = logging.getLogger(__name__)

HandlerFactory = Callable[[Any], Any]

# Handlers that ask for a logger but get none from the factory write here.
_NULL_LOGGER = logging.getLogger("edgerelay.null")
_NULL_LOGGER.addHandler(logging.NullHandler())
_NULL_LOGGER.propagate = False


def _type_name(value: Any) -> str:
    return getattr(value, "__qualname__", None) or getattr(value, "__name__", None) or repr(value)


# ---------------------------------------------------------------------------
# Scoped handlers
# ---------------------------------------------------------------------------


class ScopedHandler:
    """A handler instance bound to one invocation.

    ``release`` runs the registered release callbacks exactly once, however
    often it is called.  Also usable as a context manager.

    Examples
    --------
    >>> with activator.create_scoped_instance(MyHandler) as handler:
    ...     handler.handle(message, context)
    """

    def __init__(
        self,
        instance: Any,
        release_callbacks: Iterable[Callable[[], Any]] = (),
    ) -> None:
        self._instance = instance
        self._callbacks = list(release_callbacks)
        self._lock = threading.Lock()
        self._released = False

    @property
    def instance(self) -> Any:
        return self._instance

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        for callback in self._callbacks:
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Release of %s failed: %s", type(self._instance).__name__, exc
                )

    def __enter__(self) -> Any:
        return self._instance

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


# ---------------------------------------------------------------------------
# Constructor candidates
# ---------------------------------------------------------------------------


class _Candidate(NamedTuple):
    build: Callable[..., Any]
    label: str
    parameters: tuple[inspect.Parameter, ...]
    hints: dict[str, Any]


class _Unresolved(Exception):
    """Internal: a parameter could not be resolved."""

    def __init__(self, reason: str, annotation: Any) -> None:
        super().__init__(reason)
        self.annotation = annotation


def _inspect_callable(build: Callable[..., Any], label: str) -> _Candidate | None:
    try:
        signature = inspect.signature(build)
    except (TypeError, ValueError):
        return None
    parameters = tuple(
        p
        for p in signature.parameters.values()
        if p.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
    )
    hint_source = build.__init__ if isinstance(build, type) else build
    try:
        hints = typing.get_type_hints(hint_source)
    except Exception:  # noqa: BLE001
        hints = {}
    return _Candidate(build=build, label=label, parameters=parameters, hints=hints)


def _strip_optional(annotation: Any) -> Any:
    args = typing.get_args(annotation)
    if args and type(None) in args:
        remaining = [a for a in args if a is not type(None)]
        if len(remaining) == 1:
            return remaining[0]
    return annotation


# ---------------------------------------------------------------------------
# Activator
# ---------------------------------------------------------------------------


class Activator:
    """Creates handler instances for the dispatch engine and event mediator.

    Parameters
    ----------
    factory:
        Optional external factory ``factory(requested_type) -> instance``.
        Returning ``None`` or raising ``LookupError`` means the type is not
        registered with it.
    root:
        The root orchestrator injected into constructors that ask for it.
    connections:
        Live connections available for injection.
    """

    def __init__(
        self,
        factory: HandlerFactory | None = None,
        *,
        root: Any = None,
        connections: Iterable[Any] = (),
    ) -> None:
        self._factory = factory
        self._root = root
        self._connections: list[Any] = list(connections)
        self._builders: dict[Any, list[_Candidate]] = {}
        self._plans: dict[Any, _Candidate] = {}
        self._lock = threading.Lock()

    # -- Binding -------------------------------------------------------

    def bind(self, root: Any = None, connections: Iterable[Any] | None = None) -> None:
        """Attach the root orchestrator and/or the live connection set."""
        if root is not None:
            self._root = root
        if connections is not None:
            self._connections = list(connections)

    @property
    def factory(self) -> HandlerFactory | None:
        return self._factory

    # -- Registration --------------------------------------------------

    def register_builder(self, target_type: Any, builder: Callable[..., Any]) -> None:
        """Register an extra constructor candidate for *target_type*.

        Raises
        ------
        ActivationError
            If the builder ties with an existing candidate for the greatest
            parameter count, which would make the greedy choice ambiguous.
        """
        label = f"builder {_type_name(builder)}"
        candidate = _inspect_callable(builder, label)
        if candidate is None:
            raise ActivationError(
                f"Builder {_type_name(builder)} for {_type_name(target_type)} has no "
                "inspectable signature",
                handler_type=target_type,
            )

        with self._lock:
            existing = self._candidates(target_type)
            pool = existing + [candidate]
            top = max(len(c.parameters) for c in pool)
            tied = [c for c in pool if len(c.parameters) == top]
            if len(tied) > 1:
                raise ActivationError(
                    f"Ambiguous constructors for {_type_name(target_type)}: "
                    + ", ".join(c.label for c in tied)
                    + f" all take {top} parameter(s)",
                    handler_type=target_type,
                )
            self._builders.setdefault(target_type, []).append(candidate)
            self._plans.pop(target_type, None)
        logger.debug("Registered %s for %s", label, _type_name(target_type))

    # -- Creation ------------------------------------------------------

    def create_instance(self, target_type: Any) -> Any:
        """Return a new instance of *target_type*.

        Raises
        ------
        ActivationError
            If no usable constructor exists or a dependency is unresolved.
        """
        produced = self._from_factory(target_type)
        if produced is not None:
            return produced.instance if isinstance(produced, ScopedHandler) else produced
        return self._construct(target_type)

    def create_scoped_instance(self, target_type: Any) -> ScopedHandler:
        """Return a scoped instance whose ``release`` must be called once.

        Instances built by the activator itself have their ``close()`` (when
        defined) run on release; factory-produced instances belong to the
        factory, which may hand back its own ``ScopedHandler``.
        """
        produced = self._from_factory(target_type)
        if isinstance(produced, ScopedHandler):
            return produced
        if produced is not None:
            return ScopedHandler(produced)

        instance = self._construct(target_type)
        close = getattr(instance, "close", None)
        return ScopedHandler(instance, [close] if callable(close) else [])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _from_factory(self, target_type: Any) -> Any:
        if self._factory is None:
            return None
        try:
            return self._factory(target_type)
        except LookupError:
            return None
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "Factory failed for %s, falling back to construction: %s",
                _type_name(target_type),
                exc,
            )
            return None

    def _candidates(self, target_type: Any) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        if is_class(target_type) and not inspect.isabstract(target_type):
            own = _inspect_callable(target_type, f"{_type_name(target_type)}.__init__")
            if own is not None:
                candidates.append(own)
        candidates.extend(self._builders.get(target_type, ()))
        return candidates

    def _plan(self, target_type: Any) -> _Candidate:
        plan = self._plans.get(target_type)
        if plan is not None:
            return plan
        with self._lock:
            candidates = self._candidates(target_type)
            if not candidates:
                raise ActivationError(
                    f"No usable constructor for {_type_name(target_type)}",
                    handler_type=target_type,
                )
            # max() keeps the first of equal candidates; ties are rejected at registration.
            plan = max(candidates, key=lambda c: len(c.parameters))
            self._plans[target_type] = plan
        return plan

    def _construct(self, target_type: Any) -> Any:
        plan = self._plan(target_type)
        kwargs: dict[str, Any] = {}
        for parameter in plan.parameters:
            annotation = plan.hints.get(parameter.name, parameter.annotation)
            try:
                kwargs[parameter.name] = self._resolve(parameter, annotation, target_type)
            except _Unresolved as unresolved:
                if parameter.default is not inspect.Parameter.empty:
                    kwargs[parameter.name] = parameter.default
                    continue
                raise ActivationError(
                    str(unresolved),
                    handler_type=target_type,
                    parameter_type=unresolved.annotation,
                ) from None

        try:
            positional = [
                kwargs.pop(p.name)
                for p in plan.parameters
                if p.kind is inspect.Parameter.POSITIONAL_ONLY
            ]
            return plan.build(*positional, **kwargs)
        except ActivationError:
            raise
        except Exception as exc:
            raise ActivationError(
                f"Constructing {_type_name(target_type)} via {plan.label} failed: {exc}",
                handler_type=target_type,
            ) from exc

    def _resolve(self, parameter: inspect.Parameter, annotation: Any, target_type: Any) -> Any:
        annotation = _strip_optional(annotation)
        handler = _type_name(target_type)

        if annotation is inspect.Parameter.empty or annotation is Any:
            raise _Unresolved(
                f"{handler} parameter {parameter.name!r} has no type annotation",
                annotation,
            )

        if is_class(annotation) and annotation is not object:
            # (a) root orchestrator
            if self._root is not None and _instances_of([self._root], annotation):
                return self._root
            # (b) connections
            connection = self._resolve_connection(parameter.name, annotation, target_type)
            if connection is not None:
                return connection
            # (c) publishers
            publisher = self._resolve_publisher(parameter.name, annotation, target_type)
            if publisher is not None:
                return publisher
            # (d) loggers
            if issubclass(annotation, logging.Logger):
                return self._resolve_logger(annotation)

        # (e) external factory
        if self._factory is None:
            raise _Unresolved(
                f"{handler} requires {_type_name(annotation)} but no factory is configured",
                annotation,
            )
        try:
            value = self._factory(annotation)
        except LookupError:
            value = None
        except Exception as exc:
            raise ActivationError(
                f"Failed to resolve {_type_name(annotation)} for {handler}: {exc}",
                handler_type=target_type,
                parameter_type=annotation,
            ) from exc
        if value is None:
            raise _Unresolved(
                f"{handler} requires {_type_name(annotation)} but the factory returned None",
                annotation,
            )
        return value

    def _resolve_connection(self, name: str, annotation: type, target_type: Any) -> Any:
        handler = _type_name(target_type)
        candidates = _instances_of(self._connections, annotation)
        if not candidates:
            if is_connection_type(annotation):
                raise _Unresolved(
                    f"{handler} requires {_type_name(annotation)} but no connection of "
                    "that type is configured",
                    annotation,
                )
            return None
        if len(candidates) == 1:
            return candidates[0]
        named = [c for c in candidates if str(c.connection_name).lower() == name.lower()]
        if len(named) == 1:
            return named[0]
        raise ActivationError(
            f"{handler} parameter {name!r} matches {len(candidates)} connections of type "
            f"{_type_name(annotation)}; name the parameter after one of "
            + ", ".join(repr(c.connection_name) for c in candidates),
            handler_type=target_type,
            parameter_type=annotation,
        )

    def _resolve_publisher(self, name: str, annotation: type, target_type: Any) -> Any:
        handler = _type_name(target_type)
        owners = [c for c in self._connections if getattr(c, "publisher", None) is not None]
        candidates = [
            (c, c.publisher) for c in owners if _instances_of([c.publisher], annotation)
        ]
        if not candidates:
            if is_publisher_type(annotation):
                raise _Unresolved(
                    f"{handler} requires {_type_name(annotation)} but no connection "
                    "exposes a matching publisher",
                    annotation,
                )
            return None
        if len(candidates) == 1:
            return candidates[0][1]
        named = [p for c, p in candidates if str(c.connection_name).lower() == name.lower()]
        if len(named) == 1:
            return named[0]
        raise ActivationError(
            f"{handler} parameter {name!r} matches {len(candidates)} publishers; "
            "name the parameter after the owning connection",
            handler_type=target_type,
            parameter_type=annotation,
        )

    def _resolve_logger(self, annotation: type) -> logging.Logger:
        if self._factory is not None:
            try:
                produced = self._factory(annotation)
            except Exception:  # noqa: BLE001
                produced = None
            if isinstance(produced, annotation):
                return produced
        return _NULL_LOGGER

    def __repr__(self) -> str:
        return (
            f"Activator(factory={self._factory!r}, "
            f"connections={[getattr(c, 'connection_name', c) for c in self._connections]})"
        )


def _instances_of(values: Iterable[Any], annotation: type) -> list[Any]:
    try:
        return [v for v in values if isinstance(v, annotation)]
    except TypeError:
        # non-runtime-checkable protocols cannot be used with isinstance
        return []
