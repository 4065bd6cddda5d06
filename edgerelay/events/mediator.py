"""EventMediator — on-demand "pull" events with pre-read orchestration.

Application code calls ``emit``/``emit_one``/``emit_all`` with an event name.
For every handler registered for that name, in descending priority (ties in
registration order), the mediator:

1. executes the handler's pre-reads against the named connections;
2. resolves a scoped handler instance through the ``Activator``;
3. invokes it, either awaited or, for fire-and-forget handlers, launched as
   a task whose failures are only logged.

A failure in one handler (including a mandatory pre-read) is logged and does
not stop the remaining handlers.  An event with no handlers logs a warning
and yields an empty result.

The mediator is an explicit context object owned by ``EdgeRelay``; there is
no module-level instance.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Callable, Iterable
from types import ModuleType
from typing import Any

from edgerelay.core.activator import Activator
from edgerelay.core.discovery import (
    discover_events,
    discover_module_events,
    event_registration_for,
)
from edgerelay.core.marshaller import ValueMarshaller
from edgerelay.errors import ConnectionNotFoundError, PreReadError
from edgerelay.events.results import ReadResults
from edgerelay.models.registrations import EventRegistration, PreRead
from edgerelay.models.values import ReadValue

logger = logging.getLogger(__name__)

_NO_RESULT = object()


class EventMediator:
    """Registry and dispatcher for on-demand event handlers.

    Parameters
    ----------
    activator:
        Builds scoped handler instances.
    connections:
        Either an iterable of live connections or a callable mapping a
        connection name to a connection (raising ``ConnectionNotFoundError``
        when unknown).  Used for pre-reads.
    marshaller:
        Converts pre-read values and event data to their declared types.
    handler_sources:
        Handler types, modules or dotted module names scanned on the first
        emit.

    Usage
    -----
    >>> mediator = EventMediator(activator, connections=[plc])
    >>> mediator.register_handler(RecipeRequestHandler)
    >>> recipe = await mediator.emit_one("recipe.requested", {"line": 4})
    """

    def __init__(
        self,
        activator: Activator,
        connections: Iterable[Any] | Callable[[str], Any] = (),
        *,
        marshaller: ValueMarshaller | None = None,
        handler_sources: Iterable[type | ModuleType | str] = (),
    ) -> None:
        self._activator = activator
        if callable(connections):
            self._find_connection = connections
        else:
            by_name = {c.connection_name.lower(): c for c in connections}
            self._find_connection = lambda name: _lookup(by_name, name)
        self._marshaller = marshaller or ValueMarshaller()
        self._sources: list[type | ModuleType | str] = list(handler_sources)
        self._registrations: dict[str, tuple[EventRegistration, ...]] = {}
        self._lock = threading.Lock()
        self._initialized = False
        self._closed = False
        self._detached: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_handler_source(self, source: type | ModuleType | str) -> None:
        """Add a source scanned on the first emit (or immediately if already initialized)."""
        with self._lock:
            initialized = self._initialized
            if not initialized:
                self._sources.append(source)
        if initialized:
            for registration in self._scan(source):
                self.register(registration)

    def register(self, registration: EventRegistration) -> bool:
        """Add *registration*, keeping its event's handlers priority-sorted.

        Returns ``False`` if the same handler type is already registered for
        the event.
        """
        with self._lock:
            current = self._registrations.get(registration.event_name, ())
            if any(r.handler_type is registration.handler_type for r in current):
                logger.debug(
                    "%s already registered for event %s",
                    registration.handler_type.__name__,
                    registration.event_name,
                )
                return False
            # sorted() is stable, so equal priorities keep registration order
            self._registrations[registration.event_name] = tuple(
                sorted((*current, registration), key=lambda r: -r.priority)
            )
        logger.info(
            "Registered %s for event %s (priority=%d%s)",
            registration.handler_type.__name__,
            registration.event_name,
            registration.priority,
            ", fire-and-forget" if registration.fire_and_forget else "",
        )
        return True

    def register_handler(self, handler_type: type) -> EventRegistration:
        """Register one event handler type.

        Raises
        ------
        DiscoveryError
            If *handler_type* lacks ``@event`` or does not subclass
            ``EventHandler``.
        """
        registration = event_registration_for(handler_type)
        self.register(registration)
        return registration

    def register_handlers(self, handler_types: Iterable[type]) -> list[EventRegistration]:
        """Register every usable handler in *handler_types*; others are skipped."""
        registrations = discover_events(handler_types)
        for registration in registrations:
            self.register(registration)
        return registrations

    def register_module(self, module: ModuleType | str) -> list[EventRegistration]:
        registrations = discover_module_events(module)
        for registration in registrations:
            self.register(registration)
        return registrations

    def registrations_for(self, event_name: str) -> tuple[EventRegistration, ...]:
        self._ensure_initialized()
        return self._registrations.get(event_name, ())

    @property
    def event_names(self) -> list[str]:
        self._ensure_initialized()
        return sorted(self._registrations)

    def _scan(self, source: type | ModuleType | str) -> list[EventRegistration]:
        if isinstance(source, type):
            return discover_events([source])
        return discover_module_events(source)

    def _ensure_initialized(self) -> None:
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            sources = list(self._sources)
        for source in sources:
            for registration in self._scan(source):
                self.register(registration)
        logger.debug("Event mediator initialized from %d source(s)", len(sources))

    # ------------------------------------------------------------------
    # Emit
    # ------------------------------------------------------------------

    async def emit(self, event_name: str, data: Any = None) -> None:
        """Invoke every handler for *event_name*; results are discarded."""
        await self._emit(event_name, data)

    async def emit_one(self, event_name: str, data: Any = None) -> Any:
        """Invoke every handler and return the first produced result (or ``None``)."""
        results = await self._emit(event_name, data)
        return results[0] if results else None

    async def emit_all(self, event_name: str, data: Any = None) -> list[Any]:
        """Invoke every handler and return all produced results in priority order."""
        return await self._emit(event_name, data)

    async def _emit(self, event_name: str, data: Any) -> list[Any]:
        if self._closed:
            logger.warning("Event mediator closed; %s not emitted", event_name)
            return []
        self._ensure_initialized()
        registrations = self._registrations.get(event_name, ())
        if not registrations:
            logger.warning("No handlers registered for event %s", event_name)
            return []

        results: list[Any] = []
        for registration in registrations:
            try:
                produced = await self._invoke(registration, data)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Handler %s for event %s failed: %s",
                    registration.handler_type.__name__,
                    event_name,
                    exc,
                )
                continue
            if produced is not _NO_RESULT and produced is not None:
                results.append(produced)
        return results

    async def _invoke(self, registration: EventRegistration, data: Any) -> Any:
        reads = await self._pre_read(registration)
        if registration.event_data_type is not None and data is not None:
            data = self._marshaller.to_typed(data, registration.event_data_type)

        if registration.fire_and_forget:
            task = asyncio.get_running_loop().create_task(
                self._run_handler(registration, data, reads)
            )
            self._detached.add(task)
            task.add_done_callback(self._detached.discard)
            task.add_done_callback(
                lambda t, r=registration: self._on_detached_done(t, r)
            )
            return _NO_RESULT

        result = await self._run_handler(registration, data, reads)
        return result if registration.returns_result else _NO_RESULT

    async def _run_handler(
        self, registration: EventRegistration, data: Any, reads: ReadResults
    ) -> Any:
        scope = self._activator.create_scoped_instance(registration.handler_type)
        try:
            result = scope.instance.handle(data, reads)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            scope.release()

    def _on_detached_done(self, task: asyncio.Task, registration: EventRegistration) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Fire-and-forget handler %s for event %s failed: %s",
                registration.handler_type.__name__,
                registration.event_name,
                exc,
            )

    # ------------------------------------------------------------------
    # Pre-reads
    # ------------------------------------------------------------------

    async def _pre_read(self, registration: EventRegistration) -> ReadResults:
        if not registration.pre_reads:
            return ReadResults.empty()
        values: dict[str, ReadValue] = {}
        for read in registration.pre_reads:
            values[read.result_alias] = await self._read_one(read)
        return ReadResults(values)

    async def _read_one(self, read: PreRead) -> ReadValue:
        alias = read.result_alias
        try:
            connection = self._find_connection(read.connection_name)
            result = await connection.read_once(read.key, read.value_type)
        except Exception as exc:  # noqa: BLE001
            if not read.continue_on_failure:
                raise PreReadError(alias, read.connection_name, str(exc)) from exc
            logger.warning(
                "Pre-read %s (%s on %s) failed, recording COMM_ERROR: %s",
                alias,
                read.key,
                read.connection_name,
                exc,
            )
            return ReadValue.comm_error(read.key)

        if not result.is_good:
            if not read.continue_on_failure:
                raise PreReadError(
                    alias, read.connection_name, f"quality {result.quality.value}"
                )
            return result
        if read.value_type is not None:
            typed = self._marshaller.to_typed(result.value, read.value_type)
            return result.model_copy(update={"value": typed})
        return result

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    @property
    def pending(self) -> int:
        """Fire-and-forget handlers still running."""
        return len(self._detached)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for fire-and-forget handlers.  Returns ``False`` on timeout."""
        tasks = list(self._detached)
        if not tasks:
            return True
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        return not still_running

    def close(self) -> None:
        """Refuse new emits.  Launched fire-and-forget handlers keep running."""
        self._closed = True


def _lookup(by_name: dict[str, Any], name: str) -> Any:
    try:
        return by_name[name.lower()]
    except KeyError:
        raise ConnectionNotFoundError(
            f"No connection named {name!r}; available: {', '.join(sorted(by_name)) or 'none'}"
        ) from None
