"""EdgeRelay — the root orchestrator and its builder.

``EdgeRelay`` owns the live connections, the shared ``Activator`` and
``ValueMarshaller``, one ``DispatchEngine`` per connection and the
``EventMediator``.  It is the context object application code passes around;
handlers that need it declare an ``EdgeRelay`` constructor parameter and the
activator injects the live instance.

Startup order (``start``):

1. connect every connection;
2. start each connection's dispatch engine on the running loop;
3. subscribe the discovered registrations that target each connection;
4. hook reconnect listeners so subscriptions are restored after a fault.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from types import ModuleType
from typing import Any, TypeVar

from edgerelay.core.activator import Activator, HandlerFactory
from edgerelay.core.discovery import discover, discover_module
from edgerelay.core.dispatch import DispatchEngine, MessageCallback, Subscription
from edgerelay.core.marshaller import PayloadTypeRegistry, ValueMarshaller
from edgerelay.errors import ConnectionNotFoundError, EdgeRelayError
from edgerelay.events.mediator import EventMediator
from edgerelay.models.connection import DeliverySemantics
from edgerelay.models.registrations import Registration
from edgerelay.models.values import ReadValue

logger = logging.getLogger(__name__)

ConnT = TypeVar("ConnT")


class EdgeRelay:
    """Root orchestrator: connections, dispatch engines and the event mediator.

    Prefer ``EdgeRelayBuilder`` to construct one.

    Parameters
    ----------
    connections:
        Live transport connections; names must be unique (case-insensitive).
    activator:
        Shared activator.  It is bound to this relay and the connections.
    marshaller:
        Shared value marshaller.
    registrations:
        Message handler registrations produced by discovery.
    event_sources:
        Handler types or modules the mediator scans on its first emit.
    error_threshold / error_log_interval_s:
        Dispatch engine overrides; default to ``edgerelay.config``.
    """

    def __init__(
        self,
        connections: Iterable[Any],
        *,
        activator: Activator | None = None,
        marshaller: ValueMarshaller | None = None,
        registrations: Iterable[Registration] = (),
        event_sources: Iterable[type | ModuleType | str] = (),
        error_threshold: int | None = None,
        error_log_interval_s: float | None = None,
    ) -> None:
        self._connections: dict[str, Any] = {}
        for connection in connections:
            name = connection.connection_name.lower()
            if name in self._connections:
                raise EdgeRelayError(
                    f"Connection name {connection.connection_name!r} is configured twice"
                )
            self._connections[name] = connection

        self.marshaller = marshaller or ValueMarshaller()
        self.activator = activator or Activator()
        self.activator.bind(root=self, connections=self._connections.values())
        self._registrations: tuple[Registration, ...] = tuple(registrations)

        self._engines: dict[str, DispatchEngine] = {
            name: DispatchEngine(
                connection,
                self.activator,
                self.marshaller,
                error_threshold=error_threshold,
                error_log_interval_s=error_log_interval_s,
            )
            for name, connection in self._connections.items()
        }
        self.mediator = EventMediator(
            self.activator,
            self.get_connection_by_name,
            marshaller=self.marshaller,
            handler_sources=event_sources,
        )
        self._started = False

        for registration in self._registrations:
            if registration.connection_name.lower() not in self._connections:
                logger.warning(
                    "%s subscribes %s on unknown connection %r",
                    registration.handler_type.__name__,
                    registration.key,
                    registration.connection_name,
                )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @property
    def connections(self) -> list[Any]:
        return list(self._connections.values())

    @property
    def registrations(self) -> tuple[Registration, ...]:
        return self._registrations

    @property
    def started(self) -> bool:
        return self._started

    def get_connection(self, connection_type: type[ConnT]) -> ConnT:
        """Return the single connection of *connection_type*.

        Raises
        ------
        ConnectionNotFoundError
            If no connection (or more than one) matches.
        """
        found = [c for c in self._connections.values() if isinstance(c, connection_type)]
        if len(found) == 1:
            return found[0]
        available = ", ".join(
            f"{c.connection_name} ({type(c).__name__})" for c in self._connections.values()
        )
        if not found:
            raise ConnectionNotFoundError(
                f"No connection of type {connection_type.__name__}; available: "
                f"{available or 'none'}"
            )
        raise ConnectionNotFoundError(
            f"{len(found)} connections of type {connection_type.__name__}; "
            "use get_connection_by_name"
        )

    def get_connection_by_name(self, name: str) -> Any:
        """Return the connection named *name* (case-insensitive)."""
        try:
            return self._connections[name.lower()]
        except KeyError:
            raise ConnectionNotFoundError(
                f"No connection named {name!r}; available: "
                f"{', '.join(c.connection_name for c in self._connections.values()) or 'none'}"
            ) from None

    def engine(self, connection_name: str) -> DispatchEngine:
        try:
            return self._engines[connection_name.lower()]
        except KeyError:
            raise ConnectionNotFoundError(f"No connection named {connection_name!r}") from None

    async def connect_all(self) -> None:
        for connection in self._connections.values():
            await connection.connect()

    async def disconnect_all(self) -> None:
        for connection in self._connections.values():
            try:
                await connection.disconnect()
            except Exception as exc:  # noqa: BLE001
                logger.error("Disconnecting %s failed: %s", connection.connection_name, exc)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, start dispatch engines and subscribe registrations."""
        if self._started:
            return
        await self.connect_all()
        for name, engine in self._engines.items():
            engine.start()
            await engine.subscribe_registrations(self._registrations)
            connection = self._connections[name]
            add_listener = getattr(connection, "add_reconnect_listener", None)
            if callable(add_listener):
                add_listener(engine.restore)
        self._started = True
        logger.info(
            "EdgeRelay started: %d connection(s), %d registration(s)",
            len(self._connections),
            len(self._registrations),
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop new work, wait for in-flight dispatches, then disconnect."""
        for engine in self._engines.values():
            engine.close()
        self.mediator.close()
        for engine in self._engines.values():
            await engine.drain(timeout)
            await engine.clear()
        await self.mediator.drain(timeout)
        await self.disconnect_all()
        self._started = False
        logger.info("EdgeRelay stopped")

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight dispatches and fire-and-forget handlers."""
        drained = True
        for engine in self._engines.values():
            drained = await engine.drain(timeout) and drained
        return await self.mediator.drain(timeout) and drained

    async def __aenter__(self) -> EdgeRelay:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Application API
    # ------------------------------------------------------------------

    async def subscribe(
        self, connection_name: str, key: str, callback: MessageCallback, **options: Any
    ) -> Subscription:
        """Subscribe a callback on one connection; see ``DispatchEngine.subscribe``."""
        return await self.engine(connection_name).subscribe(key, callback, **options)

    async def read(self, connection_name: str, key: str, value_type: Any = None) -> ReadValue:
        """Read *key* once, converting the value to *value_type* when GOOD."""
        result = await self.get_connection_by_name(connection_name).read_once(key, value_type)
        if value_type is not None and result.is_good:
            return result.model_copy(
                update={"value": self.marshaller.to_typed(result.value, value_type)}
            )
        return result

    async def write(self, connection_name: str, key: str, value: Any) -> None:
        """Write *value* to *key* in its raw form.

        Raises
        ------
        CapacityError
            If a string value does not fit its fixed capacity.
        """
        raw = self.marshaller.to_raw(value)
        await self.get_connection_by_name(connection_name).write_once(key, raw)

    async def publish(
        self,
        connection_name: str,
        destination: str,
        payload: Any,
        delivery: DeliverySemantics = DeliverySemantics.AT_LEAST_ONCE,
        retain: bool = False,
    ) -> None:
        connection = self.get_connection_by_name(connection_name)
        publisher = getattr(connection, "publisher", None)
        if publisher is None:
            raise EdgeRelayError(f"Connection {connection_name!r} cannot publish")
        await publisher.publish(destination, payload, delivery, retain)

    async def emit(self, event_name: str, data: Any = None) -> None:
        await self.mediator.emit(event_name, data)

    async def emit_one(self, event_name: str, data: Any = None) -> Any:
        return await self.mediator.emit_one(event_name, data)

    async def emit_all(self, event_name: str, data: Any = None) -> list[Any]:
        return await self.mediator.emit_all(event_name, data)

    def __repr__(self) -> str:
        return (
            f"EdgeRelay(connections={[c.connection_name for c in self.connections]}, "
            f"registrations={len(self._registrations)}, started={self._started})"
        )


class EdgeRelayBuilder:
    """Fluent construction of an ``EdgeRelay``.

    Usage
    -----
    >>> relay = (
    ...     EdgeRelayBuilder()
    ...     .add_connection(InMemoryConnection("plc"))
    ...     .add_handlers(TemperatureHandler, RecipeRequestHandler)
    ...     .build()
    ... )
    """

    def __init__(self) -> None:
        self._connections: list[Any] = []
        self._factory: HandlerFactory | None = None
        self._handler_types: list[type] = []
        self._modules: list[ModuleType | str] = []
        self._builders: list[tuple[type, Callable[..., Any]]] = []
        self._registry = PayloadTypeRegistry()
        self._error_threshold: int | None = None
        self._error_log_interval_s: float | None = None

    def with_factory(self, factory: HandlerFactory) -> EdgeRelayBuilder:
        self._factory = factory
        return self

    def add_connection(self, connection: Any) -> EdgeRelayBuilder:
        self._connections.append(connection)
        return self

    def add_handlers(self, *handler_types: type) -> EdgeRelayBuilder:
        """Add message and/or event handler types."""
        self._handler_types.extend(handler_types)
        return self

    def add_handler_module(self, module: ModuleType | str) -> EdgeRelayBuilder:
        """Scan *module* (object or dotted name) for message and event handlers."""
        self._modules.append(module)
        return self

    def register_builder(self, target_type: type, builder: Callable[..., Any]) -> EdgeRelayBuilder:
        self._builders.append((target_type, builder))
        return self

    def register_payload_type(
        self,
        payload_type: Any,
        decode: Callable[[Any], Any],
        encode: Callable[[Any], Any] | None = None,
    ) -> EdgeRelayBuilder:
        self._registry.register(payload_type, decode, encode)
        return self

    def with_error_threshold(self, threshold: int) -> EdgeRelayBuilder:
        self._error_threshold = threshold
        return self

    def with_error_log_interval(self, seconds: float) -> EdgeRelayBuilder:
        self._error_log_interval_s = seconds
        return self

    def build(self) -> EdgeRelay:
        """Discover registrations and assemble the relay.

        Raises
        ------
        ActivationError
            If registered builders make a handler's constructor ambiguous.
        EdgeRelayError
            If two connections share a name.
        """
        activator = Activator(self._factory)
        for target_type, builder in self._builders:
            activator.register_builder(target_type, builder)

        registrations = discover(self._handler_types)
        for module in self._modules:
            registrations.extend(discover_module(module))

        return EdgeRelay(
            self._connections,
            activator=activator,
            marshaller=ValueMarshaller(self._registry),
            registrations=registrations,
            event_sources=[*self._handler_types, *self._modules],
            error_threshold=self._error_threshold,
            error_log_interval_s=self._error_log_interval_s,
        )
