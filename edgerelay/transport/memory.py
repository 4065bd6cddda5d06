"""In-memory transport — a simulated controller/broker for tests and demos.

``InMemoryConnection`` satisfies the full ``Connection`` contract without any
wire protocol.  Values are set with ``set_value`` (from any thread), which
stores the value and raises a change notification for every subscription
whose key or wildcard pattern matches.  Its ``publisher`` loops published
payloads back into the same key space, so a publish to ``line/4/temp``
reaches a subscription on ``line/+/temp``.

Fault injection
---------------
``fail_next_connects(n)``
    The next *n* ``connect`` calls raise ``TransportError``.
``fail_reads(key)``
    ``read_once`` for *key* returns a ``COMM_ERROR`` value.
``simulate_fault()``
    Drops the connection; with auto-reconnect enabled a ``ReconnectLoop``
    restores it and notifies reconnect listeners.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from edgerelay.config import config
from edgerelay.core.topic_matcher import matches
from edgerelay.errors import CommError
from edgerelay.models.connection import (
    ConnectionOptions,
    ConnectionState,
    DeliverySemantics,
)
from edgerelay.models.registrations import SubscriptionMode
from edgerelay.models.values import Quality, ReadValue, utc_now
from edgerelay.transport.base import NotificationCallback, TransportError
from edgerelay.transport.reconnect import ReconnectLoop

logger = logging.getLogger(__name__)


class PublishedMessage(BaseModel):
    """Record of one payload published through ``InMemoryPublisher``."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    destination: str
    payload: Any = None
    delivery: DeliverySemantics = DeliverySemantics.AT_LEAST_ONCE
    retain: bool = False
    published_at: datetime = Field(default_factory=utc_now)


class InMemoryPublisher:
    """Publisher that records messages and loops them back to subscribers."""

    def __init__(self, connection: InMemoryConnection) -> None:
        self._connection = connection
        self.published: list[PublishedMessage] = []
        self.retained: dict[str, Any] = {}

    async def publish(
        self,
        destination: str,
        payload: Any,
        delivery: DeliverySemantics = DeliverySemantics.AT_LEAST_ONCE,
        retain: bool = False,
    ) -> None:
        if self._connection.state is not ConnectionState.CONNECTED:
            raise TransportError(
                f"Cannot publish to {destination!r}: connection "
                f"{self._connection.connection_name!r} is {self._connection.state.value}"
            )
        message = PublishedMessage(
            destination=destination, payload=payload, delivery=delivery, retain=retain
        )
        self.published.append(message)
        if retain:
            self.retained[destination] = payload
        logger.debug("Published to %s (%s)", destination, delivery.value)
        self._connection.set_value(destination, payload)


class InMemoryConnection:
    """Simulated connection implementing the ``Connection`` contract.

    Parameters
    ----------
    connection_name:
        Name handlers use in their subscription declarations.
    options:
        Per-connection overrides; ``connection_name`` in *options* wins when
        both are given.
    initial_values:
        Values present before any ``set_value`` call.
    """

    def __init__(
        self,
        connection_name: str = "default",
        *,
        options: ConnectionOptions | None = None,
        initial_values: dict[str, Any] | None = None,
    ) -> None:
        self.options = options or ConnectionOptions(connection_name=connection_name)
        self.connection_name = (
            self.options.connection_name if options is not None else connection_name
        )
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()
        self._values: dict[str, ReadValue] = {}
        self._subscriptions: dict[str, tuple[SubscriptionMode, int]] = {}
        self._callback: NotificationCallback | None = None
        self._publisher = InMemoryPublisher(self)
        self._pending_connect_failures = 0
        self._failing_reads: set[str] = set()
        self._reconnect_listeners: list[Callable[[], Awaitable[None]]] = []
        self._reconnect_task: asyncio.Task | None = None
        self.writes: list[tuple[str, Any]] = []

        for key, value in (initial_values or {}).items():
            self._values[key] = ReadValue(key=key, value=value)

    # ------------------------------------------------------------------
    # Connection contract
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def publisher(self) -> InMemoryPublisher:
        return self._publisher

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    async def connect(self) -> None:
        self._state = ConnectionState.CONNECTING
        if self._pending_connect_failures > 0:
            self._pending_connect_failures -= 1
            self._state = ConnectionState.FAULTED
            raise TransportError(f"Simulated connect failure on {self.connection_name!r}")
        self._state = ConnectionState.CONNECTED
        logger.info("Connection %s connected", self.connection_name)

    async def disconnect(self) -> None:
        self._state = ConnectionState.DISCONNECTING
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._state = ConnectionState.DISCONNECTED
        logger.info("Connection %s disconnected", self.connection_name)

    async def read_once(self, key: str, value_type: Any = None) -> ReadValue:
        if self._state is not ConnectionState.CONNECTED:
            logger.debug(
                "Read of %s on %s while %s", key, self.connection_name, self._state.value
            )
            return ReadValue.comm_error(key)
        if key in self._failing_reads:
            logger.debug("Simulated read failure for %s on %s", key, self.connection_name)
            return ReadValue.comm_error(key)
        with self._lock:
            current = self._values.get(key)
        if current is None:
            return ReadValue(key=key, quality=Quality.NOT_FOUND)
        return current

    async def write_once(self, key: str, value: Any) -> None:
        self._require_connected("write", key)
        if value is None:
            raise CommError(f"Cannot write a null value to {key!r}")
        self.writes.append((key, value))
        self.set_value(key, value)

    async def subscribe(
        self,
        key: str,
        mode: SubscriptionMode = SubscriptionMode.POLLING,
        poll_interval_ms: int = 0,
    ) -> None:
        if mode is SubscriptionMode.UNSOLICITED:
            interval = config.unsolicited_interval_ms
        else:
            interval = (
                poll_interval_ms
                or self.options.default_poll_interval_ms
                or config.default_poll_interval_ms
            )
        with self._lock:
            self._subscriptions[key] = (mode, interval)
        logger.debug("Subscribed %s on %s (%s, %dms)", key, self.connection_name, mode.value, interval)

    async def unsubscribe(self, key: str) -> None:
        with self._lock:
            self._subscriptions.pop(key, None)

    def set_notification_callback(self, callback: NotificationCallback | None) -> None:
        self._callback = callback

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    @property
    def subscribed_keys(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)

    def subscription_interval(self, key: str) -> int | None:
        with self._lock:
            entry = self._subscriptions.get(key)
        return entry[1] if entry else None

    def set_value(
        self, key: str, value: Any, quality: Quality = Quality.GOOD, *, notify: bool = True
    ) -> int:
        """Store *value* for *key* and notify matching subscriptions.

        Returns the number of notifications raised.  Safe to call from any
        thread; the notification callback runs on the calling thread.
        """
        with self._lock:
            self._values[key] = ReadValue(key=key, value=value, quality=quality)
            matched = [
                pattern
                for pattern in self._subscriptions
                if pattern == key or matches(pattern, key)
            ]
        callback = self._callback
        if not notify or callback is None or not matched:
            return 0
        callback(key, value, quality)
        return 1

    def fail_next_connects(self, count: int) -> None:
        self._pending_connect_failures = count

    def fail_reads(self, key: str) -> None:
        self._failing_reads.add(key)

    def restore_reads(self, key: str) -> None:
        self._failing_reads.discard(key)

    def add_reconnect_listener(self, listener: Callable[[], Awaitable[None]]) -> None:
        """Register a coroutine function awaited after every reconnect."""
        self._reconnect_listeners.append(listener)

    def simulate_fault(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> asyncio.Task | None:
        """Fault the connection and, with auto-reconnect, start reconnecting.

        Must be called from a running event loop.  Returns the reconnect
        task, or ``None`` when auto-reconnect is disabled.
        """
        self._state = ConnectionState.FAULTED
        logger.warning("Connection %s faulted", self.connection_name)
        auto = self.options.auto_reconnect
        if auto is None:
            auto = config.auto_reconnect
        if not auto:
            return None

        self._state = ConnectionState.RECONNECTING
        loop = ReconnectLoop(
            self.connect,
            name=self.connection_name,
            initial_delay_s=self.options.reconnect_initial_delay_s,
            max_delay_s=self.options.reconnect_max_delay_s,
            on_connected=self._notify_reconnected,
            sleep=sleep,
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(loop.run())
        return self._reconnect_task

    async def _notify_reconnected(self) -> None:
        for listener in list(self._reconnect_listeners):
            await listener()

    def _require_connected(self, operation: str, key: str) -> None:
        if self._state is not ConnectionState.CONNECTED:
            raise CommError(
                f"Cannot {operation} {key!r}: connection {self.connection_name!r} "
                f"is {self._state.value}"
            )

    def __repr__(self) -> str:
        return (
            f"InMemoryConnection(connection_name={self.connection_name!r}, "
            f"state={self._state.value})"
        )
