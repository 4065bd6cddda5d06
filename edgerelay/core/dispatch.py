"""DispatchEngine — routes change notifications from one connection to handlers.

One engine serves one connection.  It owns the live mapping of key to
``RuntimeSubscription`` and is the connection's notification callback.

Notification path
-----------------
``on_changed(key, raw_value, quality)`` is called by the transport on a
thread the transport owns.  It runs only the cheap part synchronously:

1. look up the subscription (exact key first, then wildcard patterns);
2. apply change/deadband filtering against the per-key last value;
3. hand the dispatch to the engine's event loop and return.

The dispatch task builds the typed ``TagValue`` through the
``ValueMarshaller``, resolves a scoped handler through the ``Activator``,
invokes it, and releases the scope on every completion path.  Failures
never reach the transport: they are logged (at most once per key per
``error_log_interval_s``) and counted.  More than ``error_threshold``
consecutive failures move the subscription to ``SUPPRESSED`` until an
explicit ``resubscribe``.

Per-key states
--------------
``IDLE``        no subscription
``ACTIVE``      subscribed and dispatching
``SUPPRESSED``  auto-removed after sustained failures
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Callable, Coroutine, Iterable
from decimal import Decimal
from enum import Enum
from numbers import Real
from typing import Any

from edgerelay.config import config
from edgerelay.core.activator import Activator
from edgerelay.core.marshaller import ValueMarshaller
from edgerelay.core.topic_matcher import has_wildcards, matches
from edgerelay.errors import DispatchError
from edgerelay.models.messages import MessageContext
from edgerelay.models.registrations import Registration, SubscriptionMode
from edgerelay.models.values import Quality, TagValue

logger = logging.getLogger(__name__)

MessageCallback = Callable[[TagValue, MessageContext], Any]

_NO_VALUE = object()


class SubscriptionState(str, Enum):
    """Lifecycle state of a subscribed key."""

    IDLE = "idle"
    ACTIVE = "active"
    SUPPRESSED = "suppressed"


def _is_number(value: Any) -> bool:
    return isinstance(value, (Real, Decimal)) and not isinstance(value, bool)


def _values_equal(left: Any, right: Any) -> bool:
    try:
        return bool(left == right)
    except Exception:  # noqa: BLE001
        return False


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------


class RuntimeSubscription:
    """Mutable per-key state; bound to a ``Registration`` or a callback."""

    def __init__(
        self,
        key: str,
        payload_type: Any,
        *,
        registration: Registration | None = None,
        callback: MessageCallback | None = None,
        mode: SubscriptionMode = SubscriptionMode.POLLING,
        on_change_only: bool = True,
        deadband: float = 0.0,
        poll_interval_ms: int = 0,
    ) -> None:
        if (registration is None) == (callback is None):
            raise ValueError("RuntimeSubscription needs exactly one of registration or callback")
        self.key = key
        self.payload_type = payload_type
        self.registration = registration
        self.callback = callback
        self.mode = mode
        self.on_change_only = on_change_only
        self.deadband = deadband
        self.poll_interval_ms = poll_interval_ms
        self.state = SubscriptionState.ACTIVE
        self.consecutive_failures = 0
        # keyed by concrete key so one wildcard subscription tracks each topic separately
        self.last_values: dict[str, Any] = {}

    @classmethod
    def from_registration(cls, registration: Registration) -> RuntimeSubscription:
        return cls(
            registration.key,
            registration.payload_type,
            registration=registration,
            mode=registration.mode,
            on_change_only=registration.on_change_only,
            deadband=registration.deadband,
            poll_interval_ms=registration.poll_interval_ms,
        )

    @property
    def handler_type(self) -> type | None:
        return self.registration.handler_type if self.registration else None

    @property
    def is_pattern(self) -> bool:
        return has_wildcards(self.key)

    def __repr__(self) -> str:
        target = self.handler_type.__name__ if self.handler_type else "callback"
        return f"RuntimeSubscription(key={self.key!r}, target={target}, state={self.state.value})"


class Subscription:
    """Handle returned by a single subscribe call.

    ``unsubscribe`` is idempotent and does nothing if the key has since been
    taken over by a newer subscription.
    """

    def __init__(self, engine: DispatchEngine, runtime: RuntimeSubscription) -> None:
        self._engine = engine
        self._runtime = runtime
        self._closed = False

    @property
    def key(self) -> str:
        return self._runtime.key

    @property
    def active(self) -> bool:
        return not self._closed and self._engine.current(self.key) is self._runtime

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._engine.unsubscribe(self.key, only=self._runtime)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.unsubscribe()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class DispatchEngine:
    """Dispatches one connection's change notifications to handlers.

    Parameters
    ----------
    connection:
        The transport connection whose notifications this engine consumes.
    activator:
        Builds scoped handler instances.
    marshaller:
        Converts raw values to handler payload types.
    error_threshold:
        Consecutive failures tolerated before a key is suppressed.
    error_log_interval_s:
        Minimum seconds between failure log lines for one key.
    clock:
        Monotonic clock, injectable for tests.

    Usage
    -----
    >>> engine = DispatchEngine(connection, Activator())
    >>> engine.start()
    >>> await engine.subscribe_registrations(discover([TemperatureHandler]))
    """

    def __init__(
        self,
        connection: Any,
        activator: Activator,
        marshaller: ValueMarshaller | None = None,
        *,
        error_threshold: int | None = None,
        error_log_interval_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connection = connection
        self.connection_name: str = connection.connection_name
        self._activator = activator
        self._marshaller = marshaller or ValueMarshaller()
        self.error_threshold = (
            error_threshold if error_threshold is not None else config.dispatch_error_threshold
        )
        self.error_log_interval_s = (
            error_log_interval_s
            if error_log_interval_s is not None
            else config.error_log_interval_s
        )
        self._clock = clock

        self._lock = threading.Lock()
        self._subscriptions: dict[str, RuntimeSubscription] = {}
        self._last_error_log: dict[str, float] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        self._pending = 0
        self._closed = False

        self.delivered = 0
        self.failed = 0
        self.filtered = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Bind to *loop* (default: the running loop) and start receiving."""
        self._loop = loop or asyncio.get_running_loop()
        self._closed = False
        self._connection.set_notification_callback(self.on_changed)
        logger.debug("Dispatch engine for %s started", self.connection_name)

    def close(self) -> None:
        """Stop accepting notifications.  In-flight dispatches still complete."""
        self._closed = True
        self._connection.set_notification_callback(None)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Dispatches accepted but not yet finished."""
        with self._lock:
            return self._pending

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight dispatches and engine-owned transport calls.

        Returns ``False`` on timeout.
        """
        if timeout is None:
            timeout = config.drain_timeout_s
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            running = [task for task in self._tasks if not task.done()]
            if not self.pending and not running:
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    "Timed out waiting for %d dispatch(es) on %s",
                    self.pending,
                    self.connection_name,
                )
                return False
            if running:
                await asyncio.wait(running, timeout=remaining)
            else:
                # handoffs from foreign threads not yet spawned on this loop
                await asyncio.sleep(0.001)

    async def clear(self) -> None:
        """Tear down every runtime subscription."""
        with self._lock:
            keys = list(self._subscriptions)
            self._subscriptions.clear()
            self._last_error_log.clear()
        for key in keys:
            await self._transport_unsubscribe(key)

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------

    async def subscribe_registrations(
        self, registrations: Iterable[Registration]
    ) -> list[Subscription]:
        """Subscribe every registration that targets this connection.

        Transport failures are logged per key; the subscription is kept so a
        later ``restore`` can retry it.
        """
        handles: list[Subscription] = []
        for registration in registrations:
            if registration.connection_name.lower() != self.connection_name.lower():
                logger.debug(
                    "Registration for %s targets %s, not %s; skipping",
                    registration.key,
                    registration.connection_name,
                    self.connection_name,
                )
                continue
            runtime = RuntimeSubscription.from_registration(registration)
            handles.append(await self._install(runtime, propagate=False))
        logger.info(
            "Subscribed %d key(s) on %s", len(handles), self.connection_name
        )
        return handles

    async def subscribe_registration(self, registration: Registration) -> Subscription:
        return await self._install(RuntimeSubscription.from_registration(registration))

    async def subscribe(
        self,
        key: str,
        callback: MessageCallback,
        *,
        payload_type: Any = None,
        on_change_only: bool = True,
        deadband: float = 0.0,
        mode: SubscriptionMode = SubscriptionMode.POLLING,
        poll_interval_ms: int = 0,
    ) -> Subscription:
        """Subscribe *callback* directly, replacing any subscription on *key*.

        *callback* receives ``(TagValue, MessageContext)`` and may be a plain
        function or a coroutine function.
        """
        runtime = RuntimeSubscription(
            key,
            payload_type,
            callback=callback,
            mode=mode,
            on_change_only=on_change_only,
            deadband=deadband,
            poll_interval_ms=poll_interval_ms,
        )
        return await self._install(runtime)

    async def unsubscribe(self, key: str, *, only: RuntimeSubscription | None = None) -> bool:
        """Remove the subscription on *key*.  Returns ``False`` if there was none."""
        with self._lock:
            current = self._subscriptions.get(key)
            if current is None or (only is not None and current is not only):
                return False
            del self._subscriptions[key]
        await self._transport_unsubscribe(key)
        logger.debug("Unsubscribed %s on %s", key, self.connection_name)
        return True

    async def resubscribe(self, key: str) -> None:
        """Reactivate a suppressed key with a clean failure count and cache.

        Raises
        ------
        KeyError
            If *key* was never subscribed on this engine.
        """
        with self._lock:
            runtime = self._subscriptions.get(key)
            if runtime is None:
                raise KeyError(f"No subscription for {key!r} on {self.connection_name}")
            runtime.state = SubscriptionState.ACTIVE
            runtime.consecutive_failures = 0
            runtime.last_values.clear()
            self._last_error_log.pop(key, None)
        await self._connection.subscribe(key, runtime.mode, runtime.poll_interval_ms)
        logger.info("Resubscribed %s on %s", key, self.connection_name)

    async def restore(self) -> None:
        """Re-register every active key with the transport after a reconnect."""
        with self._lock:
            active = [
                r for r in self._subscriptions.values() if r.state is SubscriptionState.ACTIVE
            ]
        for runtime in active:
            try:
                await self._connection.subscribe(
                    runtime.key, runtime.mode, runtime.poll_interval_ms
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Failed to restore %s on %s: %s", runtime.key, self.connection_name, exc
                )
        logger.info("Restored %d subscription(s) on %s", len(active), self.connection_name)

    def state_of(self, key: str) -> SubscriptionState:
        with self._lock:
            runtime = self._subscriptions.get(key)
        return runtime.state if runtime is not None else SubscriptionState.IDLE

    def current(self, key: str) -> RuntimeSubscription | None:
        with self._lock:
            return self._subscriptions.get(key)

    @property
    def keys(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)

    async def _install(
        self, runtime: RuntimeSubscription, *, propagate: bool = True
    ) -> Subscription:
        with self._lock:
            replaced = self._subscriptions.get(runtime.key)
            self._subscriptions[runtime.key] = runtime
            self._last_error_log.pop(runtime.key, None)
        if replaced is not None:
            logger.info(
                "Subscription for %s on %s replaced (%r -> %r)",
                runtime.key,
                self.connection_name,
                replaced,
                runtime,
            )
        try:
            await self._connection.subscribe(runtime.key, runtime.mode, runtime.poll_interval_ms)
        except Exception as exc:
            if propagate:
                raise
            logger.error(
                "Transport subscribe failed for %s on %s: %s",
                runtime.key,
                self.connection_name,
                exc,
            )
        return Subscription(self, runtime)

    async def _transport_unsubscribe(self, key: str) -> None:
        try:
            await self._connection.unsubscribe(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Transport unsubscribe failed for %s on %s: %s", key, self.connection_name, exc
            )

    # ------------------------------------------------------------------
    # Notification entry point
    # ------------------------------------------------------------------

    def on_changed(self, key: str, raw_value: Any, quality: Quality = Quality.GOOD) -> None:
        """Accept a change notification.  Safe to call from any thread.

        Never blocks on handler work and never raises.
        """
        if self._closed or self._loop is None:
            return
        try:
            quality = Quality(quality)
        except ValueError:
            quality = Quality.BAD

        with self._lock:
            runtime = self._match(key)
            if runtime is None or runtime.state is not SubscriptionState.ACTIVE:
                return
            deliver, previous = self._filter(runtime, key, raw_value, quality)
            if not deliver:
                self.filtered += 1
                return
            self._pending += 1

        self._schedule(self._dispatch(runtime, key, raw_value, previous, quality))

    def _match(self, key: str) -> RuntimeSubscription | None:
        runtime = self._subscriptions.get(key)
        if runtime is not None:
            return runtime
        for candidate in self._subscriptions.values():
            if candidate.is_pattern and matches(candidate.key, key):
                return candidate
        return None

    def _filter(
        self, runtime: RuntimeSubscription, key: str, raw_value: Any, quality: Quality
    ) -> tuple[bool, Any]:
        """Decide delivery and update the last-value cache.  Caller holds the lock."""
        previous = runtime.last_values.get(key, _NO_VALUE)
        if quality is Quality.GOOD:
            runtime.last_values[key] = raw_value
        else:
            runtime.last_values.pop(key, None)
        previous_out = None if previous is _NO_VALUE else previous

        if not runtime.on_change_only:
            return True, previous_out
        if quality is not Quality.GOOD:
            return False, previous_out
        if previous is _NO_VALUE:
            return True, None
        if _values_equal(raw_value, previous):
            return False, previous_out
        if runtime.deadband > 0 and _is_number(raw_value) and _is_number(previous):
            return abs(float(raw_value) - float(previous)) > runtime.deadband, previous_out
        return True, previous_out

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._spawn(coro)
            return
        try:
            loop.call_soon_threadsafe(self._spawn, coro)
        except RuntimeError:
            coro.close()
            with self._lock:
                self._pending -= 1
            logger.warning("Event loop for %s is closed; notification dropped", self.connection_name)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        runtime: RuntimeSubscription,
        key: str,
        raw_value: Any,
        previous_raw: Any,
        quality: Quality,
    ) -> None:
        try:
            await self._invoke(runtime, key, raw_value, previous_raw, quality)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._record_failure(runtime, key, exc)
        else:
            with self._lock:
                runtime.consecutive_failures = 0
                self.delivered += 1
        finally:
            with self._lock:
                self._pending -= 1

    async def _invoke(
        self,
        runtime: RuntimeSubscription,
        key: str,
        raw_value: Any,
        previous_raw: Any,
        quality: Quality,
    ) -> None:
        payload_type = runtime.payload_type
        message = TagValue(
            key=key,
            value=self._marshaller.to_typed(raw_value, payload_type),
            previous_value=(
                self._marshaller.to_typed(previous_raw, payload_type)
                if previous_raw is not None
                else None
            ),
            quality=quality,
        )
        context = MessageContext(
            key=key,
            connection_name=self.connection_name,
            raw_value=raw_value,
            quality=quality,
            publisher=getattr(self._connection, "publisher", None),
            metadata={"subscription": runtime.key, "mode": runtime.mode.value},
        )

        if runtime.callback is not None:
            result = runtime.callback(message, context)
            if inspect.isawaitable(result):
                await result
            return

        scope = self._activator.create_scoped_instance(runtime.handler_type)
        try:
            result = scope.instance.handle(message, context)
            if inspect.isawaitable(result):
                await result
        finally:
            scope.release()

    def _record_failure(self, runtime: RuntimeSubscription, key: str, exc: Exception) -> None:
        now = self._clock()
        with self._lock:
            self.failed += 1
            runtime.consecutive_failures += 1
            failures = runtime.consecutive_failures
            last = self._last_error_log.get(key)
            should_log = last is None or now - last >= self.error_log_interval_s
            if should_log:
                self._last_error_log[key] = now
            suppress = (
                failures > self.error_threshold
                and runtime.state is SubscriptionState.ACTIVE
                and self._subscriptions.get(runtime.key) is runtime
            )
            if suppress:
                runtime.state = SubscriptionState.SUPPRESSED

        if should_log:
            error = DispatchError(
                f"Dispatch for {key} on {self.connection_name} failed: {exc}"
            )
            logger.error("%s (%d consecutive)", error, failures)
        if suppress:
            logger.warning(
                "Suppressing %s on %s after %d consecutive failures",
                runtime.key,
                self.connection_name,
                failures,
            )
            self._spawn(self._transport_unsubscribe(runtime.key))

    def __repr__(self) -> str:
        return (
            f"DispatchEngine(connection={self.connection_name!r}, "
            f"keys={len(self._subscriptions)}, pending={self._pending})"
        )
