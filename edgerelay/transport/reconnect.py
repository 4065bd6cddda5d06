"""Exponential-backoff reconnect loop.

The delay starts at ``initial_delay_s`` and doubles after every failed
attempt, capped at ``max_delay_s``.  The loop ends when a connect attempt
succeeds or the loop is stopped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from edgerelay.config import config

logger = logging.getLogger(__name__)


class ReconnectLoop:
    """Retries *connect* until it succeeds.

    Parameters
    ----------
    connect:
        Coroutine function performing one connection attempt; raising means
        the attempt failed.
    name:
        Connection name used in log lines.
    initial_delay_s / max_delay_s:
        Backoff bounds.  Default to the process configuration.
    on_connected:
        Optional coroutine function awaited after a successful attempt
        (for example, to re-subscribe active keys).
    sleep:
        Injectable sleep, for tests.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        *,
        name: str = "default",
        initial_delay_s: float | None = None,
        max_delay_s: float | None = None,
        on_connected: Callable[[], Awaitable[None]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._connect = connect
        self._name = name
        self.initial_delay_s = initial_delay_s or config.reconnect_initial_delay_s
        self.max_delay_s = max_delay_s or config.reconnect_max_delay_s
        self._on_connected = on_connected
        self._sleep = sleep
        self._stopped = False
        self.attempts = 0
        self.last_delay: float | None = None

    def next_delay(self, current: float) -> float:
        return min(current * 2, self.max_delay_s)

    def stop(self) -> None:
        self._stopped = True

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def run(self) -> bool:
        """Run until connected (``True``) or stopped (``False``)."""
        delay = min(self.initial_delay_s, self.max_delay_s)
        while not self._stopped:
            self.attempts += 1
            try:
                await self._connect()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Reconnect attempt %d for %s failed: %s; retrying in %.1fs",
                    self.attempts,
                    self._name,
                    exc,
                    delay,
                )
                self.last_delay = delay
                await self._sleep(delay)
                delay = self.next_delay(delay)
                continue

            logger.info("Connection %s re-established after %d attempt(s)", self._name, self.attempts)
            if self._on_connected is not None:
                await self._on_connected()
            return True

        logger.info("Reconnect loop for %s stopped", self._name)
        return False
