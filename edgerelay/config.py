"""Process configuration — env-driven via pydantic-settings.

Reads from a ``.env`` file and ``EDGERELAY_*`` environment variables.
Per-connection overrides live in ``edgerelay.models.ConnectionOptions``.
"""

from __future__ import annotations

import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.logging import RichHandler


class RelayConfig(BaseSettings):
    """Dispatch, reconnect and logging settings with environment overrides.

    Examples
    --------
    Override via environment::

        export EDGERELAY_LOG_LEVEL=DEBUG
        export EDGERELAY_DISPATCH_ERROR_THRESHOLD=25
        export EDGERELAY_RECONNECT_MAX_DELAY_S=60
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="EDGERELAY_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"

    # Dispatch
    default_poll_interval_ms: int = Field(default=100, gt=0)
    unsolicited_interval_ms: int = Field(default=10, gt=0)
    dispatch_error_threshold: int = Field(default=10, ge=1)
    error_log_interval_s: float = Field(default=10.0, ge=0.0)
    drain_timeout_s: float = Field(default=5.0, gt=0.0)

    # Reconnect
    auto_reconnect: bool = True
    reconnect_initial_delay_s: float = Field(default=1.0, gt=0.0)
    reconnect_max_delay_s: float = Field(default=30.0, gt=0.0)

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


def configure_logging(level: str | int | None = None) -> None:
    """Route the ``edgerelay`` logger hierarchy through a rich console handler.

    Safe to call repeatedly; an existing rich handler is reused.
    """
    root = logging.getLogger("edgerelay")
    resolved = level if level is not None else config.log_level
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    root.setLevel(resolved)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(rich_tracebacks=True, show_path=False))


# Module-level singleton; import as `from edgerelay.config import config`
config = RelayConfig()
