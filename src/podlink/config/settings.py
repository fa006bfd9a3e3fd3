"""
Process-level settings for podlink.

Manifesto:
    The session document (``Config``) describes *what* to run and *where*.
    How persistently podlink talks to the cluster (retry budgets, backoff,
    drain grace, logging) is an operator concern and comes from the
    environment instead. ``PodlinkSettings`` is the single, validated,
    cached source for those knobs.

All fields can be set via ``PODLINK_*`` environment variables (e.g.
``PODLINK_CONNECT_ATTEMPTS=5``) or a ``.env`` file in the working
directory.

Tags:
    podlink, configuration, settings, pydantic, caching

Doc-Types:
    api-reference
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PodlinkSettings(BaseSettings):
    """Operator-tunable behavior of the session machinery."""

    model_config = SettingsConfigDict(
        env_prefix="PODLINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="console")

    # ── Connection ───────────────────────────────────────────────
    connect_attempts: int = Field(default=3, ge=1, description="Total attempts for transient connect failures")
    connect_backoff_seconds: float = Field(default=0.5, ge=0)

    # ── Watch ────────────────────────────────────────────────────
    watch_reconnect_attempts: int = Field(
        default=3, ge=0, description="Consecutive failed watch re-establishments tolerated"
    )
    watch_backoff_seconds: float = Field(default=0.5, ge=0)
    watch_window_seconds: int = Field(default=60, ge=1, description="Server-side watch timeout")

    # ── Attached I/O ─────────────────────────────────────────────
    drain_grace_seconds: float = Field(
        default=5.0, ge=0, description="How long to wait for output to drain after the pod terminates"
    )
    read_poll_seconds: float = Field(default=0.2, gt=0, description="Attach stream poll interval")


@lru_cache(maxsize=1)
def get_settings() -> PodlinkSettings:
    """Load and cache the process settings.

    Call ``get_settings.cache_clear()`` to pick up environment changes.
    """
    return PodlinkSettings()
