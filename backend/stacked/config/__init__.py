"""Centralised configuration helper.

This module eliminates scattered ``os.getenv`` calls by exposing a single
:class:`Settings` container (retrieved via :func:`get_settings`).  Values are
read from the process environment after an optional ``.env`` file has been
loaded through *python-dotenv*.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# ``_REPO_ROOT`` points to the top-level repository directory.  This file is
# located at ``backend/stacked/config/__init__.py``.
_REPO_ROOT = Path(__file__).resolve().parents[3]

TRANSPORTS = ("local", "socket")


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    log_level: str
    service_name: str

    # Sync core --------------------------------------------------------
    sync_channel_name: str
    sync_storage_key: str
    poll_interval: float  # seconds
    heartbeat_interval: float  # seconds
    sync_transport: str  # "local" | "socket"
    sync_server_url: str | None

    # Presence ---------------------------------------------------------
    presence_stale_seconds: float

    # Persistence ------------------------------------------------------
    local_store_url: str

    # HTTP -------------------------------------------------------------
    allowed_cors_origins: str

    @property
    def presence_url(self) -> str | None:
        """Return the heartbeat endpoint, or *None* when no server is configured."""
        if not self.sync_server_url:
            return None
        return self.sync_server_url.rstrip("/") + "/api/sync/status"

    @property
    def socket_url(self) -> str | None:
        if not self.sync_server_url:
            return None
        base = self.sync_server_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return base + "/api/socket"

    # Helper for tests to override values at runtime -------------------
    def override(self, **kwargs: Any) -> None:  # pragma: no cover – test util
        for key, value in kwargs.items():
            if not hasattr(self, key):  # pragma: no cover – safety
                raise AttributeError(f"Settings has no attribute '{key}'")
            setattr(self, key, value)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    env_path = _REPO_ROOT / ".env"
    if env_path.exists():
        # Explicit environment wins over the file so tests can pin values.
        load_dotenv(env_path, override=False)

    return Settings(
        testing=_truthy(os.getenv("TESTING")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        service_name=os.getenv("SERVICE_NAME", "stacked-sync"),
        sync_channel_name=os.getenv("SYNC_CHANNEL_NAME", "stacked-sync"),
        sync_storage_key=os.getenv("SYNC_STORAGE_KEY", "stacked-sync-data"),
        poll_interval=float(os.getenv("SYNC_POLL_INTERVAL", "2.0")),
        heartbeat_interval=float(os.getenv("SYNC_HEARTBEAT_INTERVAL", "30.0")),
        sync_transport=os.getenv("SYNC_TRANSPORT", "local").strip().lower(),
        sync_server_url=os.getenv("SYNC_SERVER_URL") or None,
        presence_stale_seconds=float(os.getenv("PRESENCE_STALE_SECONDS", "300")),
        local_store_url=os.getenv("LOCAL_STORE_URL", "sqlite:///./stacked-local.db"),
        allowed_cors_origins=os.getenv("ALLOWED_CORS_ORIGINS", ""),
    )


# ------------------------------------------------------------------
# Runtime validation – fail fast on nonsensical configuration.
# ------------------------------------------------------------------


def _validate_settings(settings: Settings) -> None:  # noqa: D401 – helper
    """Abort startup when the configuration cannot work.

    A zero or negative polling interval would spin the event loop, and an
    unknown transport name would silently fall back to nothing at all.
    """

    problems = []

    if settings.poll_interval <= 0:
        problems.append(f"SYNC_POLL_INTERVAL must be > 0 (got {settings.poll_interval})")
    if settings.heartbeat_interval <= 0:
        problems.append(f"SYNC_HEARTBEAT_INTERVAL must be > 0 (got {settings.heartbeat_interval})")
    if settings.presence_stale_seconds <= 0:
        problems.append(f"PRESENCE_STALE_SECONDS must be > 0 (got {settings.presence_stale_seconds})")
    if settings.sync_transport not in TRANSPORTS:
        problems.append(f"SYNC_TRANSPORT must be one of {', '.join(TRANSPORTS)} (got '{settings.sync_transport}')")
    if settings.sync_transport == "socket" and not settings.sync_server_url:
        problems.append("SYNC_SERVER_URL is required when SYNC_TRANSPORT=socket")

    if problems:
        raise RuntimeError("Invalid configuration: " + "; ".join(problems))


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate_settings(settings)
    return settings


__all__ = [
    "Settings",
    "TRANSPORTS",
    "get_settings",
]
