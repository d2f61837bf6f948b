"""Relay configuration.

Provides relay settings with env var support. Settings can also be
instantiated directly for testing or embedding.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .constants import DEFAULT_STALE_AFTER_HOURS, DEFAULT_TIMESTAMP_TOLERANCE_MS

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


@dataclass
class WhispersSettings:
    """Concrete relay configuration.

    Reads from environment variables with WHISPERS_ prefix.
    Can be instantiated directly for testing.
    """

    # Request limits
    max_body_bytes: int = 10 * 1024

    # Storage (None keeps registrations in memory)
    database_url: str | None = None

    # Authentication
    timestamp_tolerance_ms: int = DEFAULT_TIMESTAMP_TOLERANCE_MS
    replay_cache: bool = False

    # Cleanup
    cleanup_key: str | None = None
    stale_after_hours: int = DEFAULT_STALE_AFTER_HOURS

    # Delivery
    expo_push_url: str = EXPO_PUSH_URL
    expo_access_token: str | None = None
    delivery_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> WhispersSettings:
        """Create settings from environment variables."""
        return cls(
            max_body_bytes=int(os.environ.get("WHISPERS_MAX_BODY_BYTES", str(10 * 1024))),
            database_url=os.environ.get("WHISPERS_DATABASE_URL") or None,
            timestamp_tolerance_ms=int(
                os.environ.get("WHISPERS_TIMESTAMP_TOLERANCE_MS", str(DEFAULT_TIMESTAMP_TOLERANCE_MS))
            ),
            replay_cache=_env_flag("WHISPERS_REPLAY_CACHE"),
            cleanup_key=os.environ.get("WHISPERS_CLEANUP_KEY") or None,
            stale_after_hours=int(os.environ.get("WHISPERS_STALE_AFTER_HOURS", str(DEFAULT_STALE_AFTER_HOURS))),
            expo_push_url=os.environ.get("WHISPERS_EXPO_PUSH_URL", EXPO_PUSH_URL),
            expo_access_token=os.environ.get("WHISPERS_EXPO_ACCESS_TOKEN") or None,
            delivery_timeout_seconds=float(os.environ.get("WHISPERS_DELIVERY_TIMEOUT", "10")),
        )


_settings: WhispersSettings | None = None


def get_config() -> WhispersSettings:
    """Get relay settings.

    Returns:
        WhispersSettings loaded from environment.
    """
    global _settings
    if _settings is None:
        _settings = WhispersSettings.from_env()
    return _settings


def clear_config_cache() -> None:
    """Clear the config cache. For testing."""
    global _settings
    _settings = None
