"""Global test fixtures for our-whispers test suite."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from our_whispers.delivery import DeliveryReceipt, Notification, is_expo_push_token
from our_whispers.directory import InMemoryRecipientDirectory
from our_whispers.exceptions import DeliveryError
from our_whispers.gateway import RelayGateway
from our_whispers.identity import derive_from_seed

# ============================================================================
# PostgreSQL Availability Detection
# ============================================================================


def _check_postgres_available() -> tuple[bool, str | None]:
    """Check if PostgreSQL is available for integration tests."""
    dsn = os.environ.get("WHISPERS_TEST_DATABASE_URL")
    if not dsn:
        return False, "WHISPERS_TEST_DATABASE_URL not set"
    try:
        import psycopg2
    except ImportError:
        return False, "psycopg2 not installed"

    try:
        conn = psycopg2.connect(dsn, connect_timeout=3)
        conn.close()
        return True, None
    except psycopg2.OperationalError as e:
        return False, f"PostgreSQL connection failed: {e}"


POSTGRES_AVAILABLE, POSTGRES_ERROR = _check_postgres_available()


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "requires_postgres: mark test as requiring a real PostgreSQL database")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip tests that require PostgreSQL when it is unavailable."""
    if POSTGRES_AVAILABLE:
        return

    skip_postgres = pytest.mark.skip(reason=f"PostgreSQL not available: {POSTGRES_ERROR}")
    for item in items:
        if "requires_postgres" in item.keywords:
            item.add_marker(skip_postgres)


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Any:
    """Remove all WHISPERS_ environment variables."""
    from our_whispers.config import clear_config_cache

    for key in list(os.environ.keys()):
        if key.startswith("WHISPERS_"):
            monkeypatch.delenv(key, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


# ============================================================================
# Database Mocking Fixtures
# ============================================================================


@pytest.fixture
def mock_get_cursor() -> Any:
    """Mock the get_cursor context manager used by the directory."""
    mock_cursor = MagicMock()
    mock_cursor.execute = MagicMock()
    mock_cursor.fetchone = MagicMock(return_value=None)
    mock_cursor.fetchall = MagicMock(return_value=[])
    mock_cursor.rowcount = 0
    mock_cursor.__enter__ = MagicMock(return_value=mock_cursor)
    mock_cursor.__exit__ = MagicMock(return_value=False)

    with patch("our_whispers.directory.get_cursor", return_value=mock_cursor):
        yield mock_cursor


# ============================================================================
# Clock and Identity Fixtures
# ============================================================================


class FixedClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class FixedDateTime:
    """Datetime source for directory tests."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2024, 1, 15, 10, 30, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def fixed_now() -> FixedDateTime:
    return FixedDateTime()


@pytest.fixture
def alice():
    """Alice's (Identity, SecretMaterial)."""
    return derive_from_seed(bytes([0xA1]) * 32)


@pytest.fixture
def bob():
    """Bob's (Identity, SecretMaterial)."""
    return derive_from_seed(bytes([0xB0]) * 32)


@pytest.fixture
def carol():
    """Carol's (Identity, SecretMaterial); never registered."""
    return derive_from_seed(bytes([0xC4]) * 32)


# ============================================================================
# Relay Fixtures
# ============================================================================


class RecordingDelivery:
    """DeliveryService that records notifications instead of pushing them."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.sent: list[Notification] = []
        self.fail_with = fail_with

    def accepts_token(self, token: str) -> bool:
        return is_expo_push_token(token)

    async def deliver(self, notification: Notification) -> DeliveryReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(notification)
        return DeliveryReceipt(status="ok", ticket_id=f"ticket-{len(self.sent)}")


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def failing_delivery() -> RecordingDelivery:
    return RecordingDelivery(fail_with=DeliveryError("DeviceNotRegistered"))


@pytest.fixture
def directory() -> InMemoryRecipientDirectory:
    return InMemoryRecipientDirectory()


@pytest.fixture
def gateway(directory, delivery, clock) -> RelayGateway:
    return RelayGateway(directory=directory, delivery=delivery, clock=clock)


@pytest.fixture
def alice_token() -> str:
    return "ExponentPushToken[alice-device-token-0001]"


@pytest.fixture
def bob_token() -> str:
    return "ExponentPushToken[bob-device-token-0002]"
