"""PostgreSQL access for the relay's durable state."""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.extras

from .config import get_config

logger = logging.getLogger(__name__)

RECIPIENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS recipients (
    recipient_id TEXT PRIMARY KEY,
    delivery_token TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_recipients_updated_at ON recipients (updated_at);
"""


@contextmanager
def get_cursor(dsn: str | None = None) -> Generator[Any, None, None]:
    """Yield a dict cursor inside a transaction.

    Commits on success, rolls back on error, always closes the connection.
    """
    dsn = dsn or get_config().database_url
    if not dsn:
        raise RuntimeError("No database configured. Set WHISPERS_DATABASE_URL.")

    conn = psycopg2.connect(dsn, connect_timeout=5)
    try:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_schema(dsn: str | None = None) -> None:
    """Create the recipients table if missing."""
    with get_cursor(dsn) as cur:
        cur.execute(RECIPIENTS_SCHEMA)
    logger.info("Recipient schema ready")
