"""Recipient directory: Identity -> push delivery token.

Records are created or refreshed on registration and removed only by an
explicit ``evict_stale`` sweep.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from .db import get_cursor
from .identity import Identity

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RecipientRecord:
    """A registered recipient."""

    identity: Identity
    delivery_token: str
    last_seen: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity.to_dict(),
            "delivery_token": self.delivery_token,
            "last_seen": self.last_seen.isoformat(),
        }


@runtime_checkable
class RecipientDirectory(Protocol):
    """Durable map from Identity to delivery token."""

    def upsert(self, identity: Identity, delivery_token: str) -> None: ...
    def lookup(self, identity: Identity) -> RecipientRecord | None: ...
    def evict_stale(self, max_age: timedelta) -> int: ...


class InMemoryRecipientDirectory:
    """Directory held in a dict. Registrations are lost on restart."""

    def __init__(self, now: Callable[[], datetime] = _utc_now) -> None:
        self._now = now
        self._records: dict[str, RecipientRecord] = {}
        self._lock = threading.RLock()

    def upsert(self, identity: Identity, delivery_token: str) -> None:
        with self._lock:
            self._records[identity.to_json()] = RecipientRecord(
                identity=identity,
                delivery_token=delivery_token,
                last_seen=self._now(),
            )

    def lookup(self, identity: Identity) -> RecipientRecord | None:
        with self._lock:
            return self._records.get(identity.to_json())

    def evict_stale(self, max_age: timedelta) -> int:
        cutoff = self._now() - max_age
        with self._lock:
            dead = [k for k, rec in self._records.items() if rec.last_seen < cutoff]
            for k in dead:
                del self._records[k]
        if dead:
            logger.info(f"Evicted {len(dead)} stale registration(s)")
        return len(dead)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        """Remove all records (for testing)."""
        with self._lock:
            self._records.clear()


class PostgresRecipientDirectory:
    """Directory stored in the ``recipients`` table.

    The canonical Identity JSON is the primary key, so concurrent upserts for
    one identity serialize on its row and last write wins.
    """

    def __init__(self, dsn: str | None = None, now: Callable[[], datetime] = _utc_now) -> None:
        self.dsn = dsn
        self._now = now

    def upsert(self, identity: Identity, delivery_token: str) -> None:
        now = self._now()
        with get_cursor(self.dsn) as cur:
            cur.execute(
                """
                INSERT INTO recipients (recipient_id, delivery_token, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (recipient_id)
                DO UPDATE SET delivery_token = EXCLUDED.delivery_token, updated_at = EXCLUDED.updated_at
                """,
                (identity.to_json(), delivery_token, now, now),
            )

    def lookup(self, identity: Identity) -> RecipientRecord | None:
        with get_cursor(self.dsn) as cur:
            cur.execute(
                "SELECT delivery_token, updated_at FROM recipients WHERE recipient_id = %s",
                (identity.to_json(),),
            )
            row = cur.fetchone()
        if not row:
            return None
        return RecipientRecord(
            identity=identity,
            delivery_token=row["delivery_token"],
            last_seen=row["updated_at"],
        )

    def evict_stale(self, max_age: timedelta) -> int:
        cutoff = self._now() - max_age
        with get_cursor(self.dsn) as cur:
            cur.execute("DELETE FROM recipients WHERE updated_at < %s", (cutoff,))
            removed = cur.rowcount
        if removed:
            logger.info(f"Evicted {removed} stale registration(s)")
        return removed
