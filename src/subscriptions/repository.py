"""Database repository for the subscriptions table."""

import logging
from datetime import datetime

from src.storage.database import Database
from src.subscriptions.schemas import SourceKind, Subscription

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS subscriptions (
    id          BIGSERIAL PRIMARY KEY,
    kind        TEXT NOT NULL,
    room_id     TEXT NOT NULL,
    identity    TEXT NOT NULL,
    credential  TEXT,
    watermark   TIMESTAMPTZ NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (kind, room_id, identity)
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_kind
    ON subscriptions(kind);
CREATE INDEX IF NOT EXISTS idx_subscriptions_room_kind
    ON subscriptions(room_id, kind);
"""

_UPSERT_SQL = """
INSERT INTO subscriptions (kind, room_id, identity, credential, watermark)
VALUES ($1, $2, $3, $4, $5)
ON CONFLICT (kind, room_id, identity) DO UPDATE SET
    credential = EXCLUDED.credential,
    watermark = EXCLUDED.watermark,
    updated_at = NOW()
RETURNING id
"""

# GREATEST keeps the watermark monotonic even if two writers race.
_ADVANCE_WATERMARK_SQL = """
UPDATE subscriptions
SET watermark = GREATEST(watermark, $2), updated_at = NOW()
WHERE id = $1
"""


def _record_to_subscription(record) -> Subscription:
    """Convert an asyncpg Record to a Subscription dataclass."""
    return Subscription(
        id=record["id"],
        kind=SourceKind(record["kind"]),
        room_id=record["room_id"],
        identity=record["identity"],
        credential=record["credential"],
        watermark=record["watermark"],
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _affected_rows(status: str) -> int:
    """Parse the row count out of a status string like 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class SubscriptionRepository:
    """CRUD operations for the subscriptions table.

    Every document belongs to exactly one source kind and is addressed by
    id or by its (kind, room_id, identity) key, so concurrent poll loops for
    different kinds never contend on the same rows.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_table(self) -> None:
        """Create the subscriptions table and indexes (idempotent)."""
        await self._db.execute(_CREATE_TABLE_SQL)
        logger.info("Subscriptions table ensured")

    async def list_all(self, kind: SourceKind) -> list[Subscription]:
        """Fetch every subscription of one source kind."""
        rows = await self._db.fetch(
            "SELECT * FROM subscriptions WHERE kind = $1 ORDER BY id",
            kind.value,
        )
        return [_record_to_subscription(r) for r in rows]

    async def list_by_room(
        self, room_id: str, kind: SourceKind
    ) -> dict[int, Subscription]:
        """Fetch a room's subscriptions of one kind, keyed by id."""
        rows = await self._db.fetch(
            "SELECT * FROM subscriptions WHERE room_id = $1 AND kind = $2 ORDER BY id",
            room_id, kind.value,
        )
        subscriptions = [_record_to_subscription(r) for r in rows]
        return {s.id: s for s in subscriptions}

    async def find(
        self, room_id: str, kind: SourceKind, identity: str
    ) -> Subscription | None:
        """Fetch a single subscription by its natural key."""
        row = await self._db.fetchrow(
            """
            SELECT * FROM subscriptions
            WHERE kind = $1 AND room_id = $2 AND identity = $3
            """,
            kind.value, room_id, identity,
        )
        return _record_to_subscription(row) if row else None

    async def upsert(self, subscription: Subscription) -> int:
        """Insert a subscription, or update it in place if its key exists.

        Returns the row id.
        """
        return await self._db.fetchval(
            _UPSERT_SQL,
            subscription.kind.value,
            subscription.room_id,
            subscription.identity,
            subscription.credential,
            subscription.watermark,
        )

    async def advance_watermark(
        self, subscription_id: int, watermark: datetime
    ) -> bool:
        """Move a subscription's watermark forward.

        Only touches an existing row, so a subscription deleted while a poll
        cycle was running stays deleted. Returns True if a row was updated.
        """
        status = await self._db.execute(
            _ADVANCE_WATERMARK_SQL, subscription_id, watermark
        )
        return _affected_rows(status) == 1

    async def delete(self, subscription_id: int) -> bool:
        """Delete a subscription by id. Returns True if a row was removed."""
        status = await self._db.execute(
            "DELETE FROM subscriptions WHERE id = $1", subscription_id
        )
        return _affected_rows(status) == 1

    async def delete_for_room(self, room_id: str, kind: SourceKind) -> int:
        """Delete all of a room's subscriptions of one kind."""
        status = await self._db.execute(
            "DELETE FROM subscriptions WHERE room_id = $1 AND kind = $2",
            room_id, kind.value,
        )
        removed = _affected_rows(status)
        logger.info("Removed %d %s subscriptions for %s", removed, kind.value, room_id)
        return removed
