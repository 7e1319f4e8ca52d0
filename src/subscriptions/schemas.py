"""Data models for the subscriptions module."""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum


class SourceKind(str, Enum):
    """Supported external source kinds."""

    GITHUB = "github"
    FEED = "feed"


@dataclass
class Subscription:
    """A room's subscription to one external source identity.

    Uses composite key (kind, room_id, identity) to uniquely identify
    subscriptions; ``id`` is the store's surrogate key and is None until
    the row has been inserted.

    ``watermark`` marks the last point in the source's timeline that has been
    delivered into the room. It is always timezone-aware UTC.
    """

    kind: SourceKind
    room_id: str
    identity: str
    watermark: datetime
    credential: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.watermark.tzinfo is None:
            self.watermark = self.watermark.replace(tzinfo=timezone.utc)

    def with_credential(self, credential: str | None) -> "Subscription":
        """Return a copy carrying a rotated credential."""
        return replace(self, credential=credential)

    def __repr__(self) -> str:
        # Keep tokens out of log lines and tracebacks.
        return (
            f"Subscription(id={self.id!r}, kind={self.kind.value!r}, "
            f"room_id={self.room_id!r}, identity={self.identity!r}, "
            f"watermark={self.watermark.isoformat()!r})"
        )
