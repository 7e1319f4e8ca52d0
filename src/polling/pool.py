"""
Client pool for source kinds with per-identity authenticated sessions.

One PooledClient per (room_id, identity). The entry carries the client and
the identity's rate-limit state, so a source that asked to be left alone
(X-Poll-Interval, Retry-After) is not asked again before that time, no
matter how many scheduler ticks pass in between.

Entries are never evicted; their number is bounded by the number of
subscriptions and they disappear with the process.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from src.clients.base import SourceClient

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PooledClient:
    """A cached client plus the rate-limit state of its identity."""

    room_id: str
    identity: str
    client: SourceClient
    credential: str | None
    next_allowed_time: datetime


class ClientPool:
    """
    Keyed cache of source clients, owned by exactly one poll cycle.

    Args:
        factory: Builds a fresh client for a new (room, identity) pair.
        clock: Returns the current aware UTC time (injectable for tests).
    """

    def __init__(
        self,
        factory: Callable[[], SourceClient],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._factory = factory
        self._clock = clock
        self._entries: dict[tuple[str, str], PooledClient] = {}

    def get_or_create(
        self,
        room_id: str,
        identity: str,
        credential: str | None,
    ) -> PooledClient:
        """
        Return the cached entry for (room_id, identity), creating it if needed.

        A differing credential replaces the cached one in place; rate-limit
        state is kept so a token rotation cannot be used to dodge it.
        """
        key = (room_id, identity)
        entry = self._entries.get(key)
        if entry is None:
            entry = PooledClient(
                room_id=room_id,
                identity=identity,
                client=self._factory(),
                credential=credential,
                next_allowed_time=self._clock(),
            )
            self._entries[key] = entry
            logger.debug(f"Created pooled client for {identity} in {room_id}")
        elif entry.credential != credential:
            entry.credential = credential
            logger.info(f"Credential rotated for {identity} in {room_id}")
        return entry

    def is_poll_allowed(self, entry: PooledClient) -> bool:
        """True once the entry's next allowed poll time has been reached."""
        return self._clock() >= entry.next_allowed_time

    def defer(self, entry: PooledClient, wait: timedelta) -> None:
        """Keep the entry out of the rotation until ``now + wait``."""
        entry.next_allowed_time = self._clock() + wait

    def __len__(self) -> int:
        return len(self._entries)

    async def aclose(self) -> None:
        """Close every pooled client. Used at shutdown only."""
        for entry in self._entries.values():
            try:
                await entry.client.aclose()
            except Exception as e:
                logger.warning(f"Failed to close client for {entry.identity}: {e}")
        self._entries.clear()
