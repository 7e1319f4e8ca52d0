"""
Subscription commands: enable, list, disable and clear per room.

Enabling probes the source first so a typo'd feed URL or a revoked token is
refused up front instead of failing silently every poll. New subscriptions
start with the watermark at "now": history is never replayed into a room.
"""

from collections.abc import Callable
from datetime import datetime, timezone

import httpx
import structlog

from src.clients.base import SourceClient, SourceError
from src.subscriptions.repository import SubscriptionRepository
from src.subscriptions.schemas import SourceKind, Subscription

logger = structlog.get_logger(__name__)


class InvalidIdentityError(ValueError):
    """The identity is malformed for its source kind."""


def normalize_feed_url(url: str) -> str:
    """Validate a feed URL and return it stripped of surrounding whitespace.

    Raises:
        InvalidIdentityError: if the URL is not absolute http(s).
    """
    url = url.strip()
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise InvalidIdentityError(f"Invalid feed URL {url!r}: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise InvalidIdentityError(f"Feed URL must be absolute http(s): {url!r}")
    return url


class SubscriptionService:
    """
    Command layer over the subscription store.

    Usage:
        service = SubscriptionService(repository, {
            SourceKind.FEED: FeedClient,
            SourceKind.GITHUB: GitHubNotificationsClient,
        })
        ok = await service.enable_feed("!room:example.org", "https://blog/rss")
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        client_factories: dict[SourceKind, Callable[[], SourceClient]],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._client_factories = client_factories
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _probe(
        self, kind: SourceKind, identity: str, credential: str | None
    ) -> bool:
        client = self._client_factories[kind]()
        try:
            await client.test_identity(identity, credential)
        except SourceError as e:
            logger.warning(
                "Subscription probe failed",
                kind=kind.value,
                identity=identity,
                error=str(e),
            )
            return False
        finally:
            await client.aclose()
        return True

    async def enable(
        self,
        kind: SourceKind,
        room_id: str,
        identity: str,
        credential: str | None = None,
    ) -> bool:
        """
        Subscribe a room to a source identity after probing it.

        An existing subscription keeps its watermark and only has its
        credential replaced. Returns False if the probe failed.
        """
        if not await self._probe(kind, identity, credential):
            return False

        existing = await self._repository.find(room_id, kind, identity)
        if existing is not None:
            subscription = existing.with_credential(credential)
            action = "updated"
        else:
            subscription = Subscription(
                kind=kind,
                room_id=room_id,
                identity=identity,
                credential=credential,
                watermark=self._clock(),
            )
            action = "created"

        subscription_id = await self._repository.upsert(subscription)
        logger.info(
            f"Subscription {action}",
            kind=kind.value,
            room_id=room_id,
            identity=identity,
            subscription_id=subscription_id,
        )
        return True

    async def enable_github(self, room_id: str, username: str, token: str) -> bool:
        """Subscribe a room to a GitHub account's notifications."""
        return await self.enable(SourceKind.GITHUB, room_id, username.strip(), token)

    async def enable_feed(self, room_id: str, url: str) -> bool:
        """Subscribe a room to an RSS/Atom feed.

        Raises:
            InvalidIdentityError: if ``url`` is not an absolute http(s) URL.
        """
        return await self.enable(SourceKind.FEED, room_id, normalize_feed_url(url))

    async def list_for_room(self, room_id: str, kind: SourceKind) -> list[str]:
        """Identities the room is subscribed to, in subscription order."""
        subscriptions = await self._repository.list_by_room(room_id, kind)
        return [s.identity for s in subscriptions.values()]

    async def disable(self, room_id: str, kind: SourceKind, identity: str) -> bool:
        """Remove one subscription. Returns False if it did not exist."""
        existing = await self._repository.find(room_id, kind, identity)
        if existing is None:
            return False
        removed = await self._repository.delete(existing.id)
        if removed:
            logger.info(
                "Subscription disabled",
                kind=kind.value,
                room_id=room_id,
                identity=identity,
            )
        return removed

    async def clear(self, room_id: str, kind: SourceKind) -> int:
        """Remove all of a room's subscriptions of one kind."""
        return await self._repository.delete_for_room(room_id, kind)
