"""
RSS/Atom feed client.

Fetches arbitrary web feeds anonymously and parses them with feedparser.
Feeds cannot filter server-side, so every fetch downloads the whole
document and entries are filtered against the watermark client-side.

Entry timestamps:
    published, falling back to updated. Entries carrying neither cannot be
    placed on the timeline and are skipped.
"""

import calendar
import logging
from datetime import datetime, timezone
from typing import Any

import feedparser

from src.clients.base import (
    FetchResult,
    NormalizedItem,
    SourceClient,
    SourceError,
    error_from_http,
    newer_than,
)
from src.clients.http_client import HTTPClient, HTTPClientError
from src.subscriptions.schemas import SourceKind

logger = logging.getLogger(__name__)

_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/xml;q=0.9, "
    "text/xml;q=0.8, */*;q=0.5"
)


def entry_timestamp(entry: dict[str, Any]) -> datetime | None:
    """Return an entry's published (or updated) time as aware UTC."""
    for field in ("published_parsed", "updated_parsed"):
        parsed = entry.get(field)
        if parsed:
            # feedparser normalizes *_parsed to UTC struct_time
            return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
    return None


def entry_to_item(entry: dict[str, Any]) -> NormalizedItem | None:
    """Convert a feedparser entry, or None if it has no usable timestamp."""
    occurred_at = entry_timestamp(entry)
    if occurred_at is None:
        return None

    link = entry.get("link") or None
    link_label = None
    for candidate in entry.get("links", []):
        if candidate.get("href") == link and candidate.get("title"):
            link_label = candidate["title"]
            break

    return NormalizedItem(
        title=(entry.get("title") or "").strip(),
        body_summary=(entry.get("summary") or "").strip(),
        link=link,
        link_label=link_label,
        occurred_at=occurred_at,
    )


class FeedClient(SourceClient):
    """
    Shared client for every feed subscription.

    Feeds are anonymous, so one instance (and one connection pool) serves
    all rooms; there is no per-identity rate-limit state to keep.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        user_agent: str = "room-notifier (RSS Reader)",
        http: HTTPClient | None = None,
    ):
        self._http = http or HTTPClient(timeout=timeout, user_agent=user_agent)

    @property
    def kind(self) -> SourceKind:
        return SourceKind.FEED

    async def _fetch_feed(self, url: str) -> feedparser.FeedParserDict:
        try:
            response = await self._http.get(url, headers={"Accept": _ACCEPT})
        except HTTPClientError as e:
            raise error_from_http(e, f"feed:{url}") from e

        feed = feedparser.parse(response.content)

        # bozo alone is common (bad encodings, sloppy XML) and harmless as
        # long as entries came out of it.
        if feed.get("bozo") and not feed.get("entries"):
            raise SourceError(f"feed:{url}: not a parsable feed: {feed.get('bozo_exception')}")
        if not feed.get("version") and not feed.get("entries"):
            raise SourceError(f"feed:{url}: document is not an RSS or Atom feed")

        return feed

    async def fetch_incremental(
        self,
        identity: str,
        credential: str | None,
        since: datetime,
    ) -> FetchResult:
        """Download the feed at ``identity`` and keep entries newer than ``since``."""
        feed = await self._fetch_feed(identity)

        entries = feed.get("entries", [])
        items: list[NormalizedItem] = []
        skipped = 0
        for entry in entries:
            item = entry_to_item(entry)
            if item is None:
                skipped += 1
                continue
            items.append(item)

        if skipped:
            logger.debug(f"Feed {identity}: skipped {skipped} entries without timestamps")

        return FetchResult(items=newer_than(items, since))

    async def test_identity(self, identity: str, credential: str | None) -> None:
        """Check that the URL serves a parsable feed."""
        await self._fetch_feed(identity)

    async def aclose(self) -> None:
        await self._http.aclose()
