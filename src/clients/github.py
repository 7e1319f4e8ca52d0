"""
GitHub notifications client.

Polls the authenticated user's notification inbox (issues, pull requests,
CI runs, ...) via the REST API.

Rate limiting:
    GitHub tells pollers how often they may ask via the X-Poll-Interval
    header (seconds). It is surfaced as FetchResult.rate_limit_signal on
    every response, including 304 Not Modified, and the caller keeps the
    identity out of the poll rotation until it elapses.

Conditional requests:
    If-Modified-Since is set to the subscription watermark, so an inbox with
    no changes costs a 304 and does not count against the primary rate limit.

Pagination:
    Follows the Link rel="next" header up to MAX_PAGES pages. The watermark
    jumps to the newest item delivered, so a page left unread would be
    skipped for good; hitting the cap is logged.
"""

import html
import logging
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

from pydantic import BaseModel, ValidationError

from src.clients.base import (
    AuthenticationError,
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

API_URL = "https://api.github.com"
NOTIFICATIONS_PAGE_URL = "https://github.com/notifications"
PAGE_SIZE = 50
MAX_PAGES = 10


class GitHubSubject(BaseModel):
    """Subject of a notification thread (issue, PR, release, ...)."""

    title: str
    type: str
    url: str | None = None
    latest_comment_url: str | None = None


class GitHubRepository(BaseModel):
    """The parts of the minimal repository payload that are rendered."""

    full_name: str
    html_url: str | None = None
    private: bool = False


class GitHubNotification(BaseModel):
    """One entry of GET /notifications. Unknown fields are ignored."""

    id: str
    reason: str
    unread: bool = True
    updated_at: datetime
    last_read_at: datetime | None = None
    subject: GitHubSubject
    repository: GitHubRepository | None = None

    def to_item(self) -> NormalizedItem:
        summary = ""
        if self.repository is not None:
            summary = html.escape(
                f"{self.repository.full_name} ({self.reason.replace('_', ' ')})"
            )
        return NormalizedItem(
            title=f"{self.subject.type}: {self.subject.title}",
            body_summary=summary,
            link=NOTIFICATIONS_PAGE_URL,
            link_label="See notifications",
            occurred_at=self.updated_at,
        )


def _http_date(value: datetime) -> str:
    """Format a datetime as an RFC 2822 HTTP date (always GMT)."""
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def _iso8601(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _poll_interval(headers) -> timedelta | None:
    value = headers.get("X-Poll-Interval")
    if not value:
        return None
    try:
        return timedelta(seconds=int(value))
    except ValueError:
        logger.warning(f"Ignoring malformed X-Poll-Interval header: {value!r}")
        return None


class GitHubNotificationsClient(SourceClient):
    """
    Client for one GitHub identity's notification inbox.

    Instances are cached in the client pool, one per (room, username), so
    the HTTP connection survives between cycles. Credentials are passed per
    call; a rotated token takes effect on the next fetch.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        user_agent: str = "room-notifier",
        base_url: str = API_URL,
        http: HTTPClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._http = http or HTTPClient(timeout=timeout, user_agent=user_agent)

    @property
    def kind(self) -> SourceKind:
        return SourceKind.GITHUB

    @property
    def notifications_url(self) -> str:
        return f"{self._base_url}/notifications"

    async def fetch_incremental(
        self,
        identity: str,
        credential: str | None,
        since: datetime,
    ) -> FetchResult:
        """
        List notifications updated after ``since``.

        Raises:
            AuthenticationError: Token missing or rejected
            RateLimitError: Primary or secondary rate limit exhausted
            SourceError: Network failure or unexpected payload
        """
        if not credential:
            raise AuthenticationError(f"github:{identity}: no token configured")

        auth = (identity, credential)
        response = await self._get_page(
            identity,
            self.notifications_url,
            params={
                "all": "false",
                "per_page": str(PAGE_SIZE),
                "since": _iso8601(since),
            },
            headers={
                "Accept": "application/vnd.github+json",
                "If-Modified-Since": _http_date(since),
            },
            auth=auth,
        )

        signal = _poll_interval(response.headers)

        if response.status_code == 304:
            return FetchResult(items=[], rate_limit_signal=signal, not_modified=True)

        notifications = self._parse_page(identity, response)
        pages = 1
        next_link = response.links.get("next")
        while next_link and pages < MAX_PAGES:
            # The next URL already carries the query.
            response = await self._get_page(
                identity,
                next_link["url"],
                headers={"Accept": "application/vnd.github+json"},
                auth=auth,
            )
            notifications.extend(self._parse_page(identity, response))
            pages += 1
            next_link = response.links.get("next")

        if next_link:
            logger.warning(
                f"GitHub {identity}: stopped after {MAX_PAGES} pages, older notifications skipped"
            )

        items = newer_than((n.to_item() for n in notifications), since)
        logger.debug(
            f"GitHub {identity}: {len(notifications)} notifications, {len(items)} new"
        )
        return FetchResult(items=items, rate_limit_signal=signal)

    async def _get_page(
        self,
        identity: str,
        url: str,
        headers: dict[str, str],
        auth: tuple[str, str],
        params: dict[str, str] | None = None,
    ):
        try:
            return await self._http.get(url, params=params, headers=headers, auth=auth)
        except HTTPClientError as e:
            raise error_from_http(e, f"github:{identity}") from e

    @staticmethod
    def _parse_page(identity: str, response) -> list[GitHubNotification]:
        try:
            payload = response.json()
            if not isinstance(payload, list):
                raise SourceError(
                    f"github:{identity}: expected a list, got {type(payload).__name__}"
                )
            return [GitHubNotification.model_validate(n) for n in payload]
        except (ValueError, ValidationError) as e:
            raise SourceError(f"github:{identity}: malformed notifications payload: {e}") from e

    async def test_identity(self, identity: str, credential: str | None) -> None:
        """
        Check a token with a HEAD request.

        If-Modified-Since is "now", so the answer is a 304 and does not touch
        the poll budget.
        """
        if not credential:
            raise AuthenticationError(f"github:{identity}: no token configured")

        try:
            await self._http.head(
                self.notifications_url,
                headers={"If-Modified-Since": _http_date(datetime.now(timezone.utc))},
                auth=(identity, credential),
            )
        except HTTPClientError as e:
            raise error_from_http(e, f"github:{identity}") from e

    async def aclose(self) -> None:
        await self._http.aclose()
