"""
Source client contract shared by every source kind.

Each client turns one external source into an ordered list of
NormalizedItem instances newer than a watermark. The base module provides:
- NormalizedItem / FetchResult: the source-agnostic result shape
- SourceError hierarchy: transient, authentication and rate-limit failures
- error_from_http(): maps HTTP failures onto that hierarchy
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict, field_validator

from src.clients.http_client import HTTPClientError
from src.subscriptions.schemas import SourceKind


class NormalizedItem(BaseModel):
    """
    One new event from a source, independent of the source kind.

    Rendering only ever looks at these fields, so a new source kind needs
    nothing beyond a parser that produces them.
    """

    model_config = ConfigDict(frozen=True)

    title: str
    body_summary: str = ""
    link: str | None = None
    link_label: str | None = None
    occurred_at: datetime

    @field_validator("occurred_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Naive timestamps are taken to be UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


@dataclass
class FetchResult:
    """Outcome of one incremental fetch.

    ``rate_limit_signal`` tells the caller to leave this identity alone
    until ``now + rate_limit_signal``. ``not_modified`` marks a conditional
    request the source answered with "nothing changed"; it always comes with
    an empty item list.
    """

    items: list[NormalizedItem] = field(default_factory=list)
    rate_limit_signal: timedelta | None = None
    not_modified: bool = False


class SourceError(Exception):
    """A fetch failed; the subscription is retried on the next tick."""


class AuthenticationError(SourceError):
    """The source rejected the subscription's credential."""


class RateLimitError(SourceError):
    """The source refused the request because the rate limit is exhausted."""

    def __init__(self, message: str, retry_after: timedelta | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class SourceClient(ABC):
    """
    Abstract base class for source clients.

    Subclasses must implement:
        - kind: SourceKind this client serves
        - fetch_incremental(): items strictly newer than ``since``
        - test_identity(): cheap validity probe used when subscribing

    Both coroutines raise SourceError (or a subclass) on failure and never
    signal "no new content" through an exception.
    """

    @property
    @abstractmethod
    def kind(self) -> SourceKind:
        """Return the source kind this client handles."""
        ...

    @abstractmethod
    async def fetch_incremental(
        self,
        identity: str,
        credential: str | None,
        since: datetime,
    ) -> FetchResult:
        """Fetch the items that occurred strictly after ``since``."""
        ...

    @abstractmethod
    async def test_identity(self, identity: str, credential: str | None) -> None:
        """Raise SourceError if the identity/credential pair is unusable."""
        ...

    async def aclose(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None


def newer_than(items: Iterable[NormalizedItem], since: datetime) -> list[NormalizedItem]:
    """Keep items strictly newer than ``since``, preserving source order."""
    return [item for item in items if item.occurred_at > since]


def _parse_retry_after(value: str | None) -> timedelta | None:
    if not value:
        return None
    try:
        return timedelta(seconds=max(0, int(value.strip())))
    except ValueError:
        return None


def rate_limit_retry_after(headers) -> timedelta | None:
    """
    Derive how long to wait from rate-limit response headers.

    Checks Retry-After first, then an exhausted X-RateLimit-Remaining
    together with the X-RateLimit-Reset epoch. Returns None when the headers
    do not describe an exhausted limit.
    """
    retry_after = _parse_retry_after(headers.get("Retry-After"))
    if retry_after is not None:
        return retry_after

    if headers.get("X-RateLimit-Remaining") == "0":
        reset = headers.get("X-RateLimit-Reset")
        try:
            wait = int(reset) - int(time.time())
        except (TypeError, ValueError):
            return timedelta(minutes=1)
        return timedelta(seconds=max(0, wait))

    return None


def error_from_http(exc: HTTPClientError, source: str) -> SourceError:
    """
    Translate an HTTP failure into the source error hierarchy.

    - 401 -> AuthenticationError
    - 403/429 with exhausted rate-limit headers -> RateLimitError
    - 403 otherwise -> AuthenticationError
    - anything else -> SourceError
    """
    status = exc.status_code
    if status == 401:
        return AuthenticationError(f"{source}: credentials rejected (401)")

    if status in (403, 429):
        retry_after = rate_limit_retry_after(exc.headers)
        if retry_after is not None or status == 429:
            return RateLimitError(
                f"{source}: rate limit exceeded ({status})",
                retry_after=retry_after,
            )
        return AuthenticationError(f"{source}: access forbidden (403)")

    return SourceError(f"{source}: {exc}")
