"""Tests for the shared source client contract."""

import time
from datetime import datetime, timedelta, timezone

import httpx

from src.clients.base import (
    AuthenticationError,
    NormalizedItem,
    RateLimitError,
    SourceError,
    error_from_http,
    newer_than,
    rate_limit_retry_after,
)
from src.clients.http_client import HTTPClientError


def _item(minute: int) -> NormalizedItem:
    return NormalizedItem(
        title=f"item {minute}",
        occurred_at=datetime(2024, 1, 1, 10, minute, tzinfo=timezone.utc),
    )


def _http_error(status: int, headers: dict | None = None) -> HTTPClientError:
    return HTTPClientError(
        f"status {status}",
        status_code=status,
        headers=httpx.Headers(headers or {}),
    )


class TestNormalizedItem:
    """Tests for NormalizedItem."""

    def test_naive_timestamp_becomes_utc(self):
        item = NormalizedItem(title="t", occurred_at=datetime(2024, 1, 1, 10, 0))
        assert item.occurred_at.tzinfo is not None
        assert item.occurred_at.utcoffset() == timedelta(0)

    def test_defaults(self):
        item = NormalizedItem(title="t", occurred_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert item.body_summary == ""
        assert item.link is None
        assert item.link_label is None


class TestNewerThan:
    """Tests for watermark filtering."""

    def test_strictly_newer(self):
        """Items at exactly the watermark were already delivered."""
        items = [_item(1), _item(2), _item(3)]
        since = datetime(2024, 1, 1, 10, 2, tzinfo=timezone.utc)

        result = newer_than(items, since)

        assert [i.title for i in result] == ["item 3"]

    def test_preserves_source_order(self):
        items = [_item(5), _item(3), _item(4)]
        since = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

        assert [i.title for i in newer_than(items, since)] == ["item 5", "item 3", "item 4"]


class TestRateLimitRetryAfter:
    """Tests for rate-limit header parsing."""

    def test_retry_after_seconds(self):
        headers = httpx.Headers({"Retry-After": "120"})
        assert rate_limit_retry_after(headers) == timedelta(seconds=120)

    def test_exhausted_with_reset(self):
        reset = int(time.time()) + 300
        headers = httpx.Headers(
            {"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(reset)}
        )

        wait = rate_limit_retry_after(headers)

        assert wait is not None
        assert timedelta(seconds=290) <= wait <= timedelta(seconds=300)

    def test_exhausted_with_unparseable_reset(self):
        headers = httpx.Headers({"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "soon"})
        assert rate_limit_retry_after(headers) == timedelta(minutes=1)

    def test_remaining_budget_is_not_a_limit(self):
        headers = httpx.Headers({"X-RateLimit-Remaining": "42"})
        assert rate_limit_retry_after(headers) is None


class TestErrorFromHttp:
    """Tests for HTTP error translation."""

    def test_401_is_authentication_error(self):
        error = error_from_http(_http_error(401), "github:octocat")
        assert isinstance(error, AuthenticationError)

    def test_403_without_limit_headers_is_authentication_error(self):
        error = error_from_http(_http_error(403), "github:octocat")
        assert isinstance(error, AuthenticationError)
        assert not isinstance(error, RateLimitError)

    def test_403_with_exhausted_limit_is_rate_limit(self):
        error = error_from_http(
            _http_error(403, {"X-RateLimit-Remaining": "0", "Retry-After": "60"}),
            "github:octocat",
        )
        assert isinstance(error, RateLimitError)
        assert error.retry_after == timedelta(seconds=60)

    def test_429_is_always_rate_limit(self):
        error = error_from_http(_http_error(429), "feed:https://example.org/rss")
        assert isinstance(error, RateLimitError)
        assert error.retry_after is None

    def test_other_status_is_transient(self):
        error = error_from_http(_http_error(502), "feed:https://example.org/rss")
        assert type(error) is SourceError

    def test_transport_error_is_transient(self):
        error = error_from_http(HTTPClientError("connection refused"), "feed:x")
        assert type(error) is SourceError
        assert "connection refused" in str(error)
