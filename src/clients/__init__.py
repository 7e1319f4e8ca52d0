"""Source clients: fetch incremental items from external sources."""

from src.clients.base import (
    AuthenticationError,
    FetchResult,
    NormalizedItem,
    RateLimitError,
    SourceClient,
    SourceError,
)
from src.clients.feed import FeedClient
from src.clients.github import GitHubNotificationsClient
from src.clients.http_client import HTTPClient, HTTPClientError

__all__ = [
    "AuthenticationError",
    "FeedClient",
    "FetchResult",
    "GitHubNotificationsClient",
    "HTTPClient",
    "HTTPClientError",
    "NormalizedItem",
    "RateLimitError",
    "SourceClient",
    "SourceError",
]
