"""Registry of the source kinds the engine can poll.

The set is closed: each SourceKind maps to one spec describing how to build
its client, whether clients are pooled per identity, and how often to poll.
"""

from collections.abc import Callable
from dataclasses import dataclass

from src.clients.base import SourceClient
from src.clients.feed import FeedClient
from src.clients.github import GitHubNotificationsClient
from src.config.settings import Settings
from src.subscriptions.schemas import SourceKind


@dataclass(frozen=True)
class SourceKindSpec:
    """How to poll one source kind.

    ``pooled`` kinds get one client per (room, identity) so rate-limit state
    survives between cycles; other kinds share a single client.
    """

    kind: SourceKind
    interval_seconds: float
    client_factory: Callable[[], SourceClient]
    pooled: bool = False


def build_kind_specs(settings: Settings) -> dict[SourceKind, SourceKindSpec]:
    """Build the spec for every supported kind from settings."""
    timeout = settings.request_timeout_seconds
    user_agent = settings.user_agent

    return {
        SourceKind.GITHUB: SourceKindSpec(
            kind=SourceKind.GITHUB,
            interval_seconds=settings.github_interval_seconds,
            client_factory=lambda: GitHubNotificationsClient(
                timeout=timeout, user_agent=user_agent
            ),
            pooled=True,
        ),
        SourceKind.FEED: SourceKindSpec(
            kind=SourceKind.FEED,
            interval_seconds=settings.feed_interval_seconds,
            client_factory=lambda: FeedClient(timeout=timeout, user_agent=user_agent),
            pooled=False,
        ),
    }
