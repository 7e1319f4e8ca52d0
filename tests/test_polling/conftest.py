"""Shared fixtures for polling tests."""

import pytest

from src.polling.kinds import SourceKindSpec
from src.subscriptions.schemas import SourceKind
from tests.test_polling.fakes import (
    FakeClock,
    FakeSourceClient,
    FlakyTransport,
    InMemorySubscriptionRepository,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def transport() -> FlakyTransport:
    return FlakyTransport(rooms=["!r1:example.org", "!r2:example.org"])


@pytest.fixture
def feed_client() -> FakeSourceClient:
    return FakeSourceClient(SourceKind.FEED)


@pytest.fixture
def feed_spec(feed_client: FakeSourceClient) -> SourceKindSpec:
    return SourceKindSpec(
        kind=SourceKind.FEED,
        interval_seconds=600,
        client_factory=lambda: feed_client,
        pooled=False,
    )


@pytest.fixture
def github_backend() -> FakeSourceClient:
    """Shared state (timelines, signals, errors, calls) of every pooled GitHub client."""
    return FakeSourceClient(SourceKind.GITHUB)


@pytest.fixture
def github_clients() -> list[FakeSourceClient]:
    """Every client the pooled GitHub spec has built, in creation order."""
    return []


@pytest.fixture
def github_spec(github_backend, github_clients) -> SourceKindSpec:
    def factory() -> FakeSourceClient:
        client = FakeSourceClient(SourceKind.GITHUB)
        client.timelines = github_backend.timelines
        client.signals = github_backend.signals
        client.errors = github_backend.errors
        client.calls = github_backend.calls
        github_clients.append(client)
        return client

    return SourceKindSpec(
        kind=SourceKind.GITHUB,
        interval_seconds=300,
        client_factory=factory,
        pooled=True,
    )
