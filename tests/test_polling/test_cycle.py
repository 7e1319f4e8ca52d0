"""Tests for PollCycle."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.clients.base import AuthenticationError, RateLimitError, SourceError
from src.polling.cycle import DispatchOutcome, PollCycle, compute_watermark
from src.subscriptions.schemas import SourceKind, Subscription
from tests.test_polling.fakes import T0, at, make_item

R1 = "!r1:example.org"
R2 = "!r2:example.org"


def _titles(transport, room_id: str = R1) -> list[str]:
    return [m.body.splitlines()[0] for m in transport.messages_for(room_id)]


def _feed(identity: str = "feedA", room_id: str = R1, watermark=T0) -> Subscription:
    return Subscription(kind=SourceKind.FEED, room_id=room_id, identity=identity, watermark=watermark)


def _github(identity: str = "octocat", room_id: str = R1, token: str = "ghp_1") -> Subscription:
    return Subscription(
        kind=SourceKind.GITHUB,
        room_id=room_id,
        identity=identity,
        credential=token,
        watermark=T0,
    )


class TestComputeWatermark:
    """Tests for the watermark decision."""

    def test_all_delivered_moves_to_newest(self):
        outcomes = [
            DispatchOutcome(make_item(1, "a"), True),
            DispatchOutcome(make_item(5, "b"), True),
        ]
        assert compute_watermark(T0, outcomes) == at(5)

    def test_stops_before_first_failure(self):
        outcomes = [
            DispatchOutcome(make_item(1, "a"), True),
            DispatchOutcome(make_item(2, "b"), False),
            DispatchOutcome(make_item(3, "c"), True),
        ]
        assert compute_watermark(T0, outcomes) == at(1)

    def test_excludes_items_sharing_failed_timestamp(self):
        outcomes = [
            DispatchOutcome(make_item(1, "a"), True),
            DispatchOutcome(make_item(2, "b"), True),
            DispatchOutcome(make_item(2, "c"), False),
        ]
        assert compute_watermark(T0, outcomes) == at(1)

    def test_first_item_failing_keeps_watermark(self):
        outcomes = [
            DispatchOutcome(make_item(1, "a"), False),
            DispatchOutcome(make_item(2, "b"), True),
        ]
        assert compute_watermark(T0, outcomes) == T0

    def test_nothing_dispatched(self):
        assert compute_watermark(T0, []) == T0


class TestFeedCycle:
    """Poll cycle over a shared (unpooled) client."""

    @pytest.mark.asyncio
    async def test_delivers_in_order_then_nothing_twice(
        self, feed_spec, feed_client, repository, transport, mock_metrics, clock
    ):
        """Two new posts arrive in order; an immediate re-poll sends nothing."""
        sub = repository.add(_feed())
        feed_client.timelines["feedA"] = [make_item(1, "Post A"), make_item(5, "Post B")]
        cycle = PollCycle(feed_spec, repository, transport, metrics=mock_metrics, clock=clock)

        report = await cycle.run()

        assert _titles(transport) == ["Post A", "Post B"]
        assert repository.rows[sub.id].watermark == at(5)
        assert report.items_delivered == 2
        assert report.polled == 1

        second = await cycle.run()

        assert second.items_delivered == 0
        assert len(transport.sent) == 2
        assert repository.rows[sub.id].watermark == at(5)
        assert len(repository.watermark_writes) == 1

    @pytest.mark.asyncio
    async def test_never_dispatches_at_or_before_watermark(
        self, feed_spec, feed_client, repository, transport, mock_metrics, clock
    ):
        """Items a misbehaving source returns at or below the watermark are dropped."""
        repository.add(_feed(watermark=at(5)))
        feed_client.honor_since = False
        feed_client.timelines["feedA"] = [
            make_item(1, "old"),
            make_item(5, "at watermark"),
            make_item(6, "new"),
        ]
        cycle = PollCycle(feed_spec, repository, transport, metrics=mock_metrics, clock=clock)

        await cycle.run()

        assert _titles(transport) == ["new"]

    @pytest.mark.asyncio
    async def test_empty_fetch_leaves_watermark(
        self, feed_spec, repository, transport, mock_metrics, clock
    ):
        sub = repository.add(_feed())
        cycle = PollCycle(feed_spec, repository, transport, metrics=mock_metrics, clock=clock)

        report = await cycle.run()

        assert report.polled == 1
        assert transport.sent == []
        assert repository.rows[sub.id].watermark == T0
        assert repository.watermark_writes == []

    @pytest.mark.asyncio
    async def test_items_sorted_oldest_first_with_stable_ties(
        self, feed_spec, feed_client, repository, transport, mock_metrics, clock
    ):
        repository.add(_feed())
        feed_client.timelines["feedA"] = [
            make_item(9, "newest"),
            make_item(3, "tie first"),
            make_item(3, "tie second"),
            make_item(1, "oldest"),
        ]
        cycle = PollCycle(feed_spec, repository, transport, metrics=mock_metrics, clock=clock)

        await cycle.run()

        assert _titles(transport) == ["oldest", "tie first", "tie second", "newest"]

    @pytest.mark.asyncio
    async def test_orphaned_subscription_removed_without_fetch(
        self, feed_spec, feed_client, repository, transport, mock_metrics, clock
    ):
        gone = repository.add(_feed(room_id="!gone:example.org"))
        kept = repository.add(_feed(identity="feedB"))
        cycle = PollCycle(feed_spec, repository, transport, metrics=mock_metrics, clock=clock)

        report = await cycle.run()

        assert gone.id not in repository.rows
        assert kept.id in repository.rows
        assert [call[0] for call in feed_client.calls] == ["feedB"]
        assert report.removed == 1
        mock_metrics.record_subscription_removed.assert_called_once_with("feed")

    @pytest.mark.asyncio
    async def test_fetch_error_skips_only_that_subscription(
        self, feed_spec, feed_client, repository, transport, mock_metrics, clock
    ):
        broken = repository.add(_feed(identity="broken"))
        repository.add(_feed(identity="feedB", room_id=R2))
        feed_client.errors["broken"].append(SourceError("feed:broken: 502"))
        feed_client.timelines["feedB"] = [make_item(2, "B post")]
        cycle = PollCycle(feed_spec, repository, transport, metrics=mock_metrics, clock=clock)

        report = await cycle.run()

        assert report.fetch_errors == 1
        assert _titles(transport, R2) == ["B post"]
        assert repository.rows[broken.id].watermark == T0
        mock_metrics.record_fetch_error.assert_called_once_with("feed", "SourceError")

    @pytest.mark.asyncio
    async def test_dispatch_failure_redelivers_next_cycle(
        self, feed_spec, feed_client, repository, transport, mock_metrics, clock
    ):
        """Later items are still attempted; the failed one comes back next time."""
        sub = repository.add(_feed())
        feed_client.timelines["feedA"] = [
            make_item(1, "A"),
            make_item(2, "B"),
            make_item(3, "C"),
        ]
        transport.fail_titles = {"B"}
        cycle = PollCycle(feed_spec, repository, transport, metrics=mock_metrics, clock=clock)

        report = await cycle.run()

        assert _titles(transport) == ["A", "C"]
        assert report.dispatch_failures == 1
        assert report.items_delivered == 2
        assert repository.rows[sub.id].watermark == at(1)

        transport.fail_titles = set()
        await cycle.run()

        assert _titles(transport) == ["A", "C", "B", "C"]
        assert repository.rows[sub.id].watermark == at(3)

    @pytest.mark.asyncio
    async def test_store_failure_escapes(self, feed_spec, transport, mock_metrics, clock):
        repository = AsyncMock()
        repository.list_all.side_effect = ConnectionError("database is down")
        cycle = PollCycle(feed_spec, repository, transport, metrics=mock_metrics, clock=clock)

        with pytest.raises(ConnectionError):
            await cycle.run()

    @pytest.mark.asyncio
    async def test_subscription_deleted_mid_cycle_stays_deleted(
        self, feed_spec, feed_client, repository, transport, mock_metrics, clock
    ):
        sub = repository.add(_feed())
        feed_client.timelines["feedA"] = [make_item(1, "A")]

        async def delete_during_send(room, body, html):
            await repository.delete(sub.id)

        transport.send_message = delete_during_send
        cycle = PollCycle(feed_spec, repository, transport, metrics=mock_metrics, clock=clock)

        await cycle.run()

        assert sub.id not in repository.rows

    @pytest.mark.asyncio
    async def test_shared_client_closed(self, feed_spec, feed_client, repository, transport, clock):
        cycle = PollCycle(feed_spec, repository, transport, metrics=MagicMock(), clock=clock)

        await cycle.aclose()

        assert feed_client.closed


class TestPooledCycle:
    """Poll cycle over per-identity pooled clients."""

    @pytest.mark.asyncio
    async def test_rate_limit_signal_blocks_next_polls(
        self, github_spec, github_backend, repository, transport, mock_metrics, clock
    ):
        """One item with a 60s poll interval: delivered, then no fetch for 60s."""
        sub = repository.add(_github())
        github_backend.timelines["octocat"] = [make_item(10, "Issue: Crash on start")]
        github_backend.signals["octocat"] = timedelta(seconds=60)
        cycle = PollCycle(github_spec, repository, transport, metrics=mock_metrics, clock=clock)

        await cycle.run()

        assert _titles(transport) == ["Issue: Crash on start"]
        assert repository.rows[sub.id].watermark == at(10)
        assert len(github_backend.calls) == 1

        for _ in range(3):
            clock.advance(15)
            report = await cycle.run()
            assert report.skipped_rate_limited == 1

        assert len(github_backend.calls) == 1

        clock.advance(15)
        await cycle.run()

        assert len(github_backend.calls) == 2

    @pytest.mark.asyncio
    async def test_signal_applies_without_items(
        self, github_spec, github_backend, repository, transport, mock_metrics, clock
    ):
        repository.add(_github())
        github_backend.signals["octocat"] = timedelta(seconds=60)
        cycle = PollCycle(github_spec, repository, transport, metrics=mock_metrics, clock=clock)

        await cycle.run()
        clock.advance(30)
        await cycle.run()

        assert len(github_backend.calls) == 1

    @pytest.mark.asyncio
    async def test_one_client_per_room_and_identity(
        self, github_spec, github_clients, repository, transport, mock_metrics, clock
    ):
        repository.add(_github("octocat", R1))
        repository.add(_github("octocat", R2))
        repository.add(_github("hubot", R1))
        cycle = PollCycle(github_spec, repository, transport, metrics=mock_metrics, clock=clock)

        await cycle.run()
        await cycle.run()

        assert len(github_clients) == 3
        assert len(cycle.pool) == 3

    @pytest.mark.asyncio
    async def test_rotated_token_is_used(
        self, github_spec, github_backend, repository, transport, mock_metrics, clock
    ):
        sub = repository.add(_github(token="ghp_old"))
        cycle = PollCycle(github_spec, repository, transport, metrics=mock_metrics, clock=clock)
        await cycle.run()

        repository.rows[sub.id] = repository.rows[sub.id].with_credential("ghp_new")
        await cycle.run()

        assert [call[1] for call in github_backend.calls] == ["ghp_old", "ghp_new"]
        assert len(cycle.pool) == 1

    @pytest.mark.asyncio
    async def test_authentication_error_keeps_subscription(
        self, github_spec, github_backend, repository, transport, mock_metrics, clock
    ):
        sub = repository.add(_github())
        github_backend.errors["octocat"].append(AuthenticationError("401"))
        cycle = PollCycle(github_spec, repository, transport, metrics=mock_metrics, clock=clock)

        report = await cycle.run()

        assert report.auth_failures == 1
        assert sub.id in repository.rows
        assert repository.rows[sub.id].watermark == T0
        mock_metrics.record_fetch_error.assert_called_once_with("github", "auth")

    @pytest.mark.asyncio
    async def test_rate_limit_error_defers_identity(
        self, github_spec, github_backend, repository, transport, mock_metrics, clock
    ):
        repository.add(_github())
        github_backend.errors["octocat"].append(
            RateLimitError("403", retry_after=timedelta(minutes=10))
        )
        cycle = PollCycle(github_spec, repository, transport, metrics=mock_metrics, clock=clock)

        await cycle.run()
        clock.advance(300)
        await cycle.run()
        clock.advance(300)
        await cycle.run()

        assert len(github_backend.calls) == 2

    @pytest.mark.asyncio
    async def test_pool_closed(self, github_spec, github_clients, repository, transport, mock_metrics, clock):
        repository.add(_github())
        cycle = PollCycle(github_spec, repository, transport, metrics=mock_metrics, clock=clock)
        await cycle.run()

        await cycle.aclose()

        assert all(client.closed for client in github_clients)
        assert len(cycle.pool) == 0
