"""
One poll pass over every subscription of a single source kind.

For each subscription the cycle:
1. Resolves the room; a room the bot left takes its subscription with it
2. Consults the client pool's rate-limit state (pooled kinds only)
3. Fetches items newer than the watermark
4. Dispatches them oldest first, one message per item
5. Moves the watermark past what was actually delivered

Per-subscription failures are logged and skipped. Only store and transport
failures escape run(); the scheduler restarts the loop on those.
"""

import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime

import structlog

from src.clients.base import (
    AuthenticationError,
    NormalizedItem,
    RateLimitError,
    SourceClient,
)
from src.delivery.rendering import render_item
from src.delivery.transport import ChatTransport, DispatchError, RoomHandle
from src.observability.metrics import MetricsCollector, get_metrics
from src.polling.kinds import SourceKindSpec
from src.polling.pool import ClientPool, PooledClient, utc_now
from src.subscriptions.repository import SubscriptionRepository
from src.subscriptions.schemas import Subscription

logger = structlog.get_logger(__name__)


@dataclass
class CycleReport:
    """Counters for one completed cycle."""

    kind: str
    subscriptions: int = 0
    polled: int = 0
    skipped_rate_limited: int = 0
    removed: int = 0
    items_fetched: int = 0
    items_delivered: int = 0
    dispatch_failures: int = 0
    fetch_errors: int = 0
    auth_failures: int = 0
    watermarks_advanced: int = 0
    duration_seconds: float = 0.0
    # Set when the cycle aborted on a store or transport failure.
    error: str | None = None


@dataclass(frozen=True)
class DispatchOutcome:
    item: NormalizedItem
    delivered: bool


def compute_watermark(
    current: datetime, outcomes: Sequence[DispatchOutcome]
) -> datetime:
    """
    Watermark after dispatching ``outcomes`` (oldest first).

    Advances to the newest item delivered before the first failure. Items
    sharing the failed item's timestamp stay above the watermark, otherwise
    the failed one could never be fetched again.
    """
    for index, outcome in enumerate(outcomes):
        if not outcome.delivered:
            failed_at = outcome.item.occurred_at
            delivered = [
                o.item.occurred_at
                for o in outcomes[:index]
                if o.item.occurred_at < failed_at
            ]
            return max([current, *delivered])
    return max([current, *(o.item.occurred_at for o in outcomes)])


class PollCycle:
    """
    Poll cycle for one source kind.

    Pooled kinds keep a ClientPool across runs so per-identity rate-limit
    state outlives a single cycle; other kinds share one client.

    Usage:
        cycle = PollCycle(spec, repository, transport)
        report = await cycle.run()
    """

    def __init__(
        self,
        spec: SourceKindSpec,
        repository: SubscriptionRepository,
        transport: ChatTransport,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._spec = spec
        self._repository = repository
        self._transport = transport
        self._metrics = metrics or get_metrics()
        self._clock = clock

        self._pool: ClientPool | None = None
        self._shared_client: SourceClient | None = None
        if spec.pooled:
            self._pool = ClientPool(spec.client_factory, clock=clock)
        else:
            self._shared_client = spec.client_factory()

    @property
    def kind(self):
        return self._spec.kind

    @property
    def interval_seconds(self) -> float:
        return self._spec.interval_seconds

    @property
    def pool(self) -> ClientPool | None:
        return self._pool

    async def run(self) -> CycleReport:
        """
        Poll every subscription of this kind once.

        Raises:
            Exception: store or transport failures; nothing is retried here.
        """
        kind = self.kind.value
        report = CycleReport(kind=kind)
        start_time = time.monotonic()

        subscriptions = await self._repository.list_all(self.kind)
        report.subscriptions = len(subscriptions)

        for subscription in subscriptions:
            await self._poll_subscription(subscription, report)

        report.duration_seconds = time.monotonic() - start_time
        self._metrics.record_cycle(kind, report.duration_seconds)
        self._metrics.record_delivery(kind, report.items_delivered)

        logger.info("Poll cycle completed", **asdict(report))
        return report

    def _client_for(
        self, subscription: Subscription
    ) -> tuple[SourceClient, PooledClient | None]:
        if self._pool is None:
            return self._shared_client, None
        entry = self._pool.get_or_create(
            subscription.room_id, subscription.identity, subscription.credential
        )
        return entry.client, entry

    async def _poll_subscription(
        self, subscription: Subscription, report: CycleReport
    ) -> None:
        kind = self.kind.value
        log = logger.bind(
            kind=kind,
            room_id=subscription.room_id,
            identity=subscription.identity,
            subscription_id=subscription.id,
        )

        room = await self._transport.resolve_room(subscription.room_id)
        if room is None:
            await self._repository.delete(subscription.id)
            report.removed += 1
            self._metrics.record_subscription_removed(kind)
            log.info("Room no longer joined, subscription removed")
            return

        client, entry = self._client_for(subscription)
        if entry is not None and not self._pool.is_poll_allowed(entry):
            report.skipped_rate_limited += 1
            self._metrics.record_rate_limited(kind)
            log.debug(
                "Skipping rate-limited identity",
                next_allowed_time=entry.next_allowed_time.isoformat(),
            )
            return

        credential = entry.credential if entry is not None else subscription.credential
        try:
            result = await client.fetch_incremental(
                subscription.identity, credential, subscription.watermark
            )
        except AuthenticationError as e:
            report.auth_failures += 1
            self._metrics.record_fetch_error(kind, "auth")
            log.warning("Source rejected credentials", auth_failed=True, error=str(e))
            return
        except RateLimitError as e:
            report.skipped_rate_limited += 1
            self._metrics.record_fetch_error(kind, "rate_limit")
            if entry is not None and e.retry_after is not None:
                self._pool.defer(entry, e.retry_after)
            log.warning(
                "Source rate limit exhausted",
                retry_after=e.retry_after.total_seconds() if e.retry_after else None,
            )
            return
        except Exception as e:
            report.fetch_errors += 1
            self._metrics.record_fetch_error(kind, type(e).__name__)
            log.error("Fetch failed", error=str(e), error_type=type(e).__name__)
            return

        report.polled += 1
        if result.rate_limit_signal is not None and entry is not None:
            self._pool.defer(entry, result.rate_limit_signal)

        # sorted() is stable, so same-timestamp items keep source order.
        items = sorted(
            (i for i in result.items if i.occurred_at > subscription.watermark),
            key=lambda i: i.occurred_at,
        )
        report.items_fetched += len(items)
        if not items:
            log.debug("No new items", not_modified=result.not_modified)
            return

        outcomes = await self._dispatch(room, items, report, log)
        watermark = compute_watermark(subscription.watermark, outcomes)
        if watermark > subscription.watermark:
            await self._repository.advance_watermark(subscription.id, watermark)
            report.watermarks_advanced += 1
            log.debug("Watermark advanced", watermark=watermark.isoformat())

    async def _dispatch(
        self,
        room: RoomHandle,
        items: list[NormalizedItem],
        report: CycleReport,
        log,
    ) -> list[DispatchOutcome]:
        outcomes: list[DispatchOutcome] = []
        for item in items:
            message = render_item(item)
            try:
                await self._transport.send_message(room, message.body, message.html)
            except DispatchError as e:
                report.dispatch_failures += 1
                self._metrics.record_dispatch_failure(self.kind.value)
                log.error(
                    "Dispatch failed",
                    item_title=item.title,
                    occurred_at=item.occurred_at.isoformat(),
                    error=str(e),
                )
                outcomes.append(DispatchOutcome(item, delivered=False))
                continue
            report.items_delivered += 1
            outcomes.append(DispatchOutcome(item, delivered=True))
        return outcomes

    async def aclose(self) -> None:
        """Close the pooled or shared client(s)."""
        if self._pool is not None:
            await self._pool.aclose()
        if self._shared_client is not None:
            await self._shared_client.aclose()
