"""
Notifier service - polls subscribed sources and delivers into chat rooms.

Wires the subscription store, the chat transport and one poll cycle per
source kind, then hands the cycles to the scheduler.

Features:
- Independent timer loop per source kind
- Loop restart with backoff when the store or transport fails
- Graceful shutdown (running cycles complete)
- Health monitoring
"""

from typing import Any

import structlog

from src.config.settings import Settings, get_settings
from src.delivery.matrix import MatrixTransport
from src.delivery.transport import ChatTransport
from src.observability.metrics import MetricsCollector, get_metrics
from src.polling.cycle import CycleReport, PollCycle
from src.polling.kinds import SourceKindSpec, build_kind_specs
from src.polling.scheduler import Scheduler
from src.storage.database import Database
from src.subscriptions.repository import SubscriptionRepository
from src.subscriptions.schemas import SourceKind

logger = structlog.get_logger(__name__)


class TransportNotConfiguredError(RuntimeError):
    """No chat transport credentials are configured."""


def create_transport(settings: Settings) -> ChatTransport:
    """
    Build the Matrix transport from settings.

    Raises:
        TransportNotConfiguredError: MATRIX_ACCESS_TOKEN is not set.
    """
    if not settings.matrix_configured:
        raise TransportNotConfiguredError(
            "Matrix is not configured: set MATRIX_ACCESS_TOKEN (and MATRIX_HOMESERVER)"
        )
    return MatrixTransport(
        homeserver=settings.matrix_homeserver,
        access_token=settings.matrix_access_token,
        user_id=settings.matrix_user_id,
        timeout=settings.request_timeout_seconds,
    )


class NotifierService:
    """
    Service that orchestrates polling for every source kind.

    Usage:
        service = NotifierService()
        await service.start()  # Runs until stop() is called
    """

    def __init__(
        self,
        database: Database | None = None,
        transport: ChatTransport | None = None,
        kinds: dict[SourceKind, SourceKindSpec] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize notifier service.

        Args:
            database: Subscription store connection (or create from config)
            transport: Chat transport (or create from config)
            kinds: Source kinds to poll (or all kinds from config)
            metrics: Metrics collector (or the global one)
        """
        settings = get_settings()

        self._database = database or Database()
        self._repository = SubscriptionRepository(self._database)
        self._transport = transport or create_transport(settings)
        self._metrics = metrics or get_metrics()
        self._running = False

        kinds = kinds or build_kind_specs(settings)
        self._cycles = [
            PollCycle(spec, self._repository, self._transport, metrics=self._metrics)
            for spec in kinds.values()
        ]
        self._scheduler = Scheduler(
            self._cycles,
            restart_backoff_base=settings.restart_backoff_base_seconds,
            restart_backoff_max=settings.restart_backoff_max_seconds,
            metrics=self._metrics,
        )

        logger.info(
            "Notifier service initialized",
            kinds={c.kind.value: c.interval_seconds for c in self._cycles},
            transport=self._transport.name,
        )

    @property
    def transport(self) -> ChatTransport:
        return self._transport

    @property
    def repository(self) -> SubscriptionRepository:
        return self._repository

    @property
    def is_running(self) -> bool:
        """Check if service is running."""
        return self._running

    async def start(self) -> None:
        """
        Start the notifier service.

        Runs until stop() is called.
        """
        self._running = True
        logger.info("Starting notifier service")

        await self._database.connect()
        try:
            await self._repository.create_table()
            await self._scheduler.run()
        except Exception as e:
            logger.error("Notifier service error", error=str(e))
            raise
        finally:
            self._running = False
            await self._cleanup()

    async def stop(self) -> None:
        """Stop the notifier service gracefully."""
        logger.info("Stopping notifier service")
        self._scheduler.stop()

    async def run_once(self) -> list[CycleReport]:
        """
        Run one poll cycle for every source kind.

        Useful for testing or manual triggers.
        """
        await self._database.connect()
        try:
            return await self._scheduler.run_once()
        finally:
            await self._cleanup()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        for cycle in self._cycles:
            await cycle.aclose()
        await self._transport.aclose()
        await self._database.close()
        logger.info("Notifier service cleaned up")

    async def health_check(self) -> dict[str, Any]:
        """
        Check health of the notifier service.

        Returns:
            Dictionary with health status
        """
        try:
            database_healthy = await self._database.health_check()
        except Exception:
            database_healthy = False

        return {
            "running": self._running,
            "database_healthy": database_healthy,
            "transport": self._transport.name,
            "kinds": [cycle.kind.value for cycle in self._cycles],
        }
