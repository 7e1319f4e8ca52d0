"""Polling engine: per-kind poll cycles, client pools and the scheduler."""

from src.polling.cycle import CycleReport, PollCycle, compute_watermark
from src.polling.kinds import SourceKindSpec, build_kind_specs
from src.polling.pool import ClientPool, PooledClient
from src.polling.scheduler import Scheduler, next_tick_after

__all__ = [
    "ClientPool",
    "CycleReport",
    "PollCycle",
    "PooledClient",
    "Scheduler",
    "SourceKindSpec",
    "build_kind_specs",
    "compute_watermark",
    "next_tick_after",
]
