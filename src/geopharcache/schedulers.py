"""Background scheduler coroutines: connectivity probing, cache cleanup, freeze watchdog.

Each coroutine is an endless loop meant to run as a single asyncio task owned
by its component (or by the engine). Cancelling the task is the only way to
stop it; one failed iteration is logged and never ends the loop.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from geopharcache.cache import ExpiringCache
    from geopharcache.connectivity import ConnectivityMonitor
    from geopharcache.orchestrator import LoadOrchestrator

log = structlog.get_logger()


async def run_connectivity_probe_scheduler(
    monitor: ConnectivityMonitor, interval_seconds: float
) -> None:
    """Probe at a fixed rate. The monitor's probe lock keeps probes from overlapping."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await monitor.check_now()
        except Exception:
            log.error("connectivity_scheduler_error", exc_info=True)


async def run_cache_cleanup_scheduler(cache: ExpiringCache, interval_hours: float) -> None:
    """Sweep expired cache entries at startup and then on the configured interval."""
    while True:
        try:
            await cache.clear_expired()
        except Exception:
            log.warning("cache_cleanup_scheduler_error", exc_info=True)
        await asyncio.sleep(interval_hours * 3600)


async def run_freeze_watchdog(
    orchestrator: LoadOrchestrator,
    *,
    interval_seconds: float,
    threshold_seconds: float,
) -> None:
    """Restart a load that has sat in LOADING without activity past the threshold."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            orchestrator.restart_if_stuck(threshold_seconds)
        except Exception:
            log.error("freeze_watchdog_error", exc_info=True)
