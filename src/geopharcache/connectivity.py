"""Online/offline detection.

A two-state machine driven by a reachability probe. The first probe decides
the initial state; afterwards the probe runs on a fixed interval and listeners
hear about transitions only, never about repeated identical readings.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from geopharcache.schedulers import run_connectivity_probe_scheduler

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

log = structlog.get_logger()

_DEFAULT_PROBE_PORT = 53


class ConnectivityState(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class WentOnline:
    at: datetime


@dataclass(frozen=True)
class WentOffline:
    at: datetime


ConnectivityEvent = WentOnline | WentOffline


def _utc_now() -> datetime:
    return datetime.now(UTC)


def parse_host(value: str) -> tuple[str, int]:
    """``'1.1.1.1:53'`` → ``('1.1.1.1', 53)``; a bare host gets the DNS port."""
    host, sep, port = value.rpartition(":")
    if not sep or not port.isdigit():
        return value, _DEFAULT_PROBE_PORT
    return host, int(port)


async def can_reach_host(host: str, port: int, timeout: float) -> bool:
    """TCP connect within ``timeout``. DNS failures, refusals and timeouts are all False."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, TimeoutError):
        return False
    writer.close()
    with suppress(OSError):
        await writer.wait_closed()
    return True


def build_probe(hosts: Sequence[str], timeout: float) -> Callable[[], Awaitable[bool]]:
    """Probe that succeeds as soon as any host answers, tried in order."""
    targets = [parse_host(h) for h in hosts]

    async def probe() -> bool:
        for host, port in targets:
            if await can_reach_host(host, port, timeout):
                return True
            log.debug("connectivity_host_unreachable", host=host, port=port)
        return False

    return probe


class ConnectivityMonitor:
    """Periodic reachability monitor with transition-only notifications."""

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]],
        *,
        interval_seconds: float = 10.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._probe = probe
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._state = ConnectivityState.ONLINE
        self._changed_at = clock()
        self._listeners: list[Callable[[ConnectivityEvent], None]] = []
        self._probe_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def changed_at(self) -> datetime:
        return self._changed_at

    def is_online(self) -> bool:
        return self._state is ConnectivityState.ONLINE

    def is_offline(self) -> bool:
        return self._state is ConnectivityState.OFFLINE

    def add_listener(self, listener: Callable[[ConnectivityEvent], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[ConnectivityEvent], None]) -> None:
        with suppress(ValueError):
            self._listeners.remove(listener)

    async def start(self) -> None:
        """Run the initial probe and launch the periodic schedule. Idempotent."""
        if self._started:
            return
        self._started = True
        async with self._probe_lock:
            online = await self._safe_probe()
            self._state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
            self._changed_at = self._clock()
        log.info("connectivity_initial_state", state=self._state)
        self._task = asyncio.create_task(
            run_connectivity_probe_scheduler(self, self._interval_seconds)
        )

    async def check_now(self) -> ConnectivityState:
        """Probe immediately, waiting for any probe already in flight to finish first."""
        async with self._probe_lock:
            online = await self._safe_probe()
            self._apply(online)
        return self._state

    async def shutdown(self) -> None:
        """Stop the periodic schedule, then drop listeners."""
        log.info("connectivity_monitor_stopping")
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._listeners.clear()
        log.info("connectivity_monitor_stopped")

    async def _safe_probe(self) -> bool:
        try:
            return await self._probe()
        except Exception:
            log.error("connectivity_probe_error", exc_info=True)
            return False

    def _apply(self, online: bool) -> None:
        new_state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
        if new_state is self._state:
            return

        self._state = new_state
        self._changed_at = self._clock()
        event: ConnectivityEvent
        if online:
            log.info("connectivity_changed", state=new_state)
            event = WentOnline(at=self._changed_at)
        else:
            log.warning("connectivity_changed", state=new_state)
            event = WentOffline(at=self._changed_at)

        # Copy: a listener may unsubscribe itself while being notified.
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.error("connectivity_listener_error", state=new_state, exc_info=True)
