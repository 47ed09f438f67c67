"""Nearby-pharmacy loading with offline fallback, fixed-delay retries and supersession.

One RetrySession is current at a time. Each call to ``load_nearby`` replaces the
current session: its pending retry timer is cancelled and anything it later
produces is discarded. Retries are driven by ``loop.call_later`` timers, not by
fetch failures: an attempt that is still in flight when its timer fires is
left running, and a late non-empty answer from it is still accepted while the
session is current.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from geopharcache.models.geo import Location, location_key

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine
    from typing import Any

    from geopharcache.config import RetrySettings
    from geopharcache.models.geo import PharmacyRecord
    from geopharcache.protocols import (
        CacheProtocol,
        ConnectivityProtocol,
        PharmacyFetcherProtocol,
    )

log = structlog.get_logger()


class SessionStatus(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    RETRYING = "retrying"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    SUPERSEDED = "superseded"
    OFFLINE = "offline"


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.SUCCESS,
        SessionStatus.EXHAUSTED,
        SessionStatus.SUPERSEDED,
        SessionStatus.OFFLINE,
    }
)


class ResultSource(StrEnum):
    NETWORK = "network"
    CACHE = "cache"
    NONE = "none"


@dataclass(frozen=True)
class LoadResult:
    key: str
    status: SessionStatus
    source: ResultSource
    records: list[PharmacyRecord] = field(default_factory=list)
    message: str = ""


@dataclass(eq=False)
class RetrySession:
    """Mutable per-request state. Only the orchestrator writes to it."""

    key: str
    latitude: float
    longitude: float
    attempts: int = 0
    status: SessionStatus = SessionStatus.IDLE
    timer: asyncio.TimerHandle | None = None
    last_activity: float = 0.0
    watchdog_restarted: bool = False
    # Set by the attempt that got a non-empty answer, before it writes the cache.
    completing: bool = False
    result: LoadResult | None = None
    fetches: set[asyncio.Task[None]] = field(default_factory=set, repr=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def cancel_fetches(self) -> None:
        """Cancel in-flight attempts, except the one calling this."""
        caller = asyncio.current_task()
        for task in list(self.fetches):
            if task is not caller:
                task.cancel()

    async def wait(self) -> LoadResult:
        """Block until the session reaches a terminal status."""
        await self._done.wait()
        assert self.result is not None
        return self.result


class LoadOrchestrator:
    """Owns the current RetrySession and the fetch tasks it spawns."""

    def __init__(
        self,
        cache: CacheProtocol,
        fetcher: PharmacyFetcherProtocol,
        connectivity: ConnectivityProtocol,
        settings: RetrySettings,
        *,
        on_result: Callable[[LoadResult], None] | None = None,
    ) -> None:
        self._cache = cache
        self._fetcher = fetcher
        self._connectivity = connectivity
        self._settings = settings
        self._on_result = on_result
        self._fetch_slots = asyncio.Semaphore(settings.fetch_workers)
        self._tasks: set[asyncio.Task[None]] = set()
        self._current: RetrySession | None = None

    @property
    def current(self) -> RetrySession | None:
        return self._current

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def load_nearby(self, latitude: float, longitude: float) -> RetrySession:
        """Start loading pharmacies around a point, replacing any current session."""
        self._supersede_current()
        session = RetrySession(
            key=location_key(latitude, longitude),
            latitude=latitude,
            longitude=longitude,
        )
        self._current = session

        if self._connectivity.is_offline():
            records = self._cache.get_pharmacies(latitude, longitude) or []
            log.info("load_offline", key=session.key, cached=len(records))
            self._complete(
                session,
                SessionStatus.OFFLINE,
                ResultSource.CACHE if records else ResultSource.NONE,
                records,
                "" if records else "No cached pharmacies for this area while offline",
            )
            return session

        cached = self._cache.get_pharmacies(latitude, longitude)
        if cached:
            log.info("load_cache_hit", key=session.key, count=len(cached))
            self._complete(session, SessionStatus.SUCCESS, ResultSource.CACHE, cached)
            self._spawn(self._background_refresh(session.key, latitude, longitude))
            return session

        self._start_attempt(session)
        return session

    # ------------------------------------------------------------------
    # Attempts and timers
    # ------------------------------------------------------------------

    def _start_attempt(self, session: RetrySession) -> None:
        loop = asyncio.get_running_loop()
        session.status = SessionStatus.LOADING
        session.last_activity = loop.time()
        session.cancel_timer()
        session.timer = loop.call_later(self._settings.delay_seconds, self._on_timer, session)
        log.info("load_attempt_started", key=session.key, attempt=session.attempts + 1)
        task = self._spawn(self._fetch_attempt(session, session.attempts))
        session.fetches.add(task)
        task.add_done_callback(session.fetches.discard)

    def _is_live(self, session: RetrySession) -> bool:
        return session is self._current and not session.is_terminal and not session.completing

    def _on_timer(self, session: RetrySession) -> None:
        session.timer = None
        if not self._is_live(session):
            return

        if session.attempts < self._settings.max_retries:
            session.attempts += 1
            session.status = SessionStatus.RETRYING
            log.info(
                "retry_scheduled",
                key=session.key,
                attempt=session.attempts + 1,
                max_attempts=self._settings.max_retries + 1,
            )
            self._start_attempt(session)
            return

        self._exhaust(session)

    async def _fetch_attempt(self, session: RetrySession, attempt: int) -> None:
        async with self._fetch_slots:
            # The session may have finished while this attempt waited for a slot.
            if not self._is_live(session):
                log.debug("queued_attempt_dropped", key=session.key, attempt=attempt + 1)
                return
            try:
                records = await self._fetcher.fetch(session.latitude, session.longitude)
            except Exception as exc:
                log.warning(
                    "pharmacy_fetch_failed", key=session.key, attempt=attempt + 1, error=str(exc)
                )
                records = []

        if not self._is_live(session):
            log.debug("stale_result_discarded", key=session.key, attempt=attempt + 1)
            return

        loop = asyncio.get_running_loop()
        session.last_activity = loop.time()

        if not records:
            if attempt >= self._settings.max_retries:
                self._exhaust(session)
            else:
                log.info("pharmacy_fetch_empty", key=session.key, attempt=attempt + 1)
            return

        # Claim the session before the first await: later attempts and the
        # timer must not finish it while the cache is being written.
        session.completing = True
        session.cancel_timer()
        session.fetches.discard(asyncio.current_task())
        session.cancel_fetches()

        await self._cache.put_pharmacies(session.latitude, session.longitude, records)
        if self._superseded(session):
            return
        await self._cache.put_user_location(
            Location(latitude=session.latitude, longitude=session.longitude)
        )
        if self._superseded(session):
            return
        self._complete(session, SessionStatus.SUCCESS, ResultSource.NETWORK, records)

    def _superseded(self, session: RetrySession) -> bool:
        if session is self._current and not session.is_terminal:
            return False
        log.debug("superseded_during_cache_write", key=session.key)
        return True

    async def _background_refresh(self, key: str, latitude: float, longitude: float) -> None:
        """Refresh a cache hit from the network. The caller already has its answer."""
        log.info("stale_refresh_started", key=key)
        try:
            async with self._fetch_slots:
                records = await self._fetcher.fetch(latitude, longitude)
            if records:
                await self._cache.put_pharmacies(latitude, longitude, records)
            log.info("stale_refresh_complete", key=key, count=len(records))
        except Exception:
            log.warning("stale_refresh_failed", key=key, exc_info=True)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _exhaust(self, session: RetrySession) -> None:
        attempts = session.attempts + 1
        self._complete(
            session,
            SessionStatus.EXHAUSTED,
            ResultSource.NONE,
            message=f"No pharmacies found after {attempts} attempts",
        )

    def _complete(
        self,
        session: RetrySession,
        status: SessionStatus,
        source: ResultSource,
        records: list[PharmacyRecord] | None = None,
        message: str = "",
    ) -> None:
        session.cancel_timer()
        session.cancel_fetches()
        session.status = status
        result = LoadResult(
            key=session.key,
            status=status,
            source=source,
            records=records or [],
            message=message,
        )
        session.result = result
        session._done.set()
        log.info(
            "load_complete",
            key=session.key,
            status=status,
            source=source,
            count=len(result.records),
        )

        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception:
                log.error("load_result_callback_error", key=session.key, exc_info=True)

    def _supersede_current(self) -> None:
        previous = self._current
        if previous is None or previous.is_terminal:
            return
        previous.cancel_timer()
        # Hung attempts would otherwise keep holding fetch slots the new session needs.
        previous.cancel_fetches()
        previous.status = SessionStatus.SUPERSEDED
        previous.result = LoadResult(
            key=previous.key,
            status=SessionStatus.SUPERSEDED,
            source=ResultSource.NONE,
            message="Superseded by a newer request",
        )
        previous._done.set()
        log.info("load_superseded", key=previous.key)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Watchdog and shutdown
    # ------------------------------------------------------------------

    def restart_if_stuck(self, threshold_seconds: float) -> bool:
        """Re-issue the current attempt if it has been LOADING silently past the threshold.

        A session is restarted at most once. Returns True when a restart happened.
        """
        session = self._current
        if (
            session is None
            or session.status is not SessionStatus.LOADING
            or session.completing
            or session.watchdog_restarted
        ):
            return False

        idle = asyncio.get_running_loop().time() - session.last_activity
        if idle <= threshold_seconds:
            return False

        session.watchdog_restarted = True
        log.warning("load_frozen_restarting", key=session.key, idle_seconds=round(idle, 1))
        self._start_attempt(session)
        return True

    def cancel_timers(self) -> None:
        if self._current is not None:
            self._current.cancel_timer()

    async def shutdown(self, timeout: float = 2.0) -> None:
        """Supersede the current session and drain fetch tasks, cancelling stragglers."""
        log.info("orchestrator_stopping")
        self.cancel_timers()
        self._supersede_current()

        pending = set(self._tasks)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                log.warning("orchestrator_tasks_cancelled", count=len(still_running))
                await asyncio.gather(*still_running, return_exceptions=True)
        log.info("orchestrator_stopped")
