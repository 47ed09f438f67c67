"""Engine entrypoint and composition root.

Responsibilities (and nothing more):
- Configure structlog
- Build EngineState inside the ``open_engine`` context manager
- Route connectivity transitions to the orchestrator
- Tear everything down in a fixed order
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import AsyncExitStack, asynccontextmanager, suppress
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog
from pydantic import ValidationError

from geopharcache import __version__
from geopharcache.cache import ExpiringCache
from geopharcache.config import Settings
from geopharcache.connectivity import ConnectivityMonitor, WentOffline, build_probe
from geopharcache.errors import ErrorCode, GeoPharCacheError
from geopharcache.fetcher import OverpassFetcher, build_http_client
from geopharcache.models.geo import Location, MapViewState
from geopharcache.orchestrator import LoadOrchestrator
from geopharcache.schedulers import run_cache_cleanup_scheduler, run_freeze_watchdog
from geopharcache.state import EngineState
from geopharcache.tile_server import LocalTileOrigin
from geopharcache.tiles import TileStore, build_tile_client

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from geopharcache.connectivity import ConnectivityEvent
    from geopharcache.models.geo import PharmacyRecord
    from geopharcache.orchestrator import LoadResult, RetrySession
    from geopharcache.protocols import PharmacyFetcherProtocol

log = structlog.get_logger()

SHUTDOWN_DRAIN_TIMEOUT_SECONDS = 2.0


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _on_connectivity_change(state: EngineState, event: ConnectivityEvent) -> None:
    """Offline: re-serve the current location from cache. Online: reload it live."""
    location = state.current_location
    if location is None:
        log.debug("connectivity_change_no_location", event=type(event).__name__)
        return

    if isinstance(event, WentOffline):
        log.info("engine_serving_from_cache", key=location.key)
    else:
        log.info("engine_reloading_live", key=location.key)
    state.orchestrator.load_nearby(location.latitude, location.longitude)


def _remember_result(
    state: EngineState,
    on_result: Callable[[LoadResult], None] | None,
    result: LoadResult,
) -> None:
    state.last_result = result
    if on_result is not None:
        on_result(result)


@asynccontextmanager
async def open_engine(
    settings: Settings | None = None,
    *,
    fetcher: PharmacyFetcherProtocol | None = None,
    probe: Callable[[], Awaitable[bool]] | None = None,
    on_result: Callable[[LoadResult], None] | None = None,
) -> AsyncGenerator[EngineState, None]:
    """Create and tear down every engine component.

    Resources are registered on an exit stack as soon as they exist, so a
    failure part-way through startup still closes what was already opened.
    """
    if settings is None:
        settings = Settings()

    log.info("engine_starting", version=__version__)

    async with AsyncExitStack() as stack:
        # Phase 1: cache
        db_path = Path(settings.cache.db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(db_path))
        stack.push_async_callback(db.close)
        cache = ExpiringCache(
            db,
            expiry_hours=settings.cache.expiry_hours,
            map_state_expiry_days=settings.cache.map_state_expiry_days,
        )
        await cache.init_db()
        await cache.load()

        # Phase 2: network collaborators
        http_client = None
        if fetcher is None:
            http_client = build_http_client(settings.overpass)
            stack.push_async_callback(http_client.aclose)
            fetcher = OverpassFetcher(http_client, settings.overpass, settings.search)
        if probe is None:
            probe = build_probe(settings.connectivity.hosts, settings.connectivity.timeout_seconds)
        monitor = ConnectivityMonitor(
            probe, interval_seconds=settings.connectivity.interval_seconds
        )

        # Phase 3: tiles
        tile_client = build_tile_client(settings.tiles)
        stack.push_async_callback(tile_client.aclose)
        tiles = TileStore(
            Path(settings.tiles.cache_dir).expanduser(), tile_client, settings.tiles
        )
        tile_origin = LocalTileOrigin(tiles, settings.tile_server)

        state: EngineState
        orchestrator = LoadOrchestrator(
            cache,
            fetcher,
            monitor,
            settings.retry,
            on_result=lambda result: _remember_result(state, on_result, result),
        )
        state = EngineState(
            settings=settings,
            db=db,
            cache=cache,
            monitor=monitor,
            tiles=tiles,
            tile_origin=tile_origin,
            orchestrator=orchestrator,
            fetcher=fetcher,
            http_client=http_client,
            tile_client=tile_client,
        )
        # Runs before the clients and the database are closed.
        stack.push_async_callback(_shutdown, state)

        # Phase 4: start
        await monitor.start()
        monitor.add_listener(partial(_on_connectivity_change, state))
        await tile_origin.start()

        state.background_tasks.append(
            asyncio.create_task(
                run_cache_cleanup_scheduler(cache, settings.cache.cleanup_interval_hours)
            )
        )
        if settings.retry.watchdog_enabled:
            state.background_tasks.append(
                asyncio.create_task(
                    run_freeze_watchdog(
                        orchestrator,
                        interval_seconds=settings.retry.watchdog_interval_seconds,
                        threshold_seconds=settings.retry.watchdog_threshold_seconds,
                    )
                )
            )

        log.info(
            "engine_started",
            version=__version__,
            online=monitor.is_online(),
            tile_server=tile_origin.is_running,
            cached_pharmacy_areas=cache.stats().pharmacy_entries,
        )

        yield state


async def _shutdown(state: EngineState) -> None:
    """Stop components in order. Clients and the database are closed by the caller."""
    log.info("engine_stopping")
    state.orchestrator.cancel_timers()
    await state.monitor.shutdown()
    state.tiles.request_stop()
    await state.tile_origin.stop()
    await asyncio.gather(
        state.orchestrator.shutdown(SHUTDOWN_DRAIN_TIMEOUT_SECONDS),
        state.tiles.shutdown(SHUTDOWN_DRAIN_TIMEOUT_SECONDS),
    )

    for task in state.background_tasks:
        task.cancel()
    for task in state.background_tasks:
        with suppress(asyncio.CancelledError):
            await task
    log.info("engine_stopped")


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RestoredView:
    """What the cache can show immediately at startup, before any network call."""

    map_state: MapViewState | None = None
    user_location: Location | None = None
    pharmacies: list[PharmacyRecord] = field(default_factory=list)


def active_tile_url_template(state: EngineState) -> str:
    """Tile URL template the renderer should use right now."""
    if state.monitor.is_offline() and state.tile_origin.is_running:
        return state.tile_origin.tile_url_template
    return state.settings.tiles.url_template


async def set_user_location(
    state: EngineState,
    latitude: float,
    longitude: float,
    *,
    zoom: int = 15,
    last_search: str = "",
) -> RetrySession:
    """Record a new user position and start loading pharmacies around it.

    Raises GeoPharCacheError(INVALID_COORDINATES) for out-of-range coordinates.
    """
    try:
        location = Location(latitude=latitude, longitude=longitude)
    except ValidationError as exc:
        raise GeoPharCacheError(
            code=ErrorCode.INVALID_COORDINATES,
            message=f"Invalid coordinates: ({latitude}, {longitude})",
            suggestion="Latitude must be within [-90, 90] and longitude within [-180, 180].",
        ) from exc

    state.current_location = location
    # Supersede the previous load first so it can no longer write the location slot.
    session = state.orchestrator.load_nearby(latitude, longitude)
    await state.cache.put_user_location(location)
    await state.cache.put_map_state(
        MapViewState(latitude=latitude, longitude=longitude, zoom=zoom, last_search=last_search)
    )

    if state.settings.location.prefetch_tiles and state.monitor.is_online():
        state.tiles.pre_cache_tiles_around_location(latitude, longitude)

    return session


def restore_from_cache(state: EngineState) -> RestoredView:
    """Cached map state, user location and pharmacies for an instant start."""
    map_state = state.cache.get_map_state()
    user_location = state.cache.get_user_location()

    center: tuple[float, float] | None = None
    if user_location is not None:
        center = (user_location.latitude, user_location.longitude)
        if state.current_location is None:
            state.current_location = user_location
    elif map_state is not None:
        center = (map_state.latitude, map_state.longitude)

    pharmacies: list[PharmacyRecord] = []
    if center is not None:
        pharmacies = state.cache.get_pharmacies(*center) or []

    log.info(
        "cache_view_restored",
        has_map_state=map_state is not None,
        has_location=user_location is not None,
        pharmacies=len(pharmacies),
    )
    return RestoredView(map_state=map_state, user_location=user_location, pharmacies=pharmacies)


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def _run(settings: Settings) -> None:
    async with open_engine(settings) as state:
        view = restore_from_cache(state)
        location = view.user_location or Location(
            latitude=settings.location.default_latitude,
            longitude=settings.location.default_longitude,
        )
        session = await set_user_location(state, location.latitude, location.longitude)
        result = await session.wait()
        log.info(
            "initial_load_complete",
            status=result.status,
            source=result.source,
            count=len(result.records),
            message=result.message,
            tile_url_template=active_tile_url_template(state),
        )
        # Run until interrupted.
        await asyncio.Event().wait()


def main() -> None:
    settings = Settings()
    _setup_logging(settings)
    with suppress(KeyboardInterrupt):
        asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
