"""On-disk slippy-map tile cache and background prefetcher.

Tiles live at ``<cache-root>/<zoom>/<x>/<y>.png``; the filesystem layout is the
only index. A file exists only once its download finished (temp file, then
rename), so existence is the cache-hit test. Tiles never expire by age.
Disk access during a prefetch batch runs on worker threads.
"""

from __future__ import annotations

import asyncio
import math
import shutil
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING

import anyio.to_thread
import httpx
import structlog

from geopharcache.models.geo import TileCoordinate

if TYPE_CHECKING:
    from pathlib import Path

    from geopharcache.config import TileSettings

log = structlog.get_logger()

# Web Mercator is undefined at the poles.
MAX_MERCATOR_LATITUDE = 85.0511287798
_PROGRESS_LOG_EVERY_TILES = 50


def build_tile_client(settings: TileSettings) -> httpx.AsyncClient:
    """Create the httpx client used for tile downloads. Called once at startup."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={"User-Agent": settings.user_agent},
        limits=httpx.Limits(
            max_connections=settings.download_workers,
            max_keepalive_connections=settings.download_workers,
        ),
    )


def tile_for(latitude: float, longitude: float, zoom: int) -> TileCoordinate:
    """Slippy-map tile containing the point, clamped to the valid index range."""
    n = 1 << zoom
    lat = max(-MAX_MERCATOR_LATITUDE, min(MAX_MERCATOR_LATITUDE, latitude))
    lat_rad = math.radians(lat)
    x = math.floor((longitude + 180.0) / 360.0 * n)
    merc = math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad))
    y = math.floor((1.0 - merc / math.pi) / 2.0 * n)
    return TileCoordinate(zoom=zoom, x=min(max(x, 0), n - 1), y=min(max(y, 0), n - 1))


def prefetch_radius(zoom: int, min_zoom: int) -> int:
    """Neighborhood radius in tiles: 6 at ``min_zoom``, shrinking by one per level, at least 1."""
    return max(1, 6 - (zoom - min_zoom))


def tiles_around(latitude: float, longitude: float, zoom: int, radius: int) -> list[TileCoordinate]:
    """Square of tiles centred on the point's tile, dropping indexes outside the grid."""
    center = tile_for(latitude, longitude, zoom)
    tiles = []
    for x in range(center.x - radius, center.x + radius + 1):
        for y in range(center.y - radius, center.y + radius + 1):
            coord = TileCoordinate(zoom=zoom, x=x, y=y)
            if coord.in_range():
                tiles.append(coord)
    return tiles


@dataclass
class PrefetchReport:
    total: int = 0
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.downloaded + self.skipped + self.failed


class TileStore:
    """Tile files on disk plus a single-flight background prefetcher."""

    def __init__(
        self,
        cache_dir: Path,
        client: httpx.AsyncClient,
        settings: TileSettings,
    ) -> None:
        self._root = cache_dir
        self._client = client
        self._settings = settings
        self._download_slots = asyncio.Semaphore(settings.download_workers)
        self._job: asyncio.Task[PrefetchReport] | None = None
        self._stop_requested = False
        self._report = PrefetchReport()
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError:
            log.error("tile_cache_dir_error", path=str(self._root), exc_info=True)

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def tile_path(self, coord: TileCoordinate) -> Path:
        return self._root.joinpath(*coord.path_parts())

    def is_tile_cached(self, z: int, x: int, y: int) -> bool:
        coord = TileCoordinate(zoom=z, x=x, y=y)
        return coord.in_range() and self.tile_path(coord).is_file()

    def get_cached_tile(self, z: int, x: int, y: int) -> bytes | None:
        """Raw tile bytes, or ``None`` on a miss, an out-of-range index or a read error."""
        coord = TileCoordinate(zoom=z, x=x, y=y)
        if not coord.in_range():
            return None
        try:
            return self.tile_path(coord).read_bytes()
        except FileNotFoundError:
            return None
        except OSError:
            log.error("tile_read_error", z=z, x=x, y=y, exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Prefetch
    # ------------------------------------------------------------------

    @property
    def is_downloading(self) -> bool:
        return self._job is not None and not self._job.done()

    @property
    def last_report(self) -> PrefetchReport:
        return self._report

    @property
    def download_progress(self) -> float:
        if self._report.total == 0:
            return 0.0
        return self._report.processed / self._report.total

    def pre_cache_tiles_around_location(
        self, latitude: float, longitude: float
    ) -> asyncio.Task[PrefetchReport] | None:
        """Start a prefetch batch in the background.

        Returns the batch task, or ``None`` without queueing anything when a
        batch is already running.
        """
        if self.is_downloading:
            log.info("tile_prefetch_already_running")
            return None

        self._stop_requested = False
        self._report = PrefetchReport()
        self._job = asyncio.create_task(self._run_prefetch(latitude, longitude))
        return self._job

    def request_stop(self) -> None:
        """Ask the running batch to stop before its next tile."""
        self._stop_requested = True

    async def shutdown(self, timeout: float = 2.0) -> None:
        """Stop the batch cooperatively, cancelling it if it overruns ``timeout``."""
        log.info("tile_store_stopping")
        self.request_stop()
        job = self._job
        if job is not None and not job.done():
            try:
                await asyncio.wait_for(asyncio.shield(job), timeout)
            except TimeoutError:
                log.warning("tile_prefetch_stop_timeout", timeout=timeout)
                job.cancel()
                with suppress(asyncio.CancelledError):
                    await job
        log.info("tile_store_stopped")

    async def _run_prefetch(self, latitude: float, longitude: float) -> PrefetchReport:
        settings = self._settings
        plan: list[TileCoordinate] = []
        for zoom in range(settings.min_zoom, settings.max_zoom + 1):
            radius = prefetch_radius(zoom, settings.min_zoom)
            plan.extend(tiles_around(latitude, longitude, zoom, radius))

        report = self._report
        report.total = len(plan)
        log.info("tile_prefetch_started", lat=latitude, lon=longitude, tiles=report.total)

        for coord in plan:
            if self._stop_requested:
                report.cancelled = True
                log.info("tile_prefetch_cancelled", processed=report.processed)
                break

            if await anyio.to_thread.run_sync(self.tile_path(coord).is_file):
                report.skipped += 1
                continue

            if await self._download_tile(coord):
                report.downloaded += 1
                if report.downloaded % _PROGRESS_LOG_EVERY_TILES == 0:
                    log.info("tile_prefetch_progress", downloaded=report.downloaded)
            else:
                report.failed += 1

            await asyncio.sleep(settings.download_delay_seconds)

        log.info(
            "tile_prefetch_complete",
            downloaded=report.downloaded,
            skipped=report.skipped,
            failed=report.failed,
            cancelled=report.cancelled,
        )
        return report

    async def _download_tile(self, coord: TileCoordinate) -> bool:
        """Download one tile into the cache. Failures are logged and reported as False."""
        url = self._settings.url_template.format(z=coord.zoom, x=coord.x, y=coord.y)
        async with self._download_slots:
            try:
                response = await self._client.get(url)
            except httpx.HTTPError as exc:
                log.debug("tile_download_error", z=coord.zoom, x=coord.x, y=coord.y, error=str(exc))
                return False

        if not response.is_success or not response.content:
            log.warning(
                "tile_download_failed",
                z=coord.zoom,
                x=coord.x,
                y=coord.y,
                status_code=response.status_code,
            )
            return False

        try:
            await anyio.to_thread.run_sync(self._write_tile, coord, response.content)
        except OSError:
            log.warning("tile_write_error", z=coord.zoom, x=coord.x, y=coord.y, exc_info=True)
            return False
        return True

    def _write_tile(self, coord: TileCoordinate, content: bytes) -> None:
        path = self.tile_path(coord)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp_path.write_bytes(content)
            tmp_path.replace(path)
        finally:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cached_tile_count(self) -> int:
        try:
            return sum(1 for p in self._root.rglob("*.png") if p.is_file())
        except OSError:
            log.error("tile_count_error", exc_info=True)
            return 0

    def cache_size_bytes(self) -> int:
        total = 0
        try:
            for path in self._root.rglob("*"):
                with suppress(OSError):
                    if path.is_file():
                        total += path.stat().st_size
        except OSError:
            log.error("tile_cache_size_error", exc_info=True)
            return 0
        return total

    def cache_size_mb(self) -> float:
        return self.cache_size_bytes() / (1024 * 1024)

    def clear_cache(self) -> None:
        """Delete every cached tile. The cache root itself is kept."""
        try:
            children = list(self._root.iterdir())
        except OSError:
            log.error("tile_cache_clear_error", exc_info=True)
            return
        for child in children:
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError:
                log.error("tile_delete_error", path=str(child), exc_info=True)
        log.info("tile_cache_cleared")
