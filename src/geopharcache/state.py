"""Engine state container.

EngineState is created once inside ``open_engine`` and passed to every engine
operation. It replaces process-wide singletons: each component is built once,
wired to its collaborators here, and torn down in a fixed order on exit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import asyncio

    import aiosqlite
    import httpx

    from geopharcache.cache import ExpiringCache
    from geopharcache.config import Settings
    from geopharcache.connectivity import ConnectivityMonitor
    from geopharcache.models.geo import Location
    from geopharcache.orchestrator import LoadOrchestrator, LoadResult
    from geopharcache.protocols import PharmacyFetcherProtocol
    from geopharcache.tile_server import LocalTileOrigin
    from geopharcache.tiles import TileStore


@dataclass
class EngineState:
    """Holds all shared runtime state."""

    settings: Settings
    db: aiosqlite.Connection
    cache: ExpiringCache
    monitor: ConnectivityMonitor
    tiles: TileStore
    tile_origin: LocalTileOrigin
    orchestrator: LoadOrchestrator
    fetcher: PharmacyFetcherProtocol

    # Owned clients; None when the caller injected its own fetcher.
    http_client: httpx.AsyncClient | None = None
    tile_client: httpx.AsyncClient | None = None

    current_location: Location | None = None
    last_result: LoadResult | None = None
    background_tasks: list[asyncio.Task[None]] = field(default_factory=list)
