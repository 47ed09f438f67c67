"""Loopback HTTP origin serving cached tiles to the map renderer while offline.

Route: ``GET /tiles/{z}/{x}/{y}.png``. Hits return the raw PNG bytes, every
other request gets a 404. The server never touches the network upstream; it
only reads what the TileStore has already written.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import socket
from typing import TYPE_CHECKING

import anyio
import anyio.to_thread
import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route

if TYPE_CHECKING:
    from collections.abc import Iterator

    from starlette.requests import Request

    from geopharcache.config import TileServerSettings
    from geopharcache.tiles import TileStore

log = structlog.get_logger()

TILE_CACHE_CONTROL = "max-age=86400"
_STARTUP_POLL_SECONDS = 0.01
_STOP_TIMEOUT_SECONDS = 2.0
_TILE_INDEX = re.compile(r"-?[0-9]+")


def parse_tile_path(tile_path: str) -> tuple[int, int, int] | None:
    """``'15/16203/13012.png'`` → ``(15, 16203, 13012)``; anything else → None."""
    parts = tile_path.split("/")
    if len(parts) != 3 or not parts[2].endswith(".png"):
        return None
    segments = [parts[0], parts[1], parts[2].removesuffix(".png")]
    # int() alone would also take "+13", "1_3", " 13" and non-ASCII digits.
    if not all(_TILE_INDEX.fullmatch(segment) for segment in segments):
        return None
    z, x, y = (int(segment) for segment in segments)
    return z, x, y


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the engine."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class LocalTileOrigin:
    """Starlette app over a TileStore, served by uvicorn on a loopback socket."""

    def __init__(self, tiles: TileStore, settings: TileServerSettings) -> None:
        self._tiles = tiles
        self._settings = settings
        self._limiter: anyio.CapacityLimiter | None = None
        self._server: _EmbeddedServer | None = None
        self._socket: socket.socket | None = None
        self._task: asyncio.Task[None] | None = None
        self._port = settings.port
        self.app = Starlette(
            routes=[Route("/tiles/{tile_path:path}", self._serve_tile, methods=["GET"])],
        )

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def tile_url_template(self) -> str:
        return f"http://localhost:{self._port}/tiles/{{z}}/{{x}}/{{y}}.png"

    async def _serve_tile(self, request: Request) -> Response:
        coords = parse_tile_path(request.path_params["tile_path"])
        if coords is None:
            return PlainTextResponse("Tile not found", status_code=404)

        if self._limiter is None:
            self._limiter = anyio.CapacityLimiter(self._settings.workers)
        data = await anyio.to_thread.run_sync(
            self._tiles.get_cached_tile, *coords, limiter=self._limiter
        )
        if data is None:
            return PlainTextResponse("Tile not found", status_code=404)
        return Response(
            content=data,
            media_type="image/png",
            headers={"Cache-Control": TILE_CACHE_CONTROL},
        )

    async def start(self) -> bool:
        """Bind the socket and start serving. Returns False when the bind fails."""
        if self._server is not None:
            return True

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self._settings.host, self._settings.port))
        except OSError:
            sock.close()
            log.error(
                "tile_server_bind_failed",
                host=self._settings.host,
                port=self._settings.port,
                exc_info=True,
            )
            return False

        self._port = sock.getsockname()[1]
        config = uvicorn.Config(
            self.app,
            log_config=None,  # structlog handles logging
            access_log=False,
            lifespan="off",
        )
        server = _EmbeddedServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))

        while not server.started:
            if task.done():
                sock.close()
                error = None if task.cancelled() else task.exception()
                log.error("tile_server_start_failed", port=self._port, error=repr(error))
                return False
            await asyncio.sleep(_STARTUP_POLL_SECONDS)

        self._server = server
        self._socket = sock
        self._task = task
        log.info("tile_server_started", host=self._settings.host, port=self._port)
        return True

    async def stop(self) -> None:
        """Stop at once without draining open connections. Safe to call repeatedly."""
        server, sock, task = self._server, self._socket, self._task
        if server is None:
            return
        self._server = self._socket = self._task = None

        server.should_exit = True
        server.force_exit = True
        if task is not None:
            try:
                await asyncio.wait_for(task, _STOP_TIMEOUT_SECONDS)
            except TimeoutError:
                log.warning("tile_server_stop_timeout", port=self._port)
            except Exception:
                log.error("tile_server_error", exc_info=True)
        if sock is not None:
            sock.close()
        log.info("tile_server_stopped", port=self._port)
