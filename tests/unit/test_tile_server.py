"""Unit tests for geopharcache.tile_server."""

from __future__ import annotations

import socket
from typing import TYPE_CHECKING

import httpx
import pytest

from geopharcache.config import TileServerSettings, TileSettings
from geopharcache.models.geo import TileCoordinate
from geopharcache.tile_server import LocalTileOrigin, parse_tile_path
from geopharcache.tiles import TileStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

PNG_BYTES = b"\x89PNG\r\n\x1a\ncached"


@pytest.fixture()
async def tiles(tmp_path: Path) -> AsyncGenerator[TileStore, None]:
    settings = TileSettings(cache_dir=str(tmp_path))
    async with httpx.AsyncClient() as client:
        store = TileStore(tmp_path, client, settings)
        path = store.tile_path(TileCoordinate(zoom=13, x=3923, y=3284))
        path.parent.mkdir(parents=True)
        path.write_bytes(PNG_BYTES)
        yield store


@pytest.fixture()
def origin(tiles: TileStore) -> LocalTileOrigin:
    return LocalTileOrigin(tiles, TileServerSettings(port=0))


@pytest.fixture()
async def client(origin: LocalTileOrigin) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=origin.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://localhost") as c:
        yield c


class TestParseTilePath:
    def test_valid(self) -> None:
        assert parse_tile_path("13/3923/3284.png") == (13, 3923, 3284)

    @pytest.mark.parametrize(
        "path",
        ["13/3923", "13/3923/3284", "13/3923/3284.jpg", "a/b/c.png", "13/3923/3284.png/x", ""],
    )
    def test_invalid(self, path: str) -> None:
        assert parse_tile_path(path) is None

    def test_negative_index_parses(self) -> None:
        assert parse_tile_path("13/-1/3284.png") == (13, -1, 3284)

    @pytest.mark.parametrize(
        "path",
        ["+13/3923/3284.png", "1_3/3923/3284.png", " 13/3923/3284.png", "13/3923/٣.png"],
    )
    def test_lenient_integer_forms_rejected(self, path: str) -> None:
        assert parse_tile_path(path) is None

    async def test_lenient_integer_form_is_not_served(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/tiles/+13/3923/3284.png")
        assert response.status_code == 404


class TestTileRoutes:
    async def test_hit_returns_png(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/tiles/13/3923/3284.png")
        assert response.status_code == 200
        assert response.content == PNG_BYTES
        assert response.headers["content-type"] == "image/png"
        assert response.headers["cache-control"] == "max-age=86400"

    async def test_miss_returns_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/tiles/13/1/1.png")
        assert response.status_code == 404
        assert response.text == "Tile not found"
        assert response.headers["content-type"].startswith("text/plain")

    async def test_negative_index_returns_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/tiles/13/-1/3284.png")
        assert response.status_code == 404

    @pytest.mark.parametrize(
        "url",
        ["/tiles/13/3923.png", "/tiles/13/x/3284.png", "/tiles/13/3923/3284", "/other"],
    )
    async def test_malformed_paths_return_404(self, client: httpx.AsyncClient, url: str) -> None:
        response = await client.get(url)
        assert response.status_code == 404


class TestLifecycle:
    async def test_start_serves_on_loopback_then_stops(self, origin: LocalTileOrigin) -> None:
        assert await origin.start() is True
        try:
            assert origin.is_running
            assert origin.port != 0
            assert origin.tile_url_template == (
                f"http://localhost:{origin.port}/tiles/{{z}}/{{x}}/{{y}}.png"
            )
            async with httpx.AsyncClient() as http:
                response = await http.get(f"http://127.0.0.1:{origin.port}/tiles/13/3923/3284.png")
            assert response.status_code == 200
            assert response.content == PNG_BYTES
        finally:
            await origin.stop()

        assert not origin.is_running
        with pytest.raises(httpx.ConnectError):
            async with httpx.AsyncClient() as http:
                await http.get(f"http://127.0.0.1:{origin.port}/tiles/13/3923/3284.png")

    async def test_start_and_stop_are_idempotent(self, origin: LocalTileOrigin) -> None:
        assert await origin.start() is True
        port = origin.port
        assert await origin.start() is True
        assert origin.port == port
        await origin.stop()
        await origin.stop()
        assert not origin.is_running

    async def test_bind_failure_returns_false(self, tiles: TileStore) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen()
            port = blocker.getsockname()[1]

            origin = LocalTileOrigin(tiles, TileServerSettings(port=port))

            assert await origin.start() is False
            assert not origin.is_running
            await origin.stop()
