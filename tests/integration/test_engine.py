"""End-to-end tests for the composition root in geopharcache.engine."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import aiosqlite
import httpx
import pytest
import respx
from helpers import FakeFetcher, SwitchableProbe, make_pharmacy

from geopharcache import engine as engine_module
from geopharcache.engine import (
    active_tile_url_template,
    open_engine,
    restore_from_cache,
    set_user_location,
)
from geopharcache.errors import ErrorCode, GeoPharCacheError
from geopharcache.models.geo import location_key
from geopharcache.orchestrator import ResultSource, SessionStatus
from geopharcache.tile_server import LocalTileOrigin

if TYPE_CHECKING:
    from collections.abc import Callable

    from geopharcache.config import Settings
    from geopharcache.orchestrator import LoadResult

LAT, LON = 33.5731, -7.5898
RECORDS = [
    make_pharmacy("node/1", 33.5740, -7.5900, "Pharmacie du Centre"),
    make_pharmacy("node/2", 33.5760, -7.5950, "Pharmacie Maarif"),
]


async def _settle(condition, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not condition():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class TestOnlineEngine:
    async def test_live_load_is_cached_and_reported(self, engine_settings: Settings) -> None:
        seen: list[LoadResult] = []
        async with open_engine(
            engine_settings,
            fetcher=FakeFetcher(RECORDS),
            probe=SwitchableProbe(),
            on_result=seen.append,
        ) as state:
            session = await set_user_location(state, LAT, LON, zoom=14, last_search="garde")
            result = await session.wait()

            assert result.status is SessionStatus.SUCCESS
            assert result.source is ResultSource.NETWORK
            assert state.last_result == result
            assert seen == [result]
            assert state.cache.get_pharmacies(LAT, LON) is not None
            map_state = state.cache.get_map_state()
            assert map_state is not None
            assert map_state.zoom == 14
            assert map_state.last_search == "garde"

    async def test_upstream_tiles_while_online(self, engine_settings: Settings) -> None:
        async with open_engine(
            engine_settings, fetcher=FakeFetcher(), probe=SwitchableProbe()
        ) as state:
            assert state.tile_origin.is_running
            assert active_tile_url_template(state) == engine_settings.tiles.url_template

    async def test_invalid_coordinates_rejected(self, engine_settings: Settings) -> None:
        async with open_engine(
            engine_settings, fetcher=FakeFetcher(), probe=SwitchableProbe()
        ) as state:
            with pytest.raises(GeoPharCacheError) as exc_info:
                await set_user_location(state, 123.0, LON)

        assert exc_info.value.code == ErrorCode.INVALID_COORDINATES

    async def test_prefetch_starts_when_enabled(self, engine_settings: Settings) -> None:
        engine_settings.location.prefetch_tiles = True
        with respx.mock:
            respx.get(url__startswith="https://tile.openstreetmap.org/").mock(
                return_value=httpx.Response(200, content=b"png")
            )
            async with open_engine(
                engine_settings, fetcher=FakeFetcher(RECORDS), probe=SwitchableProbe()
            ) as state:
                await set_user_location(state, LAT, LON)
                assert state.tiles.is_downloading

        assert not state.tiles.is_downloading


class TestRestart:
    async def test_restore_after_restart(self, engine_settings: Settings) -> None:
        async with open_engine(
            engine_settings, fetcher=FakeFetcher(RECORDS), probe=SwitchableProbe()
        ) as state:
            await (await set_user_location(state, LAT, LON)).wait()

        async with open_engine(
            engine_settings, fetcher=FakeFetcher(), probe=SwitchableProbe(online=False)
        ) as state:
            view = restore_from_cache(state)

            assert view.map_state is not None
            assert view.user_location is not None
            assert view.user_location.key == location_key(LAT, LON)
            assert [p.id for p in view.pharmacies] == ["node/1", "node/2"]
            assert state.current_location == view.user_location

    async def test_offline_start_serves_cache_and_local_tiles(
        self, engine_settings: Settings
    ) -> None:
        async with open_engine(
            engine_settings, fetcher=FakeFetcher(RECORDS), probe=SwitchableProbe()
        ) as state:
            await (await set_user_location(state, LAT, LON)).wait()

        fetcher = FakeFetcher(RECORDS)
        async with open_engine(
            engine_settings, fetcher=fetcher, probe=SwitchableProbe(online=False)
        ) as state:
            assert state.monitor.is_offline()
            assert active_tile_url_template(state) == state.tile_origin.tile_url_template

            result = await (await set_user_location(state, 33.5733, -7.5897)).wait()

            assert result.status is SessionStatus.OFFLINE
            assert result.source is ResultSource.CACHE
            assert len(result.records) == 2
            assert fetcher.calls == []


class TestConnectivityWiring:
    async def test_transitions_reroute_current_location(self, engine_settings: Settings) -> None:
        probe = SwitchableProbe()
        fetcher = FakeFetcher(RECORDS)
        fetcher.default = RECORDS
        async with open_engine(engine_settings, fetcher=fetcher, probe=probe) as state:
            await (await set_user_location(state, LAT, LON)).wait()
            calls_online = len(fetcher.calls)

            probe.online = False
            await state.monitor.check_now()

            assert state.last_result is not None
            assert state.last_result.status is SessionStatus.OFFLINE
            assert len(fetcher.calls) == calls_online

            probe.online = True
            await state.monitor.check_now()
            current = state.orchestrator.current
            assert current is not None
            result = await current.wait()

            assert result.status is SessionStatus.SUCCESS
            await _settle(lambda: len(fetcher.calls) > calls_online)

    async def test_transition_without_location_is_ignored(
        self, engine_settings: Settings
    ) -> None:
        probe = SwitchableProbe()
        async with open_engine(engine_settings, fetcher=FakeFetcher(), probe=probe) as state:
            probe.online = False
            await state.monitor.check_now()

            assert state.orchestrator.current is None


class TestShutdown:
    async def test_everything_stops_on_exit(self, engine_settings: Settings) -> None:
        fetcher = FakeFetcher()
        fetcher.gate = asyncio.Event()
        async with open_engine(engine_settings, fetcher=fetcher, probe=SwitchableProbe()) as state:
            session = await set_user_location(state, LAT, LON)
            port = state.tile_origin.port

        assert session.status is SessionStatus.SUPERSEDED
        assert session.timer is None
        assert not state.tile_origin.is_running
        assert all(task.done() for task in state.background_tasks)
        with pytest.raises(httpx.ConnectError):
            async with httpx.AsyncClient() as client:
                await client.get(f"http://127.0.0.1:{port}/tiles/13/0/0.png")


class TestStartupFailure:
    async def test_partial_startup_closes_what_was_opened(
        self, engine_settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        connections: list[aiosqlite.Connection] = []
        clients: list[httpx.AsyncClient] = []
        real_connect = aiosqlite.connect

        def recording_connect(*args: Any, **kwargs: Any) -> aiosqlite.Connection:
            connection = real_connect(*args, **kwargs)
            connections.append(connection)
            return connection

        def recording_client(build: Callable[..., httpx.AsyncClient]):
            def wrapper(settings: Any) -> httpx.AsyncClient:
                client = build(settings)
                clients.append(client)
                return client

            return wrapper

        async def failing_start(self: LocalTileOrigin) -> bool:
            raise OSError("no sockets left")

        monkeypatch.setattr(aiosqlite, "connect", recording_connect)
        monkeypatch.setattr(
            engine_module, "build_http_client", recording_client(engine_module.build_http_client)
        )
        monkeypatch.setattr(
            engine_module, "build_tile_client", recording_client(engine_module.build_tile_client)
        )
        monkeypatch.setattr(LocalTileOrigin, "start", failing_start)

        with pytest.raises(OSError, match="no sockets left"):
            async with open_engine(engine_settings, probe=SwitchableProbe()):
                pass

        assert len(clients) == 2
        assert all(client.is_closed for client in clients)
        [connection] = connections
        with pytest.raises(ValueError):
            await connection.execute("SELECT 1")
