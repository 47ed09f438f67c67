"""Integration test fixtures.

Every engine built here is isolated in tmp_path: its own SQLite file, its own
tile directory, and a tile origin bound to an ephemeral loopback port.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from geopharcache.config import Settings

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture()
def engine_settings(tmp_path: Path) -> Settings:
    return Settings(
        cache={"db_path": str(tmp_path / "cache.db")},
        tiles={
            "cache_dir": str(tmp_path / "tiles"),
            "min_zoom": 13,
            "max_zoom": 13,
            "download_delay_seconds": 0.0,
        },
        tile_server={"port": 0},
        retry={"delay_seconds": 0.05},
        connectivity={"interval_seconds": 3600},
    )
