"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Constructor arguments   (tests and the composition root)
  2. Environment variables   (GEOPHARCACHE__RETRY__MAX_RETRIES=3)
  3. geopharcache.yaml       (searched in cwd, then platform config dir)
  4. Hardcoded defaults

The config file is optional; every field has a default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("geopharcache")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "cache.db")
_DEFAULT_TILE_DIR = str(Path(_DEFAULT_DATA_DIR) / "tiles")

_USER_AGENT = "GeoPharFinder/1.0 (Offline Caching)"


def _find_config_file() -> str | None:
    """Return the path of the first geopharcache.yaml found, or None."""
    candidates = [
        Path("geopharcache.yaml"),
        Path(platformdirs.user_config_dir("geopharcache")) / "geopharcache.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class CacheSettings(BaseModel):
    db_path: str = _DEFAULT_DB_PATH
    expiry_hours: int = 24
    map_state_expiry_days: int = 7
    cleanup_interval_hours: int = 6


class SearchSettings(BaseModel):
    default_radius_m: int = 5000
    max_radius_m: int = 20000
    max_markers: int = 100

    @model_validator(mode="after")
    def _radius_within_max(self) -> SearchSettings:
        if self.default_radius_m > self.max_radius_m:
            raise ValueError("search.default_radius_m must not exceed search.max_radius_m")
        return self


class TileSettings(BaseModel):
    cache_dir: str = _DEFAULT_TILE_DIR
    url_template: str = "https://tile.openstreetmap.org/{z}/{x}/{y}.png"
    min_zoom: int = 12
    max_zoom: int = 16
    # Upstream usage policy: keep a fixed gap between tile requests.
    download_delay_seconds: float = 0.1
    download_workers: int = 2
    timeout_seconds: float = 5.0
    user_agent: str = _USER_AGENT

    @model_validator(mode="after")
    def _zoom_range_ordered(self) -> TileSettings:
        if self.min_zoom > self.max_zoom:
            raise ValueError("tiles.min_zoom must not exceed tiles.max_zoom")
        return self


class TileServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8765
    workers: int = 4


class ConnectivitySettings(BaseModel):
    # Public DNS resolvers, probed over TCP port 53.
    hosts: list[str] = ["8.8.8.8:53", "1.1.1.1:53", "208.67.222.222:53"]
    interval_seconds: float = 10.0
    timeout_seconds: float = 3.0


class RetrySettings(BaseModel):
    max_retries: int = 2
    delay_seconds: float = 2.0
    fetch_workers: int = 2
    watchdog_enabled: bool = False
    watchdog_interval_seconds: float = 2.0
    watchdog_threshold_seconds: float = 5.0


class OverpassSettings(BaseModel):
    url: str = "https://overpass-api.de/api/interpreter"
    timeout_seconds: float = 15.0
    user_agent: str = "GeoPharFinder/1.0.0"


class LocationSettings(BaseModel):
    default_latitude: float = 33.5731
    default_longitude: float = -7.5898
    prefetch_tiles: bool = False


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: GEOPHARCACHE__TILE_SERVER__PORT=9090
        env_prefix="GEOPHARCACHE__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    cache: CacheSettings = CacheSettings()
    search: SearchSettings = SearchSettings()
    tiles: TileSettings = TileSettings()
    tile_server: TileServerSettings = TileServerSettings()
    connectivity: ConnectivitySettings = ConnectivitySettings()
    retry: RetrySettings = RetrySettings()
    overpass: OverpassSettings = OverpassSettings()
    location: LocationSettings = LocationSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
