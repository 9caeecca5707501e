"""Helpers for locating application directories."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from platformdirs import PlatformDirs


APP_NAME = "autotrack"
APP_AUTHOR = "autotrack"


def _dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=True)


def get_data_dir(override: Optional[Path] = None) -> Path:
    """Return the base directory for persistent data."""
    path = Path(override) if override else Path(_dirs().user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_path() -> Path:
    path = Path(_dirs().user_config_path)
    path.mkdir(parents=True, exist_ok=True)
    return path / "config.toml"


def get_db_path(data_dir: Optional[Path] = None) -> Path:
    return get_data_dir(data_dir) / "activity.sqlite3"
