"""Location of the tile cache and loading of settings files."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import tomlkit

from domain.models import FetchSettings
from domain.toml_sections import flat_to_sectioned, sectioned_to_flat
from shared.constants import TILE_CACHE_DIR, TILE_CACHE_DIR_ENV

logger = logging.getLogger(__name__)


def resolve_cache_dir(settings: FetchSettings | None = None) -> Path:
    """
    Determine the tile cache root.

    1) cache_dir from settings, when set.
    2) $TILECACHE_DIR.
    3) TILE_CACHE_DIR if absolute, otherwise under %LOCALAPPDATA%/tilecache
       or ~/.tilecache when LOCALAPPDATA is not set.
    """
    if settings is not None and settings.cache_dir:
        return Path(settings.cache_dir).expanduser()

    env_dir = os.getenv(TILE_CACHE_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()

    raw_dir = Path(TILE_CACHE_DIR)
    if raw_dir.is_absolute():
        return raw_dir

    local = os.getenv('LOCALAPPDATA')
    if local:
        return (Path(local) / 'tilecache' / raw_dir).resolve()
    return (Path.home() / '.tilecache' / raw_dir).resolve()


def load_settings(path: str | Path) -> FetchSettings:
    """Load and validate a TOML settings file.

    Raises:
        FileNotFoundError: The file does not exist.
        pydantic.ValidationError: A value is out of range.
    """
    path = Path(path)
    if not path.exists():
        msg = f'Settings file not found: {path}'
        raise FileNotFoundError(msg)
    data = tomlkit.parse(path.read_text(encoding='utf-8')).unwrap()
    settings = FetchSettings.model_validate(sectioned_to_flat(data))
    logger.info('Loaded settings from %s', path)
    return settings


def save_settings(settings: FetchSettings, path: str | Path) -> Path:
    """Write settings to a sectioned TOML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = flat_to_sectioned(settings.model_dump(mode='json'))
    path.write_text(tomlkit.dumps(data), encoding='utf-8')
    return path
