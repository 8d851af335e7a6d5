"""Filesystem tile cache with atomic writes.

This module provides TileCache class for storing and retrieving map tiles
as plain files laid out as ``{cache_dir}/{provider}/{zoom}/{x}/{y}``.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from shared.constants import (
    TILE_CACHE_DIR_MODE,
    TILE_CACHE_EXCLUSIVE,
    TILE_CACHE_TMP_SUFFIX,
)
from shared.errors import TileCacheError, TileExistsError

logger = logging.getLogger(__name__)

_FORBIDDEN_NAME_CHARS = ('/', '\\', '\0')


def validate_provider_name(name: str) -> str:
    """Check that a provider name is usable as a single path component."""
    if (
        not isinstance(name, str)
        or not name
        or name in ('.', '..')
        or any(ch in name for ch in _FORBIDDEN_NAME_CHARS)
    ):
        msg = f'Invalid provider name for tile cache: {name!r}'
        raise ValueError(msg)
    return name


@dataclass(frozen=True)
class TileKey:
    """Identity of one cached tile."""

    provider: str
    zoom: int
    x: int
    y: int

    def __post_init__(self) -> None:
        validate_provider_name(self.provider)
        for attr in ('zoom', 'x', 'y'):
            value = getattr(self, attr)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                msg = f'Tile {attr} must be a non-negative integer, got {value!r}'
                raise ValueError(msg)

    def __str__(self) -> str:
        return f'{self.provider}/{self.zoom}/{self.x}/{self.y}'


@dataclass
class CacheStats:
    """Statistics about the tile cache."""

    total_tiles: int = 0
    total_size_bytes: int = 0
    tiles_by_provider: dict[str, int] = field(default_factory=dict)
    size_by_provider: dict[str, int] = field(default_factory=dict)


class TileCache:
    """File-based tile cache rooted at ``cache_dir``.

    Features:
    - Deterministic layout: cache_dir/provider/zoom/x/y (no extension)
    - Lazy creation of the directory chain with a fixed mode
    - Writes go to a temp file in the target directory and are published
      with os.replace (overwrite) or os.link (exclusive create)
    - Safe to share between threads and asyncio tasks

    Usage:
        cache = TileCache('/var/cache/tiles', 0o700)
        key = TileKey('osm', 3, 1, 2)
        cache.put(key, tile_bytes)
        tile_data = cache.get(key)
    """

    def __init__(
        self,
        cache_dir: str | Path,
        dir_mode: int = TILE_CACHE_DIR_MODE,
        *,
        exclusive: bool = TILE_CACHE_EXCLUSIVE,
    ) -> None:
        """Initialize tile cache. Nothing is created on disk here.

        Args:
            cache_dir: Root directory for cache files.
            dir_mode: Permission bits for directories created by the cache.
            exclusive: Reject stores to entries that already exist instead
                of atomically replacing them.
        """
        self.cache_dir = Path(cache_dir)
        self.dir_mode = dir_mode
        self.exclusive = exclusive
        logger.debug(
            'TileCache configured at %s (mode=%o, exclusive=%s)',
            self.cache_dir,
            dir_mode,
            exclusive,
        )

    def path_for(self, key: TileKey) -> Path:
        """Get the file path of a tile. Pure, performs no I/O."""
        return (
            self.cache_dir / key.provider / str(key.zoom) / str(key.x) / str(key.y)
        )

    def get(self, key: TileKey) -> bytes | None:
        """Get tile data from cache.

        Args:
            key: Tile identity.

        Returns:
            Tile data as bytes, or None if the tile is not cached.

        Raises:
            TileCacheError: The entry exists but could not be read.
        """
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            msg = f'Failed to read tile {key} from {path}: {exc}'
            raise TileCacheError(msg, path) from exc

    def exists(self, key: TileKey) -> bool:
        """Check if tile exists in cache."""
        return self.path_for(key).is_file()

    def put(self, key: TileKey, data: bytes) -> Path:
        """Store tile in cache and return the written path."""
        path = self.path_for(key)
        self.store(path, data)
        return path

    def store(self, path: str | Path, data: bytes) -> None:
        """Write tile bytes to ``path``.

        Missing parent directories are created with ``dir_mode``. The bytes
        are written to a temp file next to the destination and then
        published in one step, so a reader sees either the complete old
        entry, the complete new one, or nothing.

        Args:
            path: Destination file, normally obtained from path_for().
            data: Raw tile bytes.

        Raises:
            TileExistsError: Exclusive cache and the entry already exists.
            TileCacheError: A directory or the file could not be written.
        """
        path = Path(path)
        if self.exclusive and path.exists():
            msg = f'Tile already cached at {path}'
            raise TileExistsError(msg, path)

        self._ensure_dir(path.parent)

        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f'.{path.name}.',
                suffix=TILE_CACHE_TMP_SUFFIX,
                dir=path.parent,
            )
        except OSError as exc:
            msg = f'Failed to create temp file in {path.parent}: {exc}'
            raise TileCacheError(msg, path) from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, 'wb') as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            if self.exclusive:
                os.link(tmp_path, path)
            else:
                os.replace(tmp_path, path)
        except FileExistsError as exc:
            msg = f'Tile already cached at {path}'
            raise TileExistsError(msg, path) from exc
        except OSError as exc:
            msg = f'Failed to write tile to {path}: {exc}'
            raise TileCacheError(msg, path) from exc
        finally:
            self._discard(tmp_path)

        logger.debug('Stored %d bytes at %s', len(data), path)

    def get_stats(self) -> CacheStats:
        """Count tiles and bytes per provider.

        Returns:
            CacheStats with totals and per-provider breakdown.
        """
        stats = CacheStats()
        if not self.cache_dir.is_dir():
            return stats

        try:
            for provider_dir in sorted(self.cache_dir.iterdir()):
                if not provider_dir.is_dir():
                    continue
                count = 0
                size = 0
                for tile_path in provider_dir.rglob('*'):
                    if not _is_tile_file(tile_path):
                        continue
                    count += 1
                    size += tile_path.stat().st_size
                stats.tiles_by_provider[provider_dir.name] = count
                stats.size_by_provider[provider_dir.name] = size
                stats.total_tiles += count
                stats.total_size_bytes += size
        except OSError as exc:
            msg = f'Failed to scan tile cache {self.cache_dir}: {exc}'
            raise TileCacheError(msg, self.cache_dir) from exc
        return stats

    def clear_provider(self, provider: str) -> int:
        """Delete all cached tiles of one provider.

        Args:
            provider: Provider name.

        Returns:
            Number of tiles deleted.
        """
        provider_dir = self.cache_dir / validate_provider_name(provider)
        if not provider_dir.is_dir():
            return 0

        try:
            count = sum(1 for p in provider_dir.rglob('*') if _is_tile_file(p))
            shutil.rmtree(provider_dir)
        except OSError as exc:
            msg = f'Failed to clear cached tiles of {provider!r}: {exc}'
            raise TileCacheError(msg, provider_dir) from exc

        logger.info('Cleared provider %s: %d tiles deleted', provider, count)
        return count

    def _ensure_dir(self, directory: Path) -> None:
        """Create ``directory`` and its missing ancestors with dir_mode.

        A directory that appears concurrently is accepted as is.
        """
        if directory.is_dir():
            return

        missing: list[Path] = []
        current = directory
        while not current.is_dir():
            missing.append(current)
            if current.parent == current:
                break
            current = current.parent

        for d in reversed(missing):
            try:
                d.mkdir(mode=self.dir_mode)
            except FileExistsError as exc:
                if not d.is_dir():
                    msg = f'Cannot create cache directory {d}: a file is in the way'
                    raise TileCacheError(msg, d) from exc
            except OSError as exc:
                msg = f'Cannot create cache directory {d}: {exc}'
                raise TileCacheError(msg, d) from exc
            else:
                logger.debug('Created cache directory %s', d)

    @staticmethod
    def _discard(tmp_path: Path) -> None:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug('Failed to remove temp file %s: %s', tmp_path, e)


def _is_tile_file(path: Path) -> bool:
    return (
        path.is_file()
        and not path.name.startswith('.')
        and not path.name.endswith(TILE_CACHE_TMP_SUFFIX)
    )
