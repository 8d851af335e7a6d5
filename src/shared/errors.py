"""Error types raised by the tile cache, fetcher and provider registry."""

from __future__ import annotations

from pathlib import Path


class TileCacheError(OSError):
    """Filesystem failure while reading or writing a cache entry.

    The failing path is kept in ``path``; the original ``OSError`` is
    chained as ``__cause__``.
    """

    def __init__(self, msg: str, path: str | Path | None = None) -> None:
        super().__init__(msg)
        self.path = Path(path) if path is not None else None


class TileExistsError(TileCacheError, FileExistsError):
    """Exclusive store hit an entry that is already present."""


class TileFetchError(RuntimeError):
    """Tile could not be obtained from the network."""


class UnknownProviderError(KeyError):
    """No provider is registered under the requested name."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ''
