"""Tile caching and fetching.

This module provides:
- TileCache: filesystem tile storage with atomic writes
- TileKey: identity of a cached tile
- TileFetcher: HTTP fetcher with caching integration
- TileProvider: catalog of tile services
"""

from shared.errors import (
    TileCacheError,
    TileExistsError,
    TileFetchError,
    UnknownProviderError,
)
from tiles.cache import CacheStats, TileCache, TileKey
from tiles.fetcher import TileFetcher
from tiles.providers import TileProvider, all_providers, get_provider, provider_names

__all__ = [
    'CacheStats',
    'TileCache',
    'TileCacheError',
    'TileExistsError',
    'TileFetchError',
    'TileFetcher',
    'TileKey',
    'TileProvider',
    'UnknownProviderError',
    'all_providers',
    'get_provider',
    'provider_names',
]
