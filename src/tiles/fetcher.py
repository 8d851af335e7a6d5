"""Cache-first tile fetcher.

TileFetcher looks a tile up in the TileCache, downloads it from one of the
provider's shards on a miss and stores the result before returning it.
Concurrent requests for the same tile share a single download.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from io import BytesIO
from typing import TYPE_CHECKING

from PIL import Image

from infrastructure.http.client import async_fetch_tile_bytes
from shared.constants import (
    DOWNLOAD_CONCURRENCY,
    HTTP_BACKOFF_FACTOR,
    HTTP_RETRIES_DEFAULT,
    HTTP_TIMEOUT_DEFAULT,
)
from shared.errors import TileCacheError, TileExistsError, TileFetchError
from tiles.cache import TileKey

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    import aiohttp

    from tiles.cache import TileCache
    from tiles.providers import TileProvider

logger = logging.getLogger(__name__)


class TileFetcher:
    """Fetch tiles of one provider through a TileCache.

    Usage:
        cache = TileCache(cache_dir)
        fetcher = TileFetcher(openstreetmap(), cache)
        async with make_http_session() as client:
            data = await fetcher.fetch(client, zoom=3, x=1, y=2)
    """

    def __init__(
        self,
        provider: TileProvider,
        cache: TileCache,
        *,
        concurrency: int = DOWNLOAD_CONCURRENCY,
        timeout: float = HTTP_TIMEOUT_DEFAULT,
        retries: int = HTTP_RETRIES_DEFAULT,
        backoff: float = HTTP_BACKOFF_FACTOR,
        offline: bool = False,
    ) -> None:
        """Initialize tile fetcher.

        Args:
            provider: Tile provider to download from.
            cache: Cache consulted before and written after each download.
            concurrency: Maximum number of simultaneous downloads.
            timeout: Total timeout of one HTTP request, seconds.
            retries: Attempts per tile for transient failures.
            backoff: Base of the exponential delay between attempts.
            offline: Serve from cache only; misses fail without network access.
        """
        self.provider = provider
        self.cache = cache
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.offline = offline
        self._sem = asyncio.Semaphore(concurrency)
        self._inflight: dict[TileKey, asyncio.Future[bytes | None]] = {}
        self._waiters: dict[asyncio.Future[bytes | None], int] = {}

        self._stats_cache_hits = 0
        self._stats_cache_misses = 0
        self._stats_downloads = 0
        self._stats_errors = 0
        self._stats_store_errors = 0
        self._stats_offline_misses = 0

    @property
    def stats(self) -> dict:
        """Get fetcher statistics."""
        return {
            'cache_hits': self._stats_cache_hits,
            'cache_misses': self._stats_cache_misses,
            'downloads': self._stats_downloads,
            'errors': self._stats_errors,
            'store_errors': self._stats_store_errors,
            'offline_misses': self._stats_offline_misses,
        }

    def key_for(self, zoom: int, x: int, y: int) -> TileKey:
        return TileKey(self.provider.name, zoom, x, y)

    async def fetch(
        self,
        client: aiohttp.ClientSession,
        zoom: int,
        x: int,
        y: int,
        *,
        force_download: bool = False,
    ) -> bytes | None:
        """Return the bytes of one tile, from cache if possible.

        Args:
            client: HTTP session used on a cache miss.
            zoom: Zoom level.
            x: Tile X coordinate.
            y: Tile Y coordinate.
            force_download: Skip the cache lookup.

        Returns:
            Tile bytes, or None when the provider ignores missing tiles and
            the server answered 404.

        Raises:
            TileFetchError: The tile is not cached and could not be downloaded.
        """
        key = self.key_for(zoom, x, y)
        if not force_download:
            try:
                data = await asyncio.to_thread(self.cache.get, key)
            except TileCacheError as e:
                logger.warning('Unreadable cache entry for %s, refetching: %s', key, e)
                data = None
            if data is not None:
                self._stats_cache_hits += 1
                return data

        self._stats_cache_misses += 1
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._download_and_store(client, key))
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._download_done, key))
        else:
            logger.debug('Joining in-flight download of %s', key)

        self._waiters[task] = self._waiters.get(task, 0) + 1
        try:
            # A cancelled caller must not cancel the download other callers wait on
            return await asyncio.shield(task)
        finally:
            self._waiters[task] -= 1
            if not self._waiters[task]:
                del self._waiters[task]
                if not task.done():
                    # Last waiter is gone, the download has no consumer left
                    if self._inflight.get(key) is task:
                        del self._inflight[key]
                    task.cancel()
                    await asyncio.wait([task])

    async def fetch_many(
        self,
        client: aiohttp.ClientSession,
        tiles: Iterable[tuple[int, int]],
        *,
        zoom: int,
        on_progress: Callable[[int], Awaitable[None]] | None = None,
        strict: bool = False,
    ) -> dict[tuple[int, int, int], bytes | None]:
        """Fetch many tiles concurrently, returning a dict keyed by (zoom,x,y).

        A tile that cannot be fetched is logged and left out of the result,
        unless ``strict`` is set, in which case its error is raised and the
        rest of the batch is cancelled.
        """
        out: dict[tuple[int, int, int], bytes | None] = {}

        async def _worker(xy: tuple[int, int]) -> None:
            xw, yw = xy
            try:
                data = await self.fetch(client, zoom, xw, yw)
            except TileFetchError as e:
                if strict:
                    raise
                logger.warning('Skipping tile %d/%d/%d: %s', zoom, xw, yw, e)
            else:
                out[(zoom, xw, yw)] = data
            if on_progress is not None:
                await on_progress(1)

        workers = [asyncio.ensure_future(_worker(t)) for t in tiles]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        return out

    async def fetch_image(
        self,
        client: aiohttp.ClientSession,
        zoom: int,
        x: int,
        y: int,
    ) -> Image.Image | None:
        """Fetch one tile and decode it to an RGB image."""
        data = await self.fetch(client, zoom, x, y)
        if data is None:
            return None
        return Image.open(BytesIO(data)).convert('RGB')

    async def _download_and_store(
        self,
        client: aiohttp.ClientSession,
        key: TileKey,
    ) -> bytes | None:
        if self.offline:
            self._stats_offline_misses += 1
            msg = f'Tile {key} is not cached and the fetcher is offline'
            raise TileFetchError(msg)

        url = self.provider.tile_url(key.zoom, key.x, key.y)
        async with self._sem:
            try:
                data = await async_fetch_tile_bytes(
                    client,
                    url,
                    label=str(key),
                    async_timeout=self.timeout,
                    retries=self.retries,
                    backoff=self.backoff,
                    ignore_not_found=self.provider.ignore_not_found,
                )
            except TileFetchError:
                self._stats_errors += 1
                raise

        if data is None:
            return None
        self._stats_downloads += 1

        try:
            await asyncio.to_thread(self.cache.put, key, data)
        except TileExistsError:
            logger.debug('Tile %s was cached by another writer', key)
        except TileCacheError as e:
            self._stats_store_errors += 1
            logger.warning('Failed to cache tile %s: %s', key, e)
        return data

    def _download_done(self, key: TileKey, task: asyncio.Future[bytes | None]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the error as retrieved even when every waiter was cancelled
        if not task.cancelled():
            task.exception()
