"""Tests for TileFetcher."""

from __future__ import annotations

import asyncio
import gc
import tempfile
import time
from io import BytesIO
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from PIL import Image

from shared.errors import TileFetchError
from tiles.cache import TileCache, TileKey
from tiles.fetcher import TileFetcher
from tiles.providers import TileProvider, openstreetmap


@pytest.fixture
def temp_cache_dir():
    """Create temporary directory for cache."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def cache(temp_cache_dir):
    """Create TileCache instance."""
    return TileCache(temp_cache_dir / 'tiles')


@pytest.fixture
def fetcher(cache):
    """Create TileFetcher instance."""
    return TileFetcher(openstreetmap(), cache, retries=3)


@pytest.fixture
def no_backoff_sleep():
    with patch('infrastructure.http.client.asyncio.sleep', new=AsyncMock()) as m:
        yield m


def _create_test_png() -> bytes:
    """Create a small PNG image as bytes."""
    img = Image.new('RGB', (4, 4), color=(10, 20, 30))
    buf = BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()


def _response(status: int, body: bytes = b'') -> MagicMock:
    resp = MagicMock()
    resp.status = status
    resp.read = AsyncMock(return_value=body)
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


def _session(*responses: MagicMock) -> MagicMock:
    session = MagicMock()
    session.get = MagicMock(side_effect=list(responses))
    return session


class TestTileFetcher:
    """Tests for TileFetcher class."""

    def test_init(self, cache):
        """Test fetcher initialization."""
        provider = openstreetmap()
        fetcher = TileFetcher(provider, cache)
        assert fetcher.cache is cache
        assert fetcher.provider == provider
        assert fetcher.offline is False
        assert fetcher._stats_cache_hits == 0
        assert fetcher._stats_cache_misses == 0

    def test_stats(self, fetcher):
        """Test stats property."""
        stats = fetcher.stats
        assert set(stats) == {
            'cache_hits',
            'cache_misses',
            'downloads',
            'errors',
            'store_errors',
            'offline_misses',
        }

    def test_key_for(self, fetcher):
        assert fetcher.key_for(3, 1, 2) == TileKey('osm', 3, 1, 2)

    @pytest.mark.asyncio
    async def test_fetch_from_cache(self, fetcher, cache):
        """Cached tile is returned without an HTTP request."""
        cache.put(TileKey('osm', 15, 100, 200), b'cached')
        session = MagicMock()

        data = await fetcher.fetch(session, 15, 100, 200)

        assert data == b'cached'
        assert fetcher.stats['cache_hits'] == 1
        session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_miss_downloads_and_stores(self, fetcher, cache):
        png = _create_test_png()
        session = _session(_response(200, png))

        data = await fetcher.fetch(session, 3, 1, 2)

        assert data == png
        assert cache.get(TileKey('osm', 3, 1, 2)) == png
        assert fetcher.stats['cache_misses'] == 1
        assert fetcher.stats['downloads'] == 1
        url = session.get.call_args.args[0]
        # (1 + 2) % 3 selects the first shard
        assert url == 'http://a.tile.openstreetmap.org/3/1/2.png'

    @pytest.mark.asyncio
    async def test_second_fetch_is_served_from_cache(self, fetcher):
        session = _session(_response(200, b'tile'))

        assert await fetcher.fetch(session, 3, 1, 2) == b'tile'
        assert await fetcher.fetch(session, 3, 1, 2) == b'tile'

        assert session.get.call_count == 1
        assert fetcher.stats['cache_hits'] == 1

    @pytest.mark.asyncio
    async def test_force_download(self, fetcher, cache):
        cache.put(TileKey('osm', 3, 1, 2), b'old')
        session = _session(_response(200, b'new'))

        data = await fetcher.fetch(session, 3, 1, 2, force_download=True)

        assert data == b'new'
        assert cache.get(TileKey('osm', 3, 1, 2)) == b'new'
        session.get.assert_called_once()

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, fetcher, no_backoff_sleep):
        session = _session(_response(503), _response(429), _response(200, b'tile'))

        assert await fetcher.fetch(session, 3, 1, 2) == b'tile'
        assert session.get.call_count == 3
        assert no_backoff_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_download_failure_raises(self, fetcher, cache, no_backoff_sleep):
        session = _session(_response(500), _response(500), _response(500))

        with pytest.raises(TileFetchError):
            await fetcher.fetch(session, 3, 1, 2)

        assert fetcher.stats['errors'] == 1
        assert cache.get(TileKey('osm', 3, 1, 2)) is None

    @pytest.mark.asyncio
    async def test_ignored_not_found_returns_none(self, cache):
        provider = TileProvider(
            name='sparse',
            attribution='test',
            url_pattern='http://tiles.test/{z}/{x}/{y}.png',
            ignore_not_found=True,
        )
        fetcher = TileFetcher(provider, cache)
        session = _session(_response(404))

        assert await fetcher.fetch(session, 3, 1, 2) is None
        assert not cache.exists(TileKey('sparse', 3, 1, 2))

    @pytest.mark.asyncio
    async def test_store_failure_still_returns_bytes(self, temp_cache_dir):
        root = temp_cache_dir / 'tiles'
        root.mkdir()
        (root / 'osm').write_bytes(b'blocks the provider directory')
        fetcher = TileFetcher(openstreetmap(), TileCache(root))
        session = _session(_response(200, b'tile'))

        assert await fetcher.fetch(session, 3, 1, 2) == b'tile'
        assert fetcher.stats['store_errors'] == 1
        assert fetcher.stats['downloads'] == 1

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_refetched(self, fetcher, cache):
        key = TileKey('osm', 3, 1, 2)
        cache.path_for(key).mkdir(parents=True)
        session = _session(_response(200, b'tile'))

        assert await fetcher.fetch(session, 3, 1, 2) == b'tile'
        session.get.assert_called_once()

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_download(self, fetcher):
        gate = asyncio.Event()
        resp = MagicMock()
        resp.status = 200
        resp.read = AsyncMock(return_value=b'tile')

        async def _enter(*args):
            await gate.wait()
            return resp

        ctx = MagicMock()
        ctx.__aenter__ = AsyncMock(side_effect=_enter)
        ctx.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.get = MagicMock(return_value=ctx)

        t1 = asyncio.create_task(fetcher.fetch(session, 3, 1, 2))
        t2 = asyncio.create_task(fetcher.fetch(session, 3, 1, 2))
        while fetcher.stats['cache_misses'] < 2:
            await asyncio.sleep(0.001)
        gate.set()
        r1, r2 = await asyncio.gather(t1, t2)

        assert r1 == r2 == b'tile'
        assert session.get.call_count == 1
        assert fetcher.stats['cache_misses'] == 2
        assert fetcher.stats['downloads'] == 1
        assert fetcher._inflight == {}
        assert fetcher._waiters == {}

    @pytest.mark.asyncio
    async def test_slow_store_does_not_block_event_loop(self, fetcher, cache):
        session = _session(_response(200, b'tile'))
        ticks = 0
        stop = asyncio.Event()

        async def _ticker():
            nonlocal ticks
            while not stop.is_set():
                await asyncio.sleep(0.01)
                ticks += 1

        ticker = asyncio.create_task(_ticker())
        with patch.object(cache, 'put', side_effect=lambda key, data: time.sleep(0.3)):
            data = await fetcher.fetch(session, 3, 1, 2)
        stop.set()
        await ticker

        assert data == b'tile'
        assert ticks >= 10

    @pytest.mark.asyncio
    async def test_cancelled_sole_caller_cancels_download(self, fetcher, cache):
        gate = asyncio.Event()
        resp = MagicMock()
        resp.status = 200
        resp.read = AsyncMock(return_value=b'tile')

        async def _enter(*args):
            await gate.wait()
            return resp

        ctx = MagicMock()
        ctx.__aenter__ = AsyncMock(side_effect=_enter)
        ctx.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.get = MagicMock(return_value=ctx)

        caller = asyncio.create_task(fetcher.fetch(session, 3, 1, 2))
        while not session.get.called:
            await asyncio.sleep(0.001)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        assert fetcher._inflight == {}
        assert fetcher._waiters == {}
        gate.set()
        await asyncio.sleep(0.01)
        assert not cache.exists(TileKey('osm', 3, 1, 2))

    @pytest.mark.asyncio
    async def test_failed_download_error_is_retrieved(self, fetcher):
        loop = asyncio.get_running_loop()
        reported = []
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            fut = loop.create_future()
            fut.set_exception(TileFetchError('boom'))
            fetcher._download_done(TileKey('osm', 3, 1, 2), fut)
            del fut
            gc.collect()
        finally:
            loop.set_exception_handler(None)

        assert reported == []

    @pytest.mark.asyncio
    async def test_fetch_image(self, fetcher):
        session = _session(_response(200, _create_test_png()))

        img = await fetcher.fetch_image(session, 3, 1, 2)

        assert img is not None
        assert img.mode == 'RGB'
        assert img.size == (4, 4)


class TestFetchMany:
    """Tests for batch fetching."""

    @pytest.mark.asyncio
    async def test_returns_dict_keyed_by_zoom_x_y(self, fetcher, cache):
        cache.put(TileKey('osm', 2, 0, 0), b'cached')
        session = MagicMock()
        session.get = MagicMock(side_effect=lambda url, **kw: _response(200, url.encode()))
        progress = AsyncMock()

        out = await fetcher.fetch_many(
            session, [(0, 0), (0, 1), (1, 0)], zoom=2, on_progress=progress
        )

        assert out[(2, 0, 0)] == b'cached'
        assert out[(2, 0, 1)] == b'http://b.tile.openstreetmap.org/2/0/1.png'
        assert out[(2, 1, 0)] == b'http://b.tile.openstreetmap.org/2/1/0.png'
        assert progress.await_count == 3
        assert session.get.call_count == 2

    @pytest.mark.asyncio
    async def test_failed_tile_is_skipped(self, fetcher):
        def _get(url, **kw):
            return _response(403) if url.endswith('/2/1/1.png') else _response(200, b'ok')

        session = MagicMock()
        session.get = MagicMock(side_effect=_get)

        out = await fetcher.fetch_many(session, [(0, 0), (1, 1)], zoom=2)

        assert out == {(2, 0, 0): b'ok'}
        assert fetcher.stats['errors'] == 1

    @pytest.mark.asyncio
    async def test_strict_raises(self, fetcher):
        session = MagicMock()
        session.get = MagicMock(side_effect=lambda url, **kw: _response(401))

        with pytest.raises(TileFetchError, match='401'):
            await fetcher.fetch_many(session, [(0, 0)], zoom=2, strict=True)

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, cache):
        fetcher = TileFetcher(openstreetmap(), cache, concurrency=2)
        active = 0
        peak = 0

        def _get(url, **kw):
            resp = MagicMock()
            resp.status = 200
            resp.read = AsyncMock(return_value=b'tile')

            async def _enter(*args):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                return resp

            async def _exit(*args):
                nonlocal active
                active -= 1
                return False

            ctx = MagicMock()
            ctx.__aenter__ = AsyncMock(side_effect=_enter)
            ctx.__aexit__ = AsyncMock(side_effect=_exit)
            return ctx

        session = MagicMock()
        session.get = MagicMock(side_effect=_get)

        out = await fetcher.fetch_many(session, [(x, 0) for x in range(6)], zoom=3)

        assert len(out) == 6
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_strict_failure_cancels_rest_of_batch(self, fetcher, cache):
        gate = asyncio.Event()

        def _get(url, **kw):
            if url.endswith('/2/0/0.png'):
                return _response(401)
            resp = MagicMock()
            resp.status = 200
            resp.read = AsyncMock(return_value=b'late')

            async def _enter(*args):
                await gate.wait()
                return resp

            ctx = MagicMock()
            ctx.__aenter__ = AsyncMock(side_effect=_enter)
            ctx.__aexit__ = AsyncMock(return_value=False)
            return ctx

        session = MagicMock()
        session.get = MagicMock(side_effect=_get)

        with pytest.raises(TileFetchError, match='401'):
            await fetcher.fetch_many(session, [(0, 0), (1, 0)], zoom=2, strict=True)

        current = asyncio.current_task()
        assert [t for t in asyncio.all_tasks() if t is not current] == []
        assert fetcher._inflight == {}

        gate.set()
        await asyncio.sleep(0.01)
        assert not cache.exists(TileKey('osm', 2, 1, 0))
