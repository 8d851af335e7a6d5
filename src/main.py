"""Command line entry point: list providers, fetch tiles, inspect the cache."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from domain.models import FetchSettings
from infrastructure.http.client import make_http_session
from shared.constants import LOG_FORMAT
from shared.errors import TileCacheError, TileFetchError, UnknownProviderError
from shared.settings import load_settings, resolve_cache_dir
from tiles.cache import TileCache
from tiles.fetcher import TileFetcher
from tiles.providers import TileProvider, all_providers, get_provider

logger = logging.getLogger(__name__)


def setup_logging(log_file: Path | None = None, *, verbose: bool = False) -> None:
    """Configure logging to stderr and, optionally, to a file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_file), encoding='utf-8'))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def make_cache(settings: FetchSettings) -> TileCache:
    return TileCache(
        resolve_cache_dir(settings),
        settings.dir_mode,
        exclusive=settings.exclusive,
    )


def make_fetcher(
    provider: TileProvider,
    settings: FetchSettings,
    cache: TileCache | None = None,
) -> TileFetcher:
    return TileFetcher(
        provider,
        cache or make_cache(settings),
        concurrency=settings.concurrency,
        timeout=settings.timeout,
        retries=settings.retries,
        backoff=settings.backoff,
        offline=settings.offline,
    )


async def fetch_tiles(
    fetcher: TileFetcher,
    settings: FetchSettings,
    zoom: int,
    tiles: list[tuple[int, int]],
    *,
    strict: bool = False,
) -> dict[tuple[int, int, int], bytes | None]:
    async with make_http_session(settings.user_agent) as client:
        return await fetcher.fetch_many(client, tiles, zoom=zoom, strict=strict)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Map tile provider catalog and on-disk tile cache',
    )
    parser.add_argument('--config', type=Path, help='TOML settings file')
    parser.add_argument('--cache-dir', help='Override the cache directory')
    parser.add_argument(
        '--offline', action='store_true', help='Serve tiles from the cache only'
    )
    parser.add_argument('--log-file', type=Path, help='Also write the log to a file')
    parser.add_argument('-v', '--verbose', action='store_true')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('providers', help='List built-in tile providers')

    p_fetch = sub.add_parser('fetch', help='Fetch one tile through the cache')
    p_fetch.add_argument('provider')
    p_fetch.add_argument('zoom', type=int)
    p_fetch.add_argument('x', type=int)
    p_fetch.add_argument('y', type=int)
    p_fetch.add_argument('-o', '--output', type=Path, help='Copy the tile to a file')

    p_pre = sub.add_parser('prefetch', help='Fetch a rectangle of tiles into the cache')
    p_pre.add_argument('provider')
    p_pre.add_argument('zoom', type=int)
    p_pre.add_argument('x_min', type=int)
    p_pre.add_argument('y_min', type=int)
    p_pre.add_argument('x_max', type=int)
    p_pre.add_argument('y_max', type=int)

    sub.add_parser('stats', help='Show cached tile counts per provider')

    p_clear = sub.add_parser('clear', help='Delete cached tiles of a provider')
    p_clear.add_argument('provider')

    return parser


def _settings_from_args(args: argparse.Namespace) -> FetchSettings:
    settings = load_settings(args.config) if args.config else FetchSettings()
    overrides: dict = {}
    if args.cache_dir:
        overrides['cache_dir'] = args.cache_dir
    if args.offline:
        overrides['offline'] = True
    return settings.model_copy(update=overrides) if overrides else settings


def _cmd_providers() -> int:
    for p in all_providers():
        print(f'{p.name:<24} {p.tile_size:>4}px  {p.attribution}')
    return 0


def _cmd_fetch(args: argparse.Namespace, settings: FetchSettings) -> int:
    fetcher = make_fetcher(get_provider(args.provider), settings)
    result = asyncio.run(
        fetch_tiles(fetcher, settings, args.zoom, [(args.x, args.y)], strict=True)
    )
    data = result[(args.zoom, args.x, args.y)]
    if data is None:
        print('Tile does not exist upstream')
        return 1
    if args.output is not None:
        try:
            args.output.write_bytes(data)
        except OSError as e:
            logger.error('Failed to write %s: %s', args.output, e)
            return 1
        print(f'Wrote {len(data)} bytes to {args.output}')
    else:
        key = fetcher.key_for(args.zoom, args.x, args.y)
        print(fetcher.cache.path_for(key))
    return 0


def _cmd_prefetch(args: argparse.Namespace, settings: FetchSettings) -> int:
    fetcher = make_fetcher(get_provider(args.provider), settings)
    tiles = [
        (x, y)
        for x in range(args.x_min, args.x_max + 1)
        for y in range(args.y_min, args.y_max + 1)
    ]
    result = asyncio.run(fetch_tiles(fetcher, settings, args.zoom, tiles))
    stats = fetcher.stats
    print(
        f'{len(result)}/{len(tiles)} tiles: {stats["cache_hits"]} cached, '
        f'{stats["downloads"]} downloaded, {stats["errors"]} failed'
    )
    return 0 if len(result) == len(tiles) else 1


def _cmd_stats(settings: FetchSettings) -> int:
    cache = make_cache(settings)
    stats = cache.get_stats()
    print(f'Cache: {cache.cache_dir}')
    for name, count in stats.tiles_by_provider.items():
        size_mb = stats.size_by_provider[name] / 1024 / 1024
        print(f'  {name:<24} {count:>8} tiles {size_mb:>10.1f} MB')
    print(
        f'Total: {stats.total_tiles} tiles, '
        f'{stats.total_size_bytes / 1024 / 1024:.1f} MB'
    )
    return 0


def _cmd_clear(args: argparse.Namespace, settings: FetchSettings) -> int:
    removed = make_cache(settings).clear_provider(args.provider)
    print(f'Removed {removed} tiles of {args.provider}')
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file, verbose=args.verbose)

    try:
        settings = _settings_from_args(args)
        if args.command == 'providers':
            return _cmd_providers()
        if args.command == 'fetch':
            return _cmd_fetch(args, settings)
        if args.command == 'prefetch':
            return _cmd_prefetch(args, settings)
        if args.command == 'stats':
            return _cmd_stats(settings)
        if args.command == 'clear':
            return _cmd_clear(args, settings)
    except (FileNotFoundError, ValueError, UnknownProviderError) as e:
        logger.error('%s', e)
        return 2
    except (TileFetchError, TileCacheError) as e:
        logger.error('%s', e)
        return 1
    return 2


if __name__ == '__main__':
    sys.exit(main())
