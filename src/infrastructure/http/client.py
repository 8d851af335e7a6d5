from __future__ import annotations

import asyncio
import logging
import ssl
from http import HTTPStatus

import aiohttp
import certifi

from shared.constants import (
    HTTP_5XX_MAX,
    HTTP_5XX_MIN,
    HTTP_BACKOFF_FACTOR,
    HTTP_RETRIES_DEFAULT,
    HTTP_TIMEOUT_DEFAULT,
    USER_AGENT,
)
from shared.errors import TileFetchError

logger = logging.getLogger(__name__)


def make_http_session(user_agent: str = USER_AGENT) -> aiohttp.ClientSession:
    # SSL context with certifi's CA bundle
    ssl_context = ssl.create_default_context(cafile=certifi.where())
    connector = aiohttp.TCPConnector(ssl=ssl_context)
    return aiohttp.ClientSession(
        connector=connector,
        headers={'User-Agent': user_agent},
    )


async def async_fetch_tile_bytes(
    client: aiohttp.ClientSession,
    url: str,
    *,
    label: str = '',
    async_timeout: float = HTTP_TIMEOUT_DEFAULT,
    retries: int = HTTP_RETRIES_DEFAULT,
    backoff: float = HTTP_BACKOFF_FACTOR,
    ignore_not_found: bool = False,
) -> bytes | None:
    """
    Download one tile and return its raw bytes.

    - 401/403 fail immediately; 404 fails too unless ignore_not_found,
      in which case None is returned.
    - 429, 5xx, unexpected statuses and connection errors are retried with
      an exponential delay of backoff**attempt seconds.
    """
    what = label or url
    attempts = max(1, retries)
    timeout = aiohttp.ClientTimeout(total=async_timeout)

    last_exc: Exception | None = None
    for attempt in range(attempts):
        try:
            async with client.get(url, timeout=timeout) as resp:
                sc = resp.status
                if sc == HTTPStatus.OK:
                    return await resp.read()
                if sc in (HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN):
                    msg = f'Access denied (HTTP {sc}) for tile {what}'
                    raise TileFetchError(msg)
                if sc == HTTPStatus.NOT_FOUND:
                    if ignore_not_found:
                        logger.debug('Tile %s not found upstream, ignored', what)
                        return None
                    msg = f'Tile not found (404): {what}'
                    raise TileFetchError(msg)
                is_rate_or_5xx = (sc == HTTPStatus.TOO_MANY_REQUESTS) or (
                    HTTP_5XX_MIN <= sc < HTTP_5XX_MAX
                )
                if is_rate_or_5xx:
                    last_exc = TileFetchError(f'HTTP {sc} while fetching tile {what}')
                else:
                    last_exc = TileFetchError(
                        f'Unexpected HTTP {sc} while fetching tile {what}'
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            last_exc = e
        logger.debug(
            'Attempt %d/%d for tile %s failed: %s', attempt + 1, attempts, what, last_exc
        )
        if attempt + 1 < attempts:
            await asyncio.sleep(backoff**attempt)
    msg = f'Failed to fetch tile {what}: {last_exc}'
    raise TileFetchError(msg) from last_exc
