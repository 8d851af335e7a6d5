"""HTTP client infrastructure."""
from infrastructure.http.client import async_fetch_tile_bytes, make_http_session

__all__ = [
    'async_fetch_tile_bytes',
    'make_http_session',
]
