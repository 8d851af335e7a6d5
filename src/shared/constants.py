from enum import Enum

# --- Tile cache
# Cache directory (relative paths are resolved against the user data dir)
TILE_CACHE_DIR = '.cache/tiles'
# Environment variable that overrides the cache directory
TILE_CACHE_DIR_ENV = 'TILECACHE_DIR'
# Mode for directories created under the cache root (owner only)
TILE_CACHE_DIR_MODE = 0o700
# Suffix of in-progress writes; such files are never treated as tiles
TILE_CACHE_TMP_SUFFIX = '.tmp'
# Default store semantics: False = atomic overwrite, True = exclusive create
TILE_CACHE_EXCLUSIVE = False

# --- Tiles
# Base Web Mercator tile size (px)
TILE_SIZE = 256
TILE_SIZE_512 = 512

# --- Download
# Number of parallel HTTP requests
DOWNLOAD_CONCURRENCY = 8

# --- Network defaults
HTTP_TIMEOUT_DEFAULT = 20.0
HTTP_RETRIES_DEFAULT = 4
HTTP_BACKOFF_FACTOR = 1.6
USER_AGENT = 'Mozilla/5.0+(compatible; tilecache/1.0)'
# Server error range
HTTP_5XX_MIN = 500
HTTP_5XX_MAX = 600

# --- Logging
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class StoreMode(str, Enum):
    """How a store treats an entry that is already on disk."""

    OVERWRITE = 'overwrite'
    EXCLUSIVE = 'exclusive'


def default_store_mode() -> StoreMode:
    return StoreMode.EXCLUSIVE if TILE_CACHE_EXCLUSIVE else StoreMode.OVERWRITE
