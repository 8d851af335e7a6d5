from pydantic import BaseModel, field_validator

from shared.constants import (
    DOWNLOAD_CONCURRENCY,
    HTTP_BACKOFF_FACTOR,
    HTTP_RETRIES_DEFAULT,
    HTTP_TIMEOUT_DEFAULT,
    TILE_CACHE_DIR_MODE,
    USER_AGENT,
    StoreMode,
    default_store_mode,
)

_MAX_MODE = 0o7777


class FetchSettings(BaseModel):
    """Tunables of the tile cache and the fetcher, loaded from a TOML file."""

    model_config = {
        'extra': 'ignore',  # ignore unknown keys in settings files
    }

    # Cache root; None means resolve_cache_dir()
    cache_dir: str | None = None
    # Mode of directories created under the cache root
    dir_mode: int = TILE_CACHE_DIR_MODE
    store_mode: StoreMode = default_store_mode()

    concurrency: int = DOWNLOAD_CONCURRENCY
    timeout: float = HTTP_TIMEOUT_DEFAULT
    retries: int = HTTP_RETRIES_DEFAULT
    backoff: float = HTTP_BACKOFF_FACTOR
    user_agent: str = USER_AGENT
    # Serve from cache only
    offline: bool = False

    @field_validator('dir_mode', mode='before')
    @classmethod
    def _parse_mode(cls, v):
        # TOML has no octal-looking strings by default, accept "700" / "0o700"
        if isinstance(v, str):
            text = v.strip().lower().removeprefix('0o')
            try:
                v = int(text, 8)
            except ValueError:
                msg = f'dir_mode must be an octal number, got {v!r}'
                raise ValueError(msg) from None
        if not isinstance(v, int) or isinstance(v, bool) or not 0 <= v <= _MAX_MODE:
            msg = f'dir_mode must be within 0..0o7777, got {v!r}'
            raise ValueError(msg)
        return v

    @field_validator('concurrency', 'retries')
    @classmethod
    def _check_positive_int(cls, v: int) -> int:
        if v < 1:
            msg = f'must be at least 1, got {v}'
            raise ValueError(msg)
        return v

    @field_validator('timeout', 'backoff')
    @classmethod
    def _check_positive_float(cls, v: float) -> float:
        if v <= 0:
            msg = f'must be positive, got {v}'
            raise ValueError(msg)
        return v

    @property
    def exclusive(self) -> bool:
        return self.store_mode is StoreMode.EXCLUSIVE
