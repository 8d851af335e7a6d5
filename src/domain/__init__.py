"""Domain layer - settings models."""
from domain.models import FetchSettings

__all__ = [
    'FetchSettings',
]
