"""Provider implementations."""

from .base import ProviderAdapter, ProviderCapabilities
from .kling import KlingAdapter
from .mock import MockAdapter
from .pollo import PolloAdapter

__all__ = [
    "KlingAdapter",
    "MockAdapter",
    "PolloAdapter",
    "ProviderAdapter",
    "ProviderCapabilities",
]
