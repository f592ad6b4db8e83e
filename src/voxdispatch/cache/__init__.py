"""Transcription result cache."""

from .backends import CacheBackend, MemoryCacheBackend, RedisCacheBackend
from .content import KEY_PREFIX, ContentCache, options_digest

__all__ = [
    "CacheBackend",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "ContentCache",
    "KEY_PREFIX",
    "options_digest",
]
