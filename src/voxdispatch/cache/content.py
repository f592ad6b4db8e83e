"""Content-addressed store of finished transcriptions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..errors import CacheError
from ..models import TranscriptionResult
from ..utils.hash import hash_file, hash_payload
from .backends import CacheBackend, MemoryCacheBackend

logger = logging.getLogger(__name__)

__all__ = ["KEY_PREFIX", "ContentCache", "options_digest"]

KEY_PREFIX = "transcription"


def options_digest(
    provider: str,
    options: Mapping[str, Any] | None,
    criteria: Mapping[str, Any] | None = None,
) -> str:
    payload: dict[str, Any] = {"provider": provider, "options": dict(options or {})}
    if criteria:
        payload["criteria"] = dict(criteria)
    return hash_payload(payload)


class ContentCache:
    """Best-effort cache keyed on file bytes plus request options.

    Backend failures are logged and reported as misses; nothing raised by the
    backend ever reaches the caller.
    """

    def __init__(self, backend: CacheBackend | None = None, default_ttl_sec: float = 7200.0):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.default_ttl_sec = default_ttl_sec

    async def make_key(
        self,
        path: str | Path,
        provider: str,
        options: Mapping[str, Any] | None,
        criteria: Mapping[str, Any] | None = None,
    ) -> str | None:
        try:
            file_digest = await asyncio.to_thread(hash_file, path)
        except OSError as exc:
            logger.warning("Failed to generate cache key for %s: %s", path, exc)
            return None
        return f"{KEY_PREFIX}:{file_digest}:{options_digest(provider, options, criteria)}"

    async def get(self, key: str | None) -> TranscriptionResult | None:
        if not key:
            return None
        try:
            raw = await self.backend.get(key)
            if raw is None:
                return None
            return TranscriptionResult.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning("Discarding unreadable cache entry %s: %s", key, exc)
            await self._safe_delete(key)
            return None
        except Exception as exc:
            self._report(CacheError("Cache retrieval failed", context={"key": key}, cause=exc))
            return None

    async def set(
        self, key: str | None, result: TranscriptionResult, ttl_sec: float | None = None
    ) -> bool:
        if not key:
            return False
        try:
            await self.backend.set(
                key, result.model_dump_json(), ttl_sec if ttl_sec is not None else self.default_ttl_sec
            )
            return True
        except Exception as exc:
            self._report(CacheError("Cache storage failed", context={"key": key}, cause=exc))
            return False

    async def purge_expired(self) -> int:
        try:
            return await self.backend.purge_expired()
        except Exception as exc:
            self._report(CacheError("Cache purge failed", cause=exc))
            return 0

    async def ping(self) -> bool:
        try:
            return await self.backend.ping()
        except Exception as exc:
            self._report(CacheError("Cache ping failed", cause=exc))
            return False

    async def close(self) -> None:
        try:
            await self.backend.close()
        except Exception as exc:
            self._report(CacheError("Cache close failed", cause=exc))

    async def _safe_delete(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as exc:
            self._report(CacheError("Cache delete failed", context={"key": key}, cause=exc))

    @staticmethod
    def _report(error: CacheError) -> None:
        logger.warning("%s (%s): %s", error.message, error.context or "-", error.cause)
