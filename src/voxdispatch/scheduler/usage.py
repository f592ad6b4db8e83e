from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import Any

__all__ = ["ProviderUsage", "UsageStats"]


@dataclass
class ProviderUsage:
    jobs_started: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    retries: int = 0
    audio_seconds: float = 0.0
    cost_usd: float = 0.0
    processing_ms: float = 0.0


@dataclass
class _Counters:
    total_requests: int = 0
    rejected_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    retries: int = 0
    timeouts: int = 0
    total_processing_ms: float = 0.0
    total_audio_seconds: float = 0.0
    total_cost_usd: float = 0.0
    total_file_bytes: int = 0
    failures_by_kind: dict[str, int] = field(default_factory=dict)
    providers: dict[str, ProviderUsage] = field(default_factory=dict)


class UsageStats:
    """Usage and cost aggregate owned by the scheduler.

    Only the scheduler writes; everybody else reads :meth:`snapshot`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._c = _Counters()

    def _provider(self, name: str) -> ProviderUsage:
        return self._c.providers.setdefault(name, ProviderUsage())

    def record_request(self, size_bytes: int) -> None:
        with self._lock:
            self._c.total_requests += 1
            self._c.total_file_bytes += int(size_bytes)

    def record_rejected(self) -> None:
        with self._lock:
            self._c.rejected_requests += 1

    def record_cache(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self._c.cache_hits += 1
            else:
                self._c.cache_misses += 1

    def record_started(self, provider: str) -> None:
        with self._lock:
            self._provider(provider).jobs_started += 1

    def record_retry(self, provider: str) -> None:
        with self._lock:
            self._c.retries += 1
            self._provider(provider).retries += 1

    def record_success(
        self, provider: str, processing_ms: float, audio_seconds: float, cost_usd: float
    ) -> None:
        with self._lock:
            self._c.successful_requests += 1
            self._c.total_processing_ms += processing_ms
            self._c.total_audio_seconds += audio_seconds
            self._c.total_cost_usd += cost_usd
            usage = self._provider(provider)
            usage.jobs_completed += 1
            usage.processing_ms += processing_ms
            usage.audio_seconds += audio_seconds
            usage.cost_usd += cost_usd

    def record_failure(self, provider: str, kind: str) -> None:
        with self._lock:
            self._c.failed_requests += 1
            if kind == "Timeout":
                self._c.timeouts += 1
            self._c.failures_by_kind[kind] = self._c.failures_by_kind.get(kind, 0) + 1
            self._provider(provider).jobs_failed += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            data = asdict(self._c)
        finished = data["successful_requests"] + data["failed_requests"]
        lookups = data["cache_hits"] + data["cache_misses"]
        data["error_rate"] = data["failed_requests"] / finished if finished else 0.0
        data["cache_hit_rate"] = data["cache_hits"] / lookups if lookups else 0.0
        data["average_processing_ms"] = (
            data["total_processing_ms"] / data["successful_requests"]
            if data["successful_requests"]
            else 0.0
        )
        return data
