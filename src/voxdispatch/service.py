"""Narrow submission/status facade used by outer collaborators."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .cache import ContentCache, MemoryCacheBackend, RedisCacheBackend
from .catalog import ProviderCatalog
from .config import DispatchConfig, build_dispatch_config
from .cost import estimate_processing_time_ms
from .errors import ValidationError
from .logging_utils import JobEventLog
from .media import MediaPreprocessor, MediaProber
from .models import (
    CostEstimate,
    JobHandle,
    ProviderDescriptor,
    SelectionCriteria,
    StatusReport,
)
from .providers import AdapterRegistry, ProviderAdapter, default_adapters
from .scheduler import FileQueueStore, JobScheduler, MemoryQueueStore, QueueStore

logger = logging.getLogger(__name__)

__all__ = ["TranscriptionService", "create_service"]


class TranscriptionService:
    """Entry point for HTTP handlers, CLIs and other callers.

    Usage::

        async with create_service() as service:
            handle = await service.submit("talk.wav")
            report = await service.wait_for(handle.request_id, timeout=600)
    """

    def __init__(self, scheduler: JobScheduler):
        self.scheduler = scheduler

    @property
    def config(self) -> DispatchConfig:
        return self.scheduler.config

    @property
    def catalog(self) -> ProviderCatalog:
        return self.scheduler.catalog

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.scheduler.adapters.aclose()
        if self.scheduler.cache is not None:
            await self.scheduler.cache.close()

    async def __aenter__(self) -> TranscriptionService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def submit(
        self,
        path: str | Path,
        provider_hint: str | None = None,
        options: Mapping[str, Any] | None = None,
        *,
        criteria: SelectionCriteria | None = None,
        request_id: str | None = None,
    ) -> JobHandle:
        return await self.scheduler.submit(
            path, provider_hint, options, criteria=criteria, request_id=request_id
        )

    def get_status(self, request_id: str) -> StatusReport:
        return self.scheduler.status(request_id)

    async def wait_for(self, request_id: str, timeout: float | None = None) -> StatusReport:
        return await self.scheduler.wait_for(request_id, timeout)

    def estimate_cost(
        self,
        file_size_bytes: int,
        duration_seconds: float,
        provider_hint: str | None = None,
        *,
        file_format: str | None = None,
        criteria: SelectionCriteria | None = None,
    ) -> CostEstimate:
        """Quote the cost of a file before it is uploaded."""

        if file_size_bytes <= 0:
            raise ValidationError("file_size_bytes must be positive")
        if duration_seconds < 0:
            raise ValidationError("duration_seconds must not be negative")
        if provider_hint:
            provider = self.catalog.get(provider_hint).name
        else:
            provider = self.scheduler.selector.select(
                file_format, file_size_bytes, duration_seconds, criteria
            )
        return self.scheduler.costs.quote(duration_seconds, provider)

    def list_providers(self) -> list[dict[str, Any]]:
        return [_describe(descriptor) for descriptor in self.catalog.all()]

    def usage(self) -> dict[str, Any]:
        stats = self.scheduler.usage.snapshot()
        stats["active_jobs"] = self.scheduler.active_count()
        stats["queued_jobs"] = self.scheduler.queued_count()
        stats["max_concurrent_jobs"] = self.config.max_concurrent_jobs
        return stats

    async def health_check(self) -> dict[str, Any]:
        cache = self.scheduler.cache
        cache_ok = await cache.ping() if cache is not None else None
        configured = [name for name in self.catalog.names() if name in self.scheduler.adapters]
        healthy = self.scheduler.running and (cache_ok is not False) and bool(configured)
        return {
            "status": "healthy" if healthy else "degraded",
            "running": self.scheduler.running,
            "cache": {"enabled": cache is not None, "reachable": cache_ok},
            "providers": configured,
            "active_jobs": self.scheduler.active_count(),
            "queued_jobs": self.scheduler.queued_count(),
        }


def _describe(descriptor: ProviderDescriptor) -> dict[str, Any]:
    data = descriptor.model_dump(mode="json")
    data["features"] = sorted(descriptor.features)
    data["example_processing_time_ms"] = estimate_processing_time_ms(60.0, descriptor)
    return data


def _build_cache(config: DispatchConfig) -> ContentCache | None:
    if not config.enable_caching:
        return None
    if config.cache_backend == "redis":
        backend = RedisCacheBackend(config.redis_url)
    else:
        backend = MemoryCacheBackend(max_entries=config.cache_max_entries)
    return ContentCache(backend, default_ttl_sec=config.cache_ttl_sec)


def create_service(
    config: DispatchConfig | Mapping[str, Any] | None = None,
    *,
    adapters: AdapterRegistry | Mapping[str, ProviderAdapter] | None = None,
    catalog: ProviderCatalog | None = None,
    cache: ContentCache | None = None,
    store: QueueStore | None = None,
    prober: MediaProber | None = None,
    preprocessor: MediaPreprocessor | None = None,
) -> TranscriptionService:
    """Wire a :class:`TranscriptionService` from configuration.

    Every collaborator can be injected; anything omitted is built from ``config``.
    """

    cfg = build_dispatch_config(config)
    if catalog is None:
        catalog = (
            ProviderCatalog.from_file(cfg.catalog_path)
            if cfg.catalog_path is not None
            else ProviderCatalog.default()
        )
    if adapters is None:
        adapters = default_adapters(cfg.provider_timeout_sec)
    elif not isinstance(adapters, AdapterRegistry):
        adapters = AdapterRegistry(adapters)
    if cache is None:
        cache = _build_cache(cfg)
    if store is None:
        store = FileQueueStore(cfg.jobs_dir) if cfg.jobs_dir is not None else MemoryQueueStore()

    scheduler = JobScheduler(
        catalog=catalog,
        adapters=adapters,
        config=cfg,
        cache=cache,
        prober=prober,
        preprocessor=preprocessor,
        store=store,
        events=JobEventLog(cfg.event_log_path),
    )
    logger.debug(
        "Created service with providers %s (cache=%s, store=%s)",
        catalog.names(),
        cfg.cache_backend if cache is not None else "off",
        type(store).__name__,
    )
    return TranscriptionService(scheduler)
