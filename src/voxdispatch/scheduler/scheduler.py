"""Bounded-concurrency job scheduler.

``submit`` validates the input, answers from the content cache when it can, and
otherwise enqueues a :class:`Job`.  A fixed pool of ``max_concurrent_jobs``
workers claims the best queued entry, runs probe -> preprocess -> adapter ->
cost -> cache, and records the outcome.  Retryable provider failures go back to
the queue with exponential backoff; every other failure, and any job that
outlives its wall-clock budget, ends in ``Failed``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from ..cache import ContentCache
from ..catalog import ProviderCatalog
from ..config import DispatchConfig
from ..cost import CostCalculator, estimate_processing_time_ms
from ..errors import (
    DispatchError,
    JobTimeout,
    NotFound,
    ProviderError,
    UnreadableMedia,
    ValidationError,
    error_payload,
)
from ..logging_utils import JobEventLog, format_bytes
from ..media import TRANSCODABLE_FORMATS, MediaPreprocessor, MediaProber, file_format
from ..models import (
    JobHandle,
    JobStatus,
    MediaInfo,
    SelectionCriteria,
    StatusReport,
    TranscriptionResult,
    utcnow,
)
from ..providers import AdapterRegistry
from ..selector import ProviderSelector
from .job import PROGRESS, Job, JobTable
from .queue_store import MemoryQueueStore, QueueEntry, QueueStore
from .usage import UsageStats

logger = logging.getLogger(__name__)

__all__ = ["AUTO_PROVIDER", "SMALL_FILE_BYTES", "SMALL_FILE_BONUS", "JobScheduler"]

AUTO_PROVIDER = "auto"
SMALL_FILE_BYTES = 10 * 1024 * 1024
SMALL_FILE_BONUS = 5
IDLE_POLL_SEC = 1.0


class JobScheduler:
    def __init__(
        self,
        *,
        catalog: ProviderCatalog,
        adapters: AdapterRegistry,
        config: DispatchConfig | None = None,
        cache: ContentCache | None = None,
        prober: MediaProber | None = None,
        preprocessor: MediaPreprocessor | None = None,
        store: QueueStore | None = None,
        events: JobEventLog | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config if config is not None else DispatchConfig()
        self.catalog = catalog
        self.adapters = adapters
        self.cache = cache if self.config.enable_caching else None
        self.prober = prober if prober is not None else MediaProber(self.config.ffprobe_bin)
        if preprocessor is None:
            preprocessor = MediaPreprocessor(self.config.temp_dir, self.config.ffmpeg_bin)
        self.preprocessor = preprocessor
        self.store = store if store is not None else MemoryQueueStore()
        self.events = events if events is not None else JobEventLog()
        self.selector = ProviderSelector(catalog)
        self.costs = CostCalculator(catalog)
        self.jobs = JobTable(self.config.job_retention_sec, clock=monotonic)
        self.usage = UsageStats()
        self._clock = clock
        self._monotonic = monotonic

        self._work_available: asyncio.Condition | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._sweeper: asyncio.Task[None] | None = None
        self._running = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._work_available = asyncio.Condition()
        self._recover()
        # No worker is running, so every lease left over belongs to an interrupted claim.
        self.store.requeue_expired(float("inf"))
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"voxdispatch-worker-{index}")
            for index in range(self.config.max_concurrent_jobs)
        ]
        if self.cache is not None:
            self._sweeper = asyncio.create_task(self._sweep_cache(), name="voxdispatch-cache-sweeper")
        logger.info("Job scheduler started with %d workers", len(self._workers))

    async def stop(self) -> None:
        """Stop the workers.  Interrupted jobs go back to Queued with a fresh budget."""

        if not self._running:
            return
        self._running = False
        tasks = list(self._workers)
        if self._sweeper is not None:
            tasks.append(self._sweeper)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._sweeper = None
        logger.info("Job scheduler stopped")

    async def _sweep_cache(self) -> None:
        assert self.cache is not None
        while self._running:
            await asyncio.sleep(self.config.cache_purge_interval_sec)
            purged = await self.cache.purge_expired()
            if purged:
                logger.debug("Purged %d expired cache entries", purged)

    def _recover(self) -> None:
        for entry in self.store.load():
            if not entry.job:
                continue
            if self.jobs.get_by_job_id(entry.job_id) is not None:
                continue
            try:
                job = Job.from_snapshot(entry.job)
                self.jobs.add(job)
            except (KeyError, ValueError, DispatchError) as exc:
                logger.error("Skipping unrecoverable job %s: %s", entry.job_id, exc)
                self.store.ack(entry.job_id)

    # ------------------------------------------------------------------
    # submission
    # ------------------------------------------------------------------
    async def submit(
        self,
        path: str | Path,
        provider_hint: str | None = None,
        options: Mapping[str, Any] | None = None,
        *,
        criteria: SelectionCriteria | None = None,
        request_id: str | None = None,
    ) -> JobHandle:
        request_id = request_id or str(uuid.uuid4())
        options = dict(options or {})
        source = Path(path)
        try:
            size = self._validate(source)
        except DispatchError:
            self.usage.record_rejected()
            raise
        self.usage.record_request(size)
        fmt = file_format(source)

        media = await self._probe_for_submit(source)
        duration = media.duration_seconds if media else 0.0
        requested = provider_hint or AUTO_PROVIDER

        cache_key = None
        if self.cache is not None:
            # Criteria only steer auto selection; a hinted provider ignores them.
            constraints = (
                criteria.digest_fields()
                if criteria is not None and requested == AUTO_PROVIDER
                else None
            )
            cache_key = await self.cache.make_key(source, requested, options, constraints)
            cached = await self.cache.get(cache_key)
            self.usage.record_cache(cached is not None)
            if cached is not None:
                return self._complete_from_cache(request_id, source, size, options, cache_key, media, cached)

        try:
            provider = self._resolve_provider(requested, fmt, size, duration, criteria)
        except DispatchError:
            self.usage.record_rejected()
            raise
        descriptor = self.catalog.get(provider)

        job = Job(
            request_id=request_id,
            source_file=source,
            file_size_bytes=size,
            provider=provider,
            options=options,
            priority=self.priority_for(provider, size),
            cache_key=cache_key,
            media=media,
        )
        self.jobs.add(job)
        await self._enqueue(job)
        self.events.event("queued", request_id, job_id=job.job_id, provider=provider, priority=job.priority)
        logger.info(
            "Queued %s (%s, %s) for %s with priority %d",
            request_id,
            source.name,
            format_bytes(size),
            provider,
            job.priority,
        )

        position = self.store.position(job.job_id)
        return JobHandle(
            request_id=request_id,
            job_id=job.job_id,
            status=JobStatus.QUEUED,
            provider=provider,
            file_size_bytes=size,
            estimated_processing_time_ms=estimate_processing_time_ms(
                media.duration_seconds if media else None, descriptor
            ),
            queue_position=position if position is not None else 0,
        )

    def _validate(self, source: Path) -> int:
        if not source.is_file():
            raise ValidationError(
                "File not found or not accessible", context={"path": str(source)}
            )
        size = source.stat().st_size
        if size == 0:
            raise ValidationError("File is empty", context={"path": str(source)})
        if size > self.config.max_file_size_bytes:
            raise ValidationError(
                f"File size ({format_bytes(size)}) exceeds maximum allowed size "
                f"({format_bytes(self.config.max_file_size_bytes)})",
                context={"size_bytes": size, "max_bytes": self.config.max_file_size_bytes},
            )
        fmt = file_format(source)
        if fmt not in self.catalog.all_formats() and fmt not in TRANSCODABLE_FORMATS:
            raise ValidationError(
                f"Unsupported media format: {fmt or 'unknown'}", context={"format": fmt}
            )
        return size

    async def _probe_for_submit(self, source: Path) -> MediaInfo | None:
        # Unreadable media is a job failure, not a submission error; the worker re-probes.
        try:
            return await self.prober.aprobe(source)
        except UnreadableMedia as exc:
            logger.info("Deferring probe failure for %s: %s", source.name, exc)
            return None

    def _resolve_provider(
        self,
        requested: str,
        fmt: str,
        size: int,
        duration: float,
        criteria: SelectionCriteria | None,
    ) -> str:
        if requested == AUTO_PROVIDER:
            # Inputs no provider accepts natively are transcoded, so any provider qualifies.
            selection_format = fmt if fmt in self.catalog.all_formats() else None
            return self.selector.select(selection_format, size, duration, criteria)
        descriptor = self.catalog.get(requested)
        if size > descriptor.max_file_size_bytes:
            raise ValidationError(
                f"File size ({format_bytes(size)}) exceeds {descriptor.name} limit "
                f"({format_bytes(descriptor.max_file_size_bytes)})",
                context={"provider": descriptor.name, "size_bytes": size},
            )
        return descriptor.name

    def _complete_from_cache(
        self,
        request_id: str,
        source: Path,
        size: int,
        options: dict[str, Any],
        cache_key: str | None,
        media: MediaInfo | None,
        cached: TranscriptionResult,
    ) -> JobHandle:
        result = cached.model_copy(update={"cached": True})
        job = Job(
            request_id=request_id,
            source_file=source,
            file_size_bytes=size,
            provider=result.provider_name,
            options=options,
            cache_key=cache_key,
            media=media,
        )
        job.status = JobStatus.COMPLETED
        job.progress_percent = PROGRESS["completed"]
        job.result = result
        job.finished_at = utcnow()
        self.jobs.add(job)
        self.events.event("cache_hit", request_id, job_id=job.job_id, provider=job.provider)
        logger.info("Cache hit for %s (%s)", request_id, source.name)
        return JobHandle(
            request_id=request_id,
            job_id=job.job_id,
            status=JobStatus.COMPLETED,
            provider=job.provider,
            file_size_bytes=size,
            estimated_processing_time_ms=0,
            queue_position=0,
            cached=True,
            result=result,
        )

    def priority_for(self, provider: str, size_bytes: int) -> int:
        base = self.catalog.get(provider).base_priority
        return base + (SMALL_FILE_BONUS if size_bytes < SMALL_FILE_BYTES else 0)

    def _entry_for(self, job: Job, delay_sec: float = 0.0) -> QueueEntry:
        return QueueEntry(
            job_id=job.job_id,
            request_id=job.request_id,
            priority=job.priority,
            created_at=job.created_at.timestamp(),
            available_at=self._clock() + delay_sec if delay_sec > 0 else 0.0,
            job=job.to_snapshot(),
        )

    async def _enqueue(self, job: Job, delay_sec: float = 0.0) -> None:
        entry = self._entry_for(job, delay_sec)
        if self._work_available is None:
            self.store.put(entry)
            return
        async with self._work_available:
            self.store.put(entry)
            self._work_available.notify()

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def _get(self, request_id: str) -> Job:
        job = self.jobs.get(request_id)
        if job is None:
            raise NotFound(f"Unknown request: {request_id}", context={"request_id": request_id})
        return job

    def status(self, request_id: str) -> StatusReport:
        return self._get(request_id).report()

    def subscribe(self, request_id: str) -> asyncio.Queue[StatusReport]:
        return self._get(request_id).subscribe()

    def unsubscribe(self, request_id: str, queue: asyncio.Queue[StatusReport]) -> None:
        job = self.jobs.get(request_id)
        if job is not None:
            job.unsubscribe(queue)

    async def wait_for(self, request_id: str, timeout: float | None = None) -> StatusReport:
        """Block until the job is terminal; raises :class:`asyncio.TimeoutError` after ``timeout``."""

        job = self._get(request_id)
        queue = job.subscribe()
        try:
            async with asyncio.timeout(timeout):
                while not job.status.is_terminal:
                    await queue.get()
        finally:
            job.unsubscribe(queue)
        return job.report()

    def active_count(self) -> int:
        return self.jobs.count(JobStatus.ACTIVE)

    def queued_count(self) -> int:
        return self.jobs.count(JobStatus.QUEUED)

    # ------------------------------------------------------------------
    # workers
    # ------------------------------------------------------------------
    async def _worker(self, index: int) -> None:
        while self._running:
            try:
                entry = await self._next_entry()
                if entry is None:
                    continue
                job = self.jobs.get_by_job_id(entry.job_id)
                if job is None:
                    logger.warning("Dropping queue entry for unknown job %s", entry.job_id)
                    self.store.ack(entry.job_id)
                    continue
                if not self.jobs.compare_and_set(job, JobStatus.QUEUED, JobStatus.ACTIVE):
                    logger.debug("Job %s already claimed (%s)", job.job_id, job.status.value)
                    if job.status.is_terminal:
                        self.store.ack(entry.job_id)
                    continue
                await self._run(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker %d error", index)

    async def _next_entry(self) -> QueueEntry | None:
        assert self._work_available is not None
        async with self._work_available:
            self._housekeeping()
            entry = self.store.claim(self._clock(), self.config.visibility_timeout_sec)
            if entry is not None:
                return entry
            try:
                await asyncio.wait_for(self._work_available.wait(), timeout=self._idle_delay())
            except asyncio.TimeoutError:
                pass
            return self.store.claim(self._clock(), self.config.visibility_timeout_sec)

    def _idle_delay(self) -> float:
        next_at = self.store.next_available_at()
        if next_at is None:
            return IDLE_POLL_SEC
        return max(0.0, min(IDLE_POLL_SEC, next_at - self._clock()))

    def _housekeeping(self) -> None:
        self.store.requeue_expired(self._clock())
        self.jobs.evict_expired()

    def _progress(self, job: Job, milestone: str) -> None:
        job.progress_percent = max(job.progress_percent, PROGRESS[milestone])
        job.notify()

    async def _run(self, job: Job) -> None:
        now = self._monotonic()
        if job.deadline is None:
            job.started_at = job.started_at or utcnow()
            job.deadline = now + self.config.job_timeout_sec
        remaining = job.deadline - now
        if remaining <= 0:
            self._fail(job, self._timeout_error(job))
            return
        job.attempts += 1
        job.progress_percent = 0
        self.usage.record_started(job.provider)
        self.events.event("started", job.request_id, job_id=job.job_id, attempt=job.attempts)
        logger.info("Processing %s with %s (attempt %d)", job.request_id, job.provider, job.attempts)
        self._progress(job, "started")

        started = self._monotonic()
        try:
            try:
                result = await asyncio.wait_for(self._execute(job), timeout=remaining)
            except asyncio.TimeoutError as exc:
                raise self._timeout_error(job) from exc
        except asyncio.CancelledError:
            self._release(job)
            raise
        except ProviderError as exc:
            if exc.retryable and job.attempts <= self.config.retry_attempts:
                await self._retry(job, exc)
            else:
                self._fail(job, exc)
        except DispatchError as exc:
            self._fail(job, exc)
        except Exception as exc:
            logger.exception("Unexpected failure in job %s", job.request_id)
            self._fail(job, exc)
        else:
            self._complete(job, result, (self._monotonic() - started) * 1000.0)

    def _release(self, job: Job) -> None:
        if not self.jobs.compare_and_set(job, JobStatus.ACTIVE, JobStatus.QUEUED):
            return
        job.attempts = max(0, job.attempts - 1)
        job.deadline = None
        job.progress_percent = 0
        self.store.put(self._entry_for(job))
        self.events.event("interrupted", job.request_id, job_id=job.job_id)
        logger.warning("Job %s interrupted by shutdown, requeued", job.request_id)
        job.notify()

    def _timeout_error(self, job: Job) -> JobTimeout:
        return JobTimeout(
            f"Job exceeded {self.config.job_timeout_sec:.0f}s budget",
            context={"attempts": job.attempts, "provider": job.provider},
        )

    async def _execute(self, job: Job) -> TranscriptionResult:
        if job.media is None:
            job.media = await self.prober.aprobe(job.source_file)
        self._progress(job, "probed")

        descriptor = self.catalog.get(job.provider)
        adapter = self.adapters.get(job.provider)
        path = await self.preprocessor.ensure_compatible(job.source_file, descriptor)
        self._progress(job, "preprocessed")
        try:
            self._progress(job, "provider_call_started")
            remaining = max(0.001, (job.deadline or self._monotonic()) - self._monotonic())
            try:
                result = await adapter.transcribe(path, job.options, timeout=remaining)
            except DispatchError:
                raise
            except Exception as exc:
                raise ProviderError(
                    f"{job.provider} adapter raised {type(exc).__name__}: {exc}",
                    provider=job.provider,
                    retryable=True,
                    cause=exc,
                ) from exc
            self._progress(job, "provider_call_finished")
        finally:
            if path != job.source_file:
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Failed to clean up processed file %s: %s", path, exc)

        duration = job.media.duration_seconds or result.duration_seconds
        result = result.model_copy(
            update={
                "provider_name": job.provider,
                "duration_seconds": result.duration_seconds or duration,
                "cost_usd": self.costs.estimate(duration, job.provider),
                "cached": False,
                "processed_at": utcnow(),
            }
        )
        if self.cache is not None and job.cache_key:
            await self.cache.set(job.cache_key, result, self.config.cache_ttl_sec)
        return result

    def _complete(self, job: Job, result: TranscriptionResult, elapsed_ms: float) -> None:
        result = result.model_copy(update={"processing_time_ms": round(elapsed_ms, 1)})
        job.result = result
        job.error = None
        if not self.jobs.compare_and_set(job, JobStatus.ACTIVE, JobStatus.COMPLETED):
            logger.error("Job %s left Active before completion", job.job_id)
            return
        self.store.ack(job.job_id)
        job.progress_percent = PROGRESS["completed"]
        self.usage.record_success(job.provider, elapsed_ms, result.duration_seconds, result.cost_usd)
        self.events.event(
            "completed",
            job.request_id,
            job_id=job.job_id,
            provider=job.provider,
            cost_usd=result.cost_usd,
            processing_ms=round(elapsed_ms, 1),
        )
        logger.info(
            "Job %s completed by %s in %.0fms (cost $%.4f)",
            job.request_id,
            job.provider,
            elapsed_ms,
            result.cost_usd,
        )
        job.notify()

    def _fail(self, job: Job, exc: BaseException) -> None:
        job.error = error_payload(exc)
        if not self.jobs.compare_and_set(job, JobStatus.ACTIVE, JobStatus.FAILED):
            logger.error("Job %s left Active before failure was recorded", job.job_id)
            return
        self.store.ack(job.job_id)
        self.usage.record_failure(job.provider, job.error["kind"])
        self.events.event("failed", job.request_id, job_id=job.job_id, error=job.error)
        logger.error(
            "Job %s failed after %d attempt(s): %s", job.request_id, job.attempts, exc
        )
        job.notify()

    async def _retry(self, job: Job, exc: ProviderError) -> None:
        delay = self.config.retry_base_delay_sec * (2 ** (job.attempts - 1))
        remaining = (job.deadline or self._monotonic()) - self._monotonic()
        # Never sleep past the deadline; the next claim reports the timeout.
        delay = max(0.0, min(delay, remaining))
        job.error = error_payload(exc)
        if not self.jobs.compare_and_set(job, JobStatus.ACTIVE, JobStatus.QUEUED):
            logger.error("Job %s left Active before retry", job.job_id)
            return
        job.progress_percent = 0
        self.usage.record_retry(job.provider)
        self.events.event(
            "retry", job.request_id, job_id=job.job_id, attempt=job.attempts, delay_sec=delay, error=job.error
        )
        logger.warning(
            "Attempt %d for %s failed (%s); retrying in %.1fs",
            job.attempts,
            job.request_id,
            exc,
            delay,
        )
        await self._enqueue(job, delay)
        job.notify()
