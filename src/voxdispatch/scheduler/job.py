"""Job records and the concurrently mutated job table."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import ValidationError
from ..models import JobStatus, MediaInfo, StatusReport, TranscriptionResult, utcnow

logger = logging.getLogger(__name__)

__all__ = ["Job", "JobTable", "PROGRESS"]

# Coarse milestones reported while a job is Active.
PROGRESS = {
    "started": 5,
    "probed": 10,
    "preprocessed": 30,
    "provider_call_started": 40,
    "provider_call_finished": 90,
    "completed": 100,
}


class Job:
    """Lifecycle record of one transcription request."""

    def __init__(
        self,
        request_id: str,
        source_file: Path,
        file_size_bytes: int,
        provider: str,
        options: dict[str, Any] | None = None,
        priority: int = 0,
        cache_key: str | None = None,
        media: MediaInfo | None = None,
        job_id: str | None = None,
    ):
        self.job_id = job_id or str(uuid.uuid4())
        self.request_id = request_id
        self.source_file = Path(source_file)
        self.file_size_bytes = int(file_size_bytes)
        self.provider = provider
        self.options: dict[str, Any] = dict(options or {})
        self.priority = int(priority)
        self.cache_key = cache_key
        self.media = media

        self.status = JobStatus.QUEUED
        self.progress_percent = 0
        self.created_at: datetime = utcnow()
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.attempts = 0
        self.result: TranscriptionResult | None = None
        self.error: dict[str, Any] | None = None
        # Monotonic wall-clock budget, fixed on first activation.
        self.deadline: float | None = None

        self._subscribers: list[asyncio.Queue[StatusReport]] = []

    def report(self) -> StatusReport:
        return StatusReport(
            request_id=self.request_id,
            job_id=self.job_id,
            status=self.status,
            progress_percent=self.progress_percent,
            provider=self.provider,
            attempts=self.attempts,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            result=self.result,
            error=self.error,
        )

    def subscribe(self, maxsize: int = 100) -> asyncio.Queue[StatusReport]:
        """Return a queue that receives a status snapshot on every update."""

        queue: asyncio.Queue[StatusReport] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StatusReport]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def notify(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.report()
        for queue in self._subscribers[:]:
            try:
                queue.put_nowait(snapshot)
            except asyncio.QueueFull:
                logger.warning("Status queue full for job %s, removing subscriber", self.job_id)
                self._subscribers.remove(queue)

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe representation used by durable queue stores."""

        return {
            "job_id": self.job_id,
            "request_id": self.request_id,
            "source_file": str(self.source_file),
            "file_size_bytes": self.file_size_bytes,
            "provider": self.provider,
            "options": self.options,
            "priority": self.priority,
            "cache_key": self.cache_key,
            "media": self.media.model_dump(mode="json") if self.media else None,
            "status": self.status.value,
            "progress_percent": self.progress_percent,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "attempts": self.attempts,
            "error": self.error,
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> Job:
        job = cls(
            request_id=data["request_id"],
            source_file=Path(data["source_file"]),
            file_size_bytes=data["file_size_bytes"],
            provider=data["provider"],
            options=data.get("options") or {},
            priority=data.get("priority", 0),
            cache_key=data.get("cache_key"),
            media=MediaInfo.model_validate(data["media"]) if data.get("media") else None,
            job_id=data["job_id"],
        )
        job.created_at = datetime.fromisoformat(data["created_at"])
        if data.get("started_at"):
            job.started_at = datetime.fromisoformat(data["started_at"])
        job.attempts = int(data.get("attempts", 0))
        job.error = data.get("error")
        return job

    def __repr__(self) -> str:
        return (
            f"Job(request_id={self.request_id!r}, provider={self.provider!r}, "
            f"status={self.status.value}, attempts={self.attempts})"
        )


_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.ACTIVE},
    JobStatus.ACTIVE: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.QUEUED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobTable:
    """Request-id indexed jobs with atomic compare-and-set transitions.

    Terminal jobs stay readable for ``retention_sec`` and are evicted lazily.
    """

    def __init__(self, retention_sec: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.retention_sec = retention_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._by_request: dict[str, Job] = {}
        self._by_job: dict[str, Job] = {}
        self._terminal_since: dict[str, float] = {}

    def add(self, job: Job) -> None:
        with self._lock:
            if job.request_id in self._by_request:
                raise ValidationError(
                    f"A job already exists for request {job.request_id}",
                    context={"request_id": job.request_id},
                )
            self._by_request[job.request_id] = job
            self._by_job[job.job_id] = job
            if job.status.is_terminal:
                self._terminal_since[job.request_id] = self._clock()

    def get(self, request_id: str) -> Job | None:
        self.evict_expired()
        with self._lock:
            return self._by_request.get(request_id)

    def get_by_job_id(self, job_id: str) -> Job | None:
        with self._lock:
            return self._by_job.get(job_id)

    def compare_and_set(self, job: Job, expected: JobStatus, new: JobStatus) -> bool:
        """Move ``job`` from ``expected`` to ``new``; ``False`` if someone got there first."""

        if new not in _TRANSITIONS[expected]:
            raise ValueError(f"Illegal job transition {expected.value} -> {new.value}")
        with self._lock:
            if job.status is not expected:
                return False
            job.status = new
            if new.is_terminal:
                job.finished_at = utcnow()
                self._terminal_since[job.request_id] = self._clock()
            return True

    def count(self, status: JobStatus) -> int:
        with self._lock:
            return sum(1 for job in self._by_request.values() if job.status is status)

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                request_id
                for request_id, since in self._terminal_since.items()
                if now - since >= self.retention_sec
            ]
            for request_id in expired:
                job = self._by_request.pop(request_id, None)
                self._terminal_since.pop(request_id, None)
                if job is not None:
                    self._by_job.pop(job.job_id, None)
        if expired:
            logger.debug("Evicted %d finished jobs", len(expired))
        return len(expired)

    def __iter__(self) -> Iterator[Job]:
        with self._lock:
            return iter(list(self._by_request.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_request)
