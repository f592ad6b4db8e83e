"""Priority queue stores consumed by the scheduler's workers.

A claimed entry is leased rather than removed: it stays invisible until it is
acknowledged, put back, or its visibility timeout runs out.  The file-backed
store persists every entry so queued work survives a restart; leased entries
found on disk at start-up were Active when the process died and are requeued.
"""

from __future__ import annotations

import heapq
import itertools
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

__all__ = ["FileQueueStore", "MemoryQueueStore", "QueueEntry", "QueueStore"]


class QueueEntry(BaseModel):
    job_id: str
    request_id: str
    priority: int
    created_at: float = Field(..., description="Epoch seconds; FIFO tie-breaker")
    available_at: float = 0.0
    leased_until: float | None = None
    job: dict[str, Any] = Field(default_factory=dict)

    def order_key(self, seq: int) -> tuple[int, float, int]:
        return (-self.priority, self.created_at, seq)


class QueueStore(ABC):
    """Highest priority first, FIFO by ``created_at`` within a priority."""

    @abstractmethod
    def put(self, entry: QueueEntry) -> None:
        """Enqueue ``entry``, replacing any lease held for the same job."""

    @abstractmethod
    def claim(self, now: float, visibility_timeout: float) -> QueueEntry | None:
        """Lease the best entry available at ``now``."""

    @abstractmethod
    def ack(self, job_id: str) -> None:
        """Drop a leased entry for good."""

    @abstractmethod
    def requeue_expired(self, now: float) -> list[str]:
        """Make entries whose lease ran out visible again."""

    @abstractmethod
    def next_available_at(self) -> float | None: ...

    @abstractmethod
    def position(self, job_id: str) -> int | None:
        """Number of ready entries ahead of ``job_id`` (``None`` if not waiting)."""

    def load(self) -> list[QueueEntry]:
        """Entries recovered from durable storage."""
        return []

    @abstractmethod
    def __len__(self) -> int: ...


class MemoryQueueStore(QueueStore):
    def __init__(self) -> None:
        self._seq = itertools.count()
        self._ready: list[tuple[tuple[int, float, int], str]] = []
        self._delayed: list[tuple[float, int, str]] = []
        self._entries: dict[str, QueueEntry] = {}
        self._leased: dict[str, QueueEntry] = {}

    def put(self, entry: QueueEntry) -> None:
        self._leased.pop(entry.job_id, None)
        entry = entry.model_copy(update={"leased_until": None})
        self._entries[entry.job_id] = entry
        seq = next(self._seq)
        if entry.available_at > 0:
            heapq.heappush(self._delayed, (entry.available_at, seq, entry.job_id))
        else:
            heapq.heappush(self._ready, (entry.order_key(seq), entry.job_id))
        self._persist(entry)

    def _promote(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, job_id = heapq.heappop(self._delayed)
            entry = self._entries.get(job_id)
            if entry is not None:
                heapq.heappush(self._ready, (entry.order_key(seq), job_id))

    def claim(self, now: float, visibility_timeout: float) -> QueueEntry | None:
        self._promote(now)
        while self._ready:
            _, job_id = heapq.heappop(self._ready)
            entry = self._entries.pop(job_id, None)
            if entry is None:
                continue
            leased = entry.model_copy(update={"leased_until": now + visibility_timeout})
            self._leased[job_id] = leased
            self._persist(leased)
            return leased
        return None

    def ack(self, job_id: str) -> None:
        self._leased.pop(job_id, None)
        self._entries.pop(job_id, None)
        self._discard(job_id)

    def requeue_expired(self, now: float) -> list[str]:
        expired = [
            job_id
            for job_id, entry in self._leased.items()
            if entry.leased_until is not None and entry.leased_until <= now
        ]
        for job_id in expired:
            entry = self._leased.pop(job_id)
            logger.warning("Lease expired for job %s, requeueing", job_id)
            self.put(entry.model_copy(update={"available_at": 0.0}))
        return expired

    def next_available_at(self) -> float | None:
        return self._delayed[0][0] if self._delayed else None

    def position(self, job_id: str) -> int | None:
        target = self._entries.get(job_id)
        if target is None:
            return None
        ahead = sorted(
            (e for e in self._entries.values() if e.available_at <= target.available_at),
            key=lambda e: (-e.priority, e.created_at),
        )
        for index, entry in enumerate(ahead):
            if entry.job_id == job_id:
                return index
        return None

    @property
    def leased_count(self) -> int:
        return len(self._leased)

    def __len__(self) -> int:
        return len(self._entries)

    def _persist(self, entry: QueueEntry) -> None:
        return None

    def _discard(self, job_id: str) -> None:
        return None


class FileQueueStore(MemoryQueueStore):
    """Memory queue mirrored to one JSON document per job in ``jobs_dir``."""

    def __init__(self, jobs_dir: Path):
        super().__init__()
        self.jobs_dir = Path(jobs_dir)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

    def load(self) -> list[QueueEntry]:
        recovered: list[QueueEntry] = []
        for job_file in sorted(self.jobs_dir.glob("*.json")):
            try:
                entry = QueueEntry.model_validate_json(job_file.read_text(encoding="utf-8"))
            except (OSError, PydanticValidationError) as exc:
                logger.error("Failed to load queued job from %s: %s", job_file, exc)
                continue
            if entry.leased_until is not None:
                logger.info("Requeueing job %s that was active at shutdown", entry.job_id)
            # Backoff delays are measured against the old process; start fresh.
            self.put(entry.model_copy(update={"available_at": 0.0}))
            recovered.append(entry)
        if recovered:
            logger.info("Recovered %d queued jobs from %s", len(recovered), self.jobs_dir)
        return recovered

    def _path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def _persist(self, entry: QueueEntry) -> None:
        destination = self._path(entry.job_id)
        tmp_path: Path | None = None
        try:
            with NamedTemporaryFile(
                "w", dir=str(self.jobs_dir), suffix=".tmp", delete=False, encoding="utf-8"
            ) as tmp_file:
                tmp_path = Path(tmp_file.name)
                tmp_file.write(json.dumps(entry.model_dump(mode="json"), indent=2))
            os.replace(tmp_path, destination)
            tmp_path = None
        except OSError as exc:
            logger.error("Failed to save job %s: %s", entry.job_id, exc)
        finally:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    def _discard(self, job_id: str) -> None:
        try:
            self._path(job_id).unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Failed to remove job file for %s: %s", job_id, exc)
