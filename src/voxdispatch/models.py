"""Pydantic models shared by the catalog, scheduler and collaborator facade."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums
class QualityTier(str, Enum):
    """Provider accuracy tier."""

    BASIC = "basic"
    GOOD = "good"
    VERY_GOOD = "very_good"
    EXCELLENT = "excellent"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {
    QualityTier.BASIC: 0,
    QualityTier.GOOD: 1,
    QualityTier.VERY_GOOD: 2,
    QualityTier.EXCELLENT: 3,
}


class JobStatus(str, Enum):
    """Job lifecycle status."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Catalog
class ProviderDescriptor(BaseModel):
    """Static description of an external speech-to-text provider."""

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str = ""
    cost_per_minute: float = Field(..., ge=0.0, description="USD per started minute")
    max_file_size_bytes: int = Field(..., gt=0)
    # Ordered: the first entry is the transcode target.
    supported_formats: tuple[str, ...] = Field(..., min_length=1)
    features: frozenset[str] = frozenset()
    quality_tier: QualityTier
    processing_time_factor: float = Field(0.4, gt=0.0)
    base_priority: int = 5

    @field_validator("supported_formats", mode="before")
    @classmethod
    def _normalise_formats(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, str):
            value = [value]
        ordered: dict[str, None] = {}
        for fmt in value:
            ordered[str(fmt).lower().lstrip(".")] = None
        return tuple(ordered)

    @field_validator("quality_tier", mode="before")
    @classmethod
    def _normalise_tier(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace(" ", "_")
        return value

    @property
    def first_format(self) -> str:
        return self.supported_formats[0]

    def supports(self, fmt: str | None) -> bool:
        return fmt is not None and fmt.lower().lstrip(".") in self.supported_formats


class SelectionCriteria(BaseModel):
    """Caller constraints applied on top of size/format filtering."""

    model_config = ConfigDict(frozen=True)

    required_features: frozenset[str] = frozenset()
    max_cost_per_minute: float | None = None
    exclude: frozenset[str] = frozenset()

    def digest_fields(self) -> dict[str, Any] | None:
        """Stable, JSON-ready view of the constraints; ``None`` when unconstrained."""

        if self == SelectionCriteria():
            return None
        return {
            "required_features": sorted(self.required_features),
            "max_cost_per_minute": self.max_cost_per_minute,
            "exclude": sorted(self.exclude),
        }


# Media
class MediaInfo(BaseModel):
    """Result of probing an input file."""

    duration_seconds: float = Field(..., ge=0.0)
    container_format: str
    codec: str | None = None
    sample_rate: int | None = None
    channels: int | None = None
    size_bytes: int = Field(..., ge=0)
    bitrate: int | None = None


# Results
class TranscriptionSegment(BaseModel):
    """One timed span of transcript text."""

    start: float = Field(0.0, ge=0.0)
    end: float = Field(0.0, ge=0.0)
    text: str = ""
    confidence: float | None = None
    speaker: str | None = None

    @field_validator("text", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> str:
        return str(value or "").strip()


class TranscriptionResult(BaseModel):
    """Normalised provider output, enriched with cost and cache metadata."""

    text: str
    language: str | None = None
    duration_seconds: float = Field(0.0, ge=0.0)
    segments: list[TranscriptionSegment] = Field(default_factory=list)
    words: list[dict[str, Any]] = Field(default_factory=list)
    confidence: float = Field(0.8, ge=0.0, le=1.0)
    provider_name: str
    cost_usd: float = 0.0
    cached: bool = False
    processed_at: datetime = Field(default_factory=utcnow)
    processing_time_ms: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        if value is None:
            return 0.8
        return max(0.0, min(1.0, float(value)))


# Collaborator-facing responses
class JobHandle(BaseModel):
    """Returned by ``submit``."""

    request_id: str
    job_id: str
    status: JobStatus
    provider: str
    file_size_bytes: int
    estimated_processing_time_ms: int
    queue_position: int = 0
    cached: bool = False
    result: TranscriptionResult | None = None


class StatusReport(BaseModel):
    """Non-blocking snapshot of a job."""

    request_id: str
    job_id: str
    status: JobStatus
    progress_percent: int = 0
    provider: str
    attempts: int = 0
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: TranscriptionResult | None = None
    error: dict[str, Any] | None = None


class CostEstimate(BaseModel):
    """Pre-authorisation quote used by billing collaborators."""

    provider: str
    billable_minutes: int
    usd: float
    credits: int


__all__ = [
    "QualityTier",
    "JobStatus",
    "ProviderDescriptor",
    "SelectionCriteria",
    "MediaInfo",
    "TranscriptionSegment",
    "TranscriptionResult",
    "JobHandle",
    "StatusReport",
    "CostEstimate",
    "utcnow",
]
