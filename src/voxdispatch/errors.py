"""Unified error types for the voxdispatch transcription core.

Every failure a collaborator can observe is a :class:`DispatchError`.  The
``kind`` attribute is the stable, serialisable name that ends up in job status
payloads, while ``context`` carries JSON-safe diagnostics.  Validation and
selection errors surface synchronously from ``submit``; the rest are recorded on
the job and only become visible through ``get_status``.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "DispatchError",
    "ValidationError",
    "NotFound",
    "NoSuitableProvider",
    "UnreadableMedia",
    "PreprocessingFailed",
    "ProviderError",
    "JobTimeout",
    "CacheError",
    "attach_context",
    "error_payload",
    "is_retryable",
]


@dataclass(slots=True)
class DispatchError(RuntimeError):
    """Base class for transcription dispatch failures.

    Attributes
    ----------
    message:
        Human readable description of the failure.
    context:
        JSON serialisable dictionary with granular diagnostics.
    cause:
        Underlying exception (kept for debugging, not included in ``__str__``).
    """

    kind: ClassVar[str] = "DispatchError"
    retryable: ClassVar[bool] = False

    message: str
    context: MutableMapping[str, Any] = field(default_factory=dict)
    cause: Exception | None = None

    def __post_init__(self) -> None:
        if self.context is None:
            self.context = {}

    def __str__(self) -> str:
        return self.message


class ValidationError(DispatchError):
    """Missing file, oversize upload or unsupported format."""

    kind = "ValidationError"


class NotFound(DispatchError):
    """Unknown provider name or request identifier."""

    kind = "NotFound"


class NoSuitableProvider(DispatchError):
    """No catalog entry accepts the file's size and format."""

    kind = "NoSuitableProvider"


class UnreadableMedia(DispatchError):
    """The input has no audio stream or cannot be parsed."""

    kind = "UnreadableMedia"


class PreprocessingFailed(DispatchError):
    """Transcoding into a provider-compatible format failed."""

    kind = "PreprocessingFailed"


@dataclass(slots=True)
class ProviderError(DispatchError):
    """Failure reported by a provider adapter.

    Adapters decide whether the failure is transient (rate limits, 5xx,
    transport problems) or fatal (bad credentials, rejected payload).
    """

    kind: ClassVar[str] = "ProviderError"

    provider: str | None = None
    status_code: int | None = None
    retryable: bool = field(default=True, kw_only=True)  # type: ignore[misc]


class JobTimeout(DispatchError):
    """The job exceeded its wall-clock budget."""

    kind = "Timeout"


class CacheError(DispatchError):
    """Cache backend failure; never propagated to callers."""

    kind = "CacheError"


def attach_context(error: DispatchError, context: Mapping[str, Any] | None) -> DispatchError:
    """Merge ``context`` into ``error.context`` preserving existing keys."""

    if not context:
        return error
    for key, value in context.items():
        error.context.setdefault(key, value)
    return error


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, DispatchError):
        return bool(exc.retryable)
    return False


def error_payload(exc: BaseException) -> dict[str, Any]:
    """Return the ``{kind, message, context}`` dict stored on failed jobs."""

    if isinstance(exc, DispatchError):
        payload: dict[str, Any] = {
            "kind": exc.kind,
            "message": exc.message,
            "context": dict(exc.context),
        }
        if isinstance(exc, ProviderError):
            payload["retryable"] = exc.retryable
            if exc.provider:
                payload["provider"] = exc.provider
            if exc.status_code is not None:
                payload["status_code"] = exc.status_code
        return payload
    return {"kind": type(exc).__name__, "message": str(exc), "context": {}}
