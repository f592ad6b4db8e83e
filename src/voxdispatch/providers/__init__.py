"""Speech-to-text provider adapters."""

from __future__ import annotations

from .base import (
    AdapterRegistry,
    HttpAdapter,
    ProviderAdapter,
    average_confidence,
    is_retryable_status,
)
from .deepgram import DeepgramAdapter
from .polling import AssemblyAIAdapter, PollingAdapter, RevAIAdapter, SpeechmaticsAdapter
from .whisper import WhisperAdapter

ADAPTER_CLASSES: dict[str, type[HttpAdapter]] = {
    WhisperAdapter.name: WhisperAdapter,
    DeepgramAdapter.name: DeepgramAdapter,
    AssemblyAIAdapter.name: AssemblyAIAdapter,
    RevAIAdapter.name: RevAIAdapter,
    SpeechmaticsAdapter.name: SpeechmaticsAdapter,
}


def default_adapters(request_timeout_sec: float = 300.0) -> AdapterRegistry:
    """Registry with one HTTP adapter per built-in provider, keys from the environment."""

    return AdapterRegistry(
        {name: cls(request_timeout_sec=request_timeout_sec) for name, cls in ADAPTER_CLASSES.items()}
    )


__all__ = [
    "ADAPTER_CLASSES",
    "AdapterRegistry",
    "AssemblyAIAdapter",
    "DeepgramAdapter",
    "HttpAdapter",
    "PollingAdapter",
    "ProviderAdapter",
    "RevAIAdapter",
    "SpeechmaticsAdapter",
    "WhisperAdapter",
    "average_confidence",
    "default_adapters",
    "is_retryable_status",
]
