"""Read-only registry of provider descriptors."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .errors import NotFound
from .models import ProviderDescriptor

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024

DEFAULT_PROVIDERS: tuple[dict[str, Any], ...] = (
    {
        "name": "whisper",
        "display_name": "OpenAI Whisper",
        "cost_per_minute": 0.006,
        "max_file_size_bytes": 25 * _MIB,
        "supported_formats": ["mp3", "mp4", "mpeg", "mpga", "m4a", "wav", "webm"],
        "features": ["timestamps", "language_detection", "translation"],
        "quality_tier": "excellent",
        "processing_time_factor": 0.3,
        "base_priority": 10,
    },
    {
        "name": "speechmatics",
        "display_name": "Speechmatics",
        "cost_per_minute": 0.005,
        "max_file_size_bytes": 100 * _MIB,
        "supported_formats": ["mp3", "wav", "m4a", "flac", "ogg"],
        "features": ["timestamps", "speaker_diarization", "punctuation"],
        "quality_tier": "very_good",
        "processing_time_factor": 0.4,
        "base_priority": 7,
    },
    {
        "name": "assemblyai",
        "display_name": "AssemblyAI",
        "cost_per_minute": 0.007,
        "max_file_size_bytes": 50 * _MIB,
        "supported_formats": ["mp3", "wav", "m4a", "flac"],
        "features": ["timestamps", "speaker_labels", "sentiment_analysis"],
        "quality_tier": "excellent",
        "processing_time_factor": 0.5,
        "base_priority": 9,
    },
    {
        "name": "deepgram",
        "display_name": "Deepgram",
        "cost_per_minute": 0.004,
        "max_file_size_bytes": 200 * _MIB,
        "supported_formats": ["mp3", "wav", "m4a", "flac", "ogg", "webm"],
        "features": ["timestamps", "diarization", "keywords"],
        "quality_tier": "very_good",
        "processing_time_factor": 0.2,
        "base_priority": 6,
    },
    {
        "name": "rev",
        "display_name": "Rev.ai",
        "cost_per_minute": 0.008,
        "max_file_size_bytes": 100 * _MIB,
        "supported_formats": ["mp3", "wav", "m4a", "flac"],
        "features": ["timestamps", "speaker_names", "custom_vocabulary"],
        "quality_tier": "excellent",
        "processing_time_factor": 0.6,
        "base_priority": 8,
    },
)


class ProviderCatalog:
    """Immutable name -> :class:`ProviderDescriptor` lookup."""

    def __init__(self, descriptors: Iterable[ProviderDescriptor | Mapping[str, Any]]):
        entries: dict[str, ProviderDescriptor] = {}
        for item in descriptors:
            descriptor = (
                item
                if isinstance(item, ProviderDescriptor)
                else ProviderDescriptor.model_validate(dict(item))
            )
            if descriptor.name in entries:
                raise ValueError(f"Duplicate provider in catalog: {descriptor.name}")
            entries[descriptor.name] = descriptor
        if not entries:
            raise ValueError("Provider catalog must contain at least one provider")
        self._entries = MappingProxyType(entries)

    @classmethod
    def default(cls) -> ProviderCatalog:
        return cls(DEFAULT_PROVIDERS)

    @classmethod
    def from_file(cls, path: str | Path) -> ProviderCatalog:
        """Load a catalog from a JSON list (or ``{"providers": [...]}``)."""

        file_path = Path(path)
        data = json.loads(file_path.read_text(encoding="utf-8"))
        if isinstance(data, Mapping):
            data = data.get("providers", [])
        if not isinstance(data, list):
            raise ValueError(f"{file_path} must contain a list of providers")
        try:
            catalog = cls(data)
        except PydanticValidationError as exc:
            raise ValueError(f"Invalid provider catalog {file_path}: {exc}") from exc
        logger.info("Loaded %d providers from %s", len(catalog), file_path)
        return catalog

    def get(self, name: str) -> ProviderDescriptor:
        try:
            return self._entries[name]
        except KeyError:
            raise NotFound(
                f"Unknown transcription provider: {name}",
                context={"provider": name, "available": self.names()},
            ) from None

    def all(self) -> list[ProviderDescriptor]:
        return list(self._entries.values())

    def names(self) -> list[str]:
        return sorted(self._entries)

    def all_formats(self) -> frozenset[str]:
        return frozenset(fmt for entry in self._entries.values() for fmt in entry.supported_formats)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["DEFAULT_PROVIDERS", "ProviderCatalog"]
