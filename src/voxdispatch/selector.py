"""Deterministic provider choice from file characteristics."""

from __future__ import annotations

import logging

from .catalog import ProviderCatalog
from .errors import NoSuitableProvider
from .models import ProviderDescriptor, SelectionCriteria

logger = logging.getLogger(__name__)

__all__ = ["LONG_MEDIA_THRESHOLD_SEC", "ProviderSelector"]

# Above this duration cost dominates; below it accuracy does.
LONG_MEDIA_THRESHOLD_SEC = 600.0


class ProviderSelector:
    def __init__(self, catalog: ProviderCatalog):
        self.catalog = catalog

    def eligible(
        self,
        file_format: str | None,
        file_size: int,
        criteria: SelectionCriteria | None = None,
    ) -> list[ProviderDescriptor]:
        """Providers able to take the file; ``file_format=None`` skips the format check."""

        criteria = criteria or SelectionCriteria()
        candidates = []
        for descriptor in self.catalog.all():
            if descriptor.max_file_size_bytes < file_size:
                continue
            if file_format is not None and not descriptor.supports(file_format):
                continue
            if descriptor.name in criteria.exclude:
                continue
            if not criteria.required_features <= descriptor.features:
                continue
            if (
                criteria.max_cost_per_minute is not None
                and descriptor.cost_per_minute > criteria.max_cost_per_minute
            ):
                continue
            candidates.append(descriptor)
        return candidates

    def select(
        self,
        file_format: str | None,
        file_size: int,
        duration_seconds: float,
        criteria: SelectionCriteria | None = None,
    ) -> str:
        candidates = self.eligible(file_format, file_size, criteria)
        if not candidates:
            raise NoSuitableProvider(
                "No suitable transcription service found for this file",
                context={"format": file_format, "size_bytes": file_size},
            )

        if duration_seconds > LONG_MEDIA_THRESHOLD_SEC:
            chosen = min(candidates, key=lambda d: (d.cost_per_minute, d.name))
        else:
            chosen = min(
                candidates,
                key=lambda d: (-d.quality_tier.rank, d.cost_per_minute, d.name),
            )
        logger.debug(
            "Selected %s for %s file (%d bytes, %.1fs) among %s",
            chosen.name,
            file_format,
            file_size,
            duration_seconds,
            [d.name for d in candidates],
        )
        return chosen.name
