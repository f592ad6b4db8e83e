"""Duration -> money/credit conversion.

Billing is per started minute: ``ceil(duration / 60) * cost_per_minute``.
Arithmetic goes through :class:`~decimal.Decimal` so that a quote of
``$0.021`` is exactly 21 credits rather than 22 after float noise.
"""

from __future__ import annotations

import math
from decimal import ROUND_CEILING, Decimal

from .catalog import ProviderCatalog
from .models import CostEstimate, ProviderDescriptor

__all__ = [
    "CREDITS_PER_USD",
    "DEFAULT_PROCESSING_TIME_MS",
    "CostCalculator",
    "billable_minutes",
    "credit_cost",
    "estimate_processing_time_ms",
]

CREDITS_PER_USD = 1000
DEFAULT_PROCESSING_TIME_MS = 60_000
_NANO_USD = Decimal("1e-9")


def billable_minutes(duration_seconds: float) -> int:
    return max(0, math.ceil(max(0.0, float(duration_seconds)) / 60.0))


def _cost(duration_seconds: float, descriptor: ProviderDescriptor) -> float:
    minutes = billable_minutes(duration_seconds)
    return float(Decimal(minutes) * Decimal(str(descriptor.cost_per_minute)))


def credit_cost(cost_usd: float) -> int:
    """Return the whole number of credits covering ``cost_usd``."""

    # Float noise below a nano-dollar is not billable.
    amount = Decimal(str(cost_usd)).quantize(_NANO_USD)
    credits = (amount * CREDITS_PER_USD).to_integral_value(rounding=ROUND_CEILING)
    return max(0, int(credits))


def estimate_processing_time_ms(
    duration_seconds: float | None, descriptor: ProviderDescriptor
) -> int:
    if duration_seconds is None or duration_seconds <= 0:
        return DEFAULT_PROCESSING_TIME_MS
    return int(round(duration_seconds * descriptor.processing_time_factor * 1000))


class CostCalculator:
    """Pure cost functions bound to a catalog snapshot."""

    def __init__(self, catalog: ProviderCatalog):
        self.catalog = catalog

    def estimate(self, duration_seconds: float, provider_name: str) -> float:
        return _cost(duration_seconds, self.catalog.get(provider_name))

    def credit_cost(self, cost_usd: float) -> int:
        return credit_cost(cost_usd)

    def quote(self, duration_seconds: float, provider_name: str) -> CostEstimate:
        usd = self.estimate(duration_seconds, provider_name)
        return CostEstimate(
            provider=provider_name,
            billable_minutes=billable_minutes(duration_seconds),
            usd=usd,
            credits=credit_cost(usd),
        )
