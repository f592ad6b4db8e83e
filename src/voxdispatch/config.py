"""Configuration defaults for the voxdispatch transcription core."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import fields as dataclass_fields
from pathlib import Path
from typing import Any

__all__ = [
    "DispatchConfig",
    "DEFAULT_DISPATCH_CONFIG",
    "ENV_PREFIX",
    "build_dispatch_config",
    "config_from_env",
]

ENV_PREFIX = "VOXDISPATCH_"
_MIB = 1024 * 1024


def _ensure_numeric_range(
    name: str,
    value: float,
    *,
    ge: float | None = None,
    gt: float | None = None,
    le: float | None = None,
) -> None:
    """Validate numeric range constraints for configuration fields."""

    if ge is not None and value < ge:
        raise ValueError(f"{name} must be >= {ge}")
    if gt is not None and value <= gt:
        raise ValueError(f"{name} must be > {gt}")
    if le is not None and value > le:
        raise ValueError(f"{name} must be <= {le}")


def _coerce_optional_path(value: Path | str | None) -> Path | None:
    if value is None or value == "":
        return None
    return Path(value)


@dataclass(slots=True)
class DispatchConfig:
    """Validated configuration for the scheduler, cache and adapters."""

    max_concurrent_jobs: int = 3
    retry_attempts: int = 2
    retry_base_delay_sec: float = 5.0
    job_timeout_sec: float = 1800.0
    max_file_size_bytes: int = 100 * _MIB
    enable_caching: bool = True
    cache_ttl_sec: float = 7200.0
    cache_max_entries: int = 10_000
    cache_purge_interval_sec: float = 60.0
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    temp_dir: Path = Path(tempfile.gettempdir()) / "voxdispatch"
    jobs_dir: Path | None = None
    job_retention_sec: float = 300.0
    visibility_timeout_sec: float = 1900.0
    provider_timeout_sec: float = 300.0
    catalog_path: Path | None = None
    event_log_path: Path | None = None
    ffmpeg_bin: str = os.getenv("FFMPEG_BIN") or "ffmpeg"
    ffprobe_bin: str = os.getenv("FFPROBE_BIN") or "ffprobe"

    def __post_init__(self) -> None:
        """Validate and normalise configuration fields."""

        self.temp_dir = Path(self.temp_dir)
        self.jobs_dir = _coerce_optional_path(self.jobs_dir)
        self.catalog_path = _coerce_optional_path(self.catalog_path)
        self.event_log_path = _coerce_optional_path(self.event_log_path)

        self._validate_positive_int("max_concurrent_jobs", self.max_concurrent_jobs)
        self._validate_positive_int("max_file_size_bytes", self.max_file_size_bytes)
        if not isinstance(self.retry_attempts, int) or self.retry_attempts < 0:
            raise ValueError("retry_attempts must be an integer >= 0")
        _ensure_numeric_range("retry_base_delay_sec", self.retry_base_delay_sec, ge=0.0)
        _ensure_numeric_range("job_timeout_sec", self.job_timeout_sec, gt=0.0)
        _ensure_numeric_range("cache_ttl_sec", self.cache_ttl_sec, gt=0.0)
        self._validate_positive_int("cache_max_entries", self.cache_max_entries)
        _ensure_numeric_range("cache_purge_interval_sec", self.cache_purge_interval_sec, gt=0.0)
        _ensure_numeric_range("job_retention_sec", self.job_retention_sec, ge=0.0)
        _ensure_numeric_range("visibility_timeout_sec", self.visibility_timeout_sec, gt=0.0)
        if self.visibility_timeout_sec < self.job_timeout_sec:
            raise ValueError("visibility_timeout_sec must be >= job_timeout_sec")
        _ensure_numeric_range("provider_timeout_sec", self.provider_timeout_sec, gt=0.0)
        self.enable_caching = bool(self.enable_caching)
        self.cache_backend = self._lower_choice(
            "cache_backend", self.cache_backend, {"memory", "redis"}
        )

    @staticmethod
    def _lower_choice(name: str, value: Any, allowed: set[str] | None) -> str:
        if not isinstance(value, str):
            raise ValueError(f"{name} must be a string")
        lowered = value.lower()
        if allowed is not None and lowered not in allowed:
            raise ValueError(f"{name} must be one of {sorted(allowed)}")
        return lowered

    @staticmethod
    def _validate_positive_int(name: str, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError(f"{name} must be an integer > 0")

    def model_dump(self) -> dict[str, Any]:
        """Return the configuration as a dictionary."""

        return {field.name: getattr(self, field.name) for field in dataclass_fields(self)}

    @classmethod
    def model_validate(cls, data: Mapping[str, Any] | DispatchConfig) -> DispatchConfig:
        """Validate a mapping and construct a configuration instance."""

        if isinstance(data, DispatchConfig):
            return data
        if not isinstance(data, Mapping):
            raise ValueError("DispatchConfig.model_validate expects a mapping")
        return cls(**dict(data))


DEFAULT_DISPATCH_CONFIG: dict[str, Any] = DispatchConfig().model_dump()


def build_dispatch_config(
    overrides: Mapping[str, Any] | DispatchConfig | None = None,
) -> DispatchConfig:
    """Return a validated configuration merged with ``overrides``."""

    if isinstance(overrides, DispatchConfig):
        return overrides

    merged = DispatchConfig().model_dump()
    for key, value in (overrides or {}).items():
        if key not in merged:
            raise ValueError(f"Unknown configuration key: {key}")
        if value is None:
            continue
        merged[key] = value

    try:
        return DispatchConfig.model_validate(merged)
    except TypeError as exc:
        raise ValueError(str(exc)) from exc


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_env_value(name: str, raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{name} must be a boolean flag, got {raw!r}")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def config_from_env(
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> DispatchConfig:
    """Build a configuration from ``VOXDISPATCH_*`` variables plus ``overrides``."""

    env = os.environ if environ is None else environ
    defaults = DispatchConfig().model_dump()
    values: dict[str, Any] = {}
    for name, default in defaults.items():
        raw = env.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None or raw == "":
            continue
        try:
            values[name] = _parse_env_value(name, raw, default)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {exc}") from exc
    values.update(overrides)
    return build_dispatch_config(values)
