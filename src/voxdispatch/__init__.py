"""Multi-provider speech-to-text dispatch core."""

from .catalog import ProviderCatalog
from .config import DispatchConfig, build_dispatch_config, config_from_env
from .errors import (
    CacheError,
    DispatchError,
    JobTimeout,
    NoSuitableProvider,
    NotFound,
    PreprocessingFailed,
    ProviderError,
    UnreadableMedia,
    ValidationError,
)
from .models import (
    CostEstimate,
    JobHandle,
    JobStatus,
    MediaInfo,
    ProviderDescriptor,
    QualityTier,
    SelectionCriteria,
    StatusReport,
    TranscriptionResult,
    TranscriptionSegment,
)
from .service import TranscriptionService, create_service

__version__ = "0.3.0"

__all__ = [
    "CacheError",
    "CostEstimate",
    "DispatchConfig",
    "DispatchError",
    "JobHandle",
    "JobStatus",
    "JobTimeout",
    "MediaInfo",
    "NoSuitableProvider",
    "NotFound",
    "PreprocessingFailed",
    "ProviderCatalog",
    "ProviderDescriptor",
    "ProviderError",
    "QualityTier",
    "SelectionCriteria",
    "StatusReport",
    "TranscriptionResult",
    "TranscriptionSegment",
    "TranscriptionService",
    "UnreadableMedia",
    "ValidationError",
    "__version__",
    "build_dispatch_config",
    "config_from_env",
    "create_service",
]
