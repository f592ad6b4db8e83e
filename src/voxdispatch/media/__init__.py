"""Media inspection and format negotiation."""

from .preprocess import (
    NORMALIZATION_PROFILE,
    TRANSCODABLE_FORMATS,
    VIDEO_EXTENSIONS,
    MediaPreprocessor,
)
from .probe import MediaProber, file_format

__all__ = [
    "NORMALIZATION_PROFILE",
    "TRANSCODABLE_FORMATS",
    "VIDEO_EXTENSIONS",
    "MediaPreprocessor",
    "MediaProber",
    "file_format",
]
