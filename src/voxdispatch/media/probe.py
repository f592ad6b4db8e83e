"""Read-only inspection of media files."""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
from pathlib import Path
from typing import Any

import soundfile as sf

from ..errors import UnreadableMedia
from ..models import MediaInfo

logger = logging.getLogger(__name__)

__all__ = ["MediaProber", "file_format"]


def file_format(path: str | Path) -> str:
    """Lower-case extension without the dot (``""`` when absent)."""

    return Path(path).suffix.lower().lstrip(".")


def _optional_int(value: Any) -> int | None:
    try:
        return int(value) if value not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


class MediaProber:
    """Extract duration/format/codec metadata.

    soundfile handles the common uncompressed and lossless containers without
    spawning a process; anything else goes through ``ffprobe``.
    """

    def __init__(self, ffprobe_bin: str = "ffprobe", timeout_sec: float = 30.0):
        self.ffprobe_bin = ffprobe_bin
        self.timeout_sec = timeout_sec

    def probe(self, path: str | Path) -> MediaInfo:
        file_path = Path(path)
        if not file_path.is_file():
            raise UnreadableMedia(f"Media file not found: {file_path}", context={"path": str(file_path)})
        size = file_path.stat().st_size

        info = self._probe_soundfile(file_path, size)
        if info is not None:
            return info
        return self._probe_ffprobe(file_path, size)

    async def aprobe(self, path: str | Path) -> MediaInfo:
        return await asyncio.to_thread(self.probe, path)

    def _probe_soundfile(self, file_path: Path, size: int) -> MediaInfo | None:
        try:
            info = sf.info(str(file_path))
        except Exception as exc:  # libsndfile raises a bare RuntimeError subclass
            logger.debug("soundfile could not inspect %s: %s", file_path, exc)
            return None
        if not info.channels or not info.samplerate:
            return None
        duration = float(info.duration or 0.0)
        return MediaInfo(
            duration_seconds=duration,
            container_format=str(info.format).lower(),
            codec=str(info.subtype).lower() if info.subtype else None,
            sample_rate=int(info.samplerate),
            channels=int(info.channels),
            size_bytes=size,
            bitrate=int(size * 8 / duration) if duration > 0 else None,
        )

    def _probe_ffprobe(self, file_path: Path, size: int) -> MediaInfo:
        cmd = [
            self.ffprobe_bin,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(file_path),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_sec)
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as exc:
            raise UnreadableMedia(
                f"Failed to analyze audio file: {exc}",
                context={"path": str(file_path)},
                cause=exc,
            ) from exc

        if result.returncode != 0:
            raise UnreadableMedia(
                "Failed to analyze audio file",
                context={"path": str(file_path), "stderr": (result.stderr or "").strip()[:500]},
            )
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise UnreadableMedia(
                "ffprobe returned malformed output", context={"path": str(file_path)}, cause=exc
            ) from exc

        audio_stream = next(
            (s for s in data.get("streams", []) if s.get("codec_type") == "audio"),
            None,
        )
        if audio_stream is None:
            raise UnreadableMedia("No audio stream found in file", context={"path": str(file_path)})

        fmt = data.get("format", {})
        try:
            duration = float(fmt.get("duration") or audio_stream.get("duration") or 0.0)
        except (TypeError, ValueError):
            duration = 0.0
        return MediaInfo(
            duration_seconds=max(0.0, duration),
            container_format=str(fmt.get("format_name") or file_path.suffix.lstrip(".")).lower(),
            codec=audio_stream.get("codec_name"),
            sample_rate=_optional_int(audio_stream.get("sample_rate")),
            channels=_optional_int(audio_stream.get("channels")),
            size_bytes=_optional_int(fmt.get("size")) or size,
            bitrate=_optional_int(fmt.get("bit_rate")),
        )
