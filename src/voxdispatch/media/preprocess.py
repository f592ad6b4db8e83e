"""Transcode inputs into a format the chosen provider accepts."""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path

from ..errors import PreprocessingFailed
from ..models import ProviderDescriptor
from .probe import file_format

logger = logging.getLogger(__name__)

__all__ = ["NORMALIZATION_PROFILE", "TRANSCODABLE_FORMATS", "MediaPreprocessor", "VIDEO_EXTENSIONS"]

VIDEO_EXTENSIONS = {
    "mp4",
    "m4v",
    "mov",
    "mkv",
    "webm",
    "avi",
    "mpg",
    "mpeg",
    "wmv",
    "flv",
}

# Inputs ffmpeg can normalise even when no provider takes them directly.
TRANSCODABLE_FORMATS = VIDEO_EXTENSIONS | {"aac", "aif", "aiff", "amr", "caf", "opus", "wma", "3gp"}

NORMALIZATION_PROFILE = {"channels": 1, "sample_rate": 16000, "bitrate": "128k"}

_CODECS = {
    "mp3": "libmp3lame",
    "mpga": "libmp3lame",
    "wav": "pcm_s16le",
    "flac": "flac",
    "m4a": "aac",
    "mp4": "aac",
    "ogg": "libvorbis",
    "webm": "libopus",
}

_CONTAINERS = {"mpga": "mp3", "m4a": "ipod", "mpeg": "mp3"}


class MediaPreprocessor:
    """Return a provider-compatible path for a source file.

    Converted files land in ``temp_dir`` and belong to the caller, who must
    delete them; the source is never modified.
    """

    def __init__(self, temp_dir: Path, ffmpeg_bin: str = "ffmpeg", timeout_sec: float = 600.0):
        self.temp_dir = Path(temp_dir)
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout_sec = timeout_sec

    def needs_transcode(self, path: str | Path, descriptor: ProviderDescriptor) -> bool:
        return not descriptor.supports(file_format(path))

    def build_command(self, source: Path, target: Path, target_format: str) -> list[str]:
        cmd = [
            self.ffmpeg_bin,
            "-y",
            "-i",
            str(source),
            "-vn",
            "-ac",
            str(NORMALIZATION_PROFILE["channels"]),
            "-ar",
            str(NORMALIZATION_PROFILE["sample_rate"]),
        ]
        codec = _CODECS.get(target_format)
        if codec:
            cmd += ["-acodec", codec]
        if codec not in (None, "pcm_s16le", "flac"):
            cmd += ["-b:a", NORMALIZATION_PROFILE["bitrate"]]
        cmd += ["-f", _CONTAINERS.get(target_format, target_format), "-loglevel", "error", str(target)]
        return cmd

    async def ensure_compatible(self, path: str | Path, descriptor: ProviderDescriptor) -> Path:
        source = Path(path)
        if not self.needs_transcode(source, descriptor):
            return source

        target_format = descriptor.first_format
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        target = self.temp_dir / f"{uuid.uuid4()}.{target_format}"
        cmd = self.build_command(source, target, target_format)
        logger.info(
            "Converting %s -> %s for %s", source.name, target_format, descriptor.name
        )

        try:
            await self._run(cmd)
        except BaseException:
            target.unlink(missing_ok=True)
            raise
        if not target.exists() or target.stat().st_size == 0:
            target.unlink(missing_ok=True)
            raise PreprocessingFailed(
                "Audio conversion produced no output",
                context={"source": str(source), "format": target_format},
            )
        return target

    async def _run(self, cmd: list[str]) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise PreprocessingFailed(
                f"Audio conversion failed: {exc}", context={"command": cmd[0]}, cause=exc
            ) from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise PreprocessingFailed(
                f"Audio conversion timed out after {self.timeout_sec:.0f}s", cause=exc
            ) from exc
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="ignore").strip() if stderr else ""
            raise PreprocessingFailed(
                f"Audio conversion failed: {message or f'exit code {proc.returncode}'}",
                context={"returncode": proc.returncode},
            )
