from __future__ import annotations

import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import numpy as np
import pytest
import soundfile as sf

from voxdispatch.errors import ProviderError
from voxdispatch.models import TranscriptionResult
from voxdispatch.providers import ProviderAdapter


def write_tone(path: Path, seconds: float, sr: int = 8000, freq: float = 220.0) -> Path:
    t = np.arange(int(seconds * sr), dtype=np.float32) / sr
    audio = 0.1 * np.sin(2 * np.pi * freq * t).astype(np.float32)
    sf.write(str(path), audio, sr, subtype="PCM_16")
    return path


@pytest.fixture
def make_wav(tmp_path):
    def _make(seconds: float = 2.0, name: str = "clip.wav", freq: float = 220.0) -> Path:
        return write_tone(tmp_path / name, seconds, freq=freq)

    return _make


class FakeAdapter(ProviderAdapter):
    """Scripted adapter: pops one outcome per call, default is success."""

    def __init__(
        self,
        name: str,
        outcomes: list[Any] | None = None,
        delay: float = 0.0,
        text: str = "hello world",
    ):
        self.name = name
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.text = text
        self.calls: list[tuple[Path, dict[str, Any]]] = []
        self.active = 0
        self.max_active = 0

    async def transcribe(
        self, path: Path, options: Mapping[str, Any], *, timeout: float
    ) -> TranscriptionResult:
        self.calls.append((Path(path), dict(options)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if self.outcomes else None
            if isinstance(outcome, BaseException):
                raise outcome
            return TranscriptionResult(text=self.text, provider_name=self.name, confidence=0.93)
        finally:
            self.active -= 1


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def rate_limited():
    def _make(name: str) -> ProviderError:
        return ProviderError("rate limited", provider=name, status_code=429, retryable=True)

    return _make
