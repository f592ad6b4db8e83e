"""OpenAI Whisper (``/v1/audio/transcriptions``)."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ..models import TranscriptionResult
from .base import HttpAdapter, average_confidence, logprob_to_confidence, segment

logger = logging.getLogger(__name__)

__all__ = ["WhisperAdapter"]


class WhisperAdapter(HttpAdapter):
    name = "whisper"
    base_url = "https://api.openai.com/v1"
    api_key_env = "OPENAI_API_KEY"

    async def transcribe(
        self, path: Path, options: Mapping[str, Any], *, timeout: float
    ) -> TranscriptionResult:
        language = options.get("language", "auto")
        model = options.get("model", "whisper-1")
        temperature = float(options.get("temperature", 0))
        granularities = options.get("timestamp_granularities", ["segment"])

        data: dict[str, Any] = {
            "model": model,
            "response_format": "verbose_json",
            "temperature": str(temperature),
        }
        if language and language != "auto":
            data["language"] = language
        if granularities:
            data["timestamp_granularities[]"] = list(granularities)
        if options.get("prompt"):
            data["prompt"] = options["prompt"]

        content = await self.read_media(path)
        async with self.client(timeout) as client:
            response = await self.request(
                client,
                "POST",
                "/audio/transcriptions",
                data=data,
                files={"file": (Path(path).name, content)},
            )
        body = self.json_body(response)
        return self.parse(body, model=model, temperature=temperature)

    def parse(self, body: Mapping[str, Any], **metadata: Any) -> TranscriptionResult:
        segments = [
            segment(
                s.get("start"),
                s.get("end"),
                s.get("text"),
                s.get("confidence", logprob_to_confidence(s.get("avg_logprob"))),
            )
            for s in body.get("segments") or []
        ]
        return TranscriptionResult(
            text=str(body.get("text") or "").strip(),
            language=body.get("language"),
            duration_seconds=float(body.get("duration") or 0.0),
            segments=segments,
            words=list(body.get("words") or []),
            confidence=average_confidence(s.confidence for s in segments),
            provider_name=self.name,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )
