"""Deepgram pre-recorded audio (``/v1/listen``)."""

from __future__ import annotations

import mimetypes
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ..models import TranscriptionResult
from .base import HttpAdapter, average_confidence, segment

__all__ = ["DeepgramAdapter"]


class DeepgramAdapter(HttpAdapter):
    name = "deepgram"
    base_url = "https://api.deepgram.com/v1"
    api_key_env = "DEEPGRAM_API_KEY"

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.api_key}"}

    async def transcribe(
        self, path: Path, options: Mapping[str, Any], *, timeout: float
    ) -> TranscriptionResult:
        params: dict[str, Any] = {
            "model": options.get("model", "nova-2"),
            "smart_format": "true",
            "punctuate": "true",
        }
        language = options.get("language", "auto")
        if language and language != "auto":
            params["language"] = language
        else:
            params["detect_language"] = "true"
        if options.get("diarize"):
            params["diarize"] = "true"
        if options.get("keywords"):
            params["keywords"] = list(options["keywords"])

        content = await self.read_media(path)
        content_type = mimetypes.guess_type(str(path))[0] or "application/octet-stream"
        async with self.client(timeout) as client:
            response = await self.request(
                client,
                "POST",
                "/listen",
                params=params,
                content=content,
                headers={"Content-Type": content_type},
            )
        return self.parse(self.json_body(response))

    def parse(self, body: Mapping[str, Any]) -> TranscriptionResult:
        channels = (body.get("results") or {}).get("channels") or [{}]
        channel = channels[0]
        alternative = (channel.get("alternatives") or [{}])[0]
        words = list(alternative.get("words") or [])

        paragraphs = ((alternative.get("paragraphs") or {}).get("paragraphs")) or []
        segments = [
            segment(
                sentence.get("start"),
                sentence.get("end"),
                sentence.get("text"),
                speaker=paragraph.get("speaker"),
            )
            for paragraph in paragraphs
            for sentence in paragraph.get("sentences") or []
        ]
        if not segments and words:
            segments = [
                segment(
                    words[0].get("start"),
                    words[-1].get("end"),
                    alternative.get("transcript"),
                    alternative.get("confidence"),
                )
            ]

        confidence = alternative.get("confidence")
        return TranscriptionResult(
            text=str(alternative.get("transcript") or "").strip(),
            language=channel.get("detected_language"),
            duration_seconds=float((body.get("metadata") or {}).get("duration") or 0.0),
            segments=segments,
            words=words,
            confidence=confidence if confidence else average_confidence(w.get("confidence") for w in words),
            provider_name=self.name,
            metadata={"request_id": (body.get("metadata") or {}).get("request_id")},
        )
