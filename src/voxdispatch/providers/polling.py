"""Providers that accept a job and are polled until it finishes."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import httpx

from ..errors import ProviderError
from ..models import TranscriptionResult
from .base import HttpAdapter, average_confidence, segment

logger = logging.getLogger(__name__)

__all__ = ["AssemblyAIAdapter", "PollingAdapter", "RevAIAdapter", "SpeechmaticsAdapter"]


class PollingAdapter(HttpAdapter):
    """Submit, poll the job resource, then fetch and normalise the transcript."""

    poll_interval_sec: float = 3.0
    done_states: frozenset[str] = frozenset({"completed"})
    failed_states: frozenset[str] = frozenset({"error", "failed"})

    def __init__(self, *args: Any, poll_interval_sec: float | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        if poll_interval_sec is not None:
            self.poll_interval_sec = poll_interval_sec

    async def transcribe(
        self, path: Path, options: Mapping[str, Any], *, timeout: float
    ) -> TranscriptionResult:
        deadline = time.monotonic() + timeout
        async with self.client(timeout) as client:
            job_id = await self.submit_job(client, Path(path), options)
            logger.debug("%s accepted job %s", self.name, job_id)
            while True:
                state, payload = await self.fetch_status(client, job_id)
                if state in self.done_states:
                    body = await self.fetch_result(client, job_id, payload)
                    return self.parse(body, payload)
                if state in self.failed_states:
                    raise ProviderError(
                        f"{self.name} transcription failed: {self.failure_reason(payload)}",
                        provider=self.name,
                        retryable=False,
                        context={"provider_job_id": job_id},
                    )
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ProviderError(
                        f"{self.name} job {job_id} did not finish in time",
                        provider=self.name,
                        retryable=True,
                        context={"provider_job_id": job_id, "state": state},
                    )
                await asyncio.sleep(min(self.poll_interval_sec, remaining))

    @abstractmethod
    async def submit_job(
        self, client: httpx.AsyncClient, path: Path, options: Mapping[str, Any]
    ) -> str: ...

    @abstractmethod
    async def fetch_status(
        self, client: httpx.AsyncClient, job_id: str
    ) -> tuple[str, dict[str, Any]]: ...

    async def fetch_result(
        self, client: httpx.AsyncClient, job_id: str, status_payload: dict[str, Any]
    ) -> dict[str, Any]:
        return status_payload

    def failure_reason(self, payload: Mapping[str, Any]) -> str:
        return str(payload.get("error") or payload.get("failure") or "unknown error")

    @abstractmethod
    def parse(self, body: Mapping[str, Any], status_payload: Mapping[str, Any]) -> TranscriptionResult: ...


class AssemblyAIAdapter(PollingAdapter):
    name = "assemblyai"
    base_url = "https://api.assemblyai.com/v2"
    api_key_env = "ASSEMBLYAI_API_KEY"

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": str(self.api_key)}

    async def submit_job(
        self, client: httpx.AsyncClient, path: Path, options: Mapping[str, Any]
    ) -> str:
        content = await self.read_media(path)
        upload = self.json_body(await self.request(client, "POST", "/upload", content=content))
        request: dict[str, Any] = {"audio_url": upload["upload_url"]}
        language = options.get("language", "auto")
        if language and language != "auto":
            request["language_code"] = language
        else:
            request["language_detection"] = True
        if options.get("speaker_labels") or options.get("diarize"):
            request["speaker_labels"] = True
        created = self.json_body(await self.request(client, "POST", "/transcript", json=request))
        return str(created["id"])

    async def fetch_status(self, client: httpx.AsyncClient, job_id: str) -> tuple[str, dict[str, Any]]:
        body = self.json_body(await self.request(client, "GET", f"/transcript/{job_id}"))
        return str(body.get("status", "")).lower(), body

    def parse(self, body: Mapping[str, Any], status_payload: Mapping[str, Any]) -> TranscriptionResult:
        words = list(body.get("words") or [])
        utterances = body.get("utterances") or []
        segments = [
            segment(
                (u.get("start") or 0) / 1000.0,
                (u.get("end") or 0) / 1000.0,
                u.get("text"),
                u.get("confidence"),
                u.get("speaker"),
            )
            for u in utterances
        ]
        if not segments and words:
            segments = [
                segment(
                    (words[0].get("start") or 0) / 1000.0,
                    (words[-1].get("end") or 0) / 1000.0,
                    body.get("text"),
                    body.get("confidence"),
                )
            ]
        return TranscriptionResult(
            text=str(body.get("text") or "").strip(),
            language=body.get("language_code"),
            duration_seconds=float(body.get("audio_duration") or 0.0),
            segments=segments,
            words=words,
            confidence=body.get("confidence") or average_confidence(w.get("confidence") for w in words),
            provider_name=self.name,
            metadata={"provider_job_id": body.get("id")},
        )


class RevAIAdapter(PollingAdapter):
    name = "rev"
    base_url = "https://api.rev.ai/speechtotext/v1"
    api_key_env = "REV_AI_API_KEY"
    done_states = frozenset({"transcribed"})
    failed_states = frozenset({"failed"})

    async def submit_job(
        self, client: httpx.AsyncClient, path: Path, options: Mapping[str, Any]
    ) -> str:
        content = await self.read_media(path)
        job_options: dict[str, Any] = {}
        language = options.get("language", "auto")
        if language and language != "auto":
            job_options["language"] = language
        if options.get("custom_vocabulary"):
            job_options["custom_vocabularies"] = [{"phrases": list(options["custom_vocabulary"])}]
        created = self.json_body(
            await self.request(
                client,
                "POST",
                "/jobs",
                files={"media": (path.name, content)},
                data={"options": json.dumps(job_options)},
            )
        )
        return str(created["id"])

    async def fetch_status(self, client: httpx.AsyncClient, job_id: str) -> tuple[str, dict[str, Any]]:
        body = self.json_body(await self.request(client, "GET", f"/jobs/{job_id}"))
        return str(body.get("status", "")).lower(), body

    async def fetch_result(
        self, client: httpx.AsyncClient, job_id: str, status_payload: dict[str, Any]
    ) -> dict[str, Any]:
        response = await self.request(
            client,
            "GET",
            f"/jobs/{job_id}/transcript",
            headers={"Accept": "application/vnd.rev.transcript.v1.0+json"},
        )
        return self.json_body(response)

    def failure_reason(self, payload: Mapping[str, Any]) -> str:
        return str(payload.get("failure_detail") or payload.get("failure") or "unknown error")

    def parse(self, body: Mapping[str, Any], status_payload: Mapping[str, Any]) -> TranscriptionResult:
        segments = []
        words: list[dict[str, Any]] = []
        for monologue in body.get("monologues") or []:
            elements = monologue.get("elements") or []
            text = "".join(str(e.get("value", "")) for e in elements)
            timed = [e for e in elements if e.get("type") == "text"]
            words.extend(timed)
            if not timed:
                continue
            segments.append(
                segment(
                    timed[0].get("ts"),
                    timed[-1].get("end_ts"),
                    text,
                    average_confidence(e.get("confidence") for e in timed),
                    monologue.get("speaker"),
                )
            )
        return TranscriptionResult(
            text=" ".join(s.text for s in segments).strip(),
            language=status_payload.get("language"),
            duration_seconds=float(status_payload.get("duration_seconds") or 0.0),
            segments=segments,
            words=words,
            confidence=average_confidence(w.get("confidence") for w in words),
            provider_name=self.name,
            metadata={"provider_job_id": status_payload.get("id")},
        )


class SpeechmaticsAdapter(PollingAdapter):
    name = "speechmatics"
    base_url = "https://asr.api.speechmatics.com/v2"
    api_key_env = "SPEECHMATICS_API_KEY"
    done_states = frozenset({"done"})
    failed_states = frozenset({"rejected", "deleted", "expired"})

    async def submit_job(
        self, client: httpx.AsyncClient, path: Path, options: Mapping[str, Any]
    ) -> str:
        content = await self.read_media(path)
        language = options.get("language", "auto")
        transcription_config: dict[str, Any] = {
            "language": language if language and language != "auto" else "auto",
            "operating_point": options.get("operating_point", "enhanced"),
        }
        if options.get("diarize"):
            transcription_config["diarization"] = "speaker"
        config = {"type": "transcription", "transcription_config": transcription_config}
        created = self.json_body(
            await self.request(
                client,
                "POST",
                "/jobs",
                files={"data_file": (path.name, content)},
                data={"config": json.dumps(config)},
            )
        )
        return str(created["id"])

    async def fetch_status(self, client: httpx.AsyncClient, job_id: str) -> tuple[str, dict[str, Any]]:
        body = self.json_body(await self.request(client, "GET", f"/jobs/{job_id}"))
        job = body.get("job") or {}
        return str(job.get("status", "")).lower(), job

    async def fetch_result(
        self, client: httpx.AsyncClient, job_id: str, status_payload: dict[str, Any]
    ) -> dict[str, Any]:
        response = await self.request(
            client, "GET", f"/jobs/{job_id}/transcript", params={"format": "json-v2"}
        )
        return self.json_body(response)

    def parse(self, body: Mapping[str, Any], status_payload: Mapping[str, Any]) -> TranscriptionResult:
        words: list[dict[str, Any]] = []
        pieces: list[str] = []
        language = None
        for item in body.get("results") or []:
            alternative = (item.get("alternatives") or [{}])[0]
            content = str(alternative.get("content") or "")
            language = language or alternative.get("language")
            if item.get("type") == "punctuation" and pieces:
                pieces[-1] += content
                continue
            pieces.append(content)
            words.append(
                {
                    "word": content,
                    "start": item.get("start_time"),
                    "end": item.get("end_time"),
                    "confidence": alternative.get("confidence"),
                    "speaker": alternative.get("speaker"),
                }
            )
        text = " ".join(pieces).strip()
        segments = (
            [segment(words[0]["start"], words[-1]["end"], text, average_confidence(w["confidence"] for w in words))]
            if words
            else []
        )
        return TranscriptionResult(
            text=text,
            language=language or (body.get("metadata") or {}).get("language"),
            duration_seconds=float(status_payload.get("duration") or 0.0),
            segments=segments,
            words=words,
            confidence=average_confidence(w["confidence"] for w in words),
            provider_name=self.name,
            metadata={"provider_job_id": status_payload.get("id")},
        )
