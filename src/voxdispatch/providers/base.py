"""Provider adapter contract and shared HTTP plumbing."""

from __future__ import annotations

import asyncio
import math
import os
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import httpx

from ..errors import ProviderError
from ..models import TranscriptionResult, TranscriptionSegment

__all__ = [
    "DEFAULT_CONFIDENCE",
    "RETRYABLE_STATUS_CODES",
    "AdapterRegistry",
    "HttpAdapter",
    "ProviderAdapter",
    "average_confidence",
    "is_retryable_status",
    "logprob_to_confidence",
    "segment",
]

DEFAULT_CONFIDENCE = 0.8
RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def average_confidence(values: Iterable[float | None]) -> float:
    scores = [float(v) for v in values if v is not None and v > 0]
    if not scores:
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, sum(scores) / len(scores)))


class ProviderAdapter(ABC):
    """One external speech-to-text integration.

    ``transcribe`` returns a normalised :class:`TranscriptionResult` (cost and
    cache flags are filled in by the scheduler) or raises
    :class:`~voxdispatch.errors.ProviderError` with ``retryable`` set.  It must
    give up once ``timeout`` seconds have elapsed.
    """

    name: str = ""

    @abstractmethod
    async def transcribe(
        self,
        path: Path,
        options: Mapping[str, Any],
        *,
        timeout: float,
    ) -> TranscriptionResult: ...

    async def aclose(self) -> None:
        return None


class HttpAdapter(ProviderAdapter):
    """Adapter talking to a REST API through :mod:`httpx`."""

    base_url: str = ""
    api_key_env: str = ""
    user_agent = "voxdispatch/0.3"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        request_timeout_sec: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
        base_url: str | None = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv(self.api_key_env)
        self.request_timeout_sec = request_timeout_sec
        self.transport = transport
        if base_url is not None:
            self.base_url = base_url

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def client(self, timeout: float) -> httpx.AsyncClient:
        if not self.api_key:
            raise ProviderError(
                f"{self.name} API key is not configured ({self.api_key_env})",
                provider=self.name,
                retryable=False,
            )
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"User-Agent": self.user_agent, **self.auth_headers()},
            timeout=httpx.Timeout(max(1.0, min(self.request_timeout_sec, timeout))),
            transport=self.transport,
        )

    async def request(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"{self.name} request timed out", provider=self.name, retryable=True, cause=exc
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                f"{self.name} transport error: {exc}", provider=self.name, retryable=True, cause=exc
            ) from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"{self.name} transcription failed: {self._error_message(response)}",
                provider=self.name,
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:300] or f"HTTP {response.status_code}"
        if isinstance(body, Mapping):
            error = body.get("error") or body.get("err_msg") or body.get("detail") or body.get("message")
            if isinstance(error, Mapping):
                error = error.get("message")
            if error:
                return str(error)
        return f"HTTP {response.status_code}"

    @staticmethod
    async def read_media(path: Path) -> bytes:
        return await asyncio.to_thread(Path(path).read_bytes)

    def json_body(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.name} returned a non-JSON response", provider=self.name, cause=exc
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} returned an unexpected payload", provider=self.name)
        return data


def logprob_to_confidence(avg_logprob: float | None) -> float | None:
    if avg_logprob is None:
        return None
    return max(0.0, min(1.0, math.exp(float(avg_logprob))))


def segment(start: Any, end: Any, text: Any, confidence: Any = None, speaker: Any = None) -> TranscriptionSegment:
    return TranscriptionSegment(
        start=max(0.0, float(start or 0.0)),
        end=max(0.0, float(end or 0.0)),
        text=text,
        confidence=None if confidence is None else max(0.0, min(1.0, float(confidence))),
        speaker=None if speaker is None else str(speaker),
    )


class AdapterRegistry:
    """Name -> adapter lookup passed explicitly to the scheduler."""

    def __init__(self, adapters: Mapping[str, ProviderAdapter] | None = None):
        self._adapters: dict[str, ProviderAdapter] = dict(adapters or {})

    def register(self, name: str, adapter: ProviderAdapter) -> None:
        self._adapters[name] = adapter

    def get(self, name: str) -> ProviderAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise ProviderError(
                f"No adapter registered for provider '{name}'", provider=name, retryable=False
            ) from None

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
