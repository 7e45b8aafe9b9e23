"""
HTTP client for the forced-alignment server.

Endpoints (WhisperX-style server):
    POST /v1/transcribe/sync  multipart audio + model/language/align_output
    GET  /health
    GET  /v1/models

The aligner is the only external call senseflow retries: ``align()``
makes up to ``max_attempts`` attempts, sleeping ``attempt * backoff_s``
between failures, then raises AlignmentUnavailable. Callers treat that
as non-fatal.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from senseflow.core.config import Defaults
from senseflow.core.errors import AlignmentUnavailable
from senseflow.core.logging import get_logger, info, verbose, warn
from senseflow.models import WordTimestamp
from senseflow.schemas import AlignerResponse
from senseflow.utils.timeit import timeit

_LOG = get_logger("senseflow.aligner")

DISCOVERY_TIMEOUT_S = 3.0

DEFAULT_MODELS: Dict[str, Any] = {
    "whisper": [
        {"name": name, "type": "whisper", "loaded": False}
        for name in ("tiny", "base", "small", "medium", "large-v2", "large-v3")
    ],
    "alignment": [
        {"name": "wav2vec2-en", "type": "alignment", "language": "en", "loaded": False},
        {"name": "wav2vec2-zh", "type": "alignment", "language": "zh", "loaded": False},
    ],
}


class ForcedAligner(Protocol):
    async def align(self, audio: bytes, language: Optional[str] = None) -> List[WordTimestamp]: ...


class HttpForcedAligner:
    """
    ForcedAligner backed by the transcription HTTP server.

    Args:
        sleep: Awaitable used for backoff between attempts; tests pass a
            recorder instead of asyncio.sleep.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str = Defaults.ALIGNER_BASE_URL,
        model: str = Defaults.ALIGNER_MODEL,
        language: str = Defaults.ALIGNER_LANGUAGE,
        max_attempts: int = Defaults.ALIGNER_MAX_ATTEMPTS,
        backoff_s: float = Defaults.ALIGNER_BACKOFF_S,
        timeout_s: float = Defaults.ALIGNER_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.language = language
        self.max_attempts = int(max_attempts)
        self.backoff_s = float(backoff_s)
        self.timeout_s = float(timeout_s)
        self._transport = transport
        self._sleep = sleep

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    async def transcribe(self, audio: bytes, language: Optional[str] = None) -> AlignerResponse:
        """
        One transcription request, no retry.

        Raises:
            AlignmentUnavailable: On any transport, status or payload failure.
        """
        data = {
            "model": self.model,
            "language": language or self.language,
            "align_output": "true",
            "compute_type": "int8",
        }
        files = {"audio": ("audio.wav", audio, "audio/wav")}
        try:
            async with self._client(self.timeout_s) as client:
                response = await client.post("/v1/transcribe/sync", data=data, files=files)
        except httpx.HTTPError as e:
            raise AlignmentUnavailable("aligner unreachable", {"url": self.base_url, "error": str(e)}) from e

        if response.status_code >= 400:
            raise AlignmentUnavailable(f"aligner error ({response.status_code})",
                                       {"status": response.status_code})
        try:
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("result"), dict):
                body = body["result"]
            return AlignerResponse.model_validate(body)
        except (ValueError, ValidationError) as e:
            raise AlignmentUnavailable("aligner response is malformed", {"error": str(e)}) from e

    async def align(self, audio: bytes, language: Optional[str] = None) -> List[WordTimestamp]:
        """
        Word timings for ``audio``, flattened across segments.

        Raises:
            AlignmentUnavailable: After ``max_attempts`` failed attempts.
        """
        last_error: Optional[AlignmentUnavailable] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with timeit("align") as t:
                    result = await self.transcribe(audio, language)
            except AlignmentUnavailable as e:
                last_error = e
                warn(_LOG, "align_attempt_failed", attempt=attempt, attempts=self.max_attempts,
                     error=e.message)
                if attempt < self.max_attempts:
                    await self._sleep(attempt * self.backoff_s)
                continue

            words = result.flatten()
            info(_LOG, "aligned", words=len(words), segments=len(result.segments),
                 attempt=attempt, seconds=round(t.seconds, 3))
            return words

        raise AlignmentUnavailable(
            f"aligner failed after {self.max_attempts} attempts",
            {"last_error": last_error.message if last_error else None},
        )

    async def health(self) -> Dict[str, Any]:
        try:
            async with self._client(DISCOVERY_TIMEOUT_S) as client:
                response = await client.get("/health")
        except httpx.HTTPError as e:
            verbose(_LOG, "health_unreachable", error=str(e))
            return {"status": "unreachable", "gpu_available": False, "active_tasks": 0}
        if response.status_code >= 400:
            return {"status": "unhealthy", "gpu_available": False, "active_tasks": 0}
        try:
            return dict(response.json())
        except (ValueError, TypeError):
            return {"status": "unhealthy", "gpu_available": False, "active_tasks": 0}

    async def list_models(self) -> Dict[str, Any]:
        """Available models, or DEFAULT_MODELS when the server does not answer in time."""
        try:
            async with self._client(DISCOVERY_TIMEOUT_S) as client:
                response = await asyncio.wait_for(client.get("/v1/models"), DISCOVERY_TIMEOUT_S)
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("models response is not an object")
            return body
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as e:
            verbose(_LOG, "models_fallback", error=str(e) or type(e).__name__)
            return DEFAULT_MODELS
