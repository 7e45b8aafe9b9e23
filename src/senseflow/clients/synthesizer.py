"""
HTTP client for the speech synthesis server.

Endpoints (CosyVoice-style server):
    POST /tts       {mode, text, speed, language, speaker_id} -> audio + optional words
    GET  /speakers  -> {speakers: [...], count, mode}
    GET  /health    -> {status, model_loaded, ...}

Speaker listing is time-boxed to SPEAKER_TIMEOUT_S and falls back to a
built-in list, so a slow or absent server never blocks the caller.
Synthesis itself has no retry and no fixed deadline beyond the client
timeout.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from senseflow.core.config import Defaults
from senseflow.core.errors import SynthesisError
from senseflow.core.logging import get_logger, info, verbose, warn
from senseflow.models import WordTimestamp
from senseflow.schemas import SpeakersResponse, SynthesizerRequest, SynthesizerResponse
from senseflow.utils.audio import b64decode_audio
from senseflow.utils.timeit import timeit

_LOG = get_logger("senseflow.synthesizer")

SPEAKER_TIMEOUT_S = 3.0

DEFAULT_SPEAKERS = ["中文女", "中文男", "日语女", "日语男", "英文女", "英文男", "韩语女"]

INSTRUCT_TEXT = "用自然的方式说这句话<|endofprompt|>"


@dataclass
class SynthesisResult:
    """Audio for one synthesis call plus any word timings the server produced."""
    audio: bytes
    duration: float = 0.0
    words: List[WordTimestamp] = field(default_factory=list)
    sample_rate: Optional[int] = None


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str, speaker: str, speed: float = 1.0, language: str = "en") -> SynthesisResult: ...

    async def list_speakers(self) -> List[str]: ...


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or "unknown error"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or "unknown error")
    return "unknown error"


class HttpSpeechSynthesizer:
    """
    SpeechSynthesizer backed by the synthesis HTTP server.

    Args:
        base_url: Server root, e.g. ``http://localhost:9880``.
        mode: Synthesis mode (``sft``, ``zero_shot`` or ``instruct2``).
        timeout_s: Per-request timeout for synthesis.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str = Defaults.SYNTH_BASE_URL,
        mode: str = Defaults.SYNTH_MODE,
        timeout_s: float = Defaults.SYNTH_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.mode = mode
        self.timeout_s = float(timeout_s)
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    async def synthesize(self, text: str, speaker: str, speed: float = 1.0, language: str = "en") -> SynthesisResult:
        """
        Synthesize ``text`` in one request.

        Raises:
            SynthesisError: Transport failure, non-2xx status, ``success: false``
                or a response without audio.
        """
        try:
            body = SynthesizerRequest(mode=self.mode, text=text, speed=speed,
                                      language=language, speaker_id=speaker).model_dump(exclude_none=True)
        except ValidationError as e:
            raise SynthesisError("invalid synthesis request", {"error": str(e)}) from e
        if self.mode == "instruct2":
            body["instruct_text"] = INSTRUCT_TEXT

        with timeit("synthesize") as t:
            try:
                async with self._client(self.timeout_s) as client:
                    response = await client.post("/tts", json=body)
            except httpx.HTTPError as e:
                raise SynthesisError("synthesis server unreachable",
                                     {"url": self.base_url, "error": str(e)}) from e

        if response.status_code >= 400:
            raise SynthesisError(
                f"synthesis server error ({response.status_code}): {_error_detail(response)}",
                {"status": response.status_code},
            )

        try:
            payload = SynthesizerResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise SynthesisError("synthesis response is malformed", {"error": str(e)}) from e

        if not payload.success:
            raise SynthesisError(payload.failure_reason)
        if not payload.audio_data:
            raise SynthesisError("synthesis response contains no audio")

        words = [w for w in (p.to_word() for p in payload.words or []) if w is not None]
        result = SynthesisResult(
            audio=b64decode_audio(payload.audio_data),
            duration=float(payload.duration or 0.0),
            words=words,
            sample_rate=payload.sample_rate,
        )
        info(_LOG, "synthesized", chars=len(text), speaker=speaker, bytes=len(result.audio),
             words=len(words), seconds=round(t.seconds, 3))
        return result

    async def list_speakers(self) -> List[str]:
        """Advertised speaker ids, or DEFAULT_SPEAKERS if the server does not answer in time."""
        try:
            async with self._client(SPEAKER_TIMEOUT_S) as client:
                response = await asyncio.wait_for(client.get("/speakers"), SPEAKER_TIMEOUT_S)
            response.raise_for_status()
            speakers = SpeakersResponse.model_validate(response.json()).speakers
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError, ValidationError) as e:
            verbose(_LOG, "speakers_fallback", error=str(e) or type(e).__name__)
            return list(DEFAULT_SPEAKERS)
        return speakers

    async def health(self) -> Dict[str, Any]:
        try:
            async with self._client(SPEAKER_TIMEOUT_S) as client:
                response = await client.get("/health")
        except httpx.HTTPError as e:
            warn(_LOG, "health_unreachable", error=str(e))
            return {"status": "unreachable", "model_loaded": False, "speakers_count": 0}
        if response.status_code >= 400:
            return {"status": "unhealthy", "model_loaded": False, "speakers_count": 0}
        try:
            return dict(response.json())
        except (ValueError, TypeError):
            return {"status": "unhealthy", "model_loaded": False, "speakers_count": 0}
