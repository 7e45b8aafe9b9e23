"""
Boundary schemas for external payloads.

Everything that enters senseflow from outside (synthesizer and aligner
HTTP responses, content-generation output, import files) is validated
here with pydantic before it is turned into the internal dataclasses in
``senseflow.models``. Unknown fields are ignored so upstream services
can add fields without breaking us.

Models:
    WordPayload: a timed word as sent by either engine
    SynthesizerResponse: POST /tts response body
    AlignerResponse: POST /v1/transcribe/sync response body
    ContentPayload: ordered chunk texts from a content source
"""
from __future__ import annotations

from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from senseflow.models import WordTimestamp


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class WordPayload(_Lenient):
    """A timed word. Aligners occasionally omit times for tokens they could not place."""
    word: str
    start: Optional[float] = None
    end: Optional[float] = None

    def to_word(self) -> Optional[WordTimestamp]:
        if self.start is None or self.end is None:
            return None
        return WordTimestamp(word=self.word, start=float(self.start), end=float(self.end))


class SynthesizerRequest(BaseModel):
    """JSON body for POST /tts."""
    mode: str
    text: str = Field(..., min_length=1)
    speed: float = Field(default=1.0, ge=0.5, le=2.0)
    language: str = "en"
    speaker_id: Optional[str] = None


class SynthesizerResponse(_Lenient):
    """
    JSON body returned by POST /tts.

    ``audio_data`` is base64-encoded WAV. ``words`` is only present when
    the server ran its own alignment.
    """
    success: bool = True
    audio_data: Optional[str] = None
    format: Optional[str] = None
    duration: Optional[float] = None
    words: Optional[List[WordPayload]] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def failure_reason(self) -> str:
        return self.detail or self.error or "synthesis failed"


class SpeakersResponse(_Lenient):
    speakers: List[str] = Field(default_factory=list)
    count: int = 0
    mode: Optional[str] = None


class AlignerSegment(_Lenient):
    start: Optional[float] = None
    end: Optional[float] = None
    text: str = ""
    words: Optional[List[WordPayload]] = None


class AlignerResponse(_Lenient):
    """Transcription result with per-segment word timings."""
    segments: List[AlignerSegment] = Field(default_factory=list)
    language: Optional[str] = None
    duration: Optional[float] = None
    model: Optional[str] = None

    def flatten(self) -> List[WordTimestamp]:
        """All segment words in order, skipping words without timings."""
        words: List[WordTimestamp] = []
        for segment in self.segments:
            for payload in segment.words or []:
                word = payload.to_word()
                if word is not None:
                    words.append(word)
        return words


class ContentChunk(_Lenient):
    text: str = Field(..., min_length=1)
    translation: Optional[str] = None
    speaker: Optional[str] = None


class ContentPayload(_Lenient):
    """
    Output of a content source (LLM or hand-written).

    ``chunks`` may be plain strings or objects; order is trusted as-is.
    """
    title: str = "Untitled"
    description: str = ""
    original_text: Optional[str] = None
    chunks: List[Union[ContentChunk, str]] = Field(..., min_length=1)
    tags: List[str] = Field(default_factory=list)
    difficulty: str = "Medium"

    def normalized_chunks(self) -> List[ContentChunk]:
        return [ContentChunk(text=c) if isinstance(c, str) else c for c in self.chunks]

