"""
Core data model: words, chunks and study materials.

All times are seconds (floats). Word times are absolute (relative to the
full synthesized track) while alignment runs, and chunk-relative once
boundaries have been recalculated.

Dict form:
    ``to_dict()`` produces the persisted/exported JSON shape. Chunk times
    and ``original_text`` are snake_case; audio and voice metadata keep
    their camelCase names (``audioData``, ``voiceConfig``, ``ttsGenerated``,
    ``createdAt``). ``from_dict()`` accepts either spelling and fills
    defaults for anything missing, so partially-formed imports load.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _pick(data: Dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return default


@dataclass(frozen=True)
class WordTimestamp:
    """A single timed word."""
    word: str
    start: float
    end: float

    def rebased(self, offset: float) -> "WordTimestamp":
        """Shift to be relative to ``offset``; start never goes negative."""
        return WordTimestamp(self.word, max(0.0, self.start - offset), self.end - offset)

    def to_dict(self) -> Dict[str, Any]:
        return {"word": self.word, "start": float(self.start), "end": float(self.end)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WordTimestamp":
        return cls(
            word=str(_pick(data, "word", "text", default="")),
            start=float(data.get("start", 0) or 0),
            end=float(data.get("end", 0) or 0),
        )


@dataclass
class Chunk:
    """
    A learner-facing span of text with its own slice of the timeline.

    Attributes:
        words: Assigned words, or None when alignment produced nothing
            for this chunk (displayed as bare text).
        audio_data: Base64-encoded WAV clip for this chunk, if rendered.
    """
    id: str
    text: str
    start_time: float = 0.0
    end_time: float = 0.0
    translation: Optional[str] = None
    speaker: Optional[str] = None
    words: Optional[List[WordTimestamp]] = None
    audio_data: Optional[str] = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def aligned(self) -> bool:
        return bool(self.words)

    @property
    def words_match_text(self) -> bool:
        """True when word-level highlighting can be shown for this chunk."""
        if not self.words:
            return False
        joined = " ".join(w.word for w in self.words)
        return " ".join(joined.split()) == " ".join(self.text.split())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "translation": self.translation,
            "speaker": self.speaker,
            "start_time": float(self.start_time),
            "end_time": float(self.end_time),
            "words": [w.to_dict() for w in self.words] if self.words is not None else None,
            "audioData": self.audio_data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0, prefix: str = "chunk") -> "Chunk":
        raw_words = _pick(data, "words")
        return cls(
            id=str(_pick(data, "id", default=f"{prefix}_{index}")),
            text=str(_pick(data, "text", default="")),
            translation=_pick(data, "translation"),
            speaker=_pick(data, "speaker"),
            start_time=float(_pick(data, "start_time", "startTime", default=0)),
            end_time=float(_pick(data, "end_time", "endTime", default=0)),
            words=[WordTimestamp.from_dict(w) for w in raw_words] if raw_words is not None else None,
            audio_data=_pick(data, "audioData", "audio_data"),
        )


@dataclass
class VoiceConfig:
    """Voice used for the last synthesis of a material."""
    speaker: str
    speed: float = 1.0
    generated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {"speaker": self.speaker, "speed": float(self.speed), "generatedAt": self.generated_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoiceConfig":
        return cls(
            speaker=str(data.get("speaker", "")),
            speed=float(data.get("speed", 1.0)),
            generated_at=int(_pick(data, "generatedAt", "generated_at", default=0)),
        )


@dataclass
class MaterialConfig:
    recommended_speed: float = 1.0
    recommended_noise_level: float = 0.2
    provider_type: str = "local"
    tags: List[str] = field(default_factory=list)
    difficulty: str = "Medium"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommended_speed": self.recommended_speed,
            "recommended_noise_level": self.recommended_noise_level,
            "provider_type": self.provider_type,
            "tags": list(self.tags),
            "difficulty": self.difficulty,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MaterialConfig":
        return cls(
            recommended_speed=float(data.get("recommended_speed", 1.0)),
            recommended_noise_level=float(data.get("recommended_noise_level", 0.2)),
            provider_type=str(data.get("provider_type", "local")),
            tags=[str(t) for t in data.get("tags", []) or []],
            difficulty=str(data.get("difficulty", "Medium")),
        )


@dataclass
class Material:
    """
    A study material: ordered chunks over one continuous audio track.

    ``original_text`` is the ground truth the chunk texts were cut from;
    the two may drift and nothing here depends on them matching.
    """
    id: str
    title: str
    chunks: List[Chunk] = field(default_factory=list)
    description: str = ""
    original_text: str = ""
    duration: float = 0.0
    config: MaterialConfig = field(default_factory=MaterialConfig)
    voice_config: Optional[VoiceConfig] = None
    tts_generated: bool = False
    created_at: Optional[int] = None

    @property
    def has_audio(self) -> bool:
        return any(chunk.audio_data for chunk in self.chunks)

    def chunk_texts(self) -> List[str]:
        return [chunk.text for chunk in self.chunks]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "original_text": self.original_text,
            "chunks": [c.to_dict() for c in self.chunks],
            "duration": float(self.duration),
            "config": self.config.to_dict(),
            "voiceConfig": self.voice_config.to_dict() if self.voice_config else None,
            "ttsGenerated": self.tts_generated,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "Material":
        """
        Build a Material from its dict form, tolerating missing fields.

        Raises:
            TypeError, ValueError: If a present field has the wrong shape
                (e.g. ``chunks`` is not a list of objects).
        """
        material_id = str(_pick(data, "id", default=f"imported_{now_ms()}_{index}"))
        raw_chunks = data.get("chunks") or []
        if not isinstance(raw_chunks, list):
            raise TypeError("chunks must be a list")
        chunks = []
        for i, raw in enumerate(raw_chunks):
            if not isinstance(raw, dict):
                raise TypeError(f"chunk {i} must be an object")
            chunks.append(Chunk.from_dict(raw, i, prefix=material_id))

        raw_voice = _pick(data, "voiceConfig", "voice_config")
        raw_config = data.get("config") or {}
        created_at = _pick(data, "createdAt", "created_at")
        return cls(
            id=material_id,
            title=str(_pick(data, "title", default="Untitled")),
            description=str(_pick(data, "description", default="")),
            original_text=str(_pick(data, "original_text", "originalText",
                                    default=" ".join(c.text for c in chunks))),
            chunks=chunks,
            duration=float(_pick(data, "duration", default=0)),
            config=MaterialConfig.from_dict(raw_config) if isinstance(raw_config, dict) else MaterialConfig(),
            voice_config=VoiceConfig.from_dict(raw_voice) if isinstance(raw_voice, dict) else None,
            tts_generated=bool(_pick(data, "ttsGenerated", "tts_generated", default=False)),
            created_at=int(created_at) if created_at is not None else None,
        )
