"""
MaterialProcessor - synthesize, align and slice a whole Material.

Pipeline:
    Resolve speaker -> Synthesize (joined text) -> Decode -> Word stream
        -> align_words -> recalculate_boundaries -> Slice per chunk -> Save

Error policy:
    - SpeakerUnavailable, SynthesisError, AudioDecodeError: propagated
    - AlignmentUnavailable: warned, synthesizer words used instead
    - CacheIOError: warned, caching skipped

Example:
    >>> processor = MaterialProcessor(synth, aligner, cache, materials)
    >>> material, timings = asyncio.run(processor.generate(material, VoiceSettings(speaker="en_f")))
    >>> material.tts_generated
    True
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from senseflow.clients.aligner import ForcedAligner
from senseflow.clients.synthesizer import SpeechSynthesizer
from senseflow.core.config import Defaults, ServiceConfig
from senseflow.core.errors import AlignmentUnavailable, CacheIOError, SpeakerUnavailable
from senseflow.core.logging import (
    debug,
    get_logger,
    info,
    set_request_id,
    success,
    verbose,
    warn,
)
from senseflow.models import Chunk, Material, VoiceConfig, WordTimestamp
from senseflow.pipeline import align_words, recalculate_boundaries
from senseflow.storage.cache import CacheStore
from senseflow.storage.materials import MaterialStore
from senseflow.utils.audio import b64encode_audio, decode_audio, extract_segment_wav
from senseflow.utils.timeit import timeit

_LOG = get_logger("senseflow.processor")

ProgressCallback = Callable[[int, int], None]


@dataclass
class VoiceSettings:
    """Voice requested for a generation run. Empty speaker means "first available"."""
    speaker: str = Defaults.SYNTH_SPEAKER
    speed: float = Defaults.SYNTH_SPEED
    language: str = Defaults.SYNTH_LANGUAGE


class MaterialProcessor:
    """
    Turns a Material's text into per-chunk audio clips with word timings.

    The aligner and persistence pieces are optional: without an aligner the
    synthesizer's own word timings are used; without a cache or store the
    corresponding step is skipped.
    """

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        aligner: Optional[ForcedAligner] = None,
        cache: Optional[CacheStore] = None,
        materials: Optional[MaterialStore] = None,
        config: Optional[ServiceConfig] = None,
    ):
        self.synthesizer = synthesizer
        self.aligner = aligner
        self.cache = cache
        self.materials = materials
        self.config = config or ServiceConfig()
        self._preview_chars = self.config.logging.text_preview_chars

    async def resolve_speaker(self, requested: str = "") -> str:
        """
        Raises:
            SpeakerUnavailable: No speaker requested and none advertised.
        """
        if requested:
            return requested
        speakers = await self.synthesizer.list_speakers()
        if not speakers:
            raise SpeakerUnavailable(
                "no speaker available; set synthesizer.speaker or check the synthesis server",
                {"requested": requested or None},
            )
        debug(_LOG, "speaker_resolved", speaker=speakers[0], available=len(speakers))
        return speakers[0]

    async def word_stream(self, audio: bytes, fallback: List[WordTimestamp], language: str) -> List[WordTimestamp]:
        """Aligner words when available, else ``fallback``."""
        if self.aligner is None:
            return list(fallback)
        try:
            return await self.aligner.align(audio, language)
        except AlignmentUnavailable as e:
            warn(_LOG, "alignment_fallback", error=e.message, fallback_words=len(fallback))
            return list(fallback)

    async def generate(
        self,
        material: Material,
        voice: Optional[VoiceSettings] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Tuple[Material, Dict[str, float]]:
        """
        Generate audio for every chunk of ``material``.

        Returns:
            (updated Material, stage timings in seconds). The input
            material is not modified.

        Raises:
            SpeakerUnavailable: If no speaker can be resolved.
            SynthesisError: If the synthesis call fails.
            AudioDecodeError: If the synthesized audio cannot be decoded.
        """
        voice = voice or VoiceSettings(
            speaker=self.config.synthesizer.speaker,
            speed=self.config.synthesizer.speed,
            language=self.config.synthesizer.language,
        )
        set_request_id(material.id)
        timings: Dict[str, float] = {}
        text = " ".join(material.chunk_texts())
        preview = text[:self._preview_chars] if self._preview_chars > 0 else ""
        info(_LOG, "generate", material=material.id, chunks=len(material.chunks),
             chars=len(text), text_preview=preview)

        with timeit("generate_total") as total_t:
            # ─────────────────────────────────────────────────────────────
            # Stage 1: Speaker + synthesis
            # ─────────────────────────────────────────────────────────────
            speaker = await self.resolve_speaker(voice.speaker)
            with timeit("synth") as t:
                result = await self.synthesizer.synthesize(text, speaker, voice.speed, voice.language)
            timings["synth"] = t.seconds

            with timeit("decode") as t:
                full = decode_audio(result.audio)
            timings["decode"] = t.seconds
            verbose(_LOG, "stage", event="decode", seconds=round(timings["decode"], 4),
                    duration=round(full.duration, 3), sample_rate=full.sample_rate)

            # ─────────────────────────────────────────────────────────────
            # Stage 2: Word stream + alignment
            # ─────────────────────────────────────────────────────────────
            with timeit("align") as t:
                words = await self.word_stream(result.audio, result.words, voice.language)
                chunks = [replace(c) for c in material.chunks]
                if words:
                    report = align_words(chunks, words)
                    bounds = recalculate_boundaries(report.chunks)
                    chunks = bounds.chunks
                    verbose(_LOG, "aligned", matched=report.matched, filler=report.filler,
                            synthesized=report.synthesized, unaligned=len(bounds.unaligned))
                else:
                    warn(_LOG, "no_word_timings", material=material.id)
            timings["align"] = t.seconds

            # ─────────────────────────────────────────────────────────────
            # Stage 3: Slice, encode, cache
            # ─────────────────────────────────────────────────────────────
            with timeit("slice") as t:
                total = len(chunks)
                for index, chunk in enumerate(chunks):
                    chunks[index] = await self._slice_chunk(chunk, full)
                    if on_progress is not None:
                        on_progress(index + 1, total)
                    await asyncio.sleep(0)
            timings["slice"] = t.seconds

            # ─────────────────────────────────────────────────────────────
            # Stage 4: Persist
            # ─────────────────────────────────────────────────────────────
            updated = replace(
                material,
                chunks=chunks,
                duration=round(full.duration, 3),
                voice_config=VoiceConfig(speaker=speaker, speed=voice.speed),
            )
            updated.tts_generated = updated.has_audio
            if self.materials is not None:
                try:
                    updated = await self.materials.save(updated)
                except CacheIOError as e:
                    warn(_LOG, "material_save_failed", material=material.id, error=e.message)

        timings["total"] = total_t.seconds
        success(_LOG, "generated", material=material.id, chunks=len(chunks),
                duration=updated.duration, seconds=round(timings["total"], 3))
        return updated, timings

    async def _slice_chunk(self, chunk: Chunk, full) -> Chunk:
        clip = extract_segment_wav(full, chunk.start_time, chunk.end_time)
        chunk = replace(chunk, audio_data=b64encode_audio(clip))
        if self.cache is not None:
            try:
                await self.cache.put_chunk_audio(chunk.id, chunk.text, clip)
            except CacheIOError as e:
                warn(_LOG, "chunk_cache_failed", chunk=chunk.id, error=e.message)
        return chunk
