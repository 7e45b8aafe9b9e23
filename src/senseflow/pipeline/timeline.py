"""
Turn content-source output into a Material with an estimated timeline.

Before any audio exists, chunk times are estimated from text length
(CHARS_PER_SECOND, with a MIN_CHUNK_SECONDS floor) and laid end to end.
Synthesis later replaces these estimates for every chunk that aligns.
"""
from __future__ import annotations

from typing import Any, Dict, List, Sequence

from senseflow.models import Chunk, Material, MaterialConfig, now_ms
from senseflow.schemas import ContentPayload

CHARS_PER_SECOND = 12
MIN_CHUNK_SECONDS = 1.5


def estimate_timeline(chunks: Sequence[Chunk]) -> float:
    """Assign estimated start/end times in place; returns the total duration."""
    cursor = 0.0
    for chunk in chunks:
        length = max(MIN_CHUNK_SECONDS, len(chunk.text) / CHARS_PER_SECOND)
        chunk.start_time = round(cursor, 2)
        chunk.end_time = round(cursor + length, 2)
        cursor += length
    return round(cursor, 2)


def build_material(content: ContentPayload | Dict[str, Any], provider: str = "local") -> Material:
    """
    Build an unsynthesized Material from a content payload.

    Raises:
        pydantic.ValidationError: If ``content`` is a dict that does not
            describe at least one non-empty chunk.
    """
    if not isinstance(content, ContentPayload):
        content = ContentPayload.model_validate(content)

    stamp = now_ms()
    material_id = f"gen_{stamp}"
    chunks: List[Chunk] = [
        Chunk(
            id=f"{material_id}_{i}",
            text=c.text.strip(),
            translation=c.translation,
            speaker=c.speaker,
        )
        for i, c in enumerate(content.normalized_chunks())
    ]
    duration = estimate_timeline(chunks)

    return Material(
        id=material_id,
        title=content.title,
        description=content.description,
        original_text=content.original_text or " ".join(c.text for c in chunks),
        chunks=chunks,
        duration=duration,
        config=MaterialConfig(
            provider_type=provider,
            tags=list(content.tags),
            difficulty=content.difficulty,
        ),
        created_at=stamp,
    )
