"""
Recompute chunk boundaries from aligned words.

Each aligned chunk starts LEAD_IN_SECONDS before its first word (never
before 0 and never before the previous chunk's end) and ends at its
last word. Words are then rebased to be relative to the chunk start so
each chunk's clip can be highlighted on its own.

Chunks without words keep their estimated times.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import List, Sequence

from senseflow.models import Chunk

LEAD_IN_SECONDS = 0.1


@dataclass
class BoundaryResult:
    chunks: List[Chunk]
    unaligned: List[str] = field(default_factory=list)


def recalculate_boundaries(chunks: Sequence[Chunk]) -> BoundaryResult:
    """
    Return copies of ``chunks`` with non-overlapping start/end times.

    ``words`` on the input must be absolute times; on the output they are
    relative to the chunk's new ``start_time``.
    """
    result = BoundaryResult(chunks=[])
    last_end = 0.0

    for chunk in chunks:
        if not chunk.words:
            result.chunks.append(chunk)
            result.unaligned.append(chunk.id)
            continue

        start = max(0.0, chunk.words[0].start - LEAD_IN_SECONDS)
        if start < last_end:
            start = last_end
        end = chunk.words[-1].end
        last_end = end

        result.chunks.append(replace(
            chunk,
            start_time=start,
            end_time=end,
            words=[w.rebased(start) for w in chunk.words],
        ))

    return result
