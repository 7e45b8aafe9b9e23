"""
Assign a flat word-timestamp stream to ordered text chunks.

The synthesizer speaks the whole material as one track, and the aligner
returns one flat list of timed words for it. Each chunk's text is walked
token by token against a single forward cursor over that list:

    1. exact match (after normalization): take the word, cursor += 1
    2. otherwise look up to LOOKAHEAD words ahead; on a hit at offset k,
       the k skipped words are fillers that belong to this chunk
    3. otherwise emit the expected token with the current word's timing
       and advance by one, so the cursor always moves forward
    4. once the stream runs out, the remaining chunks get no words

The walk is deterministic and never reorders words. A drift wider than
LOOKAHEAD is not recovered; step 3 keeps consuming one word per token
until the texts line up again.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import List, Sequence

from senseflow.models import Chunk, WordTimestamp

LOOKAHEAD = 5

_STRIP_CHARS = ".,!?;:\"'()"
_STRIP_TABLE = str.maketrans("", "", _STRIP_CHARS)


def normalize_token(token: str) -> str:
    """Comparison form of a token: punctuation stripped, lower-cased."""
    return token.translate(_STRIP_TABLE).lower()


@dataclass
class AlignmentResult:
    """
    Chunks with assigned absolute-time words plus counters for logging.

    Attributes:
        matched: Tokens matched directly or after a lookahead skip.
        filler: Stream words absorbed as fillers during lookahead skips.
        synthesized: Tokens given the current word's timing without a match.
        unaligned: Ids of chunks left without words.
    """
    chunks: List[Chunk]
    matched: int = 0
    filler: int = 0
    synthesized: int = 0
    unaligned: List[str] = field(default_factory=list)


def align_words(chunks: Sequence[Chunk], stream: Sequence[WordTimestamp]) -> AlignmentResult:
    """
    Distribute ``stream`` over ``chunks`` in order.

    Input chunks are not modified; the result holds copies whose
    ``words`` are set to absolute-time WordTimestamps (or None).
    """
    result = AlignmentResult(chunks=[])
    cursor = 0
    total = len(stream)

    for chunk in chunks:
        if cursor >= total:
            result.chunks.append(replace(chunk, words=None))
            result.unaligned.append(chunk.id)
            continue

        assigned: List[WordTimestamp] = []
        for token in chunk.text.split():
            if cursor >= total:
                break
            expected = normalize_token(token)

            current = stream[cursor]
            if normalize_token(current.word) == expected:
                assigned.append(WordTimestamp(token, current.start, current.end))
                result.matched += 1
                cursor += 1
                continue

            offset = _find_ahead(stream, cursor, expected)
            if offset:
                assigned.extend(stream[cursor:cursor + offset])
                hit = stream[cursor + offset]
                assigned.append(WordTimestamp(token, hit.start, hit.end))
                result.filler += offset
                result.matched += 1
                cursor += offset + 1
                continue

            assigned.append(WordTimestamp(token, current.start, current.end))
            result.synthesized += 1
            cursor += 1

        if assigned:
            result.chunks.append(replace(chunk, words=assigned))
        else:
            result.chunks.append(replace(chunk, words=None))
            result.unaligned.append(chunk.id)

    return result


def _find_ahead(stream: Sequence[WordTimestamp], cursor: int, expected: str) -> int:
    """Offset 1..LOOKAHEAD of the first match after ``cursor``, or 0."""
    for k in range(1, LOOKAHEAD + 1):
        idx = cursor + k
        if idx >= len(stream):
            break
        if normalize_token(stream[idx].word) == expected:
            return k
    return 0
