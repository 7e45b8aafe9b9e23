"""
Pure alignment pipeline steps.

    - timeline.py: estimated chunk times before synthesis
    - alignment.py: word stream -> chunk assignment
    - boundaries.py: non-overlapping chunk times, chunk-relative words

All functions here are synchronous and do no I/O. align_words and
recalculate_boundaries return new chunks and leave their input untouched.
"""
from .alignment import LOOKAHEAD, AlignmentResult, align_words, normalize_token
from .boundaries import LEAD_IN_SECONDS, BoundaryResult, recalculate_boundaries
from .timeline import build_material, estimate_timeline

__all__ = [
    "LOOKAHEAD",
    "LEAD_IN_SECONDS",
    "AlignmentResult",
    "BoundaryResult",
    "align_words",
    "normalize_token",
    "recalculate_boundaries",
    "build_material",
    "estimate_timeline",
]
