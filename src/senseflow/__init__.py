"""
senseflow: listening-practice materials with aligned speech.

A material is an ordered list of text chunks over one continuous
synthesized track. senseflow synthesizes the track, aligns recognized
words back onto the chunk texts, slices per-chunk clips, caches and
stores the result, and plays chunks back with gaps, cue beeps and
background noise.

Key Features:
    - Word-stream to chunk alignment with bounded lookahead
    - Non-overlapping chunk boundaries with a 100 ms lead-in
    - Persistent audio/text cache with hysteresis eviction
    - gzip+base64 material envelope for compact transfer
    - Scheduler-driven playback (live or offline mixdown)

Example Usage:
    >>> from senseflow.pipeline import build_material
    >>> from senseflow.services import MaterialProcessor, VoiceSettings
    >>>
    >>> material = build_material({"title": "Cafe", "chunks": ["Hello there.", "How are you?"]})
    >>> material, timings = asyncio.run(processor.generate(material, VoiceSettings(speaker="en_f")))
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
