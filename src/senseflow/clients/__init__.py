"""
Adapters for the external speech services.

    - synthesizer.py: SpeechSynthesizer protocol + HTTP implementation
    - aligner.py: ForcedAligner protocol + HTTP implementation (with retry)
"""
from .aligner import ForcedAligner, HttpForcedAligner
from .synthesizer import HttpSpeechSynthesizer, SpeechSynthesizer, SynthesisResult

__all__ = [
    "ForcedAligner",
    "HttpForcedAligner",
    "HttpSpeechSynthesizer",
    "SpeechSynthesizer",
    "SynthesisResult",
]
