"""
Utility modules for senseflow.

    - audio.py: AudioBuffer, WAV encoding/decoding, segment extraction
    - timeit.py: stage timing
"""
