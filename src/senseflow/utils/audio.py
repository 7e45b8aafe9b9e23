"""
Audio buffers, WAV encoding and sample-accurate slicing.

Audio inside senseflow is an AudioBuffer: float32 samples shaped
(frames, channels) with values in [-1, 1], plus a sample rate.

Encoding writes a plain 44-byte RIFF/WAVE PCM16 header followed by
interleaved little-endian samples. Samples are clamped to [-1, 1];
negative values are scaled by 0x8000 and positive values by 0x7fff so
both extremes map exactly onto the int16 range.

Decoding goes through soundfile (libsndfile), so any format it reads
is accepted. Failures surface as AudioDecodeError.

Dependencies:
    - numpy: sample arrays
    - soundfile: decoding
"""
from __future__ import annotations

import base64
import binascii
import io
import math
import struct
from dataclasses import dataclass

import numpy as np
import soundfile as sf

from senseflow.core.errors import AudioDecodeError
from senseflow.core.logging import get_logger, verbose
from senseflow.utils.timeit import timeit

_LOG = get_logger("senseflow.audio")

WAV_HEADER_SIZE = 44


@dataclass
class AudioBuffer:
    """Float32 samples shaped (frames, channels)."""
    samples: np.ndarray
    sample_rate: int

    def __post_init__(self) -> None:
        arr = np.asarray(self.samples, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        self.samples = arr
        self.sample_rate = int(self.sample_rate)

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0

    @classmethod
    def silence(cls, seconds: float, sample_rate: int, channels: int = 1) -> "AudioBuffer":
        frames = max(0, int(round(seconds * sample_rate)))
        return cls(np.zeros((frames, channels), dtype=np.float32), sample_rate)


def encode_wav(buffer: AudioBuffer) -> bytes:
    """Encode as PCM16 WAV (mono or stereo, interleaved)."""
    data = np.clip(buffer.samples, -1.0, 1.0)
    scaled = np.where(data < 0, data * 0x8000, data * 0x7FFF)
    pcm = scaled.astype("<i2").tobytes()

    channels = buffer.channels
    block_align = channels * 2
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        buffer.sample_rate,
        buffer.sample_rate * block_align,
        block_align,
        16,
        b"data",
        len(pcm),
    )
    return header + pcm


def decode_audio(data: bytes) -> AudioBuffer:
    """
    Decode audio bytes into an AudioBuffer.

    Raises:
        AudioDecodeError: If the bytes are empty or not a readable format.
    """
    if not data:
        raise AudioDecodeError("audio payload is empty")
    try:
        samples, sr = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    except (RuntimeError, ValueError, TypeError) as e:
        raise AudioDecodeError("could not decode audio", {"bytes": len(data), "error": str(e)}) from e
    return AudioBuffer(samples, int(sr))


def extract_segment(full: AudioBuffer, start_sec: float, end_sec: float) -> AudioBuffer:
    """
    Copy the samples between ``start_sec`` and ``end_sec``.

    The window is ``[floor(start*sr), min(ceil(end*sr), frames))`` clamped
    to the buffer. Out-of-range or inverted windows give a short or empty
    clip instead of raising.
    """
    sr = full.sample_rate
    total = full.frames

    start_sample = math.floor(start_sec * sr)
    end_sample = min(math.ceil(end_sec * sr), total)
    length = end_sample - start_sample

    safe_start = min(max(0, start_sample), total)
    safe_length = max(0, min(length, total - safe_start))

    return AudioBuffer(full.samples[safe_start:safe_start + safe_length].copy(), sr)


def extract_segment_wav(full: AudioBuffer, start_sec: float, end_sec: float) -> bytes:
    """extract_segment followed by encode_wav."""
    with timeit("slice") as t:
        out = encode_wav(extract_segment(full, start_sec, end_sec))
    verbose(_LOG, "segment", start=round(start_sec, 3), end=round(end_sec, 3),
            bytes=len(out), seconds=round(t.seconds, 5))
    return out


def b64encode_audio(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode_audio(data: str) -> bytes:
    """
    Decode base64 audio, accepting a ``data:<mime>;base64,`` prefix.

    Raises:
        AudioDecodeError: If the payload is not valid base64.
    """
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioDecodeError("audio payload is not valid base64", {"error": str(e)}) from e


def tone(
    frequency: float,
    seconds: float,
    sample_rate: int,
    gain: float = 0.3,
    decay_to: float = 0.01,
) -> AudioBuffer:
    """Mono sine with gain decaying exponentially from ``gain`` to ``decay_to``."""
    frames = max(1, int(round(seconds * sample_rate)))
    t = np.arange(frames, dtype=np.float64) / sample_rate
    envelope = gain * (decay_to / gain) ** (t / seconds)
    wave = np.sin(2.0 * np.pi * frequency * t) * envelope
    return AudioBuffer(wave.astype(np.float32), sample_rate)
