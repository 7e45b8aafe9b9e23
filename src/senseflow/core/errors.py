"""
Error types for the senseflow pipeline.

Every failure the pipeline reports carries a stable code from ErrorCode
so callers (the CLI, or an embedding application) can react without
parsing messages.

Fatal vs. non-fatal:
    AudioDecodeError, SpeakerUnavailable, SynthesisError, ImportFormatError,
    CompressionError and PlaybackError propagate to the caller.
    AlignmentUnavailable and CacheIOError are caught inside the pipeline,
    logged as warnings, and processing continues with degraded output.
    CompressionVersionMismatch is a warning category, never raised.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    """Stable error codes."""
    DECODE_ERROR = "DECODE_ERROR"
    ALIGNMENT_UNAVAILABLE = "ALIGNMENT_UNAVAILABLE"
    SPEAKER_UNAVAILABLE = "SPEAKER_UNAVAILABLE"
    CACHE_IO_ERROR = "CACHE_IO_ERROR"
    COMPRESSION_VERSION_MISMATCH = "COMPRESSION_VERSION_MISMATCH"
    COMPRESSION_ERROR = "COMPRESSION_ERROR"
    IMPORT_FORMAT_ERROR = "IMPORT_FORMAT_ERROR"
    SYNTHESIS_FAILED = "SYNTHESIS_FAILED"
    PLAYBACK_ERROR = "PLAYBACK_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SenseflowError(Exception):
    """
    Base exception for senseflow errors.

    Attributes:
        message: Human-readable error message.
        code: Error code from ErrorCode.
        details: Extra context (ids, keys, upstream status).
    """
    def __init__(self, message: str, code: str = ErrorCode.INTERNAL_ERROR, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ok": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class AudioDecodeError(SenseflowError):
    """Synthesized or stored audio bytes could not be decoded."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.DECODE_ERROR, details)


class AlignmentUnavailable(SenseflowError):
    """The forced aligner could not produce word timings."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.ALIGNMENT_UNAVAILABLE, details)


class SpeakerUnavailable(SenseflowError):
    """No speaker could be resolved for synthesis."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.SPEAKER_UNAVAILABLE, details)


class CacheIOError(SenseflowError):
    """The persistent store failed a read or write."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.CACHE_IO_ERROR, details)


class CompressionError(SenseflowError):
    """A compressed payload is not valid base64, gzip or JSON."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.COMPRESSION_ERROR, details)


class ImportFormatError(SenseflowError):
    """An import payload matches neither the bulk nor the single-material shape."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.IMPORT_FORMAT_ERROR, details)


class SynthesisError(SenseflowError):
    """The speech synthesizer rejected the request or returned no audio."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.SYNTHESIS_FAILED, details)


class PlaybackError(SenseflowError):
    """A chunk has no playable audio and no way to synthesize it."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.PLAYBACK_ERROR, details)


class CompressionVersionMismatch(UserWarning):
    """Emitted when a compressed payload carries an unknown envelope version."""
    code = ErrorCode.COMPRESSION_VERSION_MISMATCH
