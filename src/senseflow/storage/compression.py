"""
Versioned, gzip-compressed material envelope.

    data = base64(gzip(json({"version": 1, "material": {...}})))

The gzip level is fixed and the gzip header timestamp is zeroed, so the
same material always compresses to the same bytes.

Decoding is tolerant of envelope versions it does not know: it emits a
CompressionVersionMismatch warning and maps whatever fields it can.
Only payloads that are not base64, not gzip, or not JSON fail, with
CompressionError.
"""
from __future__ import annotations

import base64
import binascii
import gzip
import json
import warnings
import zlib
from dataclasses import dataclass
from typing import Any, Dict

from senseflow.core.errors import CompressionError, CompressionVersionMismatch
from senseflow.core.logging import get_logger, verbose, warn
from senseflow.models import Material

_LOG = get_logger("senseflow.compression")

ENVELOPE_VERSION = 1
COMPRESSION_LEVEL = 6


@dataclass
class CompressedMaterial:
    data: str
    original_size: int
    compressed_size: int

    @property
    def ratio(self) -> float:
        return compression_ratio(self.original_size, self.compressed_size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "originalSize": self.original_size,
            "compressedSize": self.compressed_size,
        }


def _normalize_words(material_dict: Dict[str, Any]) -> Dict[str, Any]:
    for chunk in material_dict.get("chunks") or []:
        if not isinstance(chunk, dict):
            continue
        for word in chunk.get("words") or []:
            if isinstance(word, dict):
                word["start"] = float(word.get("start", 0) or 0)
                word["end"] = float(word.get("end", 0) or 0)
    return material_dict


def compress(material: Material) -> CompressedMaterial:
    envelope = {"version": ENVELOPE_VERSION, "material": _normalize_words(material.to_dict())}
    raw = json.dumps(envelope, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    packed = gzip.compress(raw, compresslevel=COMPRESSION_LEVEL, mtime=0)
    result = CompressedMaterial(
        data=base64.b64encode(packed).decode("ascii"),
        original_size=len(raw),
        compressed_size=len(packed),
    )
    verbose(_LOG, "compressed", material=material.id, original=result.original_size,
            compressed=result.compressed_size, ratio=round(result.ratio, 1))
    return result


def decompress(data: str) -> Material:
    """
    Decode a payload produced by compress().

    Raises:
        CompressionError: If the payload cannot be decoded at all.
    """
    try:
        raw = gzip.decompress(base64.b64decode(data, validate=True))
        envelope = json.loads(raw.decode("utf-8"))
    except (binascii.Error, OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError) as e:
        raise CompressionError("compressed payload is unreadable", {"error": str(e)}) from e

    if not isinstance(envelope, dict):
        raise CompressionError("compressed payload is not an object")

    version = envelope.get("version")
    if version != ENVELOPE_VERSION:
        message = f"unknown compression envelope version {version!r}, decoding best-effort"
        warnings.warn(message, CompressionVersionMismatch, stacklevel=2)
        warn(_LOG, "version_mismatch", version=version, expected=ENVELOPE_VERSION)

    body = envelope.get("material", envelope)
    if not isinstance(body, dict):
        raise CompressionError("compressed payload has no material")
    try:
        return Material.from_dict(_normalize_words(body))
    except (TypeError, ValueError) as e:
        raise CompressionError("compressed material is malformed", {"error": str(e)}) from e


def compression_ratio(original_size: int, compressed_size: int) -> float:
    """Space saved as a percentage of the original; 0 for an empty original."""
    if original_size == 0:
        return 0.0
    return (original_size - compressed_size) / original_size * 100
