"""Tests for the gzip+base64 material envelope."""
import base64
import gzip
import json
import warnings

import pytest

from senseflow.core.errors import CompressionError, CompressionVersionMismatch
from senseflow.models import Chunk, Material, MaterialConfig, VoiceConfig, WordTimestamp
from senseflow.storage.compression import (
    ENVELOPE_VERSION,
    compress,
    compression_ratio,
    decompress,
)


def _material():
    chunks = [
        Chunk("chunk_0", "Hello world.", 0.0, 1.2, translation="Merhaba dünya.",
              words=[WordTimestamp("Hello", 0.1, 0.5), WordTimestamp("world.", 0.5, 1.2)]),
        Chunk("chunk_1", "How are you?", 1.2, 2.4),
    ]
    return Material(
        id="gen_1",
        title="Greetings",
        chunks=chunks,
        description="Small talk",
        original_text="Hello world. How are you?",
        duration=2.4,
        config=MaterialConfig(tags=["daily"], difficulty="Easy"),
        voice_config=VoiceConfig(speaker="en_f", speed=1.0, generated_at=1700000000000),
        tts_generated=False,
        created_at=1700000000000,
    )


def _pack(envelope):
    raw = json.dumps(envelope).encode("utf-8")
    return base64.b64encode(gzip.compress(raw)).decode("ascii")


class TestCompress:
    """Tests for compress()/decompress()."""

    def test_roundtrip(self):
        """A material survives compress + decompress unchanged."""
        material = _material()
        assert decompress(compress(material).data) == material

    def test_byte_stable(self):
        """The same material always compresses to the same payload."""
        assert compress(_material()).data == compress(_material()).data

    def test_sizes_reported(self):
        """original_size is the JSON size; compressed_size the gzip size."""
        packed = compress(_material())
        assert packed.original_size > 0
        assert packed.compressed_size == len(base64.b64decode(packed.data))
        assert packed.to_dict()["originalSize"] == packed.original_size

    def test_envelope_carries_version(self):
        """The payload is a versioned envelope."""
        raw = gzip.decompress(base64.b64decode(compress(_material()).data))
        envelope = json.loads(raw)
        assert envelope["version"] == ENVELOPE_VERSION
        assert envelope["material"]["id"] == "gen_1"

    def test_word_times_are_floats(self):
        """Integer word times in a payload decode as floats."""
        body = _material().to_dict()
        body["chunks"][0]["words"] = [{"word": "Hello", "start": 0, "end": 1}]
        material = decompress(_pack({"version": ENVELOPE_VERSION, "material": body}))
        word = material.chunks[0].words[0]
        assert isinstance(word.start, float) and isinstance(word.end, float)


class TestVersionMismatch:
    """Tests for unknown envelope versions."""

    def test_unknown_version_warns_and_decodes(self):
        """A future version warns but still decodes known fields."""
        body = _material().to_dict()
        body["futureField"] = {"x": 1}
        payload = _pack({"version": 99, "material": body})

        with pytest.warns(CompressionVersionMismatch):
            material = decompress(payload)

        assert material.id == "gen_1"
        assert len(material.chunks) == 2

    def test_unwrapped_material_decodes(self):
        """A bare material (no envelope) is decoded best-effort."""
        payload = _pack(_material().to_dict())
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            material = decompress(payload)
        assert material.title == "Greetings"
        assert any(issubclass(w.category, CompressionVersionMismatch) for w in caught)

    def test_warning_carries_error_code(self):
        """The warning category exposes its error code."""
        assert CompressionVersionMismatch.code == "COMPRESSION_VERSION_MISMATCH"


class TestCorruptPayload:
    """Tests for unreadable payloads."""

    @pytest.mark.parametrize("payload", [
        "not base64 at all!!",
        base64.b64encode(b"plain bytes, not gzip").decode("ascii"),
        base64.b64encode(gzip.compress(b"{not json")).decode("ascii"),
        base64.b64encode(gzip.compress(b"[1, 2, 3]")).decode("ascii"),
    ])
    def test_raises_compression_error(self, payload):
        """Bad base64, gzip or JSON raise CompressionError."""
        with pytest.raises(CompressionError):
            decompress(payload)


class TestCompressionRatio:
    """Tests for compression_ratio()."""

    def test_percentage(self):
        """Ratio is the percentage saved."""
        assert compression_ratio(1000, 250) == 75.0

    def test_zero_original(self):
        """An empty original has ratio 0."""
        assert compression_ratio(0, 20) == 0.0
