"""Tests for the senseflow command line."""
import asyncio
import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import numpy as np
import yaml

from senseflow import cli
from senseflow.clients import SynthesisResult
from senseflow.storage import CacheStore, FileKVStore
from senseflow.utils.audio import AudioBuffer, encode_wav


def _settings(tmpdir, **overrides):
    raw = {
        "storage": {"base_dir": str(Path(tmpdir) / "storage")},
        "aligner": {"enabled": False},
        "playback": {"sample_rate": 8000, "gap_seconds": 0.5},
    }
    raw.update(overrides)
    path = Path(tmpdir) / "settings.yaml"
    path.write_text(yaml.safe_dump(raw), encoding="utf-8")
    return str(path)


def _content(tmpdir):
    path = Path(tmpdir) / "content.json"
    path.write_text(json.dumps({"title": "Greeting", "chunks": ["Hello world.", "How are you?"]}),
                    encoding="utf-8")
    return str(path)


def _result(capsys):
    lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith('{"ok"')]
    assert lines, "no JSON result printed"
    return json.loads(lines[-1])


class FakeSynth:
    async def synthesize(self, text, speaker, speed=1.0, language="en"):
        samples = np.full(16000, 0.1, dtype=np.float32)
        return SynthesisResult(audio=encode_wav(AudioBuffer(samples, 8000)), duration=2.0)

    async def list_speakers(self):
        return ["en_f"]


class TestMaterialCommands:
    """Tests for create/list/export/import."""

    def test_create_and_list(self, capsys):
        """A created material shows up in list."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _settings(tmpdir)
            assert cli.main(["--config", config, "--json", "create", _content(tmpdir)]) == 0
            created = _result(capsys)

            assert cli.main(["--config", config, "--json", "list"]) == 0
            listed = _result(capsys)

        assert created["ok"] is True
        assert created["chunks"] == 2
        assert [m["id"] for m in listed["materials"]] == [created["id"]]
        assert listed["materials"][0]["tts_generated"] is False

    def test_create_flags_duplicate_content(self, capsys):
        """Creating the same content twice reports the second as a duplicate."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _settings(tmpdir)
            content = _content(tmpdir)
            cli.main(["--config", config, "--json", "create", content])
            first = _result(capsys)
            cli.main(["--config", config, "--json", "create", content])
            second = _result(capsys)

        assert first["duplicate"] is False
        assert second["duplicate"] is True

    def test_startup_trims_oversized_cache(self, capsys):
        """Every command first trims a cache left above its limit."""
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = Path(tmpdir) / "storage"

            async def fill():
                loose = CacheStore(FileKVStore(storage), max_entries=100, cleanup_threshold=100)
                for i in range(8):
                    await loose.put_text(f"t{i}")

            asyncio.run(fill())
            config = _settings(tmpdir, cache={"max_entries": 5, "cleanup_threshold": 3})
            assert cli.main(["--config", config, "--json", "stats"]) == 0
            stats = _result(capsys)

        assert stats["textCache"]["count"] == 5

    def test_export_then_import(self, capsys):
        """An export file imports into a fresh store."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _settings(tmpdir)
            cli.main(["--config", config, "--json", "create", _content(tmpdir)])
            created = _result(capsys)
            out = str(Path(tmpdir) / "backup.json")
            assert cli.main(["--config", config, "--json", "export", "--out", out]) == 0
            _result(capsys)

            fresh = Path(tmpdir) / "fresh"
            fresh.mkdir()
            other = _settings(fresh)
            assert cli.main(["--config", other, "--json", "import", out]) == 0
            imported = _result(capsys)

            bundle = json.loads(Path(out).read_text(encoding="utf-8"))

        assert bundle["version"] == "1.0"
        assert imported["imported"] == [created["id"]]

    def test_bad_import_exit_code(self, capsys):
        """An unrecognised import file exits 2 with the error code."""
        with tempfile.TemporaryDirectory() as tmpdir:
            bad = Path(tmpdir) / "bad.json"
            bad.write_text('{"foo": 1}', encoding="utf-8")
            code = cli.main(["--config", _settings(tmpdir), "--json", "import", str(bad)])
            lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()
                     if line.startswith('{"ok"')]

        assert code == 2
        assert lines[-1]["error"] == "IMPORT_FORMAT_ERROR"

    def test_missing_material(self):
        """Processing an unknown id exits 2."""
        with tempfile.TemporaryDirectory() as tmpdir:
            assert cli.main(["--config", _settings(tmpdir), "process", "nope"]) == 2

    def test_invalid_config(self):
        """A settings file that fails validation exits 1."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _settings(tmpdir, playback={"gap_sound": "trumpet"})
            assert cli.main(["--config", config, "list"]) == 1


class TestPipelineCommands:
    """Tests for process/render/stats/clear-cache with a fake synthesizer."""

    def test_process_render_stats(self, capsys):
        """Processing fills chunk audio; render writes a WAV; stats count the cache."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _settings(tmpdir)
            cli.main(["--config", config, "--json", "create", _content(tmpdir)])
            material_id = _result(capsys)["id"]

            with patch.object(cli._App, "synthesizer", return_value=FakeSynth()):
                assert cli.main(["--config", config, "--json", "process", material_id,
                                 "--speaker", "en_f"]) == 0
                processed = _result(capsys)

                wav = Path(tmpdir) / "session.wav"
                assert cli.main(["--config", config, "--json", "render", material_id,
                                 "--out", str(wav), "--gap-sound", "none"]) == 0
                rendered = _result(capsys)
                header = wav.read_bytes()[:12]

            assert cli.main(["--config", config, "--json", "stats"]) == 0
            stats = _result(capsys)
            assert cli.main(["--config", config, "--json", "clear-cache", "--namespace", "audio"]) == 0
            cleared = _result(capsys)

        assert processed["speaker"] == "en_f"
        assert processed["chunks"] == 2
        assert processed["duration"] == 2.0
        assert header[:4] == b"RIFF" and header[8:12] == b"WAVE"
        assert rendered["sample_rate"] == 8000
        assert rendered["seconds"] > 0
        assert stats["materialsCount"] == 1
        assert stats["audioCache"]["count"] == 2
        assert cleared["removed"] == 2
