"""
Command-line interface for senseflow.

Usage Examples:
    # Build a material from content JSON (title + chunks)
    senseflow create lesson.json

    # Synthesize, align and slice a stored material
    senseflow process gen_1718000000000 --speaker 英文女

    # Render a playback session (gaps, beeps, noise) to a WAV file
    senseflow render gen_1718000000000 --out session.wav --noise-volume 0.2

    # Backup / restore
    senseflow export --out backup.json
    senseflow import backup.json

    # Storage maintenance
    senseflow stats --json
    senseflow clear-cache --namespace audio

Environment Variables:
    SENSEFLOW_SETTINGS: Settings file (default config/settings.yaml)
    SENSEFLOW_SYNTH_URL / SENSEFLOW_ALIGNER_URL / SENSEFLOW_STORAGE_DIR
    SENSEFLOW_LOG_LEVEL: 1-4 or MINIMAL/NORMAL/VERBOSE/DEBUG
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from senseflow.clients import HttpForcedAligner, HttpSpeechSynthesizer
from senseflow.core.config import (
    GAP_SOUNDS,
    NOISE_TYPES,
    ConfigValidationError,
    ServiceConfig,
    Settings,
    load_settings,
)
from senseflow.core.errors import SenseflowError
from senseflow.core.logging import configure_logging, fail, get_logger, info, set_request_id, warn
from senseflow.pipeline import build_material
from senseflow.playback import render_material
from senseflow.services import MaterialProcessor, VoiceSettings
from senseflow.storage import AUDIO, TEXT, CacheStore, FileKVStore, HotAudioCache, MaterialStore
from senseflow.utils.audio import b64encode_audio, encode_wav

_LOG = get_logger("senseflow.cli")


@dataclass
class _App:
    config: ServiceConfig
    cache: CacheStore
    materials: MaterialStore

    def synthesizer(self) -> HttpSpeechSynthesizer:
        cfg = self.config.synthesizer
        return HttpSpeechSynthesizer(cfg.base_url, cfg.mode, cfg.timeout_s)

    def aligner(self) -> Optional[HttpForcedAligner]:
        cfg = self.config.aligner
        if not cfg.enabled:
            return None
        return HttpForcedAligner(cfg.base_url, cfg.model, cfg.language,
                                 cfg.max_attempts, cfg.backoff_s, cfg.timeout_s)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="senseflow", description="senseflow: listening material pipeline")
    parser.add_argument("--config", help="Settings YAML (default: $SENSEFLOW_SETTINGS or config/settings.yaml)")
    parser.add_argument("--json", action="store_true", help="Print JSON output")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create", help="Build and store a material from content JSON")
    p.add_argument("content", help="Content JSON file ({title, chunks: [...]})")

    p = sub.add_parser("process", help="Synthesize, align and slice a material")
    p.add_argument("material_id")
    p.add_argument("--speaker", help="Speaker override")
    p.add_argument("--speed", type=float, help="Speed override (0.5-2.0)")
    p.add_argument("--language", help="Language override")

    p = sub.add_parser("render", help="Render a playback session to WAV")
    p.add_argument("material_id")
    p.add_argument("--out", default="session.wav", help="Output WAV path")
    p.add_argument("--start", type=int, default=0, help="First chunk index")
    p.add_argument("--gap", type=float, help="Gap after each chunk, seconds")
    p.add_argument("--gap-sound", choices=GAP_SOUNDS)
    p.add_argument("--rate", type=float, help="Playback rate")
    p.add_argument("--noise-type", choices=NOISE_TYPES)
    p.add_argument("--noise-volume", type=float)
    p.add_argument("--noise-file", help="Audio file used when --noise-type custom")

    p = sub.add_parser("export", help="Export materials to JSON")
    p.add_argument("--id", dest="material_id", help="Export a single material")
    p.add_argument("--out", help="Output path (default: stdout)")

    p = sub.add_parser("import", help="Import materials from JSON")
    p.add_argument("file")

    sub.add_parser("list", help="List stored materials")
    sub.add_parser("stats", help="Storage statistics")

    p = sub.add_parser("clear-cache", help="Clear cached audio/text")
    p.add_argument("--namespace", choices=(AUDIO, TEXT))

    return parser.parse_args(argv)


def _load_config(path: Optional[str]) -> ServiceConfig:
    path = path or os.getenv("SENSEFLOW_SETTINGS", "config/settings.yaml")
    try:
        settings = load_settings(path)
    except FileNotFoundError:
        settings = Settings(raw={})
    return settings.get_service_config()


def _build_app(config: ServiceConfig) -> _App:
    store = FileKVStore(config.storage.base_dir)
    cache = CacheStore(store, config.cache.max_entries, config.cache.cleanup_threshold)
    materials = MaterialStore(store, cache, config.storage.max_materials)
    return _App(config=config, cache=cache, materials=materials)


async def _require(app: _App, material_id: str):
    material = await app.materials.get(material_id)
    if material is None:
        raise ValueError(f"material not found: {material_id}")
    return material


async def _cmd_create(app: _App, args: argparse.Namespace) -> Dict[str, Any]:
    raw = json.loads(Path(args.content).read_text(encoding="utf-8"))
    material = build_material(raw)
    duplicate = await app.cache.find_text(material.original_text) is not None
    if duplicate:
        warn(_LOG, "duplicate_content", id=material.id, title=material.title)
    await app.materials.save(material)
    await app.cache.put_text(material.original_text)
    return {"id": material.id, "title": material.title, "chunks": len(material.chunks),
            "duration": material.duration, "duplicate": duplicate}


async def _cmd_process(app: _App, args: argparse.Namespace) -> Dict[str, Any]:
    material = await _require(app, args.material_id)
    synth_cfg = app.config.synthesizer
    voice = VoiceSettings(
        speaker=args.speaker or synth_cfg.speaker,
        speed=args.speed if args.speed is not None else synth_cfg.speed,
        language=args.language or synth_cfg.language,
    )
    processor = MaterialProcessor(app.synthesizer(), app.aligner(), app.cache, app.materials, app.config)
    updated, timings = await processor.generate(
        material, voice,
        on_progress=lambda done, total: info(_LOG, "progress", done=done, total=total),
    )
    return {
        "id": updated.id,
        "duration": updated.duration,
        "speaker": updated.voice_config.speaker if updated.voice_config else None,
        "aligned": sum(1 for c in updated.chunks if c.aligned),
        "chunks": len(updated.chunks),
        "timings": {k: round(v, 4) for k, v in timings.items()},
    }


async def _cmd_render(app: _App, args: argparse.Namespace) -> Dict[str, Any]:
    material = await _require(app, args.material_id)
    pb = app.config.playback
    synth = app.config.synthesizer
    custom = None
    if args.noise_file:
        custom = b64encode_audio(Path(args.noise_file).read_bytes())

    buffer = await render_material(
        material,
        gap_seconds=pb.gap_seconds if args.gap is None else args.gap,
        gap_sound=args.gap_sound or pb.gap_sound,
        playback_rate=pb.playback_rate if args.rate is None else args.rate,
        noise_type=args.noise_type or pb.noise_type,
        noise_volume=pb.noise_volume if args.noise_volume is None else args.noise_volume,
        custom_noise=custom,
        sample_rate=pb.sample_rate,
        start_index=args.start,
        synthesizer=app.synthesizer(),
        hot_cache=HotAudioCache(app.config.cache.hot_max_items),
        cache=app.cache,
        speaker=(material.voice_config.speaker if material.voice_config else "") or synth.speaker,
        speed=synth.speed,
        language=synth.language,
        mode=synth.mode,
    )
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(encode_wav(buffer))
    return {"out": str(out), "seconds": round(buffer.duration, 3), "sample_rate": buffer.sample_rate}


async def _cmd_export(app: _App, args: argparse.Namespace) -> Dict[str, Any]:
    if args.material_id:
        payload = app.materials.export_one(await _require(app, args.material_id))
    else:
        payload = await app.materials.export_all()
    text = json.dumps(payload, ensure_ascii=False, indent=2)
    if not args.out:
        print(text)
        return {"out": None}
    Path(args.out).write_text(text, encoding="utf-8")
    return {"out": args.out, "bytes": len(text.encode("utf-8"))}


async def _cmd_import(app: _App, args: argparse.Namespace) -> Dict[str, Any]:
    materials = await app.materials.import_json(Path(args.file).read_text(encoding="utf-8"))
    return {"imported": [m.id for m in materials]}


async def _cmd_list(app: _App, args: argparse.Namespace) -> Dict[str, Any]:
    return {"materials": [
        {"id": m.id, "title": m.title, "chunks": len(m.chunks), "tts_generated": m.tts_generated}
        for m in await app.materials.list()
    ]}


async def _cmd_stats(app: _App, args: argparse.Namespace) -> Dict[str, Any]:
    return await app.materials.storage_stats()


async def _cmd_clear_cache(app: _App, args: argparse.Namespace) -> Dict[str, Any]:
    return {"removed": await app.cache.clear(args.namespace)}


_COMMANDS = {
    "create": _cmd_create,
    "process": _cmd_process,
    "render": _cmd_render,
    "export": _cmd_export,
    "import": _cmd_import,
    "list": _cmd_list,
    "stats": _cmd_stats,
    "clear-cache": _cmd_clear_cache,
}


async def _run(app: _App, args: argparse.Namespace) -> Dict[str, Any]:
    await app.cache.cleanup()
    return await _COMMANDS[args.command](app, args)


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        0 on success, 1 on configuration errors, 2 on pipeline errors.
    """
    args = _parse_args(argv)
    configure_logging()
    set_request_id(args.command)

    try:
        config = _load_config(args.config)
    except ConfigValidationError as e:
        fail(_LOG, "config_invalid", error=str(e))
        return 1

    app = _build_app(config)
    try:
        result = asyncio.run(_run(app, args))
    except SenseflowError as e:
        fail(_LOG, args.command, error=e.code, message=e.message)
        if args.json:
            print(json.dumps(e.to_dict(), ensure_ascii=False))
        return 2
    except ValueError as e:
        fail(_LOG, args.command, error=str(e))
        return 2

    payload = {"ok": True, **result}
    if args.json:
        print(json.dumps(payload, ensure_ascii=False))
    elif args.command != "export" or args.out:
        print(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
