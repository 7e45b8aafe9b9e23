"""
Material persistence, export and import.

Materials live in the ``materials`` collection keyed by id. Saving keeps
the collection at ``max_materials`` by deleting the oldest (by
``created_at``) before a new material is added. Deleting a material also
deletes the cached clips of its rendered chunks.

Export formats:
    bulk:   {"version": "1.0", "exportDate": "<ISO 8601>", "materials": [...]}
    single: {"id": ..., "title": ..., "chunks": [...], ...}

import_json() accepts either shape. The whole payload is validated
before anything is written, so a bad file imports nothing.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from senseflow.core.config import Defaults
from senseflow.core.errors import ImportFormatError
from senseflow.core.logging import get_logger, info, success, verbose
from senseflow.models import Material, now_ms
from senseflow.storage.cache import AUDIO, TEXT, CacheStore, chunk_key
from senseflow.storage.kv import KVStore

_LOG = get_logger("senseflow.materials")

MATERIALS = "materials"
SETTINGS = "settings"
SETTINGS_KEY = "main"
EXPORT_VERSION = "1.0"


class MaterialStore:
    """Stores materials and user settings; owns cascade deletes into the cache."""

    def __init__(
        self,
        store: KVStore,
        cache: CacheStore,
        max_materials: int = Defaults.STORAGE_MAX_MATERIALS,
    ):
        self.store = store
        self.cache = cache
        self.max_materials = int(max_materials)

    async def get(self, material_id: str) -> Optional[Material]:
        data = await self.store.get(MATERIALS, material_id)
        return Material.from_dict(data) if data is not None else None

    async def list(self) -> List[Material]:
        """All materials, oldest first."""
        raw = await self.store.get_all(MATERIALS)
        materials = [Material.from_dict(d) for d in raw.values()]
        materials.sort(key=lambda m: m.created_at or 0)
        return materials

    async def save(self, material: Material) -> Material:
        """
        Persist ``material``.

        Sets ``created_at`` when missing and recomputes ``tts_generated``
        from the chunks. Adding a new material to a full store first
        deletes the oldest ones.
        """
        if await self.store.get(MATERIALS, material.id) is None:
            await self._ensure_limit()

        if not material.created_at:
            material.created_at = now_ms()
        material.tts_generated = material.has_audio

        await self.store.put(MATERIALS, material.id, material.to_dict())
        verbose(_LOG, "saved", material=material.id, chunks=len(material.chunks),
                tts_generated=material.tts_generated)
        return material

    async def delete(self, material_id: str) -> bool:
        material = await self.get(material_id)
        if material is not None:
            for chunk in material.chunks:
                if chunk.audio_data:
                    await self.cache.delete(AUDIO, chunk_key(chunk.id, chunk.text))
        removed = await self.store.delete(MATERIALS, material_id)
        if removed:
            info(_LOG, "deleted", material=material_id)
        return removed

    async def clear(self) -> int:
        return await self.store.clear(MATERIALS)

    async def clear_all(self) -> None:
        """Delete materials, settings and both cache namespaces."""
        await self.store.clear(MATERIALS)
        await self.store.clear(SETTINGS)
        await self.cache.clear()
        info(_LOG, "cleared_all")

    async def _ensure_limit(self) -> None:
        materials = await self.list()
        if len(materials) < self.max_materials:
            return
        doomed = materials[:len(materials) - self.max_materials + 1]
        for material in doomed:
            await self.delete(material.id)
        info(_LOG, "limit_enforced", removed=len(doomed), limit=self.max_materials)

    # ─────────────────────────────────────────────────────────────────────────
    # Settings
    # ─────────────────────────────────────────────────────────────────────────

    async def get_settings(self) -> Optional[Dict[str, Any]]:
        return await self.store.get(SETTINGS, SETTINGS_KEY)

    async def save_settings(self, settings: Dict[str, Any]) -> None:
        await self.store.put(SETTINGS, SETTINGS_KEY, dict(settings))

    async def storage_stats(self) -> Dict[str, Any]:
        audio = await self.cache.stats(AUDIO)
        text = await self.cache.stats(TEXT)
        materials = await self.store.get_all(MATERIALS)
        return {
            "settings": await self.get_settings() is not None,
            "materialsCount": len(materials),
            "audioCache": {"count": audio["count"], "size": audio["totalSize"]},
            "textCache": {"count": text["count"], "size": text["totalSize"]},
            "totalSize": audio["totalSize"] + text["totalSize"],
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Export / import
    # ─────────────────────────────────────────────────────────────────────────

    async def export_all(self) -> Dict[str, Any]:
        materials = await self.list()
        return {
            "version": EXPORT_VERSION,
            "exportDate": datetime.now(timezone.utc).isoformat(),
            "materials": [m.to_dict() for m in materials],
        }

    @staticmethod
    def export_one(material: Material) -> Dict[str, Any]:
        return material.to_dict()

    async def import_json(self, text: str) -> List[Material]:
        """
        Import a bulk export or a single material.

        Raises:
            ImportFormatError: If ``text`` is not JSON, matches neither
                shape, or contains a material that cannot be read.
                Nothing is saved in that case.
        """
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ImportFormatError("import file is not valid JSON", {"error": str(e)}) from e
        materials = parse_import(data)
        for material in materials:
            await self.save(material)
        success(_LOG, "imported", materials=len(materials))
        return materials


def parse_import(data: Any) -> List[Material]:
    """
    Validate an import payload and build its materials.

    Raises:
        ImportFormatError: See MaterialStore.import_json.
    """
    if not isinstance(data, dict):
        raise ImportFormatError("import payload must be a JSON object")

    if isinstance(data.get("materials"), list):
        records = data["materials"]
    elif data.get("chunks") and data.get("title"):
        records = [data]
    else:
        raise ImportFormatError(
            "unrecognised import format: expected a bulk export with 'materials' "
            "or a single material with 'title' and 'chunks'",
            {"keys": sorted(data)[:10]},
        )

    materials = []
    for i, record in enumerate(records):
        if not isinstance(record, dict):
            raise ImportFormatError(f"material {i} is not an object")
        try:
            materials.append(Material.from_dict(record, index=i))
        except (TypeError, ValueError) as e:
            raise ImportFormatError(f"material {i} is malformed", {"error": str(e)}) from e
    return materials
