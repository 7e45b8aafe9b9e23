"""
Persistent key/value store with named collections.

Collections used by senseflow: ``materials``, ``audioCache``,
``textCache``, ``settings``. Values are JSON-serializable dicts.

FileKVStore layout (sharded to keep directories small):

    {base_dir}/
        audioCache/
            3f/
                3f9a...c1.json     # {"key": "...", "value": {...}}
        materials/
            ...

File names are the SHA256 of the key; the key itself is stored in the
record so get_all() can return it. Writes go to a temp file and are
renamed into place, so a crash never leaves a half-written record.
Blocking file I/O runs in a worker thread via asyncio.to_thread.

Writes to the same key are serialized with a per-key asyncio.Lock
(last writer wins); distinct keys proceed independently.

Any OSError or unreadable record is raised as CacheIOError.
"""
from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import weakref
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

from senseflow.core.errors import CacheIOError
from senseflow.core.logging import debug, get_logger, verbose
from senseflow.utils.timeit import timeit

_LOG = get_logger("senseflow.kv")

COLLECTIONS = ("materials", "audioCache", "textCache", "settings")


class KVStore(Protocol):
    """Async key/value store keyed by (collection, key)."""

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]: ...

    async def put(self, collection: str, key: str, value: Dict[str, Any]) -> None: ...

    async def delete(self, collection: str, key: str) -> bool: ...

    async def get_all(self, collection: str) -> Dict[str, Dict[str, Any]]: ...

    async def clear(self, collection: str) -> int: ...


class _KeyLocks:
    """Lazily created asyncio.Lock per (collection, key), dropped when unused."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, collection: str, key: str) -> asyncio.Lock:
        lock = self._locks.get((collection, key))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[(collection, key)] = lock
        return lock


def _hash_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class FileKVStore:
    """JSON-file backed KVStore rooted at ``base_dir``."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self._locks = _KeyLocks()

    def _path(self, collection: str, key: str) -> Path:
        digest = _hash_key(key)
        return self.base_dir / collection / digest[:2] / f"{digest}.json"

    # ── sync helpers, run in a worker thread ────────────────────────────────

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise CacheIOError("store read failed", {"path": str(path), "error": str(e)}) from e
        except ValueError as e:
            raise CacheIOError("store record is corrupt", {"path": str(path), "error": str(e)}) from e
        if not isinstance(record, dict) or "value" not in record:
            raise CacheIOError("store record is corrupt", {"path": str(path)})
        return record

    def _write(self, path: Path, key: str, value: Dict[str, Any]) -> int:
        payload = json.dumps({"key": key, "value": value}, ensure_ascii=False)
        tmp = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(payload, encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise CacheIOError("store write failed", {"path": str(path), "error": str(e)}) from e
        return len(payload)

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CacheIOError("store delete failed", {"path": str(path), "error": str(e)}) from e

    def _scan(self, collection: str) -> Dict[str, Dict[str, Any]]:
        root = self.base_dir / collection
        out: Dict[str, Dict[str, Any]] = {}
        if not root.exists():
            return out
        try:
            files = sorted(root.glob("*/*.json"))
        except OSError as e:
            raise CacheIOError("store scan failed", {"collection": collection, "error": str(e)}) from e
        for path in files:
            record = self._read(path)
            if record is not None:
                out[str(record.get("key"))] = record["value"]
        return out

    def _clear(self, collection: str) -> int:
        root = self.base_dir / collection
        if not root.exists():
            return 0
        removed = 0
        try:
            for path in root.glob("*/*.json"):
                path.unlink()
                removed += 1
            for shard in root.iterdir():
                if shard.is_dir() and not any(shard.iterdir()):
                    shard.rmdir()
        except OSError as e:
            raise CacheIOError("store clear failed", {"collection": collection, "error": str(e)}) from e
        return removed

    # ── async API ───────────────────────────────────────────────────────────

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        record = await asyncio.to_thread(self._read, self._path(collection, key))
        return record["value"] if record is not None else None

    async def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        path = self._path(collection, key)
        async with self._locks.get(collection, key):
            with timeit("kv_put") as t:
                size = await asyncio.to_thread(self._write, path, key, value)
        debug(_LOG, "put", collection=collection, key=key[:24], bytes=size, seconds=round(t.seconds, 5))

    async def delete(self, collection: str, key: str) -> bool:
        async with self._locks.get(collection, key):
            return await asyncio.to_thread(self._unlink, self._path(collection, key))

    async def get_all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return await asyncio.to_thread(self._scan, collection)

    async def clear(self, collection: str) -> int:
        removed = await asyncio.to_thread(self._clear, collection)
        verbose(_LOG, "cleared", collection=collection, removed=removed)
        return removed


class MemoryKVStore:
    """In-process KVStore; values are deep-copied in and out."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._locks = _KeyLocks()

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        value = self._data.get(collection, {}).get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        async with self._locks.get(collection, key):
            self._data.setdefault(collection, {})[key] = copy.deepcopy(value)

    async def delete(self, collection: str, key: str) -> bool:
        async with self._locks.get(collection, key):
            return self._data.get(collection, {}).pop(key, None) is not None

    async def get_all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._data.get(collection, {}))

    async def clear(self, collection: str) -> int:
        removed = len(self._data.get(collection, {}))
        self._data[collection] = {}
        return removed
