"""
Content-addressed audio/text cache.

Two tiers, independent of each other:
    1. HotAudioCache: in-process, decoded AudioBuffers, strict FIFO
    2. CacheStore: persistent (via a KVStore), encoded payloads,
       oldest-first eviction with hysteresis

Keys:
    Audio entries are keyed by SHA256 over text|speaker|mode|speed, text
    entries by text|language, so the same request always maps to the same
    key. Per-chunk clips use ``chunk_key(chunk_id, text)`` so they can be
    deleted together with their material.

Eviction:
    After a put, if a namespace holds more than ``max_entries`` (500),
    the oldest entries by (timestamp, seq) are deleted until
    ``cleanup_threshold`` (400) remain. The gap means eviction runs once
    per ~100 inserts rather than on every insert. ``seq`` is a
    process-monotonic counter that orders entries written within the
    same millisecond.

Example:
    >>> cache = CacheStore(MemoryKVStore())
    >>> key = await cache.put_audio("Hello there", wav, speaker="en_f", mode="sft", speed=1.0)
    >>> await cache.find_audio("Hello there", speaker="en_f", mode="sft", speed=1.0)
    b'RIFF...'
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import itertools
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from senseflow.core.config import Defaults
from senseflow.core.errors import CacheIOError
from senseflow.core.logging import debug, get_logger, info, verbose
from senseflow.models import now_ms
from senseflow.storage.kv import KVStore
from senseflow.utils.audio import AudioBuffer

_LOG = get_logger("senseflow.cache")

AUDIO = "audio"
TEXT = "text"

_COLLECTIONS = {
    AUDIO: "audioCache",
    TEXT: "textCache",
}

_seq = itertools.count(time.time_ns())


def make_cache_key(namespace: str, content: str, *params: Any) -> str:
    """Stable key for ``content`` plus its disambiguating parameters."""
    h = hashlib.sha256()
    h.update(content.encode("utf-8"))
    for param in params:
        h.update(b"|")
        h.update(str(param if param is not None else "").encode("utf-8"))
    return f"{namespace}_{h.hexdigest()[:24]}"


def chunk_key(chunk_id: str, text: str) -> str:
    """Key of a rendered chunk clip in the audio namespace."""
    return f"chunk_{chunk_id}_{hashlib.sha256(text.encode('utf-8')).hexdigest()[:16]}"


@dataclass
class CacheEntry:
    """
    One cached payload.

    Attributes:
        payload: Base64 audio for the audio namespace, raw text for text.
        timestamp: Insertion time, epoch milliseconds.
        size: Size of the decoded payload in bytes.
        seq: Insertion counter used to order equal timestamps.
        meta: Request parameters (text, speaker, mode, speed, language).
    """
    cache_key: str
    payload: str
    timestamp: int
    size: int
    seq: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cacheKey": self.cache_key,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "size": self.size,
            "seq": self.seq,
            "meta": self.meta,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            cache_key=str(data["cacheKey"]),
            payload=str(data.get("payload", "")),
            timestamp=int(data.get("timestamp", 0)),
            size=int(data.get("size", 0)),
            seq=int(data.get("seq", 0)),
            meta=dict(data.get("meta") or {}),
        )


class CacheStore:
    """
    Persistent audio/text cache on top of a KVStore.

    Store failures raise CacheIOError; callers that treat caching as
    optional catch it and carry on.
    """

    def __init__(
        self,
        store: KVStore,
        max_entries: int = Defaults.CACHE_MAX_ENTRIES,
        cleanup_threshold: int = Defaults.CACHE_CLEANUP_THRESHOLD,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.max_entries = int(max_entries)
        self.cleanup_threshold = int(cleanup_threshold)
        self._clock = clock
        self._counts: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Generic entry access
    # ─────────────────────────────────────────────────────────────────────────

    async def put(self, namespace: str, key: str, payload: str, size: int, **meta: Any) -> CacheEntry:
        collection = _COLLECTIONS[namespace]
        entry = CacheEntry(
            cache_key=key,
            payload=payload,
            timestamp=self._clock(),
            size=size,
            seq=next(_seq),
            meta=meta,
        )

        async with self._lock(namespace):
            count = await self._count(namespace)
            existed = await self.store.get(collection, key) is not None
            await self.store.put(collection, key, entry.to_dict())
            if not existed:
                self._counts[namespace] = count + 1
            verbose(_LOG, "set", namespace=namespace, key=key[:24], bytes=size)

            if self._counts[namespace] > self.max_entries:
                await self._evict(namespace)
        return entry

    async def get(self, namespace: str, key: str) -> Optional[CacheEntry]:
        data = await self.store.get(_COLLECTIONS[namespace], key)
        if data is None:
            debug(_LOG, "miss", namespace=namespace, key=key[:24])
            return None
        try:
            entry = CacheEntry.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CacheIOError("cache entry is corrupt", {"key": key, "error": str(e)}) from e
        verbose(_LOG, "hit", namespace=namespace, key=key[:24])
        return entry

    async def delete(self, namespace: str, key: str) -> bool:
        async with self._lock(namespace):
            removed = await self.store.delete(_COLLECTIONS[namespace], key)
            if removed and namespace in self._counts:
                self._counts[namespace] -= 1
        return removed

    async def entries(self, namespace: str) -> List[CacheEntry]:
        raw = await self.store.get_all(_COLLECTIONS[namespace])
        entries = []
        for key, data in raw.items():
            try:
                entries.append(CacheEntry.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                raise CacheIOError("cache entry is corrupt", {"key": key, "error": str(e)}) from e
        self._counts[namespace] = len(entries)
        return entries

    async def clear(self, namespace: Optional[str] = None) -> int:
        namespaces = [namespace] if namespace else list(_COLLECTIONS)
        removed = 0
        for ns in namespaces:
            async with self._lock(ns):
                removed += await self.store.clear(_COLLECTIONS[ns])
                self._counts[ns] = 0
        info(_LOG, "cleared", namespaces=",".join(namespaces), removed=removed)
        return removed

    async def stats(self, namespace: str) -> Dict[str, int]:
        """``{count, totalSize, oldestTimestamp, newestTimestamp}``; zeros when empty."""
        entries = await self.entries(namespace)
        if not entries:
            return {"count": 0, "totalSize": 0, "oldestTimestamp": 0, "newestTimestamp": 0}
        timestamps = [e.timestamp for e in entries]
        return {
            "count": len(entries),
            "totalSize": sum(e.size for e in entries),
            "oldestTimestamp": min(timestamps),
            "newestTimestamp": max(timestamps),
        }

    async def list_entries(self, namespace: str) -> List[Dict[str, Any]]:
        """Entry metadata without payloads, oldest first."""
        entries = sorted(await self.entries(namespace), key=lambda e: (e.timestamp, e.seq))
        return [
            {"cacheKey": e.cache_key, "timestamp": e.timestamp, "size": e.size, **e.meta}
            for e in entries
        ]

    async def cleanup(self, max_entries: Optional[int] = None) -> int:
        """
        Trim every namespace holding more than ``max_entries`` down to it.

        The CLI runs this before every command, which recovers from a
        previous process that stopped between a put and its eviction.
        """
        limit = self.max_entries if max_entries is None else int(max_entries)
        deleted = 0
        for namespace in _COLLECTIONS:
            async with self._lock(namespace):
                entries = await self.entries(namespace)
                if len(entries) > limit:
                    deleted += await self._delete_oldest(namespace, entries, limit)
        if deleted:
            info(_LOG, "cleanup", deleted=deleted)
        return deleted

    async def _count(self, namespace: str) -> int:
        if namespace not in self._counts:
            await self.entries(namespace)
        return self._counts[namespace]

    def _lock(self, namespace: str) -> asyncio.Lock:
        lock = self._locks.get(namespace)
        if lock is None:
            lock = self._locks[namespace] = asyncio.Lock()
        return lock

    async def _evict(self, namespace: str) -> None:
        # Caller holds the namespace lock.
        entries = await self.entries(namespace)
        if len(entries) <= self.max_entries:
            return
        removed = await self._delete_oldest(namespace, entries, self.cleanup_threshold)
        info(_LOG, "evicted", namespace=namespace, evicted=removed, kept=self._counts[namespace])

    async def _delete_oldest(self, namespace: str, entries: List[CacheEntry], keep: int) -> int:
        entries.sort(key=lambda e: (e.timestamp, e.seq))
        doomed = entries[:max(0, len(entries) - keep)]
        collection = _COLLECTIONS[namespace]
        for entry in doomed:
            await self.store.delete(collection, entry.cache_key)
        self._counts[namespace] = len(entries) - len(doomed)
        return len(doomed)

    # ─────────────────────────────────────────────────────────────────────────
    # Audio namespace
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def audio_key(text: str, speaker: str, mode: str, speed: float) -> str:
        return make_cache_key(AUDIO, text, speaker, mode, f"{float(speed):g}")

    async def put_audio(self, text: str, data: bytes, speaker: str, mode: str, speed: float) -> str:
        key = self.audio_key(text, speaker, mode, speed)
        await self.put(AUDIO, key, base64.b64encode(data).decode("ascii"), len(data),
                       text=text, speaker=speaker, mode=mode, speed=float(speed))
        return key

    async def get_audio(self, key: str) -> Optional[bytes]:
        entry = await self.get(AUDIO, key)
        if entry is None:
            return None
        try:
            return base64.b64decode(entry.payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CacheIOError("cached audio is corrupt", {"key": key, "error": str(e)}) from e

    async def find_audio(self, text: str, speaker: str, mode: str, speed: float) -> Optional[bytes]:
        return await self.get_audio(self.audio_key(text, speaker, mode, speed))

    async def put_chunk_audio(self, chunk_id: str, text: str, data: bytes) -> str:
        key = chunk_key(chunk_id, text)
        await self.put(AUDIO, key, base64.b64encode(data).decode("ascii"), len(data),
                       text=text, chunk_id=chunk_id)
        return key

    async def get_chunk_audio(self, chunk_id: str, text: str) -> Optional[bytes]:
        return await self.get_audio(chunk_key(chunk_id, text))

    # ─────────────────────────────────────────────────────────────────────────
    # Text namespace
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def text_key(text: str, language: str = "") -> str:
        return make_cache_key(TEXT, text, language or "")

    async def put_text(self, text: str, language: str = "") -> str:
        key = self.text_key(text, language)
        await self.put(TEXT, key, text, len(text.encode("utf-8")), language=language or None)
        return key

    async def get_text(self, key: str) -> Optional[str]:
        entry = await self.get(TEXT, key)
        return entry.payload if entry is not None else None

    async def find_text(self, text: str, language: str = "") -> Optional[str]:
        return await self.get_text(self.text_key(text, language))


class HotAudioCache:
    """
    Bounded in-memory cache of decoded audio, evicted strictly FIFO.

    Reads do not refresh an entry's position: the first buffer inserted
    is the first evicted. Thread-safe.
    """

    def __init__(self, max_items: int = Defaults.CACHE_HOT_MAX_ITEMS):
        self.max_items = int(max_items)
        self._d: "OrderedDict[str, AudioBuffer]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[AudioBuffer]:
        with self._lock:
            buf = self._d.get(key)
            if buf is None:
                self._misses += 1
            else:
                self._hits += 1
        return buf

    def set(self, key: str, buffer: AudioBuffer) -> None:
        with self._lock:
            if key not in self._d and len(self._d) >= self.max_items:
                evicted, _ = self._d.popitem(last=False)
                debug(_LOG, "hot_evicted", key=evicted[:24])
            self._d[key] = buffer

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._d.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._d)
            self._d.clear()
            return count

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._d)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": len(self._d),
                "max_items": self.max_items,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._d)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._d
