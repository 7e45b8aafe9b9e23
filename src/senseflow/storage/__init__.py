"""
Persistence layer.

    - kv.py: async key/value store (file-backed and in-memory)
    - cache.py: CacheStore (persistent, hysteresis eviction) and HotAudioCache
    - materials.py: MaterialStore with cascade delete, export and import
    - compression.py: gzip+base64 material envelope
"""
from .cache import AUDIO, TEXT, CacheEntry, CacheStore, HotAudioCache, chunk_key, make_cache_key
from .compression import CompressedMaterial, compress, compression_ratio, decompress
from .kv import FileKVStore, KVStore, MemoryKVStore
from .materials import MaterialStore, parse_import

__all__ = [
    "AUDIO",
    "TEXT",
    "CacheEntry",
    "CacheStore",
    "HotAudioCache",
    "chunk_key",
    "make_cache_key",
    "CompressedMaterial",
    "compress",
    "compression_ratio",
    "decompress",
    "FileKVStore",
    "KVStore",
    "MemoryKVStore",
    "MaterialStore",
    "parse_import",
]
