# core/database.py

import logging
import math
import pickle
import sqlite3
import sys
import threading
import time
from collections import OrderedDict
from dataclasses import fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import numpy as np

from config import CacheConfig
from core.errors import CacheIOError
from core.types import CacheEntry
from utils.performance_monitor import MemoryLevel

logger = logging.getLogger(__name__)

MB = 1024 * 1024
DAY_SECONDS = 24 * 60 * 60
MONTH_SECONDS = 30 * DAY_SECONDS

# Adaptive eviction priority weights
RECENCY_WEIGHT = 0.5
FREQUENCY_WEIGHT = 0.3
SIZE_WEIGHT = 0.2


class EvictionPolicy(str, Enum):
    LRU = "lru"
    LFU = "lfu"
    ADAPTIVE = "adaptive"


def make_cache_key(photo_id: str, last_modified: float, size: int, level) -> str:
    """photoId:lastModified:size:level"""
    level = getattr(level, 'value', level)
    return f"{photo_id}:{last_modified}:{size}:{level}"


def estimate_size(payload: Any) -> int:
    """Approximate in-memory footprint of a cached payload in bytes"""
    if payload is None:
        return 0
    if isinstance(payload, np.ndarray):
        return payload.nbytes
    if isinstance(payload, (str, bytes)):
        return len(payload)
    if isinstance(payload, dict):
        return sum(estimate_size(k) + estimate_size(v) for k, v in payload.items())
    if isinstance(payload, (list, tuple)):
        return sum(estimate_size(v) for v in payload)
    if is_dataclass(payload):
        return sum(estimate_size(getattr(payload, f.name)) for f in fields(payload))
    return sys.getsizeof(payload)


class SQLiteCacheStore:
    """
    SQLite persistence for cache entries

    Payloads are pickled into a BLOB column. Every sqlite3 failure surfaces
    as CacheIOError.
    """

    def __init__(self, db_path: str = "data/feature_cache.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.Lock()
        self._initialize_database()

    def _initialize_database(self):
        """Create database schema"""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            cursor = self.conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    cache_key TEXT PRIMARY KEY,
                    photo_id TEXT NOT NULL,
                    payload BLOB NOT NULL,
                    created REAL NOT NULL,
                    last_accessed REAL NOT NULL,
                    usage_count INTEGER DEFAULT 0,
                    size_bytes INTEGER DEFAULT 0
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_cache_photo ON cache_entries(photo_id)
            """)
            self.conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise CacheIOError(f"Cannot open cache store {self.db_path}: {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                cursor = self.conn.execute(sql, params)
                self.conn.commit()
                return cursor
            except sqlite3.Error as e:
                raise CacheIOError(f"Cache store failure: {e}") from e

    def save(self, entry: CacheEntry, photo_id: str):
        try:
            blob = pickle.dumps(entry.payload, protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, TypeError) as e:
            raise CacheIOError(f"Cannot serialize cache entry {entry.key}: {e}") from e
        self._execute("""
            INSERT OR REPLACE INTO cache_entries
            (cache_key, photo_id, payload, created, last_accessed, usage_count, size_bytes)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (entry.key, photo_id, blob, entry.timestamp, entry.last_accessed,
              entry.usage_count, entry.size_bytes))

    def load(self, key: str) -> Optional[CacheEntry]:
        row = self._execute("""
            SELECT payload, created, last_accessed, usage_count, size_bytes
            FROM cache_entries WHERE cache_key = ?
        """, (key,)).fetchone()
        if row is None:
            return None
        try:
            payload = pickle.loads(row[0])
        except (pickle.UnpicklingError, EOFError, AttributeError, ImportError) as e:
            raise CacheIOError(f"Corrupt cache entry {key}: {e}") from e
        return CacheEntry(key, payload, row[1], row[2], row[3], row[4])

    def delete(self, key: str):
        self._execute("DELETE FROM cache_entries WHERE cache_key = ?", (key,))

    def delete_photo(self, photo_id: str):
        self._execute("DELETE FROM cache_entries WHERE photo_id = ?", (photo_id,))

    def count(self) -> int:
        return self._execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]

    def clear(self):
        self._execute("DELETE FROM cache_entries")

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None


class CacheLayer:
    """
    Memoizes per-photo hashes, features and quality scores

    Entries live in memory and are optionally written through to a
    SQLiteCacheStore. A store failure detaches the store and the cache keeps
    working in memory for the rest of the session.
    """

    def __init__(self, config: Optional[CacheConfig] = None,
                 store: Optional[SQLiteCacheStore] = None):
        self.config = config or CacheConfig()
        self.policy = EvictionPolicy(self.config.policy)
        self.store = store
        self.entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._photo_keys: Dict[str, Set[str]] = {}
        self._key_photo: Dict[str, str] = {}
        self._lock = threading.RLock()
        self.total_bytes = 0
        self.hits = 0
        self.misses = 0
        self.store_failed = False

    @classmethod
    def from_config(cls, config: CacheConfig) -> 'CacheLayer':
        """Open the persistent store when configured, in-memory otherwise"""
        store = None
        if config.persist:
            try:
                store = SQLiteCacheStore(config.store_path)
            except CacheIOError as e:
                logger.error("%s; continuing with in-memory cache", e)
        return cls(config, store)

    def __len__(self):
        return len(self.entries)

    def __contains__(self, key: str) -> bool:
        return key in self.entries

    def _store_call(self, method: str, *args):
        if self.store is None:
            return None
        try:
            return getattr(self.store, method)(*args)
        except CacheIOError as e:
            logger.error("%s; falling back to in-memory cache", e)
            self.store = None
            self.store_failed = True
            return None

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.config.expiry_days * DAY_SECONDS

    def get(self, key: str) -> Any:
        """Payload for `key`, or None on a miss or an expired entry"""
        now = time.time()
        with self._lock:
            entry = self.entries.get(key)
            if entry is None:
                entry = self._store_call('load', key)
                if entry is not None:
                    self._insert(entry, self._photo_of(key))
            if entry is None:
                self.misses += 1
                return None
            if self._is_expired(entry, now):
                self._remove(key)
                self._store_call('delete', key)
                self.misses += 1
                return None
            entry.last_accessed = now
            entry.usage_count += 1
            self.entries.move_to_end(key)
            self.hits += 1
            return entry.payload

    def put(self, key: str, payload: Any, photo_id: Optional[str] = None):
        photo_id = photo_id or self._photo_of(key)
        entry = CacheEntry(key, payload, size_bytes=estimate_size(payload))
        with self._lock:
            if key in self.entries:
                self._remove(key)
            self._insert(entry, photo_id)
            self._store_call('save', entry, photo_id)
            if self._over_threshold():
                self.perform_maintenance()

    @staticmethod
    def _photo_of(key: str) -> str:
        # photo ids may themselves contain ':'; the last three fields are fixed
        return key.rsplit(':', 3)[0]

    def _insert(self, entry: CacheEntry, photo_id: str):
        self.entries[entry.key] = entry
        self.total_bytes += entry.size_bytes
        self._photo_keys.setdefault(photo_id, set()).add(entry.key)
        self._key_photo[entry.key] = photo_id

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self.entries.pop(key, None)
        if entry is None:
            return None
        self.total_bytes -= entry.size_bytes
        photo_id = self._key_photo.pop(key, None)
        keys = self._photo_keys.get(photo_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._photo_keys[photo_id]
        return entry

    def invalidate_photo(self, photo_id: str) -> int:
        """Drop every cached level of a photo"""
        with self._lock:
            keys = list(self._photo_keys.get(photo_id, ()))
            for key in keys:
                self._remove(key)
            self._store_call('delete_photo', photo_id)
        return len(keys)

    def clear(self):
        with self._lock:
            self.entries.clear()
            self._photo_keys.clear()
            self._key_photo.clear()
            self.total_bytes = 0
            self._store_call('clear')

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _priority(self, entry: CacheEntry, now: float) -> float:
        """Lower priority is evicted first"""
        if self.policy == EvictionPolicy.LRU:
            return entry.last_accessed
        if self.policy == EvictionPolicy.LFU:
            return entry.usage_count + entry.last_accessed / 1e12
        recency_months = max(0.0, now - entry.last_accessed) / MONTH_SECONDS
        return (RECENCY_WEIGHT / (recency_months + 1)
                + FREQUENCY_WEIGHT * math.log(entry.usage_count + 1)
                - SIZE_WEIGHT * entry.size_bytes / MB)

    def _eviction_order(self) -> List[CacheEntry]:
        now = time.time()
        if self.policy == EvictionPolicy.LRU:
            # OrderedDict keeps least recently used first
            return list(self.entries.values())
        return sorted(self.entries.values(), key=lambda e: self._priority(e, now))

    def evict(self, count: int) -> int:
        """Evict `count` entries in policy order (memory only, the store keeps them)"""
        with self._lock:
            victims = self._eviction_order()[:max(0, count)]
            for entry in victims:
                self._remove(entry.key)
        return len(victims)

    def _over_threshold(self) -> bool:
        threshold = self.config.auto_clean_threshold
        return (len(self.entries) > self.config.max_entries * threshold
                or self.total_bytes > self.config.max_size_mb * MB * threshold)

    def perform_maintenance(self) -> int:
        """Drop expired entries, then shrink to `cleanup_target` of the limits"""
        now = time.time()
        removed = 0
        with self._lock:
            for key, entry in list(self.entries.items()):
                if self._is_expired(entry, now):
                    self._remove(key)
                    self._store_call('delete', key)
                    removed += 1

            target_entries = int(self.config.max_entries * self.config.cleanup_target)
            target_bytes = self.config.max_size_mb * MB * self.config.cleanup_target
            if len(self.entries) > target_entries or self.total_bytes > target_bytes:
                for entry in self._eviction_order():
                    if len(self.entries) <= target_entries and self.total_bytes <= target_bytes:
                        break
                    self._remove(entry.key)
                    removed += 1
        if removed:
            logger.info("Cache maintenance removed %d entries, %d remain",
                        removed, len(self.entries))
        return removed

    def evict_idle(self, ratio: float = 0.3) -> int:
        return self.evict(int(len(self.entries) * ratio))

    def on_memory_pressure(self, level: MemoryLevel, usage_mb: float):
        """MemoryMonitor listener: shed idle entries when memory runs high"""
        if level == MemoryLevel.CRITICAL:
            self.evict_idle(0.5)
        elif level == MemoryLevel.HIGH:
            self.evict_idle(0.3)

    def stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            'entries': len(self.entries),
            'photos': len(self._photo_keys),
            'size_mb': self.total_bytes / MB,
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': self.hits / lookups if lookups else 0.0,
            'policy': self.policy.value,
            'persistent': self.store is not None,
            'store_failed': self.store_failed,
        }
