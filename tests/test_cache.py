# tests/test_cache.py

import time

import numpy as np
import pytest

from config import CacheConfig
from core.database import CacheLayer, SQLiteCacheStore, make_cache_key
from core.types import FeatureLevel
from utils.performance_monitor import MemoryLevel


def _key(photo_id, level=FeatureLevel.LOW):
    return make_cache_key(photo_id, 1700000000.0, 2048, level)


def test_cache_key_format():
    assert _key("IMG_1.jpg") == "IMG_1.jpg:1700000000.0:2048:LOW"
    assert make_cache_key("a", 1.5, 10, "quality") == "a:1.5:10:quality"


def test_get_and_put():
    cache = CacheLayer()
    assert cache.get(_key("a")) is None
    cache.put(_key("a"), {"bits": "0101"})
    assert cache.get(_key("a")) == {"bits": "0101"}

    stats = cache.stats()
    assert stats['hits'] == 1 and stats['misses'] == 1
    assert stats['hit_rate'] == pytest.approx(0.5)


def test_lru_eviction_order():
    cache = CacheLayer(CacheConfig(policy="lru"))
    for name in ("a", "b", "c"):
        cache.put(_key(name), name)
    cache.get(_key("a"))
    assert cache.evict(1) == 1
    assert _key("b") not in cache
    assert _key("a") in cache and _key("c") in cache


def test_lfu_eviction_order():
    cache = CacheLayer(CacheConfig(policy="lfu"))
    for name in ("a", "b", "c"):
        cache.put(_key(name), name)
    for _ in range(3):
        cache.get(_key("a"))
        cache.get(_key("c"))
    cache.evict(1)
    assert _key("b") not in cache


def test_adaptive_eviction_prefers_large_entries():
    """Size penalty pushes a multi-megabyte payload out before small ones"""
    cache = CacheLayer(CacheConfig(policy="adaptive"))
    cache.put(_key("small1"), np.zeros(16))
    cache.put(_key("large"), np.zeros(2 * 1024 * 1024, dtype=np.uint8))
    cache.put(_key("small2"), np.zeros(16))
    cache.evict(1)
    assert _key("large") not in cache
    assert len(cache) == 2


def test_expired_entries_are_misses():
    cache = CacheLayer(CacheConfig(expiry_days=30))
    cache.put(_key("old"), "payload")
    cache.entries[_key("old")].timestamp = time.time() - 31 * 24 * 3600
    assert cache.get(_key("old")) is None
    assert _key("old") not in cache


def test_invalidate_photo_drops_every_level():
    cache = CacheLayer()
    photo_id = "dir:with:colons.jpg"
    for level in FeatureLevel:
        cache.put(_key(photo_id, level), level.value)
    cache.put(_key("other"), "keep")

    assert cache.invalidate_photo(photo_id) == 3
    assert len(cache) == 1
    assert cache.stats()['photos'] == 1


def test_maintenance_shrinks_to_cleanup_target():
    cache = CacheLayer(CacheConfig(policy="lru", max_entries=10))
    for i in range(9):
        cache.put(_key(f"p{i}"), i)
    assert len(cache) == 7
    assert _key("p0") not in cache and _key("p1") not in cache
    assert _key("p8") in cache


def test_memory_pressure_sheds_entries():
    cache = CacheLayer(CacheConfig(max_entries=1000))
    for i in range(10):
        cache.put(_key(f"p{i}"), i)
    cache.on_memory_pressure(MemoryLevel.HIGH, 320.0)
    assert len(cache) == 7
    cache.on_memory_pressure(MemoryLevel.NORMAL, 100.0)
    assert len(cache) == 7


def test_persistence_across_sessions(tmp_path):
    config = CacheConfig(persist=True, store_path=str(tmp_path / "cache" / "features.db"))
    first = CacheLayer.from_config(config)
    first.put(_key("a", FeatureLevel.MID), np.arange(6, dtype=np.float32))
    first.store.close()

    second = CacheLayer.from_config(config)
    payload = second.get(_key("a", FeatureLevel.MID))
    np.testing.assert_array_equal(payload, np.arange(6, dtype=np.float32))
    assert second.store.count() == 1
    second.clear()
    assert second.store.count() == 0
    second.store.close()


def test_store_failure_falls_back_to_memory():
    store = SQLiteCacheStore(":memory:")
    store.conn.close()
    cache = CacheLayer(CacheConfig(), store)

    cache.put(_key("a"), "still cached")
    assert cache.store_failed
    assert cache.store is None
    assert cache.get(_key("a")) == "still cached"
