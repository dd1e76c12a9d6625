# tests/test_incremental_index.py

import threading

import numpy as np
import pytest

from config import IndexConfig
from core.buffer_pool import SharedBufferPool
from core.errors import NotConfiguredError
from core.kdtree import KDTree
from core.types import FeatureLevel, FeaturePoint, PhotoRecord
from core.vector_index import IncrementalIndex, IndexState
from utils.performance_monitor import MemoryLevel


def _random_points(count, dimension=8, level=FeatureLevel.LOW, seed=0, prefix="p"):
    rng = np.random.default_rng(seed)
    return [FeaturePoint(f"{prefix}{i}", rng.normal(size=dimension), level)
            for i in range(count)]


def test_state_machine():
    index = IncrementalIndex()
    assert index.state == IndexState.EMPTY
    index.add_or_update(_random_points(3))
    assert index.state == IndexState.READY
    index.clear()
    assert index.state == IndexState.EMPTY
    assert len(index) == 0


def test_self_match_round_trip():
    """Every inserted point is its own nearest neighbour at distance 0"""
    index = IncrementalIndex(IndexConfig(incremental_threshold=7, rebuild_threshold=2))
    points = _random_points(40)
    for chunk in (points[:13], points[13:29], points[29:]):
        index.add_or_update(chunk)

    for point in points:
        nearest = index.k_nearest(point.vector, 1, FeatureLevel.LOW)[0]
        assert nearest.point.id == point.id
        assert nearest.distance == 0.0


def test_self_match_with_compression():
    index = IncrementalIndex(IndexConfig(compression_ratio=0.5))
    points = _random_points(20, dimension=64, seed=3)
    index.add_or_update(points)
    assert index.trees[FeatureLevel.LOW].dimension == 32

    for point in points:
        nearest = index.k_nearest(point.vector, 1, FeatureLevel.LOW)[0]
        assert nearest.point.id == point.id
        assert nearest.distance == 0.0


def test_threshold_rebuild_scenario():
    """25 points with thresholds 10/2 trigger exactly one full rebuild"""
    index = IncrementalIndex(IndexConfig(incremental_threshold=10, rebuild_threshold=2))
    results = [index.add_or_update([point]) for point in _random_points(25)]

    assert index.full_rebuild_count == 1
    assert sum(r.rebuilt for r in results) == 1
    assert results[19].rebuilt
    assert results[-1].current_index_size == 25
    assert index.incremental_counter == 5
    assert index.rebuild_counter == 0


def test_threshold_rebuild_scenario_in_one_batch():
    index = IncrementalIndex(IndexConfig(incremental_threshold=10, rebuild_threshold=2))
    result = index.add_or_update(_random_points(25))
    assert result.rebuilt
    assert result.added == 25
    assert result.current_index_size == 25
    assert index.full_rebuild_count == 1


def test_update_in_place():
    index = IncrementalIndex()
    index.add_or_update(_random_points(10))
    new_vector = np.full(8, 50.0)
    result = index.add_or_update([FeaturePoint("p3", new_vector, FeatureLevel.LOW)])

    assert result.updated == 1 and result.added == 0
    assert len(index) == 10
    nearest = index.k_nearest(new_vector, 1, FeatureLevel.LOW)[0]
    assert nearest.point.id == "p3"
    assert nearest.distance == 0.0


def test_length_mismatch_is_rejected():
    index = IncrementalIndex()
    index.add_or_update(_random_points(5))
    result = index.add_or_update([FeaturePoint("odd", np.ones(5), FeatureLevel.LOW)])
    assert result.rejected == 1
    assert result.failed_photo_ids == ["odd"]
    assert "odd" not in index


def test_levels_live_in_separate_trees():
    index = IncrementalIndex()
    index.add_or_update(_random_points(5, dimension=8, level=FeatureLevel.LOW))
    index.add_or_update(_random_points(5, dimension=20, level=FeatureLevel.MID, seed=1))
    assert index.trees[FeatureLevel.LOW].dimension == 8
    assert index.trees[FeatureLevel.MID].dimension == 16
    assert len(index) == 10


def test_remove_photo_clears_every_level():
    index = IncrementalIndex()
    index.add_or_update(_random_points(5, level=FeatureLevel.LOW))
    index.add_or_update(_random_points(5, dimension=20, level=FeatureLevel.MID))
    target = index.get_point("p2", FeatureLevel.LOW).vector.copy()

    assert index.remove_photo("p2")
    assert "p2" not in index
    ids = [n.point.id for n in index.k_nearest(target, 10, FeatureLevel.LOW)]
    assert "p2" not in ids
    assert len(index) == 8


def test_k_nearest_marks_access():
    index = IncrementalIndex()
    points = _random_points(16)
    index.add_or_update(points)
    index.k_nearest(points[0].vector, 1, FeatureLevel.LOW)
    assert index.get_point("p0", FeatureLevel.LOW).access_count >= 1


def test_distance_to_similarity():
    index = IncrementalIndex()
    assert index.distance_to_similarity(0.0, 10.0) == 1.0
    assert index.distance_to_similarity(10.0, 10.0) == 0.0
    assert index.distance_to_similarity(12.0, 10.0) == 0.0
    assert index.distance_to_similarity(5.0, 10.0) == pytest.approx(np.exp(-1.25))


def test_find_similar_by_id():
    index = IncrementalIndex()
    base = np.ones(16)
    near = base.copy()
    near[3] = -1
    index.add_or_update([
        FeaturePoint("a", base, FeatureLevel.LOW),
        FeaturePoint("near", near, FeatureLevel.LOW),
        FeaturePoint("far", -base, FeatureLevel.LOW),
    ])
    results = index.find_similar_by_id("a")
    assert [r.photo_id for r in results] == ["near"]
    assert results[0].similarity == pytest.approx(np.exp(-5 * 0.25 ** 2))


def test_photo_operations_require_backend():
    index = IncrementalIndex()
    with pytest.raises(NotConfiguredError):
        index.add_or_update_photos([PhotoRecord("x", b"")])
    with pytest.raises(NotConfiguredError):
        index.search_similar_photos(PhotoRecord("x", b""))


def _aged_index(count):
    index = IncrementalIndex()
    index.add_or_update(_random_points(count))
    for i in range(count):
        point = index.get_point(f"p{i}", FeatureLevel.LOW)
        point.last_updated = float(i)
        point.access_count = 5 if i < 20 else 0
    return index


def test_gc_evicts_unused_and_stale_first():
    index = _aged_index(200)
    removed = index.force_garbage_collection(0.1)
    assert removed == 20
    survivors = set(index.photo_ids())
    assert all(f"p{i}" not in survivors for i in range(20, 40))
    assert all(f"p{i}" in survivors for i in range(20))
    assert all(f"p{i}" in survivors for i in range(40, 200))


def test_gc_skips_small_batches():
    index = _aged_index(50)
    assert index.perform_garbage_collection() == 0
    assert len(index) == 50


def test_cleanup_ratio_policy():
    index = _aged_index(50)
    assert index.determine_cleanup_ratio() == 0.05
    index.memory_level = MemoryLevel.HIGH
    assert index.determine_cleanup_ratio() == 0.3
    index.memory_level = MemoryLevel.CRITICAL
    assert index.determine_cleanup_ratio() == 0.5


def test_gc_never_evicts_points_in_flight():
    """Points visited by a running query survive a concurrent collection"""
    index = _aged_index(100)
    tree = index.trees[FeatureLevel.LOW]
    visiting = threading.Event()
    release = threading.Event()
    visited = []

    def slow_k_nearest(query, k, visit=None):
        for point in tree.collect()[:40]:
            visit(point)
            visited.append(point.id)
        visiting.set()
        release.wait(5)
        return []

    tree.k_nearest = slow_k_nearest
    worker = threading.Thread(
        target=index.k_nearest, args=(np.zeros(8), 3, FeatureLevel.LOW))
    worker.start()
    assert visiting.wait(5)

    removed = index.force_garbage_collection(0.5)
    release.set()
    worker.join(5)

    assert removed == 50
    survivors = set(index.photo_ids())
    assert set(visited) <= survivors


def test_memory_pressure_listener_collects():
    index = _aged_index(200)
    index.on_memory_pressure(MemoryLevel.HIGH, 350.0)
    assert len(index) == 140
    assert index.memory_level == MemoryLevel.HIGH


def test_corrupt_insert_triggers_rebuild(monkeypatch):
    index = IncrementalIndex()
    index.add_or_update(_random_points(10))

    def broken_insert(self, point):
        raise AttributeError("node lost its point")

    monkeypatch.setattr(KDTree, "insert", broken_insert)
    result = index.add_or_update(_random_points(3, seed=9, prefix="q"))
    monkeypatch.undo()

    assert result.added == 3
    assert len(index.trees[FeatureLevel.LOW]) == 13
    nearest = index.k_nearest(index.get_point("q1", FeatureLevel.LOW).vector, 1, FeatureLevel.LOW)
    assert nearest[0].point.id == "q1"


def test_shared_buffer_pool_storage():
    pool = SharedBufferPool(initial_size=4096)
    index = IncrementalIndex(buffer_pool=pool)
    points = _random_points(30)
    index.add_or_update(points)
    assert pool.stats()['used_bytes'] >= 30 * 8 * 4

    for point in points:
        nearest = index.k_nearest(point.vector, 1, FeatureLevel.LOW)[0]
        assert nearest.point.id == point.id
        assert nearest.distance == 0.0

    rebalances = index.rebalance_count
    result = index.add_or_update([FeaturePoint("p4", points[4].vector.copy(), FeatureLevel.LOW)])
    assert result.updated == 1
    assert index.rebalance_count == rebalances

    index.clear()
    assert pool.stats()['used_bytes'] == 0
