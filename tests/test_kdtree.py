# tests/test_kdtree.py

import numpy as np
import pytest

from core.kdtree import KDTree
from core.types import FeaturePoint


def _points(count, dimension=4, seed=0):
    rng = np.random.default_rng(seed)
    return [FeaturePoint(f"p{i}", rng.normal(size=dimension)) for i in range(count)]


def test_build_is_balanced():
    tree = KDTree()
    tree.build(_points(200))
    assert len(tree) == 200
    assert tree.is_balanced()
    assert tree.height() <= 9


def test_sorted_inserts_degrade_balance():
    """Monotone inserts form a chain the balance check must catch"""
    tree = KDTree()
    for i in range(10):
        tree.insert(FeaturePoint(f"p{i}", np.array([float(i), float(i)])))
    assert tree.height() == 10
    assert not tree.is_balanced()

    tree.rebuild()
    assert tree.is_balanced()
    assert len(tree.collect()) == 10


def test_knn_matches_brute_force():
    points = _points(300, dimension=5, seed=1)
    tree = KDTree()
    for point in points[:150]:
        tree.insert(point)
    tree2 = KDTree()
    tree2.build(points)
    for point in points[150:]:
        tree.insert(point)

    query = np.random.default_rng(2).normal(size=5)
    brute = sorted(points, key=lambda p: np.linalg.norm(p.vector - query))[:7]
    for t in (tree, tree2):
        found = [p for _, p in t.k_nearest(query, 7)]
        assert [p.id for p in found] == [p.id for p in brute]


def test_self_match():
    points = _points(50)
    tree = KDTree()
    tree.build(points)
    for point in points:
        distance, nearest = tree.k_nearest(point.vector, 1)[0]
        assert nearest is point
        assert distance == 0.0


def test_visit_callback_sees_evaluated_points():
    tree = KDTree()
    tree.build(_points(64))
    visited = []
    tree.k_nearest(np.zeros(4), 3, visit=visited.append)
    assert 3 <= len(visited) <= 64


def test_dimension_mismatch_raises():
    tree = KDTree()
    tree.insert(FeaturePoint("a", np.zeros(3)))
    with pytest.raises(ValueError):
        tree.insert(FeaturePoint("b", np.zeros(4)))
    with pytest.raises(ValueError):
        tree.k_nearest(np.zeros(4), 1)


def test_empty_tree_queries():
    tree = KDTree()
    assert tree.k_nearest(np.zeros(2), 3) == []
    assert tree.height() == 0
    assert tree.is_balanced()
