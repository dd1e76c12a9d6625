# tests/test_buffer_pool.py

import numpy as np
import pytest

from core.buffer_pool import SharedBufferPool


@pytest.fixture
def pool():
    return SharedBufferPool(initial_size=1024, min_growth=1024)


def test_allocations_are_aligned_and_disjoint(pool):
    refs = [pool.allocate(n) for n in (5, 16, 33)]
    assert [ref.length for ref in refs] == [8, 16, 40]
    offsets = [ref.offset for ref in refs]
    assert offsets == sorted(offsets)
    for a, b in zip(refs, refs[1:]):
        assert a.offset + a.length <= b.offset
    assert pool.stats()['used_bytes'] == 64


def test_store_and_load_vector(pool):
    vector = np.linspace(-1, 1, 12)
    ref = pool.store_vector(vector)
    np.testing.assert_array_equal(pool.load_vector(ref, 12), vector)


def test_free_merges_neighbours(pool):
    a = pool.allocate(64)
    b = pool.allocate(64)
    c = pool.allocate(64)
    pool.free(a)
    pool.free(c)
    pool.free(b)
    stats = pool.stats()
    assert stats['used_bytes'] == 0
    assert stats['free_blocks'] == 1


def test_first_fit_reuses_freed_space(pool):
    a = pool.allocate(128)
    pool.allocate(64)
    pool.free(a)
    again = pool.allocate(100)
    assert again.offset == a.offset
    assert again.arena_id == a.arena_id


def test_double_free_raises(pool):
    ref = pool.allocate(32)
    pool.free(ref)
    with pytest.raises(KeyError):
        pool.free(ref)


def test_invalid_length_raises(pool):
    with pytest.raises(ValueError):
        pool.allocate(0)


def test_pool_grows_and_releases_free_arenas(pool):
    """A request larger than the free space adds an arena; cleanup keeps one"""
    first = pool.allocate(800)
    big = pool.allocate(2000)
    assert big.arena_id != first.arena_id
    assert pool.stats()['arenas'] == 2

    pool.free(big)
    assert pool.cleanup_unused() == 4000
    assert pool.stats()['arenas'] == 1

    pool.free(first)
    assert pool.cleanup_unused() == 0
    assert pool.stats()['arenas'] == 1
