# tests/test_compression.py

import numpy as np
import pytest

from core.compression import VectorCompressor, adaptive_sample, compress


def test_ratio_one_is_a_no_op():
    vector = np.random.default_rng(0).normal(size=100)
    np.testing.assert_array_equal(compress(vector, 1.0), vector)


def test_short_vectors_are_returned_unchanged():
    """Target length never drops below 16"""
    vector = np.arange(12, dtype=float)
    np.testing.assert_array_equal(compress(vector, 0.1), vector)


@pytest.mark.parametrize("length,ratio,expected", [
    (100, 0.8, 80),
    (100, 0.05, 16),
    (192, 0.8, 154),
    (40, 0.5, 20),
])
def test_output_length(length, ratio, expected):
    vector = np.random.default_rng(length).normal(size=length)
    assert len(compress(vector, ratio)) == expected


def test_endpoints_are_kept():
    vector = np.random.default_rng(5).normal(size=200)
    output = compress(vector, 0.3)
    assert output[0] == vector[0]
    assert output[-1] == vector[-1]


def test_output_preserves_input_order():
    vector = np.arange(100, dtype=float) ** 2
    output = compress(vector, 0.25)
    assert np.all(np.diff(output) > 0)


def test_sharp_transition_is_sampled_on_both_sides():
    vector = np.concatenate([np.zeros(60), np.full(60, 10.0)])
    output = adaptive_sample(vector, 20)
    assert len(output) == 20
    assert 0.0 in output and 10.0 in output


def test_flat_vector_is_padded_to_target():
    output = adaptive_sample(np.ones(500), 40)
    assert len(output) == 40


def test_invalid_ratio_raises():
    with pytest.raises(ValueError):
        compress(np.ones(20), 1.5)
    with pytest.raises(ValueError):
        VectorCompressor(-0.1)


def test_compressor_is_deterministic():
    compressor = VectorCompressor(0.5)
    vector = np.random.default_rng(9).normal(size=64)
    np.testing.assert_array_equal(compressor.compress(vector), compressor.compress(vector.copy()))
    assert compressor.output_length(64) == 32
    assert compressor.output_length(10) == 10
