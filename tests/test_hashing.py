# tests/test_hashing.py

import io

import numpy as np
import pytest
from PIL import Image

from conftest import add_border, block_image
from core.errors import DecodeError
from core.fusion import FeatureFusion
from core.feature_extractors import MultiLevelExtractor
from core.hashing import HashEngine
from core.types import Fingerprint, HashAlgorithm, PhotoRecord


@pytest.fixture
def engine():
    return HashEngine()


def test_hash_determinism(engine, base_image):
    """Hashing identical pixels twice gives identical fingerprints"""
    for algorithm in HashAlgorithm:
        first = engine.compute_hash(base_image, algorithm)
        second = engine.compute_hash(base_image.copy(), algorithm)
        assert first == second
        assert first.bit_length == 64


def test_compute_all_hashes_returns_every_algorithm(engine, base_image):
    hashes = engine.compute_all_hashes(base_image)
    assert set(hashes) == set(HashAlgorithm)
    assert all(set(fp.bits) <= {'0', '1'} for fp in hashes.values())


def test_hamming_distance_is_symmetric(engine):
    """hamming(a, b) == hamming(b, a) across unrelated images"""
    images = [block_image(seed) for seed in range(6)]
    prints = [engine.compute_hash(img, HashAlgorithm.PERCEPTUAL) for img in images]
    for a in prints:
        for b in prints:
            assert HashEngine.hamming_distance(a, b) == HashEngine.hamming_distance(b, a)


def test_hamming_distance_counts_bits_across_chunks():
    a = Fingerprint(HashAlgorithm.AVERAGE, '0' * 64)
    b = Fingerprint(HashAlgorithm.AVERAGE, '1' + '0' * 31 + '1' + '0' * 30 + '1')
    assert HashEngine.hamming_distance(a, b) == 3
    assert HashEngine.hash_similarity(a, b) == pytest.approx((64 - 3) / 64 * 100)


def test_hamming_distance_rejects_length_mismatch():
    a = Fingerprint(HashAlgorithm.AVERAGE, '0' * 64)
    b = Fingerprint(HashAlgorithm.AVERAGE, '0' * 32)
    with pytest.raises(ValueError):
        HashEngine.hamming_distance(a, b)


def test_difference_hash_direction(engine):
    """Brightness falling left to right sets every dHash bit"""
    gradient = np.tile(np.linspace(255, 0, 90).astype(np.uint8), (80, 1))
    fingerprint = engine.compute_hash(gradient, HashAlgorithm.DIFFERENCE)
    assert fingerprint.bits == '1' * 64


def test_average_hash_marks_bright_half(engine):
    image = np.zeros((64, 64), dtype=np.uint8)
    image[:, 32:] = 255
    fingerprint = engine.compute_hash(image, HashAlgorithm.AVERAGE)
    rows = [fingerprint.bits[i:i + 8] for i in range(0, 64, 8)]
    assert all(row == '00001111' for row in rows)


def test_hex_round_trip(engine, base_image):
    fingerprint = engine.compute_hash(base_image, HashAlgorithm.PERCEPTUAL)
    restored = Fingerprint.from_hex(HashAlgorithm.PERCEPTUAL, fingerprint.hex)
    assert restored == fingerprint


def test_decode_error_on_corrupt_bytes(engine):
    with pytest.raises(DecodeError):
        engine.compute_all_hashes(b"definitely not an image", photo_id="broken")


def test_encoded_bytes_match_pixels(engine, base_image):
    buffer = io.BytesIO()
    Image.fromarray(base_image).save(buffer, format='PNG')
    from_bytes = engine.compute_all_hashes(buffer.getvalue())
    from_pixels = engine.compute_all_hashes(base_image)
    assert from_bytes == from_pixels


def test_one_pixel_border_scenario(engine, base_image):
    """A solid 1px border barely moves the perceptual hash and keeps fusion >= 90"""
    bordered = add_border(base_image)

    a = engine.compute_hash(base_image, HashAlgorithm.PERCEPTUAL)
    b = engine.compute_hash(bordered, HashAlgorithm.PERCEPTUAL)
    assert HashEngine.hamming_distance(a, b) <= 2

    extractor = MultiLevelExtractor(hash_engine=engine)
    feature_a = extractor.extract(PhotoRecord("plain", base_image))
    feature_b = extractor.extract(PhotoRecord("border", bordered))
    result = FeatureFusion().calculate_similarity(feature_a, feature_b)
    assert result.score >= 90
    assert result.method == "fusion"


def test_weighted_similarity_of_identical_sets(engine, base_image):
    hashes = engine.compute_all_hashes(base_image)
    assert engine.weighted_hash_similarity(hashes, hashes) == pytest.approx(100.0)


def test_weighted_similarity_uses_shared_algorithms_only(engine, base_image):
    hashes = engine.compute_all_hashes(base_image)
    partial = {HashAlgorithm.AVERAGE: hashes[HashAlgorithm.AVERAGE]}
    assert engine.weighted_hash_similarity(hashes, partial) == pytest.approx(100.0)
    assert engine.weighted_hash_similarity(hashes, {}) == 0.0
