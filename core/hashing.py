# core/hashing.py

from typing import Dict, Optional

import cv2
import imagehash
import numpy as np
from PIL import Image

from core.errors import ExtractionError
from core.types import Fingerprint, FingerprintSet, HashAlgorithm
from utils.image_utils import load_image, to_grayscale


# Stage-1 weights of the grouping pipeline
DEFAULT_HASH_WEIGHTS = {
    HashAlgorithm.PERCEPTUAL: 0.4,
    HashAlgorithm.DIFFERENCE: 0.4,
    HashAlgorithm.AVERAGE: 0.2,
}

CHUNK_BITS = 32


class HashEngine:
    """
    Computes average / difference / perceptual fingerprints from pixel data
    """

    def __init__(self, hash_size: int = 8,
                 weights: Optional[Dict[HashAlgorithm, float]] = None):
        self.hash_size = hash_size
        self.weights = dict(weights or DEFAULT_HASH_WEIGHTS)

    def compute_hash(self, pixels, algorithm: HashAlgorithm,
                     photo_id: Optional[str] = None) -> Fingerprint:
        """
        Compute one fingerprint

        Args:
            pixels: image input accepted by `load_image`
            algorithm: which hash to compute

        Raises:
            DecodeError: pixels could not be decoded
            ExtractionError: the hash computation itself failed
        """
        image = load_image(pixels, photo_id)
        return self._hash_array(image, HashAlgorithm(algorithm), photo_id)

    def compute_all_hashes(self, pixels, photo_id: Optional[str] = None) -> FingerprintSet:
        """Compute every algorithm on a single decode of the image"""
        image = load_image(pixels, photo_id)
        return {
            algorithm: self._hash_array(image, algorithm, photo_id)
            for algorithm in HashAlgorithm
        }

    def _hash_array(self, image: np.ndarray, algorithm: HashAlgorithm,
                    photo_id: Optional[str]) -> Fingerprint:
        try:
            if algorithm == HashAlgorithm.AVERAGE:
                bits = self._average_hash(image)
            elif algorithm == HashAlgorithm.DIFFERENCE:
                bits = self._difference_hash(image)
            else:
                bits = self._perceptual_hash(image)
        except cv2.error as e:
            raise ExtractionError(f"{algorithm.value} hash failed: {e}", photo_id) from e
        return Fingerprint.from_array(algorithm, bits)

    def _average_hash(self, image: np.ndarray) -> np.ndarray:
        pil_image = Image.fromarray(image)
        return imagehash.average_hash(pil_image, hash_size=self.hash_size).hash

    def _perceptual_hash(self, image: np.ndarray) -> np.ndarray:
        # Colour downscale first, then luminance against the mean
        size = (self.hash_size, self.hash_size)
        small = cv2.resize(image, size, interpolation=cv2.INTER_AREA)
        gray = to_grayscale(small)
        return gray > gray.mean()

    def _difference_hash(self, image: np.ndarray) -> np.ndarray:
        gray = to_grayscale(image).astype(np.float32)
        small = cv2.resize(gray, (self.hash_size + 1, self.hash_size),
                           interpolation=cv2.INTER_AREA)
        return small[:, :-1] > small[:, 1:]

    @staticmethod
    def hamming_distance(a: Fingerprint, b: Fingerprint) -> int:
        """XOR + popcount over 32-bit chunks"""
        if a.bit_length != b.bit_length:
            raise ValueError(
                f"Fingerprint lengths differ: {a.bit_length} vs {b.bit_length}"
            )
        distance = 0
        for start in range(0, a.bit_length, CHUNK_BITS):
            chunk_a = int(a.bits[start:start + CHUNK_BITS], 2)
            chunk_b = int(b.bits[start:start + CHUNK_BITS], 2)
            distance += bin(chunk_a ^ chunk_b).count('1')
        return distance

    @classmethod
    def hash_similarity(cls, a: Fingerprint, b: Fingerprint) -> float:
        """Similarity in 0..100"""
        if a.bit_length == 0:
            return 0.0
        distance = cls.hamming_distance(a, b)
        return (a.bit_length - distance) / a.bit_length * 100

    @classmethod
    def average_hash_similarity(cls, a: FingerprintSet, b: FingerprintSet) -> float:
        """Mean similarity over the algorithms present in both sets"""
        shared = [alg for alg in HashAlgorithm if alg in a and alg in b]
        if not shared:
            return 0.0
        return sum(cls.hash_similarity(a[alg], b[alg]) for alg in shared) / len(shared)

    def weighted_hash_similarity(self, a: FingerprintSet, b: FingerprintSet) -> float:
        """Weighted multi-hash similarity, renormalized over shared algorithms"""
        total_weight = 0.0
        score = 0.0
        for algorithm, weight in self.weights.items():
            if algorithm in a and algorithm in b:
                score += weight * self.hash_similarity(a[algorithm], b[algorithm])
                total_weight += weight
        if total_weight == 0:
            return 0.0
        return score / total_weight
