# core/feature_extractors.py

import logging
from typing import Iterable, Optional, Protocol

import cv2
import numpy as np

from core.database import CacheLayer, make_cache_key
from core.errors import ExtractionError
from core.hashing import HashEngine
from core.quality import analyze_quality
from core.types import (FeatureLevel, MidLevelFeatures, MultiLevelFeature, PhotoAnalysis,
                        PhotoRecord)
from utils.image_utils import limit_dimension, load_image, to_grayscale

logger = logging.getLogger(__name__)

HISTOGRAM_BINS = 8
TEXTURE_BINS = 16


class FeatureExtractor(Protocol):
    """Deep feature capability: a fixed-length vector per image, or ExtractionError"""

    def extract(self, image: np.ndarray) -> np.ndarray:
        ...


def extract_color_histogram(image: np.ndarray, bins: int = HISTOGRAM_BINS) -> np.ndarray:
    """Per-channel histogram, `bins` per channel, each channel normalized to sum 1"""
    pixels = image.shape[0] * image.shape[1]
    channels = []
    for channel in range(3):
        hist = cv2.calcHist([image], [channel], None, [bins], [0, 256]).ravel()
        channels.append(hist / pixels)
    return np.concatenate(channels).astype(np.float64)


def extract_texture_features(image: np.ndarray) -> np.ndarray:
    """
    4-neighbour local binary pattern histogram

    Each interior pixel gets one bit per neighbour (up, right, down, left)
    set when the neighbour is at least as bright, giving 16 codes.
    """
    gray = to_grayscale(image)
    if gray.shape[0] < 3 or gray.shape[1] < 3:
        return np.zeros(TEXTURE_BINS)
    center = gray[1:-1, 1:-1]
    codes = ((gray[:-2, 1:-1] >= center).astype(np.int64) << 3
             | (gray[1:-1, 2:] >= center).astype(np.int64) << 2
             | (gray[2:, 1:-1] >= center).astype(np.int64) << 1
             | (gray[1:-1, :-2] >= center).astype(np.int64))
    hist = np.bincount(codes.ravel(), minlength=TEXTURE_BINS).astype(np.float64)
    return hist / codes.size


def extract_mid_level(image: np.ndarray, max_dimension: int = 256) -> MidLevelFeatures:
    small = limit_dimension(image, max_dimension)
    return MidLevelFeatures(
        color_histogram=extract_color_histogram(small),
        texture_features=extract_texture_features(small),
    )


class CLIPFeatureExtractor:
    """
    CLIP-based feature extraction - robust to blur and crops

    torch and transformers are optional; install the `deep` extra.
    """

    def __init__(self, model_name: str = "openai/clip-vit-base-patch32", device: str = None):
        import torch
        from transformers import CLIPModel, CLIPProcessor

        self._torch = torch
        self.device = device or ('cuda' if torch.cuda.is_available() else 'cpu')
        self.model = CLIPModel.from_pretrained(model_name)
        self.processor = CLIPProcessor.from_pretrained(model_name)
        self.model.to(self.device)
        self.model.eval()

    def extract(self, image: np.ndarray) -> np.ndarray:
        """Extract a unit-norm CLIP embedding from an RGB array"""
        try:
            with self._torch.no_grad():
                inputs = self.processor(images=image, return_tensors="pt")
                inputs = {k: v.to(self.device) for k, v in inputs.items()}
                features = self.model.get_image_features(**inputs)
                features = features / features.norm(dim=-1, keepdim=True)
        except (RuntimeError, ValueError) as e:
            raise ExtractionError(f"CLIP extraction failed: {e}") from e
        return features.cpu().numpy().flatten()


class MultiLevelExtractor:
    """
    Produces a photo's MultiLevelFeature and quality score

    Each level is read from the cache when possible. The deep extractor is
    an opaque collaborator: when it is missing or fails, the high level is
    left empty and the photo is still indexed.
    """

    def __init__(self,
                 hash_engine: Optional[HashEngine] = None,
                 deep_extractor: Optional[FeatureExtractor] = None,
                 cache: Optional[CacheLayer] = None,
                 enabled_levels: Optional[Iterable[FeatureLevel]] = None,
                 mid_max_dimension: int = 256,
                 quality_max_dimension: int = 1024):
        self.hash_engine = hash_engine or HashEngine()
        self.deep_extractor = deep_extractor
        self.cache = cache
        self.enabled_levels = set(FeatureLevel if enabled_levels is None else enabled_levels)
        self.mid_max_dimension = mid_max_dimension
        self.quality_max_dimension = quality_max_dimension

    def _key(self, photo: PhotoRecord, level: str) -> str:
        return make_cache_key(photo.id, photo.last_modified, photo.size, level)

    def _cached(self, photo: PhotoRecord, level: str):
        if self.cache is None:
            return None
        return self.cache.get(self._key(photo, level))

    def _remember(self, photo: PhotoRecord, level: str, payload):
        if self.cache is not None and payload is not None:
            self.cache.put(self._key(photo, level), payload, photo.id)

    def analyze(self, photo: PhotoRecord) -> PhotoAnalysis:
        """
        Full per-photo analysis

        Raises:
            DecodeError: the image cannot be decoded
            ExtractionError: hashing failed
        """
        image = None

        def pixels():
            nonlocal image
            if image is None:
                image = load_image(photo.data, photo.id)
            return image

        low = None
        if FeatureLevel.LOW in self.enabled_levels:
            low = photo.fingerprints or self._cached(photo, FeatureLevel.LOW.value)
            if low is None:
                low = self.hash_engine.compute_all_hashes(pixels(), photo.id)
                self._remember(photo, FeatureLevel.LOW.value, low)

        mid = None
        if FeatureLevel.MID in self.enabled_levels:
            mid = self._cached(photo, FeatureLevel.MID.value)
            if mid is None:
                try:
                    mid = extract_mid_level(pixels(), self.mid_max_dimension)
                except cv2.error as e:
                    raise ExtractionError(f"Mid-level extraction failed: {e}", photo.id) from e
                self._remember(photo, FeatureLevel.MID.value, mid)

        high = None
        if FeatureLevel.HIGH in self.enabled_levels and self.deep_extractor is not None:
            high = self._cached(photo, FeatureLevel.HIGH.value)
            if high is None:
                high = self._extract_deep(photo, pixels())
                self._remember(photo, FeatureLevel.HIGH.value, high)

        quality = self._cached(photo, "quality")
        if quality is None:
            quality = analyze_quality(pixels(), photo.size, self.quality_max_dimension)
            self._remember(photo, "quality", quality)

        feature = MultiLevelFeature(
            id=photo.id,
            low_level=low,
            mid_level=mid,
            high_level=high,
            metadata={'last_modified': photo.last_modified, 'size': photo.size},
        )
        return PhotoAnalysis(photo.id, feature, quality)

    def _extract_deep(self, photo: PhotoRecord, image: np.ndarray) -> Optional[np.ndarray]:
        try:
            vector = np.asarray(self.deep_extractor.extract(image), dtype=np.float64).ravel()
        except Exception as e:
            logger.warning("Deep features unavailable for %s: %s", photo.id, e)
            return None
        if vector.size == 0 or not np.all(np.isfinite(vector)):
            logger.warning("Deep extractor returned an unusable vector for %s", photo.id)
            return None
        return vector

    def extract(self, photo: PhotoRecord) -> MultiLevelFeature:
        """Index backend interface"""
        return self.analyze(photo).feature
