# core/fusion.py

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from core.hashing import HashEngine
from core.types import FeatureLevel, MultiLevelFeature

logger = logging.getLogger(__name__)

METHOD_BY_LEVEL = {
    FeatureLevel.LOW: "hash",
    FeatureLevel.MID: "color_texture",
    FeatureLevel.HIGH: "deep_learning",
}


@dataclass
class FusionWeights:
    """Base per-level weights and the colour/texture split inside the mid level"""
    low: float = 0.30
    mid: float = 0.30
    high: float = 0.40
    color: float = 0.6
    texture: float = 0.4

    def for_level(self, level: FeatureLevel) -> float:
        return {
            FeatureLevel.LOW: self.low,
            FeatureLevel.MID: self.mid,
            FeatureLevel.HIGH: self.high,
        }[level]


@dataclass
class FusionResult:
    score: float
    method: str
    level_scores: Dict[FeatureLevel, float] = field(default_factory=dict)
    weights: Dict[FeatureLevel, float] = field(default_factory=dict)

    @property
    def levels_used(self) -> List[FeatureLevel]:
        return [level for level, w in self.weights.items() if w > 0]


def cosine_similarity(a, b) -> float:
    """Cosine in [-1, 1]; empty, mismatched or zero-norm vectors give 0"""
    if a is None or b is None:
        return 0.0
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.size == 0 or a.size != b.size:
        return 0.0
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))


class FeatureFusion:
    """
    Combines low/mid/high level features into one 0..100 similarity

    Levels missing from either operand (or disabled) hand their weight to the
    remaining levels in equal shares.
    """

    def __init__(self,
                 weights: Optional[FusionWeights] = None,
                 enabled_levels: Optional[Iterable[FeatureLevel]] = None,
                 adaptive: bool = True):
        self.weights = weights or FusionWeights()
        self.enabled_levels = set(FeatureLevel if enabled_levels is None else enabled_levels)
        self.adaptive = adaptive
        self.features: Dict[str, MultiLevelFeature] = {}

    # ------------------------------------------------------------------
    # Per-level similarities
    # ------------------------------------------------------------------

    def low_level_similarity(self, a: MultiLevelFeature, b: MultiLevelFeature) -> float:
        return HashEngine.average_hash_similarity(a.low_level, b.low_level)

    def mid_level_similarity(self, a: MultiLevelFeature, b: MultiLevelFeature) -> float:
        """Weighted cosine over the sub-vectors both features carry, 0..100"""
        mid_a, mid_b = a.mid_level, b.mid_level
        parts = []
        if mid_a.color_histogram is not None and mid_b.color_histogram is not None:
            parts.append((self.weights.color,
                          cosine_similarity(mid_a.color_histogram, mid_b.color_histogram)))
        if mid_a.texture_features is not None and mid_b.texture_features is not None:
            parts.append((self.weights.texture,
                          cosine_similarity(mid_a.texture_features, mid_b.texture_features)))
        total = sum(w for w, _ in parts)
        if total == 0:
            return 0.0
        return max(0.0, sum(w * s for w, s in parts) / total) * 100

    def high_level_similarity(self, a: MultiLevelFeature, b: MultiLevelFeature) -> float:
        return max(0.0, cosine_similarity(a.high_level, b.high_level)) * 100

    def level_available(self, level: FeatureLevel,
                        a: MultiLevelFeature, b: MultiLevelFeature) -> bool:
        if level not in self.enabled_levels:
            return False
        if not (a.has_level(level) and b.has_level(level)):
            return False
        if level == FeatureLevel.LOW:
            return any(alg in b.low_level for alg in a.low_level)
        if level == FeatureLevel.MID:
            ma, mb = a.mid_level, b.mid_level
            return ((ma.color_histogram is not None and mb.color_histogram is not None)
                    or (ma.texture_features is not None and mb.texture_features is not None))
        return len(a.high_level) == len(b.high_level)

    # ------------------------------------------------------------------
    # Weighting
    # ------------------------------------------------------------------

    def calculate_adaptive_weights(self, available: List[FeatureLevel]) -> Dict[FeatureLevel, float]:
        """
        Redistribute the weight of unavailable levels evenly

        Returns an empty dict when nothing is available.
        """
        if not available:
            return {}
        weights = {level: self.weights.for_level(level) for level in available}
        if not self.adaptive:
            return weights

        missing = sum(self.weights.for_level(level)
                      for level in FeatureLevel if level not in available)
        share = missing / len(available)
        weights = {level: w + share for level, w in weights.items()}

        total = sum(weights.values())
        return {level: w / total for level, w in weights.items()}

    def calculate_similarity(self, a: MultiLevelFeature, b: MultiLevelFeature) -> FusionResult:
        available = [level for level in FeatureLevel if self.level_available(level, a, b)]
        weights = self.calculate_adaptive_weights(available)
        if not weights:
            return FusionResult(score=0.0, method="unavailable")

        compute = {
            FeatureLevel.LOW: self.low_level_similarity,
            FeatureLevel.MID: self.mid_level_similarity,
            FeatureLevel.HIGH: self.high_level_similarity,
        }
        level_scores = {level: compute[level](a, b) for level in available}
        score = sum(weights[level] * level_scores[level] for level in available)
        score = round(min(100.0, max(0.0, score)), 1)

        return FusionResult(
            score=score,
            method=self._dominant_method(weights),
            level_scores=level_scores,
            weights=weights,
        )

    @staticmethod
    def _dominant_method(weights: Dict[FeatureLevel, float]) -> str:
        used = [level for level, w in weights.items() if w > 0]
        if len(used) == 1:
            return METHOD_BY_LEVEL[used[0]]
        return "fusion"

    # ------------------------------------------------------------------
    # Feature store
    # ------------------------------------------------------------------

    def add_feature(self, feature: MultiLevelFeature):
        self.features[feature.id] = feature

    def add_features(self, features: Iterable[MultiLevelFeature]):
        for feature in features:
            self.add_feature(feature)

    def get_feature(self, photo_id: str) -> Optional[MultiLevelFeature]:
        return self.features.get(photo_id)

    def remove_feature(self, photo_id: str) -> bool:
        return self.features.pop(photo_id, None) is not None

    def clear(self):
        self.features.clear()

    def find_similar_features(self, photo_id: str,
                              threshold: float = 80.0) -> List[Tuple[str, FusionResult]]:
        """All stored features scoring at least `threshold` against photo_id, best first"""
        target = self.features.get(photo_id)
        if target is None:
            return []
        matches = []
        for other_id, other in self.features.items():
            if other_id == photo_id:
                continue
            result = self.calculate_similarity(target, other)
            if result.score >= threshold:
                matches.append((other_id, result))
        matches.sort(key=lambda item: item[1].score, reverse=True)
        return matches

    def find_similar_groups(self, threshold: float = 80.0) -> List[List[str]]:
        """
        Greedy grouping over the stored features

        Each unprocessed feature seeds a group with every unprocessed feature
        scoring at least `threshold` against it.
        """
        processed = set()
        groups = []
        for photo_id in list(self.features):
            if photo_id in processed:
                continue
            processed.add(photo_id)
            group = [photo_id]
            for other_id, _ in self.find_similar_features(photo_id, threshold):
                if other_id not in processed:
                    group.append(other_id)
                    processed.add(other_id)
            if len(group) > 1:
                groups.append(group)
        logger.debug("Fusion grouping produced %d groups at threshold %.1f",
                     len(groups), threshold)
        return groups
