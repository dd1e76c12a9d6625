# core/vector_index.py

import logging
import threading
import time
from collections import Counter
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from config import IndexConfig
from core.batch_processor import BatchProcessor, CancellationToken
from core.buffer_pool import SharedBufferPool
from core.compression import VectorCompressor
from core.errors import FailureReport, NotConfiguredError
from core.kdtree import KDTree
from core.types import (FeatureLevel, FeaturePoint, HashAlgorithm, IndexUpdateResult,
                        MultiLevelFeature, Neighbor, PhotoRecord, SearchResult)
from utils.performance_monitor import MemoryLevel

logger = logging.getLogger(__name__)

LARGE_INDEX_POINTS = 10_000
SMALL_INDEX_POINTS = 1_000
MIN_CLEANUP_RATIO = 0.05
MAX_CLEANUP_RATIO = 0.5


class IndexState(str, Enum):
    EMPTY = "empty"
    BUILDING = "building"
    READY = "ready"


def feature_to_points(feature: MultiLevelFeature) -> List[FeaturePoint]:
    """
    Vectors a photo contributes to the index, one per available level

    LOW maps the concatenated fingerprint bits to +1/-1, MID concatenates
    the colour histogram and texture descriptor, HIGH is the deep vector.
    """
    points = []
    if feature.low_level:
        bits = ''.join(feature.low_level[alg].bits
                       for alg in HashAlgorithm if alg in feature.low_level)
        vector = np.where(np.frombuffer(bits.encode('ascii'), dtype=np.uint8) == ord('1'),
                          1.0, -1.0)
        points.append(FeaturePoint(feature.id, vector, FeatureLevel.LOW))
    mid = feature.mid_level
    if mid is not None and not mid.is_empty():
        parts = [np.asarray(v, dtype=np.float64).ravel()
                 for v in (mid.color_histogram, mid.texture_features) if v is not None]
        points.append(FeaturePoint(feature.id, np.concatenate(parts), FeatureLevel.MID))
    if feature.high_level is not None and len(feature.high_level) > 0:
        points.append(FeaturePoint(feature.id, np.asarray(feature.high_level, dtype=np.float64),
                                   FeatureLevel.HIGH))
    return points


class IncrementalIndex:
    """
    KD-tree nearest-neighbour index with incremental updates

    One tree per feature level keeps vector lengths uniform within a tree.
    Inserts go straight into the tree; every `incremental_threshold`
    processed points the rebuild counter advances, and when it reaches
    `rebuild_threshold` every tree is rebuilt by median split. In between,
    a tree whose subtree heights drift apart by more than 2 is rebuilt.

    Mutations are serialized by a lock. Queries never take it: they walk a
    snapshot of the tree roots and may see slightly stale results.
    """

    def __init__(self,
                 config: Optional[IndexConfig] = None,
                 extractor=None,
                 buffer_pool: Optional[SharedBufferPool] = None,
                 batch_processor: Optional[BatchProcessor] = None):
        self.config = config or IndexConfig()
        self.compressor = VectorCompressor(self.config.compression_ratio)
        self.extractor = extractor
        self.buffer_pool = buffer_pool
        if self.buffer_pool is None and self.config.use_shared_buffer:
            self.buffer_pool = SharedBufferPool()
        self.batch_processor = batch_processor

        self.state = IndexState.EMPTY
        self.trees: Dict[FeatureLevel, KDTree] = {}
        self.points: Dict[Tuple[str, FeatureLevel], FeaturePoint] = {}
        self.source_dimensions: Dict[FeatureLevel, int] = {}
        self._max_norm: Dict[FeatureLevel, float] = {}

        self.incremental_counter = 0
        self.rebuild_counter = 0
        self.full_rebuild_count = 0
        self.rebalance_count = 0

        self.memory_level = MemoryLevel.NORMAL
        self.last_gc = time.time()

        self._lock = threading.RLock()
        self._pin_lock = threading.Lock()
        self._pinned: Counter = Counter()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def attach_extractor(self, extractor):
        """Attach the similarity extraction backend used by photo-level operations"""
        self.extractor = extractor

    def _require_extractor(self):
        if self.extractor is None:
            raise NotConfiguredError("No similarity extraction backend attached to the index")
        return self.extractor

    @property
    def size(self) -> int:
        return len(self.points)

    def __len__(self):
        return len(self.points)

    def __contains__(self, photo_id: str) -> bool:
        return any((photo_id, level) in self.points for level in FeatureLevel)

    def get_point(self, photo_id: str, level: FeatureLevel) -> Optional[FeaturePoint]:
        return self.points.get((photo_id, level))

    def photo_ids(self) -> List[str]:
        return list(dict.fromkeys(photo_id for photo_id, _ in self.points))

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_or_update(self, points: Iterable[FeaturePoint]) -> IndexUpdateResult:
        """
        Insert new points and update existing (photo id, level) entries in place

        Returns:
            IndexUpdateResult; `rebuilt` is True when a threshold-driven full
            rebuild ran during this call
        """
        start = time.time()
        result = IndexUpdateResult()
        report = FailureReport("index update")

        with self._lock:
            self.state = IndexState.BUILDING
            stale_levels = set()

            for point in points:
                level = FeatureLevel(point.level)
                try:
                    vector = self._prepare_vector(point.vector, level)
                except ValueError as e:
                    result.rejected += 1
                    report.add(point.id, e)
                    continue

                key = (point.id, level)
                existing = self.points.get(key)
                if existing is not None:
                    if not np.array_equal(existing.vector, vector):
                        stale_levels.add(level)
                    self._store_vector(existing, vector)
                    existing.last_updated = time.time()
                    result.updated += 1
                else:
                    new_point = FeaturePoint(point.id, vector, level,
                                             access_count=point.access_count)
                    self._store_vector(new_point, vector)
                    self.points[key] = new_point
                    self._insert_into_tree(new_point, stale_levels)
                    result.added += 1

                self._max_norm[level] = max(self._max_norm.get(level, 0.0),
                                            float(np.linalg.norm(vector)))

                if self._advance_counters(stale_levels):
                    result.rebuilt = True

            if stale_levels:
                for level in stale_levels:
                    self._rebuild_level(level)
                    self.rebalance_count += 1

            self.state = IndexState.READY if self.points else IndexState.EMPTY
            result.current_index_size = len(self.points)

        report.log_summary(logger)
        result.failures = report
        result.failed_photo_ids = report.failed_ids
        result.indexing_time = time.time() - start
        logger.debug("Index update: +%d ~%d rejected=%d size=%d rebuilt=%s",
                     result.added, result.updated, result.rejected,
                     result.current_index_size, result.rebuilt)
        return result

    def _prepare_vector(self, vector, level: FeatureLevel) -> np.ndarray:
        raw = np.asarray(vector, dtype=np.float64).ravel()
        if raw.size == 0:
            raise ValueError("empty vector")
        if not np.all(np.isfinite(raw)):
            raise ValueError("vector contains NaN or infinite values")
        expected = self.source_dimensions.get(level)
        if expected is None:
            self.source_dimensions[level] = raw.size
        elif raw.size != expected:
            raise ValueError(
                f"{level.value} vector length {raw.size} does not match index length {expected}"
            )
        return self.compressor.compress(raw)

    def _store_vector(self, point: FeaturePoint, vector: np.ndarray):
        if self.buffer_pool is None:
            point.vector = vector
            return
        if point.buffer_ref is not None:
            self.buffer_pool.free(point.buffer_ref)
        point.buffer_ref = self.buffer_pool.store_vector(vector)
        point.vector = self.buffer_pool.view(point.buffer_ref, np.float64, len(vector))

    def _release_vector(self, point: FeaturePoint):
        if self.buffer_pool is not None and point.buffer_ref is not None:
            self.buffer_pool.free(point.buffer_ref)
            point.buffer_ref = None

    def _insert_into_tree(self, point: FeaturePoint, stale_levels: set):
        tree = self.trees.setdefault(point.level, KDTree())
        try:
            tree.insert(point)
        except (ValueError, IndexError, AttributeError) as e:
            # Corrupt tree state: the point is already registered, rebuild picks it up
            logger.error("%s tree insert failed (%s), scheduling rebuild", point.level.value, e)
            stale_levels.add(point.level)

    def _advance_counters(self, stale_levels: set) -> bool:
        """Advance the amortization counters; True when a full rebuild ran"""
        self.incremental_counter += 1
        if self.incremental_counter < self.config.incremental_threshold:
            return False

        self.incremental_counter = 0
        self.rebuild_counter += 1
        if self.rebuild_counter >= self.config.rebuild_threshold:
            self.rebuild_counter = 0
            self.rebuild()
            self.state = IndexState.BUILDING
            stale_levels.clear()
            return True

        for level, tree in list(self.trees.items()):
            if level not in stale_levels and not tree.is_balanced():
                logger.debug("%s tree unbalanced, rebuilding", level.value)
                self._rebuild_level(level)
                self.rebalance_count += 1
        return False

    def _rebuild_level(self, level: FeatureLevel):
        points = [p for (_, lvl), p in self.points.items() if lvl == level]
        if not points:
            self.trees.pop(level, None)
            return
        tree = KDTree()
        tree.build(points)
        self.trees[level] = tree

    def rebuild(self):
        """Full median-split rebuild of every level tree"""
        with self._lock:
            self.state = IndexState.BUILDING
            levels = set(self.trees) | {level for _, level in self.points}
            for level in levels:
                self._rebuild_level(level)
            self.full_rebuild_count += 1
            self.state = IndexState.READY if self.points else IndexState.EMPTY
            logger.info("Index rebuilt: %d points across %d trees",
                        len(self.points), len(self.trees))

    def add_or_update_features(self, features: Iterable[MultiLevelFeature]) -> IndexUpdateResult:
        points = []
        for feature in features:
            points.extend(feature_to_points(feature))
        return self.add_or_update(points)

    def add_or_update_photos(self,
                             photos: Sequence[PhotoRecord],
                             cancel_token: Optional[CancellationToken] = None) -> IndexUpdateResult:
        """
        Extract features for each photo in parallel, then update the index

        Extraction failures are recorded per photo. Tree mutation happens
        after extraction, on this thread only.

        Raises:
            NotConfiguredError: no extraction backend is attached
        """
        extractor = self._require_extractor()
        processor = self.batch_processor or BatchProcessor(show_progress=False)
        report = FailureReport("photo indexing")
        features = []
        for results, batch_report in processor.map_batches(
                photos, extractor.extract, cancel_token, desc="Indexing photos"):
            features.extend(feature for _, feature in results)
            report.extend(batch_report)

        report.log_summary(logger)
        result = self.add_or_update_features(features)
        report.extend(result.failures)
        result.failures = report
        result.failed_photo_ids = report.failed_ids
        return result

    def remove_photo(self, photo_id: str) -> bool:
        """Remove every level of a photo; trees are rebuilt before returning"""
        return self.remove_photos([photo_id]) > 0

    def remove_photos(self, photo_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            touched = set()
            for photo_id in photo_ids:
                for level in FeatureLevel:
                    point = self.points.pop((photo_id, level), None)
                    if point is not None:
                        self._release_vector(point)
                        touched.add(level)
                        removed += 1
            for level in touched:
                self._rebuild_level(level)
            if not self.points:
                self.state = IndexState.EMPTY
        return removed

    def clear(self):
        with self._lock:
            for point in self.points.values():
                self._release_vector(point)
            self.points.clear()
            self.trees.clear()
            self.source_dimensions.clear()
            self._max_norm.clear()
            self.incremental_counter = 0
            self.rebuild_counter = 0
            self.state = IndexState.EMPTY
        if self.buffer_pool is not None:
            self.buffer_pool.cleanup_unused()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _pin(self, pinned: List[Tuple[str, FeatureLevel]], point: FeaturePoint):
        with self._pin_lock:
            self._pinned[point.key] += 1
        pinned.append(point.key)
        point.touch()

    def _unpin(self, pinned: List[Tuple[str, FeatureLevel]]):
        with self._pin_lock:
            for key in pinned:
                self._pinned[key] -= 1
                if self._pinned[key] <= 0:
                    del self._pinned[key]

    def is_pinned(self, photo_id: str, level: FeatureLevel) -> bool:
        with self._pin_lock:
            return self._pinned.get((photo_id, level), 0) > 0

    def _query_vector(self, query: np.ndarray, level: FeatureLevel,
                      tree: KDTree) -> Optional[np.ndarray]:
        if len(query) == tree.dimension:
            return query
        if len(query) == self.source_dimensions.get(level):
            return self.compressor.compress(query)
        return None

    def k_nearest(self, query, k: int = 10,
                  level: Optional[FeatureLevel] = None,
                  exclude_id: Optional[str] = None) -> List[Neighbor]:
        """
        k closest points by Euclidean distance

        Args:
            query: raw or already compressed vector
            k: number of neighbours
            level: restrict to one level; None searches every level whose
                dimension matches the query
            exclude_id: photo id left out of the results

        Every point evaluated during the search gets its access count
        bumped and is pinned against eviction until the search returns.
        """
        query = np.asarray(query, dtype=np.float64).ravel()
        levels = [FeatureLevel(level)] if level is not None else list(self.trees)
        extra = 1 if exclude_id is not None else 0

        pinned: List[Tuple[str, FeatureLevel]] = []
        neighbors: List[Neighbor] = []
        try:
            for lvl in levels:
                tree = self.trees.get(lvl)
                if tree is None or tree.root is None:
                    continue
                vector = self._query_vector(query, lvl, tree)
                if vector is None:
                    if level is not None:
                        raise ValueError(
                            f"Query length {len(query)} does not match {lvl.value} index"
                        )
                    continue
                for distance, point in tree.k_nearest(
                        vector, k + extra, visit=lambda p: self._pin(pinned, p)):
                    if point.id == exclude_id or point.key not in self.points:
                        continue
                    neighbors.append(Neighbor(point, distance))
        finally:
            self._unpin(pinned)

        neighbors.sort(key=lambda n: n.distance)
        return neighbors[:k]

    def max_distance(self, level: FeatureLevel) -> float:
        """Upper bound on pairwise distance within a level (twice the largest norm)"""
        return 2.0 * self._max_norm.get(level, 0.0)

    def distance_to_similarity(self, distance: float, max_distance: float) -> float:
        """exp(-decay * (d / max)^2) clamped to [0, 1]"""
        if distance <= 0:
            return 1.0
        if max_distance <= 0 or distance >= max_distance:
            return 0.0
        ratio = distance / max_distance
        return float(min(1.0, max(0.0, np.exp(-self.config.similarity_decay * ratio * ratio))))

    def _to_results(self, neighbors: List[Neighbor], limit: int,
                    threshold: float) -> List[SearchResult]:
        best: Dict[str, SearchResult] = {}
        for neighbor in neighbors:
            level = neighbor.point.level
            similarity = self.distance_to_similarity(neighbor.distance, self.max_distance(level))
            if similarity < threshold:
                continue
            current = best.get(neighbor.point.id)
            if current is None or similarity > current.similarity:
                best[neighbor.point.id] = SearchResult(
                    neighbor.point.id, level, neighbor.distance, similarity
                )
        results = sorted(best.values(), key=lambda r: r.similarity, reverse=True)
        return results[:limit]

    def find_similar_by_id(self, photo_id: str,
                           level: Optional[FeatureLevel] = None,
                           limit: Optional[int] = None,
                           threshold: Optional[float] = None) -> List[SearchResult]:
        """Photos near an indexed photo, best similarity per photo, self excluded"""
        limit = limit or self.config.search_limit
        threshold = self.config.search_threshold if threshold is None else threshold
        levels = [FeatureLevel(level)] if level is not None else list(FeatureLevel)

        neighbors = []
        for lvl in levels:
            point = self.points.get((photo_id, lvl))
            if point is None:
                continue
            neighbors.extend(self.k_nearest(point.vector, limit * 2, lvl, exclude_id=photo_id))
        return self._to_results(neighbors, limit, threshold)

    def search_similar_photos(self, photo: PhotoRecord,
                              limit: Optional[int] = None,
                              threshold: Optional[float] = None) -> List[SearchResult]:
        """
        Extract features from a photo that need not be indexed and search for it

        Raises:
            NotConfiguredError: no extraction backend is attached
        """
        extractor = self._require_extractor()
        limit = limit or self.config.search_limit
        threshold = self.config.search_threshold if threshold is None else threshold

        feature = extractor.extract(photo)
        neighbors = []
        for point in feature_to_points(feature):
            if point.level not in self.trees:
                continue
            neighbors.extend(self.k_nearest(point.vector, limit * 2, point.level,
                                            exclude_id=photo.id))
        return self._to_results(neighbors, limit, threshold)

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def determine_cleanup_ratio(self) -> float:
        size = len(self.points)
        ratio = 0.10
        if size > LARGE_INDEX_POINTS:
            ratio = 0.20
        elif size < SMALL_INDEX_POINTS:
            ratio = 0.05

        if self.memory_level == MemoryLevel.CRITICAL:
            ratio = max(ratio, MAX_CLEANUP_RATIO)
        elif self.memory_level == MemoryLevel.HIGH:
            ratio = max(ratio, 0.3)
        return min(MAX_CLEANUP_RATIO, max(MIN_CLEANUP_RATIO, ratio))

    def perform_garbage_collection(self, forced_ratio: Optional[float] = None) -> int:
        """
        Evict the least used, stalest points

        Victims are ordered by ascending (access_count, last_updated). Points
        pinned by an in-flight query are skipped. Nothing is evicted when
        fewer than `min_gc_batch` points would go.

        Returns:
            number of points removed
        """
        with self._lock:
            self.last_gc = time.time()
            ratio = forced_ratio if forced_ratio is not None else self.determine_cleanup_ratio()
            remove_count = int(len(self.points) * ratio)
            if remove_count < self.config.min_gc_batch:
                logger.debug("GC skipped: %d candidates below minimum batch", remove_count)
                return 0

            ordered = sorted(self.points.values(),
                             key=lambda p: (p.access_count, p.last_updated))
            touched = set()
            removed = 0
            with self._pin_lock:
                for point in ordered:
                    if removed >= remove_count:
                        break
                    if self._pinned.get(point.key, 0) > 0:
                        continue
                    del self.points[point.key]
                    self._release_vector(point)
                    touched.add(point.level)
                    removed += 1

            for level in touched:
                self._rebuild_level(level)
            if not self.points:
                self.state = IndexState.EMPTY

        if self.buffer_pool is not None:
            self.buffer_pool.cleanup_unused()
        logger.info("GC evicted %d points (ratio %.2f), %d remain",
                    removed, ratio, len(self.points))
        return removed

    def force_garbage_collection(self, ratio: float = 0.3) -> int:
        return self.perform_garbage_collection(forced_ratio=ratio)

    def maybe_collect(self) -> int:
        """Periodic collection, runs at most once per `gc_interval` seconds"""
        if time.time() - self.last_gc < self.config.gc_interval:
            return 0
        return self.perform_garbage_collection()

    def on_memory_pressure(self, level: MemoryLevel, usage_mb: float):
        """MemoryMonitor listener"""
        self.memory_level = level
        if level != MemoryLevel.NORMAL:
            logger.info("Memory %s (%.0f MB): collecting index", level.value, usage_mb)
            self.perform_garbage_collection()

    def stats(self) -> dict:
        per_level = Counter(level.value for _, level in self.points)
        info = {
            'state': self.state.value,
            'size': len(self.points),
            'photos': len(self.photo_ids()),
            'points_per_level': dict(per_level),
            'tree_heights': {level.value: tree.height() for level, tree in self.trees.items()},
            'incremental_counter': self.incremental_counter,
            'rebuild_counter': self.rebuild_counter,
            'full_rebuilds': self.full_rebuild_count,
            'rebalances': self.rebalance_count,
        }
        if self.buffer_pool is not None:
            info['buffer_pool'] = self.buffer_pool.stats()
        return info
