# core/duplicate_detection.py

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from tqdm import tqdm

from config import SystemConfig
from core.batch_processor import BatchProcessor, CancellationToken
from core.database import CacheLayer
from core.errors import FailureReport, MemoryPressureError, OperationCancelled
from core.feature_extractors import FeatureExtractor, MultiLevelExtractor
from core.fusion import FeatureFusion, FusionResult, FusionWeights, cosine_similarity
from core.hashing import HashEngine
from core.lsh import LSHIndex
from core.types import (FeatureLevel, HashAlgorithm, ImageQuality, PhotoAnalysis,
                        PhotoRecord, SearchResult, SimilarityGroup)
from core.vector_index import IncrementalIndex
from utils.logging_config import PerformanceLogger
from utils.performance_monitor import MemoryMonitor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


class PipelineState(str, Enum):
    IDLE = "idle"
    INDEXING = "indexing"
    GROUPING = "grouping"
    PAUSED = "paused"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class GroupingResult:
    """Output boundary: groups plus per-photo quality and fingerprints"""
    groups: List[SimilarityGroup]
    analyses: Dict[str, PhotoAnalysis]
    failures: FailureReport
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def qualities(self) -> Dict[str, ImageQuality]:
        return {pid: a.quality for pid, a in self.analyses.items() if a.quality is not None}

    @property
    def fingerprints(self) -> Dict[str, Dict[str, str]]:
        return {
            pid: {alg.value: fp.hex for alg, fp in a.fingerprints.items()}
            for pid, a in self.analyses.items()
        }

    def to_dict(self) -> dict:
        return {
            'groups': [g.to_dict() for g in self.groups],
            'quality_scores': {pid: q.score for pid, q in self.qualities.items()},
            'fingerprints': self.fingerprints,
            'failures': self.failures.get_report(),
            'timings': self.timings,
        }


class GroupingPipeline:
    """
    Multi-stage similarity grouping, cheapest filter first

    1. LSH buckets over the perceptual fingerprint give candidate pairs
    2. weighted multi-hash similarity
    3. colour histogram cosine
    4. deep feature cosine, when deep features exist for both photos

    Stages are AND-ed: a candidate failing any enabled stage is dropped.
    Photos that joined a group never seed another one.
    """

    def __init__(self,
                 config: Optional[SystemConfig] = None,
                 deep_extractor: Optional[FeatureExtractor] = None,
                 cache: Optional[CacheLayer] = None,
                 index: Optional[IncrementalIndex] = None,
                 monitor: Optional[MemoryMonitor] = None,
                 show_progress: bool = True):
        self.config = config or SystemConfig()
        self.config.validate()
        grouping = self.config.grouping
        self.enabled_levels = {FeatureLevel(level) for level in self.config.fusion.enabled_levels}

        self.hash_engine = HashEngine()
        self.cache = cache
        if self.cache is None and self.config.cache.enabled:
            self.cache = CacheLayer.from_config(self.config.cache)

        self.extractor = MultiLevelExtractor(
            hash_engine=self.hash_engine,
            deep_extractor=deep_extractor,
            cache=self.cache,
            enabled_levels=self.enabled_levels,
            mid_max_dimension=grouping.mid_max_dimension,
            quality_max_dimension=grouping.quality_max_dimension,
        )
        fusion_cfg = self.config.fusion
        self.fusion = FeatureFusion(
            weights=FusionWeights(fusion_cfg.low_weight, fusion_cfg.mid_weight,
                                  fusion_cfg.high_weight, fusion_cfg.color_weight,
                                  fusion_cfg.texture_weight),
            enabled_levels=self.enabled_levels,
            adaptive=fusion_cfg.adaptive_weights,
        )
        self.show_progress = show_progress
        self.processor = BatchProcessor(
            n_workers=self.config.max_concurrent_tasks,
            batch_size=self.config.batch_size,
            show_progress=show_progress,
        )
        self.index = index if index is not None else IncrementalIndex(
            self.config.index, batch_processor=self.processor)
        if self.index.extractor is None:
            self.index.attach_extractor(self.extractor)

        self.monitor = monitor
        if self.monitor is None and self.config.memory.enabled:
            mem = self.config.memory
            self.monitor = MemoryMonitor(mem.high_mb, mem.critical_mb,
                                         mem.monitor_interval, mem.cooldown)
        if self.monitor is not None:
            self.monitor.add_listener(self.index.on_memory_pressure)
            if self.cache is not None:
                self.monitor.add_listener(self.cache.on_memory_pressure)

        self.lsh = LSHIndex(grouping.lsh_bands)
        self.analyses: Dict[str, PhotoAnalysis] = {}
        self.state = PipelineState.IDLE
        self.perf = PerformanceLogger()
        self._token: Optional[CancellationToken] = None
        self._resume = threading.Event()
        self._resume.set()
        self._paused_from: Optional[PipelineState] = None

    @property
    def deep_stage_enabled(self) -> bool:
        return (self.config.grouping.enable_deep_stage
                and FeatureLevel.HIGH in self.enabled_levels
                and self.extractor.deep_extractor is not None)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _transition(self, state: PipelineState, token: CancellationToken):
        token.raise_if_cancelled(f"transition to {state.value}")
        logger.debug("Pipeline %s -> %s", self.state.value, state.value)
        self.state = state

    def _checkpoint(self, token: CancellationToken):
        token.raise_if_cancelled(self.state.value)
        while not self._resume.wait(0.1):
            token.raise_if_cancelled(self.state.value)

    def _before_batch(self, token: CancellationToken):
        def hook(batch_index: int):
            self._checkpoint(token)
            if self.monitor is None:
                return
            if not self.monitor.running:
                self.monitor.sample()
            if not self.monitor.is_paused:
                return
            previous, self.state = self.state, PipelineState.PAUSED
            try:
                self.monitor.wait_until_ready(self.config.memory.pause_timeout)
            except MemoryPressureError as e:
                logger.warning("%s; continuing with batch %d", e, batch_index + 1)
            finally:
                self.state = previous
            token.raise_if_cancelled(self.state.value)
        return hook

    def pause(self):
        """Hold the pipeline at its next batch boundary"""
        if self.state in (PipelineState.INDEXING, PipelineState.GROUPING):
            self._paused_from = self.state
            self.state = PipelineState.PAUSED
        self._resume.clear()

    def resume(self):
        if self.state == PipelineState.PAUSED and self._paused_from is not None:
            self.state = self._paused_from
        self._paused_from = None
        self._resume.set()

    def cancel(self):
        if self._token is not None:
            self._token.cancel()
        self._resume.set()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def index_photos(self, photos: Sequence[PhotoRecord],
                     cancel_token: Optional[CancellationToken] = None,
                     progress_callback: Optional[ProgressCallback] = None) -> FailureReport:
        """
        Analyze photos in parallel and add them to the index and LSH buckets

        Per-photo failures are collected and logged once per batch. On
        cancellation the photos already indexed stay indexed.
        """
        token = cancel_token or self._token or CancellationToken()
        self._transition(PipelineState.INDEXING, token)
        start = time.time()
        failures = FailureReport("indexing")
        completed = 0

        for results, report in self.processor.map_batches(
                list(photos), self.extractor.analyze, token,
                desc="Analyzing photos", before_batch=self._before_batch(token)):
            for _, analysis in results:
                self._register(analysis)
            update = self.index.add_or_update_features(a.feature for _, a in results)
            report.log_summary(logger)
            failures.extend(report)
            failures.extend(update.failures)
            completed += len(results) + len(report)
            if progress_callback is not None:
                progress_callback(PipelineState.INDEXING.value, completed, len(photos))

        self.index.maybe_collect()
        self.perf.log_metric('indexing', time.time() - start,
                             photos=len(photos), failed=len(failures))
        return failures

    def _register(self, analysis: PhotoAnalysis):
        self.analyses[analysis.photo_id] = analysis
        perceptual = analysis.fingerprints.get(HashAlgorithm.PERCEPTUAL)
        if perceptual is not None:
            self.lsh.insert(analysis.photo_id, perceptual)
        else:
            self.lsh.remove(analysis.photo_id)

    def compare(self, a: PhotoAnalysis, b: PhotoAnalysis) -> Optional[float]:
        """
        Run the staged filter on one pair

        Returns:
            the pair's similarity (0..100) when it passes every stage that
            both photos can be evaluated on, otherwise None
        """
        grouping = self.config.grouping
        fa, fb = a.feature, b.feature

        score = None
        if fa.low_level and fb.low_level:
            score = self.hash_engine.weighted_hash_similarity(fa.low_level, fb.low_level)
            if score < grouping.similarity_threshold:
                return None

        hist_a = fa.mid_level.color_histogram if fa.mid_level else None
        hist_b = fb.mid_level.color_histogram if fb.mid_level else None
        if hist_a is not None and hist_b is not None:
            if cosine_similarity(hist_a, hist_b) < grouping.histogram_threshold:
                return None

        if self.deep_stage_enabled and self.fusion.level_available(FeatureLevel.HIGH, fa, fb):
            if cosine_similarity(fa.high_level, fb.high_level) < grouping.deep_threshold:
                return None

        if score is None:
            result = self.fusion.calculate_similarity(fa, fb)
            if result.method == "unavailable":
                return None
            score = result.score
        return score

    def _candidates(self, seed_id: str) -> List[str]:
        if seed_id in self.lsh:
            return self.lsh.candidates(seed_id)
        # No perceptual fingerprint: fall back to comparing against everything
        return [pid for pid in self.analyses if pid != seed_id]

    def group_photos(self, cancel_token: Optional[CancellationToken] = None,
                     progress_callback: Optional[ProgressCallback] = None) -> List[SimilarityGroup]:
        """Group every analyzed photo; only groups with two or more members are returned"""
        token = cancel_token or self._token or CancellationToken()
        self._transition(PipelineState.GROUPING, token)
        start = time.time()

        processed = set()
        groups: List[SimilarityGroup] = []
        photo_ids = list(self.analyses)
        comparisons = 0

        for position, seed_id in enumerate(tqdm(photo_ids, desc="Grouping photos",
                                                disable=not self.show_progress)):
            if position % self.config.batch_size == 0:
                self._checkpoint(token)
                if progress_callback is not None:
                    progress_callback(PipelineState.GROUPING.value, position, len(photo_ids))
            if seed_id in processed:
                continue
            processed.add(seed_id)
            seed = self.analyses[seed_id]

            members = [seed_id]
            scores = []
            for candidate_id in self._candidates(seed_id):
                if candidate_id in processed:
                    continue
                comparisons += 1
                score = self.compare(seed, self.analyses[candidate_id])
                if score is None:
                    continue
                members.append(candidate_id)
                scores.append(score)
                processed.add(candidate_id)

            if len(members) > 1:
                groups.append(SimilarityGroup(
                    id=f"group_{len(groups) + 1}",
                    member_photo_ids=members,
                    representative_photo_id=self.select_representative(members),
                    average_similarity=sum(scores) / len(scores),
                ))

        if progress_callback is not None:
            progress_callback(PipelineState.GROUPING.value, len(photo_ids), len(photo_ids))
        self.perf.log_metric('grouping', time.time() - start,
                             photos=len(photo_ids), groups=len(groups), comparisons=comparisons)
        logger.info("Grouped %d photos into %d groups (%d comparisons)",
                    len(photo_ids), len(groups), comparisons)
        return groups

    def select_representative(self, member_ids: List[str]) -> str:
        """Highest quality score wins; ties go to the first member"""
        def score(photo_id: str) -> float:
            quality = self.analyses[photo_id].quality
            return quality.score if quality is not None else float('-inf')
        return max(member_ids, key=score)

    def run(self, photos: Sequence[PhotoRecord],
            cancel_token: Optional[CancellationToken] = None,
            progress_callback: Optional[ProgressCallback] = None) -> GroupingResult:
        """
        IDLE -> INDEXING -> GROUPING -> DONE

        Raises:
            OperationCancelled: cancelled at a transition or batch boundary
        """
        self._token = cancel_token or CancellationToken()
        try:
            failures = self.index_photos(photos, self._token, progress_callback)
            groups = self.group_photos(self._token, progress_callback)
            self._transition(PipelineState.DONE, self._token)
        except OperationCancelled:
            self.state = PipelineState.CANCELLED
            logger.info("Pipeline cancelled")
            raise
        finally:
            self._token = None

        timings = {
            stage: self.perf.get_statistics(stage).get('total', 0.0)
            for stage in ('indexing', 'grouping')
        }
        return GroupingResult(groups, dict(self.analyses), failures, timings)

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def similarity(self, photo_a: str, photo_b: str) -> FusionResult:
        """Fused multi-level similarity of two analyzed photos"""
        return self.fusion.calculate_similarity(self.analyses[photo_a].feature,
                                                self.analyses[photo_b].feature)

    def find_similar(self, photo_id: str, limit: int = 10,
                     threshold: Optional[float] = None) -> List[SearchResult]:
        return self.index.find_similar_by_id(photo_id, limit=limit, threshold=threshold)

    def remove_photos(self, photo_ids: Iterable[str]) -> int:
        photo_ids = list(photo_ids)
        removed = 0
        for photo_id in photo_ids:
            if self.analyses.pop(photo_id, None) is not None:
                removed += 1
            self.lsh.remove(photo_id)
            if self.cache is not None:
                self.cache.invalidate_photo(photo_id)
        self.index.remove_photos(photo_ids)
        return removed

    def reset(self):
        """Forget all analyses; the cache is kept so a re-run is cheap"""
        self.analyses.clear()
        self.lsh.clear()
        self.index.clear()
        self.state = PipelineState.IDLE

    def close(self):
        self.processor.shutdown()
        if self.monitor is not None:
            self.monitor.remove_listener(self.index.on_memory_pressure)
            if self.cache is not None:
                self.monitor.remove_listener(self.cache.on_memory_pressure)
            self.monitor.stop()
        if self.cache is not None and self.cache.store is not None:
            self.cache.store.close()
