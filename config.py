import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import List

import yaml

logger = logging.getLogger(__name__)


@dataclass
class IndexConfig:
    """Configuration for the incremental KD-tree index"""
    incremental_threshold: int = 50
    rebuild_threshold: int = 5
    compression_ratio: float = 0.8
    gc_interval: float = 600.0  # seconds between periodic collections
    min_gc_batch: int = 10
    similarity_decay: float = 5.0
    use_shared_buffer: bool = False
    search_limit: int = 10
    search_threshold: float = 0.5


@dataclass
class FusionConfig:
    """Configuration for multi-level feature fusion"""
    low_weight: float = 0.30
    mid_weight: float = 0.30
    high_weight: float = 0.40
    color_weight: float = 0.6
    texture_weight: float = 0.4
    adaptive_weights: bool = True
    enabled_levels: List[str] = field(default_factory=lambda: ["LOW", "MID", "HIGH"])


@dataclass
class GroupingConfig:
    """Configuration for staged similarity grouping"""
    similarity_threshold: float = 85.0  # stage 1, weighted hash similarity 0..100
    histogram_threshold: float = 0.85  # stage 2, colour histogram cosine
    deep_threshold: float = 0.9  # stage 3, deep feature cosine
    enable_deep_stage: bool = True
    lsh_bands: int = 8
    mid_max_dimension: int = 256
    quality_max_dimension: int = 1024


@dataclass
class CacheConfig:
    """Configuration for the feature cache"""
    enabled: bool = True
    policy: str = "adaptive"  # Options: lru, lfu, adaptive
    max_entries: int = 5000
    max_size_mb: float = 100.0
    expiry_days: float = 30.0
    auto_clean_threshold: float = 0.8
    cleanup_target: float = 0.7
    persist: bool = False
    store_path: str = "data/feature_cache.db"


@dataclass
class MemoryConfig:
    """Configuration for memory-pressure backpressure"""
    enabled: bool = True
    high_mb: float = 300.0
    critical_mb: float = 500.0
    monitor_interval: float = 10.0
    cooldown: float = 1.0
    pause_timeout: float = 30.0


# camelCase options struct accepted by SystemConfig.from_options
OPTION_KEYS = {
    'incrementalThreshold': ('index', 'incremental_threshold'),
    'rebuildThreshold': ('index', 'rebuild_threshold'),
    'compressionRatio': ('index', 'compression_ratio'),
    'similarityThreshold': ('grouping', 'similarity_threshold'),
    'enabledLevels': ('fusion', 'enabled_levels'),
    'batchSize': (None, 'batch_size'),
    'maxConcurrentTasks': (None, 'max_concurrent_tasks'),
}


@dataclass
class SystemConfig:
    """System-wide configuration"""
    batch_size: int = 32
    max_concurrent_tasks: int = field(default_factory=lambda: os.cpu_count() or 4)
    log_level: str = "INFO"
    log_dir: str = "logs"

    index: IndexConfig = field(default_factory=IndexConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    grouping: GroupingConfig = field(default_factory=GroupingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)

    def validate(self):
        """Raise ValueError on settings no component can run with"""
        if not 0.0 <= self.index.compression_ratio <= 1.0:
            raise ValueError("index.compression_ratio must be in [0, 1]")
        if self.index.incremental_threshold < 1 or self.index.rebuild_threshold < 1:
            raise ValueError("index thresholds must be >= 1")
        if self.batch_size < 1 or self.max_concurrent_tasks < 1:
            raise ValueError("batch_size and max_concurrent_tasks must be >= 1")
        if self.cache.policy not in ("lru", "lfu", "adaptive"):
            raise ValueError(f"Unknown cache policy: {self.cache.policy}")
        unknown = set(self.fusion.enabled_levels) - {"LOW", "MID", "HIGH"}
        if unknown:
            raise ValueError(f"Unknown feature levels: {sorted(unknown)}")

    def to_options(self) -> dict:
        options = {}
        for key, (section, name) in OPTION_KEYS.items():
            owner = getattr(self, section) if section else self
            options[key] = getattr(owner, name)
        return options

    @classmethod
    def from_options(cls, options: dict) -> 'SystemConfig':
        """Build a config from the camelCase options struct"""
        config = cls()
        for key, value in options.items():
            if key not in OPTION_KEYS:
                logger.warning("Ignoring unknown option: %s", key)
                continue
            section, name = OPTION_KEYS[key]
            setattr(getattr(config, section) if section else config, name, value)
        config.validate()
        return config

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.dump(asdict(self), f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'SystemConfig':
        """Load configuration from YAML file"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        config = cls()
        for item in fields(cls):
            if item.name not in config_dict:
                continue
            value = config_dict[item.name]
            current = getattr(config, item.name)
            if hasattr(current, '__dataclass_fields__'):
                value = _merge_section(current, value or {})
            setattr(config, item.name, value)

        config.validate()
        return config


def _merge_section(defaults, values: dict):
    """Overlay a YAML mapping on a section's defaults, skipping unknown keys"""
    known = {f.name for f in fields(defaults)}
    for key in values:
        if key not in known:
            logger.warning("Ignoring unknown %s setting: %s", type(defaults).__name__, key)
    merged = {name: values.get(name, getattr(defaults, name)) for name in known}
    return type(defaults)(**merged)
