# core/types.py

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import time

import imagehash
import numpy as np
from PIL import Image

from core.errors import FailureReport


class HashAlgorithm(str, Enum):
    """Pixel hashing algorithms producing a Fingerprint"""
    AVERAGE = "average"
    DIFFERENCE = "difference"
    PERCEPTUAL = "perceptual"


class FeatureLevel(str, Enum):
    """Resolution level of a feature vector stored in the index"""
    LOW = "LOW"
    MID = "MID"
    HIGH = "HIGH"


@dataclass(frozen=True)
class Fingerprint:
    """
    Fixed-length bit string produced by one hash algorithm

    Bits are stored as a string of '0'/'1' characters, row-major.
    """
    algorithm: HashAlgorithm
    bits: str

    @property
    def bit_length(self) -> int:
        return len(self.bits)

    @property
    def hex(self) -> str:
        """Hex form, matching imagehash's string representation"""
        return str(self.to_imagehash())

    def to_array(self) -> np.ndarray:
        return np.frombuffer(self.bits.encode('ascii'), dtype=np.uint8) == ord('1')

    def to_imagehash(self) -> imagehash.ImageHash:
        arr = self.to_array()
        side = int(round(np.sqrt(arr.size)))
        if side * side == arr.size:
            arr = arr.reshape(side, side)
        return imagehash.ImageHash(arr)

    @classmethod
    def from_array(cls, algorithm: HashAlgorithm, bits: np.ndarray) -> 'Fingerprint':
        flat = np.asarray(bits, dtype=bool).flatten()
        return cls(algorithm, ''.join('1' if b else '0' for b in flat))

    @classmethod
    def from_hex(cls, algorithm: HashAlgorithm, hex_str: str) -> 'Fingerprint':
        return cls.from_array(algorithm, imagehash.hex_to_hash(hex_str).hash)


# algorithm -> Fingerprint, possibly partial
FingerprintSet = Dict[HashAlgorithm, Fingerprint]


@dataclass(frozen=True)
class MidLevelFeatures:
    """Colour histogram and texture descriptor of a photo"""
    color_histogram: Optional[np.ndarray] = None
    texture_features: Optional[np.ndarray] = None

    def is_empty(self) -> bool:
        return self.color_histogram is None and self.texture_features is None


@dataclass(frozen=True)
class MultiLevelFeature:
    """
    Combined low/mid/high level descriptor owned by one photo.

    Any level may be absent when extraction failed or the level is disabled.
    Re-extraction replaces the whole object.
    """
    id: str
    low_level: Optional[FingerprintSet] = None
    mid_level: Optional[MidLevelFeatures] = None
    high_level: Optional[np.ndarray] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def has_level(self, level: FeatureLevel) -> bool:
        if level == FeatureLevel.LOW:
            return bool(self.low_level)
        if level == FeatureLevel.MID:
            return self.mid_level is not None and not self.mid_level.is_empty()
        return self.high_level is not None and len(self.high_level) > 0


@dataclass
class BufferRef:
    """Byte range owned by one vector inside a SharedBufferPool arena"""
    arena_id: int
    offset: int
    length: int


@dataclass
class FeaturePoint:
    """One indexed vector; a photo owns at most one point per level"""
    id: str
    vector: np.ndarray
    level: FeatureLevel = FeatureLevel.LOW
    last_updated: float = field(default_factory=time.time)
    access_count: int = 0
    buffer_ref: Optional[BufferRef] = None

    @property
    def key(self):
        return (self.id, self.level)

    def touch(self):
        self.access_count += 1
        self.last_updated = time.time()


@dataclass
class KDTreeNode:
    point: FeaturePoint
    split_dimension: int
    left: Optional['KDTreeNode'] = None
    right: Optional['KDTreeNode'] = None


@dataclass
class Neighbor:
    point: FeaturePoint
    distance: float


@dataclass
class SearchResult:
    """Neighbor of a photo expressed as a similarity in [0, 1]"""
    photo_id: str
    level: FeatureLevel
    distance: float
    similarity: float


@dataclass
class IndexUpdateResult:
    added: int = 0
    updated: int = 0
    rebuilt: bool = False
    rejected: int = 0
    current_index_size: int = 0
    indexing_time: float = 0.0
    failed_photo_ids: List[str] = field(default_factory=list)
    failures: FailureReport = field(default_factory=lambda: FailureReport("index update"))


@dataclass
class ImageQuality:
    """Composite quality score, every component in 0..100"""
    sharpness: float
    brightness: float
    contrast: float
    resolution: float
    file_size: float
    score: float


@dataclass
class PhotoRecord:
    """
    Input boundary: raw image plus a stable photo identifier.

    `data` may be encoded bytes, a file path, a PIL image or a pixel array.
    """
    id: str
    data: Union[bytes, str, np.ndarray, Image.Image]
    last_modified: float = 0.0
    size: int = 0
    fingerprints: Optional[FingerprintSet] = None


@dataclass
class PhotoAnalysis:
    """Everything the pipeline derives from one photo"""
    photo_id: str
    feature: MultiLevelFeature
    quality: Optional[ImageQuality] = None

    @property
    def fingerprints(self) -> FingerprintSet:
        return self.feature.low_level or {}


@dataclass
class SimilarityGroup:
    id: str
    member_photo_ids: List[str]
    representative_photo_id: str
    average_similarity: float

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'member_photo_ids': list(self.member_photo_ids),
            'representative_photo_id': self.representative_photo_id,
            'average_similarity': round(self.average_similarity, 2),
        }


@dataclass
class CacheEntry:
    key: str
    payload: Any
    timestamp: float = field(default_factory=time.time)
    last_accessed: float = field(default_factory=time.time)
    usage_count: int = 0
    size_bytes: int = 0
