# core/lsh.py

from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from core.types import Fingerprint


class LSHIndex:
    """
    Locality-sensitive bucket index over one fingerprint per photo

    The bit string is cut into `bands` contiguous slices and each slice is
    a bucket key. Two fingerprints within `bands - 1` bits of each other
    always share at least one slice, so near duplicates are never missed;
    unrelated photos rarely collide.
    """

    def __init__(self, bands: int = 8):
        if bands < 1:
            raise ValueError("bands must be >= 1")
        self.bands = bands
        self._buckets: Dict[Tuple[int, str], Dict[str, None]] = defaultdict(dict)
        self._keys: Dict[str, List[Tuple[int, str]]] = {}
        self._order: Dict[str, int] = {}
        self._next_order = 0

    def __len__(self):
        return len(self._keys)

    def __contains__(self, photo_id: str) -> bool:
        return photo_id in self._keys

    def _band_keys(self, fingerprint: Fingerprint) -> List[Tuple[int, str]]:
        bits = fingerprint.bits
        bands = min(self.bands, len(bits)) or 1
        width = len(bits) // bands
        keys = []
        for band in range(bands):
            start = band * width
            end = len(bits) if band == bands - 1 else start + width
            keys.append((band, bits[start:end]))
        return keys

    def insert(self, photo_id: str, fingerprint: Fingerprint):
        if photo_id in self._keys:
            self.remove(photo_id)
        keys = self._band_keys(fingerprint)
        for key in keys:
            self._buckets[key][photo_id] = None
        self._keys[photo_id] = keys
        self._order[photo_id] = self._next_order
        self._next_order += 1

    def remove(self, photo_id: str) -> bool:
        keys = self._keys.pop(photo_id, None)
        if keys is None:
            return False
        for key in keys:
            bucket = self._buckets.get(key)
            if bucket is not None:
                bucket.pop(photo_id, None)
                if not bucket:
                    del self._buckets[key]
        self._order.pop(photo_id, None)
        return True

    def query(self, fingerprint: Fingerprint, exclude: Optional[str] = None) -> List[str]:
        """Photo ids sharing at least one band with `fingerprint`, in insertion order"""
        found = set()
        for key in self._band_keys(fingerprint):
            found.update(self._buckets.get(key, ()))
        found.discard(exclude)
        return sorted(found, key=self._order.__getitem__)

    def candidates(self, photo_id: str) -> List[str]:
        keys = self._keys.get(photo_id)
        if keys is None:
            return []
        found = set()
        for key in keys:
            found.update(self._buckets.get(key, ()))
        found.discard(photo_id)
        return sorted(found, key=self._order.__getitem__)

    def clear(self):
        self._buckets.clear()
        self._keys.clear()
        self._order.clear()
        self._next_order = 0

    def bucket_stats(self) -> dict:
        sizes = [len(bucket) for bucket in self._buckets.values()]
        return {
            'photos': len(self._keys),
            'buckets': len(sizes),
            'max_bucket_size': max(sizes, default=0),
            'mean_bucket_size': sum(sizes) / len(sizes) if sizes else 0.0,
        }
