# core/compression.py

import numpy as np

MIN_TARGET_LENGTH = 16


def target_length(length: int, ratio: float) -> int:
    return max(MIN_TARGET_LENGTH, int(round(length * ratio)))


def compress(vector, ratio: float) -> np.ndarray:
    """
    Reduce a vector to max(16, round(len * ratio)) components

    The input is returned unchanged when the target is not shorter.
    """
    if not 0.0 <= ratio <= 1.0:
        raise ValueError(f"Compression ratio must be in [0, 1], got {ratio}")

    values = np.asarray(vector, dtype=np.float64)
    target = target_length(len(values), ratio)
    if target >= len(values):
        return values
    return adaptive_sample(values, target)


def adaptive_sample(values: np.ndarray, target: int) -> np.ndarray:
    """
    Gradient-guided downsampling

    Keeps the indices with the sharpest point-to-point changes plus both
    endpoints, drops indices that crowd each other, then pads with evenly
    spaced indices until exactly `target` remain.
    """
    n = len(values)
    if target >= n:
        return values.copy()

    gradients = np.abs(np.diff(values))
    # Stable sort so equal gradients keep index order
    ranked = np.argsort(-gradients, kind='stable')[:max(target - 2, 0)]

    candidates = sorted(set(ranked.tolist()) | {0, n - 1})

    min_distance = max(1, n // target // 2)
    selected = []
    for idx in candidates:
        if not selected or idx - selected[-1] >= min_distance:
            selected.append(idx)
    if selected[-1] != n - 1 and len(selected) < target:
        selected.append(n - 1)

    chosen = set(selected[:target])
    if len(chosen) < target:
        step = n / target
        for i in range(target):
            idx = min(n - 1, int(i * step))
            if idx not in chosen:
                chosen.add(idx)
                if len(chosen) == target:
                    break
        # Sweep whatever the even grid could not fill
        idx = 0
        while len(chosen) < target:
            if idx not in chosen:
                chosen.add(idx)
            idx += 1

    indices = np.array(sorted(chosen)[:target], dtype=np.int64)
    return values[indices]


class VectorCompressor:
    """Applies one fixed compression ratio to every vector of an index"""

    def __init__(self, ratio: float = 0.8):
        if not 0.0 <= ratio <= 1.0:
            raise ValueError(f"Compression ratio must be in [0, 1], got {ratio}")
        self.ratio = ratio

    def compress(self, vector) -> np.ndarray:
        return compress(vector, self.ratio)

    def output_length(self, length: int) -> int:
        return min(length, target_length(length, self.ratio))
