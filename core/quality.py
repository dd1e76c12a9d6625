# core/quality.py

import numpy as np

from core.types import ImageQuality
from utils.image_utils import limit_dimension, to_grayscale

EDGE_THRESHOLD = 30
FULL_HD_PIXELS = 1920 * 1080
MB = 1024 * 1024

# Weights of the composite score
WEIGHTS = {
    'brightness': 0.2,
    'contrast': 0.2,
    'sharpness': 0.3,
    'resolution': 0.2,
    'file_size': 0.1,
}


def brightness_score(gray: np.ndarray) -> float:
    """100 at mid-grey, falling linearly towards black or white"""
    mean = float(gray.mean())
    return max(0.0, 100.0 - abs(mean - 128.0) / 128.0 * 100.0)


def contrast_score(gray: np.ndarray) -> float:
    return min(100.0, float(gray.std()) / 50.0 * 100.0)


def sharpness_score(gray: np.ndarray) -> float:
    """Share of interior pixels whose |dx| + |dy| exceeds the edge threshold"""
    if gray.shape[0] < 3 or gray.shape[1] < 3:
        return 0.0
    dx = np.abs(gray[1:-1, 2:] - gray[1:-1, :-2])
    dy = np.abs(gray[2:, 1:-1] - gray[:-2, 1:-1])
    edges = np.count_nonzero(dx + dy > EDGE_THRESHOLD)
    return min(100.0, edges / dx.size * 100.0)


def resolution_score(width: int, height: int) -> float:
    """Full HD scores 50, 4 x Full HD and above scores 100"""
    return min(100.0, width * height / FULL_HD_PIXELS * 50.0)


def file_size_score(size_bytes: int) -> float:
    return min(100.0, size_bytes / MB * 25.0)


def analyze_quality(image: np.ndarray, file_size: int = 0,
                    max_dimension: int = 1024) -> ImageQuality:
    """
    Composite quality of an RGB image

    Sharpness, brightness and contrast are measured on a copy downscaled to
    `max_dimension`; resolution uses the original size.
    """
    height, width = image.shape[:2]
    gray = to_grayscale(limit_dimension(image, max_dimension))

    components = {
        'brightness': brightness_score(gray),
        'contrast': contrast_score(gray),
        'sharpness': sharpness_score(gray),
        'resolution': resolution_score(width, height),
        'file_size': file_size_score(file_size),
    }
    score = sum(WEIGHTS[name] * value for name, value in components.items())

    return ImageQuality(
        sharpness=round(components['sharpness'], 2),
        brightness=round(components['brightness'], 2),
        contrast=round(components['contrast'], 2),
        resolution=round(components['resolution'], 2),
        file_size=round(components['file_size'], 2),
        score=float(round(score)),
    )
