"""
Image utility functions
"""

import io
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from core.errors import DecodeError

# Guard against decompression bombs on huge scans
Image.MAX_IMAGE_PIXELS = 100_000_000


def load_image(data, photo_id: Optional[str] = None) -> np.ndarray:
    """
    Decode any supported image input into an RGB uint8 array

    Args:
        data: encoded bytes, a file path, a PIL image or a pixel array
        photo_id: used in the error message only

    Returns:
        Array of shape (height, width, 3)

    Raises:
        DecodeError: if the input cannot be decoded
    """
    try:
        if isinstance(data, np.ndarray):
            return _normalize_array(data)
        if isinstance(data, Image.Image):
            return np.asarray(data.convert('RGB'))
        if isinstance(data, (bytes, bytearray, memoryview)):
            with Image.open(io.BytesIO(bytes(data))) as img:
                return np.asarray(img.convert('RGB'))
        if isinstance(data, (str, Path)):
            with Image.open(data) as img:
                return np.asarray(img.convert('RGB'))
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Cannot decode image: {e}", photo_id) from e

    raise DecodeError(f"Unsupported image input: {type(data).__name__}", photo_id)


def _normalize_array(pixels: np.ndarray) -> np.ndarray:
    if pixels.size == 0:
        raise ValueError("empty pixel array")
    if pixels.dtype != np.uint8:
        pixels = np.clip(pixels, 0, 255).astype(np.uint8)
    if pixels.ndim == 2:
        return np.stack([pixels] * 3, axis=-1)
    if pixels.ndim == 3 and pixels.shape[2] == 4:
        return np.ascontiguousarray(pixels[:, :, :3])
    if pixels.ndim == 3 and pixels.shape[2] == 3:
        return np.ascontiguousarray(pixels)
    raise ValueError(f"unexpected pixel array shape {pixels.shape}")


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """ITU-R 601 luminance as float64"""
    if image.ndim == 2:
        return image.astype(np.float64)
    rgb = image[:, :, :3].astype(np.float64)
    return rgb[:, :, 0] * 0.299 + rgb[:, :, 1] * 0.587 + rgb[:, :, 2] * 0.114


def resize_maintain_aspect(image: np.ndarray,
                           target_size: Tuple[int, int]) -> np.ndarray:
    """Resize image maintaining aspect ratio"""
    h, w = image.shape[:2]
    target_w, target_h = target_size

    scale = min(target_w / w, target_h / h)
    new_w = max(1, int(w * scale))
    new_h = max(1, int(h * scale))

    return cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)


def limit_dimension(image: np.ndarray, max_dimension: int) -> np.ndarray:
    """Downscale so the longest side is at most max_dimension"""
    h, w = image.shape[:2]
    if max(h, w) <= max_dimension:
        return image
    return resize_maintain_aspect(image, (max_dimension, max_dimension))
