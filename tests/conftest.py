# tests/conftest.py

import numpy as np
import pytest

from config import SystemConfig


def block_image(seed: int, blocks: int = 8, block_size: int = 16,
                low: int = 40, high: int = 210) -> np.ndarray:
    """RGB image made of a random grid of dark and bright square blocks"""
    rng = np.random.default_rng(seed)
    grid = rng.choice([low, high], size=(blocks, blocks)).astype(np.uint8)
    gray = np.kron(grid, np.ones((block_size, block_size), dtype=np.uint8))
    return np.stack([gray] * 3, axis=-1)


def add_border(image: np.ndarray, value: int = 255) -> np.ndarray:
    """Same image with a solid 1px border painted over its edge"""
    bordered = image.copy()
    bordered[0, :] = value
    bordered[-1, :] = value
    bordered[:, 0] = value
    bordered[:, -1] = value
    return bordered


def near_duplicate(image: np.ndarray, variant: int) -> np.ndarray:
    """Copy with a tiny 3x3 patch changed at a variant-specific position"""
    copy = image.copy()
    y = 40 + variant % 40
    x = 40 + (variant * 7) % 40
    copy[y:y + 3, x:x + 3] = 128
    return copy


@pytest.fixture
def base_image():
    return block_image(seed=7)


@pytest.fixture
def test_config():
    """Config without background monitoring or on-disk state"""
    config = SystemConfig()
    config.memory.enabled = False
    config.cache.persist = False
    config.batch_size = 16
    config.max_concurrent_tasks = 4
    return config
