# core/buffer_pool.py

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np

from core.types import BufferRef

logger = logging.getLogger(__name__)

MB = 1024 * 1024
DEFAULT_INITIAL_SIZE = 32 * MB
MIN_GROWTH_SIZE = 16 * MB
ALIGNMENT = 8


@dataclass
class _Block:
    offset: int
    length: int
    in_use: bool = False


@dataclass
class _Arena:
    buffer: np.ndarray
    blocks: List[_Block] = field(default_factory=list)

    @property
    def size(self) -> int:
        return self.buffer.nbytes

    def is_free(self) -> bool:
        return all(not block.in_use for block in self.blocks)


class SharedBufferPool:
    """
    Arena allocator for feature vectors

    Each arena is one numpy byte buffer split into (offset, length) blocks.
    Allocation is first-fit; freed blocks merge with free neighbours. Memory
    only goes back to the allocator when `cleanup_unused` finds an arena
    entirely free, and the last arena is always kept.
    """

    def __init__(self, initial_size: int = DEFAULT_INITIAL_SIZE,
                 min_growth: int = MIN_GROWTH_SIZE):
        self.min_growth = min_growth
        self._arenas: Dict[int, _Arena] = {}
        self._next_arena_id = 0
        self._lock = threading.Lock()
        self._add_arena(initial_size)

    def _add_arena(self, size: int) -> int:
        arena_id = self._next_arena_id
        self._next_arena_id += 1
        self._arenas[arena_id] = _Arena(
            buffer=np.zeros(size, dtype=np.uint8),
            blocks=[_Block(0, size)],
        )
        logger.debug("Allocated arena %d (%d bytes)", arena_id, size)
        return arena_id

    @staticmethod
    def _aligned(length: int) -> int:
        return (length + ALIGNMENT - 1) // ALIGNMENT * ALIGNMENT

    def allocate(self, length: int) -> BufferRef:
        """Reserve `length` bytes, growing the pool when no free block fits"""
        if length <= 0:
            raise ValueError("Allocation length must be positive")
        needed = self._aligned(length)
        with self._lock:
            for arena_id, arena in self._arenas.items():
                ref = self._allocate_in(arena_id, arena, needed)
                if ref is not None:
                    return ref
            arena_id = self._add_arena(max(2 * needed, self.min_growth))
            return self._allocate_in(arena_id, self._arenas[arena_id], needed)

    @staticmethod
    def _allocate_in(arena_id: int, arena: _Arena, needed: int):
        for i, block in enumerate(arena.blocks):
            if block.in_use or block.length < needed:
                continue
            if block.length > needed:
                arena.blocks.insert(i + 1, _Block(block.offset + needed, block.length - needed))
                block.length = needed
            block.in_use = True
            return BufferRef(arena_id, block.offset, needed)
        return None

    def free(self, ref: BufferRef):
        """Release a block and merge it with adjacent free blocks"""
        with self._lock:
            arena = self._arenas.get(ref.arena_id)
            if arena is None:
                raise KeyError(f"Unknown arena {ref.arena_id}")
            blocks = arena.blocks
            for i, block in enumerate(blocks):
                if block.offset == ref.offset and block.in_use:
                    block.in_use = False
                    if i + 1 < len(blocks) and not blocks[i + 1].in_use:
                        block.length += blocks.pop(i + 1).length
                    if i > 0 and not blocks[i - 1].in_use:
                        blocks[i - 1].length += blocks.pop(i).length
                    return
            raise KeyError(f"No live block at arena {ref.arena_id} offset {ref.offset}")

    def view(self, ref: BufferRef, dtype=np.float64, count: int = -1) -> np.ndarray:
        arena = self._arenas[ref.arena_id]
        raw = arena.buffer[ref.offset:ref.offset + ref.length]
        return raw.view(dtype)[:count] if count >= 0 else raw.view(dtype)

    def store_vector(self, vector) -> BufferRef:
        """Copy a vector into the pool as float64"""
        values = np.asarray(vector, dtype=np.float64)
        ref = self.allocate(max(values.nbytes, ALIGNMENT))
        self.view(ref, np.float64, len(values))[:] = values
        return ref

    def load_vector(self, ref: BufferRef, count: int) -> np.ndarray:
        return self.view(ref, np.float64, count).copy()

    def cleanup_unused(self) -> int:
        """Drop fully free arenas while keeping at least one; returns bytes released"""
        released = 0
        with self._lock:
            for arena_id in list(self._arenas):
                if len(self._arenas) <= 1:
                    break
                arena = self._arenas[arena_id]
                if arena.is_free():
                    released += arena.size
                    del self._arenas[arena_id]
        if released:
            logger.info("Buffer pool released %d bytes", released)
        return released

    def stats(self) -> dict:
        with self._lock:
            total = sum(a.size for a in self._arenas.values())
            used = sum(b.length for a in self._arenas.values() for b in a.blocks if b.in_use)
            free_blocks = sum(1 for a in self._arenas.values() for b in a.blocks if not b.in_use)
            return {
                'arenas': len(self._arenas),
                'total_bytes': total,
                'used_bytes': used,
                'free_blocks': free_blocks,
            }
