# utils/performance_monitor.py

import logging
import threading
import time
from enum import Enum
from typing import Callable, List, Optional

import psutil

from core.errors import MemoryPressureError

logger = logging.getLogger(__name__)


class MemoryLevel(str, Enum):
    """Memory pressure level derived from process RSS"""
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


MemoryListener = Callable[[MemoryLevel, float], None]


class MemoryMonitor:
    """
    Samples process memory and applies backpressure

    Crossing `high_mb` notifies listeners (cache eviction, index GC).
    Crossing `critical_mb` also closes the submission gate; the gate reopens
    once usage has stayed below critical for `cooldown` seconds.
    """

    def __init__(self,
                 high_mb: float = 300.0,
                 critical_mb: float = 500.0,
                 interval: float = 10.0,
                 cooldown: float = 1.0,
                 usage_provider: Optional[Callable[[], float]] = None):
        if critical_mb < high_mb:
            raise ValueError("critical_mb must be >= high_mb")
        self.high_mb = high_mb
        self.critical_mb = critical_mb
        self.interval = interval
        self.cooldown = cooldown
        self._usage_provider = usage_provider or self._process_rss_mb
        self._listeners: List[MemoryListener] = []
        self._gate = threading.Event()
        self._gate.set()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._recovered_at: Optional[float] = None
        self.level = MemoryLevel.NORMAL
        self.last_usage_mb = 0.0

    @staticmethod
    def _process_rss_mb() -> float:
        return psutil.Process().memory_info().rss / (1024 ** 2)

    def add_listener(self, listener: MemoryListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: MemoryListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def classify(self, usage_mb: float) -> MemoryLevel:
        if usage_mb >= self.critical_mb:
            return MemoryLevel.CRITICAL
        if usage_mb >= self.high_mb:
            return MemoryLevel.HIGH
        return MemoryLevel.NORMAL

    @property
    def is_paused(self) -> bool:
        return not self._gate.is_set()

    def sample(self) -> MemoryLevel:
        """Take one reading, update the gate and notify listeners on level change"""
        usage = self._usage_provider()
        level = self.classify(usage)
        with self._lock:
            previous = self.level
            self.level = level
            self.last_usage_mb = usage
            if level == MemoryLevel.CRITICAL:
                self._recovered_at = None
                if self._gate.is_set():
                    logger.warning("Memory critical (%.0f MB), pausing new batches", usage)
                    self._gate.clear()
            elif not self._gate.is_set():
                now = time.monotonic()
                if self._recovered_at is None:
                    self._recovered_at = now
                if now - self._recovered_at >= self.cooldown:
                    logger.info("Memory back to %.0f MB, resuming batches", usage)
                    self._gate.set()
                    self._recovered_at = None

        if level != previous:
            logger.debug("Memory level %s -> %s (%.0f MB)", previous.value, level.value, usage)
            for listener in list(self._listeners):
                try:
                    listener(level, usage)
                except Exception:
                    logger.exception("Memory listener failed")
        return level

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Block until new batches may be submitted

        Raises:
            MemoryPressureError: the gate stayed closed for `timeout` seconds
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._gate.is_set():
            if not self.running:
                self.sample()
                if self._gate.is_set():
                    break
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise MemoryPressureError(
                    f"Memory above {self.critical_mb:.0f} MB for more than {timeout}s"
                )
            step = self.interval if remaining is None else min(self.interval, remaining)
            self._gate.wait(max(step, 0.0))
        return True

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start sampling on a daemon thread"""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._monitor_loop, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join()
            self._thread = None

    def _monitor_loop(self):
        while not self._stop.is_set():
            try:
                self.sample()
            except psutil.Error as e:
                logger.error("Memory monitoring error: %s", e)
                break
            self._stop.wait(self.interval)


def get_system_info() -> dict:
    """Get current system information"""
    memory = psutil.virtual_memory()
    return {
        'cpu_count': psutil.cpu_count(logical=False),
        'cpu_count_logical': psutil.cpu_count(logical=True),
        'memory_total_gb': memory.total / (1024 ** 3),
        'memory_available_gb': memory.available / (1024 ** 3),
        'memory_percent': memory.percent,
    }
