# tests/test_memory_monitor.py

import time

import pytest

from core.errors import MemoryPressureError
from utils.performance_monitor import MemoryLevel, MemoryMonitor, get_system_info


def _scripted(readings):
    """Usage provider returning the readings in order, repeating the last one"""
    values = list(readings)

    def provider():
        if len(values) > 1:
            return values.pop(0)
        return values[0]
    return provider


def test_classify_levels():
    monitor = MemoryMonitor(high_mb=100, critical_mb=200)
    assert monitor.classify(50) == MemoryLevel.NORMAL
    assert monitor.classify(100) == MemoryLevel.HIGH
    assert monitor.classify(250) == MemoryLevel.CRITICAL


def test_thresholds_must_be_ordered():
    with pytest.raises(ValueError):
        MemoryMonitor(high_mb=300, critical_mb=100)


def test_listeners_fire_on_level_change_only():
    monitor = MemoryMonitor(high_mb=100, critical_mb=200,
                            usage_provider=_scripted([50, 150, 160, 50]))
    events = []
    monitor.add_listener(lambda level, usage: events.append((level, usage)))
    for _ in range(4):
        monitor.sample()
    assert events == [(MemoryLevel.HIGH, 150), (MemoryLevel.NORMAL, 50)]


def test_failing_listener_does_not_stop_others():
    monitor = MemoryMonitor(high_mb=100, critical_mb=200, usage_provider=lambda: 150)
    seen = []

    def broken(level, usage):
        raise RuntimeError("listener bug")

    monitor.add_listener(broken)
    monitor.add_listener(lambda level, usage: seen.append(level))
    monitor.sample()
    assert seen == [MemoryLevel.HIGH]


def test_critical_closes_gate_until_recovery():
    monitor = MemoryMonitor(high_mb=100, critical_mb=200, cooldown=0,
                            usage_provider=_scripted([250, 50]))
    monitor.sample()
    assert monitor.is_paused
    assert monitor.wait_until_ready(timeout=1)
    assert not monitor.is_paused
    assert monitor.level == MemoryLevel.NORMAL


def test_wait_times_out_under_sustained_pressure():
    monitor = MemoryMonitor(high_mb=100, critical_mb=200, interval=0.01,
                            usage_provider=lambda: 250)
    monitor.sample()
    with pytest.raises(MemoryPressureError):
        monitor.wait_until_ready(timeout=0.05)


def test_cooldown_delays_reopening():
    monitor = MemoryMonitor(high_mb=100, critical_mb=200, cooldown=60,
                            usage_provider=_scripted([250, 50]))
    monitor.sample()
    monitor.sample()
    assert monitor.is_paused


def test_background_thread_lifecycle():
    monitor = MemoryMonitor(interval=0.01, usage_provider=lambda: 10)
    monitor.start()
    assert monitor.running
    time.sleep(0.05)
    monitor.stop()
    assert not monitor.running
    assert monitor.last_usage_mb == 10


def test_system_info_keys():
    info = get_system_info()
    assert info['memory_total_gb'] > 0
    assert 0 <= info['memory_percent'] <= 100
