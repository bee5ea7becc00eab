"""
Profiling utilities for txengine benchmark workloads.

Measures a block of code:
- Wall-clock time (perf_counter)
- CPU usage of the process (psutil)
- Peak RSS via a background sampling thread (psutil)

Usage:
    from txengine.utils.profiler import profile_block

    with profile_block("point_select") as stats:
        run_workload()

    print(stats.duration_seconds, stats.peak_rss_bytes)
"""

from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    """
    Container for profiling measurements.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    peak_rss_bytes: Optional[int] = field(default=None)
    cpu_percent: Optional[float] = field(default=None)
    extra: dict[str, Any] = field(default_factory=dict)


class _RssSampler(threading.Thread):
    """Samples the process RSS until stopped, keeping the maximum."""

    def __init__(self, process: psutil.Process, interval: float) -> None:
        super().__init__(name="txengine-rss-sampler", daemon=True)
        self._process = process
        self._interval = interval
        self._stop_event = threading.Event()
        self.peak = process.memory_info().rss

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.peak = max(self.peak, self._process.memory_info().rss)
            except psutil.Error:
                return

    def stop(self) -> int:
        self._stop_event.set()
        self.join(timeout=1.0)
        return self.peak


@contextlib.contextmanager
def profile_block(label: str, sample_interval_ms: int = 50) -> Generator[ProfileStats, None, None]:
    """
    Context manager to profile a block of code.

    Parameters
    ----------
    label : str
        Human-friendly label for the profiled block.
    sample_interval_ms : int
        Interval in milliseconds for RSS sampling. Lower = more accurate but higher overhead.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    # CPU percent needs a priming call
    process.cpu_percent(interval=None)
    sampler = _RssSampler(process, sample_interval_ms / 1000.0)
    sampler.start()

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts
        stats.peak_rss_bytes = sampler.stop() or None
        stats.cpu_percent = process.cpu_percent(interval=None)


__all__ = ["ProfileStats", "profile_block"]
