"""
Cycle profiling.

`profile_block` records wall-clock time, process CPU percent and peak RSS
(sampled by psutil on a background thread) for one distribution cycle. The
orchestrator stores `ProfileStats.as_dict()` on the cycle record.

Usage:
    from fee_distributor.utils.profiler import profile_block

    with profile_block("cycle-20250101T000000") as stats:
        await run_cycle()

    print(stats.duration_seconds, stats.peak_rss_bytes)
"""

from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    label: str
    start_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    peak_rss_bytes: Optional[int] = field(default=None)
    cpu_percent: Optional[float] = field(default=None)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("start_ts")
        return payload


@contextlib.contextmanager
def profile_block(label: str, sample_interval_ms: int = 500) -> Generator[ProfileStats, None, None]:
    """
    Profile the enclosed block.

    The RSS sampler runs on its own thread, so the block may await freely;
    cycles are network-bound and a coarse interval is enough.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    peak_rss = process.memory_info().rss
    stop_sampling = threading.Event()

    def _sample_memory() -> None:
        nonlocal peak_rss
        while not stop_sampling.wait(timeout=sample_interval_ms / 1000.0):
            try:
                peak_rss = max(peak_rss, process.memory_info().rss)
            except psutil.Error:
                return

    # CPU percent needs a priming call
    process.cpu_percent(interval=None)
    sampler = threading.Thread(target=_sample_memory, name="rss-sampler", daemon=True)
    sampler.start()

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.duration_seconds = time.perf_counter() - stats.start_ts
        stop_sampling.set()
        sampler.join(timeout=1.0)
        stats.peak_rss_bytes = peak_rss if peak_rss > 0 else None
        stats.cpu_percent = process.cpu_percent(interval=None)


__all__ = ["ProfileStats", "profile_block"]
