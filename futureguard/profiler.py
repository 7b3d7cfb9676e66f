"""
In-Process Profiler

Observation sink for instrumented components. Two kinds of data are kept:

- Indicators: named suppliers polled on demand (pending count, pool size, ...).
- Calls: named durations recorded by ProfiledCall start/stop pairs
  (await time, run time, future lifetime).

Indicators are pulled rather than pushed, so a component only has to
expose plain getters. Exporting the numbers anywhere is left to the caller.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional
import logging
import os
import statistics
import time

import psutil


logger = logging.getLogger(__name__)

Supplier = Callable[[], float]


def metric_name(name: str, tags: Optional[Mapping[str, str]] = None) -> str:
    """Render a name with tags as name{k=v,...}; tags are sorted."""
    if not tags:
        return name
    rendered = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}{{{rendered}}}"


def _percentile(data: List[float], p: float) -> float:
    if not data:
        return 0.0
    k = (len(data) - 1) * p / 100
    f = int(k)
    c = f + 1 if f + 1 < len(data) else f
    return data[f] + (data[c] - data[f]) * (k - f)


@dataclass
class CallStats:
    """
    Aggregated durations of one named call.

    Attributes:
        name: Call name.
        count: Number of completed calls recorded.
        active: Calls started but not yet stopped.
        mean_sec: Mean duration over the retained window.
        p50_sec: Median duration.
        p99_sec: 99th percentile duration.
        max_sec: Longest retained duration.
    """
    name: str
    count: int
    active: int
    mean_sec: float
    p50_sec: float
    p99_sec: float
    max_sec: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "count": self.count,
            "active": self.active,
            "mean_sec": self.mean_sec,
            "p50_sec": self.p50_sec,
            "p99_sec": self.p99_sec,
            "max_sec": self.max_sec,
        }


class ProfiledCall:
    """
    One timed occurrence of a named call.

    stop() is idempotent; only the first stop records a duration.
    """

    def __init__(self, profiler: "Profiler", name: str):
        self._profiler = profiler
        self.name = name
        self._start: Optional[float] = None
        self._stopped = False
        self._lock = Lock()

    def start(self) -> "ProfiledCall":
        self._start = time.monotonic()
        self._profiler._call_started(self.name)
        return self

    def stop(self) -> Optional[float]:
        """
        Record the elapsed time since start().

        Returns:
            Elapsed seconds, or None if not started or already stopped.
        """
        with self._lock:
            if self._start is None or self._stopped:
                return None
            self._stopped = True
        elapsed = time.monotonic() - self._start
        self._profiler._call_stopped(self.name, elapsed)
        return elapsed

    def __enter__(self) -> "ProfiledCall":
        return self.start()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        self.stop()
        return False


class _CallWindow:
    __slots__ = ("durations", "count", "active")

    def __init__(self, max_history: int):
        self.durations: Deque[float] = deque(maxlen=max_history)
        self.count = 0
        self.active = 0


class Profiler:
    """
    Thread-safe registry of indicators and call durations.

    Example:
        profiler = Profiler()
        profiler.attach_indicator("queue", lambda: len(queue))
        with profiler.profiled_call("fetch"):
            fetch()
        profiler.indicators()          # {"queue": 3}
        profiler.get_call_stats("fetch")
    """

    def __init__(self, max_history: int = 10000):
        """
        Initialize the profiler.

        Args:
            max_history: Durations retained per call name for percentiles.
        """
        self.max_history = max_history
        self._lock = Lock()
        self._indicators: Dict[str, Supplier] = {}
        self._calls: Dict[str, _CallWindow] = {}
        self._process: Optional[psutil.Process] = None

    def attach_indicator(self, name: str, supplier: Supplier) -> None:
        """Register supplier under name, replacing any previous one."""
        with self._lock:
            self._indicators[name] = supplier

    def detach_indicator(self, name: str) -> bool:
        with self._lock:
            return self._indicators.pop(name, None) is not None

    def indicator_names(self) -> List[str]:
        with self._lock:
            return sorted(self._indicators)

    def indicators(self) -> Dict[str, float]:
        """
        Poll every indicator.

        A supplier that raises is logged and left out of the result.
        """
        with self._lock:
            suppliers = list(self._indicators.items())

        values: Dict[str, float] = {}
        for name, supplier in suppliers:
            try:
                values[name] = supplier()
            except Exception:
                logger.error(f"Indicator {name} failed", exc_info=True)
        return values

    def attach_process_indicators(self, prefix: str = "process") -> None:
        """Attach cpu_percent, rss_bytes and threads of this process."""
        if self._process is None:
            self._process = psutil.Process(os.getpid())
        process = self._process
        self.attach_indicator(f"{prefix}.cpu_percent", lambda: process.cpu_percent(interval=None))
        self.attach_indicator(f"{prefix}.rss_bytes", lambda: process.memory_info().rss)
        self.attach_indicator(f"{prefix}.threads", process.num_threads)

    def profiled_call(self, name: str) -> ProfiledCall:
        """Create an unstarted call; use start()/stop() or a with block."""
        return ProfiledCall(self, name)

    def profile_future(self, name: str, future: Any) -> ProfiledCall:
        """Time future from now until it completes."""
        call = self.profiled_call(name).start()
        future.add_done_callback(lambda _f: call.stop())
        return call

    def _window(self, name: str) -> _CallWindow:
        window = self._calls.get(name)
        if window is None:
            window = _CallWindow(self.max_history)
            self._calls[name] = window
        return window

    def _call_started(self, name: str) -> None:
        with self._lock:
            self._window(name).active += 1

    def _call_stopped(self, name: str, elapsed: float) -> None:
        with self._lock:
            window = self._window(name)
            window.active -= 1
            window.count += 1
            window.durations.append(elapsed)

    def call_names(self) -> List[str]:
        with self._lock:
            return sorted(self._calls)

    def get_call_stats(self, name: str) -> CallStats:
        """
        Aggregate recorded durations of name.

        Returns:
            CallStats; all zeros if nothing was recorded.
        """
        with self._lock:
            window = self._calls.get(name)
            if window is None:
                return CallStats(name, 0, 0, 0.0, 0.0, 0.0, 0.0)
            durations = sorted(window.durations)
            count = window.count
            active = window.active

        if not durations:
            return CallStats(name, count, active, 0.0, 0.0, 0.0, 0.0)

        return CallStats(
            name=name,
            count=count,
            active=active,
            mean_sec=statistics.mean(durations),
            p50_sec=_percentile(durations, 50),
            p99_sec=_percentile(durations, 99),
            max_sec=durations[-1],
        )

    def reset(self) -> None:
        """Clear recorded calls. Indicators stay attached."""
        with self._lock:
            self._calls.clear()
