"""
Thread Pool Guard

Periodically evaluates a predicate and, while it holds, reports the guarded
pool's queue size together with a dump of every thread in the process.
Useful for spotting pools that stall because their workers are stuck.
"""

from __future__ import annotations

from threading import Event, Thread
from typing import Any, Callable, Optional, Union
import logging
import os
import sys
import threading
import traceback

import psutil

from futureguard.properties import DynamicProperty, as_property


logger = logging.getLogger(__name__)


def build_thread_dump() -> str:
    """
    Render process statistics and the stack of every live thread.

    Returns:
        Multi-line text, one block per thread.
    """
    process = psutil.Process(os.getpid())
    with process.oneshot():
        header = (
            f"pid={process.pid} threads={process.num_threads()} "
            f"rss={process.memory_info().rss} cpu_percent={process.cpu_percent(interval=None)}"
        )

    frames = sys._current_frames()
    lines = [header]
    for thread in threading.enumerate():
        state = "daemon" if thread.daemon else "user"
        lines.append(f'"{thread.name}" {state} ident={thread.ident}')
        frame = frames.get(thread.ident)
        if frame is not None:
            for entry in traceback.format_stack(frame):
                lines.append("    " + entry.rstrip().replace("\n", "\n    "))
        lines.append("")
    return "\n".join(lines)


def _queue_size(executor: Any) -> int:
    get_queue_size = getattr(executor, "get_queue_size", None)
    if callable(get_queue_size):
        return get_queue_size()
    return executor._work_queue.qsize()


class ThreadPoolGuard:
    """
    Watchdog for a thread pool.

    Example:
        guard = ThreadPoolGuard(
            pool,
            check_interval_sec=5.0,
            predicate=lambda: pool.get_queue_size() > 1000,
            listener=lambda size, dump: logger.warning(f"queue={size}\\n{dump}"),
        )
        ...
        guard.close()
    """

    def __init__(
        self,
        executor: Any,
        check_interval_sec: Union[float, DynamicProperty[float]],
        predicate: Callable[[], bool],
        listener: Callable[[int, str], None],
        enable_logging: bool = False,
    ):
        """
        Initialize the guard and start its monitor thread.

        Args:
            executor: ProfiledThreadPoolExecutor or concurrent.futures.ThreadPoolExecutor.
            check_interval_sec: Seconds between checks, live-updatable.
            predicate: Returns True when the pool looks unhealthy.
            listener: Called with (queue_size, thread_dump) on every unhealthy check.
            enable_logging: Enable debug logging of checks.

        Raises:
            ValueError: If the check interval is not positive.
        """
        self._check_interval = as_property(check_interval_sec)
        if self._check_interval.get() <= 0:
            raise ValueError("check_interval_sec must be positive")

        self.executor = executor
        self._predicate = predicate
        self._listener = listener
        self._enable_logging = enable_logging

        self._stop_event = Event()
        self._monitor_thread: Optional[Thread] = None
        self._start_monitor()

    def _start_monitor(self) -> None:
        """Start the background monitoring thread."""
        self._monitor_thread = Thread(
            target=self._monitor_loop,
            daemon=True,
            name="FutureGuard-PoolGuard",
        )
        self._monitor_thread.start()

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(self._check_interval.get()):
            try:
                self.check()
            except Exception:
                logger.error("Error in thread pool guard", exc_info=True)

    def check(self) -> bool:
        """
        Run one check now.

        Returns:
            True if the predicate held and the listener was called.
        """
        if not self._predicate():
            return False

        queue_size = _queue_size(self.executor)
        if self._enable_logging:
            logger.debug(f"Pool guard triggered, queue={queue_size}")
        self._listener(queue_size, build_thread_dump())
        return True

    def close(self) -> None:
        """Stop the monitor thread."""
        self._stop_event.set()
        if self._monitor_thread and self._monitor_thread.is_alive():
            self._monitor_thread.join(timeout=2.0)

    def __enter__(self) -> "ThreadPoolGuard":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        self.close()
        return False
