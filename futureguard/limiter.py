"""
Pending Future Limiter

Admission controller that caps the number of outstanding asynchronous
operations a producer may have in flight. Each admitted future counts
against the limit until its completion callback fires, or until it outlives
the per-operation timeout, whichever comes first. The slot is released
exactly once in either case.

Blocking admission waits while the pending count has reached the current
threshold:

    admit when pending < threshold   (so pending <= threshold afterwards)

Threshold, capacity and timeout are DynamicProperty values read at every
decision point, so they can be retuned while producers are running.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from threading import Condition, Event, Lock, Thread
from typing import Any, Deque, Dict, List, Optional, Tuple, TypeVar, Union
import heapq
import logging
import time

from futureguard.exceptions import AdmissionInterrupted, LimiterClosed, OperationTimedOut
from futureguard.properties import DynamicProperty, as_property, weak_listener


logger = logging.getLogger(__name__)

F = TypeVar('F')


@dataclass
class LimiterConfig:
    """
    Static tuning for a PendingFutureLimiter.

    Attributes:
        interrupt_poll_sec: Longest a blocked waiter sleeps before rechecking
            its cancel_event. Only used when a cancel_event is supplied.
    """
    interrupt_poll_sec: float = 0.05


class _PendingEntry:
    __slots__ = ("seq", "future", "deadline", "timeout_sec")

    def __init__(self, seq: int, future: Any, deadline: float, timeout_sec: float):
        self.seq = seq
        self.future = future
        self.deadline = deadline
        self.timeout_sec = timeout_sec


class _Waiter:
    __slots__ = ("interrupted",)

    def __init__(self) -> None:
        self.interrupted = False


class PendingFutureLimiter:
    """
    Bounds the number of pending futures.

    Works with any future exposing add_done_callback(), which covers both
    concurrent.futures.Future and asyncio.Future. Never call a blocking
    enqueue from an event loop thread: the loop would be unable to run the
    completions the waiter depends on.

    Example:
        limiter = PendingFutureLimiter(threshold=100, max_future_execute_timeout=30.0)
        for item in items:
            limiter.enqueue(executor.submit(process, item))
        limiter.wait_all()

    Attributes:
        config: Static tuning parameters.
    """

    def __init__(
        self,
        threshold: Union[int, DynamicProperty[int]],
        max_future_execute_timeout: Union[float, DynamicProperty[float]],
        max_pending_count: Optional[Union[int, DynamicProperty[int]]] = None,
        config: Optional[LimiterConfig] = None,
        enable_logging: bool = False,
    ):
        """
        Initialize the limiter.

        Args:
            threshold: Blocking admission waits while pending >= threshold.
            max_future_execute_timeout: Seconds an admitted future may stay
                pending before its slot is forcibly released.
            max_pending_count: Capacity reported to monitoring. Tracks the
                threshold when omitted.
            config: Static tuning. Uses defaults if None.
            enable_logging: Enable debug logging of admissions and releases.

        Raises:
            ValueError: If threshold < 1 or the timeout is not positive.
        """
        self._threshold = as_property(threshold)
        self._timeout = as_property(max_future_execute_timeout)
        self._max_pending_count = (
            as_property(max_pending_count) if max_pending_count is not None else None
        )

        if self._threshold.get() < 1:
            raise ValueError("threshold must be at least 1")
        if self._timeout.get() <= 0:
            raise ValueError("max_future_execute_timeout must be positive")

        self.config = config or LimiterConfig()
        self._enable_logging = enable_logging

        # One lock guards pending, waiters, deadlines and counters.
        self._lock = Lock()
        self._released = Condition(self._lock)
        self._reaper_wakeup = Condition(self._lock)

        self._pending: Dict[int, _PendingEntry] = {}
        self._waiters: Deque[_Waiter] = deque()
        self._deadlines: List[Tuple[float, int]] = []
        self._seq = 0
        self._closed = False

        self._admitted_total = 0
        self._released_total = 0
        self._timed_out_total = 0

        # Started on demand by _admit_locked, cleared by the reaper when idle.
        self._reaper_thread: Optional[Thread] = None
        self._reapers_started = 0

        self._threshold_subscription = self._threshold.subscribe(
            weak_listener(self._on_threshold_changed)
        )

    def enqueue(
        self,
        future: F,
        blocking: bool = True,
        cancel_event: Optional[Event] = None,
        timeout: Optional[float] = None,
    ) -> F:
        """
        Admit a future and track it until it completes.

        Args:
            future: Operation to track. Must provide add_done_callback().
            blocking: Wait for capacity if True; admit immediately otherwise.
            cancel_event: Setting this event aborts a blocked wait.
            timeout: Longest time in seconds to wait for admission.

        Returns:
            The same future, for chaining.

        Raises:
            AdmissionInterrupted: The wait was cancelled, timed out, or
                interrupted via interrupt_waiters(). Nothing was admitted.
            LimiterClosed: The limiter is closed.
        """
        return self._internal_enqueue(future, blocking, cancel_event, timeout)

    def enqueue_blocking(
        self,
        future: F,
        cancel_event: Optional[Event] = None,
        timeout: Optional[float] = None,
    ) -> F:
        return self.enqueue(future, True, cancel_event, timeout)

    def enqueue_unlimited(self, future: F) -> F:
        """Admit without waiting; the threshold is only advisory here."""
        return self.enqueue(future, False)

    def _internal_enqueue(
        self,
        future: F,
        blocking: bool,
        cancel_event: Optional[Event],
        timeout: Optional[float],
    ) -> F:
        """
        Admission path shared by every enqueue variant.

        Subclasses override this to observe admissions. The done callback is
        attached outside the lock because an already-completed future runs
        it synchronously.
        """
        entry = self._acquire(future, blocking, cancel_event, timeout)
        seq = entry.seq
        future.add_done_callback(lambda _f: self._release(seq, timed_out=False))
        return future

    def _acquire(
        self,
        future: Any,
        blocking: bool,
        cancel_event: Optional[Event],
        timeout: Optional[float],
    ) -> _PendingEntry:
        with self._lock:
            if self._closed:
                raise LimiterClosed("Limiter is closed")

            if not blocking:
                return self._admit_locked(future)

            if not self._waiters and len(self._pending) < self._threshold.get():
                return self._admit_locked(future)

            waiter = _Waiter()
            self._waiters.append(waiter)
            wait_deadline = time.monotonic() + timeout if timeout is not None else None

            if self._enable_logging:
                logger.debug(
                    f"Admission blocked: pending={len(self._pending)}, "
                    f"threshold={self._threshold.get()}, waiting={len(self._waiters)}"
                )

            try:
                while True:
                    if self._closed:
                        raise LimiterClosed("Limiter closed while waiting for admission")
                    if waiter.interrupted:
                        raise AdmissionInterrupted(
                            "Admission wait interrupted", pending=len(self._pending)
                        )
                    if cancel_event is not None and cancel_event.is_set():
                        raise AdmissionInterrupted(
                            "Admission wait cancelled", pending=len(self._pending)
                        )

                    if self._waiters[0] is waiter and len(self._pending) < self._threshold.get():
                        self._waiters.popleft()
                        entry = self._admit_locked(future)
                        # Let the next waiter recheck; capacity may remain.
                        self._released.notify_all()
                        return entry

                    wait_sec = None
                    if wait_deadline is not None:
                        wait_sec = wait_deadline - time.monotonic()
                        if wait_sec <= 0:
                            raise AdmissionInterrupted(
                                f"Admission wait timed out after {timeout:.3f}s",
                                pending=len(self._pending),
                            )
                    if cancel_event is not None:
                        poll = self.config.interrupt_poll_sec
                        wait_sec = poll if wait_sec is None else min(wait_sec, poll)

                    self._released.wait(wait_sec)
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                    # Head may have changed.
                    self._released.notify_all()

    def _admit_locked(self, future: Any) -> _PendingEntry:
        self._seq += 1
        timeout_sec = self._timeout.get()
        entry = _PendingEntry(
            seq=self._seq,
            future=future,
            deadline=time.monotonic() + timeout_sec,
            timeout_sec=timeout_sec,
        )
        self._pending[entry.seq] = entry
        self._admitted_total += 1

        heapq.heappush(self._deadlines, (entry.deadline, entry.seq))
        if self._reaper_thread is None:
            reaper = Thread(
                target=self._reaper_loop,
                daemon=True,
                name="FutureGuard-TimeoutReaper",
            )
            self._reaper_thread = reaper
            self._reapers_started += 1
            reaper.start()
        elif self._deadlines[0][1] == entry.seq:
            self._reaper_wakeup.notify()

        if self._enable_logging:
            logger.debug(f"Admitted future #{entry.seq}, pending={len(self._pending)}")
        return entry

    def _release(self, seq: int, timed_out: bool) -> bool:
        """Free the slot held by seq. Returns False if it was already freed."""
        with self._lock:
            entry = self._pending.pop(seq, None)
            if entry is None:
                return False

            if timed_out:
                self._timed_out_total += 1
            else:
                self._released_total += 1

            self._released.notify_all()
            if not self._pending:
                self._reaper_wakeup.notify()

            pending = len(self._pending)

        if self._enable_logging:
            reason = "timeout" if timed_out else "completion"
            logger.debug(f"Released future #{seq} on {reason}, pending={pending}")
        return True

    def _reaper_loop(self) -> None:
        """
        Release futures that outlived their deadline.

        Heap entries of futures that already completed are dropped lazily.
        Exits and clears the reaper slot as soon as nothing is pending; the
        next admission starts a new reaper. Both happen under the lock, so an
        admission never finds a slot held by a reaper that is about to exit.
        """
        while True:
            expired: List[_PendingEntry] = []

            with self._lock:
                while True:
                    if not self._pending:
                        self._deadlines.clear()
                        self._reaper_thread = None
                        return

                    while self._deadlines[0][1] not in self._pending:
                        heapq.heappop(self._deadlines)

                    # Every pending entry has a heap entry, so the heap is not empty here.
                    now = time.monotonic()
                    if self._deadlines[0][0] <= now:
                        break

                    self._reaper_wakeup.wait(self._deadlines[0][0] - now)

                while self._deadlines and self._deadlines[0][0] <= now:
                    _, seq = heapq.heappop(self._deadlines)
                    entry = self._pending.get(seq)
                    if entry is not None:
                        expired.append(entry)

            for entry in expired:
                if self._release(entry.seq, timed_out=True):
                    logger.warning(str(OperationTimedOut(entry.future, entry.timeout_sec)))

    def _on_threshold_changed(self, old: Optional[int], new: int) -> None:
        with self._lock:
            self._released.notify_all()

    def interrupt_waiters(self) -> int:
        """
        Abort every blocked enqueue with AdmissionInterrupted.

        Returns:
            Number of waiters interrupted.
        """
        with self._lock:
            for waiter in self._waiters:
                waiter.interrupted = True
            count = len(self._waiters)
            self._released.notify_all()
        return count

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no futures are pending.

        Args:
            timeout: Maximum time to wait in seconds.

        Returns:
            True if the pending count reached zero, False on timeout.
        """
        with self._lock:
            return self._released.wait_for(lambda: not self._pending, timeout)

    def get_pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def get_threshold(self) -> int:
        return self._threshold.get()

    def get_max_pending_count(self) -> int:
        if self._max_pending_count is None:
            return self._threshold.get()
        return self._max_pending_count.get()

    def get_max_future_execute_timeout(self) -> float:
        return self._timeout.get()

    def get_waiting_count(self) -> int:
        with self._lock:
            return len(self._waiters)

    def is_reaper_alive(self) -> bool:
        with self._lock:
            reaper = self._reaper_thread
        return reaper is not None and reaper.is_alive()

    @property
    def closed(self) -> bool:
        return self._closed

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get a snapshot of limiter state.

        Returns:
            Dictionary with pending, threshold, capacity and lifetime counters.
        """
        with self._lock:
            return {
                "pending": len(self._pending),
                "threshold": self._threshold.get(),
                "max_pending_count": self.get_max_pending_count(),
                "waiting": len(self._waiters),
                "admitted_total": self._admitted_total,
                "released_total": self._released_total,
                "timed_out_total": self._timed_out_total,
                "reapers_started": self._reapers_started,
                "closed": self._closed,
            }

    def close(self) -> None:
        """
        Stop admitting new futures.

        Blocked waiters raise LimiterClosed. Futures already admitted keep
        their slots until they complete or time out.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._released.notify_all()
            pending = len(self._pending)
        self._threshold_subscription.close()

        if self._enable_logging:
            logger.debug(f"Limiter closed with {pending} futures pending")

    def __enter__(self) -> "PendingFutureLimiter":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        self.close()
        return False

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(pending={self.get_pending_count()}, "
            f"threshold={self._threshold.get()})"
        )
