"""
Profiled Components

Instrumented variants of the limiter and of the standard and scheduled
thread pools. All publish read-only indicators to a Profiler and record call durations; the
admission and scheduling behavior of the wrapped component is unchanged.

Indicator names for a pool called "db.io":

    pool.db_io.queue          tasks waiting for a worker
    pool.db_io.activeThreads  tasks currently running
    pool.db_io.poolSize       worker threads created
    pool.db_io.maxPoolSize    current worker limit

Calls: pool.db_io.await (submit to start) and pool.db_io.run (execution).

The scheduled pool publishes the same indicators; its queue indicator also
counts tasks still waiting for their delay to pass.
"""

from __future__ import annotations

from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from functools import wraps
from threading import Condition, Event, Lock, Thread
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, TypeVar, Union
import heapq
import itertools
import logging
import time

from futureguard.limiter import LimiterConfig, PendingFutureLimiter
from futureguard.profiler import ProfiledCall, Profiler, metric_name
from futureguard.properties import DynamicProperty, as_property


logger = logging.getLogger(__name__)

T = TypeVar('T')
F = TypeVar('F')


class ProfiledPendingFutureLimiter(PendingFutureLimiter):
    """
    PendingFutureLimiter that reports to a Profiler.

    Indicators: <name>.pending, <name>.threshold, <name>.max_capacity.
    Call: <name>.future_lifetime, from admission until the future completes.
    Indicators are detached on close().
    """

    def __init__(
        self,
        threshold: Union[int, DynamicProperty[int]],
        max_future_execute_timeout: Union[float, DynamicProperty[float]],
        profiler: Profiler,
        max_pending_count: Optional[Union[int, DynamicProperty[int]]] = None,
        name: str = "pending_future_limiter",
        tags: Optional[Mapping[str, str]] = None,
        config: Optional[LimiterConfig] = None,
        enable_logging: bool = False,
    ):
        super().__init__(
            threshold,
            max_future_execute_timeout,
            max_pending_count=max_pending_count,
            config=config,
            enable_logging=enable_logging,
        )
        self.profiler = profiler
        self.name = name
        self.tags = dict(tags or {})

        self._pending_indicator = metric_name(f"{name}.pending", self.tags)
        self._threshold_indicator = metric_name(f"{name}.threshold", self.tags)
        self._capacity_indicator = metric_name(f"{name}.max_capacity", self.tags)
        self._lifetime_call = metric_name(f"{name}.future_lifetime", self.tags)

        self._attach_indicators()

    def _attach_indicators(self) -> None:
        self.profiler.attach_indicator(self._pending_indicator, self.get_pending_count)
        self.profiler.attach_indicator(self._threshold_indicator, self.get_threshold)
        self.profiler.attach_indicator(self._capacity_indicator, self.get_max_pending_count)

    def _internal_enqueue(
        self,
        future: F,
        blocking: bool,
        cancel_event: Optional[Event],
        timeout: Optional[float],
    ) -> F:
        admitted = super()._internal_enqueue(future, blocking, cancel_event, timeout)
        self.profiler.profile_future(self._lifetime_call, admitted)
        return admitted

    def close(self) -> None:
        super().close()
        self.profiler.detach_indicator(self._pending_indicator)
        self.profiler.detach_indicator(self._threshold_indicator)
        self.profiler.detach_indicator(self._capacity_indicator)


class ProfiledThreadPoolExecutor:
    """
    Standard ThreadPoolExecutor with profiling and a live-resizable size.

    The worker limit follows the max_pool_size property. Growing takes
    effect immediately. Shrinking stops new workers from being created;
    threads already started stay until the pool shuts down.

    Example:
        size = DynamicProperty(8)
        with ProfiledThreadPoolExecutor("db.io", size, profiler) as pool:
            future = pool.submit(query, sql)
            size.set(16)

    Attributes:
        pool_name: Name used for worker threads and metric names.
        profiler: Sink for indicators and call durations.
    """

    def __init__(
        self,
        pool_name: str,
        max_pool_size: Union[int, DynamicProperty[int]],
        profiler: Profiler,
        enable_logging: bool = False,
    ):
        """
        Initialize the pool.

        Args:
            pool_name: Thread name prefix and metric namespace.
            max_pool_size: Worker limit, live-updatable.
            profiler: Profiler receiving indicators and calls.
            enable_logging: Enable debug logging of resizes.

        Raises:
            ValueError: If max_pool_size < 1.
        """
        self.pool_name = pool_name
        self.profiler = profiler
        self._enable_logging = enable_logging
        self._max_pool_size = as_property(max_pool_size)

        initial = self._max_pool_size.get()
        if initial < 1:
            raise ValueError("max_pool_size must be at least 1")

        self._executor = ThreadPoolExecutor(max_workers=initial, thread_name_prefix=pool_name)

        self._active = 0
        self._active_lock = Lock()

        profiler_pool_name = pool_name.replace('.', '_')
        self.queue_indicator_name = self._metric(profiler_pool_name, "queue")
        self.active_threads_indicator_name = self._metric(profiler_pool_name, "activeThreads")
        self.pool_size_indicator_name = self._metric(profiler_pool_name, "poolSize")
        self.max_pool_size_indicator_name = self._metric(profiler_pool_name, "maxPoolSize")
        self.call_await_name = self._metric(profiler_pool_name, "await")
        self.call_run_name = self._metric(profiler_pool_name, "run")

        self._max_pool_size_subscription = self._max_pool_size.subscribe_and_call(
            lambda old, new: self.set_max_pool_size(new)
        )

        profiler.attach_indicator(self.queue_indicator_name, self.get_queue_size)
        profiler.attach_indicator(self.active_threads_indicator_name, self.get_active_count)
        profiler.attach_indicator(self.pool_size_indicator_name, self.get_pool_size)
        profiler.attach_indicator(self.max_pool_size_indicator_name, self.get_max_pool_size)

    @staticmethod
    def _metric(profiler_pool_name: str, metric: str) -> str:
        return f"pool.{profiler_pool_name}.{metric}"

    def set_max_pool_size(self, max_pool_size: int) -> None:
        """
        Resize the pool at runtime.

        Uses internal ThreadPoolExecutor attributes to adjust the worker limit.

        Raises:
            ValueError: If max_pool_size < 1.
        """
        if max_pool_size < 1:
            raise ValueError("max_pool_size must be at least 1")

        previous = self._executor._max_workers
        self._executor._max_workers = max_pool_size
        self._executor._adjust_thread_count()

        if self._enable_logging and previous != max_pool_size:
            logger.debug(f"Pool {self.pool_name}: max pool size {previous} -> {max_pool_size}")

    def _wrap_task(
        self,
        fn: Callable[..., T],
        await_call: Optional[ProfiledCall] = None,
    ) -> Callable[..., T]:
        """
        Wrap a task to stop its await call, if any, and time its run.

        The run call lives in this closure, so nothing is stored per thread.
        """
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            if await_call is not None:
                await_call.stop()
            with self._active_lock:
                self._active += 1
            run_call = self.profiler.profiled_call(self.call_run_name).start()
            try:
                return fn(*args, **kwargs)
            finally:
                run_call.stop()
                with self._active_lock:
                    self._active -= 1

        return wrapper

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future:
        """
        Submit a task for execution.

        Args:
            fn: The callable to execute.
            *args: Positional arguments for the callable.
            **kwargs: Keyword arguments for the callable.

        Returns:
            A Future representing the pending execution.
        """
        await_call = self.profiler.profiled_call(self.call_await_name).start()
        try:
            return self._executor.submit(self._wrap_task(fn, await_call), *args, **kwargs)
        except RuntimeError:
            # Rejected after shutdown; the task will never start.
            await_call.stop()
            raise

    def map(
        self,
        fn: Callable[..., T],
        *iterables: Any,
        timeout: Optional[float] = None,
    ) -> Iterator[T]:
        """
        Map a function over iterables, executing in parallel.

        Yields:
            Results in order of the input iterables.
        """
        futures = [self.submit(fn, *args) for args in zip(*iterables)]

        for future in futures:
            yield future.result(timeout=timeout)

    def get_queue_size(self) -> int:
        return self._executor._work_queue.qsize()

    def get_active_count(self) -> int:
        with self._active_lock:
            return self._active

    def get_pool_size(self) -> int:
        return len(self._executor._threads)

    def get_max_pool_size(self) -> int:
        return self._executor._max_workers

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get current pool state and call statistics.

        Returns:
            Dictionary with indicator values and await/run latencies.
        """
        await_stats = self.profiler.get_call_stats(self.call_await_name)
        run_stats = self.profiler.get_call_stats(self.call_run_name)
        return {
            "pool_name": self.pool_name,
            "queue": self.get_queue_size(),
            "active_threads": self.get_active_count(),
            "pool_size": self.get_pool_size(),
            "max_pool_size": self.get_max_pool_size(),
            "total_tasks": run_stats.count,
            "p50_await": await_stats.p50_sec,
            "p99_await": await_stats.p99_sec,
            "p50_run": run_stats.p50_sec,
            "p99_run": run_stats.p99_sec,
        }

    def indicator_names(self) -> List[str]:
        return [
            self.queue_indicator_name,
            self.active_threads_indicator_name,
            self.pool_size_indicator_name,
            self.max_pool_size_indicator_name,
        ]

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the pool and detach its indicators.

        Args:
            wait: If True, wait for pending tasks to complete.
        """
        self._max_pool_size_subscription.close()
        self._executor.shutdown(wait=wait)
        for name in self.indicator_names():
            self.profiler.detach_indicator(name)

    def __enter__(self) -> "ProfiledThreadPoolExecutor":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        self.shutdown(wait=True)
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.pool_name})"


class ScheduledFuture(Future):
    """
    Future for a task run by ProfiledScheduledThreadPoolExecutor.

    A one-shot future completes with the task's result. A periodic future
    never completes normally: it ends when cancelled, or with the exception
    of the first run that raises, which stops further runs.

    Cancelling a task that is still waiting for its delay removes it from
    the pool's schedule.
    """

    def __init__(
        self,
        pool: "ProfiledScheduledThreadPoolExecutor",
        fn: Callable[..., Any],
        args: tuple,
        kwargs: Dict[str, Any],
        run_at: float,
        period: Optional[float] = None,
        fixed_rate: bool = True,
    ):
        super().__init__()
        self._pool = pool
        self._fn = fn
        self._args = args
        self._kwargs = kwargs
        self._run_at = run_at
        self._period = period
        self._fixed_rate = fixed_rate

    @property
    def periodic(self) -> bool:
        return self._period is not None

    def get_delay(self) -> float:
        """Seconds until the next run; 0.0 when already due."""
        return max(0.0, self._run_at - time.monotonic())

    def cancel(self) -> bool:
        cancelled = super().cancel()
        if cancelled:
            self._pool._remove_scheduled(self)
        return cancelled

    def _advance(self) -> None:
        if self._fixed_rate:
            # Late runs are not skipped; the next one is due right away.
            self._run_at += self._period
        else:
            self._run_at = time.monotonic() + self._period

    def __repr__(self) -> str:
        kind = "periodic" if self.periodic else "delayed"
        return f"<ScheduledFuture {kind} at {id(self):#x} state={self._state}>"


class ProfiledScheduledThreadPoolExecutor(ProfiledThreadPoolExecutor):
    """
    ProfiledThreadPoolExecutor that can also run tasks after a delay or
    periodically.

    Delayed tasks wait in a deadline heap owned by a daemon scheduler thread,
    which hands each due task to the worker pool. The scheduler is started
    by the first schedule call and exits once nothing is scheduled.

    Indicators and calls use the same names as ProfiledThreadPoolExecutor.
    Scheduled runs record only the run call; there is no await call, since
    the wait is requested by the caller.

    Shutdown cancels every task still waiting for its delay and stops
    periodic tasks from being rescheduled.

    Example:
        with ProfiledScheduledThreadPoolExecutor("cache.refresh", 2, profiler) as pool:
            pool.schedule_at_fixed_rate(refresh_cache, 0.0, 30.0)
            pool.schedule(warm_up, 5.0)
    """

    def __init__(
        self,
        pool_name: str,
        max_pool_size: Union[int, DynamicProperty[int]],
        profiler: Profiler,
        enable_logging: bool = False,
    ):
        self._scheduled: List[tuple] = []
        self._schedule_lock = Lock()
        self._schedule_wakeup = Condition(self._schedule_lock)
        self._sequence = itertools.count()
        self._scheduler: Optional[Thread] = None
        self._shutdown = False

        super().__init__(pool_name, max_pool_size, profiler, enable_logging=enable_logging)

    def schedule(self, fn: Callable[..., T], delay: float, *args: Any, **kwargs: Any) -> ScheduledFuture:
        """
        Run fn(*args, **kwargs) once, after delay seconds.

        A delay of zero or less makes the task due immediately.

        Raises:
            RuntimeError: If the pool has been shut down.
        """
        task = ScheduledFuture(self, fn, args, kwargs, time.monotonic() + max(0.0, delay))
        self._enqueue(task)
        return task

    def schedule_at_fixed_rate(
        self,
        fn: Callable[..., Any],
        initial_delay: float,
        period: float,
        *args: Any,
        **kwargs: Any,
    ) -> ScheduledFuture:
        """
        Run fn periodically, first after initial_delay, then every period
        seconds measured from the previous scheduled start.

        A run that overruns its period delays the next one; runs of the same
        task never overlap.

        Raises:
            ValueError: If period is not positive.
            RuntimeError: If the pool has been shut down.
        """
        return self._schedule_periodic(fn, initial_delay, period, True, args, kwargs)

    def schedule_with_fixed_delay(
        self,
        fn: Callable[..., Any],
        initial_delay: float,
        delay: float,
        *args: Any,
        **kwargs: Any,
    ) -> ScheduledFuture:
        """
        Run fn periodically, first after initial_delay, then delay seconds
        after each run finishes.

        Raises:
            ValueError: If delay is not positive.
            RuntimeError: If the pool has been shut down.
        """
        return self._schedule_periodic(fn, initial_delay, delay, False, args, kwargs)

    def _schedule_periodic(
        self,
        fn: Callable[..., Any],
        initial_delay: float,
        period: float,
        fixed_rate: bool,
        args: tuple,
        kwargs: Dict[str, Any],
    ) -> ScheduledFuture:
        if period <= 0:
            raise ValueError("period must be positive")
        run_at = time.monotonic() + max(0.0, initial_delay)
        task = ScheduledFuture(self, fn, args, kwargs, run_at, period=period, fixed_rate=fixed_rate)
        self._enqueue(task)
        return task

    def _enqueue(self, task: ScheduledFuture) -> None:
        with self._schedule_lock:
            if self._shutdown:
                raise RuntimeError("cannot schedule new futures after shutdown")
            if task.cancelled():
                return
            heapq.heappush(self._scheduled, (task._run_at, next(self._sequence), task))
            if self._scheduler is None:
                scheduler = Thread(
                    target=self._scheduler_loop,
                    daemon=True,
                    name=f"{self.pool_name}-scheduler",
                )
                self._scheduler = scheduler
                scheduler.start()
                if self._enable_logging:
                    logger.debug(f"Pool {self.pool_name}: started scheduler")
            else:
                self._schedule_wakeup.notify()

    def _remove_scheduled(self, task: ScheduledFuture) -> None:
        with self._schedule_lock:
            remaining = [entry for entry in self._scheduled if entry[2] is not task]
            if len(remaining) != len(self._scheduled):
                heapq.heapify(remaining)
                self._scheduled = remaining
                self._schedule_wakeup.notify()

    def _scheduler_loop(self) -> None:
        """Hand due tasks to the workers until nothing is scheduled."""
        while True:
            with self._schedule_lock:
                while True:
                    if self._shutdown or not self._scheduled:
                        self._scheduler = None
                        if self._enable_logging:
                            logger.debug(f"Pool {self.pool_name}: scheduler exited")
                        return
                    delay = self._scheduled[0][0] - time.monotonic()
                    if delay <= 0:
                        break
                    self._schedule_wakeup.wait(delay)
                _, _, task = heapq.heappop(self._scheduled)

            self._dispatch(task)

    def _dispatch(self, task: ScheduledFuture) -> None:
        try:
            self._executor.submit(self._wrap_task(self._run_scheduled), task)
        except RuntimeError:
            # Pool shut down after the task left the schedule.
            task.cancel()

    def _run_scheduled(self, task: ScheduledFuture) -> None:
        if not task.periodic:
            if not task.set_running_or_notify_cancel():
                return
            try:
                result = task._fn(*task._args, **task._kwargs)
            except Exception as exc:
                task.set_exception(exc)
            else:
                task.set_result(result)
            return

        if task.cancelled():
            return
        try:
            task._fn(*task._args, **task._kwargs)
        except Exception as exc:
            try:
                task.set_exception(exc)
            except InvalidStateError:
                # Cancelled while running.
                pass
            if self._enable_logging:
                logger.debug(f"Pool {self.pool_name}: periodic task stopped by {exc!r}")
            return

        task._advance()
        try:
            self._enqueue(task)
        except RuntimeError:
            task.cancel()

    def get_scheduled_count(self) -> int:
        """Tasks waiting for their delay to pass."""
        with self._schedule_lock:
            return len(self._scheduled)

    def get_queue_size(self) -> int:
        return self.get_scheduled_count() + super().get_queue_size()

    def is_scheduler_alive(self) -> bool:
        with self._schedule_lock:
            scheduler = self._scheduler
        return scheduler is not None and scheduler.is_alive()

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics["scheduled"] = self.get_scheduled_count()
        return metrics

    def shutdown(self, wait: bool = True) -> None:
        """
        Cancel delayed tasks, stop the scheduler and shut the pool down.

        Args:
            wait: If True, wait for running tasks to complete.
        """
        with self._schedule_lock:
            self._shutdown = True
            delayed = [entry[2] for entry in self._scheduled]
            self._scheduled = []
            scheduler = self._scheduler
            self._schedule_wakeup.notify()

        for task in delayed:
            task.cancel()
        if wait and scheduler is not None:
            scheduler.join()
        super().shutdown(wait=wait)
