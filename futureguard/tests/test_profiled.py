"""
Unit Tests for Profiling, Properties and Pool Instrumentation

Validates DynamicProperty, Profiler, the profiled limiter and pools, and
ThreadPoolGuard.
"""

import unittest
import time
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Tuple

from futureguard import (
    DynamicProperty,
    as_property,
    Profiler,
    CallStats,
    metric_name,
    ProfiledPendingFutureLimiter,
    ProfiledThreadPoolExecutor,
    ProfiledScheduledThreadPoolExecutor,
    ThreadPoolGuard,
    build_thread_dump,
)


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestDynamicProperty(unittest.TestCase):
    """Tests for DynamicProperty."""

    def test_get_set(self):
        prop = DynamicProperty(1)
        prop.set(5)
        self.assertEqual(prop.get(), 5)

    def test_listener_receives_old_and_new(self):
        prop = DynamicProperty("a")
        changes: List[Tuple] = []
        prop.subscribe(lambda old, new: changes.append((old, new)))

        prop.set("b")
        prop.set("c")

        self.assertEqual(changes, [("a", "b"), ("b", "c")])

    def test_subscribe_and_call(self):
        prop = DynamicProperty(10)
        changes: List[Tuple] = []
        prop.subscribe_and_call(lambda old, new: changes.append((old, new)))

        self.assertEqual(changes, [(None, 10)])

    def test_closed_subscription_stops_notifications(self):
        prop = DynamicProperty(0)
        changes: List[int] = []
        subscription = prop.subscribe(lambda old, new: changes.append(new))

        subscription.close()
        prop.set(1)

        self.assertEqual(changes, [])
        self.assertEqual(prop.subscription_count(), 0)

    def test_failing_listener_is_isolated(self):
        prop = DynamicProperty(0)
        changes: List[int] = []

        def failing(old, new):
            raise RuntimeError("listener failed")

        prop.subscribe(failing)
        prop.subscribe(lambda old, new: changes.append(new))

        with self.assertLogs("futureguard.properties", level="ERROR"):
            prop.set(1)

        self.assertEqual(prop.get(), 1)
        self.assertEqual(changes, [1])

    def test_as_property(self):
        prop = DynamicProperty(3)
        self.assertIs(as_property(prop), prop)
        self.assertEqual(as_property(7).get(), 7)


class TestProfiler(unittest.TestCase):
    """Tests for Profiler indicators and calls."""

    def test_indicators(self):
        profiler = Profiler()
        profiler.attach_indicator("queue", lambda: 3)

        self.assertEqual(profiler.indicators(), {"queue": 3})
        self.assertTrue(profiler.detach_indicator("queue"))
        self.assertFalse(profiler.detach_indicator("queue"))
        self.assertEqual(profiler.indicators(), {})

    def test_failing_indicator_is_skipped(self):
        profiler = Profiler()
        profiler.attach_indicator("ok", lambda: 1)
        profiler.attach_indicator("broken", lambda: 1 / 0)

        with self.assertLogs("futureguard.profiler", level="ERROR"):
            values = profiler.indicators()

        self.assertEqual(values, {"ok": 1})

    def test_profiled_call(self):
        profiler = Profiler()

        with profiler.profiled_call("work"):
            time.sleep(0.02)

        stats = profiler.get_call_stats("work")
        self.assertIsInstance(stats, CallStats)
        self.assertEqual(stats.count, 1)
        self.assertEqual(stats.active, 0)
        self.assertGreaterEqual(stats.max_sec, 0.015)

    def test_stop_is_idempotent(self):
        profiler = Profiler()
        call = profiler.profiled_call("work").start()

        self.assertIsNotNone(call.stop())
        self.assertIsNone(call.stop())
        self.assertEqual(profiler.get_call_stats("work").count, 1)

    def test_active_calls(self):
        profiler = Profiler()
        call = profiler.profiled_call("work").start()

        self.assertEqual(profiler.get_call_stats("work").active, 1)
        call.stop()
        self.assertEqual(profiler.get_call_stats("work").active, 0)

    def test_profile_future(self):
        profiler = Profiler()
        future = Future()
        profiler.profile_future("lifetime", future)

        self.assertEqual(profiler.get_call_stats("lifetime").count, 0)
        future.set_result(None)
        self.assertEqual(profiler.get_call_stats("lifetime").count, 1)

    def test_unknown_call_stats(self):
        stats = Profiler().get_call_stats("missing")
        self.assertEqual(stats.count, 0)
        self.assertEqual(stats.p99_sec, 0.0)

    def test_percentiles(self):
        profiler = Profiler()
        for elapsed in [0.1, 0.2, 0.3, 0.4, 0.5]:
            profiler._call_started("calls")
            profiler._call_stopped("calls", elapsed)

        stats = profiler.get_call_stats("calls")
        self.assertAlmostEqual(stats.p50_sec, 0.3, places=5)
        self.assertAlmostEqual(stats.mean_sec, 0.3, places=5)
        self.assertAlmostEqual(stats.max_sec, 0.5, places=5)
        self.assertEqual(stats.to_dict()["count"], 5)

    def test_metric_name_tags(self):
        self.assertEqual(metric_name("pending"), "pending")
        self.assertEqual(
            metric_name("pending", {"shard": "2", "env": "test"}),
            "pending{env=test,shard=2}",
        )

    def test_process_indicators(self):
        profiler = Profiler()
        profiler.attach_process_indicators()

        values = profiler.indicators()

        self.assertGreaterEqual(values["process.threads"], 1)
        self.assertGreater(values["process.rss_bytes"], 0)
        self.assertIn("process.cpu_percent", values)

    def test_reset(self):
        profiler = Profiler()
        with profiler.profiled_call("work"):
            pass
        profiler.reset()
        self.assertEqual(profiler.call_names(), [])


class TestProfiledPendingFutureLimiter(unittest.TestCase):
    """Tests for the profiled limiter."""

    def test_indicators_attached(self):
        profiler = Profiler()
        limiter = ProfiledPendingFutureLimiter(
            3, 30.0, profiler, max_pending_count=10, name="uploads"
        )
        self.addCleanup(limiter.close)
        limiter.enqueue(Future())

        values = profiler.indicators()

        self.assertEqual(values["uploads.pending"], 1)
        self.assertEqual(values["uploads.threshold"], 3)
        self.assertEqual(values["uploads.max_capacity"], 10)

    def test_tags_in_names(self):
        profiler = Profiler()
        limiter = ProfiledPendingFutureLimiter(
            3, 30.0, profiler, name="uploads", tags={"region": "eu"}
        )
        self.addCleanup(limiter.close)

        self.assertIn("uploads.pending{region=eu}", profiler.indicator_names())

    def test_future_lifetime_recorded(self):
        profiler = Profiler()
        limiter = ProfiledPendingFutureLimiter(3, 30.0, profiler, name="uploads")
        self.addCleanup(limiter.close)

        future = limiter.enqueue(Future())
        self.assertEqual(profiler.get_call_stats("uploads.future_lifetime").active, 1)

        future.set_result(None)

        stats = profiler.get_call_stats("uploads.future_lifetime")
        self.assertEqual(stats.count, 1)
        self.assertEqual(stats.active, 0)
        self.assertEqual(limiter.get_pending_count(), 0)

    def test_close_detaches_indicators(self):
        profiler = Profiler()
        limiter = ProfiledPendingFutureLimiter(3, 30.0, profiler, name="uploads")

        limiter.close()

        self.assertEqual(profiler.indicator_names(), [])


class TestProfiledThreadPoolExecutor(unittest.TestCase):
    """Tests for ProfiledThreadPoolExecutor."""

    def test_basic_execution(self):
        with ProfiledThreadPoolExecutor("test.pool", 2, Profiler()) as pool:
            future = pool.submit(lambda x: x * 2, 21)
            self.assertEqual(future.result(timeout=5.0), 42)

    def test_map_function(self):
        with ProfiledThreadPoolExecutor("test.pool", 2, Profiler()) as pool:
            results = list(pool.map(lambda x: x ** 2, range(5)))
            self.assertEqual(results, [0, 1, 4, 9, 16])

    def test_exception_handling(self):
        with ProfiledThreadPoolExecutor("test.pool", 2, Profiler()) as pool:
            def failing_task():
                raise ValueError("Test exception")

            future = pool.submit(failing_task)

            with self.assertRaises(ValueError):
                future.result(timeout=5.0)

    def test_thread_names(self):
        with ProfiledThreadPoolExecutor("db.io", 2, Profiler()) as pool:
            name = pool.submit(lambda: threading.current_thread().name).result(timeout=5.0)
            self.assertTrue(name.startswith("db.io_"))

    def test_indicator_names(self):
        profiler = Profiler()
        with ProfiledThreadPoolExecutor("db.io", 2, profiler):
            self.assertEqual(
                profiler.indicator_names(),
                [
                    "pool.db_io.activeThreads",
                    "pool.db_io.maxPoolSize",
                    "pool.db_io.poolSize",
                    "pool.db_io.queue",
                ],
            )
        self.assertEqual(profiler.indicator_names(), [])

    def test_queue_and_active_indicators(self):
        profiler = Profiler()
        started = threading.Event()
        release = threading.Event()

        def blocker():
            started.set()
            release.wait(5.0)

        with ProfiledThreadPoolExecutor("busy", 1, profiler) as pool:
            first = pool.submit(blocker)
            self.assertTrue(started.wait(2.0))
            queued = [pool.submit(time.sleep, 0) for _ in range(3)]

            values = profiler.indicators()
            self.assertEqual(values["pool.busy.queue"], 3)
            self.assertEqual(values["pool.busy.activeThreads"], 1)
            self.assertEqual(values["pool.busy.poolSize"], 1)

            release.set()
            first.result(timeout=5.0)
            for f in queued:
                f.result(timeout=5.0)

        metrics = pool.get_metrics()
        self.assertEqual(metrics["total_tasks"], 4)
        self.assertEqual(profiler.get_call_stats("pool.busy.await").count, 4)

    def test_live_resize(self):
        """Changing the property resizes the pool without a restart."""
        size = DynamicProperty(1)
        profiler = Profiler()
        with ProfiledThreadPoolExecutor("resizable", size, profiler) as pool:
            size.set(4)
            self.assertEqual(pool.get_max_pool_size(), 4)

            barrier = threading.Barrier(4, timeout=5.0)
            futures = [pool.submit(barrier.wait) for _ in range(4)]
            for f in futures:
                f.result(timeout=5.0)

            self.assertEqual(profiler.indicators()["pool.resizable.maxPoolSize"], 4)
            self.assertEqual(pool.get_pool_size(), 4)

    def test_invalid_size(self):
        with self.assertRaises(ValueError):
            ProfiledThreadPoolExecutor("bad", 0, Profiler())

    def test_submit_after_shutdown(self):
        profiler = Profiler()
        pool = ProfiledThreadPoolExecutor("closed", 1, profiler)
        pool.shutdown()

        with self.assertRaises(RuntimeError):
            pool.submit(lambda: None)
        self.assertEqual(profiler.get_call_stats("pool.closed.await").active, 0)

    def test_size_subscription_closed_on_shutdown(self):
        size = DynamicProperty(2)
        pool = ProfiledThreadPoolExecutor("sub", size, Profiler())
        self.assertEqual(size.subscription_count(), 1)

        pool.shutdown()

        self.assertEqual(size.subscription_count(), 0)


class TestProfiledScheduledThreadPoolExecutor(unittest.TestCase):
    """Tests for delayed and periodic tasks on the profiled pool."""

    def test_schedule_runs_after_delay(self):
        with ProfiledScheduledThreadPoolExecutor("sched", 2, Profiler()) as pool:
            start = time.monotonic()
            future = pool.schedule(lambda x: x * 2, 0.1, 21)

            self.assertEqual(future.result(timeout=5.0), 42)
            self.assertGreaterEqual(time.monotonic() - start, 0.1)
            self.assertFalse(future.periodic)

    def test_schedule_exception(self):
        with ProfiledScheduledThreadPoolExecutor("sched", 1, Profiler()) as pool:
            def failing_task():
                raise ValueError("Test exception")

            future = pool.schedule(failing_task, 0.0)

            with self.assertRaises(ValueError):
                future.result(timeout=5.0)

    def test_fixed_rate_repeats_until_cancelled(self):
        runs: List[float] = []
        with ProfiledScheduledThreadPoolExecutor("rate", 2, Profiler()) as pool:
            future = pool.schedule_at_fixed_rate(lambda: runs.append(time.monotonic()), 0.0, 0.02)

            self.assertTrue(wait_until(lambda: len(runs) >= 3))
            self.assertTrue(future.cancel())
            self.assertTrue(future.cancelled())

            # A run already in progress may still finish.
            time.sleep(0.1)
            count = len(runs)
            time.sleep(0.1)
            self.assertEqual(len(runs), count)
            self.assertEqual(pool.get_scheduled_count(), 0)

    def test_fixed_delay_repeats(self):
        runs: List[int] = []
        with ProfiledScheduledThreadPoolExecutor("delay", 1, Profiler()) as pool:
            future = pool.schedule_with_fixed_delay(runs.append, 0.0, 0.01, 1)

            self.assertTrue(wait_until(lambda: len(runs) >= 3))
            future.cancel()

    def test_periodic_exception_stops_repeats(self):
        runs: List[int] = []

        def flaky():
            runs.append(1)
            if len(runs) == 2:
                raise RuntimeError("second run failed")

        with ProfiledScheduledThreadPoolExecutor("flaky", 1, Profiler()) as pool:
            future = pool.schedule_at_fixed_rate(flaky, 0.0, 0.01)

            self.assertIsInstance(future.exception(timeout=5.0), RuntimeError)
            time.sleep(0.1)
            self.assertEqual(len(runs), 2)
            self.assertEqual(pool.get_scheduled_count(), 0)

    def test_cancel_before_run(self):
        """A cancelled delayed task never runs and leaves the schedule."""
        calls: List[int] = []
        profiler = Profiler()
        with ProfiledScheduledThreadPoolExecutor("later", 1, profiler) as pool:
            future = pool.schedule(calls.append, 0.1, 1)
            self.assertEqual(pool.get_scheduled_count(), 1)

            self.assertTrue(future.cancel())
            self.assertEqual(pool.get_scheduled_count(), 0)
            self.assertEqual(profiler.indicators()["pool.later.queue"], 0)

            time.sleep(0.2)

        self.assertEqual(calls, [])

    def test_queue_indicator_counts_delayed_tasks(self):
        profiler = Profiler()
        pool = ProfiledScheduledThreadPoolExecutor("db.io", 1, profiler)
        futures = [pool.schedule(lambda: None, 60.0) for _ in range(3)]

        self.assertEqual(
            profiler.indicator_names(),
            [
                "pool.db_io.activeThreads",
                "pool.db_io.maxPoolSize",
                "pool.db_io.poolSize",
                "pool.db_io.queue",
            ],
        )
        self.assertEqual(profiler.indicators()["pool.db_io.queue"], 3)
        self.assertGreater(futures[0].get_delay(), 50.0)
        self.assertEqual(pool.get_metrics()["scheduled"], 3)

        pool.shutdown()

        self.assertTrue(all(f.cancelled() for f in futures))
        self.assertEqual(profiler.indicator_names(), [])
        self.assertFalse(pool.is_scheduler_alive())

    def test_run_call_recorded(self):
        """Scheduled runs record the run call but no await call."""
        profiler = Profiler()
        with ProfiledScheduledThreadPoolExecutor("timed", 2, profiler) as pool:
            futures = [pool.schedule(time.sleep, 0.01, 0) for _ in range(2)]
            for f in futures:
                f.result(timeout=5.0)

            self.assertTrue(wait_until(lambda: profiler.get_call_stats("pool.timed.run").count == 2))
            self.assertEqual(profiler.get_call_stats("pool.timed.await").count, 0)

            pool.submit(lambda: None).result(timeout=5.0)
            self.assertEqual(profiler.get_call_stats("pool.timed.await").count, 1)

    def test_scheduler_exits_when_idle(self):
        with ProfiledScheduledThreadPoolExecutor("idle", 1, Profiler()) as pool:
            self.assertFalse(pool.is_scheduler_alive())

            pool.schedule(lambda: None, 0.0).result(timeout=5.0)
            self.assertTrue(wait_until(lambda: not pool.is_scheduler_alive()))

            self.assertEqual(pool.schedule(lambda: 7, 0.0).result(timeout=5.0), 7)

    def test_schedule_after_shutdown(self):
        pool = ProfiledScheduledThreadPoolExecutor("closed", 1, Profiler())
        pool.shutdown()

        with self.assertRaises(RuntimeError):
            pool.schedule(lambda: None, 0.0)
        with self.assertRaises(RuntimeError):
            pool.schedule_at_fixed_rate(lambda: None, 0.0, 1.0)

    def test_invalid_period(self):
        with ProfiledScheduledThreadPoolExecutor("bad", 1, Profiler()) as pool:
            with self.assertRaises(ValueError):
                pool.schedule_at_fixed_rate(lambda: None, 0.0, 0.0)
            with self.assertRaises(ValueError):
                pool.schedule_with_fixed_delay(lambda: None, 0.0, -1.0)


class TestThreadPoolGuard(unittest.TestCase):
    """Tests for ThreadPoolGuard."""

    def test_build_thread_dump(self):
        dump = build_thread_dump()
        self.assertIn("pid=", dump)
        self.assertIn(threading.current_thread().name, dump)

    def test_check_calls_listener(self):
        reports: List[Tuple[int, str]] = []
        with ThreadPoolExecutor(max_workers=1) as executor:
            guard = ThreadPoolGuard(
                executor, 60.0, lambda: True, lambda size, dump: reports.append((size, dump))
            )
            self.addCleanup(guard.close)

            self.assertTrue(guard.check())

        self.assertEqual(reports[0][0], 0)
        self.assertIn("MainThread", reports[0][1])

    def test_predicate_false(self):
        reports: List[int] = []
        with ProfiledThreadPoolExecutor("guarded", 1, Profiler()) as pool:
            with ThreadPoolGuard(pool, 60.0, lambda: False, lambda size, dump: reports.append(size)) as guard:
                self.assertFalse(guard.check())
        self.assertEqual(reports, [])

    def test_monitor_triggers(self):
        triggered = threading.Event()
        with ProfiledThreadPoolExecutor("guarded", 1, Profiler()) as pool:
            with ThreadPoolGuard(pool, 0.05, lambda: True, lambda size, dump: triggered.set()):
                self.assertTrue(triggered.wait(2.0))

    def test_failing_listener_keeps_monitor_running(self):
        calls: List[int] = []

        def listener(size, dump):
            calls.append(size)
            raise RuntimeError("listener failed")

        with ProfiledThreadPoolExecutor("guarded", 1, Profiler()) as pool:
            with self.assertLogs("futureguard.guard", level="ERROR"):
                with ThreadPoolGuard(pool, 0.05, lambda: True, listener):
                    self.assertTrue(wait_until(lambda: len(calls) >= 2))

    def test_invalid_interval(self):
        with self.assertRaises(ValueError):
            ThreadPoolGuard(None, 0, lambda: True, lambda size, dump: None)


if __name__ == "__main__":
    unittest.main(verbosity=2)
