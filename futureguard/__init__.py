"""
futureguard: Bounded Futures and Deferred Cleanup for Threaded Python

Two independent primitives for keeping asynchronous workloads bounded and
resources reclaimed promptly:

- PendingFutureLimiter caps how many futures a producer may have pending,
  optionally blocking the producer until completions free capacity. Futures
  that hang past a timeout give their slot back.
- ReferenceCleaner runs a cleanup action once a watched object becomes
  unreachable, using a single on-demand daemon worker.

Instrumented variants report to an in-process Profiler:

- ProfiledPendingFutureLimiter
- ProfiledThreadPoolExecutor (live-resizable through a DynamicProperty)
- ProfiledScheduledThreadPoolExecutor (delayed and periodic tasks)
- ThreadPoolGuard (predicate-driven thread dumps)

Example:
    from futureguard import PendingFutureLimiter

    with PendingFutureLimiter(threshold=32, max_future_execute_timeout=60.0) as limiter:
        for item in items:
            limiter.enqueue(executor.submit(process, item))
        limiter.wait_all()

License: MIT
"""

from __future__ import annotations

from futureguard.cleaner import (
    ReferenceCleaner,
    Watch,
)
from futureguard.exceptions import (
    FutureGuardError,
    AdmissionInterrupted,
    LimiterClosed,
    OperationTimedOut,
    CleanupActionFailed,
)
from futureguard.guard import (
    ThreadPoolGuard,
    build_thread_dump,
)
from futureguard.limiter import (
    PendingFutureLimiter,
    LimiterConfig,
)
from futureguard.profiled import (
    ProfiledPendingFutureLimiter,
    ProfiledThreadPoolExecutor,
    ProfiledScheduledThreadPoolExecutor,
    ScheduledFuture,
)
from futureguard.profiler import (
    Profiler,
    ProfiledCall,
    CallStats,
    metric_name,
)
from futureguard.properties import (
    DynamicProperty,
    PropertySubscription,
    as_property,
)

__version__ = "1.0.0"
__license__ = "MIT"

__all__ = [
    # Admission control
    "PendingFutureLimiter",
    "LimiterConfig",
    # Deferred cleanup
    "ReferenceCleaner",
    "Watch",
    # Errors
    "FutureGuardError",
    "AdmissionInterrupted",
    "LimiterClosed",
    "OperationTimedOut",
    "CleanupActionFailed",
    # Instrumentation
    "Profiler",
    "ProfiledCall",
    "CallStats",
    "metric_name",
    "ProfiledPendingFutureLimiter",
    "ProfiledThreadPoolExecutor",
    "ProfiledScheduledThreadPoolExecutor",
    "ScheduledFuture",
    "ThreadPoolGuard",
    "build_thread_dump",
    # Configuration
    "DynamicProperty",
    "PropertySubscription",
    "as_property",
]
