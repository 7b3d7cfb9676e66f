"""
Reference Cleaner

Runs a cleanup action once an object becomes unreachable, without the
object carrying the cleanup logic itself.

Each registration holds a weakref.ref to the referent. When the garbage
collector clears the referent, the weakref callback drops the Watch onto a
SimpleQueue, which is safe to feed from weakref callbacks running on any
thread. A single daemon worker drains the queue and runs cleanup actions.

The worker is created on demand and exits once no watches remain active
and nothing is queued. The worker slot is only read and written under the
cleaner lock, so a register() racing with worker shutdown either lands
before the exit decision (and the same worker keeps running) or finds the
slot empty and starts a fresh worker.
"""

from __future__ import annotations

from queue import SimpleQueue
from threading import Lock, Thread, current_thread
from typing import Any, Callable, Dict, Generic, Optional, Set, TypeVar
import itertools
import logging
import weakref

from futureguard.exceptions import CleanupActionFailed


logger = logging.getLogger(__name__)

T = TypeVar('T')
M = TypeVar('M')

# Queued by cancel() to wake a worker blocked on an emptied watch set.
_WAKE = object()


class Watch(Generic[M]):
    """
    Registration of a cleanup action for one referent.

    Holds the referent weakly. The only public operation is cancel().
    """

    __slots__ = ("_cleaner", "_ref", "_metadata", "_action", "_id", "__weakref__")

    def __init__(
        self,
        cleaner: "ReferenceCleaner",
        referent: Any,
        metadata: M,
        action: Callable[[M], None],
        watch_id: int,
    ):
        self._cleaner = cleaner
        self._metadata = metadata
        self._action = action
        self._id = watch_id
        # Raises TypeError if the referent does not support weak references.
        self._ref = weakref.ref(referent, self._on_referent_dead)

    def _on_referent_dead(self, _ref: weakref.ref) -> None:
        self._cleaner._queue.put(self)

    def cancel(self) -> bool:
        """
        Withdraw the cleanup order.

        Returns:
            True if the watch was active and is now cancelled; False if the
            action already ran or the watch was already cancelled.
        """
        return self._cleaner._cancel(self)

    def __repr__(self) -> str:
        return f"Watch(id={self._id}, metadata={self._metadata!r})"


class ReferenceCleaner:
    """
    Shared service that runs cleanup actions for unreachable objects.

    Construct one instance and pass it to every component that registers
    watches.

    Example:
        cleaner = ReferenceCleaner()
        watch = cleaner.register(session, session.id, close_session_by_id)
        ...
        watch.cancel()  # closed explicitly, no cleanup needed
    """

    def __init__(self, name: str = "FutureGuard-ReferenceCleaner", enable_logging: bool = False):
        """
        Initialize the cleaner. No thread is started until the first register().

        Args:
            name: Name given to worker threads.
            enable_logging: Enable debug logging of worker lifecycle.
        """
        self.name = name
        self._enable_logging = enable_logging

        self._queue: SimpleQueue = SimpleQueue()
        self._lock = Lock()
        self._watches: Set[Watch] = set()
        self._worker: Optional[Thread] = None
        self._ids = itertools.count(1)

        self._fired_total = 0
        self._failed_total = 0
        self._workers_started = 0

    def register(self, referent: T, metadata: M, cleaning_action: Callable[[M], None]) -> Watch[M]:
        """
        Run cleaning_action(metadata) once referent becomes unreachable.

        The cleaning action must not reference the referent, or the referent
        will never become unreachable.

        Args:
            referent: Object whose reachability is tracked.
            metadata: Passed to the cleaning action.
            cleaning_action: Called on the worker thread with metadata.

        Returns:
            Watch handle that can cancel the order.

        Raises:
            TypeError: If referent cannot be weakly referenced.
        """
        watch = Watch(self, referent, metadata, cleaning_action, next(self._ids))

        with self._lock:
            self._watches.add(watch)
            if self._worker is None:
                worker = Thread(target=self._worker_loop, daemon=True, name=self.name)
                self._worker = worker
                self._workers_started += 1
                worker.start()
                if self._enable_logging:
                    logger.debug(f"Started cleaner worker {worker.name}")

        return watch

    def _cancel(self, watch: Watch) -> bool:
        with self._lock:
            if watch not in self._watches:
                return False
            self._watches.remove(watch)
            # Freeing the weakref detaches its callback, so the referent's
            # death can no longer queue this watch.
            watch._ref = None
            wake = not self._watches and self._worker is not None

        if wake:
            # Worker may be blocked in get(); let it notice the empty set.
            self._queue.put(_WAKE)
        return True

    def _worker_loop(self) -> None:
        """
        Drain dead watches until nothing is left to watch.

        Cleanup failures are logged and the loop continues.
        """
        current = current_thread()
        try:
            while True:
                with self._lock:
                    # register() takes this lock too, so no watch can slip
                    # in between this check and clearing the slot.
                    if not self._watches and self._queue.empty():
                        if self._worker is current:
                            self._worker = None
                        break

                item = self._queue.get()
                if item is _WAKE:
                    continue

                self._process(item)
        finally:
            with self._lock:
                if self._worker is current:
                    self._worker = None
            if self._enable_logging:
                logger.debug(f"Cleaner worker {current.name} exited")

    def _process(self, watch: Watch) -> None:
        with self._lock:
            if watch not in self._watches:
                # Cancelled after its referent died.
                return
            self._watches.remove(watch)
            self._fired_total += 1

        try:
            watch._action(watch._metadata)
        except Exception as e:
            with self._lock:
                self._failed_total += 1
            logger.error(str(CleanupActionFailed(watch._metadata, e)), exc_info=True)

    def is_worker_alive(self) -> bool:
        with self._lock:
            worker = self._worker
        return worker is not None and worker.is_alive()

    def watch_count(self) -> int:
        with self._lock:
            return len(self._watches)

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_watches": len(self._watches),
                "queued": self._queue.qsize(),
                "fired_total": self._fired_total,
                "failed_total": self._failed_total,
                "workers_started": self._workers_started,
                "worker_alive": self._worker is not None,
            }

    def __repr__(self) -> str:
        return f"ReferenceCleaner(name={self.name!r}, watches={self.watch_count()})"
