"""
Live-Updatable Properties

A DynamicProperty holds a value that may be replaced at runtime. Components
read the current value at every decision point instead of caching it at
construction, so reconfiguration takes effect without a restart.

Listeners receive (old_value, new_value) and run on the thread that calls
set(). A listener that raises is logged and skipped.
"""

from __future__ import annotations

from threading import Lock
from typing import Any, Callable, Generic, List, Optional, TypeVar, Union
import logging
import weakref


logger = logging.getLogger(__name__)

T = TypeVar('T')

Listener = Callable[[Optional[T], T], None]


class PropertySubscription(Generic[T]):
    """Handle returned by DynamicProperty.subscribe; close() detaches it."""

    def __init__(self, prop: "DynamicProperty[T]", listener: Listener):
        self._property = prop
        self._listener = listener
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._property._remove(self)

    def __enter__(self) -> "PropertySubscription[T]":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        self.close()
        return False


class DynamicProperty(Generic[T]):
    """
    Thread-safe holder for a value that may change at runtime.

    Example:
        threshold = DynamicProperty(100)
        limiter = PendingFutureLimiter(threshold, max_future_execute_timeout=30.0)
        threshold.set(200)  # takes effect on the next admission decision
    """

    def __init__(self, value: T):
        self._value = value
        self._lock = Lock()
        self._subscriptions: List[PropertySubscription[T]] = []

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        """Replace the value and notify every active subscription."""
        with self._lock:
            old = self._value
            self._value = value
            subscriptions = list(self._subscriptions)

        for subscription in subscriptions:
            self._notify(subscription, old, value)

    def subscribe(self, listener: Listener) -> PropertySubscription[T]:
        """Call listener(old, new) on every future change."""
        subscription = PropertySubscription(self, listener)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def subscribe_and_call(self, listener: Listener) -> PropertySubscription[T]:
        """Subscribe and immediately call listener(None, current_value)."""
        subscription = self.subscribe(listener)
        self._notify(subscription, None, self._value)
        return subscription

    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _remove(self, subscription: PropertySubscription[T]) -> None:
        with self._lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

    @staticmethod
    def _notify(subscription: PropertySubscription[T], old: Optional[T], new: T) -> None:
        if subscription.closed:
            return
        try:
            subscription._listener(old, new)
        except Exception:
            logger.error(
                f"Property listener failed on change {old!r} -> {new!r}",
                exc_info=True,
            )

    def __repr__(self) -> str:
        return f"DynamicProperty({self._value!r})"


def weak_listener(method: Callable[[Optional[T], T], None]) -> Listener:
    """
    Wrap a bound method so the subscription does not keep its owner alive.

    Once the owner is collected the listener does nothing.
    """
    ref = weakref.WeakMethod(method)

    def listener(old: Optional[T], new: T) -> None:
        target = ref()
        if target is not None:
            target(old, new)

    return listener


def as_property(value: Union[T, DynamicProperty[T]]) -> DynamicProperty[T]:
    """Wrap a plain value in a DynamicProperty; pass properties through."""
    if isinstance(value, DynamicProperty):
        return value
    return DynamicProperty(value)
