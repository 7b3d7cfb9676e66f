"""
Error types raised or logged by futureguard components.

Only AdmissionInterrupted and LimiterClosed ever reach a caller. The other
types describe local failures that are logged and absorbed.
"""

from __future__ import annotations

from typing import Any, Optional


class FutureGuardError(Exception):
    """Base class for all futureguard errors."""


class AdmissionInterrupted(FutureGuardError):
    """
    A blocking enqueue was aborted before admission.

    The pending count is unchanged and the operation must be treated as
    not submitted.
    """

    def __init__(self, message: str = "Admission wait interrupted", pending: Optional[int] = None):
        super().__init__(message)
        self.pending = pending


class LimiterClosed(FutureGuardError):
    """The limiter was closed; no new operations are admitted."""


class OperationTimedOut(FutureGuardError):
    """An admitted operation outlived its timeout and its slot was released."""

    def __init__(self, future: Any, timeout_sec: float):
        super().__init__(
            f"Future {future!r} did not complete within {timeout_sec:.3f}s, "
            f"releasing its admission slot"
        )
        self.future = future
        self.timeout_sec = timeout_sec


class CleanupActionFailed(FutureGuardError):
    """A cleanup action raised while being run for a dead referent."""

    def __init__(self, metadata: Any, cause: BaseException):
        super().__init__(f"Cleanup action failed for metadata {metadata!r}: {cause}")
        self.metadata = metadata
        self.cause = cause
