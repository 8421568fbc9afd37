"""Cancellation tokens threaded through every suspending call.

A token is cancelled at most once; the first reason wins and is preserved
through child tokens so the scheduler can surface it as the step error.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from .errors import StepCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe cancellation signal with callbacks and optional deadline."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[str], None]] = []
        self._timer: Optional[threading.Timer] = None
        self._unlink: Optional[Callable[[], None]] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Cancelled") -> bool:
        """Cancel the token. Returns False if it was already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
            if self._timer is not None:
                self._timer.cancel()
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:  # noqa: BLE001
                logger.exception("Cancellation callback failed")
        return True

    def add_callback(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register a callback fired on cancel; fires immediately if already cancelled.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _remove
        callback(self._reason or "Cancelled")
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StepCancelledError(self._reason or "Cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout (seconds). Returns True if cancelled."""
        return self._event.wait(timeout)

    def child(self, timeout_ms: Optional[int] = None, reason: str = "Timed out") -> "CancellationToken":
        """Create a linked token cancelled with this one, or after ``timeout_ms``.

        The child must be released with ``close()`` once the guarded work ends.
        """
        child = CancellationToken()
        unlink = self.add_callback(child.cancel)
        child._unlink = unlink
        if timeout_ms is not None and timeout_ms > 0 and not child.cancelled:
            timer = threading.Timer(timeout_ms / 1000.0, child.cancel, args=(reason,))
            timer.daemon = True
            child._timer = timer
            timer.start()
        return child

    def close(self) -> None:
        """Stop the deadline timer and detach from the parent token."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._unlink is not None:
            self._unlink()
            self._unlink = None
