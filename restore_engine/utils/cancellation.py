"""
Cooperative cancellation for long-running operations.

Operations accept an optional ``cancellation_check`` callable and invoke it
between chunks; the callable raises OperationCancelled to stop the work.
"""

import threading
from typing import Optional, Callable


class OperationCancelled(Exception):
    """Raised by a cancellation check when the operation should stop."""
    pass


class CancellationToken:
    """Thread-safe cancellation flag usable as a cancellation_check."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def __call__(self):
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled")


def check_cancelled(cancellation_check: Optional[Callable[[], None]]):
    """Invoke cancellation_check if one was supplied."""
    if cancellation_check:
        cancellation_check()
