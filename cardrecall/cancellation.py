"""
Cooperative cancellation for one chat request.
"""

import threading

from .errors import Cancelled


class CancellationToken:
    """Set once by the caller; checked by workers before each network call."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Request was cancelled.")


def check(token) -> None:
    """Raise Cancelled if ``token`` (possibly None) has been cancelled."""
    if token is not None:
        token.raise_if_cancelled()
