"""
Cooperative cancellation for a single turn.
"""

import threading
from typing import Callable, List


class CancellationToken:
    """Cancel signal passed down to every suspension point of a turn.

    Backed by a threading.Event so it can be set from signal handlers or
    other threads as well as from the event loop.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for callback in list(self._callbacks):
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run callback when the token is cancelled (immediately if it already is)."""
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)
