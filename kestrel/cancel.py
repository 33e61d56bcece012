"""Thread-safe cancellation token shared by the loop, providers and tools."""

import threading

from .errors import Cancelled


class CancelToken:
    """Signals cancellation of one turn across threads.

    The agent loop creates one token per turn. The streaming dispatcher polls
    it between events, the retry backoff sleeps on it, and the shell tool
    polls it while waiting on its subprocess.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` expires. True if cancelled."""
        return self._event.wait(timeout=timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()
