"""
Run-level cancellation shared by the scheduler, evaluator and submission client.
"""

import threading


class MarkingCancelled(Exception):
    """Raised inside a worker when the run is cancelled mid-student."""


class CancelToken:
    """
    Cooperative cancellation flag.

    Checked when a worker picks up a new target and at every blocking point
    (process waits, HTTP attempts, retry backoff).
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """
        Sleep for up to `seconds`, waking early on cancellation.

        Returns:
            True if the token was cancelled.
        """
        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise MarkingCancelled()
