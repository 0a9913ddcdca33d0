"""Cooperative cancellation for report generation.

A single :class:`CancellationToken` is shared by every fetch of one report
run. Cancelling it makes the next checkpoint raise :class:`ReportCancelled`;
work already in flight is discarded rather than returned.
"""

import threading


class ReportCancelled(Exception):
    """Raised when report generation is cancelled."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ReportCancelled("report generation was cancelled")

    def sleep(self, seconds: float) -> None:
        """Wait up to *seconds*, returning early with an error on cancellation."""
        if self._event.wait(seconds):
            raise ReportCancelled("report generation was cancelled")
