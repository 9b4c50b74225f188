"""Job-scoped cancellation flag."""

import threading

from ..exceptions import ExportCancelledError


class CancellationToken:
    """Thread-safe flag checked between pipeline stages.

    Cancellation never rolls back output that was already written.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise ExportCancelledError(f"export cancelled before {stage}")
