"""Progress reporting for export jobs.

Sinks receive ``(current, total, description)`` events synchronously on the
thread doing the corresponding I/O. A slow sink delays the export.
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification."""

    current: int
    total: int
    description: str


class ProgressSink(ABC):
    """Receiver of progress events."""

    @abstractmethod
    def report(self, current: int, total: int, description: str) -> None:
        """Handle one event."""


class NullProgress(ProgressSink):
    """Discards every event."""

    def report(self, current: int, total: int, description: str) -> None:
        pass


class CallbackProgress(ProgressSink):
    """Forwards events to a plain callable."""

    def __init__(self, callback: ProgressCallback) -> None:
        self.callback = callback

    def report(self, current: int, total: int, description: str) -> None:
        self.callback(current, total, description)


class QueueProgress(ProgressSink):
    """Puts events on a thread-safe queue for another consumer to drain."""

    def __init__(self, events: Optional["queue.Queue[ProgressEvent]"] = None) -> None:
        self.events: "queue.Queue[ProgressEvent]" = events if events is not None else queue.Queue()

    def report(self, current: int, total: int, description: str) -> None:
        self.events.put(ProgressEvent(current, total, description))

    def drain(self) -> list[ProgressEvent]:
        """Return every event queued so far."""
        drained = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained


def as_progress_sink(
    progress: Union[ProgressSink, ProgressCallback, None],
) -> ProgressSink:
    """Adapt None, a callable or an existing sink to a ProgressSink."""
    if progress is None:
        return NullProgress()
    if isinstance(progress, ProgressSink):
        return progress
    if callable(progress):
        return CallbackProgress(progress)
    raise TypeError(f"Unsupported progress reporter: {progress!r}")


class ProgressTracker:
    """Step accounting for one export job.

    ``total`` is fixed upfront; :meth:`advance` moves to the next step and
    :meth:`note` reports within the current step without advancing.
    """

    def __init__(self, sink: ProgressSink, total: int) -> None:
        self.sink = sink
        self.total = total
        self.current = 0
        self._lock = threading.Lock()

    def advance(self, description: str) -> None:
        with self._lock:
            self.current = min(self.current + 1, self.total)
            current = self.current
        logger.debug(f"[{current}/{self.total}] {description}")
        self.sink.report(current, self.total, description)

    def note(self, description: str) -> None:
        self.sink.report(self.current, self.total, description)
