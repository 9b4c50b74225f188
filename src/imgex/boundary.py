"""Synchronous entry points for foreign-function callers.

Mirrors a C-style calling convention: functions return a value or a status
code and never raise for export failures; the failure description is kept
in a per-thread last-error slot read through :func:`get_last_error`.

These functions run their own event loop and must not be called from a
thread that is already running one.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from . import DESCRIPTION, __version__
from .core.config import ExportConfig
from .exceptions import ImageExportError
from .operations.jobs import ExportJob, ExportOptions
from .progress import ProgressCallback

logger = logging.getLogger(__name__)

T = TypeVar("T")

_state = threading.local()


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of one boundary call: a value or the error that prevented it."""

    value: Optional[T] = None
    error: Optional[ImageExportError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def message(self) -> Optional[str]:
        return self.error.describe() if self.error is not None else None


def run_outcome(call: Callable[[], Awaitable[T]]) -> Outcome[T]:
    """Run a coroutine factory to completion and capture its outcome.

    The calling thread's last error is replaced by the outcome's message
    (cleared on success).
    """
    try:
        outcome: Outcome[T] = Outcome(value=asyncio.run(call()))
    except ImageExportError as e:
        logger.debug(f"Boundary call failed: {e.describe()}")
        outcome = Outcome(error=e)
    _state.last_error = outcome.message
    return outcome


def get_last_error() -> Optional[str]:
    """Description of the last failure on the calling thread, if any."""
    return getattr(_state, "last_error", None)


def get_version() -> str:
    return __version__


def get_description() -> str:
    return DESCRIPTION


def get_image_config_json(reference: str, auth_json: Optional[str] = None) -> Optional[str]:
    """Config JSON of an image, or None on failure (see get_last_error)."""

    async def call() -> str:
        job = ExportJob(reference, auth_json, config=ExportConfig.from_env())
        return await job.get_config_text()

    return run_outcome(call).value


def export_image_filesystem_to_file(
    reference: str, output_path: str, auth_json: Optional[str] = None
) -> int:
    """Export an image filesystem as tar. Returns 0 on success, -1 on failure."""
    return export_image_filesystem_with_options(reference, output_path, auth_json)


def export_image_filesystem_with_options(
    reference: str,
    output_path: str,
    auth_json: Optional[str] = None,
    compress: bool = False,
    progress_callback: Optional[ProgressCallback] = None,
) -> int:
    """Export with compression and progress. Returns 0 on success, -1 on failure."""
    options = ExportOptions(compress=bool(compress), progress=progress_callback)

    async def call() -> Any:
        job = ExportJob(reference, auth_json, options, ExportConfig.from_env())
        return await job.export_to_path(output_path)

    outcome = run_outcome(call)
    return 0 if outcome.ok else -1
