"""imgex - Export container image filesystems from OCI/Docker registries."""

__version__ = "0.1.2"

DESCRIPTION = (
    "Exports the flattened filesystem and configuration of container images "
    "from OCI/Docker registries"
)

from .core.cancellation import CancellationToken
from .core.config import ExportConfig
from .core.types import ImageReference, Platform
from .exceptions import (
    ArchiveWriteError,
    AuthenticationFailedError,
    DigestMismatchError,
    ExportCancelledError,
    ImageExportError,
    ImageNotFoundError,
    InvalidConfigurationError,
    InvalidCredentialFormatError,
    InvalidReferenceError,
    ManifestError,
    NetworkTransientError,
    NoMatchingPlatformError,
    RegistryError,
)
from .export import (
    export_filesystem,
    export_filesystem_to_writer,
    export_filesystem_with_options,
    get_image_config,
    get_image_summary,
)
from .models import ImageConfig
from .operations.jobs import ExportOptions
from .progress import (
    CallbackProgress,
    NullProgress,
    ProgressEvent,
    ProgressSink,
    QueueProgress,
)

__all__ = [
    "__version__",
    "DESCRIPTION",
    # Export operations
    "get_image_config",
    "get_image_summary",
    "export_filesystem",
    "export_filesystem_with_options",
    "export_filesystem_to_writer",
    # Options and configuration
    "ExportOptions",
    "ExportConfig",
    "CancellationToken",
    "ImageReference",
    "Platform",
    "ImageConfig",
    # Progress sinks
    "ProgressSink",
    "NullProgress",
    "CallbackProgress",
    "QueueProgress",
    "ProgressEvent",
    # Exceptions
    "ImageExportError",
    "InvalidReferenceError",
    "InvalidConfigurationError",
    "InvalidCredentialFormatError",
    "AuthenticationFailedError",
    "ImageNotFoundError",
    "NoMatchingPlatformError",
    "NetworkTransientError",
    "DigestMismatchError",
    "ArchiveWriteError",
    "ExportCancelledError",
    "RegistryError",
    "ManifestError",
]
