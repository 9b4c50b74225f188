"""Custom exceptions for the image exporter."""

from typing import Optional


class ImageExportError(Exception):
    """Base exception for all export-related errors."""

    kind = "ImageExportError"

    def describe(self) -> str:
        """Return a human-readable description prefixed with the error kind."""
        return f"{self.kind}: {self}"


class InvalidReferenceError(ImageExportError):
    """Raised when an image reference cannot be parsed."""

    kind = "InvalidReference"


class InvalidConfigurationError(ImageExportError):
    """Raised when an IMGEX_* environment variable holds an unusable value."""

    kind = "InvalidConfiguration"


class InvalidCredentialFormatError(ImageExportError):
    """Raised when an authentication payload has an unrecognized shape."""

    kind = "InvalidCredentialFormat"


class AuthenticationFailedError(ImageExportError):
    """Raised when the registry rejects the supplied (or absent) credentials."""

    kind = "AuthenticationFailed"


class ImageNotFoundError(ImageExportError):
    """Raised when the repository, tag or blob does not exist."""

    kind = "ImageNotFound"


class NoMatchingPlatformError(ImageExportError):
    """Raised when a multi-platform index has no entry for the target platform."""

    kind = "NoMatchingPlatform"

    def __init__(self, message: str, available: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.available = available or []


class NetworkTransientError(ImageExportError):
    """Raised when transient network failures outlast the retry budget."""

    kind = "NetworkTransient"


class DigestMismatchError(ImageExportError):
    """Raised when fetched content does not hash to its declared digest."""

    kind = "DigestMismatch"

    def __init__(self, expected: str, actual: str, subject: str = "blob") -> None:
        super().__init__(f"{subject} digest mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ArchiveWriteError(ImageExportError):
    """Raised when the output archive cannot be written."""

    kind = "ArchiveWriteFailed"


class ExportCancelledError(ImageExportError):
    """Raised when an export job is cancelled between pipeline stages."""

    kind = "Cancelled"


class RegistryError(ImageExportError):
    """Raised when the registry answers in an unexpected way."""

    kind = "RegistryError"


class ManifestError(RegistryError):
    """Raised when a manifest is malformed or of an unsupported type."""

    kind = "InvalidManifest"
