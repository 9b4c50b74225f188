"""Digest calculation and validation utilities."""

import hashlib
import re
from typing import Union

from ..exceptions import DigestMismatchError

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")

SUPPORTED_ALGORITHMS = ("sha256", "sha512")


def calculate_digest(data: Union[bytes, bytearray], algorithm: str = "sha256") -> str:
    """Calculate digest of data.

    Args:
        data: Data to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Digest string in format "algorithm:hex"

    Raises:
        ValueError: If algorithm is not supported
        ValueError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError("Data must be bytes or bytearray")

    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if valid digest format
    """
    if not isinstance(digest, str):
        return False

    if not DIGEST_PATTERN.match(digest):
        return False

    algorithm, _ = digest.split(":", 1)
    return algorithm in SUPPORTED_ALGORITHMS


def verify_digest(
    data: Union[bytes, bytearray], expected_digest: str, subject: str = "blob"
) -> None:
    """Verify data matches expected digest.

    Args:
        data: Data to verify
        expected_digest: Expected digest string
        subject: What is being verified, used in the error message

    Raises:
        ValueError: If digest format is invalid
        DigestMismatchError: If data does not hash to the expected digest
    """
    if not validate_digest(expected_digest):
        raise ValueError(f"Invalid digest format: {expected_digest}")

    algorithm, _ = expected_digest.split(":", 1)
    actual_digest = calculate_digest(data, algorithm)
    if actual_digest != expected_digest:
        raise DigestMismatchError(expected_digest, actual_digest, subject)


class DigestVerifier:
    """Incremental digest check for streamed blobs."""

    def __init__(self, expected_digest: str, subject: str = "blob") -> None:
        if not validate_digest(expected_digest):
            raise ValueError(f"Invalid digest format: {expected_digest}")
        self.expected_digest = expected_digest
        self.subject = subject
        self.algorithm, _ = expected_digest.split(":", 1)
        self._hasher = hashlib.new(self.algorithm)
        self.size = 0

    def update(self, chunk: bytes) -> None:
        self._hasher.update(chunk)
        self.size += len(chunk)

    @property
    def digest(self) -> str:
        return f"{self.algorithm}:{self._hasher.hexdigest()}"

    def verify(self) -> None:
        """Raise DigestMismatchError unless everything fed so far matches."""
        actual = self.digest
        if actual != self.expected_digest:
            raise DigestMismatchError(self.expected_digest, actual, self.subject)
