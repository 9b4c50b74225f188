"""Utility functions for the image exporter."""

from .digest import DigestVerifier, calculate_digest, validate_digest, verify_digest

__all__ = ["DigestVerifier", "calculate_digest", "validate_digest", "verify_digest"]
