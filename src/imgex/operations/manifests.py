"""Manifest parsing and platform selection."""

import json
import logging
from typing import Any, Optional

from ..core.types import (
    DOCKER_MANIFEST_LIST,
    DOCKER_MANIFEST_V1,
    DOCKER_MANIFEST_V1_SIGNED,
    DOCKER_MANIFEST_V2,
    IMAGE_MANIFEST_MEDIA_TYPES,
    INDEX_MEDIA_TYPES,
    OCI_INDEX,
    OCI_MANIFEST,
    Descriptor,
    Manifest,
    Platform,
)
from ..exceptions import ManifestError, NoMatchingPlatformError

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join(
    [OCI_INDEX, OCI_MANIFEST, DOCKER_MANIFEST_LIST, DOCKER_MANIFEST_V2]
)


def load_manifest_json(body: bytes) -> dict[str, Any]:
    """Decode a manifest or index document."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestError(f"Manifest is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ManifestError("Manifest must be a JSON object")
    return data


def manifest_media_type(data: dict[str, Any], content_type: Optional[str]) -> str:
    """Work out the media type of a manifest document.

    The ``mediaType`` field wins over the response Content-Type. OCI
    documents may omit both, in which case the shape decides.
    """
    media_type = data.get("mediaType")
    if not media_type and content_type:
        media_type = content_type.split(";", 1)[0].strip()

    if data.get("schemaVersion") == 1 or media_type in (
        DOCKER_MANIFEST_V1,
        DOCKER_MANIFEST_V1_SIGNED,
    ):
        raise ManifestError("Schema 1 manifests are not supported")

    if media_type in INDEX_MEDIA_TYPES or media_type in IMAGE_MANIFEST_MEDIA_TYPES:
        return media_type
    if "manifests" in data:
        return OCI_INDEX
    if "layers" in data and "config" in data:
        return OCI_MANIFEST
    raise ManifestError(f"Unsupported manifest media type: {media_type or 'unknown'}")


def is_index(media_type: str) -> bool:
    return media_type in INDEX_MEDIA_TYPES


def select_platform(
    index: dict[str, Any], platform: Platform, image: str = "image"
) -> Descriptor:
    """Pick the index entry matching ``platform``.

    Raises:
        NoMatchingPlatformError: If no entry matches
    """
    available: list[str] = []
    for entry in index.get("manifests") or []:
        if not isinstance(entry, dict) or not entry.get("platform") or "digest" not in entry:
            continue
        descriptor = Descriptor.from_payload(entry)
        # Attestation manifests are published as unknown/unknown
        if descriptor.platform.os == "unknown":
            continue
        available.append(str(descriptor.platform))
        if platform.matches(descriptor.platform):
            logger.debug(f"Selected {descriptor.platform} manifest {descriptor.digest}")
            return descriptor

    raise NoMatchingPlatformError(
        f"Requested platform ({platform}) is not available for {image}. "
        f"Available platforms: {', '.join(available) or 'none'}",
        available,
    )


def parse_manifest(data: dict[str, Any], media_type: str, digest: str) -> Manifest:
    """Build a Manifest from a single-platform manifest document."""
    try:
        config = Descriptor.from_payload(data["config"])
        layers = tuple(Descriptor.from_payload(layer) for layer in data.get("layers") or [])
    except (KeyError, TypeError, ValueError) as e:
        raise ManifestError(f"Malformed manifest {digest}: {e}") from e
    return Manifest(media_type=media_type, digest=digest, config=config, layers=layers)
