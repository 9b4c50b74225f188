"""Core data types shared by the registry client and the export pipeline."""

import platform as py_platform
import re
from dataclasses import dataclass, field
from typing import Any, Optional

DOCKER_HUB = "docker.io"
DOCKER_HUB_API = "registry-1.docker.io"
DEFAULT_TAG = "latest"

# Media types understood when resolving a reference
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+json"
DOCKER_MANIFEST_V1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"

INDEX_MEDIA_TYPES = (OCI_INDEX, DOCKER_MANIFEST_LIST)
IMAGE_MANIFEST_MEDIA_TYPES = (OCI_MANIFEST, DOCKER_MANIFEST_V2)

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
    "armv6l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


@dataclass(frozen=True)
class ImageReference:
    """Parsed image reference (registry host, repository, tag, digest)."""

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def reference(self) -> str:
        """Tag or digest used for manifest resolution (digest wins)."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def api_host(self) -> str:
        """Host serving the v2 API for this registry."""
        if self.registry == DOCKER_HUB:
            return DOCKER_HUB_API
        return self.registry

    def __str__(self) -> str:
        value = f"{self.registry}/{self.repository}"
        if self.tag:
            value += f":{self.tag}"
        if self.digest:
            value += f"@{self.digest}"
        return value


@dataclass(frozen=True)
class Platform:
    """Target platform used to pick an entry out of a multi-platform index."""

    os: str
    architecture: str
    variant: str = ""

    def __str__(self) -> str:
        value = f"{self.os}/{self.architecture}"
        if self.variant:
            value += f"/{self.variant}"
        return value

    @staticmethod
    def default_variant(architecture: str) -> str:
        return {"arm64": "v8", "arm": "v7"}.get(architecture, "")

    @classmethod
    def parse(cls, platform_str: str) -> "Platform":
        """Parse ``os/arch[/variant]`` (``arch`` alone implies linux)."""
        parts = [part for part in platform_str.strip().split("/") if part]
        if not parts or len(parts) > 3:
            raise ValueError(f"Invalid platform: {platform_str!r}")
        if len(parts) == 1:
            parts.insert(0, "linux")
        os_name, architecture = parts[0], parts[1]
        variant = parts[2] if len(parts) == 3 else ""
        architecture = _ARCH_ALIASES.get(architecture, architecture)
        return cls(os=os_name, architecture=architecture, variant=variant)

    @classmethod
    def current(cls) -> "Platform":
        """Platform of the running interpreter, mapped to OCI names."""
        machine = py_platform.machine().lower()
        architecture = _ARCH_ALIASES.get(machine, machine or "amd64")
        variant = ""
        if machine.startswith("armv"):
            variant = machine[3:5].rstrip("l")
            variant = f"v{variant}" if variant.isdigit() else ""
        return cls(os="linux", architecture=architecture, variant=variant)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Platform":
        return cls(
            os=payload.get("os", ""),
            architecture=payload.get("architecture", ""),
            variant=payload.get("variant", ""),
        )

    def matches(self, other: "Platform") -> bool:
        """Compare os and architecture, treating default variants as equal."""
        if self.os != other.os or self.architecture != other.architecture:
            return False
        default = self.default_variant(self.architecture)
        return (self.variant or default) == (other.variant or default)


@dataclass(frozen=True)
class Descriptor:
    """Content descriptor pointing at a blob or manifest."""

    media_type: str
    digest: str
    size: int
    platform: Optional[Platform] = None
    urls: tuple[str, ...] = ()

    @property
    def short_digest(self) -> str:
        return self.digest.split(":", 1)[-1][:12]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Descriptor":
        platform = payload.get("platform")
        return cls(
            media_type=payload.get("mediaType", ""),
            digest=payload["digest"],
            size=int(payload.get("size", 0)),
            platform=Platform.from_payload(platform) if platform else None,
            urls=tuple(payload.get("urls") or ()),
        )


@dataclass(frozen=True)
class Manifest:
    """Single-platform image manifest: config plus layers, bottom to top."""

    media_type: str
    digest: str
    config: Descriptor
    layers: tuple[Descriptor, ...] = field(default_factory=tuple)


_REPOSITORY_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_HOST = re.compile(r"^(?:[a-zA-Z0-9.-]+|\[[0-9a-fA-F:]+\])(?::[0-9]+)?$")


def is_valid_repository(repository: str) -> bool:
    return all(_REPOSITORY_COMPONENT.match(part) for part in repository.split("/"))


def is_valid_tag(tag: str) -> bool:
    return bool(_TAG.match(tag))


def is_valid_host(host: str) -> bool:
    return bool(_HOST.match(host))
