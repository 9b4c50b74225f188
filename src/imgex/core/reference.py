"""Image reference parsing."""

from ..exceptions import InvalidReferenceError
from ..utils.digest import validate_digest
from .types import (
    DEFAULT_TAG,
    DOCKER_HUB,
    ImageReference,
    is_valid_host,
    is_valid_repository,
    is_valid_tag,
)

_DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", "registry-1.docker.io")


def split_repository_tag(repo_tag: str) -> tuple[str, str]:
    """Split ``repository:tag`` into its parts, defaulting the tag to ``latest``.

    Only a ``:`` after the last ``/`` separates a tag, so registry ports
    such as ``localhost:5000/app`` survive.

    Examples:
        >>> split_repository_tag("nginx:alpine")
        ('nginx', 'alpine')
        >>> split_repository_tag("localhost:5000/myapp")
        ('localhost:5000/myapp', 'latest')
    """
    slash = repo_tag.rfind("/")
    colon = repo_tag.rfind(":")
    if colon > slash:
        name, tag = repo_tag[:colon], repo_tag[colon + 1 :]
        return name, tag or DEFAULT_TAG
    return repo_tag, DEFAULT_TAG


def parse_reference(value: str) -> ImageReference:
    """Parse a Docker-style image reference.

    The first path component is treated as a registry host when it contains
    ``.`` or ``:`` or is ``localhost``; otherwise Docker Hub is assumed and
    single-component names get the ``library/`` prefix. A reference with
    neither tag nor digest gets the ``latest`` tag. When both are present the
    digest is authoritative.

    Args:
        value: Reference such as ``alpine``, ``nginx:1.25``,
            ``ghcr.io/org/app@sha256:...`` or ``localhost:5000/app:dev``

    Returns:
        Parsed ImageReference

    Raises:
        InvalidReferenceError: If the reference is malformed
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidReferenceError("image reference is empty")

    text = value.strip()
    if any(ch.isspace() for ch in text):
        raise InvalidReferenceError(f"image reference contains whitespace: {value!r}")

    digest = None
    if "@" in text:
        text, digest = text.split("@", 1)
        if not validate_digest(digest):
            raise InvalidReferenceError(f"invalid digest in reference {value!r}")

    tag = None
    slash = text.rfind("/")
    colon = text.rfind(":")
    if colon > slash:
        text, tag = split_repository_tag(text)
        if not is_valid_tag(tag):
            raise InvalidReferenceError(f"invalid tag in reference {value!r}")

    components = text.split("/")
    first = components[0]
    if len(components) > 1 and ("." in first or ":" in first or first == "localhost"):
        registry = first
        repository = "/".join(components[1:])
    else:
        registry = DOCKER_HUB
        repository = text

    if registry in _DOCKER_HUB_ALIASES:
        registry = DOCKER_HUB
        if "/" not in repository:
            repository = f"library/{repository}"

    if not is_valid_host(registry):
        raise InvalidReferenceError(f"invalid registry host in reference {value!r}")
    if not repository or not is_valid_repository(repository):
        raise InvalidReferenceError(f"invalid repository name in reference {value!r}")

    if tag is None and digest is None:
        tag = DEFAULT_TAG

    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)
