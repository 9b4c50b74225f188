"""Tests for image reference parsing."""

import pytest

from imgex.core.reference import parse_reference, split_repository_tag
from imgex.exceptions import InvalidReferenceError

DIGEST = "sha256:" + "a" * 64


def test_split_repository_tag():
    """Test splitting repository and tag."""
    assert split_repository_tag("nginx:alpine") == ("nginx", "alpine")
    assert split_repository_tag("nginx") == ("nginx", "latest")
    assert split_repository_tag("localhost:5000/myapp") == ("localhost:5000/myapp", "latest")
    assert split_repository_tag("localhost:5000/myapp:v1") == ("localhost:5000/myapp", "v1")
    assert split_repository_tag("nginx:") == ("nginx", "latest")


def test_docker_hub_official_image():
    """Single-component names live under library/ on Docker Hub."""
    ref = parse_reference("alpine")
    assert ref.registry == "docker.io"
    assert ref.repository == "library/alpine"
    assert ref.tag == "latest"
    assert ref.digest is None
    assert ref.api_host == "registry-1.docker.io"
    assert str(ref) == "docker.io/library/alpine:latest"


def test_docker_hub_user_image():
    ref = parse_reference("bitnami/redis:7.2")
    assert ref.registry == "docker.io"
    assert ref.repository == "bitnami/redis"
    assert ref.tag == "7.2"


@pytest.mark.parametrize("host", ["docker.io", "index.docker.io", "registry-1.docker.io"])
def test_docker_hub_aliases(host):
    ref = parse_reference(f"{host}/alpine:3.19")
    assert ref.registry == "docker.io"
    assert ref.repository == "library/alpine"


def test_registry_host_detection():
    """A first component with '.' or ':' or equal to localhost is a host."""
    assert parse_reference("ghcr.io/org/app:1.0").registry == "ghcr.io"
    assert parse_reference("localhost/app").registry == "localhost"

    ref = parse_reference("localhost:5000/team/app")
    assert ref.registry == "localhost:5000"
    assert ref.repository == "team/app"
    assert ref.tag == "latest"


def test_digest_reference():
    ref = parse_reference(f"ghcr.io/org/app@{DIGEST}")
    assert ref.digest == DIGEST
    assert ref.tag is None
    assert ref.reference == DIGEST


def test_tag_and_digest_digest_wins():
    """The digest drives resolution; the tag is kept for display."""
    ref = parse_reference(f"nginx:1.25@{DIGEST}")
    assert ref.tag == "1.25"
    assert ref.digest == DIGEST
    assert ref.reference == DIGEST
    assert str(ref) == f"docker.io/library/nginx:1.25@{DIGEST}"


@pytest.mark.parametrize(
    "value",
    [
        "",
        "   ",
        "Alpine",
        "alpine:bad tag",
        "alpine@sha256:xyz",
        "alpine@md5:" + "a" * 32,
        "ghcr.io/",
        "alpine:-bad",
        "ghcr.io//app",
    ],
)
def test_invalid_references(value):
    with pytest.raises(InvalidReferenceError) as exc_info:
        parse_reference(value)
    assert exc_info.value.kind == "InvalidReference"
