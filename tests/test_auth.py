"""Tests for credential parsing and resolution."""

import base64
import json

import pytest

from imgex.core.auth import (
    AnonymousCredential,
    BasicCredential,
    BearerCredential,
    load_docker_credential,
    parse_auth_payload,
    parse_challenge,
    resolve_credential,
)
from imgex.exceptions import InvalidCredentialFormatError


@pytest.mark.parametrize("payload", [None, "", "  ", "{}", "null", {}])
def test_empty_payload_is_anonymous(payload):
    assert parse_auth_payload(payload) == AnonymousCredential()


def test_basic_payload():
    credential = parse_auth_payload('{"username": "alice", "password": "s3cret"}')
    assert credential == BasicCredential("alice", "s3cret")
    assert "s3cret" not in repr(credential)


def test_basic_payload_with_registry():
    credential = parse_auth_payload(
        {"username": "alice", "password": "pw", "registry": "ghcr.io"}
    )
    assert isinstance(credential, BasicCredential)
    assert credential.applies_to("ghcr.io")
    assert not credential.applies_to("docker.io")


def test_token_payload():
    credential = parse_auth_payload('{"token": "abc"}')
    assert credential == BearerCredential("abc")
    assert credential.refresh_endpoint is None


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        "[1, 2]",
        '"alice"',
        '{"username": "alice"}',
        '{"password": "pw"}',
        '{"username": "", "password": "pw"}',
        '{"username": "alice", "password": 42}',
        '{"token": ""}',
        '{"token": "abc", "username": "alice"}',
        '{"user": "alice", "pass": "pw"}',
        '{"username": "alice", "password": "pw", "email": "a@b.c"}',
    ],
)
def test_invalid_payloads(payload):
    with pytest.raises(InvalidCredentialFormatError) as exc_info:
        parse_auth_payload(payload)
    assert exc_info.value.describe().startswith("InvalidCredentialFormat: ")


def write_docker_config(path, auths):
    path.write_text(json.dumps({"auths": auths}))
    return path


def test_load_docker_credential_auth_field(tmp_path):
    encoded = base64.b64encode(b"bob:hunter2").decode()
    config = write_docker_config(
        tmp_path / "config.json", {"https://index.docker.io/v1/": {"auth": encoded}}
    )
    credential = load_docker_credential("docker.io", config)
    assert credential == BasicCredential("bob", "hunter2", registry="docker.io")


def test_load_docker_credential_username_password(tmp_path):
    config = write_docker_config(
        tmp_path / "config.json", {"ghcr.io": {"username": "carol", "password": "pw"}}
    )
    assert load_docker_credential("ghcr.io", config).username == "carol"
    assert load_docker_credential("quay.io", config) is None


def test_load_docker_credential_missing_or_broken(tmp_path):
    assert load_docker_credential("ghcr.io", tmp_path / "missing.json") is None

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    assert load_docker_credential("ghcr.io", broken) is None


def test_resolve_credential(tmp_path):
    config = write_docker_config(
        tmp_path / "config.json", {"ghcr.io": {"username": "carol", "password": "pw"}}
    )
    explicit = BasicCredential("alice", "pw")
    token = BearerCredential("abc")

    assert resolve_credential(explicit, "ghcr.io", config) is explicit
    assert resolve_credential(token, "ghcr.io", config) is token
    assert resolve_credential(AnonymousCredential(), "ghcr.io", config).username == "carol"
    assert resolve_credential(AnonymousCredential(), "quay.io", config) == AnonymousCredential()

    # Credentials bound to another registry fall back to the defaults
    other = BasicCredential("alice", "pw", registry="quay.io")
    assert resolve_credential(other, "ghcr.io", config).username == "carol"


def test_parse_challenge():
    scheme, params = parse_challenge(
        'Bearer realm="https://auth.example.com/token",service="registry.example.com",'
        'scope="repository:org/app:pull"'
    )
    assert scheme == "bearer"
    assert params == {
        "realm": "https://auth.example.com/token",
        "service": "registry.example.com",
        "scope": "repository:org/app:pull",
    }

    assert parse_challenge('Basic realm="Registry Realm"') == ("basic", {"realm": "Registry Realm"})
