"""Registry credential resolution and authentication flows.

Supported credentials:
- AnonymousCredential: no payload; Docker client config is consulted
- BasicCredential: username/password, sent as Basic auth or exchanged for a
  bearer token
- BearerCredential: a pre-obtained token, or one exchanged from a registry
  challenge (then carrying the endpoint used to refresh it)

Tokens live for one export job only and are never persisted.
"""

import base64
import binascii
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import aiohttp

from ..exceptions import AuthenticationFailedError, InvalidCredentialFormatError
from .retry import TransientError
from .session import is_transient_status, parse_json_response
from .types import DOCKER_HUB

logger = logging.getLogger(__name__)

_BASIC_KEYS = {"username", "password", "registry"}
_TOKEN_KEYS = {"token"}
_CHALLENGE_PARAM = re.compile(r'(\w+)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^,\s]*))')


@dataclass(frozen=True)
class AnonymousCredential:
    """No credentials supplied."""


@dataclass(frozen=True)
class BasicCredential:
    """Username/password pair, optionally bound to one registry host."""

    username: str
    password: str = field(repr=False)
    registry: Optional[str] = None

    def applies_to(self, host: str) -> bool:
        return self.registry is None or _normalize_registry(self.registry) == host


@dataclass(frozen=True)
class TokenEndpoint:
    """Token service advertised by a ``Bearer`` challenge."""

    realm: str
    service: str = ""
    scope: str = ""


@dataclass(frozen=True)
class BearerCredential:
    """Bearer token; ``refresh_endpoint`` is set when it can be re-exchanged."""

    token: str = field(repr=False)
    refresh_endpoint: Optional[TokenEndpoint] = None


Credential = Union[AnonymousCredential, BasicCredential, BearerCredential]


def parse_auth_payload(payload: Union[str, Mapping[str, Any], None]) -> Credential:
    """Turn an authentication payload into a Credential.

    Args:
        payload: None, an empty string, a JSON object string or a mapping with
            either ``username``/``password`` (plus optional ``registry``) or
            ``token``

    Returns:
        Parsed credential; empty payloads give AnonymousCredential

    Raises:
        InvalidCredentialFormatError: If the payload has an unrecognized shape
    """
    if payload is None:
        return AnonymousCredential()

    if isinstance(payload, (str, bytes)):
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        if not text.strip():
            return AnonymousCredential()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidCredentialFormatError(f"auth payload is not valid JSON: {e}") from e
        if data is None:
            return AnonymousCredential()
    else:
        data = payload

    if not isinstance(data, Mapping):
        raise InvalidCredentialFormatError("auth payload must be a JSON object")
    if not data:
        return AnonymousCredential()

    keys = set(data)
    for key, value in data.items():
        if not isinstance(value, str):
            raise InvalidCredentialFormatError(f"auth field {key!r} must be a string")

    if "token" in keys:
        if keys != _TOKEN_KEYS:
            raise InvalidCredentialFormatError(
                "auth payload with 'token' must not contain other fields"
            )
        if not data["token"]:
            raise InvalidCredentialFormatError("auth field 'token' is empty")
        return BearerCredential(token=data["token"])

    unknown = keys - _BASIC_KEYS
    if unknown:
        raise InvalidCredentialFormatError(
            f"unrecognized auth fields: {', '.join(sorted(unknown))}"
        )
    if "username" not in keys or "password" not in keys:
        raise InvalidCredentialFormatError("auth payload needs both 'username' and 'password'")
    if not data["username"]:
        raise InvalidCredentialFormatError("auth field 'username' is empty")

    registry = data.get("registry") or None
    return BasicCredential(username=data["username"], password=data["password"], registry=registry)


def _normalize_registry(value: str) -> str:
    """Reduce a config key or URL (``https://index.docker.io/v1/``) to a host."""
    host = value
    for prefix in ("https://", "http://"):
        if host.startswith(prefix):
            host = host[len(prefix) :]
    host = host.split("/", 1)[0]
    if host in ("index.docker.io", "registry-1.docker.io"):
        return DOCKER_HUB
    return host


def load_docker_credential(host: str, config_path: Path) -> Optional[BasicCredential]:
    """Look up a registry in a Docker client config file.

    Only inline ``auths`` entries are read; credential helpers are not run.
    """
    if not config_path.is_file():
        return None
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable Docker config {config_path}: {e}")
        return None

    auths = data.get("auths") if isinstance(data, dict) else None
    if not isinstance(auths, dict):
        return None

    for key, entry in auths.items():
        if _normalize_registry(key) != host or not isinstance(entry, dict):
            continue
        if entry.get("auth"):
            try:
                decoded = base64.b64decode(entry["auth"]).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                logger.warning(f"Ignoring malformed auth entry for {key} in {config_path}")
                continue
            username, _, password = decoded.partition(":")
            if username:
                return BasicCredential(username=username, password=password, registry=host)
        if entry.get("username"):
            return BasicCredential(
                username=entry["username"],
                password=entry.get("password", ""),
                registry=host,
            )
    return None


def resolve_credential(credential: Credential, host: str, config_path: Path) -> Credential:
    """Pick the credential to use against ``host``.

    Explicit credentials for this host win; otherwise the Docker client
    config is consulted, falling back to anonymous access.
    """
    if isinstance(credential, BearerCredential):
        return credential
    if isinstance(credential, BasicCredential) and credential.applies_to(host):
        return credential

    default = load_docker_credential(host, config_path)
    if default is not None:
        logger.debug(f"Using Docker config credentials for {host}")
        return default
    return AnonymousCredential()


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Split a ``WWW-Authenticate`` header into scheme and parameters.

    Examples:
        >>> parse_challenge('Bearer realm="https://auth.io/token",service="reg"')
        ('bearer', {'realm': 'https://auth.io/token', 'service': 'reg'})
    """
    scheme, _, rest = header.strip().partition(" ")
    params = {}
    for match in _CHALLENGE_PARAM.finditer(rest):
        key, quoted, bare = match.groups()
        params[key.lower()] = quoted if quoted is not None else bare
    return scheme.lower(), params


class RegistryAuthenticator:
    """Authorization state for one export job against one registry.

    Answers ``Basic`` challenges with basic credentials and ``Bearer``
    challenges by exchanging credentials (or anonymous access) for a token
    at the advertised realm.
    """

    def __init__(
        self,
        credential: Credential,
        session: aiohttp.ClientSession,
        repository: str,
    ) -> None:
        self.credential = credential
        self.session = session
        self.repository = repository
        self._bearer = credential if isinstance(credential, BearerCredential) else None
        self._send_basic = False

    @property
    def authorized(self) -> bool:
        """Whether requests currently carry an Authorization header."""
        return self._bearer is not None or self._send_basic

    def headers(self) -> dict[str, str]:
        if self._bearer is not None:
            return {"Authorization": f"Bearer {self._bearer.token}"}
        if self._send_basic and isinstance(self.credential, BasicCredential):
            return {"Authorization": self._basic_auth().encode()}
        return {}

    def _basic_auth(self) -> aiohttp.BasicAuth:
        assert isinstance(self.credential, BasicCredential)
        return aiohttp.BasicAuth(self.credential.username, self.credential.password)

    async def handle_challenge(self, header: Optional[str], status: int) -> None:
        """Obtain fresh authorization after a 401/403 response.

        Raises:
            AuthenticationFailedError: If nothing new can be tried
        """
        scheme, params = parse_challenge(header) if header else ("", {})

        if scheme == "basic":
            if isinstance(self.credential, BasicCredential) and not self._send_basic:
                self._send_basic = True
                return
            reason = (
                "the supplied credentials were rejected"
                if self._send_basic
                else "no credentials were supplied"
            )
            raise AuthenticationFailedError(
                f"registry requires basic authentication (HTTP {status}) and {reason}"
            )

        endpoint = None
        if scheme == "bearer" and params.get("realm"):
            endpoint = TokenEndpoint(
                realm=params["realm"],
                service=params.get("service", ""),
                scope=params.get("scope") or f"repository:{self.repository}:pull",
            )
        elif self._bearer is not None:
            endpoint = self._bearer.refresh_endpoint

        if endpoint is None or (
            self._bearer is not None and self._bearer.refresh_endpoint is None
        ):
            if self._bearer is not None:
                raise AuthenticationFailedError(
                    f"registry rejected the bearer token (HTTP {status})"
                )
            raise AuthenticationFailedError(
                f"registry denied access (HTTP {status}) without a usable challenge"
            )

        token = await self._exchange(endpoint)
        self._bearer = BearerCredential(token=token, refresh_endpoint=endpoint)

    async def _exchange(self, endpoint: TokenEndpoint) -> str:
        params = {}
        if endpoint.service:
            params["service"] = endpoint.service
        if endpoint.scope:
            params["scope"] = endpoint.scope
        auth = self._basic_auth() if isinstance(self.credential, BasicCredential) else None

        logger.debug(f"Requesting token from {endpoint.realm} for {endpoint.scope}")
        async with self.session.get(endpoint.realm, params=params, auth=auth) as resp:
            if resp.status in (401, 403):
                who = "supplied credentials" if auth else "anonymous access"
                raise AuthenticationFailedError(
                    f"token endpoint {endpoint.realm} rejected {who} (HTTP {resp.status})"
                )
            if is_transient_status(resp.status):
                raise TransientError(f"token endpoint returned HTTP {resp.status}")
            if resp.status != 200:
                raise AuthenticationFailedError(
                    f"token endpoint {endpoint.realm} returned HTTP {resp.status}"
                )
            data = await parse_json_response(resp)

        token = data.get("token") or data.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthenticationFailedError(f"token endpoint {endpoint.realm} returned no token")
        return token
