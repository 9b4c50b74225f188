"""HTTP session helpers."""

import json
from typing import Any, Optional

import aiohttp

from ..exceptions import RegistryError
from .config import ExportConfig

USER_AGENT = "imgex"


async def create_session(
    config: Optional[ExportConfig] = None,
    connector: Optional[aiohttp.TCPConnector] = None,
) -> aiohttp.ClientSession:
    """Create a client session.

    Only connect and read timeouts are set; there is no overall deadline so
    large layer downloads are not cut off.
    """
    config = config or ExportConfig()
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(
            total=None, sock_connect=config.timeout, sock_read=config.timeout
        ),
        headers={"User-Agent": USER_AGENT},
    )


async def parse_json_response(resp: aiohttp.ClientResponse) -> dict[str, Any]:
    """Read a JSON object body regardless of the declared content type.

    Registries serve manifests with vendor media types that
    ``ClientResponse.json`` would reject.
    """
    body = await resp.read()
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RegistryError(f"Invalid JSON from {resp.url}: {e}") from e
    if not isinstance(data, dict):
        raise RegistryError(f"Expected a JSON object from {resp.url}")
    return data


def is_transient_status(status: int) -> bool:
    """Whether an HTTP status is worth retrying."""
    return status == 429 or status >= 500
