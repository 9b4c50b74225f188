"""Export configuration.

All values have defaults and can be overridden through ``IMGEX_*``
environment variables via :meth:`ExportConfig.from_env`.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, TypeVar

from ..exceptions import InvalidConfigurationError
from .types import Platform

T = TypeVar("T")

LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1", "[::1]")


def _env(name: str, default: str, convert: Callable[[str], T]) -> T:
    value = os.getenv(name, default)
    try:
        return convert(value)
    except ValueError as e:
        raise InvalidConfigurationError(f"{name}={value!r}: {e}") from e


@dataclass(frozen=True)
class ExportConfig:
    """Read-only settings shared by export jobs.

    Attributes:
        timeout: Socket connect/read timeout in seconds (dead-connection
            detection only, not a job deadline)
        max_attempts: Attempts per request before a transient failure surfaces
        backoff_base: First retry delay in seconds, doubled per attempt
        backoff_max: Upper bound for a single retry delay
        max_concurrent_downloads: Layer blobs fetched in parallel
        platform: Target platform, None for the running platform
        plain_http_hosts: Registry hosts reached over http instead of https
        docker_config_path: Docker client config used for default credentials
        chunk_size: Read size for blob streams
        compress_level: gzip compression level for compressed exports
        progress_interval: Bytes of archive content between progress events
    """

    timeout: float = 60.0
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    max_concurrent_downloads: int = 3
    platform: Optional[Platform] = None
    plain_http_hosts: tuple[str, ...] = field(default_factory=tuple)
    docker_config_path: Optional[Path] = None
    chunk_size: int = 1024 * 1024
    compress_level: int = 6
    progress_interval: int = 64 * 1024 * 1024

    @property
    def target_platform(self) -> Platform:
        return self.platform or Platform.current()

    def scheme_for(self, host: str) -> str:
        """URL scheme for a registry host."""
        if host in self.plain_http_hosts:
            return "http"
        hostname = host
        if host.startswith("["):
            hostname = host[: host.index("]") + 1]
        elif host.count(":") == 1:
            hostname = host.split(":", 1)[0]
        if hostname in LOOPBACK_HOSTS or hostname in self.plain_http_hosts:
            return "http"
        return "https"

    def resolved_docker_config_path(self) -> Path:
        if self.docker_config_path is not None:
            return self.docker_config_path
        docker_config = os.getenv("DOCKER_CONFIG")
        if docker_config:
            return Path(docker_config) / "config.json"
        return Path.home() / ".docker" / "config.json"

    @classmethod
    def from_env(cls) -> "ExportConfig":
        """Build configuration from environment variables.

        Environment Variables:
            IMGEX_TIMEOUT: Socket timeout in seconds. Default: 60
            IMGEX_MAX_ATTEMPTS: Attempts per request. Default: 3
            IMGEX_BACKOFF_BASE: First retry delay in seconds. Default: 0.5
            IMGEX_BACKOFF_MAX: Maximum retry delay in seconds. Default: 8
            IMGEX_MAX_CONCURRENT_DOWNLOADS: Parallel layer fetches. Default: 3
            IMGEX_PLATFORM: Target platform (os/arch[/variant]). Default: runtime
            IMGEX_PLAIN_HTTP_HOSTS: Comma separated hosts reached over http
            IMGEX_COMPRESS_LEVEL: gzip level 1-9. Default: 6

        Raises:
            InvalidConfigurationError: If a variable cannot be parsed
        """
        plain_http = os.getenv("IMGEX_PLAIN_HTTP_HOSTS", "")
        return cls(
            timeout=_env("IMGEX_TIMEOUT", "60", float),
            max_attempts=max(1, _env("IMGEX_MAX_ATTEMPTS", "3", int)),
            backoff_base=_env("IMGEX_BACKOFF_BASE", "0.5", float),
            backoff_max=_env("IMGEX_BACKOFF_MAX", "8", float),
            max_concurrent_downloads=max(1, _env("IMGEX_MAX_CONCURRENT_DOWNLOADS", "3", int)),
            platform=_env(
                "IMGEX_PLATFORM", "", lambda value: Platform.parse(value) if value else None
            ),
            plain_http_hosts=tuple(
                host.strip() for host in plain_http.split(",") if host.strip()
            ),
            compress_level=_env("IMGEX_COMPRESS_LEVEL", "6", int),
        )
