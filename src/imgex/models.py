"""Data models for image configuration."""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .exceptions import ManifestError


@dataclass
class ImageConfig:
    """Docker/OCI image configuration summary."""

    architecture: str
    os: str
    created: Optional[datetime] = None
    variant: str = ""
    cmd: list[str] = field(default_factory=list)
    entrypoint: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)
    user: str = ""
    working_dir: str = ""
    exposed_ports: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    diff_ids: list[str] = field(default_factory=list)

    @property
    def environment(self) -> dict[str, str]:
        """Environment variables as a mapping (``KEY=value`` split once)."""
        result = {}
        for item in self.env:
            key, _, value = item.partition("=")
            result[key] = value
        return result

    @classmethod
    def from_config_blob(cls, blob: bytes) -> "ImageConfig":
        """Parse the config blob of an image.

        Raises:
            ManifestError: If the blob is not a JSON object
        """
        try:
            config_data = json.loads(blob)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestError(f"Image config is not valid JSON: {e}") from e
        if not isinstance(config_data, dict):
            raise ManifestError("Image config must be a JSON object")
        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "ImageConfig":
        created = None
        created_str = config_data.get("created")
        if isinstance(created_str, str) and created_str:
            try:
                # Go timestamps carry nanoseconds
                created_str = re.sub(r"(\.\d{6})\d+", r"\1", created_str)
                created = datetime.fromisoformat(created_str.replace("Z", "+00:00"))
            except ValueError:
                created = None

        runtime_config = config_data.get("config") or {}
        rootfs = config_data.get("rootfs") or {}

        return cls(
            architecture=config_data.get("architecture", ""),
            os=config_data.get("os", ""),
            created=created,
            variant=config_data.get("variant", ""),
            cmd=runtime_config.get("Cmd") or [],
            entrypoint=runtime_config.get("Entrypoint") or [],
            env=runtime_config.get("Env") or [],
            user=runtime_config.get("User") or "",
            working_dir=runtime_config.get("WorkingDir") or "",
            exposed_ports=sorted(runtime_config.get("ExposedPorts") or {}),
            labels=runtime_config.get("Labels") or {},
            diff_ids=rootfs.get("diff_ids") or [],
        )
