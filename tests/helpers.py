"""Test helpers: synthetic layers and an in-process fake registry."""

import asyncio
import base64
import gzip
import hashlib
import io
import json
import secrets
import tarfile
from typing import Optional

from aiohttp import web
from aiohttp.test_utils import TestServer

from imgex.core.types import OCI_INDEX, OCI_MANIFEST

LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
LAYER_TAR = "application/vnd.oci.image.layer.v1.tar"
CONFIG_MEDIA_TYPE = "application/vnd.oci.image.config.v1+json"


def sha256(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def file(name: str, data: bytes = b"", mode: int = 0o644, mtime: int = 1700000000):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    info.mtime = mtime
    return info, data


def directory(name: str, mode: int = 0o755, mtime: int = 1700000000):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    info.mtime = mtime
    return info, None


def symlink(name: str, target: str):
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    info.mode = 0o777
    return info, None


def hardlink(name: str, target: str):
    info = tarfile.TarInfo(name)
    info.type = tarfile.LNKTYPE
    info.linkname = target
    return info, None


def whiteout(name: str):
    """Whiteout marker for ``name`` (``dir/file`` -> ``dir/.wh.file``)."""
    parent, _, base = name.rpartition("/")
    return file(f"{parent}/.wh.{base}" if parent else f".wh.{base}")


def opaque(directory_name: str):
    return file(f"{directory_name}/.wh..wh..opq")


def build_layer(*members) -> bytes:
    """Build an uncompressed layer tar from ``(TarInfo, data)`` pairs."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for info, data in members:
            tar.addfile(info, io.BytesIO(data) if data is not None else None)
    return buffer.getvalue()


def gzip_layer(data: bytes) -> bytes:
    return gzip.compress(data, mtime=0)


def read_archive(data: bytes) -> dict[str, Optional[bytes]]:
    """Map member names to content (None for non-regular members)."""
    result: dict[str, Optional[bytes]] = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        for member in tar:
            fh = tar.extractfile(member) if member.isreg() else None
            result[member.name] = fh.read() if fh else None
    return result


def archive_names(data: bytes) -> list[str]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        return tar.getnames()


class FakeRegistry:
    """Minimal Registry API v2 server for manifests, blobs and tokens.

    Attributes:
        auth: None, "basic" or "bearer"
        anonymous_tokens: Whether the token endpoint serves anonymous pulls
        accept_tokens: Whether issued bearer tokens are honoured
        failures: Request path -> number of 503 answers still to give
        delays: Request path -> seconds to wait before answering a blob
        corrupt: Digests served with one byte flipped
        requests: Paths requested, in order
    """

    def __init__(self) -> None:
        self.manifests: dict[tuple[str, str], tuple[str, bytes]] = {}
        self.blobs: dict[str, bytes] = {}
        self.auth: Optional[str] = None
        self.username = "user"
        self.password = "secret"
        self.anonymous_tokens = False
        self.tokens: set[str] = set()
        self.token_requests = 0
        self.accept_tokens = True
        self.failures: dict[str, int] = {}
        self.delays: dict[str, float] = {}
        self.corrupt: set[str] = set()
        self.requests: list[str] = []
        self.server: Optional[TestServer] = None

    @property
    def host(self) -> str:
        assert self.server is not None
        return f"127.0.0.1:{self.server.port}"

    def ref(self, repository: str, tag: str = "latest") -> str:
        return f"{self.host}/{repository}:{tag}"

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/v2/{name:.+}/manifests/{reference}", self._manifest)
        app.router.add_get("/v2/{name:.+}/blobs/{digest}", self._blob)
        app.router.add_get("/token", self._token)
        self.server = TestServer(app, host="127.0.0.1")
        await self.server.start_server()

    async def close(self) -> None:
        if self.server is not None:
            await self.server.close()

    # Content setup

    def add_blob(self, data: bytes) -> str:
        digest = sha256(data)
        self.blobs[digest] = data
        return digest

    def add_image(
        self,
        repository: str,
        tag: Optional[str],
        layers: list[bytes],
        config: Optional[dict] = None,
        compress: bool = True,
        media_type: str = OCI_MANIFEST,
    ) -> str:
        """Publish an image built from uncompressed layer tars.

        Returns:
            The manifest digest
        """
        config = config or {
            "architecture": "amd64",
            "os": "linux",
            "config": {"Cmd": ["/bin/sh"], "Env": ["PATH=/usr/bin:/bin"]},
            "rootfs": {"type": "layers", "diff_ids": [sha256(layer) for layer in layers]},
        }
        config_blob = json.dumps(config, sort_keys=True).encode()
        layer_descriptors = []
        for layer in layers:
            blob = gzip_layer(layer) if compress else layer
            layer_descriptors.append(
                {
                    "mediaType": LAYER_GZIP if compress else LAYER_TAR,
                    "digest": self.add_blob(blob),
                    "size": len(blob),
                }
            )
        manifest = {
            "schemaVersion": 2,
            "mediaType": media_type,
            "config": {
                "mediaType": CONFIG_MEDIA_TYPE,
                "digest": self.add_blob(config_blob),
                "size": len(config_blob),
            },
            "layers": layer_descriptors,
        }
        return self.add_manifest(repository, tag, manifest, media_type)

    def add_manifest(
        self, repository: str, tag: Optional[str], document: dict, media_type: str
    ) -> str:
        body = json.dumps(document).encode()
        digest = sha256(body)
        self.manifests[(repository, digest)] = (media_type, body)
        if tag:
            self.manifests[(repository, tag)] = (media_type, body)
        return digest

    def add_index(self, repository: str, tag: str, entries: list[tuple[dict, str]]) -> str:
        """Publish an index over already published manifests ``(platform, digest)``."""
        manifests = []
        for platform, digest in entries:
            media_type, body = self.manifests[(repository, digest)]
            manifests.append(
                {"mediaType": media_type, "digest": digest, "size": len(body), "platform": platform}
            )
        document = {"schemaVersion": 2, "mediaType": OCI_INDEX, "manifests": manifests}
        return self.add_manifest(repository, tag, document, OCI_INDEX)

    def layer_digests(self, repository: str, tag: str = "latest") -> list[str]:
        _, body = self.manifests[(repository, tag)]
        return [layer["digest"] for layer in json.loads(body)["layers"]]

    # Request handling

    def _challenge(self, request: web.Request, name: str) -> web.Response:
        if self.auth == "basic":
            header = 'Basic realm="fake"'
        else:
            header = (
                f'Bearer realm="http://{request.host}/token",service="fake",'
                f'scope="repository:{name}:pull"'
            )
        return web.json_response(
            {"errors": [{"code": "UNAUTHORIZED", "message": "authentication required"}]},
            status=401,
            headers={"WWW-Authenticate": header},
        )

    def _basic_ok(self, header: str) -> bool:
        expected = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return header == f"Basic {expected}"

    def _authorized(self, request: web.Request) -> bool:
        header = request.headers.get("Authorization", "")
        if self.auth is None:
            return True
        if self.auth == "basic":
            return self._basic_ok(header)
        if not self.accept_tokens:
            return False
        return header.startswith("Bearer ") and header[len("Bearer ") :] in self.tokens

    def _transient(self, request: web.Request) -> Optional[web.Response]:
        remaining = self.failures.get(request.path, 0)
        if remaining > 0:
            self.failures[request.path] = remaining - 1
            return web.Response(status=503, text="try again")
        return None

    async def _manifest(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(request.path)
        name, reference = request.match_info["name"], request.match_info["reference"]
        if not self._authorized(request):
            return self._challenge(request, name)
        failure = self._transient(request)
        if failure is not None:
            return failure
        found = self.manifests.get((name, reference))
        if found is None:
            return web.json_response(
                {"errors": [{"code": "MANIFEST_UNKNOWN", "message": "manifest unknown"}]},
                status=404,
            )
        media_type, body = found
        return web.Response(body=body, headers={"Content-Type": media_type})

    async def _blob(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(request.path)
        name, digest = request.match_info["name"], request.match_info["digest"]
        if not self._authorized(request):
            return self._challenge(request, name)
        failure = self._transient(request)
        if failure is not None:
            return failure
        delay = self.delays.get(request.path)
        if delay:
            await asyncio.sleep(delay)
        data = self.blobs.get(digest)
        if data is None:
            return web.json_response(
                {"errors": [{"code": "BLOB_UNKNOWN", "message": "blob unknown"}]}, status=404
            )
        if digest in self.corrupt:
            middle = len(data) // 2
            data = data[:middle] + bytes([data[middle] ^ 0xFF]) + data[middle + 1 :]
        return web.Response(body=data, headers={"Content-Type": "application/octet-stream"})

    async def _token(self, request: web.Request) -> web.Response:
        self.token_requests += 1
        header = request.headers.get("Authorization", "")
        if header:
            if not self._basic_ok(header):
                return web.Response(status=401, text="bad credentials")
        elif not self.anonymous_tokens:
            return web.Response(status=401, text="anonymous access denied")
        token = secrets.token_hex(8)
        self.tokens.add(token)
        return web.json_response({"token": token, "expires_in": 300})
