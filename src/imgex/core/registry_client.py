"""Registry API v2 async client for pulling manifests and blobs."""

import json
import logging
import zlib
from typing import AsyncIterator, Optional

import aiohttp

from ..exceptions import (
    AuthenticationFailedError,
    ImageNotFoundError,
    ManifestError,
    RegistryError,
)
from ..operations.layers import LayerDecoder
from ..operations.manifests import (
    MANIFEST_ACCEPT,
    is_index,
    load_manifest_json,
    manifest_media_type,
    parse_manifest,
    select_platform,
)
from ..utils.digest import DigestVerifier, calculate_digest, validate_digest, verify_digest
from .auth import AnonymousCredential, Credential, RegistryAuthenticator
from .config import ExportConfig
from .retry import RetryPolicy, TransientError
from .session import create_session, is_transient_status
from .types import Descriptor, ImageReference, Manifest

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NAME_UNKNOWN", "MANIFEST_UNKNOWN", "BLOB_UNKNOWN"}


def _error_codes(body: str) -> set[str]:
    """Collect ``errors[].code`` values from a registry error body."""
    try:
        data = json.loads(body)
    except ValueError:
        return set()
    if not isinstance(data, dict):
        return set()
    return {
        error.get("code", "")
        for error in data.get("errors") or []
        if isinstance(error, dict)
    }


class RegistryClient:
    """Pull-side client for one repository of an OCI/Docker v2 registry.

    One client serves one export job: it owns the job's authentication state
    (cached token included) and is discarded afterwards.
    """

    def __init__(
        self,
        reference: ImageReference,
        credential: Optional[Credential] = None,
        config: Optional[ExportConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            reference: Image being pulled
            credential: Credential for the registry host (anonymous if None)
            config: Retry, timeout and platform settings
            session: Existing session to reuse; one is created otherwise
        """
        self.reference = reference
        self.credential = credential or AnonymousCredential()
        self.config = config or ExportConfig()
        scheme = self.config.scheme_for(reference.api_host)
        self.registry_url = f"{scheme}://{reference.api_host}"
        self.retry = RetryPolicy(self.config)
        self.session = session
        self._owns_session = session is None
        self.auth: Optional[RegistryAuthenticator] = None

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        if not self.session:
            self.session = await create_session(self.config)
        self.auth = RegistryAuthenticator(
            self.credential, self.session, self.reference.repository
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session if this client created it."""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    def _url(self, kind: str, reference: str) -> str:
        return f"{self.registry_url}/v2/{self.reference.repository}/{kind}/{reference}"

    async def _open(self, url: str, accept: Optional[str] = None) -> aiohttp.ClientResponse:
        """Issue one GET, answering auth challenges; return a 200 response.

        The caller must release the response. Allows the initial challenge
        plus one re-resolution of credentials before giving up.

        Raises:
            AuthenticationFailedError: If the registry keeps refusing access
            ImageNotFoundError: On 404 or a NAME/MANIFEST/BLOB_UNKNOWN error
            TransientError: On 429 or 5xx
            RegistryError: On any other unexpected status
        """
        if self.session is None or self.auth is None:
            raise RegistryError("RegistryClient used outside its async context")

        challenges_left = 1 if self.auth.authorized else 2
        while True:
            headers = {"Accept": accept} if accept else {}
            headers.update(self.auth.headers())
            resp = await self.session.get(url, headers=headers)

            if resp.status in (401, 403):
                challenge = resp.headers.get("WWW-Authenticate")
                resp.release()
                if challenges_left == 0:
                    raise AuthenticationFailedError(
                        f"registry {self.reference.registry} refused access to "
                        f"{self.reference.repository} (HTTP {resp.status})"
                    )
                challenges_left -= 1
                logger.debug(f"HTTP {resp.status} for {url}, resolving credentials")
                await self.auth.handle_challenge(challenge, resp.status)
                continue

            if resp.status == 200:
                return resp

            body = await resp.text(errors="replace")
            resp.release()
            if is_transient_status(resp.status):
                raise TransientError(f"HTTP {resp.status} from {url}")
            if resp.status == 404 or (
                resp.status == 400 and _error_codes(body) & _NOT_FOUND_CODES
            ):
                raise ImageNotFoundError(f"{url} not found (HTTP {resp.status})")
            raise RegistryError(f"Unexpected HTTP {resp.status} from {url}: {body[:200]}")

    async def _get_bytes(
        self, url: str, accept: Optional[str], description: str
    ) -> tuple[Optional[str], bytes]:
        async def attempt() -> tuple[Optional[str], bytes]:
            resp = await self._open(url, accept)
            async with resp:
                return resp.headers.get("Content-Type"), await resp.read()

        return await self.retry.run(attempt, description)

    async def get_manifest(self, reference: str) -> tuple[Optional[str], bytes]:
        """Fetch a raw manifest or index document.

        Documents requested by digest are verified against it.

        Returns:
            Tuple of (content type, body)
        """
        content_type, body = await self._get_bytes(
            self._url("manifests", reference),
            MANIFEST_ACCEPT,
            f"Fetching manifest {reference}",
        )
        if validate_digest(reference):
            verify_digest(body, reference, "manifest")
        return content_type, body

    async def resolve(self) -> Manifest:
        """Resolve the reference to a single-platform manifest.

        Multi-platform indexes are narrowed to the configured target platform.

        Raises:
            NoMatchingPlatformError: If the index has no matching entry
            ManifestError: If the manifest type is unsupported
        """
        reference = self.reference.reference
        content_type, body = await self.get_manifest(reference)
        data = load_manifest_json(body)
        media_type = manifest_media_type(data, content_type)
        digest = self.reference.digest or calculate_digest(body)

        if is_index(media_type):
            descriptor = select_platform(
                data, self.config.target_platform, str(self.reference)
            )
            content_type, body = await self.get_manifest(descriptor.digest)
            data = load_manifest_json(body)
            media_type = manifest_media_type(data, content_type or descriptor.media_type)
            if is_index(media_type):
                raise ManifestError(f"Nested index {descriptor.digest} is not supported")
            digest = descriptor.digest

        manifest = parse_manifest(data, media_type, digest)
        logger.info(
            f"Resolved {self.reference} to {manifest.digest} "
            f"({len(manifest.layers)} layers)"
        )
        return manifest

    async def fetch_config(self, descriptor: Descriptor) -> bytes:
        """Fetch and verify the config blob.

        Returns:
            Config JSON bytes, verbatim
        """
        _, body = await self._get_bytes(
            self._url("blobs", descriptor.digest),
            None,
            f"Fetching config {descriptor.short_digest}",
        )
        verify_digest(body, descriptor.digest, "config")
        return body

    async def fetch_layer(self, descriptor: Descriptor) -> AsyncIterator[bytes]:
        """Stream a layer blob as decompressed tar bytes.

        This is a single attempt; callers needing retry restart the stream.
        The compressed bytes are hashed as they arrive and checked once the
        stream ends, so the stream is only trustworthy when fully consumed.

        Yields:
            Chunks of the uncompressed layer tar

        Raises:
            DigestMismatchError: If the blob does not match its digest
            RegistryError: If the blob cannot be decompressed
        """
        decoder = LayerDecoder(descriptor.media_type, self.config.chunk_size)
        verifier = DigestVerifier(descriptor.digest, f"layer {descriptor.short_digest}")
        resp = await self._open(self._url("blobs", descriptor.digest))
        decode_error: Optional[zlib.error] = None
        try:
            async for chunk in resp.content.iter_chunked(self.config.chunk_size):
                verifier.update(chunk)
                if decode_error is not None:
                    continue
                try:
                    for piece in decoder.feed(chunk):
                        yield piece
                except zlib.error as e:
                    decode_error = e
        finally:
            resp.release()

        verifier.verify()
        if decode_error is not None:
            raise RegistryError(
                f"Layer {descriptor.short_digest} is not valid gzip: {decode_error}"
            )
        for piece in decoder.flush():
            yield piece
