"""Layer blob decoding and spooling."""

import logging
import zlib
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

import aiofiles

from ..core.cancellation import CancellationToken
from ..core.types import Descriptor
from ..exceptions import RegistryError

if TYPE_CHECKING:
    from ..core.registry_client import RegistryClient

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


class LayerDecoder:
    """Streaming decompressor for layer blobs.

    gzip (including multi-member streams) is detected from the leading magic
    bytes; anything else is passed through as an uncompressed tar. Output is
    produced in pieces of at most ``max_piece`` bytes.
    """

    def __init__(self, media_type: str = "", max_piece: int = 1024 * 1024) -> None:
        if media_type.endswith("+zstd") or media_type.endswith(".zstd"):
            raise RegistryError(f"Unsupported layer compression: {media_type}")
        self.media_type = media_type
        self.max_piece = max_piece
        self._gzip: Optional[bool] = None
        self._pending = b""
        self._inflater = None

    def feed(self, chunk: bytes) -> Iterator[bytes]:
        """Decode one chunk of the compressed stream.

        Raises:
            zlib.error: If the gzip data is corrupt
        """
        if self._gzip is None:
            self._pending += chunk
            if len(self._pending) < len(GZIP_MAGIC):
                return
            self._gzip = self._pending.startswith(GZIP_MAGIC)
            chunk, self._pending = self._pending, b""

        if not self._gzip:
            if chunk:
                yield chunk
            return

        data = chunk
        while data:
            if self._inflater is None:
                if not data.strip(b"\0"):
                    # zero padding after the last member
                    return
                self._inflater = zlib.decompressobj(16 + zlib.MAX_WBITS)
            while True:
                piece = self._inflater.decompress(data, self.max_piece)
                if piece:
                    yield piece
                if self._inflater.eof:
                    data = self._inflater.unused_data
                    self._inflater = None
                    break
                data = self._inflater.unconsumed_tail
                # a full piece may leave output pending inside zlib
                if not data and len(piece) < self.max_piece:
                    break

    def flush(self) -> Iterator[bytes]:
        """Emit whatever remains once the compressed stream has ended.

        Raises:
            RegistryError: If the gzip stream stops mid-member
        """
        if self._gzip is None:
            if self._pending:
                yield self._pending
            self._pending = b""
            return
        if self._inflater is not None:
            tail = self._inflater.flush()
            if tail:
                yield tail
            if not self._inflater.eof:
                raise RegistryError("Layer gzip stream is truncated")
            self._inflater = None


async def spool_layer(
    client: "RegistryClient",
    descriptor: Descriptor,
    path: Path,
    cancel: Optional[CancellationToken] = None,
) -> Path:
    """Download, verify and decompress a layer into ``path``.

    The whole download is the unit of retry: a transient failure part way
    through truncates the spool file and starts over.

    Returns:
        The spool path, holding the uncompressed layer tar

    Raises:
        DigestMismatchError: If the blob does not match its digest
        NetworkTransientError: If transient failures outlast the retry budget
    """
    if cancel is not None:
        cancel.raise_if_cancelled(f"fetching layer {descriptor.short_digest}")

    async def attempt() -> Path:
        written = 0
        async with aiofiles.open(path, "wb") as fh:
            async for chunk in client.fetch_layer(descriptor):
                await fh.write(chunk)
                written += len(chunk)
        logger.debug(f"Spooled layer {descriptor.short_digest}: {written} bytes uncompressed")
        return path

    try:
        return await client.retry.run(attempt, f"Downloading layer {descriptor.short_digest}")
    except BaseException:
        path.unlink(missing_ok=True)
        raise
