"""Export job orchestration: resolve, download, merge, write."""

import asyncio
import functools
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Callable, ContextManager, Mapping, Optional, Union

import aiofiles.tempfile

from ..core.auth import parse_auth_payload, resolve_credential
from ..core.cancellation import CancellationToken
from ..core.config import ExportConfig
from ..core.reference import parse_reference
from ..core.registry_client import RegistryClient
from ..core.types import Manifest
from ..exceptions import RegistryError
from ..progress import ProgressCallback, ProgressSink, ProgressTracker, as_progress_sink
from ..tar.merge import LayerMerger
from ..tar.writer import open_output, output_path_for, write_archive
from .layers import spool_layer

logger = logging.getLogger(__name__)

AuthPayload = Union[str, Mapping[str, Any], None]


@dataclass
class ExportOptions:
    """Per-call export options.

    Attributes:
        compress: gzip the archive (and add a ``.gz`` suffix to file outputs)
        progress: Progress sink or ``(current, total, description)`` callable
        cancel: Token checked before each layer fetch, merge and entry write
    """

    compress: bool = False
    progress: Union[ProgressSink, ProgressCallback, None] = None
    cancel: Optional[CancellationToken] = None


class ExportJob:
    """One export of one image reference.

    The job owns its credential, manifest and merged tree; nothing is shared
    with other jobs except the read-only config.
    """

    def __init__(
        self,
        reference: str,
        auth: AuthPayload = None,
        options: Optional[ExportOptions] = None,
        config: Optional[ExportConfig] = None,
    ) -> None:
        self.image = parse_reference(reference)
        self.credential = parse_auth_payload(auth)
        self.options = options or ExportOptions()
        self.config = config or ExportConfig()
        self.cancel = self.options.cancel or CancellationToken()
        self.progress = as_progress_sink(self.options.progress)

    async def _client(self) -> RegistryClient:
        loop = asyncio.get_event_loop()
        credential = await loop.run_in_executor(
            None,
            resolve_credential,
            self.credential,
            self.image.registry,
            self.config.resolved_docker_config_path(),
        )
        return RegistryClient(self.image, credential, self.config)

    async def get_config(self) -> bytes:
        """Resolve the manifest and return the config blob verbatim."""
        async with await self._client() as client:
            self.cancel.raise_if_cancelled("resolving manifest")
            manifest = await client.resolve()
            self.cancel.raise_if_cancelled("fetching config")
            return await client.fetch_config(manifest.config)

    async def get_config_text(self) -> str:
        """Config blob decoded as JSON text."""
        blob = await self.get_config()
        try:
            return blob.decode("utf-8")
        except UnicodeDecodeError as e:
            raise RegistryError(f"Image config is not UTF-8 text: {e}") from e

    async def export_to_path(self, output_path: Union[str, Path]) -> Path:
        """Export the flattened filesystem to a file.

        The file is only created once every layer has been downloaded and
        verified, so a failed download never leaves an archive behind.

        Returns:
            The path written, ``.gz``-suffixed when compressing
        """
        path = output_path_for(output_path, self.options.compress)
        await self._export(functools.partial(open_output, path))
        return path

    async def export_to_writer(self, writer: BinaryIO) -> int:
        """Export the flattened filesystem into an open binary file object.

        Returns:
            Bytes written to ``writer``
        """
        return await self._export(lambda: nullcontext(writer))

    async def _export(self, open_destination: Callable[[], ContextManager[BinaryIO]]) -> int:
        loop = asyncio.get_event_loop()
        async with await self._client() as client:
            self.cancel.raise_if_cancelled("resolving manifest")
            manifest = await client.resolve()
            tracker = ProgressTracker(self.progress, len(manifest.layers) + 2)
            tracker.advance(f"Resolved manifest {manifest.digest}")

            async with aiofiles.tempfile.TemporaryDirectory(prefix="imgex-") as workdir:
                merger = await self._download_and_merge(client, manifest, Path(workdir), tracker)

                def write() -> int:
                    with open_destination() as destination:
                        return write_archive(
                            merger.entries(),
                            destination,
                            compress=self.options.compress,
                            compress_level=self.config.compress_level,
                            progress=tracker,
                            progress_interval=self.config.progress_interval,
                            cancel=self.cancel,
                        )

                self.cancel.raise_if_cancelled("writing archive")
                written = await loop.run_in_executor(None, write)

        tracker.advance("Archive written")
        logger.info(f"Exported {self.image} ({written:,} bytes)")
        return written

    async def _download_and_merge(
        self,
        client: RegistryClient,
        manifest: Manifest,
        workdir: Path,
        tracker: ProgressTracker,
    ) -> LayerMerger:
        """Fetch layers in parallel and merge them strictly bottom to top."""
        loop = asyncio.get_event_loop()
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_downloads))

        async def fetch(index: int) -> Path:
            async with semaphore:
                return await spool_layer(
                    client,
                    manifest.layers[index],
                    workdir / f"layer-{index}.tar",
                    self.cancel,
                )

        tasks = [asyncio.ensure_future(fetch(i)) for i in range(len(manifest.layers))]
        merger = LayerMerger()
        try:
            for index, task in enumerate(tasks):
                layer_path = await task
                self.cancel.raise_if_cancelled(f"merging layer {index + 1}")
                await loop.run_in_executor(None, merger.apply_layer, layer_path, index)
                tracker.advance(
                    f"Applied layer {index + 1}/{len(tasks)} "
                    f"{manifest.layers[index].short_digest}"
                )
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return merger
