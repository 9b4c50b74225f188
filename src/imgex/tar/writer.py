"""Streaming tar / tar.gz writer for merged filesystem entries."""

import gzip
import logging
import tarfile
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Union

from ..core.cancellation import CancellationToken
from ..exceptions import ArchiveWriteError
from ..progress import ProgressTracker
from .models import EntryKind, FilesystemEntry

logger = logging.getLogger(__name__)

COMPRESSED_SUFFIXES = (".gz", ".tgz")

# ValueError is what a closed file object raises on write
WRITE_ERRORS = (OSError, ValueError, tarfile.TarError)


def output_path_for(path: Union[str, Path], compress: bool) -> Path:
    """Destination path for an archive, adding ``.gz`` when compressing.

    Examples:
        >>> output_path_for("rootfs.tar", True)
        PosixPath('rootfs.tar.gz')
        >>> output_path_for("rootfs.tar.gz", True)
        PosixPath('rootfs.tar.gz')
    """
    path = Path(path)
    if compress and not path.name.endswith(COMPRESSED_SUFFIXES):
        return path.with_name(path.name + ".gz")
    return path


def open_output(path: Path) -> BinaryIO:
    """Create (or truncate) the archive file.

    Raises:
        ArchiveWriteError: If the file cannot be opened for writing
    """
    try:
        return open(path, "wb")
    except OSError as e:
        raise ArchiveWriteError(f"Cannot open {path} for writing: {e}") from e


class CountingWriter:
    """Write-only file wrapper counting the bytes that reach the destination."""

    def __init__(self, fileobj: BinaryIO) -> None:
        self.fileobj = fileobj
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        self.fileobj.write(data)
        self.bytes_written += len(data)
        return len(data)

    def flush(self) -> None:
        self.fileobj.flush()


class _ProgressReader:
    """Read-only wrapper reporting content throughput in fixed intervals."""

    def __init__(self, fileobj: BinaryIO, writer: "ArchiveWriter") -> None:
        self.fileobj = fileobj
        self.writer = writer

    def read(self, size: int = -1) -> bytes:
        data = self.fileobj.read(size)
        self.writer._content_written(len(data))
        return data


class ArchiveWriter:
    """Writes entries one at a time to a tar stream, optionally gzip-wrapped.

    The archive is only finalized by :meth:`close`; a writer abandoned after
    an error leaves the destination truncated.
    """

    def __init__(
        self,
        destination: BinaryIO,
        compress: bool = False,
        compress_level: int = 6,
        progress: Optional[ProgressTracker] = None,
        progress_interval: int = 64 * 1024 * 1024,
    ) -> None:
        self.sink = CountingWriter(destination)
        self.progress = progress
        self.progress_interval = progress_interval
        self.entries_written = 0
        self.content_bytes = 0
        self._since_report = 0
        self._gzip: Optional[gzip.GzipFile] = None

        stream: Union[CountingWriter, gzip.GzipFile] = self.sink
        try:
            if compress:
                # no timestamp or file name in the gzip header
                self._gzip = gzip.GzipFile(
                    filename="",
                    mode="wb",
                    compresslevel=compress_level,
                    fileobj=self.sink,  # type: ignore[arg-type]
                    mtime=0,
                )
                stream = self._gzip
            self._tar = tarfile.open(
                fileobj=stream,  # type: ignore[arg-type]
                mode="w|",
                format=tarfile.PAX_FORMAT,
            )
        except WRITE_ERRORS as e:
            raise ArchiveWriteError(f"Failed to start archive: {e}") from e

    @property
    def bytes_written(self) -> int:
        return self.sink.bytes_written

    def _content_written(self, count: int) -> None:
        self.content_bytes += count
        self._since_report += count
        if self.progress is not None and self._since_report >= self.progress_interval:
            self._since_report = 0
            self.progress.note(f"Writing archive: {self.content_bytes:,} bytes of content")

    def add(self, entry: FilesystemEntry) -> None:
        """Append one entry header and its content."""
        info = entry.to_tarinfo()
        try:
            if entry.kind is EntryKind.REGULAR and entry.size:
                if entry.source is None:
                    raise ArchiveWriteError(f"No content available for {entry.path}")
                with entry.source.open() as content:
                    self._tar.addfile(info, _ProgressReader(content, self))  # type: ignore[arg-type]
            else:
                self._tar.addfile(info)
        except WRITE_ERRORS as e:
            raise ArchiveWriteError(f"Failed to write {entry.path}: {e}") from e
        self.entries_written += 1

    def close(self) -> int:
        """Finalize the archive and return the bytes written to the destination."""
        try:
            self._tar.close()
            if self._gzip is not None:
                self._gzip.close()
            self.sink.flush()
        except WRITE_ERRORS as e:
            raise ArchiveWriteError(f"Failed to finalize archive: {e}") from e
        return self.bytes_written


def write_archive(
    entries: Iterable[FilesystemEntry],
    destination: BinaryIO,
    *,
    compress: bool = False,
    compress_level: int = 6,
    progress: Optional[ProgressTracker] = None,
    progress_interval: int = 64 * 1024 * 1024,
    cancel: Optional[CancellationToken] = None,
) -> int:
    """Stream entries into ``destination`` as tar (or tar.gz).

    Entries are written in the order given. Cancellation is checked before
    every entry and leaves the destination truncated.

    Returns:
        Number of bytes written to ``destination``

    Raises:
        ArchiveWriteError: If the destination cannot be written
        ExportCancelledError: If ``cancel`` fires part way through
    """
    writer = ArchiveWriter(
        destination,
        compress=compress,
        compress_level=compress_level,
        progress=progress,
        progress_interval=progress_interval,
    )
    for entry in entries:
        if cancel is not None:
            cancel.raise_if_cancelled(f"writing {entry.path}")
        writer.add(entry)
    total = writer.close()
    logger.info(
        f"Wrote {writer.entries_written} entries, {total:,} bytes"
        f"{' (gzip)' if compress else ''}"
    )
    return total

