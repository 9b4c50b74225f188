"""Data models for filesystem entries read from and written to tar streams."""

import posixpath
import tarfile
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional

XATTR_PREFIX = "SCHILY.xattr."

# Default metadata for directories implied by deeper paths
SYNTHETIC_DIR_MODE = 0o755


class EntryKind(Enum):
    """Kind of filesystem object a tar member describes."""

    REGULAR = "regular"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    HARDLINK = "hardlink"
    CHAR_DEVICE = "char_device"
    BLOCK_DEVICE = "block_device"
    FIFO = "fifo"


_KIND_TO_TYPE = {
    EntryKind.REGULAR: tarfile.REGTYPE,
    EntryKind.DIRECTORY: tarfile.DIRTYPE,
    EntryKind.SYMLINK: tarfile.SYMTYPE,
    EntryKind.HARDLINK: tarfile.LNKTYPE,
    EntryKind.CHAR_DEVICE: tarfile.CHRTYPE,
    EntryKind.BLOCK_DEVICE: tarfile.BLKTYPE,
    EntryKind.FIFO: tarfile.FIFOTYPE,
}


def entry_kind(member: tarfile.TarInfo) -> Optional[EntryKind]:
    """Map a tar member to an EntryKind, or None for unsupported types."""
    if member.isreg():
        return EntryKind.REGULAR
    if member.isdir():
        return EntryKind.DIRECTORY
    if member.issym():
        return EntryKind.SYMLINK
    if member.islnk():
        return EntryKind.HARDLINK
    if member.ischr():
        return EntryKind.CHAR_DEVICE
    if member.isblk():
        return EntryKind.BLOCK_DEVICE
    if member.isfifo():
        return EntryKind.FIFO
    return None


def normalize_path(name: str) -> Optional[str]:
    """Normalize a tar member name to a relative POSIX path.

    Returns:
        The normalized path, ``""`` for the root itself, or None when the
        name escapes the root

    Examples:
        >>> normalize_path("./usr//bin/../lib/")
        'usr/lib'
        >>> normalize_path("../etc/passwd") is None
        True
    """
    path = posixpath.normpath("/" + name.replace("\\", "/")).lstrip("/")
    # normpath on an absolute path swallows leading "..", so check the raw parts
    depth = 0
    for part in name.replace("\\", "/").split("/"):
        if part == "..":
            depth -= 1
            if depth < 0:
                return None
        elif part not in ("", "."):
            depth += 1
    return path


def parent_paths(path: str) -> list[str]:
    """Ancestors of ``path``, outermost first (``a/b/c`` -> ``a``, ``a/b``)."""
    parts = path.split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


@dataclass(frozen=True)
class ContentSource:
    """Deferred reference to an entry's bytes inside a spooled layer tar."""

    path: Path
    offset: int
    size: int

    def open(self) -> BinaryIO:
        """Open the spool file positioned at the entry's data."""
        fh = open(self.path, "rb")
        fh.seek(self.offset)
        return fh


@dataclass(frozen=True)
class FilesystemEntry:
    """One filesystem object of the merged image view.

    ``path`` is relative and normalized; it is the identity key. Entries with
    ``tombstone`` set record a whiteout and never reach the archive.
    """

    path: str
    kind: EntryKind
    mode: int = 0o644
    uid: int = 0
    gid: int = 0
    uname: str = ""
    gname: str = ""
    mtime: float = 0
    size: int = 0
    linkname: str = ""
    devmajor: int = 0
    devminor: int = 0
    xattrs: dict[str, str] = field(default_factory=dict)
    layer: int = 0
    tombstone: bool = False
    source: Optional[ContentSource] = None

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @classmethod
    def from_tarinfo(
        cls,
        member: tarfile.TarInfo,
        path: str,
        kind: EntryKind,
        layer: int,
        spool_path: Optional[Path] = None,
    ) -> "FilesystemEntry":
        """Build an entry from a tar member of a layer."""
        linkname = member.linkname
        if kind is EntryKind.HARDLINK:
            linkname = normalize_path(linkname) or ""

        source = None
        size = 0
        if kind is EntryKind.REGULAR:
            size = member.size
            if spool_path is not None and size:
                source = ContentSource(spool_path, member.offset_data, size)

        return cls(
            path=path,
            kind=kind,
            mode=member.mode,
            uid=member.uid,
            gid=member.gid,
            uname=member.uname,
            gname=member.gname,
            mtime=member.mtime,
            size=size,
            linkname=linkname,
            devmajor=member.devmajor,
            devminor=member.devminor,
            xattrs={
                key: value
                for key, value in member.pax_headers.items()
                if key.startswith(XATTR_PREFIX)
            },
            layer=layer,
            source=source,
        )

    @classmethod
    def directory(cls, path: str, layer: int = 0) -> "FilesystemEntry":
        """Synthesized directory with default metadata."""
        return cls(path=path, kind=EntryKind.DIRECTORY, mode=SYNTHETIC_DIR_MODE, layer=layer)

    @classmethod
    def whiteout(cls, path: str, layer: int) -> "FilesystemEntry":
        return cls(path=path, kind=EntryKind.REGULAR, layer=layer, tombstone=True)

    def relocated(self, path: str, **changes) -> "FilesystemEntry":
        return replace(self, path=path, **changes)

    def to_tarinfo(self) -> tarfile.TarInfo:
        """Header for writing this entry to an archive."""
        info = tarfile.TarInfo(self.path)
        info.type = _KIND_TO_TYPE[self.kind]
        info.mode = self.mode
        info.uid = self.uid
        info.gid = self.gid
        info.uname = self.uname
        info.gname = self.gname
        info.mtime = self.mtime
        info.size = self.size if self.kind is EntryKind.REGULAR else 0
        info.linkname = self.linkname
        info.devmajor = self.devmajor
        info.devminor = self.devminor
        if self.xattrs:
            info.pax_headers = dict(self.xattrs)
        return info
