"""Overlay merge of image layers with OCI whiteout semantics.

Layers are applied bottom to top into a single path -> entry map. A path's
latest state is either a content entry or a tombstone left by a whiteout:

- ``.wh.<name>`` removes ``<name>`` (and everything below it) from lower layers
- ``.wh..wh..opq`` removes every lower-layer child of its directory
- other ``.wh..wh.*`` entries are AUFS metadata and are ignored

Whiteouts never remove entries of their own layer.
"""

import logging
import posixpath
import tarfile
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ..core.cancellation import CancellationToken
from ..exceptions import RegistryError
from .models import EntryKind, FilesystemEntry, entry_kind, normalize_path, parent_paths

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
WHITEOUT_META_PREFIX = ".wh..wh."
OPAQUE_MARKER = ".wh..wh..opq"


class LayerMerger:
    """Accumulates layers into a merged filesystem tree."""

    def __init__(self) -> None:
        self._entries: dict[str, FilesystemEntry] = {}
        self.layers_applied = 0

    def apply_layer(self, layer_path: Path, index: Optional[int] = None) -> None:
        """Apply one uncompressed layer tar on top of the layers seen so far.

        Content of regular files is not read; entries keep a reference into
        ``layer_path``, which must stay in place until the archive is written.

        Raises:
            RegistryError: If the layer is not a readable tar archive
        """
        if index is None:
            index = self.layers_applied
        try:
            with tarfile.open(layer_path, "r:") as tar:
                for member in tar:
                    self._apply_member(member, index, Path(layer_path))
        except tarfile.TarError as e:
            raise RegistryError(f"Layer {index} is not a valid tar archive: {e}") from e
        self.layers_applied += 1
        logger.debug(f"Applied layer {index}: {len(self._entries)} paths tracked")

    def _apply_member(self, member: tarfile.TarInfo, layer: int, spool_path: Path) -> None:
        path = normalize_path(member.name)
        if path is None:
            logger.warning(f"Skipping entry outside the image root: {member.name!r}")
            return
        if not path:
            return

        parent, _, base = path.rpartition("/")
        if base == OPAQUE_MARKER:
            logger.debug(f"Opaque directory {parent or '/'} in layer {layer}")
            self._drop_children(parent, below_layer=layer)
            return
        if any(part.startswith(WHITEOUT_META_PREFIX) for part in path.split("/")):
            return
        if base.startswith(WHITEOUT_PREFIX):
            self._whiteout(posixpath.join(parent, base[len(WHITEOUT_PREFIX) :]), layer)
            return

        kind = entry_kind(member)
        if kind is None:
            logger.warning(f"Skipping unsupported tar entry type {member.type!r}: {path}")
            return
        if member.issparse():
            logger.warning(f"Skipping sparse file {path}")
            return

        entry = FilesystemEntry.from_tarinfo(member, path, kind, layer, spool_path)
        self._put(entry)

    def _put(self, entry: FilesystemEntry) -> None:
        for ancestor in parent_paths(entry.path):
            existing = self._entries.get(ancestor)
            if existing is not None and not existing.tombstone and not existing.is_dir:
                self._entries[ancestor] = FilesystemEntry.directory(ancestor, entry.layer)

        existing = self._entries.get(entry.path)
        if existing is not None and existing.is_dir and not existing.tombstone and not entry.is_dir:
            self._drop_children(entry.path)
        self._entries[entry.path] = entry

    def _whiteout(self, target: str, layer: int) -> None:
        existing = self._entries.get(target)
        if existing is not None and existing.layer == layer and not existing.tombstone:
            return
        self._entries[target] = FilesystemEntry.whiteout(target, layer)
        self._drop_children(target, below_layer=layer)

    def _drop_children(self, directory: str, below_layer: Optional[int] = None) -> None:
        prefix = f"{directory}/" if directory else ""
        doomed = [
            path
            for path, entry in self._entries.items()
            if path.startswith(prefix)
            and path != directory
            and (below_layer is None or entry.layer < below_layer)
        ]
        for path in doomed:
            del self._entries[path]

    def entries(self) -> Iterator[FilesystemEntry]:
        """Yield the merged tree in ascending path order.

        Tombstones are dropped, hardlinks to paths that did not survive are
        dropped, and missing parent directories are synthesized.
        """
        tree = {path: entry for path, entry in self._entries.items() if not entry.tombstone}
        _drop_dangling_hardlinks(tree)

        for path in list(tree):
            for ancestor in parent_paths(path):
                if ancestor not in tree:
                    tree[ancestor] = FilesystemEntry.directory(ancestor)

        _order_hardlinks(tree)
        for path in sorted(tree):
            yield tree[path]


def _link_root(tree: dict[str, FilesystemEntry], path: str) -> Optional[str]:
    """Follow a hardlink chain to the entry holding content.

    Returns None when the chain ends at a missing path, a directory or loops.
    """
    seen = {path}
    entry = tree[path]
    while entry.kind is EntryKind.HARDLINK:
        path = entry.linkname
        if path in seen or path not in tree:
            return None
        seen.add(path)
        entry = tree[path]
    return None if entry.is_dir else path


def _drop_dangling_hardlinks(tree: dict[str, FilesystemEntry]) -> None:
    for path, entry in list(tree.items()):
        if entry.kind is EntryKind.HARDLINK and _link_root(tree, path) is None:
            logger.debug(f"Dropping hardlink {path} -> {entry.linkname}: target removed")
            del tree[path]


def _order_hardlinks(tree: dict[str, FilesystemEntry]) -> None:
    """Make the first path of every hardlink group carry the content.

    Archives are written in path order, and a hardlink can only be extracted
    after the file it points to.
    """
    groups: dict[str, list[str]] = {}
    for path, entry in tree.items():
        if entry.kind is EntryKind.HARDLINK:
            root = _link_root(tree, path)
            groups.setdefault(root, []).append(path)

    for root, links in groups.items():
        first = min(links + [root])
        content = tree[root]
        for path in links + [root]:
            if path == first:
                tree[path] = content.relocated(path)
            else:
                tree[path] = content.relocated(
                    path,
                    kind=EntryKind.HARDLINK,
                    linkname=first,
                    size=0,
                    source=None,
                )


def merge_layers(
    layer_paths: Iterable[Path], cancel: Optional[CancellationToken] = None
) -> Iterator[FilesystemEntry]:
    """Merge uncompressed layer tars (bottom first) and yield the result.

    Layer files must stay in place until the yielded entries are consumed.
    """
    merger = LayerMerger()
    for index, layer_path in enumerate(layer_paths):
        if cancel is not None:
            cancel.raise_if_cancelled(f"merging layer {index}")
        merger.apply_layer(layer_path, index)
    yield from merger.entries()
