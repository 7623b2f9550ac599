from __future__ import annotations

import os
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional, Set, Tuple, Union

from .constants import DEFAULT_CHUNK_SIZE
from .encryption import EncryptionParams
from .entry import PATH_ENCODING, PATH_ERRORS, Entry, EntryKind, classify, entry_from_stat
from .errors import ShortTransferError, TraversalError, UnsupportedEntryError
from .pathutil import PathLike, join_archive_path, norm_path
from .walk import iter_tree
from .writer import ArchiveWriter


UNSUPPORTED_POLICIES = ("skip", "error")


def _archive_name(fs_path: str, arc_path: str) -> str:
    """Validated archive path for a node, or TraversalError naming the node."""
    try:
        name = norm_path(arc_path)
        name.encode(PATH_ENCODING, PATH_ERRORS)
    except ValueError as exc:
        raise TraversalError(fs_path, f"name cannot be stored in an archive ({exc})") from exc
    if not name:
        raise TraversalError(fs_path, "name cannot be stored in an archive (empty path)")
    return name


@dataclass
class PackStats:
    files: int = 0
    dirs: int = 0
    skipped: int = 0
    bytes: int = 0


class Packer:
    """Feed filesystem nodes into an open ArchiveWriter.

    Args:
        writer: Destination archive; must already be open.
        unsupported: What to do with nodes that are neither regular files nor
            directories (symlinks, sockets, FIFOs, devices): "skip" drops them
            silently, "error" raises UnsupportedEntryError.
        on_entry: Called with each Entry after it has been fully written.
    """

    def __init__(
        self,
        writer: ArchiveWriter,
        *,
        unsupported: str = "skip",
        on_entry: Optional[Callable[[Entry], None]] = None,
    ):
        if unsupported not in UNSUPPORTED_POLICIES:
            raise ValueError(f"unsupported must be one of {UNSUPPORTED_POLICIES}")
        self.writer = writer
        self.unsupported = unsupported
        self.on_entry = on_entry
        self.stats = PackStats()
        self.exclude: Set[Tuple[int, int]] = set()

    def add_tree(self, root: PathLike, arcname: Optional[str] = None) -> PackStats:
        """Archive ``root`` and, when it is a directory, everything below it.

        Directory roots are stored by content (children relative to the root)
        unless ``arcname`` is given, in which case the root itself becomes a
        directory entry of that name. File roots are stored as ``arcname`` or
        their basename.
        """
        root = os.fspath(root)
        prefix = ""
        for node in iter_tree(root):
            if node.rel:
                self.add_node(node.path, join_archive_path(prefix, node.rel), node.st)
                continue
            kind, _ = classify(node.st)
            if kind is EntryKind.DIRECTORY:
                prefix = norm_path(arcname) if arcname else ""
                if prefix:
                    self.add_node(node.path, prefix, node.st)
            else:
                name = norm_path(arcname) if arcname else norm_path(os.path.basename(os.path.normpath(root)))
                self.add_node(node.path, name, node.st)
        return self.stats

    def add_node(self, fs_path: str, arc_path: str, st: os.stat_result) -> Optional[Entry]:
        kind, desc = classify(st)
        if kind is EntryKind.UNSUPPORTED:
            if self.unsupported == "error":
                raise UnsupportedEntryError(fs_path, desc)
            self.stats.skipped += 1
            return None
        if (st.st_dev, st.st_ino) in self.exclude:
            self.stats.skipped += 1
            return None
        entry = entry_from_stat(_archive_name(fs_path, arc_path), st)
        if kind is EntryKind.FILE:
            self._add_file(fs_path, entry)
            self.stats.files += 1
            self.stats.bytes += entry.size
        else:
            self.writer.write_header(entry)
            self.stats.dirs += 1
        if self.on_entry is not None:
            self.on_entry(entry)
        return entry

    def _add_file(self, fs_path: str, entry: Entry):
        """Stream exactly ``entry.size`` bytes of ``fs_path`` behind its header."""
        try:
            fh = open(fs_path, "rb")
        except OSError as exc:
            raise TraversalError(fs_path, f"cannot open: {exc.strerror or exc}") from exc
        with fh:
            self.writer.write_header(entry)
            remaining = entry.size
            bufsize = self.writer.chunk_size
            while remaining:
                try:
                    buf = fh.read(min(bufsize, remaining))
                except OSError as exc:
                    raise TraversalError(fs_path, f"read failed: {exc.strerror or exc}") from exc
                if not buf:
                    raise ShortTransferError(
                        entry.path, entry.size, entry.size - remaining, "source file shrank while packing"
                    )
                self.writer.write(buf)
                remaining -= len(buf)


def pack(
    root: PathLike,
    out: Union[PathLike, BinaryIO],
    *,
    arcname: Optional[str] = None,
    password: Optional[str] = None,
    unsupported: str = "skip",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    kdf_params: Optional[EncryptionParams] = None,
    on_entry: Optional[Callable[[Entry], None]] = None,
) -> PackStats:
    """Serialize the tree at ``root`` into the archive ``out``.

    ``out`` is a path or a writable binary stream; a stream is left open.
    On error the archive is left unterminated (no END record), so a later
    unpack reports it as incomplete instead of silently succeeding.
    """
    root = os.fspath(root)
    try:
        root_st = os.lstat(root)
    except OSError as exc:
        raise TraversalError(root, f"cannot stat: {exc.strerror or exc}") from exc
    if not hasattr(out, "write"):
        try:
            out_st = os.stat(out)  # type: ignore[arg-type]
        except FileNotFoundError:
            out_st = None
        if out_st is not None and (out_st.st_dev, out_st.st_ino) == (root_st.st_dev, root_st.st_ino):
            raise TraversalError(root, "archive output is the input itself")
    with ArchiveWriter(out, password=password, chunk_size=chunk_size, kdf_params=kdf_params) as w:
        packer = Packer(w, unsupported=unsupported, on_entry=on_entry)
        if not hasattr(out, "write"):
            # never archive the archive itself
            ost = os.fstat(w.f.fileno())  # type: ignore[union-attr]
            packer.exclude.add((ost.st_dev, ost.st_ino))
        return packer.add_tree(root, arcname)
