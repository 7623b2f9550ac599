from __future__ import annotations

import os
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterable, List, Optional, Union

from .constants import COPY_BUFSIZE, DEFAULT_DIR_MODE, FILE_PERM_MASK
from .entry import Entry
from .errors import ArchiveFormatError, PathConflictError, ShortTransferError
from .pathutil import PathLike, destination_path, is_selected, norm_path
from .reader import ArchiveReader


EXISTS_POLICIES = ("overwrite", "skip", "rename", "fail")


@dataclass
class UnpackStats:
    files: int = 0
    dirs: int = 0
    skipped: int = 0
    renamed: int = 0
    bytes: int = 0


def next_nonconflicting_path(path: str) -> str:
    """First of ``path``, ``name (1).ext``, ``name (2).ext``... that does not exist."""
    if not os.path.lexists(path):
        return path
    base_dir = os.path.dirname(path)
    root, ext = os.path.splitext(os.path.basename(path))
    i = 1
    while True:
        candidate = os.path.join(base_dir, f"{root} ({i}){ext}")
        if not os.path.lexists(candidate):
            return candidate
        i += 1


class Unpacker:
    """Materialize the entries of an open ArchiveReader under ``dest``.

    Each header is followed by exactly one of: directory creation, or file
    creation, payload copy and permission application, in that order. The
    first failure aborts the run; entries already restored stay on disk.

    Args:
        reader: Source archive; must already be open.
        dest: Destination root; "" means the current directory.
        exists: Policy for file entries whose destination already exists,
            including a path repeated within one archive. "overwrite"
            truncates (an existing directory is never replaced), "skip" keeps
            the existing file, "rename" writes ``name (n).ext`` instead and
            "fail" raises PathConflictError.
        paths: Optional archive paths to restore; entries equal to or nested
            under one of them are restored, all others are skipped.
        preserve_mtime: Restore file modification times.
        on_entry: Called with (entry, filesystem path) after each restore.
        on_skip: Called with (entry, reason) for each skipped entry.
    """

    def __init__(
        self,
        reader: ArchiveReader,
        dest: PathLike = "",
        *,
        exists: str = "overwrite",
        paths: Optional[Iterable[str]] = None,
        preserve_mtime: bool = True,
        on_entry: Optional[Callable[[Entry, str], None]] = None,
        on_skip: Optional[Callable[[Entry, str], None]] = None,
    ):
        if exists not in EXISTS_POLICIES:
            raise ValueError(f"exists must be one of {EXISTS_POLICIES}")
        self.reader = reader
        self.dest = os.fspath(dest)
        self.exists = exists
        self.wanted: Optional[List[str]] = [norm_path(p) for p in paths] if paths else None
        self.preserve_mtime = preserve_mtime
        self.on_entry = on_entry
        self.on_skip = on_skip
        self.stats = UnpackStats()

    def run(self) -> UnpackStats:
        if self.dest:
            os.makedirs(self.dest, DEFAULT_DIR_MODE, exist_ok=True)
        for entry in self.reader:
            if self.wanted is not None and not is_selected(entry.path, self.wanted):
                self._skip(entry, "not selected")
                continue
            try:
                dst = destination_path(self.dest, entry.path)
            except ValueError as exc:
                raise ArchiveFormatError(f"{entry.path}: {exc}") from exc
            if entry.is_dir:
                self._restore_dir(entry, dst)
            else:
                self._restore_file(entry, dst)
        return self.stats

    def _skip(self, entry: Entry, reason: str):
        self.stats.skipped += 1
        if self.on_skip is not None:
            self.on_skip(entry, reason)

    def _restore_dir(self, entry: Entry, dst: str):
        if os.path.islink(dst) or (os.path.lexists(dst) and not os.path.isdir(dst)):
            raise PathConflictError(entry.path, "exists and is not a directory")
        # Declared directory modes are not applied; only existence is guaranteed
        os.makedirs(dst, DEFAULT_DIR_MODE, exist_ok=True)
        self.stats.dirs += 1
        if self.on_entry is not None:
            self.on_entry(entry, dst)

    def _restore_file(self, entry: Entry, dst: str):
        parent = os.path.dirname(dst)
        if parent:
            os.makedirs(parent, DEFAULT_DIR_MODE, exist_ok=True)
        target = dst
        if os.path.lexists(dst):
            if self.exists == "skip":
                # payload is drained by the reader on the next header
                self._skip(entry, "exists")
                return
            if self.exists == "fail":
                raise PathConflictError(entry.path, "destination exists")
            if self.exists == "rename":
                target = next_nonconflicting_path(dst)
                self.stats.renamed += 1
            elif os.path.isdir(dst) and not os.path.islink(dst):
                raise PathConflictError(entry.path, "cannot overwrite directory with file")
            else:
                # a new inode, never the old one truncated in place
                os.unlink(dst)
        self._copy_payload(entry, target)
        os.chmod(target, entry.mode & FILE_PERM_MASK)
        if self.preserve_mtime and entry.mtime_sec is not None:
            mtime_ns = entry.mtime_sec * 1_000_000_000 + (entry.mtime_nsec or 0)
            os.utime(target, ns=(os.stat(target).st_atime_ns, mtime_ns))
        self.stats.files += 1
        self.stats.bytes += entry.size
        if self.on_entry is not None:
            self.on_entry(entry, target)

    def _copy_payload(self, entry: Entry, target: str):
        written = 0
        with open(target, "wb") as wf:
            while True:
                buf = self.reader.read(COPY_BUFSIZE)
                if not buf:
                    break
                n = wf.write(buf)
                if n != len(buf):
                    raise ShortTransferError(entry.path, entry.size, written + (n or 0), "short write")
                written += n
        if written != entry.size:
            raise ShortTransferError(entry.path, entry.size, written)


def unpack(
    src: Union[PathLike, BinaryIO],
    dest: PathLike = "",
    *,
    password: Optional[str] = None,
    exists: str = "overwrite",
    paths: Optional[Iterable[str]] = None,
    preserve_mtime: bool = True,
    on_entry: Optional[Callable[[Entry, str], None]] = None,
    on_skip: Optional[Callable[[Entry, str], None]] = None,
) -> UnpackStats:
    """Recreate the tree stored in ``src`` under ``dest``.

    ``src`` is a path or a readable binary stream; a stream is left open.
    A failure leaves ``dest`` partially populated; unpack into a scratch
    directory and move it into place when atomicity matters.
    """
    with ArchiveReader(src, password=password) as r:
        u = Unpacker(
            r,
            dest,
            exists=exists,
            paths=paths,
            preserve_mtime=preserve_mtime,
            on_entry=on_entry,
            on_skip=on_skip,
        )
        return u.run()
