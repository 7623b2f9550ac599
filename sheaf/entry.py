from __future__ import annotations

import enum
import os
import stat
from dataclasses import dataclass
from typing import Optional, Tuple

from .constants import KIND_DIRECTORY, KIND_FILE
from .errors import ArchiveFormatError
from .pathutil import norm_path
from .tlv import decode_uint, decode_uint_pair, iter_tlvs, tlv, varint_encode


class EntryKind(enum.Enum):
    FILE = "file"
    DIRECTORY = "dir"
    UNSUPPORTED = "unsupported"


_KIND_TO_DISK = {EntryKind.FILE: KIND_FILE, EntryKind.DIRECTORY: KIND_DIRECTORY}
_DISK_TO_KIND = {v: k for k, v in _KIND_TO_DISK.items()}

# Paths are stored as UTF-8; bytes that are not valid UTF-8 (POSIX names in
# other encodings) round-trip through surrogate escapes.
PATH_ENCODING = "utf-8"
PATH_ERRORS = "surrogateescape"


@dataclass
class Entry:
    path: str
    kind: EntryKind
    mode: int = 0
    size: int = 0
    mtime_sec: Optional[int] = None
    mtime_nsec: Optional[int] = None

    @property
    def is_file(self) -> bool:
        return self.kind is EntryKind.FILE

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @property
    def mtime(self) -> Optional[float]:
        if self.mtime_sec is None:
            return None
        return float(self.mtime_sec) + float(self.mtime_nsec or 0) / 1_000_000_000.0


def classify(st: os.stat_result) -> Tuple[EntryKind, str]:
    """Map an lstat result onto an entry kind plus a human description."""
    m = st.st_mode
    if stat.S_ISREG(m):
        return EntryKind.FILE, "regular file"
    if stat.S_ISDIR(m):
        return EntryKind.DIRECTORY, "directory"
    if stat.S_ISLNK(m):
        desc = "symbolic link"
    elif stat.S_ISSOCK(m):
        desc = "socket"
    elif stat.S_ISFIFO(m):
        desc = "fifo"
    elif stat.S_ISCHR(m) or stat.S_ISBLK(m):
        desc = "device"
    else:
        desc = f"mode {oct(stat.S_IFMT(m))}"
    return EntryKind.UNSUPPORTED, desc


def entry_from_stat(arc_path: str, st: os.stat_result) -> Entry:
    kind, _ = classify(st)
    mtime_ns = st.st_mtime_ns
    return Entry(
        path=arc_path,
        kind=kind,
        mode=stat.S_IMODE(st.st_mode),
        size=st.st_size if kind is EntryKind.FILE else 0,
        mtime_sec=int(mtime_ns // 1_000_000_000),
        mtime_nsec=int(mtime_ns % 1_000_000_000),
    )


def build_entry_header(e: Entry) -> bytes:
    disk_kind = _KIND_TO_DISK.get(e.kind)
    if disk_kind is None:
        raise ValueError(f"{e.path}: {e.kind.value} entries cannot be archived")
    path = norm_path(e.path)
    if not path:
        raise ValueError("entry path may not be empty")
    eb = bytearray()
    eb += tlv(1, varint_encode(disk_kind))
    eb += tlv(2, path.encode(PATH_ENCODING, PATH_ERRORS))
    eb += tlv(3, varint_encode(e.mode))
    if e.kind is EntryKind.FILE:
        eb += tlv(4, varint_encode(e.size))
    if e.mtime_sec is not None and e.mtime_sec >= 0:
        eb += tlv(5, varint_encode(e.mtime_sec) + varint_encode(e.mtime_nsec or 0))
    return bytes(eb)


def parse_entry_header(payload: bytes) -> Entry:
    kind: Optional[EntryKind] = None
    path: Optional[str] = None
    mode = 0
    size: Optional[int] = None
    mtime: Tuple[Optional[int], Optional[int]] = (None, None)
    try:
        for tag, val in iter_tlvs(payload):
            if tag == 1:
                disk_kind = decode_uint(val)
                if disk_kind not in _DISK_TO_KIND:
                    raise ArchiveFormatError(f"Unknown entry kind {disk_kind}")
                kind = _DISK_TO_KIND[disk_kind]
            elif tag == 2:
                path = val.decode(PATH_ENCODING, PATH_ERRORS)
            elif tag == 3:
                mode = decode_uint(val)
            elif tag == 4:
                size = decode_uint(val)
            elif tag == 5:
                mtime = decode_uint_pair(val)
        if path is not None:
            raw_path = path
            path = norm_path(path)
    except ArchiveFormatError:
        raise
    except ValueError as exc:
        raise ArchiveFormatError(f"Malformed entry header: {exc}") from exc
    if kind is None or path is None:
        raise ArchiveFormatError("Entry header missing kind or path")
    if not path:
        raise ArchiveFormatError(f"Entry path {raw_path!r} is empty after normalization")
    if kind is EntryKind.FILE and size is None:
        raise ArchiveFormatError(f"{path}: file entry without size")
    return Entry(
        path=path,
        kind=kind,
        mode=mode,
        size=size or 0,
        mtime_sec=mtime[0],
        mtime_nsec=mtime[1],
    )
