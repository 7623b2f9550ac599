"""
sheaf: directory-tree archiver.

Packs a filesystem subtree into a single sequential archive stream and
unpacks it again, preserving paths, entry kinds (regular files and
directories), permission bits and sizes.

- Record stream (superblock, ENTRY/CHUNK/END records) that can be written to
  and read from non-seekable streams such as pipes.
- Header CRC32C and per-chunk BLAKE2s tags to detect corruption.
- Optional password protection: every record payload is sealed with
  XChaCha20-Poly1305 under an Argon2id-derived key.
- Explicit policies for unsupported nodes (skip/error) and unpack conflicts
  (overwrite/skip/rename/fail).

The programmatic API is ``sheaf.pack`` / ``sheaf.unpack``; the codec itself
is ``sheaf.writer.ArchiveWriter`` / ``sheaf.reader.ArchiveReader``.
"""

__version__ = "0.1"

from .entry import Entry, EntryKind
from .errors import (
    ArchiveFormatError,
    AuthenticationError,
    ChecksumMismatchError,
    EncryptedArchiveRequiresPassword,
    PathConflictError,
    SheafError,
    ShortTransferError,
    TraversalError,
    UnsupportedEntryError,
)
from .packer import Packer, PackStats, pack
from .reader import ArchiveReader
from .unpacker import Unpacker, UnpackStats, unpack
from .writer import ArchiveWriter

__all__ = [
    "pack",
    "unpack",
    "Packer",
    "Unpacker",
    "PackStats",
    "UnpackStats",
    "ArchiveWriter",
    "ArchiveReader",
    "Entry",
    "EntryKind",
    "SheafError",
    "TraversalError",
    "UnsupportedEntryError",
    "ArchiveFormatError",
    "ChecksumMismatchError",
    "AuthenticationError",
    "EncryptedArchiveRequiresPassword",
    "ShortTransferError",
    "PathConflictError",
]
