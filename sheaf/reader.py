from __future__ import annotations

import os
from typing import BinaryIO, Iterator, List, Optional, Union

from .constants import (
    MAX_CHUNK_SIZE,
    MAX_ENTRY_HEADER_LEN,
    RTYPE_CHUNK,
    RTYPE_END,
    RTYPE_ENTRY,
)
from .encryption import EncryptionContext
from .entry import Entry, parse_entry_header
from .errors import (
    ArchiveFormatError,
    ChecksumMismatchError,
    EncryptedArchiveRequiresPassword,
    SheafError,
    ShortTransferError,
)
from .records import Record, blake2s_16, parse_chunk_header_ext, read_record
from .superblock import Superblock, read_superblock


_TYPE_LIMITS = {RTYPE_ENTRY: MAX_ENTRY_HEADER_LEN, RTYPE_END: 0}


class ArchiveReader:
    """Sequential reader for sheaf archives.

    ``next()`` returns the next Entry, or None once the END record is reached.
    Payload of the current file entry is consumed with ``read()``; anything
    left unread is drained by the following ``next()`` call.
    """

    def __init__(self, source: Union[str, "os.PathLike[str]", BinaryIO], *, password: Optional[str] = None):
        self.source = source
        self.f: Optional[BinaryIO] = None
        self._owns_file = False
        self.password = password
        self.decryptor: Optional[EncryptionContext] = None
        self.superblock: Optional[Superblock] = None
        self.entries_read = 0
        self._seq = 0
        self._entry_seq = 0
        self._done = False
        self._current: Optional[Entry] = None
        self._remaining = 0
        self._buf = b""
        self._buf_pos = 0

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __iter__(self) -> Iterator[Entry]:
        while True:
            e = self.next()
            if e is None:
                return
            yield e

    def open(self):
        if self.f is not None:
            return
        if hasattr(self.source, "read"):
            self.f = self.source  # type: ignore[assignment]
        else:
            self.f = open(self.source, "rb")  # type: ignore[arg-type]
            self._owns_file = True
        try:
            self.superblock = read_superblock(self.f)
            if self.superblock.encrypted:
                if not self.password:
                    raise EncryptedArchiveRequiresPassword("Archive is encrypted; password required")
                params = self.superblock.encryption_params()
                try:
                    params.validate()
                except ValueError as exc:
                    raise ArchiveFormatError(f"Invalid key derivation parameters: {exc}") from exc
                self.decryptor = EncryptionContext.from_params(self.password, params)
            else:
                self.decryptor = None
        except (SheafError, OSError, ValueError):
            # Ensure file handle is closed on failure to avoid leaks
            self.close()
            raise

    def close(self):
        if self.f is not None and self._owns_file:
            self.f.close()
        self.f = None

    @property
    def encrypted(self) -> bool:
        return self.superblock is not None and self.superblock.encrypted

    def list(self) -> List[Entry]:
        """Consume the rest of the archive and return its entries."""
        return [e for e in self]

    def next(self) -> Optional[Entry]:
        if self.f is None:
            raise RuntimeError("Archive not open")
        if self._done:
            return None
        self._drain()
        try:
            rec = self._read_record()
        except EOFError as exc:
            raise ArchiveFormatError("Unexpected end of archive inside a record") from exc
        if rec is None:
            raise ArchiveFormatError("Archive ends without end-of-archive marker")
        if rec.rtype == RTYPE_END:
            self._done = True
            return None
        if rec.rtype == RTYPE_CHUNK:
            raise ArchiveFormatError("Chunk record outside of a file entry")
        if rec.rtype != RTYPE_ENTRY:
            raise ArchiveFormatError(f"Unknown record type {rec.rtype}")
        entry = parse_entry_header(rec.payload)
        self._entry_seq += 1
        self.entries_read += 1
        self._current = entry
        self._remaining = entry.size if entry.is_file else 0
        return entry

    def read(self, n: int = -1) -> bytes:
        """Read up to ``n`` payload bytes of the current entry (all when n < 0)."""
        if self.f is None:
            raise RuntimeError("Archive not open")
        if n < 0:
            parts = []
            while True:
                b = self.read(MAX_CHUNK_SIZE)
                if not b:
                    return b"".join(parts)
                parts.append(b)
        if n == 0 or (self._remaining == 0 and self._buf_pos >= len(self._buf)):
            return b""
        if self._buf_pos >= len(self._buf):
            self._load_chunk()
        out = self._buf[self._buf_pos : self._buf_pos + n]
        self._buf_pos += len(out)
        return out

    # internals
    def _read_record(self) -> Optional[Record]:
        assert self.f is not None
        rec = read_record(
            self.f,
            seq=self._seq,
            max_payload=MAX_CHUNK_SIZE,
            type_limits=_TYPE_LIMITS,
            decryptor=self.decryptor,
        )
        if rec is not None:
            self._seq += 1
        return rec

    def _short(self, detail: str) -> ShortTransferError:
        e = self._current
        assert e is not None
        return ShortTransferError(e.path, e.size, e.size - self._remaining, detail)

    def _load_chunk(self):
        try:
            rec = self._read_record()
        except EOFError as exc:
            raise self._short("archive truncated inside payload") from exc
        if rec is None:
            raise self._short("archive truncated inside payload")
        if rec.rtype != RTYPE_CHUNK:
            raise self._short("payload ended before declared size")
        entry_seq, plain_len, tag16 = parse_chunk_header_ext(rec.header_ext)
        data = rec.payload
        if entry_seq != self._entry_seq - 1:
            raise ArchiveFormatError(f"{self._current.path}: chunk belongs to another entry")  # type: ignore[union-attr]
        if plain_len != len(data) or not data:
            raise ArchiveFormatError(f"{self._current.path}: chunk length mismatch")  # type: ignore[union-attr]
        if len(data) > self._remaining:
            raise ArchiveFormatError(f"{self._current.path}: chunk overruns declared size")  # type: ignore[union-attr]
        if blake2s_16(data) != tag16:
            raise ChecksumMismatchError(f"{self._current.path}: chunk checksum mismatch; data corrupted")  # type: ignore[union-attr]
        self._remaining -= len(data)
        self._buf = data
        self._buf_pos = 0

    def _drain(self):
        while self.read(MAX_CHUNK_SIZE):
            pass
        self._current = None
        self._remaining = 0
        self._buf = b""
        self._buf_pos = 0
