from __future__ import annotations

import os
from typing import BinaryIO, Optional, Union

from .constants import (
    DEFAULT_CHUNK_SIZE,
    FLAG_ENCRYPTED,
    MAX_CHUNK_SIZE,
    RFLAG_CHUNK_TAG_PRESENT,
    RTYPE_CHUNK,
    RTYPE_END,
    RTYPE_ENTRY,
)
from .encryption import EncryptionContext, EncryptionParams
from .entry import Entry, build_entry_header
from .errors import ShortTransferError
from .records import blake2s_16, build_chunk_header_ext, write_record
from .superblock import pack_superblock


class ArchiveWriter:
    """Streaming writer that produces sheaf archives.

    The archive is a superblock followed by records: one ENTRY record per
    entry, CHUNK records carrying a file's payload, and a final END record.
    Output is strictly sequential, so ``target`` may be a pipe or socket.

    ``target`` is either a path (opened and closed by the writer) or a
    writable binary stream (left open).
    """

    def __init__(
        self,
        target: Union[str, "os.PathLike[str]", BinaryIO],
        *,
        password: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        kdf_params: Optional[EncryptionParams] = None,
    ):
        if not 1 <= chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}")
        self.target = target
        self.f: Optional[BinaryIO] = None
        self._owns_file = False
        self.flags = 0
        self.encryptor: Optional[EncryptionContext] = None
        if password:
            self.encryptor = EncryptionContext.create(password, kdf_params)
            self.flags |= FLAG_ENCRYPTED
        self.chunk_size = chunk_size
        self.bytes_written = 0
        self._finished = False
        self._seq = 0
        self._entry_seq = 0
        self._current: Optional[Entry] = None
        self._remaining = 0
        self._pending = bytearray()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            # Leave the stream without an END record so readers see it as incomplete
            self.abort()

    def open(self):
        if self.f is not None:
            return
        if hasattr(self.target, "write"):
            self.f = self.target  # type: ignore[assignment]
        else:
            self.f = open(self.target, "wb")  # type: ignore[arg-type]
            self._owns_file = True
        enc_params = self.encryptor.export_params() if self.encryptor else None
        sb = pack_superblock(self.flags, self.chunk_size, enc_params)
        self.f.write(sb)
        self.bytes_written += len(sb)

    def write_header(self, entry: Entry):
        """Start a new entry. The previous file entry must be complete."""
        self._require_open()
        self._check_complete()
        payload = build_entry_header(entry)
        self._emit(RTYPE_ENTRY, 0, b"", payload)
        self._entry_seq += 1
        if entry.is_file and entry.size > 0:
            self._current = entry
            self._remaining = entry.size
        else:
            self._current = None
            self._remaining = 0

    def write(self, data: bytes) -> int:
        """Append payload bytes to the current file entry."""
        self._require_open()
        if not data:
            return 0
        if self._current is None or len(data) > self._remaining:
            path = self._current.path if self._current is not None else "<no open file entry>"
            expected = self._current.size if self._current is not None else 0
            actual = expected - self._remaining + len(data)
            raise ShortTransferError(path, expected, actual, "payload exceeds declared size")
        self._pending += data
        self._remaining -= len(data)
        while len(self._pending) >= self.chunk_size:
            self._emit_chunk(bytes(self._pending[: self.chunk_size]))
            del self._pending[: self.chunk_size]
        if self._remaining == 0:
            if self._pending:
                self._emit_chunk(bytes(self._pending))
                self._pending.clear()
            self._current = None
        return len(data)

    def close(self):
        """Terminate the archive with an END record and release the stream."""
        if self.f is None or self._finished:
            self._release()
            return
        try:
            self._check_complete()
            self._emit(RTYPE_END, 0, b"", b"")
            self.f.flush()
            self._finished = True
        finally:
            self._release()

    def abort(self):
        """Release the stream without terminating the archive."""
        self._finished = True
        self._release()

    # internals
    def _require_open(self):
        if self.f is None or self._finished:
            raise RuntimeError("Archive not open")

    def _check_complete(self):
        if self._current is not None and self._remaining:
            written = self._current.size - self._remaining
            raise ShortTransferError(self._current.path, self._current.size, written, "entry payload incomplete")

    def _emit_chunk(self, raw: bytes):
        hdr = build_chunk_header_ext(self._entry_seq - 1, len(raw), blake2s_16(raw))
        self._emit(RTYPE_CHUNK, RFLAG_CHUNK_TAG_PRESENT, hdr, raw)

    def _emit(self, rtype: int, rflags: int, header_ext: bytes, payload: bytes):
        assert self.f is not None
        self.bytes_written += write_record(
            self.f, rtype, rflags, header_ext, payload, seq=self._seq, encryptor=self.encryptor
        )
        self._seq += 1

    def _release(self):
        if self.f is not None and self._owns_file:
            self.f.close()
        self.f = None
