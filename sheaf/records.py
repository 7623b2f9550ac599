from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import BinaryIO, Dict, Optional, Tuple

from .constants import (
    REC_SYNC,
    RFLAG_HEADER_EXT,
)
from .crc32c import crc32c
from .encryption import EncryptionContext
from .errors import ArchiveFormatError


# Record header (fixed 24 bytes)
# struct: <4s B B H Q I I
#  - sync[4]
#  - rtype u8
#  - rflags u8
#  - header_len u16 (bytes after this fixed header up to payload)
#  - payload_len u64
#  - header_crc32c u32 (over fixed header without crc, plus header_ext)
#  - reserved u32 (for future)
_REC_HDR_STRUCT = struct.Struct("<4sBBHQII")
# Chunk header ext: entry_seq u64, plaintext_len u32, blake2s_16[16]
_CHUNK_HDR_EXT_STRUCT = struct.Struct("<QI16s")
_SEQ_STRUCT = struct.Struct("<Q")


def blake2s_16(data: bytes) -> bytes:
    return hashlib.blake2s(data, digest_size=16).digest()


@dataclass
class RecordHeader:
    rtype: int
    rflags: int
    header_ext: bytes
    payload_len: int

    def pack(self) -> bytes:
        header_len = len(self.header_ext)
        rflags = self.rflags | (RFLAG_HEADER_EXT if header_len else 0)
        pre_crc = _REC_HDR_STRUCT.pack(REC_SYNC, self.rtype, rflags, header_len, self.payload_len, 0, 0)
        crc = crc32c(pre_crc[:-8] + self.header_ext)  # exclude crc field and reserved
        return _REC_HDR_STRUCT.pack(REC_SYNC, self.rtype, rflags, header_len, self.payload_len, crc, 0) + self.header_ext


@dataclass
class Record:
    rtype: int
    rflags: int
    header_ext: bytes
    payload: bytes


def _aad(hdr_bytes: bytes, seq: int) -> bytes:
    return hdr_bytes + _SEQ_STRUCT.pack(seq)


def write_record(
    f: BinaryIO,
    rtype: int,
    rflags: int,
    header_ext: bytes,
    payload: bytes,
    *,
    seq: int,
    encryptor: Optional[EncryptionContext] = None,
) -> int:
    """Frame and write one record; returns the number of bytes written.

    ``seq`` is the record's position in the stream. Under encryption it is
    bound into the AAD, so records cannot be dropped or reordered unnoticed.
    """
    payload_len = len(payload)
    if encryptor is not None:
        payload_len += encryptor.overhead()
    hdr_bytes = RecordHeader(rtype=rtype, rflags=rflags, header_ext=header_ext, payload_len=payload_len).pack()
    final_payload = (
        payload
        if encryptor is None
        else encryptor.encrypt(_aad(hdr_bytes, seq), payload, nonce_material=_SEQ_STRUCT.pack(seq))
    )
    f.write(hdr_bytes)
    f.write(final_payload)
    return len(hdr_bytes) + len(final_payload)


def read_exact(f: BinaryIO, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        b = f.read(n - len(buf))
        if not b:
            raise EOFError("Unexpected EOF")
        buf += b
    return bytes(buf)


def read_record(
    f: BinaryIO,
    *,
    seq: int,
    max_payload: int,
    type_limits: Optional[Dict[int, int]] = None,
    decryptor: Optional[EncryptionContext] = None,
) -> Optional[Record]:
    """Read the next record.

    Returns None when the stream ends cleanly on a record boundary. Raises
    EOFError when it ends inside a record and ArchiveFormatError when the
    framing is damaged.

    ``type_limits`` maps record types to a tighter plaintext payload limit
    than ``max_payload``; limits are enforced before the payload is read.
    """
    first = f.read(1)
    if not first:
        return None
    fixed = first + read_exact(f, _REC_HDR_STRUCT.size - 1)
    sync, rtype, rflags, header_len, payload_len, hdr_crc, _reserved = _REC_HDR_STRUCT.unpack(fixed)
    if sync != REC_SYNC:
        raise ArchiveFormatError("Bad record sync")
    header_ext = read_exact(f, header_len) if header_len else b""
    calc_crc = crc32c(fixed[:-8] + header_ext)
    if calc_crc != hdr_crc:
        raise ArchiveFormatError("Record header CRC32C mismatch")
    if type_limits is not None and rtype in type_limits:
        max_payload = type_limits[rtype]
    if decryptor is not None:
        max_payload += decryptor.overhead()
    if payload_len > max_payload:
        raise ArchiveFormatError(f"Record payload length {payload_len} exceeds limit {max_payload}")
    payload = read_exact(f, payload_len)
    if decryptor is not None:
        payload = decryptor.decrypt(_aad(fixed + header_ext, seq), payload)
    return Record(rtype=rtype, rflags=rflags, header_ext=header_ext, payload=payload)


def build_chunk_header_ext(entry_seq: int, plain_len: int, tag16: bytes) -> bytes:
    if len(tag16) != 16:
        raise ValueError("tag16 must be 16 bytes")
    return _CHUNK_HDR_EXT_STRUCT.pack(entry_seq, plain_len, tag16)


def parse_chunk_header_ext(header_ext: bytes) -> Tuple[int, int, bytes]:
    """
    Returns: (entry_seq, plain_len, tag16)
    """
    if len(header_ext) < _CHUNK_HDR_EXT_STRUCT.size:
        raise ArchiveFormatError("chunk header_ext too short")
    return _CHUNK_HDR_EXT_STRUCT.unpack(header_ext[: _CHUNK_HDR_EXT_STRUCT.size])
