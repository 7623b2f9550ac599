from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import BinaryIO, Optional

from .constants import (
    FLAG_ENCRYPTED,
    KDF_ARGON2ID,
    KDF_NONE,
    SUPERBLOCK_MAGIC,
    VERSION_MAJOR,
    VERSION_MINOR,
)
from .crc32c import crc32c
from .encryption import EncryptionParams
from .errors import ArchiveFormatError
from .records import read_exact


# Fields (little endian, 64 bytes):
# magic[8], ver_major u16, ver_minor u16, flags u32, chunk_size u32,
# kdf_id u16, kdf_salt[16], argon_mem u32, argon_time u32, argon_lanes u32,
# reserved[10], header_crc32c u32
_SUPERBLOCK_STRUCT = struct.Struct("<8sHHIIH16sIII10sI")
SUPERBLOCK_SIZE = _SUPERBLOCK_STRUCT.size


@dataclass
class Superblock:
    version_major: int
    version_minor: int
    flags: int
    chunk_size: int
    kdf_id: int = KDF_NONE
    kdf_salt: bytes = b"\x00" * 16
    argon_memory_cost: int = 0
    argon_time_cost: int = 0
    argon_parallelism: int = 0

    @property
    def encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)

    def encryption_params(self) -> EncryptionParams:
        if self.kdf_id != KDF_ARGON2ID:
            raise ArchiveFormatError(f"Unsupported KDF id {self.kdf_id} for encrypted archive")
        return EncryptionParams(
            salt=self.kdf_salt,
            time_cost=self.argon_time_cost,
            memory_cost_kib=self.argon_memory_cost,
            parallelism=self.argon_parallelism,
        )


def pack_superblock(flags: int, chunk_size: int, enc_params: Optional[EncryptionParams]) -> bytes:
    if enc_params is not None:
        kdf_id = KDF_ARGON2ID
        salt = enc_params.salt
        argon_mem = enc_params.memory_cost_kib
        argon_time = enc_params.time_cost
        argon_lanes = enc_params.parallelism
    else:
        kdf_id = KDF_NONE
        salt = b"\x00" * 16
        argon_mem = 0
        argon_time = 0
        argon_lanes = 0
    pre = _SUPERBLOCK_STRUCT.pack(
        SUPERBLOCK_MAGIC,
        VERSION_MAJOR,
        VERSION_MINOR,
        flags,
        chunk_size,
        kdf_id,
        salt,
        argon_mem,
        argon_time,
        argon_lanes,
        b"\x00" * 10,
        0,  # crc placeholder
    )
    crc = crc32c(pre[:-4])
    return pre[:-4] + struct.pack("<I", crc)


def read_superblock(f: BinaryIO) -> Superblock:
    try:
        raw = read_exact(f, SUPERBLOCK_SIZE)
    except EOFError as exc:
        raise ArchiveFormatError("Not a sheaf archive: stream shorter than superblock") from exc
    (magic, vmaj, vmin, flags, chunk_size, kdf_id, kdf_salt, amem, atime, alanes, _res, hdr_crc) = _SUPERBLOCK_STRUCT.unpack(raw)
    if magic != SUPERBLOCK_MAGIC:
        raise ArchiveFormatError("Bad superblock magic")
    if crc32c(raw[:-4]) != hdr_crc:
        raise ArchiveFormatError("Superblock CRC mismatch")
    if vmaj != VERSION_MAJOR:
        raise ArchiveFormatError(f"Unsupported format version {vmaj}.{vmin}")
    return Superblock(
        version_major=vmaj,
        version_minor=vmin,
        flags=flags,
        chunk_size=chunk_size,
        kdf_id=kdf_id,
        kdf_salt=kdf_salt,
        argon_memory_cost=amem,
        argon_time_cost=atime,
        argon_parallelism=alanes,
    )
