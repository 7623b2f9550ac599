"""
CRC32C (Castagnoli), reflected, table driven.

Covers the superblock and record headers only, so a pure Python loop is fast
enough and keeps the format free of native dependencies.
"""

_POLY_REFLECTED = 0x82F63B78


def _entry(n: int) -> int:
    for _ in range(8):
        n = (n >> 1) ^ _POLY_REFLECTED if n & 1 else n >> 1
    return n


_TABLE = tuple(_entry(i) for i in range(256))


def crc32c(data: bytes, crc: int = 0) -> int:
    """Return the CRC32C of ``data``, continuing from ``crc``."""
    c = crc ^ 0xFFFFFFFF
    table = _TABLE
    for b in data:
        c = table[(c ^ b) & 0xFF] ^ (c >> 8)
    return c ^ 0xFFFFFFFF
