from __future__ import annotations

"""
Minimal TLV encoding for sheaf entry headers.

Encoding
- TLV: varint(tag) || varint(length) || payload
- Integers: unsigned LEB128 varint
- Strings: UTF-8 bytes (length provided by TLV len)

Entry header tags (payload of an ENTRY record)
- 1: kind (varint; 0=file, 1=directory)
- 2: path (utf8)
- 3: mode (varint)
- 4: size (varint, files only)
- 5: mtime (payload: varint sec || varint nsec)

Unknown tags are ignored by the decoder so later minor versions can add
fields without breaking older readers.
"""

from typing import List, Tuple


def varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def varint_decode(data: bytes, pos: int) -> Tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint: too large")


def tlv(tag: int, payload: bytes) -> bytes:
    return varint_encode(tag) + varint_encode(len(payload)) + payload


def iter_tlvs(data: bytes) -> List[Tuple[int, bytes]]:
    items: List[Tuple[int, bytes]] = []
    pos = 0
    n = len(data)
    while pos < n:
        tag, pos = varint_decode(data, pos)
        ln, pos = varint_decode(data, pos)
        if pos + ln > n:
            raise ValueError("TLV length out of range")
        items.append((tag, data[pos : pos + ln]))
        pos += ln
    return items


def decode_uint(payload: bytes) -> int:
    value, pos = varint_decode(payload, 0)
    if pos != len(payload):
        raise ValueError("varint: trailing bytes")
    return value


def decode_uint_pair(payload: bytes) -> Tuple[int, int]:
    a, pos = varint_decode(payload, 0)
    b, pos = varint_decode(payload, pos)
    if pos != len(payload):
        raise ValueError("varint: trailing bytes")
    return a, b
