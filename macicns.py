#!/usr/bin/env python3
"""macicns.py

Minimal tools for the Apple icon container format

- write_icns() wraps a single 1024x1024 PNG into an .icns file
- pack_icns() / read_icns() handle the general multi-chunk layout

All integers are big-endian unsigned 32-bit. Every length field counts
its own 8-byte header plus everything that follows it.

"""
import struct
from pathlib import Path
from typing import Iterable, Union


Pathlike = Union[Path, str]

ICNS_MAGIC = b"icns"

# 1024x1024 PNG (512x512@2x)
ICNS_TYPE_1024 = b"ic10"

HEADER_SIZE = 8

_HEADER = struct.Struct(">4sI")


class IcnsError(ValueError):
    """Raised when icon container data is malformed."""


def pack_chunk(chunk_type: bytes, payload: bytes) -> bytes:
    """Returns one chunk: type tag, length, payload."""
    if len(chunk_type) != 4:
        raise IcnsError(f"chunk type must be 4 bytes: {chunk_type!r}")
    return _HEADER.pack(chunk_type, HEADER_SIZE + len(payload)) + payload


def pack_icns(chunks: Iterable[tuple[bytes, bytes]]) -> bytes:
    """Builds a complete container from (type, payload) pairs.

    :param      chunks:  the chunks, in file order
    :type       chunks:  iterable of (bytes, bytes)
    """
    body = b"".join(pack_chunk(kind, payload) for kind, payload in chunks)
    return _HEADER.pack(ICNS_MAGIC, HEADER_SIZE + len(body)) + body


def read_icns(data: bytes) -> list[tuple[bytes, bytes]]:
    """Parses a container and returns its (type, payload) chunks.

    :param      data:  the raw file contents
    :type       data:  bytes
    :raises     IcnsError: on a bad magic tag or inconsistent lengths
    """
    if len(data) < HEADER_SIZE:
        raise IcnsError("data too short for icns header")
    magic, total = _HEADER.unpack_from(data, 0)
    if magic != ICNS_MAGIC:
        raise IcnsError(f"bad magic: {magic!r}")
    if total != len(data):
        raise IcnsError(f"length field {total} != data length {len(data)}")

    chunks = []
    offset = HEADER_SIZE
    while offset < total:
        if total - offset < HEADER_SIZE:
            raise IcnsError(f"truncated chunk header at offset {offset}")
        kind, length = _HEADER.unpack_from(data, offset)
        if length < HEADER_SIZE or offset + length > total:
            raise IcnsError(f"bad length {length} for chunk {kind!r}")
        chunks.append((kind, data[offset + HEADER_SIZE:offset + length]))
        offset += length
    return chunks


def write_icns(png_data: bytes, output: Pathlike,
               chunk_type: bytes = ICNS_TYPE_1024) -> Path:
    """Writes a single-chunk container holding png_data unmodified.

    :param      png_data:    the rasterized bitmap bytes
    :type       png_data:    bytes
    :param      output:      destination .icns path
    :type       output:      str or Path
    :param      chunk_type:  chunk tag; defaults to 'ic10'
    :type       chunk_type:  bytes
    """
    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, "wb") as fopen:
        fopen.write(pack_icns([(chunk_type, png_data)]))
    return output
