"""Builders for hand-made PNG and zlib streams used across the tests."""

from __future__ import annotations

import io
import struct
import zlib
from typing import Iterable, List, Optional, Sequence

import numpy as np
from PIL import Image

SIGNATURE = b"\x89PNG\r\n\x1a\n"


def chunk(chunk_type: bytes, payload: bytes = b"") -> bytes:
    crc = zlib.crc32(chunk_type + payload)
    return struct.pack(">I", len(payload)) + chunk_type + payload + struct.pack(">I", crc)


def ihdr_payload(width: int, height: int, bit_depth: int = 8, color_type: int = 0,
                 compression: int = 0, filter_method: int = 0, interlace: int = 0) -> bytes:
    return struct.pack(">IIBBBBB", width, height, bit_depth, color_type, compression, filter_method, interlace)


def stored_zlib(data: bytes) -> bytes:
    """A zlib stream made of a single final stored block."""
    assert len(data) <= 0xFFFF
    block = b"\x01" + struct.pack("<HH", len(data), len(data) ^ 0xFFFF) + data
    return b"\x78\x01" + block + struct.pack(">I", zlib.adler32(data))


def fixed_zlib(data: bytes) -> bytes:
    compressor = zlib.compressobj(9, zlib.DEFLATED, 15, 9, zlib.Z_FIXED)
    return compressor.compress(data) + compressor.flush()


def build_png(width: int, height: int, color_type: int, idat: bytes,
              palette: Optional[Sequence[tuple]] = None, split: int = 1,
              extra_before: Iterable[bytes] = ()) -> bytes:
    parts: List[bytes] = [SIGNATURE, chunk(b"IHDR", ihdr_payload(width, height, 8, color_type))]
    parts.extend(extra_before)
    if palette is not None:
        parts.append(chunk(b"PLTE", b"".join(bytes(entry) for entry in palette)))
    step = max(1, -(-len(idat) // split))
    for start in range(0, len(idat), step):
        parts.append(chunk(b"IDAT", idat[start:start + step]))
    parts.append(chunk(b"IEND"))
    return b"".join(parts)


def raw_scanlines(rows: Sequence[Sequence[int]], filter_type: int = 0) -> bytes:
    return b"".join(bytes([filter_type]) + bytes(row) for row in rows)


def paeth(a: int, b: int, c: int) -> int:
    p = a + b - c
    pa, pb, pc = abs(p - a), abs(p - b), abs(p - c)
    if pa <= pb and pa <= pc:
        return a
    if pb <= pc:
        return b
    return c


def filter_row(filter_type: int, row: Sequence[int], prior: Sequence[int], bpp: int) -> bytes:
    """Encoder side of the five PNG filters."""
    out = []
    for i, x in enumerate(row):
        a = row[i - bpp] if i >= bpp else 0
        b = prior[i]
        c = prior[i - bpp] if i >= bpp else 0
        predictor = (0, a, b, (a + b) // 2, paeth(a, b, c))[filter_type]
        out.append((x - predictor) & 0xFF)
    return bytes(out)


def pillow_png(image: Image.Image, **params) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG", **params)
    return buf.getvalue()


def sample_pixels(height: int, width: int, channels: int, seed: int = 0) -> np.ndarray:
    """Gradients with a little noise, so every filter type pays off somewhere."""
    rng = np.random.default_rng(seed)
    y, x = np.mgrid[0:height, 0:width]
    planes = [((x * (3 + c) + y * (5 - c)) % 256) for c in range(channels)]
    data = np.stack(planes, axis=-1) + rng.integers(0, 8, size=(height, width, channels))
    return (data % 256).astype(np.uint8)


class BitWriter:
    """LSB-first bit packer for hand-assembled DEFLATE blocks."""

    def __init__(self) -> None:
        self.value = 0
        self.nbits = 0

    def bits(self, value: int, n: int) -> "BitWriter":
        self.value |= value << self.nbits
        self.nbits += n
        return self

    def code(self, code: int, length: int) -> "BitWriter":
        # Huffman codes go most significant bit first
        return self.bits(int(format(code, "0%db" % length)[::-1], 2), length)

    def tobytes(self) -> bytes:
        return self.value.to_bytes((self.nbits + 7) // 8, "little")
