from __future__ import annotations

import struct
import zlib

import numpy as np
import pytest

from helpers import BitWriter, fixed_zlib, stored_zlib
from lib_inflate import BitReader, HuffmanTable, Inflater
from lib_png import CompressedDataError, NeedMoreInput


def sample_data(size: int = 100_000) -> bytes:
    rng = np.random.default_rng(1)
    text = b"the quick brown fox jumps over the lazy dog. " * 400
    noise = rng.integers(0, 256, size=size // 4, dtype=np.uint8).tobytes()
    runs = bytes(range(256)) * 150 + b"\x00" * 5000
    return (text + noise + runs)[:size]


def inflate(stream: bytes, size: int, close: bool = True) -> bytes:
    inflater = Inflater()
    inflater.feed(stream)
    if close:
        inflater.close()
    return inflater.read(size)


def test_stored_block_is_identity() -> None:
    data = bytes(range(256)) * 4
    assert inflate(stored_zlib(data), len(data)) == data


def test_empty_stored_block() -> None:
    inflater = Inflater()
    inflater.feed(stored_zlib(b""))
    assert inflater.read(10) == b""
    assert inflater.finished


@pytest.mark.parametrize("level", [0, 1, 6, 9])
def test_matches_zlib(level: int) -> None:
    data = sample_data()
    assert inflate(zlib.compress(data, level), len(data)) == data


def test_fixed_huffman_blocks() -> None:
    data = sample_data(20_000)
    assert inflate(fixed_zlib(data), len(data)) == data


def test_back_references_span_the_window() -> None:
    block = np.random.default_rng(2).integers(0, 256, size=30_000, dtype=np.uint8).tobytes()
    data = block + b"-" * 3000 + block
    assert inflate(zlib.compress(data, 9), len(data)) == data


def test_byte_at_a_time() -> None:
    data = sample_data(30_000)
    stream = zlib.compress(data, 9)
    inflater = Inflater()
    out = bytearray()
    for i in range(len(stream)):
        inflater.feed(stream[i:i + 1])
        try:
            while len(out) < len(data):
                out += inflater.read(97)
        except NeedMoreInput:
            continue
    assert bytes(out) == data
    assert inflater.finished


def test_read_in_small_pieces() -> None:
    data = sample_data(10_000)
    inflater = Inflater()
    inflater.feed(zlib.compress(data))
    inflater.close()
    pieces = [inflater.read(33) for _ in range(len(data) // 33 + 1)]
    assert b"".join(pieces) == data
    assert inflater.read(1) == b""
    assert inflater.total_out == len(data)


def test_adler32_trailer_is_ignored() -> None:
    data = b"abcdefgh" * 10
    stream = bytearray(zlib.compress(data))
    stream[-1] ^= 0xFF
    assert inflate(bytes(stream), len(data)) == data
    # missing entirely
    assert inflate(bytes(stream[:-4]), len(data)) == data


def test_truncated_stream() -> None:
    data = sample_data(20_000)
    stream = zlib.compress(data)
    inflater = Inflater()
    inflater.feed(stream[: len(stream) // 2])
    with pytest.raises(NeedMoreInput):
        inflater.read(len(data))
    inflater.close()
    with pytest.raises(CompressedDataError, match="truncated"):
        inflater.read(len(data))


def test_truncated_stored_block() -> None:
    stream = stored_zlib(b"0123456789")
    with pytest.raises(CompressedDataError):
        inflate(stream[:8], 10)


@pytest.mark.parametrize(
    "header",
    [
        b"\x78\x02",  # fcheck
        b"\x77\x05",  # compression method 7
        b"\x88\x1c",  # window size 2^16
        b"\x78\xbb",  # preset dictionary
    ],
)
def test_bad_zlib_header(header: bytes) -> None:
    with pytest.raises(CompressedDataError):
        inflate(header + b"\x03\x00", 1)


def test_reserved_block_type() -> None:
    block = BitWriter().bits(1, 1).bits(3, 2).tobytes()
    with pytest.raises(CompressedDataError, match="block type"):
        inflate(b"\x78\x01" + block, 1)


def test_stored_length_complement() -> None:
    stream = b"\x78\x01\x01" + struct.pack("<HH", 4, 4) + b"abcd"
    with pytest.raises(CompressedDataError, match="complement"):
        inflate(stream, 4)


def test_distance_before_start_of_output() -> None:
    # fixed block: length symbol 257 (3 bytes), distance symbol 0 (1 byte back), nothing written yet
    block = BitWriter().bits(1, 1).bits(1, 2).code(1, 7).code(0, 5).tobytes()
    with pytest.raises(CompressedDataError, match="before start"):
        inflate(b"\x78\x01" + block, 3)


def test_overlapping_back_reference() -> None:
    # literal 'a' (fixed code 0x30 + 0x61), then length 10 at distance 1, end of block
    writer = BitWriter().bits(1, 1).bits(1, 2)
    writer.code(0x30 + ord("a"), 8)
    writer.code(264 - 256, 7)  # length 10
    writer.code(0, 5)
    writer.code(0, 7)  # end of block
    assert inflate(b"\x78\x01" + writer.tobytes(), 11) == b"a" * 11


def test_reserved_distance_symbol() -> None:
    writer = BitWriter().bits(1, 1).bits(1, 2)
    writer.code(0x30 + ord("a"), 8)
    writer.code(1, 7)
    writer.code(30, 5)
    with pytest.raises(CompressedDataError, match="distance symbol"):
        inflate(b"\x78\x01" + writer.tobytes(), 4)


def test_canonical_code_lengths() -> None:
    # lengths [1, 0, 3, 2, 3] give A=0, D=10, C=110, E=111
    table = HuffmanTable([1, 0, 3, 2, 3])
    writer = BitWriter().code(0b10, 2).code(0b0, 1).code(0b111, 3).code(0b110, 3)
    reader = BitReader()
    reader.feed(writer.tobytes())
    assert [table.decode(reader) for _ in range(4)] == [3, 0, 4, 2]


def test_over_subscribed_code() -> None:
    with pytest.raises(CompressedDataError, match="over-subscribed"):
        HuffmanTable([1, 1, 1])


def test_incomplete_code_rejects_unused_pattern() -> None:
    table = HuffmanTable([0, 2, 0])  # only 00 is assigned
    reader = BitReader()
    reader.feed(b"\xff")
    with pytest.raises(CompressedDataError, match="invalid Huffman code"):
        table.decode(reader)


def test_bit_reader_rollback() -> None:
    reader = BitReader()
    reader.feed(b"\xb5")
    mark = reader.tell()
    assert reader.bits(3) == 0b101
    assert reader.bits(5) == 0b10110
    with pytest.raises(NeedMoreInput):
        reader.bits(1)
    reader.seek(mark)
    assert reader.bits(8) == 0xB5
    reader.close()
    with pytest.raises(CompressedDataError):
        reader.bits(1)
