import logging
from typing import List, Sequence

import numpy as np

from lib_png import Buffer, CompressedDataError, NeedMoreInput

logger = logging.getLogger(__name__)

#RFC 1951 3.2.5, base values and extra bits of the length (257..285) and distance (0..29) codes
LENGTH_BASE = (3, 4, 5, 6, 7, 8, 9, 10, 11, 13, 15, 17, 19, 23, 27, 31,
               35, 43, 51, 59, 67, 83, 99, 115, 131, 163, 195, 227, 258)
LENGTH_EXTRA = (0, 0, 0, 0, 0, 0, 0, 0, 1, 1, 1, 1, 2, 2, 2, 2,
                3, 3, 3, 3, 4, 4, 4, 4, 5, 5, 5, 5, 0)
DIST_BASE = (1, 2, 3, 4, 5, 7, 9, 13, 17, 25, 33, 49, 65, 97, 129, 193,
             257, 385, 513, 769, 1025, 1537, 2049, 3073, 4097, 6145, 8193, 12289, 16385, 24577)
DIST_EXTRA = (0, 0, 0, 0, 1, 1, 2, 2, 3, 3, 4, 4, 5, 5, 6, 6,
              7, 7, 8, 8, 9, 9, 10, 10, 11, 11, 12, 12, 13, 13)
#order in which the code length code lengths are stored
CLEN_ORDER = (16, 17, 18, 0, 8, 7, 9, 6, 10, 5, 11, 4, 12, 3, 13, 2, 14, 1, 15)


class BitReader():
    """
    Reads a growable byte buffer least significant bit first. The cursor is an
    absolute bit position, so a decode step can be undone with seek(tell()).
    """
    _COMPACT_THRESHOLD = 1 << 12

    def __init__(self) -> None:
        self._buf = bytearray()
        self._bit = 0
        self.closed = False

    def feed(self, data:Buffer) -> None:
        self._buf += data

    def close(self) -> None:
        self.closed = True

    def tell(self) -> int:
        return self._bit

    def seek(self, bit:int) -> None:
        self._bit = bit

    def available(self) -> int:
        return (len(self._buf) << 3) - self._bit

    def starve(self):
        if self.closed:
            raise CompressedDataError("compressed data is truncated")
        raise NeedMoreInput("compressed data")

    def peek(self, n:int) -> int:
        #zero padded past the end of the buffer
        start = self._bit >> 3
        shift = self._bit & 7
        window = self._buf[start:start + ((shift + n + 7) >> 3)]
        return (int.from_bytes(window, "little") >> shift) & ((1 << n) - 1)

    def skip(self, n:int) -> None:
        self._bit += n

    def bits(self, n:int) -> int:
        if n == 0:
            return 0
        if self.available() < n:
            self.starve()
        value = self.peek(n)
        self._bit += n
        return value

    def align(self) -> None:
        self._bit = (self._bit + 7) & ~7

    def take(self, n:int) -> bytes:
        #up to n whole bytes, the cursor must be byte aligned
        start = self._bit >> 3
        data = bytes(self._buf[start:start + n])
        self._bit += len(data) << 3
        return data

    def compact(self) -> None:
        #only between decode steps, a pending seek() target would be invalidated
        cut = self._bit >> 3
        if cut >= self._COMPACT_THRESHOLD or (cut and cut == len(self._buf)):
            del self._buf[:cut]
            self._bit -= cut << 3


class HuffmanTable():
    """
    Canonical Huffman code (RFC 1951 3.2.2) expanded into one direct lookup
    table indexed by the next max_bits input bits, bit reversed since DEFLATE
    packs codes starting from the most significant bit. Each entry holds
    symbol << 4 | code length, 0 marks a bit pattern no code starts with.
    """
    MAX_BITS = 15

    def __init__(self, lengths:Sequence[int]) -> None:
        lengths = np.asarray(lengths, dtype = np.uint8)
        bl_count = np.bincount(lengths, minlength = self.MAX_BITS + 1)
        bl_count[0] = 0
        left = 1
        for length in range(1, self.MAX_BITS + 1):
            left = (left << 1) - int(bl_count[length])
            if left < 0:
                raise CompressedDataError("over-subscribed Huffman code lengths")
        next_code = [0] * (self.MAX_BITS + 1)
        code = 0
        for length in range(1, self.MAX_BITS + 1):
            code = (code + int(bl_count[length - 1])) << 1
            next_code[length] = code
        self.max_bits = max(int(lengths.max(initial = 0)), 1)
        table = np.zeros(1 << self.max_bits, dtype = np.uint16)
        for symbol, length in enumerate(lengths.tolist()):
            if length == 0:
                continue
            code = next_code[length]
            next_code[length] += 1
            reverse = int(format(code, "0%db" % length)[::-1], 2)
            #every table slot whose low bits are this code
            table[reverse::1 << length] = (symbol << 4) | length
        self.table = table

    def decode(self, reader:BitReader) -> int:
        available = reader.available()
        entry = int(self.table[reader.peek(self.max_bits)])
        length = entry & 0x0F
        if length == 0:
            if available >= self.max_bits:
                raise CompressedDataError("invalid Huffman code")
            reader.starve()
        if length > available:
            reader.starve()
        reader.skip(length)
        return entry >> 4


FIXED_LITERAL = HuffmanTable([8] * 144 + [9] * 112 + [7] * 24 + [8] * 8)
FIXED_DISTANCE = HuffmanTable([5] * 32)


class Inflater():
    """
    Incremental zlib (RFC 1950) / DEFLATE (RFC 1951) decompressor.

    Compressed bytes are fed as they arrive and output is pulled with read().
    Decoding advances in atomic steps: the zlib header, a block header
    (including the dynamic code tables), one literal or length/distance pair,
    or one run of a stored block. A step that runs out of input is rolled back
    and NeedMoreInput is raised, so the same read() can simply be retried once
    more data was fed. Only the 32 KiB window and the not yet consumed output
    are kept. The Adler-32 trailer is skipped, never verified.
    """
    WINDOW_SIZE = 1 << 15

    #decoder states
    _ZLIB_HEADER, _BLOCK_HEADER, _STORED, _HUFFMAN, _DONE = range(5)

    def __init__(self) -> None:
        self._reader = BitReader()
        self._window = np.zeros(self.WINDOW_SIZE, dtype = np.uint8)
        self._pending = bytearray()
        self.total_out = 0
        self._state = self._ZLIB_HEADER
        self._final = False
        self._stored_left = 0
        self._literal = self._distance = None

    @property
    def finished(self) -> bool:
        return self._state == self._DONE

    @property
    def buffered(self) -> int:
        return (self._reader.available() >> 3) + len(self._pending)

    def feed(self, data:Buffer) -> None:
        if self._state == self._DONE:
            logger.debug("ignoring %d bytes after the end of the compressed stream", len(data))
            return
        self._reader.feed(data)

    def close(self) -> None:
        self._reader.close()

    def read(self, n:int) -> bytes:
        """Return the next n output bytes, fewer only after the final block."""
        while len(self._pending) < n and self._state != self._DONE:
            self._step(n - len(self._pending))
        data = bytes(self._pending[:n])
        del self._pending[:n]
        return data

    def _step(self, want:int) -> None:
        reader = self._reader
        if self._state == self._HUFFMAN:
            self._inflateBlock(want)
        elif self._state == self._STORED:
            self._copyStored(want)
        else:
            #headers are all or nothing
            mark = reader.tell()
            try:
                if self._state == self._ZLIB_HEADER:
                    self._readZlibHeader()
                else:
                    self._readBlockHeader()
            except NeedMoreInput:
                reader.seek(mark)
                raise
        reader.compact()

    def _readZlibHeader(self) -> None:
        reader = self._reader
        cmf = reader.bits(8)
        flg = reader.bits(8)
        if cmf & 0x0F != 8:
            raise CompressedDataError("unsupported zlib compression method %d" % (cmf & 0x0F))
        if cmf >> 4 > 7:
            raise CompressedDataError("invalid zlib window size %d" % (cmf >> 4))
        if ((cmf << 8) | flg) % 31:
            raise CompressedDataError("zlib header check failed")
        if flg & 0x20:
            raise CompressedDataError("zlib preset dictionary is not supported")
        self._state = self._BLOCK_HEADER

    def _readBlockHeader(self) -> None:
        reader = self._reader
        final = bool(reader.bits(1))
        btype = reader.bits(2)
        if btype == 0:
            reader.align()
            length = reader.bits(16)
            nlength = reader.bits(16)
            if length ^ 0xFFFF != nlength:
                raise CompressedDataError("stored block length %d does not match its complement" % length)
            self._stored_left = length
            state = self._STORED
        elif btype == 1:
            self._literal, self._distance = FIXED_LITERAL, FIXED_DISTANCE
            state = self._HUFFMAN
        elif btype == 2:
            self._literal, self._distance = self._readDynamicTables()
            state = self._HUFFMAN
        else:
            raise CompressedDataError("invalid block type 3")
        self._final = final
        self._state = state
        logger.debug("block type %d%s at output offset %d", btype, " (final)" if final else "", self.total_out)

    def _readDynamicTables(self):
        reader = self._reader
        hlit = reader.bits(5) + 257
        hdist = reader.bits(5) + 1
        hclen = reader.bits(4) + 4
        if hlit > 286 or hdist > 30:
            raise CompressedDataError("too many length or distance codes (%d, %d)" % (hlit, hdist))
        clen = [0] * 19
        for i in range(hclen):
            clen[CLEN_ORDER[i]] = reader.bits(3)
        clen_table = HuffmanTable(clen)

        lengths: List[int] = []
        total = hlit + hdist
        while len(lengths) < total:
            symbol = clen_table.decode(reader)
            if symbol < 16:
                lengths.append(symbol)
            elif symbol == 16:
                #copy the previous code length 3..6 times
                if not lengths:
                    raise CompressedDataError("repeat code with no previous code length")
                lengths.extend([lengths[-1]] * (3 + reader.bits(2)))
            elif symbol == 17:
                lengths.extend([0] * (3 + reader.bits(3)))
            else:
                lengths.extend([0] * (11 + reader.bits(7)))
        if len(lengths) > total:
            raise CompressedDataError("code length repeat runs past the last code")
        if lengths[256] == 0:
            raise CompressedDataError("missing end-of-block code")
        return HuffmanTable(lengths[:hlit]), HuffmanTable(lengths[hlit:])

    def _copyStored(self, want:int) -> None:
        if self._stored_left:
            data = self._reader.take(min(self._stored_left, want, self.WINDOW_SIZE))
            if not data:
                self._reader.starve()
            self._emit(data)
            self._stored_left -= len(data)
        if self._stored_left == 0:
            self._endBlock()

    def _inflateBlock(self, want:int) -> None:
        reader = self._reader
        literal, distance = self._literal, self._distance
        produced = 0
        while produced < want:
            mark = reader.tell()
            try:
                symbol = literal.decode(reader)
                if symbol < 256:
                    self._emitByte(symbol)
                    produced += 1
                    continue
                if symbol == 256:
                    self._endBlock()
                    return
                length = self._readLength(symbol)
                dist = self._readDistance(distance.decode(reader))
            except NeedMoreInput:
                reader.seek(mark)
                raise
            self._copyMatch(dist, length)
            produced += length

    def _readLength(self, symbol:int) -> int:
        index = symbol - 257
        if index >= len(LENGTH_BASE):
            raise CompressedDataError("invalid length symbol %d" % symbol)
        return LENGTH_BASE[index] + self._reader.bits(LENGTH_EXTRA[index])

    def _readDistance(self, symbol:int) -> int:
        if symbol >= len(DIST_BASE):
            raise CompressedDataError("invalid distance symbol %d" % symbol)
        return DIST_BASE[symbol] + self._reader.bits(DIST_EXTRA[symbol])

    def _endBlock(self) -> None:
        if not self._final:
            self._state = self._BLOCK_HEADER
            return
        reader = self._reader
        reader.align()
        if reader.available() >= 32:
            reader.skip(32)     #Adler-32, ignored
        self._state = self._DONE
        logger.debug("compressed stream complete, %d bytes inflated", self.total_out)

    def _windowSlice(self, start:int, n:int) -> bytes:
        window = self._window
        end = start + n
        if end <= self.WINDOW_SIZE:
            return window[start:end].tobytes()
        return window[start:].tobytes() + window[:end - self.WINDOW_SIZE].tobytes()

    def _copyMatch(self, dist:int, length:int) -> None:
        if dist > self.total_out:
            raise CompressedDataError("back-reference distance %d before start of output (%d bytes)" % (dist, self.total_out))
        start = (self.total_out - dist) % self.WINDOW_SIZE
        if dist >= length:
            data = self._windowSlice(start, length)
        else:
            #overlapping copy repeats the last dist bytes
            pattern = self._windowSlice(start, dist)
            data = (pattern * (length // dist + 1))[:length]
        self._emit(data)

    def _emitByte(self, value:int) -> None:
        self._window[self.total_out % self.WINDOW_SIZE] = value
        self._pending.append(value)
        self.total_out += 1

    def _emit(self, data:bytes) -> None:
        #len(data) never exceeds the window
        n = len(data)
        pos = self.total_out % self.WINDOW_SIZE
        values = np.frombuffer(data, dtype = np.uint8)
        first = min(n, self.WINDOW_SIZE - pos)
        self._window[pos:pos + first] = values[:first]
        if first < n:
            self._window[:n - first] = values[first:]
        self._pending += data
        self.total_out += n
