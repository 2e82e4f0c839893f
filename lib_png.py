import logging
from dataclasses import dataclass
from enum import IntEnum
from struct import unpack
from typing import Iterator, NamedTuple, Optional, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

Buffer = Union[bytes, bytearray, memoryview]


#error kinds, every PNGError is terminal for a decode session
class PNGError(Exception):
    """Base class of the terminal decode failures."""


class MalformedStream(PNGError, ValueError):
    """Structural violation: signature, chunk framing/ordering, filter byte, palette index."""


class UnsupportedFeature(PNGError):
    """Well-formed PNG outside the supported subset (8-bit, non-interlaced)."""


class CompressedDataError(PNGError):
    """Corrupted or truncated zlib/DEFLATE data."""


class NeedMoreInput(Exception):
    """Not a failure: feed more bytes, then pull again."""


class ColorType(IntEnum):
    GRAYSCALE = 0
    RGB = 2
    INDEXED = 3
    GRAYSCALE_ALPHA = 4
    RGBA = 6


class PNG():
    #signature
    _PNG_SIGNATURE_LENGTH = 8
    _PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

    #IHDR chunk, header. packed big endian, 13 bytes
    _PNG_IHDR_LENGTH = 13
    _PNG_IHDR_ITEMS = ('width', 'height', 'bitdepth', 'colortype', 'compress', 'filter', 'interlace')
    _IHDR_type = np.dtype({'names'  : _PNG_IHDR_ITEMS,
                           'formats': ['>u4', '>u4', 'u1', 'u1', 'u1',  'u1', 'u1']})
    _MAX_UINT31 = (1 << 31) - 1
    color_type_name = {0:"Greyscale", 2:"Truecolor", 3:"Indexed-color", 4:"Greyscale with alpha", 6:"Truecolor with alpha"}

    #tools function
    readBE32  = lambda x: unpack(">I", x)[0]

    def __init__(self) -> None:
        self.IHDR: Optional[ImageHeader] = None
        self.PLTE: Optional[Palette] = None

    """
    #filters, it take a filtered scanline of src, with context (previous reconstructed scanline)
    #and output in given dst. bpp is the number of bytes per complete pixel.
    #all should have unit8 dtype, arithmetic is modulo 256.
    """
    @staticmethod
    def None_I(dst:np.ndarray, context:np.ndarray, src:np.ndarray, bpp:int) -> int:
        dst[:] = src
        return 0

    @staticmethod
    def Sub_I(dst:np.ndarray, context:np.ndarray, src:np.ndarray, bpp:int) -> int:
        #running sum per channel, must specify its uint8!
        dst[:] = np.cumsum(src.reshape(-1, bpp), axis = 0, dtype = np.uint8).reshape(-1)
        return 0

    @staticmethod
    def Up_I(dst:np.ndarray, context:np.ndarray, src:np.ndarray, bpp:int) -> int:
        dst[:] = src + context
        return 0

    @staticmethod
    def Average_I(dst:np.ndarray, context:np.ndarray, src:np.ndarray, bpp:int) -> int:
        out = src.tolist()
        up = context.tolist()
        for i in range(len(out)):
            a = out[i - bpp] if i >= bpp else 0   #left, already reconstructed
            out[i] = (out[i] + ((a + up[i]) >> 1)) & 0xFF
        dst[:] = out
        return 0

    @staticmethod
    def Paeth_I(dst:np.ndarray, context:np.ndarray, src:np.ndarray, bpp:int) -> int:
        out = src.tolist()
        up = context.tolist()
        for i in range(len(out)):
            b = up[i]
            if i >= bpp:
                a = out[i - bpp]
                c = up[i - bpp]
            else:
                a = c = 0
            pr = a + b - c
            pa = abs(pr - a)
            pb = abs(pr - b)
            pc = abs(pr - c)
            if pa <= pb and pa <= pc:
                out[i] = (out[i] + a) & 0xFF
            elif pb <= pc:
                out[i] = (out[i] + b) & 0xFF
            else:
                out[i] = (out[i] + c) & 0xFF
        dst[:] = out
        return 0

    #color model normalisation, pixels are (..., channels) uint8 arrays with indexed already resolved
    @staticmethod
    def toRGB(pixels:np.ndarray, color_type:ColorType) -> np.ndarray:
        if color_type in (ColorType.RGB, ColorType.INDEXED):
            return pixels
        if color_type == ColorType.RGBA:
            return np.ascontiguousarray(pixels[..., :3])
        return np.repeat(pixels[..., :1], 3, axis = -1)

    @staticmethod
    def toRGBA(pixels:np.ndarray, color_type:ColorType) -> np.ndarray:
        if color_type == ColorType.RGBA:
            return pixels
        if color_type == ColorType.GRAYSCALE_ALPHA:
            alpha = pixels[..., 1:2]
        else:
            alpha = np.full(pixels.shape[:-1] + (1,), 0xFF, dtype = np.uint8)
        return np.concatenate((PNG.toRGB(pixels, color_type), alpha), axis = -1)


@dataclass(frozen=True)
class ImageHeader:
    width: int
    height: int
    bit_depth: int
    color_type: ColorType
    compression_method: int = 0
    filter_method: int = 0
    interlace_method: int = 0

    @classmethod
    def fromPayload(cls, payload:Buffer, max_width:Optional[int] = None) -> "ImageHeader":
        """Decode and validate an IHDR payload.

        This is the single gate of the decoder: an accepted header is always
        8-bit, non-interlaced and of one of the five color types.
        """
        if len(payload) != PNG._PNG_IHDR_LENGTH:
            raise MalformedStream("invalid IHDR chunk length %d" % len(payload))
        ihdr = np.frombuffer(payload, dtype = PNG._IHDR_type)[0]
        width = int(ihdr["width"])
        height = int(ihdr["height"])
        if width == 0 or height == 0:
            raise MalformedStream("invalid image size %dx%d" % (width, height))
        if width > PNG._MAX_UINT31 or height > PNG._MAX_UINT31:
            raise MalformedStream("image size %dx%d exceeds 2^31-1" % (width, height))
        bit_depth = int(ihdr["bitdepth"])
        if bit_depth != 8:
            raise UnsupportedFeature("bit depth %d is not supported" % bit_depth)
        colortype = int(ihdr["colortype"])
        if colortype not in PNG.color_type_name:
            raise UnsupportedFeature("color type %d is not supported" % colortype)
        if int(ihdr["compress"]) != 0:
            raise UnsupportedFeature("compression method %d is not supported" % int(ihdr["compress"]))
        if int(ihdr["filter"]) != 0:
            raise UnsupportedFeature("filter method %d is not supported" % int(ihdr["filter"]))
        if int(ihdr["interlace"]) != 0:
            raise UnsupportedFeature("interlaced images are not supported")
        if max_width is not None and width > max_width:
            raise UnsupportedFeature("image width %d exceeds the row buffer capacity %d" % (width, max_width))
        return cls(width, height, bit_depth, ColorType(colortype), 0, 0, 0)

    @property
    def channels(self) -> int:
        colortype = int(self.color_type)
        use_palette = colortype & 1       #first bit
        is_truecolor = (colortype>>1) & 1 #second bit
        use_alpha = (colortype>>2) & 1    #third bit
        if use_palette:
            return 1
        return 1 + 2*is_truecolor + use_alpha

    @property
    def bytes_per_pixel(self) -> int:
        return self.channels * self.bit_depth // 8

    @property
    def stride(self) -> int:
        #filtered row length without the filter type byte
        return (self.width * self.channels * self.bit_depth + 7) // 8

    @property
    def has_alpha(self) -> bool:
        return self.color_type in (ColorType.GRAYSCALE_ALPHA, ColorType.RGBA)

    @property
    def is_grayscale(self) -> bool:
        return self.color_type in (ColorType.GRAYSCALE, ColorType.GRAYSCALE_ALPHA)

    @property
    def is_color(self) -> bool:
        return not self.is_grayscale

    @property
    def color_type_name(self) -> str:
        return PNG.color_type_name[int(self.color_type)]


class PaletteEntry(NamedTuple):
    r: int
    g: int
    b: int


class Palette():
    MAX_ENTRIES = 256

    def __init__(self, colors:np.ndarray) -> None:
        self.colors = colors

    @classmethod
    def fromPayload(cls, payload:Buffer) -> "Palette":
        size = len(payload)
        if size == 0 or size % 3 != 0:
            raise MalformedStream("invalid PLTE chunk length %d" % size)
        if size > 3 * cls.MAX_ENTRIES:
            raise MalformedStream("palette has %d entries, at most %d allowed" % (size // 3, cls.MAX_ENTRIES))
        #copy, the payload is only a view into the chunk buffer
        colors = np.frombuffer(payload, dtype = np.uint8).reshape(-1, 3).copy()
        return cls(colors)

    def __len__(self) -> int:
        return len(self.colors)

    def entry(self, index:int) -> PaletteEntry:
        if not 0 <= index < len(self.colors):
            raise MalformedStream("palette index %d out of range (%d entries)" % (index, len(self.colors)))
        r, g, b = self.colors[index].tolist()
        return PaletteEntry(r, g, b)

    def lookup(self, indices:np.ndarray) -> np.ndarray:
        if indices.size and int(indices.max()) >= len(self.colors):
            raise MalformedStream("palette index %d out of range (%d entries)" % (int(indices.max()), len(self.colors)))
        return self.colors[indices]


@dataclass(frozen=True)
class Chunk:
    type: bytes
    length: int
    payload: Buffer
    crc: int    #read, never verified

    @property
    def name(self) -> str:
        return self.type.decode("ascii")

    #property bits of the chunk type, bit 5 of each byte
    @property
    def is_ancillary(self) -> bool:
        return bool(self.type[0] & 0x20)

    @property
    def is_critical(self) -> bool:
        return not self.is_ancillary

    @property
    def is_private(self) -> bool:
        return bool(self.type[1] & 0x20)

    @property
    def is_public(self) -> bool:
        return not self.is_private

    @property
    def is_reserved(self) -> bool:
        return bool(self.type[2] & 0x20)

    @property
    def is_safe_to_copy(self) -> bool:
        return bool(self.type[3] & 0x20)


def isValidChunkType(chunk_type:bytes) -> bool:
    return len(chunk_type) == 4 and chunk_type.isalpha() and not chunk_type[2] & 0x20


class ChunkStream():
    """
    Incremental walker over the PNG container. Bytes are fed as they arrive and
    chunks are handed out in file order, either whole with nextChunk() or piece
    by piece: openChunk() frames the chunk from its 8 header bytes,
    readPayload() returns whatever part of the payload is buffered and
    endChunk() skips the rest and consumes the CRC. Consumed bytes are dropped
    from the front of the buffer, so only unread input is held.

    Payloads of a stream built over complete data are views into that data.
    Fed streams hand out copies, since feed() resizes the buffer.
    """
    _COMPACT_THRESHOLD = 1 << 12

    def __init__(self, data:Buffer = b"") -> None:
        self._buf = data
        self._pos = 0
        self._base = 0      #absolute offset of _buf[0]
        self._signature_ok = False
        self._open: Optional[Tuple[bytes, int]] = None
        self._left = 0      #unread payload bytes of the open chunk
        self.closed = False

    @property
    def offset(self) -> int:
        return self._base + self._pos

    def feed(self, data:Buffer) -> None:
        if self.closed:
            raise ValueError("feed() called after close()")
        if not data:
            return
        if not isinstance(self._buf, bytearray):
            self._buf = bytearray(self._buf[self._pos:])
            self._base += self._pos
            self._pos = 0
        self._compact()
        self._buf += data

    def _compact(self) -> None:
        cut = self._pos
        if cut >= self._COMPACT_THRESHOLD or (cut and cut == len(self._buf)):
            del self._buf[:cut]
            self._base += cut
            self._pos = 0

    def close(self) -> None:
        self.closed = True

    def remaining(self) -> int:
        return len(self._buf) - self._pos

    def _starve(self, what:str):
        if self.closed:
            raise MalformedStream("truncated %s at offset %d" % (what, self.offset))
        raise NeedMoreInput(what)

    def _slice(self, n:int) -> Buffer:
        start = self._pos
        self._pos += n
        if isinstance(self._buf, bytearray):
            return bytes(self._buf[start:start + n])
        return memoryview(self._buf)[start:start + n]

    def _checkSignature(self) -> None:
        head = bytes(self._buf[self._pos:self._pos + PNG._PNG_SIGNATURE_LENGTH])
        if not PNG._PNG_SIGNATURE.startswith(head):
            raise MalformedStream("not a PNG file: bad signature")
        if len(head) < PNG._PNG_SIGNATURE_LENGTH:
            self._starve("signature")
        self._pos += PNG._PNG_SIGNATURE_LENGTH
        self._signature_ok = True

    def openChunk(self) -> Tuple[bytes, int]:
        """Return (type, length) of the current chunk, reading its header if needed."""
        if self._open is not None:
            return self._open
        if not self._signature_ok:
            self._checkSignature()
        pos = self._pos
        if self.remaining() < 8:
            if self.closed and self.remaining() == 0:
                raise MalformedStream("unexpected end of stream, IEND chunk is missing")
            self._starve("chunk header")
        length = PNG.readBE32(self._buf[pos:pos + 4])
        chunk_type = bytes(self._buf[pos + 4:pos + 8])
        if not isValidChunkType(chunk_type):
            raise MalformedStream("invalid chunk type %r at offset %d" % (chunk_type, self.offset))
        if length > PNG._MAX_UINT31:
            raise MalformedStream("chunk length %d exceeds 2^31-1" % length)
        self._pos += 8
        self._open = (chunk_type, length)
        self._left = length
        return self._open

    def readPayload(self, n:int) -> Buffer:
        """
        Up to n payload bytes of the open chunk, as many as are buffered.
        Returns an empty buffer once the payload is exhausted.
        """
        if self._left == 0:
            return b""
        n = min(n, self._left, self.remaining())
        if n == 0:
            self._starve("%s chunk" % self._open[0].decode("ascii"))
        self._left -= n
        return self._slice(n)

    def endChunk(self) -> int:
        """Skip the unread payload of the open chunk and return its CRC."""
        chunk_type, length = self.openChunk()
        skip = min(self._left, self.remaining())
        self._pos += skip
        self._left -= skip
        if self._left or self.remaining() < 4:
            self._starve("%s chunk" % chunk_type.decode("ascii"))
        crc = PNG.readBE32(self._buf[self._pos:self._pos + 4])
        self._pos += 4
        self._open = None
        return crc

    def nextChunk(self, max_length:Optional[int] = None) -> Chunk:
        """Return the next chunk once all of it is buffered."""
        chunk_type, length = self.openChunk()
        if max_length is not None and length > max_length:
            raise MalformedStream("%s chunk length %d exceeds %d" % (chunk_type.decode("ascii"), length, max_length))
        if self.remaining() < self._left + 4:
            self._starve("%s chunk" % chunk_type.decode("ascii"))
        payload = self._slice(self._left)
        self._left = 0
        crc = self.endChunk()
        return Chunk(chunk_type, length, payload, crc)


def iterChunks(data:Buffer) -> Iterator[Chunk]:
    """Walk a complete in-memory PNG file, payloads are views into data."""
    stream = ChunkStream(data)
    stream.close()
    while True:
        chunk = stream.nextChunk()
        yield chunk
        if chunk.type == b"IEND":
            return
