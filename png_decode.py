import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import numpy as np

from lib_png import (PNG, Buffer, Chunk, ChunkStream, ColorType, ImageHeader,
                     MalformedStream, NeedMoreInput, Palette, PNGError)
from lib_inflate import Inflater

logger = logging.getLogger(__name__)


class PNG_decoder(PNG):
    """
    Streaming decode session for one PNG image (8-bit, non-interlaced).

    Bytes are handed in with feed() as they arrive, decoded rows are pulled
    with readRow() or by iterating the session. Pulling never blocks: when the
    bytes fed so far are not enough, NeedMoreInput is raised and the same pull
    can be repeated after the next feed(). close() tells the session that no
    more bytes will come, from then on missing data is an error.

    IDAT payload is handed to the inflater piece by piece as it arrives, so
    only two scanlines, the inflate window and the unread input are held,
    independent of the image height. Any PNGError ends the session, it
    is raised again by every later pull until reset().
    """
    MAX_WIDTH = 1 << 16
    IDAT_READ_SIZE = 1 << 13
    _MODES = (None, "RGB", "RGBA")

    filter_type =(PNG.None_I, PNG.Sub_I, PNG.Up_I, PNG.Average_I, PNG.Paeth_I)
    filter_dict = dict(enumerate(filter_type))

    def __init__(self, mode:Optional[str] = None, strict:bool = False, max_width:Optional[int] = None) -> None:
        super().__init__()
        if mode not in self._MODES:
            raise ValueError("unknown output mode %r, expected one of %r" % (mode, self._MODES))
        self.mode = mode
        self.strict = strict
        self.max_width = self.MAX_WIDTH if max_width is None else max_width
        self.reset()

    def reset(self) -> None:
        self.IHDR = None
        self.PLTE = None
        self.topology: List[str] = []
        self.rowsDecoded = 0
        self._chunks = ChunkStream()
        self._inflater = Inflater()
        self._prior: Optional[np.ndarray] = None
        self._line: Optional[np.ndarray] = None
        self._chunk_type: Optional[bytes] = None    #chunk being streamed
        self._seen_idat = False
        self._ended = False
        self._error: Optional[PNGError] = None

    @property
    def header(self) -> Optional[ImageHeader]:
        return self.IHDR

    @property
    def palette(self) -> Optional[Palette]:
        return self.PLTE

    @property
    def complete(self) -> bool:
        return self._ended and self.IHDR is not None and self.rowsDecoded == self.IHDR.height

    @property
    def buffered(self) -> int:
        #input bytes held and not yet decoded, plus inflated bytes not yet cut into rows
        return self._chunks.remaining() + self._inflater.buffered

    def feed(self, data:Buffer) -> None:
        if self._ended and self.strict and len(data):
            self._fail(MalformedStream("%d bytes after IEND chunk" % len(data)))
        self._chunks.feed(data)

    def close(self) -> None:
        self._chunks.close()

    @classmethod
    def unfilter(cls, filter_type:int, dst:np.ndarray, context:np.ndarray, src:np.ndarray, bpp:int) -> int:
        try:
            filter_func = cls.filter_dict[filter_type]
        except KeyError:
            raise MalformedStream("invalid filter type %d" % filter_type) from None
        return filter_func(dst, context, src, bpp)

    def _fail(self, err:PNGError):
        self._error = err
        raise err

    def _processChunk(self) -> None:
        """
        One step through the chunk stream: a whole IHDR or PLTE, one piece of
        IDAT payload handed to the inflater, or the end of any other chunk.
        Only IHDR and PLTE are ever buffered whole, everything else streams.
        """
        chunks = self._chunks
        if self._chunk_type is None:
            self._beginChunk(*chunks.openChunk())
        chunk_type = self._chunk_type
        if chunk_type == b"IHDR":
            self._processIHDR(chunks.nextChunk(self._PNG_IHDR_LENGTH))
        elif chunk_type == b"PLTE":
            self._processPLTE(chunks.nextChunk(3 * Palette.MAX_ENTRIES))
        elif chunk_type == b"IDAT" and self.rowsDecoded < self.IHDR.height:
            piece = chunks.readPayload(self.IDAT_READ_SIZE)
            if piece:
                self._inflater.feed(piece)
                return
            chunks.endChunk()
        else:
            chunks.endChunk()
            if chunk_type == b"IEND":
                self._processIEND()
        self._chunk_type = None

    def _beginChunk(self, chunk_type:bytes, length:int) -> None:
        name = chunk_type.decode("ascii")
        if self.IHDR is None:
            if chunk_type != b"IHDR":
                raise MalformedStream("first chunk must be IHDR, got %s" % name)
        elif chunk_type == b"IHDR":
            raise MalformedStream("duplicate IHDR chunk")
        elif chunk_type == b"IDAT":
            if self.rowsDecoded >= self.IHDR.height:
                logger.debug("ignoring IDAT chunk after the last scanline")
            self._seen_idat = True
        elif chunk_type not in (b"PLTE", b"IEND"):
            logger.debug("skipping %s chunk, %d bytes", name, length)
        self.topology.append(name)
        self._chunk_type = chunk_type

    def _processIHDR(self, chunk:Chunk) -> None:
        header = ImageHeader.fromPayload(chunk.payload, max_width = self.max_width)
        #the only two row buffers of the session
        self._prior = np.zeros(header.stride, dtype = np.uint8)
        self._line = np.zeros(header.stride, dtype = np.uint8)
        self.IHDR = header
        logger.debug("IHDR %dx%d %s, %d bytes per row", header.width, header.height,
                     header.color_type_name, header.stride)

    def _processPLTE(self, chunk:Chunk) -> None:
        if self._seen_idat:
            raise MalformedStream("PLTE chunk after IDAT")
        if self.PLTE is not None:
            raise MalformedStream("duplicate PLTE chunk")
        self.PLTE = Palette.fromPayload(chunk.payload)
        logger.debug("PLTE with %d entries", len(self.PLTE))

    def _processIEND(self) -> None:
        if not self._seen_idat:
            raise MalformedStream("no IDAT chunk before IEND")
        self._ended = True
        self._inflater.close()
        trailing = self._chunks.remaining()
        if trailing:
            if self.strict:
                raise MalformedStream("%d bytes after IEND chunk" % trailing)
            logger.debug("ignoring %d bytes after IEND chunk", trailing)

    def readHeader(self) -> ImageHeader:
        """Return the image header, parsing chunks up to IHDR if needed."""
        if self._error is not None:
            raise self._error
        try:
            while self.IHDR is None:
                self._processChunk()
        except PNGError as err:
            self._fail(err)
        return self.IHDR

    def readRow(self) -> Optional[np.ndarray]:
        """
        Return the next row as a (width, channels) uint8 array, or None once
        the last row was decoded and IEND was reached.
        """
        if self._error is not None:
            raise self._error
        try:
            return self._readRow()
        except PNGError as err:
            self._fail(err)

    def _readRow(self) -> Optional[np.ndarray]:
        while self.IHDR is None:
            self._processChunk()
        header = self.IHDR
        if self.rowsDecoded >= header.height:
            while not self._ended:
                self._processChunk()
            return None

        size = header.stride + 1
        while True:
            try:
                raw = self._inflater.read(size)
            except NeedMoreInput:
                #feed the next piece of IDAT payload, or let the caller know the input ran dry
                self._processChunk()
                continue
            break
        if len(raw) < size:
            raise MalformedStream("image data ends after %d of %d scanlines" % (self.rowsDecoded, header.height))

        #the first byte of each scanline is the filter type
        src = np.frombuffer(raw, dtype = np.uint8, offset = 1)
        self.unfilter(raw[0], self._line, self._prior, src, header.bytes_per_pixel)
        self._prior, self._line = self._line, self._prior
        self.rowsDecoded += 1
        return self._assemble(self._prior)

    def _assemble(self, line:np.ndarray) -> np.ndarray:
        header = self.IHDR
        if header.color_type == ColorType.INDEXED:
            if self.PLTE is None:
                raise MalformedStream("indexed-color image without PLTE chunk")
            pixels = self.PLTE.lookup(line)
        else:
            pixels = line.reshape(header.width, header.channels).copy()
        if self.mode == "RGB":
            return self.toRGB(pixels, header.color_type)
        if self.mode == "RGBA":
            return self.toRGBA(pixels, header.color_type)
        return pixels

    def __iter__(self) -> "PNG_decoder":
        return self

    def __next__(self) -> np.ndarray:
        row = self.readRow()
        if row is None:
            raise StopIteration
        return row

    def iterAvailableRows(self) -> Iterator[np.ndarray]:
        """Yield the rows decodable from the bytes fed so far."""
        while True:
            try:
                row = self.readRow()
            except NeedMoreInput:
                return
            if row is None:
                return
            yield row

    def iterPixels(self) -> Iterator[Tuple[int, ...]]:
        #one row is decoded at a time, NeedMoreInput reaches the caller unlike in iterAvailableRows()
        for row in self:
            for pixel in row.tolist():
                yield tuple(pixel)


@dataclass
class ImageData:
    header: ImageHeader
    palette: Optional[Palette]
    data: np.ndarray    #(height, width, channels), indexed resolved to RGB
    layout: Optional[ColorType] = None  #pixel layout of data when an output mode was applied

    def __post_init__(self) -> None:
        if self.layout is None:
            self.layout = self.header.color_type

    def toRGB(self) -> np.ndarray:
        return PNG.toRGB(self.data, self.layout)

    def toRGBA(self) -> np.ndarray:
        return PNG.toRGBA(self.data, self.layout)


def decodePNG(data:Buffer, mode:Optional[str] = None, strict:bool = False) -> ImageData:
    """Decode a PNG file held completely in memory."""
    decoder = PNG_decoder(mode = mode, strict = strict)
    decoder.feed(data)
    decoder.close()
    header = decoder.readHeader()
    rows = list(decoder)
    layout = {"RGB": ColorType.RGB, "RGBA": ColorType.RGBA}.get(mode)
    return ImageData(header, decoder.palette, np.stack(rows), layout)


if __name__ == "__main__":
    import pathlib
    import sys
    from PIL import Image
    logging.basicConfig(level = logging.DEBUG)
    file = pathlib.Path(sys.argv[1])
    decoder = PNG_decoder(mode = "RGBA")
    rows = []
    with open(file, 'rb') as finput:
        for block in iter(lambda: finput.read(4096), b""):
            decoder.feed(block)
            rows.extend(decoder.iterAvailableRows())
        decoder.close()
        rows.extend(decoder.iterAvailableRows())
    header = decoder.readHeader()
    print(header)
    print("chunks:", " ".join(decoder.topology))
    im = Image.fromarray(np.stack(rows))
    outfile = file.with_name(file.stem + "_decoded.png")
    im.save(outfile)
