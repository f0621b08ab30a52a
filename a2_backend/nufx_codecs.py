#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
NuFX Thread Decompressors

- ShrinkIt LZW/1 and LZW/2 (RLE pass + 9-12 bit LZW, 4 KiB chunks)
- SQueeze (Huffman + RLE90)

Decoders always return exactly the requested number of bytes when the
stream is intact; truncated streams return what could be decoded and leave
the checksum comparison to the caller.
"""

import struct
import logging
from typing import Optional, Tuple

from .errors import CorruptArchive
from .utils import crc16

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096
LZW_CLEAR = 0x100
LZW_FIRST = 0x101
LZW_MAX_ENTRIES = 0x1000
DEFAULT_RLE_DELIMITER = 0xDB
SQUEEZE_MAGIC = 0xFF76
SQUEEZE_EOF = 256
RLE90_MARKER = 0x90


def lzw_code_width(next_entry: int) -> int:
    """Code width for the next code, given the entry the table will fill next"""
    if next_entry < 0x200:
        return 9
    if next_entry < 0x400:
        return 10
    if next_entry < 0x800:
        return 11
    return 12


class BitReader:
    """LSB-first bit reader over a byte string"""

    def __init__(self, data: bytes, pos: int = 0):
        self.data = data
        self.pos = pos
        self.start = pos
        self.acc = 0
        self.bits = 0

    def read(self, width: int) -> Optional[int]:
        while self.bits < width:
            if self.pos >= len(self.data):
                return None
            self.acc |= self.data[self.pos] << self.bits
            self.pos += 1
            self.bits += 8
        value = self.acc & ((1 << width) - 1)
        self.acc >>= width
        self.bits -= width
        return value

    def consumed(self) -> int:
        """Whole bytes used so far (a partial byte counts as used)"""
        return self.pos - self.start


def rle_expand(data: bytes, delimiter: int, size: int = CHUNK_SIZE) -> bytes:
    """Expand ShrinkIt RLE: delimiter, value, count-1"""
    out = bytearray()
    i = 0
    while i < len(data) and len(out) < size:
        b = data[i]
        if b == delimiter and i + 2 < len(data):
            out += bytes([data[i + 1]]) * (data[i + 2] + 1)
            i += 3
        else:
            out.append(b)
            i += 1
    return bytes(out[:size])


class LZWDecoder:
    """ShrinkIt LZW string table"""

    def __init__(self):
        self.reset()

    def reset(self):
        self.table = {}
        self.entry = LZW_FIRST
        self.prev = None

    def decode(self, data: bytes, pos: int, limit: int) -> Tuple[bytes, int]:
        """
        Decode codes starting at data[pos] until limit bytes are produced.

        Returns:
            (decoded bytes, number of input bytes consumed)
        """
        reader = BitReader(data, pos)
        out = bytearray()
        while len(out) < limit:
            code = reader.read(lzw_code_width(self.entry + 1))
            if code is None:
                break
            if code == LZW_CLEAR:
                self.reset()
                continue
            if code < 0x100:
                current = bytes([code])
            elif code in self.table:
                current = self.table[code]
            elif code == self.entry and self.prev is not None:
                current = self.prev + self.prev[:1]
            else:
                raise CorruptArchive(f"Invalid LZW code {code:#x}", bytes(out))
            if self.prev is not None and self.entry < LZW_MAX_ENTRIES:
                self.table[self.entry] = self.prev + current[:1]
                self.entry += 1
            out += current
            self.prev = current
        return bytes(out[:limit]), reader.consumed()


def _finish_chunk(chunk: bytes, rle_len: int, delimiter: int) -> bytes:
    if rle_len == CHUNK_SIZE:
        return chunk[:CHUNK_SIZE]
    return rle_expand(chunk, delimiter)


def decompress_lzw1(data: bytes, size: int) -> Tuple[bytes, bool]:
    """
    Decompress a ShrinkIt LZW/1 thread.

    Stream header: CRC-16 of the padded output, volume number, RLE
    delimiter. Each 4 KiB chunk: RLE length (u16), LZW flag (u8), data.
    The LZW table starts fresh for every chunk.

    Returns:
        (size bytes of output, whether the embedded CRC matched)
    """
    if len(data) < 4:
        return b'', False
    stored_crc = struct.unpack_from('<H', data, 0)[0]
    delimiter = data[3]
    pos = 4
    out = bytearray()
    decoder = LZWDecoder()
    while len(out) < size and pos + 3 <= len(data):
        rle_len = struct.unpack_from('<H', data, pos)[0]
        lzw_flag = data[pos + 2]
        pos += 3
        if rle_len > CHUNK_SIZE:
            raise CorruptArchive(f"LZW/1 chunk length {rle_len} too large", bytes(out[:size]))
        if lzw_flag:
            decoder.reset()
            chunk, used = decoder.decode(data, pos, rle_len)
            pos += used
        else:
            chunk = data[pos:pos + rle_len]
            pos += rle_len
        out += _finish_chunk(chunk, rle_len, delimiter).ljust(CHUNK_SIZE, b'\x00')
    crc_ok = crc16(bytes(out)) == stored_crc
    return bytes(out[:size]), crc_ok


def decompress_lzw2(data: bytes, size: int) -> bytes:
    """
    Decompress a ShrinkIt LZW/2 thread.

    Stream header: volume number, RLE delimiter. Each chunk starts with a
    u16 whose bit 15 is the LZW flag and whose low 13 bits are the RLE
    length; LZW chunks add a u16 total chunk length. The string table
    carries over between LZW chunks and is cleared by a stored chunk.
    """
    if len(data) < 2:
        return b''
    delimiter = data[1]
    pos = 2
    out = bytearray()
    decoder = LZWDecoder()
    while len(out) < size and pos + 2 <= len(data):
        word = struct.unpack_from('<H', data, pos)[0]
        rle_len = word & 0x1FFF
        lzw_flag = word & 0x8000
        if rle_len > CHUNK_SIZE:
            raise CorruptArchive(f"LZW/2 chunk length {rle_len} too large", bytes(out[:size]))
        if lzw_flag:
            if pos + 4 > len(data):
                break
            chunk_len = struct.unpack_from('<H', data, pos + 2)[0]
            chunk, used = decoder.decode(data, pos + 4, rle_len)
            pos = pos + chunk_len if chunk_len >= 4 else pos + 4 + used
        else:
            decoder.reset()
            chunk = data[pos + 2:pos + 2 + rle_len]
            pos += 2 + rle_len
        out += _finish_chunk(chunk, rle_len, delimiter).ljust(CHUNK_SIZE, b'\x00')
    return bytes(out[:size])


def rle90_expand(data: bytes) -> bytes:
    """SQ-style run-length expansion: 0x90 n repeats the previous byte"""
    out = bytearray()
    i = 0
    last = None
    while i < len(data):
        b = data[i]
        i += 1
        if b != RLE90_MARKER:
            out.append(b)
            last = b
            continue
        if i >= len(data):
            break
        count = data[i]
        i += 1
        if count == 0:
            out.append(RLE90_MARKER)
            last = RLE90_MARKER
        elif last is not None:
            out += bytes([last]) * (count - 1)
    return bytes(out)


def decompress_squeeze(data: bytes, size: int) -> bytes:
    """
    Decompress a SQueezed thread.

    Optional header: magic 0x76 0xFF, checksum, NUL-terminated file name.
    Then a node count and (left, right) int16 pairs; negative children are
    leaves holding -(value + 1), value 256 ends the stream. Bits are read
    LSB-first and the Huffman output is RLE90-expanded.
    """
    pos = 0
    if len(data) >= 2 and struct.unpack_from('<H', data, 0)[0] == SQUEEZE_MAGIC:
        pos = 4
        end = data.find(b'\x00', pos)
        pos = len(data) if end < 0 else end + 1
    if pos + 2 > len(data):
        return b''
    node_count = struct.unpack_from('<H', data, pos)[0]
    pos += 2
    if node_count > 257 or pos + node_count * 4 > len(data):
        raise CorruptArchive(f"Squeeze tree with {node_count} nodes is invalid")
    nodes = [struct.unpack_from('<hh', data, pos + 4 * i) for i in range(node_count)]
    pos += node_count * 4

    decoded = bytearray()
    if node_count:
        reader = BitReader(data, pos)
        node = 0
        # A literal 0x90 costs two bytes, so 2 * size bounds the Huffman output
        while len(decoded) <= size * 2 + 2:
            bit = reader.read(1)
            if bit is None:
                break
            child = nodes[node][bit]
            if child < 0:
                value = -(child + 1)
                if value == SQUEEZE_EOF:
                    break
                decoded.append(value)
                node = 0
            elif child >= node_count:
                raise CorruptArchive(f"Squeeze node {child} out of range")
            else:
                node = child
    return rle90_expand(bytes(decoded))[:size]
