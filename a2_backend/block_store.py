#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
Block Store

Uniform block/sector view over an Apple II container file:
- Container detection (DOS-order, ProDOS-order, 2IMG, HDV, generic .dsk)
- 2IMG header parsing and creation
- DOS <-> ProDOS sector interleave
- Staged writes: every mutating engine call runs inside transaction() so its
  blocks reach the file together, or not at all.
"""

import os
import struct
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import CorruptStructure, UnrecognizedFormat, OutOfRange, FileLocked

logger = logging.getLogger(__name__)

SECTOR_SIZE = 256
BLOCK_SIZE = 512
SECTORS_PER_TRACK = 16
TRACK_SIZE = SECTOR_SIZE * SECTORS_PER_TRACK
FLOPPY_140K = 143360
MAX_PRODOS_BLOCKS = 65535

IMG2_MAGIC = b'2IMG'
IMG2_HEADER_SIZE = 64
IMG2_FORMAT_DOS = 0
IMG2_FORMAT_PRODOS = 1
IMG2_FORMAT_NIBBLE = 2
IMG2_FLAG_LOCKED = 0x80000000
IMG2_FLAG_VOLUME_VALID = 0x00000100

ORDER_DOS = 'dos'
ORDER_PRODOS = 'prodos'

# DOS 3.3 logical sector -> ProDOS-order physical sector. The table is its
# own inverse.
DOS_TO_PRODOS_SECTOR = (0, 14, 13, 12, 11, 10, 9, 8, 7, 6, 5, 4, 3, 2, 1, 15)
PRODOS_TO_DOS_SECTOR = DOS_TO_PRODOS_SECTOR


class ContainerKind:
    RAW_DO = 'raw-do'
    RAW_PO = 'raw-po'
    TAGGED_2IMG = 'tagged-2img'
    HDV = 'hdv'
    GENERIC_DSK = 'generic-dsk'


def build_2img_header(data_length: int, image_format: int = IMG2_FORMAT_PRODOS,
                      locked: bool = False, volume_number: Optional[int] = None,
                      creator: bytes = b'A2BK') -> bytes:
    """Build a 64-byte 2IMG header for data_length bytes of image data"""
    flags = IMG2_FLAG_LOCKED if locked else 0
    if volume_number is not None:
        flags |= IMG2_FLAG_VOLUME_VALID | (volume_number & 0xFF)
    blocks = data_length // BLOCK_SIZE if image_format == IMG2_FORMAT_PRODOS else 0
    header = struct.pack('<4s4sHHIIIII', IMG2_MAGIC, creator[:4].ljust(4, b' '),
                         IMG2_HEADER_SIZE, 1, image_format, flags, blocks,
                         IMG2_HEADER_SIZE, data_length)
    return header.ljust(IMG2_HEADER_SIZE, b'\x00')


def _dos_sector_offset(order: str, track: int, sector: int) -> int:
    """Byte offset (relative to image data) of a DOS logical sector"""
    if order == ORDER_PRODOS:
        sector = DOS_TO_PRODOS_SECTOR[sector]
    return (track * SECTORS_PER_TRACK + sector) * SECTOR_SIZE


def _prodos_block_offsets(order: str, block: int) -> Tuple[int, ...]:
    """Byte offsets (relative to image data) of the halves of a ProDOS block"""
    if order == ORDER_PRODOS:
        return (block * BLOCK_SIZE,)
    track, k = divmod(block, 8)
    base = track * TRACK_SIZE
    return (base + PRODOS_TO_DOS_SECTOR[2 * k] * SECTOR_SIZE,
            base + PRODOS_TO_DOS_SECTOR[2 * k + 1] * SECTOR_SIZE)


def _looks_like_prodos(data: bytes, order: str) -> bool:
    if len(data) < 6 * BLOCK_SIZE:
        return False
    off = _prodos_block_offsets(order, 2)[0]
    block = data[off:off + SECTOR_SIZE]
    prev = struct.unpack_from('<H', block, 0)[0]
    storage = block[4] >> 4
    name_len = block[4] & 0x0F
    return (prev == 0 and storage == 0xF and name_len > 0
            and block[0x23] == 0x27 and block[0x24] == 0x0D)


def _looks_like_pascal(data: bytes, order: str) -> bool:
    if len(data) < 6 * BLOCK_SIZE:
        return False
    off = _prodos_block_offsets(order, 2)[0]
    first, last = struct.unpack_from('<HH', data, off)
    name_len = data[off + 6]
    return first == 0 and 2 < last <= 10 and 1 <= name_len <= 7 and data[off + 4] == 0


def _dos33_catalog_length(data: bytes, order: str) -> int:
    """Length of the catalog chain reachable from a plausible VTOC (0 if none)"""
    if len(data) < 18 * TRACK_SIZE:
        return 0
    vtoc = _dos_sector_offset(order, 17, 0)
    tracks, sectors = data[vtoc + 0x34], data[vtoc + 0x35]
    track, sector = data[vtoc + 1], data[vtoc + 2]
    if sectors != SECTORS_PER_TRACK or not (0 < track < tracks) or sector >= sectors:
        return 0
    max_tracks = len(data) // TRACK_SIZE
    seen = set()
    while track != 0 and (track, sector) not in seen:
        if track >= max_tracks or sector >= SECTORS_PER_TRACK:
            break
        seen.add((track, sector))
        off = _dos_sector_offset(order, track, sector)
        track, sector = data[off + 1], data[off + 2]
    return len(seen)


def probe_order(data: bytes) -> str:
    """Guess the sector order of a headerless .dsk image"""
    if _looks_like_prodos(data, ORDER_PRODOS):
        return ORDER_PRODOS
    if _looks_like_prodos(data, ORDER_DOS):
        return ORDER_DOS
    dos_chain = _dos33_catalog_length(data, ORDER_DOS)
    po_chain = _dos33_catalog_length(data, ORDER_PRODOS)
    if dos_chain or po_chain:
        return ORDER_PRODOS if po_chain > dos_chain else ORDER_DOS
    if _looks_like_pascal(data, ORDER_DOS):
        return ORDER_DOS
    if _looks_like_pascal(data, ORDER_PRODOS):
        return ORDER_PRODOS
    return ORDER_DOS if len(data) == FLOPPY_140K else ORDER_PRODOS


class Container:
    """Raw image bytes plus the framing needed to find the filesystem data

    Attributes:
        kind: One of the ContainerKind constants.
        order: ORDER_DOS or ORDER_PRODOS sector order of the image data.
        data_offset: Start of the image data (non-zero only for 2IMG).
        data_length: Length of the image data.
        read_only: True for locked 2IMG images or when requested by the caller.
    """

    def __init__(self, data: bytearray, kind: str, order: str, data_offset: int = 0,
                 data_length: Optional[int] = None, path: Optional[str] = None,
                 read_only: bool = False):
        self.data = data
        self.kind = kind
        self.order = order
        self.data_offset = data_offset
        self.data_length = len(data) - data_offset if data_length is None else data_length
        self.path = path
        self.read_only = read_only

    @classmethod
    def load(cls, path: str, read_only: bool = False) -> 'Container':
        """Read a container file from disk and detect its framing"""
        logger.debug(f"Loading container {path}")
        with open(path, 'rb') as f:
            data = bytearray(f.read())
        container = cls.from_bytes(data, name=str(path), read_only=read_only)
        container.path = str(path)
        return container

    @classmethod
    def from_bytes(cls, data, name: str = '', read_only: bool = False) -> 'Container':
        """
        Detect the container kind of an in-memory image.

        Args:
            data: Complete image bytes.
            name: File name used for extension hints ('' if unknown).
            read_only: Refuse all writes.

        Raises:
            UnrecognizedFormat: If size or header do not match any container.
        """
        data = bytearray(data)
        ext = Path(name).suffix.lower()
        size = len(data)

        if data[:4] == IMG2_MAGIC:
            return cls._from_2img(data, read_only)

        if size == 0:
            raise UnrecognizedFormat("Empty image")

        if ext == '.po':
            if size % BLOCK_SIZE:
                raise UnrecognizedFormat(f"ProDOS-order image size {size} is not a multiple of 512")
            return cls(data, ContainerKind.RAW_PO, ORDER_PRODOS, read_only=read_only)
        if ext == '.do':
            if size % TRACK_SIZE:
                raise UnrecognizedFormat(f"DOS-order image size {size} is not a whole number of tracks")
            return cls(data, ContainerKind.RAW_DO, ORDER_DOS, read_only=read_only)
        if ext == '.hdv':
            if size % BLOCK_SIZE or size // BLOCK_SIZE > MAX_PRODOS_BLOCKS:
                raise UnrecognizedFormat(f"Hard disk volume size {size} is invalid")
            return cls(data, ContainerKind.HDV, ORDER_PRODOS, read_only=read_only)

        if size % BLOCK_SIZE:
            raise UnrecognizedFormat(f"Unrecognized image size: {size} bytes")
        order = probe_order(data) if size % TRACK_SIZE == 0 else ORDER_PRODOS
        if size > FLOPPY_140K * 2 and ext != '.dsk':
            kind = ContainerKind.HDV
        else:
            kind = ContainerKind.GENERIC_DSK
        logger.debug(f"Detected {kind} image ({size} bytes, {order} order)")
        return cls(data, kind, order, read_only=read_only)

    @classmethod
    def _from_2img(cls, data: bytearray, read_only: bool) -> 'Container':
        if len(data) < IMG2_HEADER_SIZE:
            raise UnrecognizedFormat("2IMG header truncated")
        try:
            (_, creator, header_size, version, image_format, flags,
             blocks, data_offset, data_length) = struct.unpack_from('<4s4sHHIIIII', data, 0)
        except struct.error as e:
            raise UnrecognizedFormat(f"Invalid 2IMG header: {e}")

        if image_format == IMG2_FORMAT_NIBBLE:
            raise UnrecognizedFormat("Nibble-format 2IMG images are not supported")
        if image_format not in (IMG2_FORMAT_DOS, IMG2_FORMAT_PRODOS):
            raise UnrecognizedFormat(f"Unknown 2IMG image format {image_format}")

        if data_offset == 0:
            data_offset = header_size or IMG2_HEADER_SIZE
        if data_length == 0:
            data_length = blocks * BLOCK_SIZE if blocks else len(data) - data_offset
        if data_offset + data_length > len(data) or data_length <= 0:
            raise UnrecognizedFormat("2IMG data region runs past end of file")
        if data_length % BLOCK_SIZE:
            raise UnrecognizedFormat(f"2IMG data length {data_length} is not a multiple of 512")

        order = ORDER_DOS if image_format == IMG2_FORMAT_DOS else ORDER_PRODOS
        locked = bool(flags & IMG2_FLAG_LOCKED)
        logger.debug(f"2IMG image from '{creator.decode('ascii', errors='replace')}' "
                     f"v{version}: {data_length} bytes at {data_offset}, {order} order, locked={locked}")
        return cls(data, ContainerKind.TAGGED_2IMG, order, data_offset, data_length,
                   read_only=read_only or locked)

    def write_ranges(self, ranges: List[Tuple[int, bytes]]):
        """
        Write (absolute offset, bytes) pairs to memory and to the backing file.

        The file is flushed, synced and read back for verification.

        Raises:
            CorruptStructure: If verification fails after writing.
        """
        for offset, chunk in ranges:
            self.data[offset:offset + len(chunk)] = chunk
        if not self.path:
            return
        with open(self.path, 'r+b') as f:
            for offset, chunk in ranges:
                f.seek(offset)
                f.write(chunk)
            f.flush()
            os.fsync(f.fileno())

            # Verify writes
            for offset, chunk in ranges:
                f.seek(offset)
                if f.read(len(chunk)) != chunk:
                    logger.critical(f"Write verification failed at offset {offset}")
                    raise CorruptStructure(f"Write verification failed at offset {offset}")


class BlockStore:
    """Logical block view of a Container

    block_size 512 gives ProDOS blocks, 256 gives DOS 3.3 sectors numbered
    track * 16 + sector. The mapping from logical block to physical bytes
    depends only on the container order and never changes.
    """

    def __init__(self, container: Container, block_size: int = BLOCK_SIZE):
        if block_size not in (SECTOR_SIZE, BLOCK_SIZE):
            raise ValueError(f"Unsupported block size: {block_size}")
        self.container = container
        self.block_size = block_size
        self._count = container.data_length // block_size
        self._staged: Dict[int, bytes] = {}
        self._depth = 0

        needs_tracks = (container.order == ORDER_DOS) != (block_size == SECTOR_SIZE)
        if needs_tracks and container.data_length % TRACK_SIZE:
            raise UnrecognizedFormat("Interleaved access needs a whole number of 16-sector tracks")

    @property
    def read_only(self) -> bool:
        return self.container.read_only

    def block_count(self) -> int:
        return self._count

    def logical_block(self, n: int) -> Tuple[int, ...]:
        """
        Map a logical block to the absolute offsets of its physical pieces.

        Returns:
            One offset when the block is stored contiguously, two 256-byte
            offsets for a 512-byte block inside a DOS-order image.
        """
        if n < 0 or n >= self._count:
            raise OutOfRange(f"Block {n} out of range (0-{self._count - 1})")
        base = self.container.data_offset
        if self.block_size == BLOCK_SIZE:
            return tuple(base + off for off in _prodos_block_offsets(self.container.order, n))
        track, sector = divmod(n, SECTORS_PER_TRACK)
        return (base + _dos_sector_offset(self.container.order, track, sector),)

    def _pieces(self, n: int) -> List[Tuple[int, int]]:
        offsets = self.logical_block(n)
        size = self.block_size // len(offsets)
        return [(off, size) for off in offsets]

    def read_block(self, n: int) -> bytes:
        pieces = self._pieces(n)
        if n in self._staged:
            return self._staged[n]
        data = self.container.data
        return b''.join(bytes(data[off:off + size]) for off, size in pieces)

    def write_block(self, n: int, data: bytes):
        """
        Write one logical block.

        Inside a transaction the block is staged; otherwise it is flushed
        immediately.

        Raises:
            OutOfRange: If n is outside the volume or data has the wrong size.
            FileLocked: If the container is read-only.
        """
        self._pieces(n)
        if len(data) != self.block_size:
            raise OutOfRange(f"Block {n} write of {len(data)} bytes (expected {self.block_size})")
        if self.read_only:
            raise FileLocked("Image is write-protected")
        self._staged[n] = bytes(data)
        if self._depth == 0:
            self._commit()

    def zero_block(self, n: int):
        self.write_block(n, bytes(self.block_size))

    @contextmanager
    def transaction(self):
        """Stage every write made inside the block; flush once on success.

        An exception discards the staged blocks and propagates. Nested
        transactions join the outermost one.
        """
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                logger.debug(f"Discarding {len(self._staged)} staged blocks")
                self._staged.clear()
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                self._commit()

    def _commit(self):
        if not self._staged:
            return
        ranges = []
        for n, block in sorted(self._staged.items()):
            pieces = self._pieces(n)
            pos = 0
            for off, size in pieces:
                ranges.append((off, block[pos:pos + size]))
                pos += size
        logger.debug(f"Flushing {len(self._staged)} blocks")
        self._staged.clear()
        self.container.write_ranges(ranges)
