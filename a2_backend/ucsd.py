#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
UCSD Pascal Filesystem Handler (read-only)
Apple Pascal volumes keep a single directory in blocks 2-5 describing
contiguous block extents.
"""

import struct
import logging
import datetime
from typing import List, Optional

from .block_store import BlockStore, Container, BLOCK_SIZE
from .entry import DirectoryEntry, Filesystem
from .errors import CorruptStructure, EntryNotFound, UnrecognizedFilesystem, UnsupportedOperation
from .filetypes import UCSD_TO_PRODOS_TYPE, ucsd_kind_name
from .utils import decode_ucsd_date

logger = logging.getLogger(__name__)

DIRECTORY_BLOCK = 2
DIRECTORY_BLOCKS = 4
DIRECTORY_END_BLOCK = DIRECTORY_BLOCK + DIRECTORY_BLOCKS
ENTRY_SIZE = 26
MAX_FILES = 77
VOLUME_NAME_MAX = 7
FILE_NAME_MAX = 15

# Entry offsets
ENT_FIRST_BLOCK = 0x00
ENT_LAST_BLOCK = 0x02
ENT_KIND = 0x04
ENT_NAME_LEN = 0x06
ENT_NAME = 0x07
ENT_LAST_BYTE = 0x16
ENT_DATE = 0x18

# Volume header offsets
VOL_TOTAL_BLOCKS = 0x0E
VOL_FILE_COUNT = 0x10
VOL_DATE = 0x14


class UCSDImage(Filesystem):
    """Read-only handler for UCSD Pascal volumes"""

    format_name = 'UCSD Pascal'

    def __init__(self, store: BlockStore):
        if store.block_size != BLOCK_SIZE:
            raise ValueError("UCSD Pascal needs a 512-byte block store")
        self.store = store
        logger.debug(f"Initializing UCSDImage over {store.block_count()} blocks")
        self.load_volume_header()

    @classmethod
    def open(cls, image_path: str) -> 'UCSDImage':
        return cls(BlockStore(Container.load(image_path, read_only=True), BLOCK_SIZE))

    @staticmethod
    def probe(store: BlockStore) -> bool:
        """True if block 2 starts with a plausible Pascal volume header"""
        if store.block_size != BLOCK_SIZE or store.block_count() < DIRECTORY_END_BLOCK:
            return False
        data = store.read_block(DIRECTORY_BLOCK)
        first, last, kind = struct.unpack_from('<HHH', data, 0)
        name_len = data[ENT_NAME_LEN]
        total, count = struct.unpack_from('<HH', data, VOL_TOTAL_BLOCKS)
        return (first == 0 and last == DIRECTORY_END_BLOCK and kind & 0x0F == 0
                and 1 <= name_len <= VOLUME_NAME_MAX and total >= DIRECTORY_END_BLOCK
                and count <= MAX_FILES)

    @property
    def volume_name(self) -> str:
        return self._volume_name

    def _read_directory(self) -> bytes:
        return b''.join(self.store.read_block(DIRECTORY_BLOCK + i) for i in range(DIRECTORY_BLOCKS))

    def load_volume_header(self):
        """
        Parse the volume entry at the start of the directory.

        Raises:
            UnrecognizedFilesystem: If the header is not a Pascal volume entry.
        """
        if not self.probe(self.store):
            logger.critical("Block 2 does not hold a UCSD Pascal volume header")
            raise UnrecognizedFilesystem("No UCSD Pascal directory")
        header = self.store.read_block(DIRECTORY_BLOCK)
        name_len = header[ENT_NAME_LEN]
        self._volume_name = header[ENT_NAME:ENT_NAME + name_len].decode('ascii', errors='replace')
        self.total_blocks, self.file_count = struct.unpack_from('<HH', header, VOL_TOTAL_BLOCKS)
        if self.total_blocks > self.store.block_count():
            logger.warning(f"Volume claims {self.total_blocks} blocks but image holds "
                           f"{self.store.block_count()}")
            self.total_blocks = self.store.block_count()
        self.modified_at = decode_ucsd_date(struct.unpack_from('<H', header, VOL_DATE)[0])
        logger.debug(f"Loaded Pascal volume {self._volume_name}: {self.total_blocks} blocks, "
                     f"{self.file_count} files")

    def _extent_is_valid(self, first: int, last: int) -> bool:
        return DIRECTORY_END_BLOCK <= first <= last <= self.total_blocks

    def list(self, directory: Optional[DirectoryEntry] = None) -> List[DirectoryEntry]:
        """List the volume; entries with an impossible extent are skipped"""
        if directory is not None:
            raise UnsupportedOperation("UCSD Pascal has no subdirectories")
        data = self._read_directory()
        entries = []
        for i in range(1, min(self.file_count, MAX_FILES) + 1):
            raw = data[i * ENTRY_SIZE:(i + 1) * ENTRY_SIZE]
            first, last, kind_word = struct.unpack_from('<HHH', raw, 0)
            name_len = raw[ENT_NAME_LEN]
            if name_len == 0 or name_len > FILE_NAME_MAX:
                logger.warning(f"Skipping directory entry {i}: bad name length {name_len}")
                continue
            name = raw[ENT_NAME:ENT_NAME + name_len].decode('ascii', errors='replace')
            if not self._extent_is_valid(first, last):
                logger.warning(f"Skipping '{name}': extent {first}-{last} outside volume "
                               f"({self.total_blocks} blocks)")
                continue
            kind = kind_word & 0x0F
            logger.debug(f"'{name}': {ucsd_kind_name(kind)} file, blocks {first}-{last}")
            last_byte, date_word = struct.unpack_from('<HH', raw, ENT_LAST_BYTE)
            if not 1 <= last_byte <= BLOCK_SIZE:
                last_byte = BLOCK_SIZE
            blocks = last - first
            size = (blocks - 1) * BLOCK_SIZE + last_byte if blocks else 0
            date = decode_ucsd_date(date_word)
            entries.append(DirectoryEntry(
                name=name,
                file_type=UCSD_TO_PRODOS_TYPE.get(kind, 0x00),
                aux_type=kind,
                size_bytes=size,
                modified_at=datetime.datetime.combine(date, datetime.time()) if date else None,
                first_block=first,
                locked=True,
                blocks_used=blocks,
                access=0x01,
                path=name,
                location=(i, first, last),
            ))
        return entries

    def read_file(self, entry: DirectoryEntry) -> bytes:
        """
        Read a file's contiguous extent.

        Raises:
            CorruptStructure: If the extent runs past the end of the volume.
        """
        if len(entry.location) != 3:
            raise EntryNotFound(f"'{entry.name}' is not a UCSD Pascal entry")
        _, first, last = entry.location
        if not self._extent_is_valid(first, last):
            raise CorruptStructure(f"'{entry.name}' extent {first}-{last} runs past "
                                   f"{self.total_blocks} blocks")
        logger.debug(f"Extracting file '{entry.name}' (blocks {first}-{last})")
        data = b''.join(self.store.read_block(b) for b in range(first, last))
        return data[:entry.size_bytes]
