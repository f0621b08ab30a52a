#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
Binary II Archive Reader

Binary II wraps one or more ProDOS files for transfer: every file is a
128-byte header followed by its data padded to a multiple of 128 bytes.
A .bxy file is a Binary II envelope around a single NuFX archive.
"""

import struct
import logging
from typing import List, Optional

from .entry import DirectoryEntry, Filesystem, STORAGE_SUBDIR
from .errors import EntryNotFound, UnrecognizedFormat, UnsupportedOperation
from .prodos_directory import is_locked
from .utils import decode_prodos_datetime

logger = logging.getLogger(__name__)

HEADER_SIZE = 128
ID_BYTES = b'\x0a\x47\x4c'
ID_VERSION_OFFSET = 18
ID_VERSION_BYTE = 0x02

# Header offsets
HDR_ACCESS = 3
HDR_FILE_TYPE = 4
HDR_AUX_TYPE = 5
HDR_STORAGE = 7
HDR_BLOCKS = 8
HDR_MOD_DATE = 10
HDR_CREATE_DATE = 14
HDR_EOF = 20
HDR_NAME_LEN = 23
HDR_NAME = 24
HDR_NAME_MAX = 64
HDR_EOF_HIGH = 116
HDR_FILES_TO_FOLLOW = 127


def is_binary2(data: bytes) -> bool:
    return (len(data) >= HEADER_SIZE and data[:3] == ID_BYTES
            and data[ID_VERSION_OFFSET] == ID_VERSION_BYTE)


class BinaryIIArchive(Filesystem):
    """Read-only view of a Binary II (.bny/.bqy) archive"""

    format_name = 'Binary II'

    def __init__(self, data: bytes, name: str = ''):
        if not is_binary2(data):
            raise UnrecognizedFormat("Missing Binary II header")
        self.data = bytes(data)
        self.name = name
        self.files: List[dict] = []
        self.parse()

    @classmethod
    def open(cls, path: str) -> 'BinaryIIArchive':
        with open(path, 'rb') as f:
            return cls(f.read(), name=str(path))

    def parse(self):
        """Walk the header chain, stopping at the file marked as the last"""
        pos = 0
        while pos + HEADER_SIZE <= len(self.data):
            header = self.data[pos:pos + HEADER_SIZE]
            if header[:3] != ID_BYTES or header[ID_VERSION_OFFSET] != ID_VERSION_BYTE:
                logger.warning(f"Binary II header missing at offset {pos}; stopping")
                break
            eof = (header[HDR_EOF] | (header[HDR_EOF + 1] << 8) | (header[HDR_EOF + 2] << 16)
                   | (header[HDR_EOF_HIGH] << 24))
            name_len = min(header[HDR_NAME_LEN], HDR_NAME_MAX)
            name = header[HDR_NAME:HDR_NAME + name_len].decode('ascii', errors='replace')
            storage = header[HDR_STORAGE]
            data_offset = pos + HEADER_SIZE
            if storage == STORAGE_SUBDIR:
                padded = 0
            else:
                padded = (eof + HEADER_SIZE - 1) // HEADER_SIZE * HEADER_SIZE
            self.files.append({
                'name': name,
                'access': header[HDR_ACCESS],
                'file_type': header[HDR_FILE_TYPE],
                'aux_type': struct.unpack_from('<H', header, HDR_AUX_TYPE)[0],
                'storage_type': storage,
                'blocks': struct.unpack_from('<H', header, HDR_BLOCKS)[0],
                'modified_at': decode_prodos_datetime(*struct.unpack_from('<HH', header, HDR_MOD_DATE)),
                'created_at': decode_prodos_datetime(*struct.unpack_from('<HH', header, HDR_CREATE_DATE)),
                'eof': 0 if storage == STORAGE_SUBDIR else eof,
                'offset': data_offset,
            })
            pos = data_offset + padded
            if header[HDR_FILES_TO_FOLLOW] == 0:
                break
        logger.debug(f"Parsed Binary II archive with {len(self.files)} files")

    def file_data(self, index: int) -> bytes:
        info = self.files[index]
        data = self.data[info['offset']:info['offset'] + info['eof']]
        if len(data) < info['eof']:
            logger.warning(f"Binary II file '{info['name']}' truncated: "
                           f"{len(data)} of {info['eof']} bytes")
        return data

    def list(self, directory: Optional[DirectoryEntry] = None) -> List[DirectoryEntry]:
        if directory is not None:
            raise UnsupportedOperation("Binary II archives are listed flat")
        entries = []
        for i, info in enumerate(self.files):
            storage = info['storage_type']
            entries.append(DirectoryEntry(
                name=info['name'],
                is_directory=storage == STORAGE_SUBDIR,
                file_type=info['file_type'],
                aux_type=info['aux_type'],
                size_bytes=info['eof'],
                storage_type=storage,
                created_at=info['created_at'],
                modified_at=info['modified_at'],
                locked=is_locked(info['access']),
                blocks_used=info['blocks'],
                access=info['access'],
                path=info['name'],
                location=(i,),
            ))
        return entries

    def read_file(self, entry: DirectoryEntry) -> bytes:
        if len(entry.location) != 1 or not 0 <= entry.location[0] < len(self.files):
            raise EntryNotFound(f"'{entry.name}' is not in this archive")
        if entry.is_directory:
            raise UnsupportedOperation(f"'{entry.name}' is a directory")
        return self.file_data(entry.location[0])
