#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
Common model shared by every engine: the DirectoryEntry record handed to
callers and the Filesystem base class whose default methods refuse
unsupported operations.
"""

import datetime
from dataclasses import dataclass, field, replace
from typing import List, Optional

from .errors import UnsupportedOperation

# ProDOS storage types
STORAGE_DELETED = 0x0
STORAGE_SEEDLING = 0x1
STORAGE_SAPLING = 0x2
STORAGE_TREE = 0x3
STORAGE_PASCAL_AREA = 0x4
STORAGE_EXTENDED = 0x5
STORAGE_SUBDIR = 0xD
STORAGE_SUBDIR_HEADER = 0xE
STORAGE_VOLUME_HEADER = 0xF

STORAGE_NAMES = {
    STORAGE_SEEDLING: 'seedling',
    STORAGE_SAPLING: 'sapling',
    STORAGE_TREE: 'tree',
    STORAGE_PASCAL_AREA: 'pascal',
    STORAGE_EXTENDED: 'extended',
    STORAGE_SUBDIR: 'subdirectory',
}


@dataclass
class DirectoryEntry:
    """One file or directory as seen by the caller

    ``location`` is private to the engine that produced the entry (block
    and slot indices); it is compared against the disk before any mutation.
    """
    name: str
    is_directory: bool = False
    file_type: int = 0
    aux_type: int = 0
    size_bytes: int = 0
    storage_type: Optional[int] = None
    file_type_dos: Optional[str] = None
    created_at: Optional[datetime.datetime] = None
    modified_at: Optional[datetime.datetime] = None
    first_block: int = 0
    locked: bool = False
    blocks_used: int = 0
    access: int = 0
    path: str = ''
    location: tuple = field(default=(), repr=False)

    @property
    def storage_name(self) -> Optional[str]:
        return STORAGE_NAMES.get(self.storage_type)

    def updated(self, **changes) -> 'DirectoryEntry':
        return replace(self, **changes)


class Filesystem:
    """Capability set shared by all engines

    Engines override what they support; everything else raises
    UnsupportedOperation so the Volume facade can dispatch uniformly.
    """

    format_name = 'Unknown'
    read_only = True

    @property
    def volume_name(self) -> str:
        return ''

    def list(self, directory: Optional[DirectoryEntry] = None) -> List[DirectoryEntry]:
        raise UnsupportedOperation(f"{self.format_name}: list is not supported")

    def read_file(self, entry: DirectoryEntry) -> bytes:
        raise UnsupportedOperation(f"{self.format_name}: read_file is not supported")

    def write_file(self, entry: DirectoryEntry, data: bytes) -> DirectoryEntry:
        raise UnsupportedOperation(f"{self.format_name}: write_file is not supported")

    def create_file(self, name: str, file_type: int, aux_type: int, data: bytes,
                    directory: Optional[DirectoryEntry] = None) -> DirectoryEntry:
        raise UnsupportedOperation(f"{self.format_name}: create_file is not supported")

    def create_directory(self, name: str,
                         directory: Optional[DirectoryEntry] = None) -> DirectoryEntry:
        raise UnsupportedOperation(f"{self.format_name}: create_directory is not supported")

    def delete(self, entry: DirectoryEntry, recursive: bool = False):
        raise UnsupportedOperation(f"{self.format_name}: delete is not supported")

    def rename(self, entry: DirectoryEntry, new_name: str) -> DirectoryEntry:
        raise UnsupportedOperation(f"{self.format_name}: rename is not supported")

    def move(self, entry: DirectoryEntry,
             new_directory: Optional[DirectoryEntry]) -> DirectoryEntry:
        raise UnsupportedOperation(f"{self.format_name}: move is not supported")

    def change_type(self, entry: DirectoryEntry, file_type: int,
                    aux_type: Optional[int] = None) -> DirectoryEntry:
        raise UnsupportedOperation(f"{self.format_name}: change_type is not supported")

    def set_locked(self, entry: DirectoryEntry, locked: bool) -> DirectoryEntry:
        raise UnsupportedOperation(f"{self.format_name}: set_locked is not supported")

    def get_free_space(self) -> int:
        """Free space in bytes (0 for read-only formats)"""
        return 0
