#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
ProDOS Directory Operations

This module provides low-level logic for ProDOS directory structures, including:
- Walking directory block chains (volume directory and subdirectories).
- Parsing 39-byte file entries into DirectoryEntry records.
- Finding free slots, extending subdirectory chains when they fill up.
- Creating subdirectories, renaming, moving and clearing entries.
- Maintaining header file counts and subdirectory parent links.

It serves as the directory manipulation layer used by the ProDOSImage handler.
"""

import struct
import logging
import datetime
from typing import Iterator, List, Optional, Tuple

from .entry import (DirectoryEntry, STORAGE_SEEDLING, STORAGE_TREE, STORAGE_EXTENDED,
                    STORAGE_SUBDIR, STORAGE_SUBDIR_HEADER, STORAGE_VOLUME_HEADER)
from .errors import (CorruptStructure, EntryNotFound, NameCollision, UnsupportedOperation,
                     VolumeFull, FileLocked)
from .utils import (decode_prodos_datetime, encode_prodos_datetime, validate_prodos_name)

logger = logging.getLogger(__name__)

ROOT_KEY_BLOCK = 2
ENTRY_LENGTH = 0x27
ENTRIES_PER_BLOCK = 0x0D
ENTRY_START = 4
MAX_DIRECTORY_BLOCKS = 1024
MAX_DIRECTORY_DEPTH = 64

# Entry field offsets
ENT_STORAGE = 0x00
ENT_NAME = 0x01
ENT_TYPE = 0x10
ENT_KEY = 0x11
ENT_BLOCKS = 0x13
ENT_EOF = 0x15
ENT_CREATED = 0x18
ENT_VERSION = 0x1C
ENT_MIN_VERSION = 0x1D
ENT_ACCESS = 0x1E
ENT_AUX = 0x1F
ENT_MODIFIED = 0x21
ENT_HEADER_POINTER = 0x25

# Header field offsets (relative to the key block)
HDR_STORAGE = 0x04
HDR_NAME = 0x05
HDR_RESERVED = 0x14
HDR_CREATED = 0x1C
HDR_ACCESS = 0x22
HDR_ENTRY_LENGTH = 0x23
HDR_ENTRIES_PER_BLOCK = 0x24
HDR_FILE_COUNT = 0x25
HDR_BITMAP_POINTER = 0x27
HDR_TOTAL_BLOCKS = 0x29
HDR_PARENT_POINTER = 0x27
HDR_PARENT_ENTRY = 0x29
HDR_PARENT_ENTRY_LENGTH = 0x2A

ACCESS_DESTROY = 0x80
ACCESS_RENAME = 0x40
ACCESS_BACKUP = 0x20
ACCESS_WRITE = 0x02
ACCESS_READ = 0x01
ACCESS_UNLOCKED = 0xE3
ACCESS_LOCKED = 0x21

DIRECTORY_FILE_TYPE = 0x0F


def entry_offset(index: int) -> int:
    return ENTRY_START + index * ENTRY_LENGTH


def is_locked(access: int) -> bool:
    needed = ACCESS_DESTROY | ACCESS_RENAME | ACCESS_WRITE
    return (access & needed) != needed


def iter_directory_blocks(fs, key_block: int) -> Iterator[Tuple[int, bytes]]:
    """
    Iterate over the blocks of a directory chain.

    Includes cycle detection to prevent infinite loops on corrupted images.

    Args:
        fs: The ProDOSImage filesystem object.
        key_block: First block of the directory.

    Yields:
        (block number, 512-byte block data)

    Raises:
        CorruptStructure: On a loop or a pointer outside the volume.
    """
    visited = set()
    block = key_block
    while block:
        if block in visited:
            raise CorruptStructure(f"Loop detected in directory chain at block {block}")
        if block >= fs.total_blocks or len(visited) >= MAX_DIRECTORY_BLOCKS:
            raise CorruptStructure(f"Directory chain pointer {block} is invalid")
        visited.add(block)
        data = fs.store.read_block(block)
        yield block, data
        block = struct.unpack_from('<H', data, 2)[0]


def iter_directory_entries(fs, key_block: int) -> Iterator[Tuple[int, int, bytes]]:
    """
    Iterate over every 39-byte entry slot of a directory, skipping the header.

    Yields:
        (block number, slot index within the block, raw entry bytes)
    """
    for block, data in iter_directory_blocks(fs, key_block):
        for i in range(ENTRIES_PER_BLOCK):
            if block == key_block and i == 0:
                continue
            off = entry_offset(i)
            yield block, i, data[off:off + ENTRY_LENGTH]


def _decode_name(raw: bytes, length: int, case_word: int = 0) -> str:
    name = raw[:length].decode('ascii', errors='replace')
    if case_word & 0x8000:
        # GS/OS lowercase flags: bit 14 is the first character
        chars = list(name)
        for i in range(len(chars)):
            if case_word & (0x4000 >> i):
                chars[i] = chars[i].lower()
        name = ''.join(chars)
    return name


def parse_entry(raw: bytes, key_block: int, block: int, index: int,
                parent_path: str = '') -> Optional[DirectoryEntry]:
    """Parse a raw file entry; returns None for an unused slot"""
    storage = raw[ENT_STORAGE] >> 4
    if storage == 0:
        return None
    name_len = raw[ENT_STORAGE] & 0x0F
    case_word = struct.unpack_from('<H', raw, ENT_VERSION)[0]
    name = _decode_name(raw[ENT_NAME:ENT_NAME + 15], name_len, case_word)

    key, blocks_used = struct.unpack_from('<HH', raw, ENT_KEY)
    eof = raw[ENT_EOF] | (raw[ENT_EOF + 1] << 8) | (raw[ENT_EOF + 2] << 16)
    cdate, ctime = struct.unpack_from('<HH', raw, ENT_CREATED)
    mdate, mtime = struct.unpack_from('<HH', raw, ENT_MODIFIED)
    access = raw[ENT_ACCESS]
    aux = struct.unpack_from('<H', raw, ENT_AUX)[0]

    return DirectoryEntry(
        name=name,
        is_directory=storage == STORAGE_SUBDIR,
        file_type=raw[ENT_TYPE],
        aux_type=aux,
        size_bytes=eof,
        storage_type=storage,
        created_at=decode_prodos_datetime(cdate, ctime),
        modified_at=decode_prodos_datetime(mdate, mtime),
        first_block=key,
        locked=is_locked(access),
        blocks_used=blocks_used,
        access=access,
        path=f"{parent_path}/{name}" if parent_path else name,
        location=(key_block, block, index),
    )


def read_directory(fs, key_block: int = ROOT_KEY_BLOCK, parent_path: str = '') -> List[DirectoryEntry]:
    """
    Read and parse all live entries in a directory.

    Args:
        fs: The ProDOSImage filesystem object.
        key_block: Key block of the directory (2 for the volume directory).
        parent_path: Path prefix used to fill DirectoryEntry.path.

    Returns:
        Entries in on-disk order.
    """
    entries = []
    for block, index, raw in iter_directory_entries(fs, key_block):
        entry = parse_entry(raw, key_block, block, index, parent_path)
        if entry is not None:
            entries.append(entry)
    return entries


def read_header(fs, key_block: int) -> bytes:
    """Return the key block of a directory after checking its header"""
    data = fs.store.read_block(key_block)
    storage = data[HDR_STORAGE] >> 4
    if storage not in (STORAGE_VOLUME_HEADER, STORAGE_SUBDIR_HEADER):
        raise CorruptStructure(f"Block {key_block} is not a directory key block")
    return data


def write_entry(fs, block: int, index: int, raw: bytes):
    """Write a 39-byte entry into its slot"""
    data = bytearray(fs.store.read_block(block))
    off = entry_offset(index)
    data[off:off + ENTRY_LENGTH] = raw
    fs.store.write_block(block, data)


def clear_entry(fs, block: int, index: int):
    """Zero a directory slot"""
    write_entry(fs, block, index, bytes(ENTRY_LENGTH))


def adjust_file_count(fs, key_block: int, delta: int):
    data = bytearray(read_header(fs, key_block))
    count = struct.unpack_from('<H', data, HDR_FILE_COUNT)[0]
    count = max(0, count + delta)
    struct.pack_into('<H', data, HDR_FILE_COUNT, count)
    fs.store.write_block(key_block, data)


def locate_entry(fs, entry: DirectoryEntry) -> bytearray:
    """
    Re-read an entry's raw bytes from disk and confirm it is still the same file.

    Raises:
        EntryNotFound: If the slot is empty or now holds a different entry.
    """
    if len(entry.location) != 3:
        raise EntryNotFound(f"'{entry.name}' is not a ProDOS entry")
    _, block, index = entry.location
    data = fs.store.read_block(block)
    off = entry_offset(index)
    raw = bytearray(data[off:off + ENTRY_LENGTH])
    name_len = raw[ENT_STORAGE] & 0x0F
    current = raw[ENT_NAME:ENT_NAME + name_len].decode('ascii', errors='replace')
    if raw[ENT_STORAGE] >> 4 == 0 or current.upper() != entry.name.upper():
        raise EntryNotFound(f"Entry '{entry.name}' no longer exists")
    return raw


def find_entry_by_name(fs, key_block: int, name: str) -> Optional[DirectoryEntry]:
    target = name.upper()
    for entry in read_directory(fs, key_block):
        if entry.name.upper() == target:
            return entry
    return None


def check_name_available(fs, key_block: int, name: str, ignore: Optional[tuple] = None):
    """Raise NameCollision if name exists in the directory (except at location ignore)"""
    existing = find_entry_by_name(fs, key_block, name)
    if existing is not None and existing.location != ignore:
        raise NameCollision(f"'{name}' already exists in this directory")


def find_free_slot(fs, key_block: int) -> Tuple[int, int]:
    """
    Find the first unused entry slot in a directory.

    Subdirectories grow by one block when full; the volume directory has a
    fixed size.

    Returns:
        (block number, slot index)

    Raises:
        VolumeFull: If the volume directory is full or no block is left to
            extend a subdirectory.
    """
    last_block = key_block
    for block, data in iter_directory_blocks(fs, key_block):
        for i in range(ENTRIES_PER_BLOCK):
            if block == key_block and i == 0:
                continue
            if data[entry_offset(i)] >> 4 == 0:
                return block, i
        last_block = block

    if key_block == ROOT_KEY_BLOCK:
        logger.warning("Volume directory is full")
        raise VolumeFull("Volume directory is full")

    new_block = fs.allocate_blocks(1)[0]
    logger.debug(f"Extending directory {key_block} with block {new_block}")
    fresh = bytearray(fs.store.block_size)
    struct.pack_into('<HH', fresh, 0, last_block, 0)
    fs.store.write_block(new_block, fresh)

    tail = bytearray(fs.store.read_block(last_block))
    struct.pack_into('<H', tail, 2, new_block)
    fs.store.write_block(last_block, tail)

    # The directory's own entry in its parent tracks its size
    header = read_header(fs, key_block)
    parent_block = struct.unpack_from('<H', header, HDR_PARENT_POINTER)[0]
    parent_index = header[HDR_PARENT_ENTRY] - 1
    parent = bytearray(fs.store.read_block(parent_block))
    off = entry_offset(parent_index)
    blocks_used, = struct.unpack_from('<H', parent, off + ENT_BLOCKS)
    eof = parent[off + ENT_EOF] | (parent[off + ENT_EOF + 1] << 8) | (parent[off + ENT_EOF + 2] << 16)
    eof += fs.store.block_size
    struct.pack_into('<H', parent, off + ENT_BLOCKS, blocks_used + 1)
    parent[off + ENT_EOF:off + ENT_EOF + 3] = eof.to_bytes(3, 'little')
    fs.store.write_block(parent_block, parent)
    return new_block, 0


def build_entry(storage: int, name: str, file_type: int, key_block: int, blocks_used: int,
                eof: int, aux_type: int, header_pointer: int, access: int = ACCESS_UNLOCKED,
                created: Optional[datetime.datetime] = None,
                modified: Optional[datetime.datetime] = None) -> bytearray:
    """Assemble a 39-byte file entry"""
    now = datetime.datetime.now()
    raw = bytearray(ENTRY_LENGTH)
    encoded = name.encode('ascii')
    raw[ENT_STORAGE] = (storage << 4) | len(encoded)
    raw[ENT_NAME:ENT_NAME + len(encoded)] = encoded
    raw[ENT_TYPE] = file_type & 0xFF
    struct.pack_into('<HH', raw, ENT_KEY, key_block, blocks_used)
    raw[ENT_EOF:ENT_EOF + 3] = eof.to_bytes(3, 'little')
    struct.pack_into('<HH', raw, ENT_CREATED, *encode_prodos_datetime(created or now))
    raw[ENT_ACCESS] = access
    struct.pack_into('<H', raw, ENT_AUX, aux_type & 0xFFFF)
    struct.pack_into('<HH', raw, ENT_MODIFIED, *encode_prodos_datetime(modified or now))
    struct.pack_into('<H', raw, ENT_HEADER_POINTER, header_pointer)
    return raw


def build_directory_header(storage: int, name: str, access: int = ACCESS_UNLOCKED) -> bytearray:
    """Key block image with a volume or subdirectory header and no entries"""
    data = bytearray(512)
    encoded = name.encode('ascii')
    data[HDR_STORAGE] = (storage << 4) | len(encoded)
    data[HDR_NAME:HDR_NAME + len(encoded)] = encoded
    struct.pack_into('<HH', data, HDR_CREATED, *encode_prodos_datetime(datetime.datetime.now()))
    data[HDR_ACCESS] = access
    data[HDR_ENTRY_LENGTH] = ENTRY_LENGTH
    data[HDR_ENTRIES_PER_BLOCK] = ENTRIES_PER_BLOCK
    return data


def create_directory(fs, name: str, parent_key: int = ROOT_KEY_BLOCK,
                     parent_path: str = '') -> DirectoryEntry:
    """Create an empty subdirectory inside the directory at parent_key"""
    name = validate_prodos_name(name)
    check_name_available(fs, parent_key, name)

    slot_block, slot_index = find_free_slot(fs, parent_key)
    key = fs.allocate_blocks(1)[0]

    header = build_directory_header(STORAGE_SUBDIR_HEADER, name)
    header[HDR_RESERVED] = 0x75
    struct.pack_into('<H', header, HDR_PARENT_POINTER, slot_block)
    header[HDR_PARENT_ENTRY] = slot_index + 1
    header[HDR_PARENT_ENTRY_LENGTH] = ENTRY_LENGTH
    fs.store.write_block(key, header)

    raw = build_entry(STORAGE_SUBDIR, name, DIRECTORY_FILE_TYPE, key, 1,
                      fs.store.block_size, 0, parent_key)
    write_entry(fs, slot_block, slot_index, raw)
    adjust_file_count(fs, parent_key, 1)
    return parse_entry(raw, parent_key, slot_block, slot_index, parent_path)


def rename_entry(fs, entry: DirectoryEntry, new_name: str) -> DirectoryEntry:
    """Rewrite an entry's name (and its subdirectory header name)"""
    raw = locate_entry(fs, entry)
    if not raw[ENT_ACCESS] & ACCESS_RENAME:
        raise FileLocked(f"'{entry.name}' is rename-protected")
    new_name = validate_prodos_name(new_name)
    key_block, block, index = entry.location
    check_name_available(fs, key_block, new_name, ignore=entry.location)

    encoded = new_name.encode('ascii')
    storage = raw[ENT_STORAGE] >> 4
    raw[ENT_STORAGE] = (storage << 4) | len(encoded)
    raw[ENT_NAME:ENT_NAME + 15] = encoded.ljust(15, b'\x00')
    if raw[ENT_MIN_VERSION] & 0x80:
        # Stored lowercase flags no longer apply
        raw[ENT_VERSION] = 0
        raw[ENT_MIN_VERSION] = 0
    write_entry(fs, block, index, raw)

    if storage == STORAGE_SUBDIR:
        header = bytearray(read_header(fs, entry.first_block))
        header[HDR_STORAGE] = (STORAGE_SUBDIR_HEADER << 4) | len(encoded)
        header[HDR_NAME:HDR_NAME + 15] = encoded.ljust(15, b'\x00')
        fs.store.write_block(entry.first_block, header)

    parent_path = entry.path.rpartition('/')[0]
    return parse_entry(raw, key_block, block, index, parent_path)


def directory_ancestors(fs, key_block: int) -> List[int]:
    """Key blocks from key_block up to (and including) the volume directory"""
    chain = [key_block]
    current = key_block
    while current != ROOT_KEY_BLOCK:
        if len(chain) > MAX_DIRECTORY_DEPTH:
            raise CorruptStructure("Directory nesting too deep (possible loop)")
        header = read_header(fs, current)
        if header[HDR_STORAGE] >> 4 == STORAGE_VOLUME_HEADER:
            break
        parent_block = struct.unpack_from('<H', header, HDR_PARENT_POINTER)[0]
        parent = fs.store.read_block(parent_block)
        parent_prev = struct.unpack_from('<H', parent, 0)[0]
        # Walk back to the parent's key block
        visited = {parent_block}
        while parent_prev:
            if parent_prev in visited:
                raise CorruptStructure(f"Loop detected in directory chain at block {parent_prev}")
            visited.add(parent_prev)
            parent_block = parent_prev
            parent_prev = struct.unpack_from('<H', fs.store.read_block(parent_block), 0)[0]
        if parent_block in chain:
            raise CorruptStructure(f"Directory parent loop at block {parent_block}")
        chain.append(parent_block)
        current = parent_block
    return chain


def move_entry(fs, entry: DirectoryEntry, dest_key: int, dest_path: str = '') -> DirectoryEntry:
    """
    Move an entry into another directory.

    Raises:
        UnsupportedOperation: If a directory would move into itself or a descendant.
        NameCollision: If the destination already has an entry with this name.
    """
    raw = locate_entry(fs, entry)
    if not raw[ENT_ACCESS] & ACCESS_RENAME:
        raise FileLocked(f"'{entry.name}' is rename-protected")
    src_key, src_block, src_index = entry.location
    if dest_key == src_key:
        return entry

    read_header(fs, dest_key)
    if entry.is_directory and entry.first_block in directory_ancestors(fs, dest_key):
        raise UnsupportedOperation(f"Cannot move '{entry.name}' into itself or one of its subdirectories")

    check_name_available(fs, dest_key, entry.name)
    slot_block, slot_index = find_free_slot(fs, dest_key)

    struct.pack_into('<H', raw, ENT_HEADER_POINTER, dest_key)
    write_entry(fs, slot_block, slot_index, raw)
    clear_entry(fs, src_block, src_index)
    adjust_file_count(fs, src_key, -1)
    adjust_file_count(fs, dest_key, 1)

    if raw[ENT_STORAGE] >> 4 == STORAGE_SUBDIR:
        header = bytearray(read_header(fs, entry.first_block))
        struct.pack_into('<H', header, HDR_PARENT_POINTER, slot_block)
        header[HDR_PARENT_ENTRY] = slot_index + 1
        fs.store.write_block(entry.first_block, header)

    return parse_entry(raw, dest_key, slot_block, slot_index, dest_path)


def set_entry_type(fs, entry: DirectoryEntry, file_type: int, aux_type: int) -> DirectoryEntry:
    """Rewrite file type and aux type only"""
    raw = locate_entry(fs, entry)
    raw[ENT_TYPE] = file_type & 0xFF
    struct.pack_into('<H', raw, ENT_AUX, aux_type & 0xFFFF)
    _, block, index = entry.location
    write_entry(fs, block, index, raw)
    return parse_entry(raw, entry.location[0], block, index, entry.path.rpartition('/')[0])


def set_entry_access(fs, entry: DirectoryEntry, access: int) -> DirectoryEntry:
    raw = locate_entry(fs, entry)
    raw[ENT_ACCESS] = access & 0xFF
    _, block, index = entry.location
    write_entry(fs, block, index, raw)
    return parse_entry(raw, entry.location[0], block, index, entry.path.rpartition('/')[0])


def file_storage_is_supported(storage: int) -> bool:
    return STORAGE_SEEDLING <= storage <= STORAGE_TREE or storage in (STORAGE_EXTENDED, STORAGE_SUBDIR)
