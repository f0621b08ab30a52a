#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
ProDOS Filesystem Handler
Core functionality for reading/writing ProDOS volumes (floppies, 800K disks, hard disk images)
"""

import struct
import datetime
import logging
from pathlib import Path
from typing import List, Optional

from .block_store import (BlockStore, Container, ContainerKind, BLOCK_SIZE, ORDER_DOS,
                          ORDER_PRODOS, IMG2_FORMAT_PRODOS, build_2img_header)
from .entry import (DirectoryEntry, Filesystem, STORAGE_SEEDLING, STORAGE_SAPLING,
                    STORAGE_TREE, STORAGE_EXTENDED, STORAGE_SUBDIR, STORAGE_VOLUME_HEADER)
from .errors import (CorruptStructure, DirectoryNotEmpty, FileLocked, UnrecognizedFilesystem,
                     UnsupportedOperation, VolumeFull)
from .utils import validate_prodos_name, decode_prodos_datetime, encode_prodos_datetime

from .prodos_directory import (
    read_directory, read_header, iter_directory_blocks, locate_entry, find_free_slot,
    check_name_available, write_entry, clear_entry, adjust_file_count, build_entry,
    build_directory_header, parse_entry, create_directory, rename_entry, move_entry,
    set_entry_type, set_entry_access, ROOT_KEY_BLOCK, ENT_KEY, ENT_EOF, ENT_MODIFIED,
    ENT_ACCESS, ENT_STORAGE, HDR_FILE_COUNT, HDR_BITMAP_POINTER, HDR_TOTAL_BLOCKS,
    HDR_ACCESS, ACCESS_DESTROY, ACCESS_WRITE, ACCESS_LOCKED, ACCESS_UNLOCKED,
    MAX_DIRECTORY_DEPTH, file_storage_is_supported
)

logger = logging.getLogger(__name__)

BITS_PER_BITMAP_BLOCK = BLOCK_SIZE * 8
POINTERS_PER_INDEX = 256
MAX_TREE_INDEX_BLOCKS = 128
MAX_FILE_SIZE = 0xFFFFFF
SEEDLING_MAX = BLOCK_SIZE
SAPLING_MAX = BLOCK_SIZE * POINTERS_PER_INDEX
VOLUME_DIRECTORY_BLOCKS = (2, 3, 4, 5)
DEFAULT_BITMAP_BLOCK = 6


def read_index_block(data: bytes) -> List[int]:
    """Decode an index block: 256 low bytes followed by 256 high bytes"""
    return [data[i] | (data[256 + i] << 8) for i in range(POINTERS_PER_INDEX)]


def build_index_block(pointers: List[int]) -> bytearray:
    data = bytearray(BLOCK_SIZE)
    for i, ptr in enumerate(pointers):
        data[i] = ptr & 0xFF
        data[256 + i] = ptr >> 8
    return data


def storage_type_for_size(size: int) -> int:
    """Seedling up to one block, sapling up to 128 KiB, tree beyond"""
    if size <= SEEDLING_MAX:
        return STORAGE_SEEDLING
    if size <= SAPLING_MAX:
        return STORAGE_SAPLING
    return STORAGE_TREE


class ProDOSImage(Filesystem):
    """Handler for ProDOS volumes"""

    format_name = 'ProDOS'

    # Supported volume sizes for blank images
    FORMATS = {
        '140KB': {
            'name': '5.25" Floppy (140 KB)',
            'total_blocks': 280,
            'extension': '.po',
        },
        '800KB': {
            'name': '3.5" Floppy (800 KB)',
            'total_blocks': 1600,
            'extension': '.po',
        },
        '32MB': {
            'name': 'Hard Disk (32 MB)',
            'total_blocks': 65535,
            'extension': '.hdv',
        },
    }

    def __init__(self, store: BlockStore):
        if store.block_size != BLOCK_SIZE:
            raise ValueError("ProDOS needs a 512-byte block store")
        self.store = store
        logger.debug(f"Initializing ProDOSImage over {store.block_count()} blocks")
        self.load_volume_header()

    @classmethod
    def open(cls, image_path: str, read_only: bool = False) -> 'ProDOSImage':
        return cls(BlockStore(Container.load(image_path, read_only=read_only), BLOCK_SIZE))

    @staticmethod
    def probe(store: BlockStore) -> bool:
        """True if the store holds a plausible ProDOS volume directory"""
        if store.block_size != BLOCK_SIZE or store.block_count() < 6:
            return False
        data = store.read_block(ROOT_KEY_BLOCK)
        prev = struct.unpack_from('<H', data, 0)[0]
        total = struct.unpack_from('<H', data, HDR_TOTAL_BLOCKS)[0]
        return (prev == 0 and data[4] >> 4 == STORAGE_VOLUME_HEADER and data[4] & 0x0F > 0
                and data[0x23] == 0x27 and data[0x24] == 0x0D and 6 < total)

    @property
    def read_only(self) -> bool:
        return self.store.read_only

    @property
    def volume_name(self) -> str:
        return self._volume_name

    def load_volume_header(self):
        """
        Read and parse the volume directory header (block 2).

        Raises:
            UnrecognizedFilesystem: If block 2 is not a volume directory key block.
        """
        if self.store.block_count() <= ROOT_KEY_BLOCK:
            logger.critical(f"Image too small for ProDOS: {self.store.block_count()} blocks")
            raise UnrecognizedFilesystem("Image too small to contain a ProDOS volume")
        header = self.store.read_block(ROOT_KEY_BLOCK)
        if header[4] >> 4 != STORAGE_VOLUME_HEADER:
            logger.critical("Block 2 does not hold a ProDOS volume header")
            raise UnrecognizedFilesystem("No ProDOS volume directory header")

        name_len = header[4] & 0x0F
        self._volume_name = header[5:5 + name_len].decode('ascii', errors='replace')
        self.volume_access = header[HDR_ACCESS]
        self.bitmap_pointer = struct.unpack_from('<H', header, HDR_BITMAP_POINTER)[0]
        self.total_blocks = struct.unpack_from('<H', header, HDR_TOTAL_BLOCKS)[0]
        self.created_at = decode_prodos_datetime(*struct.unpack_from('<HH', header, 0x1C))

        if self.total_blocks > self.store.block_count():
            logger.warning(f"Volume claims {self.total_blocks} blocks but image holds "
                           f"{self.store.block_count()}")
            self.total_blocks = self.store.block_count()
        if not (0 < self.bitmap_pointer < self.total_blocks):
            raise CorruptStructure(f"Bitmap pointer {self.bitmap_pointer} out of range")
        self.bitmap_blocks = (self.total_blocks + BITS_PER_BITMAP_BLOCK - 1) // BITS_PER_BITMAP_BLOCK
        logger.debug(f"Loaded ProDOS volume /{self._volume_name}: {self.total_blocks} blocks, "
                     f"bitmap at {self.bitmap_pointer}")

    def get_total_capacity(self) -> int:
        return self.total_blocks * BLOCK_SIZE

    def get_format_name(self) -> str:
        """Get the friendly format name (e.g. '800KB') based on block count"""
        for key, fmt in self.FORMATS.items():
            if fmt['total_blocks'] == self.total_blocks:
                return key
        return f"{self.get_total_capacity() // 1024}KB"

    # ------------------------------------------------------------------
    # Volume bitmap
    # ------------------------------------------------------------------

    def read_bitmap(self) -> bytearray:
        """
        Read the volume bitmap.

        Returns:
            One bit per block, most significant bit first; a set bit is free.
        """
        return bytearray(b''.join(self.store.read_block(self.bitmap_pointer + i)
                                  for i in range(self.bitmap_blocks)))

    def write_bitmap(self, bitmap: bytearray):
        for i in range(self.bitmap_blocks):
            chunk = bitmap[i * BLOCK_SIZE:(i + 1) * BLOCK_SIZE]
            self.store.write_block(self.bitmap_pointer + i, bytes(chunk))

    @staticmethod
    def is_block_free(bitmap: bytearray, block: int) -> bool:
        return bool(bitmap[block >> 3] & (0x80 >> (block & 7)))

    @staticmethod
    def set_block_free(bitmap: bytearray, block: int, free: bool):
        if free:
            bitmap[block >> 3] |= 0x80 >> (block & 7)
        else:
            bitmap[block >> 3] &= ~(0x80 >> (block & 7)) & 0xFF

    def find_free_blocks(self, count: int = None, bitmap: Optional[bytearray] = None) -> List[int]:
        """
        Find free blocks, first-fit from the start of the volume.

        Args:
            count: Number of blocks needed (None returns all free blocks).
            bitmap: Bitmap to scan (read from disk if omitted).
        """
        if bitmap is None:
            bitmap = self.read_bitmap()
        free = []
        for block in range(self.total_blocks):
            if self.is_block_free(bitmap, block):
                free.append(block)
                if count is not None and len(free) >= count:
                    break
        return free

    def allocate_blocks(self, count: int) -> List[int]:
        """
        Mark count free blocks as used and write the bitmap.

        Raises:
            VolumeFull: If fewer than count blocks are free (nothing is marked).
        """
        bitmap = self.read_bitmap()
        blocks = self.find_free_blocks(count, bitmap)
        if len(blocks) < count:
            logger.warning(f"Volume full: needed {count} blocks, found {len(blocks)}")
            raise VolumeFull(f"Volume full (needed {count} blocks, {len(blocks)} free)")
        for block in blocks:
            self.set_block_free(bitmap, block, False)
        self.write_bitmap(bitmap)
        return blocks

    def free_blocks_in_bitmap(self, blocks: List[int]):
        bitmap = self.read_bitmap()
        for block in blocks:
            if block <= 0 or block >= self.total_blocks:
                raise CorruptStructure(f"Attempt to free invalid block {block}")
            self.set_block_free(bitmap, block, True)
        self.write_bitmap(bitmap)

    def free_block_count(self) -> int:
        return len(self.find_free_blocks())

    def get_free_space(self) -> int:
        return self.free_block_count() * BLOCK_SIZE

    # ------------------------------------------------------------------
    # Allocation chains
    # ------------------------------------------------------------------

    def _check_pointer(self, block: int, visited: set):
        if block >= self.total_blocks:
            raise CorruptStructure(f"Block pointer {block} beyond end of volume")
        if block in visited:
            raise CorruptStructure(f"Block {block} referenced twice in one allocation chain")
        visited.add(block)

    def get_data_blocks(self, storage: int, key_block: int, eof: int) -> List[int]:
        """
        Map a fork's logical blocks to disk blocks.

        Returns:
            One entry per logical block up to EOF; 0 marks a sparse hole.

        Raises:
            CorruptStructure: On a loop or a pointer outside the volume.
        """
        count = (eof + BLOCK_SIZE - 1) // BLOCK_SIZE
        visited = set()
        if storage == STORAGE_SEEDLING:
            self._check_pointer(key_block, visited)
            return [key_block] if count else []
        if storage == STORAGE_SAPLING:
            self._check_pointer(key_block, visited)
            pointers = read_index_block(self.store.read_block(key_block))
            if count > POINTERS_PER_INDEX:
                raise CorruptStructure(f"Sapling file claims {count} blocks")
            result = pointers[:count]
        elif storage == STORAGE_TREE:
            self._check_pointer(key_block, visited)
            master = read_index_block(self.store.read_block(key_block))
            result = []
            for i in range((count + POINTERS_PER_INDEX - 1) // POINTERS_PER_INDEX):
                if i >= MAX_TREE_INDEX_BLOCKS:
                    raise CorruptStructure("Tree file exceeds 128 index blocks")
                idx = master[i]
                need = min(POINTERS_PER_INDEX, count - i * POINTERS_PER_INDEX)
                if idx == 0:
                    result.extend([0] * need)
                    continue
                self._check_pointer(idx, visited)
                result.extend(read_index_block(self.store.read_block(idx))[:need])
        else:
            raise UnsupportedOperation(f"Unsupported storage type {storage}")
        for block in result:
            if block:
                self._check_pointer(block, visited)
        return result

    def get_chain_blocks(self, storage: int, key_block: int) -> List[int]:
        """Every block owned by a fork, index blocks included (for freeing)"""
        visited = set()
        self._check_pointer(key_block, visited)
        if storage == STORAGE_SEEDLING:
            return [key_block]
        if storage == STORAGE_SAPLING:
            for ptr in read_index_block(self.store.read_block(key_block)):
                if ptr:
                    self._check_pointer(ptr, visited)
            return sorted(visited)
        if storage == STORAGE_TREE:
            master = read_index_block(self.store.read_block(key_block))
            for idx in master[:MAX_TREE_INDEX_BLOCKS]:
                if not idx:
                    continue
                self._check_pointer(idx, visited)
                for ptr in read_index_block(self.store.read_block(idx)):
                    if ptr:
                        self._check_pointer(ptr, visited)
            return sorted(visited)
        if storage == STORAGE_EXTENDED:
            key = self.store.read_block(key_block)
            for base in (0x000, 0x100):
                fork_storage = key[base]
                fork_key = struct.unpack_from('<H', key, base + 1)[0]
                if fork_storage and fork_key:
                    for block in self.get_chain_blocks(fork_storage, fork_key):
                        self._check_pointer(block, visited)
            return sorted(visited)
        raise UnsupportedOperation(f"Unsupported storage type {storage}")

    def get_directory_blocks(self, key_block: int) -> List[int]:
        return [block for block, _ in iter_directory_blocks(self, key_block)]

    def _write_fork(self, data: bytes):
        """
        Allocate and write a fork for data.

        Returns:
            (storage type, key block, blocks used)
        """
        size = len(data)
        if size > MAX_FILE_SIZE:
            raise VolumeFull(f"File too large for ProDOS ({size} bytes)")
        storage = storage_type_for_size(size)
        data_count = max(1, (size + BLOCK_SIZE - 1) // BLOCK_SIZE)

        if storage == STORAGE_SEEDLING:
            index_count = 0
        elif storage == STORAGE_SAPLING:
            index_count = 1
        else:
            index_count = 1 + (data_count + POINTERS_PER_INDEX - 1) // POINTERS_PER_INDEX

        blocks = self.allocate_blocks(index_count + data_count)
        index_blocks, data_blocks = blocks[:index_count], blocks[index_count:]

        for i, block in enumerate(data_blocks):
            chunk = data[i * BLOCK_SIZE:(i + 1) * BLOCK_SIZE]
            self.store.write_block(block, chunk.ljust(BLOCK_SIZE, b'\x00'))

        if storage == STORAGE_SEEDLING:
            key = data_blocks[0]
        elif storage == STORAGE_SAPLING:
            key = index_blocks[0]
            self.store.write_block(key, build_index_block(data_blocks))
        else:
            key = index_blocks[0]
            subs = index_blocks[1:]
            for i, sub in enumerate(subs):
                chunk = data_blocks[i * POINTERS_PER_INDEX:(i + 1) * POINTERS_PER_INDEX]
                self.store.write_block(sub, build_index_block(chunk))
            self.store.write_block(key, build_index_block(subs))

        logger.debug(f"Wrote {size} bytes as storage type {storage} (key block {key}, "
                     f"{len(blocks)} blocks)")
        return storage, key, len(blocks)

    # ------------------------------------------------------------------
    # Directory access
    # ------------------------------------------------------------------

    def _directory_key(self, directory: Optional[DirectoryEntry]) -> int:
        if directory is None:
            return ROOT_KEY_BLOCK
        if not directory.is_directory:
            raise UnsupportedOperation(f"'{directory.name}' is not a directory")
        return directory.first_block

    def list(self, directory: Optional[DirectoryEntry] = None) -> List[DirectoryEntry]:
        """
        List a directory.

        Args:
            directory: Subdirectory entry, or None for the volume directory.
        """
        key = self._directory_key(directory)
        read_header(self, key)
        return read_directory(self, key, directory.path if directory else '')

    def read_root_directory(self) -> List[DirectoryEntry]:
        return self.list()

    def walk(self, directory: Optional[DirectoryEntry] = None, depth: int = 0):
        """Yield every entry below directory, depth-first"""
        if depth > MAX_DIRECTORY_DEPTH:
            raise CorruptStructure("Directory nesting too deep (possible loop)")
        for entry in self.list(directory):
            yield entry
            if entry.is_directory:
                yield from self.walk(entry, depth + 1)

    def find_entry(self, path: str) -> Optional[DirectoryEntry]:
        """Find an entry by slash-separated path (case-insensitive)"""
        current = None
        entry = None
        for part in [p for p in path.strip('/').split('/') if p]:
            entry = next((e for e in self.list(current) if e.name.upper() == part.upper()), None)
            if entry is None:
                return None
            current = entry
        return entry

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------

    def read_file(self, entry: DirectoryEntry) -> bytes:
        """
        Read a file's data fork.

        Returns:
            Exactly size_bytes bytes; sparse blocks read as zeros.
        """
        logger.debug(f"Extracting file '{entry.name}' (Size: {entry.size_bytes})")
        if entry.is_directory:
            raise UnsupportedOperation(f"'{entry.name}' is a directory")
        if not file_storage_is_supported(entry.storage_type or 0):
            raise UnsupportedOperation(f"'{entry.name}' has unsupported storage type {entry.storage_type}")
        storage, key, eof = entry.storage_type, entry.first_block, entry.size_bytes
        if storage == STORAGE_EXTENDED:
            key_data = self.store.read_block(key)
            storage = key_data[0]
            key = struct.unpack_from('<H', key_data, 1)[0]
            eof = int.from_bytes(key_data[5:8], 'little')
        data = bytearray()
        for block in self.get_data_blocks(storage, key, eof):
            data += self.store.read_block(block) if block else bytes(BLOCK_SIZE)
        return bytes(data[:eof])

    def read_resource_fork(self, entry: DirectoryEntry) -> bytes:
        if entry.storage_type != STORAGE_EXTENDED:
            return b''
        key_data = self.store.read_block(entry.first_block)
        storage = key_data[0x100]
        key = struct.unpack_from('<H', key_data, 0x101)[0]
        eof = int.from_bytes(key_data[0x105:0x108], 'little')
        data = bytearray()
        for block in self.get_data_blocks(storage, key, eof):
            data += self.store.read_block(block) if block else bytes(BLOCK_SIZE)
        return bytes(data[:eof])

    def create_file(self, name: str, file_type: int, aux_type: int, data: bytes,
                    directory: Optional[DirectoryEntry] = None,
                    modification_dt: Optional[datetime.datetime] = None) -> DirectoryEntry:
        """Create a file

        Args:
            name: ProDOS name (upper-cased before validation)
            file_type: ProDOS file type code
            aux_type: Auxiliary type (load address, record length, ...)
            data: File contents
            directory: Parent directory entry (None for the volume directory)
            modification_dt: Optional modification datetime (defaults to now)

        Raises:
            InvalidName, NameCollision, VolumeFull
        """
        logger.info(f"Writing file '{name}' ({len(data)} bytes)")
        name = validate_prodos_name(name)
        key_dir = self._directory_key(directory)
        with self.store.transaction():
            read_header(self, key_dir)
            check_name_available(self, key_dir, name)
            slot_block, slot_index = find_free_slot(self, key_dir)
            storage, key, blocks_used = self._write_fork(bytes(data))
            raw = build_entry(storage, name, file_type, key, blocks_used, len(data),
                              aux_type, key_dir, modified=modification_dt)
            write_entry(self, slot_block, slot_index, raw)
            adjust_file_count(self, key_dir, 1)
        return parse_entry(raw, key_dir, slot_block, slot_index, directory.path if directory else '')

    def write_file(self, entry: DirectoryEntry, data: bytes) -> DirectoryEntry:
        """Replace a file's contents, keeping its name, type and creation date"""
        logger.info(f"Rewriting file '{entry.name}' ({len(data)} bytes)")
        if entry.is_directory:
            raise UnsupportedOperation(f"'{entry.name}' is a directory")
        with self.store.transaction():
            raw = locate_entry(self, entry)
            if not raw[ENT_ACCESS] & ACCESS_WRITE:
                raise FileLocked(f"'{entry.name}' is write-protected")
            old_key = struct.unpack_from('<H', raw, ENT_KEY)[0]
            self.free_blocks_in_bitmap(self.get_chain_blocks(raw[ENT_STORAGE] >> 4, old_key))
            storage, key, blocks_used = self._write_fork(bytes(data))

            raw[ENT_STORAGE] = (storage << 4) | (raw[ENT_STORAGE] & 0x0F)
            struct.pack_into('<HH', raw, ENT_KEY, key, blocks_used)
            raw[ENT_EOF:ENT_EOF + 3] = len(data).to_bytes(3, 'little')
            struct.pack_into('<HH', raw, ENT_MODIFIED, *encode_prodos_datetime(datetime.datetime.now()))
            key_dir, block, index = entry.location
            write_entry(self, block, index, raw)
        return parse_entry(raw, key_dir, block, index, entry.path.rpartition('/')[0])

    def create_directory(self, name: str,
                         directory: Optional[DirectoryEntry] = None) -> DirectoryEntry:
        """Create an empty subdirectory"""
        logger.info(f"Creating directory '{name}'")
        key_dir = self._directory_key(directory)
        with self.store.transaction():
            read_header(self, key_dir)
            return create_directory(self, name, key_dir, directory.path if directory else '')

    def delete(self, entry: DirectoryEntry, recursive: bool = False):
        """
        Delete a file or directory.

        Every block of the allocation chain is returned to the bitmap and the
        directory slot is zeroed.

        Args:
            entry: Entry to delete.
            recursive: Delete a non-empty directory's contents first.

        Raises:
            DirectoryNotEmpty: If entry is a non-empty directory and recursive is False.
            FileLocked: If the entry is destroy-protected.
        """
        logger.info(f"Deleting '{entry.name}' (recursive={recursive})")
        with self.store.transaction():
            self._delete_entry(entry, recursive, 0)

    def _delete_entry(self, entry: DirectoryEntry, recursive: bool, depth: int):
        if depth > MAX_DIRECTORY_DEPTH:
            raise CorruptStructure("Directory nesting too deep (possible loop)")
        raw = locate_entry(self, entry)
        if not raw[ENT_ACCESS] & ACCESS_DESTROY:
            raise FileLocked(f"'{entry.name}' is delete-protected")
        storage = raw[ENT_STORAGE] >> 4
        key = struct.unpack_from('<H', raw, ENT_KEY)[0]

        if storage == STORAGE_SUBDIR:
            children = read_directory(self, key, entry.path)
            if children and not recursive:
                raise DirectoryNotEmpty(f"Directory '{entry.name}' is not empty")
            # Post-order: contents first
            for child in children:
                self._delete_entry(child, recursive, depth + 1)
            blocks = self.get_directory_blocks(key)
        else:
            blocks = self.get_chain_blocks(storage, key)

        self.free_blocks_in_bitmap(blocks)
        key_dir, block, index = entry.location
        clear_entry(self, block, index)
        adjust_file_count(self, key_dir, -1)

    def rename(self, entry: DirectoryEntry, new_name: str) -> DirectoryEntry:
        logger.info(f"Renaming '{entry.name}' to '{new_name}'")
        with self.store.transaction():
            return rename_entry(self, entry, new_name)

    def move(self, entry: DirectoryEntry,
             new_directory: Optional[DirectoryEntry]) -> DirectoryEntry:
        """Move an entry into another directory (None for the volume directory)"""
        dest_key = self._directory_key(new_directory)
        logger.info(f"Moving '{entry.name}' to directory block {dest_key}")
        with self.store.transaction():
            return move_entry(self, entry, dest_key, new_directory.path if new_directory else '')

    def change_type(self, entry: DirectoryEntry, file_type: int,
                    aux_type: Optional[int] = None) -> DirectoryEntry:
        """Rewrite file type and aux type; size, chain and name are untouched"""
        if aux_type is None:
            aux_type = entry.aux_type
        logger.info(f"Changing type of '{entry.name}' to ${file_type:02X}/${aux_type:04X}")
        with self.store.transaction():
            return set_entry_type(self, entry, file_type, aux_type)

    def set_locked(self, entry: DirectoryEntry, locked: bool) -> DirectoryEntry:
        logger.info(f"{'Locking' if locked else 'Unlocking'} '{entry.name}'")
        with self.store.transaction():
            return set_entry_access(self, entry, ACCESS_LOCKED if locked else ACCESS_UNLOCKED)

    def set_volume_name(self, new_name: str):
        """Rename the volume itself"""
        new_name = validate_prodos_name(new_name)
        logger.info(f"Renaming volume to '/{new_name}'")
        with self.store.transaction():
            header = bytearray(self.store.read_block(ROOT_KEY_BLOCK))
            encoded = new_name.encode('ascii')
            header[4] = (STORAGE_VOLUME_HEADER << 4) | len(encoded)
            header[5:20] = encoded.ljust(15, b'\x00')
            self.store.write_block(ROOT_KEY_BLOCK, header)
        self._volume_name = new_name

    # ------------------------------------------------------------------
    # Blank images
    # ------------------------------------------------------------------

    @staticmethod
    def format_store(store: BlockStore, volume_name: str = 'BLANK'):
        """Write an empty volume directory and bitmap to every block of store"""
        volume_name = validate_prodos_name(volume_name)
        total = min(store.block_count(), 65535)
        bitmap_blocks = (total + BITS_PER_BITMAP_BLOCK - 1) // BITS_PER_BITMAP_BLOCK
        with store.transaction():
            for block in range(DEFAULT_BITMAP_BLOCK + bitmap_blocks):
                store.zero_block(block)

            for i, block in enumerate(VOLUME_DIRECTORY_BLOCKS):
                if i == 0:
                    data = build_directory_header(STORAGE_VOLUME_HEADER, volume_name, access=0xC3)
                    struct.pack_into('<H', data, HDR_FILE_COUNT, 0)
                    struct.pack_into('<H', data, HDR_BITMAP_POINTER, DEFAULT_BITMAP_BLOCK)
                    struct.pack_into('<H', data, HDR_TOTAL_BLOCKS, total)
                else:
                    data = bytearray(BLOCK_SIZE)
                prev = VOLUME_DIRECTORY_BLOCKS[i - 1] if i > 0 else 0
                nxt = VOLUME_DIRECTORY_BLOCKS[i + 1] if i + 1 < len(VOLUME_DIRECTORY_BLOCKS) else 0
                struct.pack_into('<HH', data, 0, prev, nxt)
                store.write_block(block, data)

            bitmap = bytearray(bitmap_blocks * BLOCK_SIZE)
            for block in range(DEFAULT_BITMAP_BLOCK + bitmap_blocks, total):
                ProDOSImage.set_block_free(bitmap, block, True)
            for i in range(bitmap_blocks):
                store.write_block(DEFAULT_BITMAP_BLOCK + i,
                                  bytes(bitmap[i * BLOCK_SIZE:(i + 1) * BLOCK_SIZE]))

    @staticmethod
    def create_empty_image(filepath: str, format_key: str = '140KB', volume_name: str = 'BLANK'):
        """
        Create a blank ProDOS image.

        The container is chosen from the file extension: .2mg gets a 2IMG
        header, .do/.dsk are written in DOS sector order, anything else
        (.po, .hdv) as plain ProDOS-order blocks.

        Args:
            filepath: Destination path.
            format_key: Key into FORMATS.
            volume_name: Volume name (ProDOS rules).
        """
        if format_key not in ProDOSImage.FORMATS:
            raise ValueError(f"Unknown format: {format_key}")
        total = ProDOSImage.FORMATS[format_key]['total_blocks']
        ext = Path(filepath).suffix.lower()
        size = total * BLOCK_SIZE

        if ext in ('.do', '.dsk') and format_key == '140KB':
            container = Container(bytearray(size), ContainerKind.RAW_DO, ORDER_DOS)
        else:
            container = Container(bytearray(size), ContainerKind.RAW_PO, ORDER_PRODOS)
        ProDOSImage.format_store(BlockStore(container, BLOCK_SIZE), volume_name)

        image = bytes(container.data)
        if ext == '.2mg':
            image = build_2img_header(size, IMG2_FORMAT_PRODOS) + image
        with open(filepath, 'wb') as f:
            f.write(image)
        logger.info(f"Created blank ProDOS image {filepath} ({format_key}, /{volume_name.upper()})")
