#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
DOS 3.3 Filesystem Handler
Reading/writing DOS 3.3 disks: VTOC free-sector bitmap, catalog chain and
track/sector (TS) lists.
"""

import struct
import logging
from typing import List, Optional, Tuple

from .block_store import BlockStore, Container, ContainerKind, SECTOR_SIZE, ORDER_DOS
from .entry import DirectoryEntry, Filesystem
from .errors import (CorruptStructure, EntryNotFound, FileLocked, NameCollision,
                     UnrecognizedFilesystem, UnsupportedOperation, VolumeFull)
from .filetypes import (DOS_LETTER_TYPES, dos_type_letter, dos_to_prodos_type, resolve_dos_type)
from .utils import decode_high_ascii, encode_high_ascii, validate_dos_name, DOS_NAME_MAX

logger = logging.getLogger(__name__)

VTOC_TRACK = 17
VTOC_SECTOR = 0

# VTOC offsets
VTOC_CATALOG_TRACK = 0x01
VTOC_CATALOG_SECTOR = 0x02
VTOC_DOS_RELEASE = 0x03
VTOC_VOLUME = 0x06
VTOC_MAX_TS_PAIRS = 0x27
VTOC_LAST_TRACK = 0x30
VTOC_DIRECTION = 0x31
VTOC_TRACKS = 0x34
VTOC_SECTORS = 0x35
VTOC_BYTES_PER_SECTOR = 0x36
VTOC_BITMAP = 0x38

# Catalog sector layout
CATALOG_FIRST_ENTRY = 0x0B
CATALOG_ENTRY_SIZE = 0x23
CATALOG_ENTRIES = 7
ENT_TS_TRACK = 0x00
ENT_TS_SECTOR = 0x01
ENT_TYPE = 0x02
ENT_NAME = 0x03
ENT_SECTOR_COUNT = 0x21
ENTRY_UNUSED = 0x00
ENTRY_DELETED = 0xFF
LOCKED_BIT = 0x80

# TS list layout
TS_NEXT_TRACK = 0x01
TS_NEXT_SECTOR = 0x02
TS_SECTOR_OFFSET = 0x05
TS_FIRST_PAIR = 0x0C
TS_PAIRS = 122

APPLESOFT_LOAD_ADDRESS = 0x0801
ALLOCATE_FORWARD = 0x01

# Content framing per type letter
FRAMING_TEXT = 'text'          # no header, ends at the first NUL
FRAMING_SECTORS = 'sectors'    # no header, whole sectors
FRAMING_LENGTH = 'length'      # 2-byte length
FRAMING_ADDRESS = 'address'    # 2-byte address, 2-byte length
FRAMING = {
    'T': FRAMING_TEXT,
    'S': FRAMING_SECTORS,
    'A': FRAMING_LENGTH,
    'I': FRAMING_LENGTH,
    'B': FRAMING_ADDRESS,
    'R': FRAMING_ADDRESS,
    'a': FRAMING_ADDRESS,
    'b': FRAMING_ADDRESS,
}


def catalog_entry_offset(index: int) -> int:
    return CATALOG_FIRST_ENTRY + index * CATALOG_ENTRY_SIZE


class DOS33Image(Filesystem):
    """Handler for DOS 3.3 disk images"""

    format_name = 'DOS 3.3'

    FORMATS = {
        '140KB': {
            'name': '5.25" Floppy (140 KB)',
            'tracks': 35,
            'sectors_per_track': 16,
        },
        '160KB': {
            'name': '5.25" 40-track Floppy (160 KB)',
            'tracks': 40,
            'sectors_per_track': 16,
        },
    }

    def __init__(self, store: BlockStore):
        if store.block_size != SECTOR_SIZE:
            raise ValueError("DOS 3.3 needs a 256-byte sector store")
        self.store = store
        logger.debug(f"Initializing DOS33Image over {store.block_count()} sectors")
        self.load_vtoc()

    @classmethod
    def open(cls, image_path: str, read_only: bool = False) -> 'DOS33Image':
        return cls(BlockStore(Container.load(image_path, read_only=read_only), SECTOR_SIZE))

    @staticmethod
    def probe(store: BlockStore) -> bool:
        """True if track 17 sector 0 looks like a VTOC"""
        if store.block_size != SECTOR_SIZE or store.block_count() <= VTOC_TRACK * 16:
            return False
        vtoc = store.read_block(VTOC_TRACK * 16 + VTOC_SECTOR)
        tracks, sectors = vtoc[VTOC_TRACKS], vtoc[VTOC_SECTORS]
        cat_track, cat_sector = vtoc[VTOC_CATALOG_TRACK], vtoc[VTOC_CATALOG_SECTOR]
        return (sectors == 16 and 0 < tracks <= store.block_count() // 16
                and 0 < cat_track < tracks and cat_sector < sectors
                and vtoc[VTOC_MAX_TS_PAIRS] == TS_PAIRS)

    @property
    def read_only(self) -> bool:
        return self.store.read_only

    @property
    def volume_name(self) -> str:
        return f"DOS 3.3 Volume {self.volume_number:03d}"

    def load_vtoc(self):
        """
        Read and parse the VTOC (track 17, sector 0).

        Raises:
            UnrecognizedFilesystem: If the VTOC geometry is not DOS 3.3.
        """
        if self.store.block_count() <= VTOC_TRACK * 16:
            logger.critical(f"Image too small for DOS 3.3: {self.store.block_count()} sectors")
            raise UnrecognizedFilesystem("Image too small to contain a DOS 3.3 VTOC")
        vtoc = self.store.read_block(VTOC_TRACK * 16 + VTOC_SECTOR)
        self.tracks = vtoc[VTOC_TRACKS]
        self.sectors_per_track = vtoc[VTOC_SECTORS]
        if self.sectors_per_track != 16 or not (0 < self.tracks <= self.store.block_count() // 16):
            logger.critical(f"Bad VTOC geometry: {self.tracks} tracks, {self.sectors_per_track} sectors")
            raise UnrecognizedFilesystem("No DOS 3.3 VTOC at track 17 sector 0")
        self.catalog_track = vtoc[VTOC_CATALOG_TRACK]
        self.catalog_sector = vtoc[VTOC_CATALOG_SECTOR]
        self.dos_release = vtoc[VTOC_DOS_RELEASE]
        self.volume_number = vtoc[VTOC_VOLUME]
        logger.debug(f"Loaded VTOC: volume {self.volume_number}, {self.tracks} tracks, "
                     f"catalog at T{self.catalog_track} S{self.catalog_sector}")

    def get_format_name(self) -> str:
        for key, fmt in self.FORMATS.items():
            if fmt['tracks'] == self.tracks:
                return key
        return f"{self.tracks * 4}KB"

    # ------------------------------------------------------------------
    # Sector access
    # ------------------------------------------------------------------

    def _sector_index(self, track: int, sector: int) -> int:
        if track >= self.tracks or sector >= self.sectors_per_track:
            raise CorruptStructure(f"Track/sector T{track} S{sector} outside the disk")
        return track * self.sectors_per_track + sector

    def read_sector(self, track: int, sector: int) -> bytes:
        return self.store.read_block(self._sector_index(track, sector))

    def write_sector(self, track: int, sector: int, data: bytes):
        self.store.write_block(self._sector_index(track, sector), data)

    # ------------------------------------------------------------------
    # Free-sector bitmap
    # ------------------------------------------------------------------

    def read_vtoc(self) -> bytearray:
        return bytearray(self.read_sector(VTOC_TRACK, VTOC_SECTOR))

    def write_vtoc(self, vtoc: bytearray):
        self.write_sector(VTOC_TRACK, VTOC_SECTOR, bytes(vtoc))

    @staticmethod
    def is_sector_free(vtoc: bytearray, track: int, sector: int) -> bool:
        """Byte 0 of a track's bitmap holds sectors 15-8, byte 1 sectors 7-0"""
        off = VTOC_BITMAP + track * 4
        bits = (vtoc[off] << 8) | vtoc[off + 1]
        return bool(bits & (1 << sector))

    @staticmethod
    def set_sector_free(vtoc: bytearray, track: int, sector: int, free: bool):
        off = VTOC_BITMAP + track * 4 + (0 if sector >= 8 else 1)
        mask = 1 << (sector & 7)
        if free:
            vtoc[off] |= mask
        else:
            vtoc[off] &= ~mask & 0xFF

    def find_free_sectors(self, count: int = None,
                          vtoc: Optional[bytearray] = None) -> List[Tuple[int, int]]:
        """
        Find free sectors, first-fit by track (the VTOC track is never used),
        highest sector first within a track.

        Tracks are scanned upward when the VTOC allocation direction is +1,
        downward otherwise.
        """
        if vtoc is None:
            vtoc = self.read_vtoc()
        if vtoc[VTOC_DIRECTION] == ALLOCATE_FORWARD:
            tracks = range(self.tracks)
        else:
            tracks = range(self.tracks - 1, -1, -1)
        free = []
        for track in tracks:
            if track == VTOC_TRACK:
                continue
            for sector in range(self.sectors_per_track - 1, -1, -1):
                if self.is_sector_free(vtoc, track, sector):
                    free.append((track, sector))
                    if count is not None and len(free) >= count:
                        return free
        return free

    def allocate_sectors(self, count: int) -> List[Tuple[int, int]]:
        """
        Mark count free sectors used and write the VTOC.

        Raises:
            VolumeFull: If fewer than count sectors are free.
        """
        vtoc = self.read_vtoc()
        sectors = self.find_free_sectors(count, vtoc)
        if len(sectors) < count:
            logger.warning(f"Disk full: needed {count} sectors, found {len(sectors)}")
            raise VolumeFull(f"Disk full (needed {count} sectors, {len(sectors)} free)")
        for track, sector in sectors:
            self.set_sector_free(vtoc, track, sector, False)
        if sectors:
            vtoc[VTOC_LAST_TRACK] = sectors[-1][0]
        self.write_vtoc(vtoc)
        return sectors

    def release_sectors(self, sectors: List[Tuple[int, int]]):
        vtoc = self.read_vtoc()
        for track, sector in sectors:
            self._sector_index(track, sector)
            self.set_sector_free(vtoc, track, sector, True)
        self.write_vtoc(vtoc)

    def free_sector_count(self) -> int:
        return len(self.find_free_sectors())

    def get_free_space(self) -> int:
        return self.free_sector_count() * SECTOR_SIZE

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def iter_catalog_sectors(self):
        """Yield (track, sector, data) for each catalog sector, with loop detection"""
        visited = set()
        track, sector = self.catalog_track, self.catalog_sector
        while track != 0:
            if (track, sector) in visited:
                raise CorruptStructure(f"Loop detected in catalog chain at T{track} S{sector}")
            if len(visited) >= self.tracks * self.sectors_per_track:
                raise CorruptStructure("Catalog chain too long")
            visited.add((track, sector))
            data = self.read_sector(track, sector)
            yield track, sector, data
            track, sector = data[1], data[2]

    def iter_catalog_entries(self):
        """Yield (track, sector, index, raw entry) for every catalog slot"""
        for track, sector, data in self.iter_catalog_sectors():
            for i in range(CATALOG_ENTRIES):
                off = catalog_entry_offset(i)
                yield track, sector, i, data[off:off + CATALOG_ENTRY_SIZE]

    def get_ts_chain(self, track: int, sector: int) -> Tuple[List[Tuple[int, int]], List[Tuple[int, int]]]:
        """
        Walk a file's TS-list chain.

        Returns:
            (TS-list sectors, data sectors); a (0, 0) data sector is a hole.

        Raises:
            CorruptStructure: On a loop or an out-of-range pointer.
        """
        ts_sectors = []
        data_sectors = []
        visited = set()
        while track != 0:
            self._sector_index(track, sector)
            if (track, sector) in visited:
                raise CorruptStructure(f"Loop detected in TS list at T{track} S{sector}")
            if len(visited) >= self.tracks * self.sectors_per_track:
                raise CorruptStructure("TS list chain too long")
            visited.add((track, sector))
            ts_sectors.append((track, sector))
            buf = self.read_sector(track, sector)
            for k in range(TS_PAIRS):
                pair = (buf[TS_FIRST_PAIR + 2 * k], buf[TS_FIRST_PAIR + 2 * k + 1])
                data_sectors.append(pair)
            track, sector = buf[TS_NEXT_TRACK], buf[TS_NEXT_SECTOR]

        while data_sectors and data_sectors[-1] == (0, 0):
            data_sectors.pop()
        for pair in data_sectors:
            if pair == (0, 0):
                continue
            self._sector_index(*pair)
            if pair in visited:
                raise CorruptStructure(f"Sector T{pair[0]} S{pair[1]} referenced twice")
            visited.add(pair)
        return ts_sectors, data_sectors

    def _read_raw(self, ts_track: int, ts_sector: int) -> bytes:
        _, data_sectors = self.get_ts_chain(ts_track, ts_sector)
        data = bytearray()
        for pair in data_sectors:
            data += self.read_sector(*pair) if pair != (0, 0) else bytes(SECTOR_SIZE)
        return bytes(data)

    @staticmethod
    def _decode_content(letter: str, raw: bytes) -> Tuple[bytes, int]:
        """Strip the DOS framing: returns (content, aux type)"""
        framing = FRAMING.get(letter, FRAMING_SECTORS)
        if framing == FRAMING_ADDRESS and len(raw) >= 4:
            address, length = struct.unpack_from('<HH', raw, 0)
            return raw[4:4 + length], address
        if framing == FRAMING_LENGTH and len(raw) >= 2:
            length = struct.unpack_from('<H', raw, 0)[0]
            aux = APPLESOFT_LOAD_ADDRESS if letter == 'A' else 0
            return raw[2:2 + length], aux
        if framing == FRAMING_TEXT:
            end = raw.find(b'\x00')
            return (raw if end < 0 else raw[:end]), 0
        return raw, 0

    @staticmethod
    def _encode_content(letter: str, aux_type: int, data: bytes) -> bytes:
        """
        Add the DOS framing for letter.

        Raises:
            UnsupportedOperation: If data cannot be read back unchanged under
                this framing (NUL in a text file, a partial sector in an S
                file, more than 65535 bytes behind a length header).
        """
        framing = FRAMING.get(letter, FRAMING_SECTORS)
        if framing in (FRAMING_ADDRESS, FRAMING_LENGTH) and len(data) > 0xFFFF:
            raise UnsupportedOperation(f"DOS 3.3 {letter} files are limited to 65535 bytes")
        if framing == FRAMING_ADDRESS:
            return struct.pack('<HH', aux_type & 0xFFFF, len(data)) + data
        if framing == FRAMING_LENGTH:
            return struct.pack('<H', len(data)) + data
        if framing == FRAMING_TEXT and b'\x00' in data:
            raise UnsupportedOperation("DOS 3.3 text files cannot hold NUL bytes")
        if framing == FRAMING_SECTORS and len(data) % SECTOR_SIZE:
            raise UnsupportedOperation(f"DOS 3.3 {letter} files hold whole 256-byte sectors")
        return data

    def _parse_entry(self, track: int, sector: int, index: int, raw: bytes,
                     with_content: bool = True) -> Optional[DirectoryEntry]:
        ts_track = raw[ENT_TS_TRACK]
        if ts_track in (ENTRY_UNUSED, ENTRY_DELETED):
            return None
        ts_sector = raw[ENT_TS_SECTOR]
        type_byte = raw[ENT_TYPE]
        letter = dos_type_letter(type_byte)
        name = decode_high_ascii(raw[ENT_NAME:ENT_NAME + DOS_NAME_MAX])
        sector_count = struct.unpack_from('<H', raw, ENT_SECTOR_COUNT)[0]
        locked = bool(type_byte & LOCKED_BIT)

        size, aux = 0, 0
        if with_content:
            content, aux = self._decode_content(letter, self._read_raw(ts_track, ts_sector))
            size = len(content)

        return DirectoryEntry(
            name=name,
            file_type=dos_to_prodos_type(letter),
            aux_type=aux,
            size_bytes=size,
            file_type_dos=letter,
            first_block=ts_track * self.sectors_per_track + ts_sector,
            locked=locked,
            blocks_used=sector_count,
            access=0x21 if locked else 0xE3,
            path=name,
            location=(track, sector, index),
        )

    def list(self, directory: Optional[DirectoryEntry] = None) -> List[DirectoryEntry]:
        """List the catalog (DOS 3.3 has no subdirectories)"""
        if directory is not None:
            raise UnsupportedOperation("DOS 3.3 has no subdirectories")
        entries = []
        for track, sector, index, raw in self.iter_catalog_entries():
            entry = self._parse_entry(track, sector, index, raw)
            if entry is not None:
                entries.append(entry)
        return entries

    def _locate(self, entry: DirectoryEntry) -> bytearray:
        if len(entry.location) != 3:
            raise EntryNotFound(f"'{entry.name}' is not a DOS 3.3 entry")
        track, sector, index = entry.location
        data = self.read_sector(track, sector)
        off = catalog_entry_offset(index)
        raw = bytearray(data[off:off + CATALOG_ENTRY_SIZE])
        if (raw[ENT_TS_TRACK] in (ENTRY_UNUSED, ENTRY_DELETED)
                or decode_high_ascii(raw[ENT_NAME:ENT_NAME + DOS_NAME_MAX]) != entry.name):
            raise EntryNotFound(f"Entry '{entry.name}' no longer exists")
        return raw

    def _write_catalog_entry(self, location: tuple, raw: bytes):
        track, sector, index = location
        data = bytearray(self.read_sector(track, sector))
        off = catalog_entry_offset(index)
        data[off:off + CATALOG_ENTRY_SIZE] = raw
        self.write_sector(track, sector, data)

    def _check_name_available(self, name: str, ignore: Optional[tuple] = None):
        for track, sector, index, raw in self.iter_catalog_entries():
            if raw[ENT_TS_TRACK] in (ENTRY_UNUSED, ENTRY_DELETED):
                continue
            if (track, sector, index) == ignore:
                continue
            if decode_high_ascii(raw[ENT_NAME:ENT_NAME + DOS_NAME_MAX]) == name:
                raise NameCollision(f"'{name}' already exists on this disk")

    def _find_free_catalog_slot(self) -> tuple:
        for track, sector, index, raw in self.iter_catalog_entries():
            if raw[ENT_TS_TRACK] in (ENTRY_UNUSED, ENTRY_DELETED):
                return track, sector, index
        logger.warning("Catalog is full")
        raise VolumeFull("Catalog is full")

    def _write_chain(self, payload: bytes) -> Tuple[Tuple[int, int], int]:
        """
        Allocate TS-list and data sectors for payload and write them.

        Returns:
            ((first TS-list track, sector), total sectors used)
        """
        data_count = (len(payload) + SECTOR_SIZE - 1) // SECTOR_SIZE
        ts_count = max(1, (data_count + TS_PAIRS - 1) // TS_PAIRS)
        sectors = self.allocate_sectors(ts_count + data_count)
        ts_list, data_sectors = sectors[:ts_count], sectors[ts_count:]

        for i, (track, sector) in enumerate(data_sectors):
            chunk = payload[i * SECTOR_SIZE:(i + 1) * SECTOR_SIZE]
            self.write_sector(track, sector, chunk.ljust(SECTOR_SIZE, b'\x00'))

        for j, (track, sector) in enumerate(ts_list):
            buf = bytearray(SECTOR_SIZE)
            if j + 1 < len(ts_list):
                buf[TS_NEXT_TRACK], buf[TS_NEXT_SECTOR] = ts_list[j + 1]
            struct.pack_into('<H', buf, TS_SECTOR_OFFSET, j * TS_PAIRS)
            for k, (dt, ds) in enumerate(data_sectors[j * TS_PAIRS:(j + 1) * TS_PAIRS]):
                buf[TS_FIRST_PAIR + 2 * k] = dt
                buf[TS_FIRST_PAIR + 2 * k + 1] = ds
            self.write_sector(track, sector, buf)

        return ts_list[0], ts_count + data_count

    def _free_chain(self, ts_track: int, ts_sector: int):
        ts_sectors, data_sectors = self.get_ts_chain(ts_track, ts_sector)
        self.release_sectors(ts_sectors + [p for p in data_sectors if p != (0, 0)])

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------

    def read_file(self, entry: DirectoryEntry) -> bytes:
        """
        Read a file's contents.

        B, R, a and b files lose their 4-byte address/length header, A and I
        files their 2-byte length header; T files stop at the first NUL.
        """
        logger.debug(f"Extracting file '{entry.name}'")
        raw = self._locate(entry)
        content, _ = self._decode_content(dos_type_letter(raw[ENT_TYPE]),
                                          self._read_raw(raw[ENT_TS_TRACK], raw[ENT_TS_SECTOR]))
        return content

    def create_file(self, name: str, file_type, aux_type: int, data: bytes,
                    directory: Optional[DirectoryEntry] = None) -> DirectoryEntry:
        """Create a file

        Args:
            name: DOS 3.3 name (up to 30 characters)
            file_type: DOS letter ('T', 'B', ...) or ProDOS type code
            aux_type: Load address for B, R, a and b files, ignored otherwise
            data: File contents (without DOS headers). Text files may not
                contain NUL, which DOS reads as end of file; S files must be
                a whole number of sectors.
            directory: Must be None

        Raises:
            InvalidName, NameCollision, VolumeFull, UnsupportedOperation
        """
        logger.info(f"Writing file '{name}' ({len(data)} bytes)")
        if directory is not None:
            raise UnsupportedOperation("DOS 3.3 has no subdirectories")
        name = validate_dos_name(name)
        letter = resolve_dos_type(file_type)
        payload = self._encode_content(letter, aux_type, bytes(data))

        with self.store.transaction():
            self._check_name_available(name)
            location = self._find_free_catalog_slot()
            (ts_track, ts_sector), count = self._write_chain(payload)

            raw = bytearray(CATALOG_ENTRY_SIZE)
            raw[ENT_TS_TRACK] = ts_track
            raw[ENT_TS_SECTOR] = ts_sector
            raw[ENT_TYPE] = DOS_LETTER_TYPES[letter]
            raw[ENT_NAME:ENT_NAME + DOS_NAME_MAX] = encode_high_ascii(name, DOS_NAME_MAX)
            struct.pack_into('<H', raw, ENT_SECTOR_COUNT, count)
            self._write_catalog_entry(location, raw)
        return self._parse_entry(*location, raw)

    def write_file(self, entry: DirectoryEntry, data: bytes) -> DirectoryEntry:
        """Replace a file's contents, keeping its name and type"""
        logger.info(f"Rewriting file '{entry.name}' ({len(data)} bytes)")
        with self.store.transaction():
            raw = self._locate(entry)
            if raw[ENT_TYPE] & LOCKED_BIT:
                raise FileLocked(f"'{entry.name}' is locked")
            letter = dos_type_letter(raw[ENT_TYPE])
            payload = self._encode_content(letter, entry.aux_type, bytes(data))
            self._free_chain(raw[ENT_TS_TRACK], raw[ENT_TS_SECTOR])
            (ts_track, ts_sector), count = self._write_chain(payload)
            raw[ENT_TS_TRACK] = ts_track
            raw[ENT_TS_SECTOR] = ts_sector
            struct.pack_into('<H', raw, ENT_SECTOR_COUNT, count)
            self._write_catalog_entry(entry.location, raw)
        return self._parse_entry(*entry.location, raw)

    def delete(self, entry: DirectoryEntry, recursive: bool = False):
        """
        Delete a file.

        Frees the TS-list sectors and every data sector, then marks the
        catalog entry deleted (TS track saved in the last name byte).

        Raises:
            FileLocked: If the file is locked.
        """
        logger.info(f"Deleting file '{entry.name}'")
        with self.store.transaction():
            raw = self._locate(entry)
            if raw[ENT_TYPE] & LOCKED_BIT:
                raise FileLocked(f"'{entry.name}' is locked")
            self._free_chain(raw[ENT_TS_TRACK], raw[ENT_TS_SECTOR])
            raw[ENT_NAME + DOS_NAME_MAX - 1] = raw[ENT_TS_TRACK]
            raw[ENT_TS_TRACK] = ENTRY_DELETED
            self._write_catalog_entry(entry.location, raw)

    def rename(self, entry: DirectoryEntry, new_name: str) -> DirectoryEntry:
        logger.info(f"Renaming '{entry.name}' to '{new_name}'")
        new_name = validate_dos_name(new_name)
        with self.store.transaction():
            raw = self._locate(entry)
            if raw[ENT_TYPE] & LOCKED_BIT:
                raise FileLocked(f"'{entry.name}' is locked")
            self._check_name_available(new_name, ignore=entry.location)
            raw[ENT_NAME:ENT_NAME + DOS_NAME_MAX] = encode_high_ascii(new_name, DOS_NAME_MAX)
            self._write_catalog_entry(entry.location, raw)
        return self._parse_entry(*entry.location, raw)

    def move(self, entry: DirectoryEntry,
             new_directory: Optional[DirectoryEntry]) -> DirectoryEntry:
        raise UnsupportedOperation("DOS 3.3 has a single flat catalog")

    def change_type(self, entry: DirectoryEntry, file_type,
                    aux_type: Optional[int] = None) -> DirectoryEntry:
        """
        Rewrite the catalog type byte (the lock bit is kept).

        The file's contents and size never change. Between letters with the
        same framing only the type byte (and, for address-framed files, the
        load address) is rewritten. Otherwise the contents are re-framed
        into a new sector chain.

        Raises:
            FileLocked: If the file is locked.
            UnsupportedOperation: If the contents cannot be stored unchanged
                under the new type (NUL bytes for T, a partial sector for S).
        """
        letter = resolve_dos_type(file_type)
        logger.info(f"Changing type of '{entry.name}' to {letter}")
        with self.store.transaction():
            raw = self._locate(entry)
            if raw[ENT_TYPE] & LOCKED_BIT:
                raise FileLocked(f"'{entry.name}' is locked")
            old_letter = dos_type_letter(raw[ENT_TYPE])
            ts_track, ts_sector = raw[ENT_TS_TRACK], raw[ENT_TS_SECTOR]
            framing = FRAMING.get(letter, FRAMING_SECTORS)

            if framing == FRAMING.get(old_letter, FRAMING_SECTORS):
                if framing == FRAMING_ADDRESS and aux_type is not None:
                    _, data_sectors = self.get_ts_chain(ts_track, ts_sector)
                    if data_sectors and data_sectors[0] != (0, 0):
                        first = bytearray(self.read_sector(*data_sectors[0]))
                        struct.pack_into('<H', first, 0, aux_type & 0xFFFF)
                        self.write_sector(*data_sectors[0], first)
            else:
                content, old_aux = self._decode_content(old_letter, self._read_raw(ts_track, ts_sector))
                payload = self._encode_content(letter, old_aux if aux_type is None else aux_type,
                                               content)
                logger.debug(f"Re-framing '{entry.name}' from {old_letter} to {letter} "
                             f"({len(content)} bytes)")
                self._free_chain(ts_track, ts_sector)
                (ts_track, ts_sector), count = self._write_chain(payload)
                raw[ENT_TS_TRACK] = ts_track
                raw[ENT_TS_SECTOR] = ts_sector
                struct.pack_into('<H', raw, ENT_SECTOR_COUNT, count)

            raw[ENT_TYPE] = DOS_LETTER_TYPES[letter] | (raw[ENT_TYPE] & LOCKED_BIT)
            self._write_catalog_entry(entry.location, raw)
        return self._parse_entry(*entry.location, raw)

    def set_locked(self, entry: DirectoryEntry, locked: bool) -> DirectoryEntry:
        logger.info(f"{'Locking' if locked else 'Unlocking'} '{entry.name}'")
        with self.store.transaction():
            raw = self._locate(entry)
            if locked:
                raw[ENT_TYPE] |= LOCKED_BIT
            else:
                raw[ENT_TYPE] &= ~LOCKED_BIT & 0xFF
            self._write_catalog_entry(entry.location, raw)
        return self._parse_entry(*entry.location, raw)

    # ------------------------------------------------------------------
    # Blank images
    # ------------------------------------------------------------------

    @staticmethod
    def format_store(store: BlockStore, volume_number: int = 254):
        """Write an empty VTOC and catalog; track 0 and the VTOC track stay used"""
        tracks = store.block_count() // 16
        with store.transaction():
            vtoc = bytearray(SECTOR_SIZE)
            vtoc[VTOC_CATALOG_TRACK] = VTOC_TRACK
            vtoc[VTOC_CATALOG_SECTOR] = 15
            vtoc[VTOC_DOS_RELEASE] = 3
            vtoc[VTOC_VOLUME] = volume_number & 0xFF
            vtoc[VTOC_MAX_TS_PAIRS] = TS_PAIRS
            vtoc[VTOC_LAST_TRACK] = VTOC_TRACK
            vtoc[VTOC_DIRECTION] = 1
            vtoc[VTOC_TRACKS] = tracks
            vtoc[VTOC_SECTORS] = 16
            struct.pack_into('<H', vtoc, VTOC_BYTES_PER_SECTOR, SECTOR_SIZE)
            for track in range(tracks):
                if track in (0, VTOC_TRACK):
                    continue
                off = VTOC_BITMAP + track * 4
                vtoc[off] = 0xFF
                vtoc[off + 1] = 0xFF
            store.write_block(VTOC_TRACK * 16, bytes(vtoc))

            for sector in range(15, 0, -1):
                buf = bytearray(SECTOR_SIZE)
                if sector > 1:
                    buf[1] = VTOC_TRACK
                    buf[2] = sector - 1
                store.write_block(VTOC_TRACK * 16 + sector, bytes(buf))

    @staticmethod
    def create_empty_image(filepath: str, format_key: str = '140KB', volume_number: int = 254):
        """
        Create a blank DOS 3.3 data disk in DOS sector order.

        Args:
            filepath: Destination path (.do or .dsk).
            format_key: Key into FORMATS.
            volume_number: Disk volume number (1-254).
        """
        if format_key not in DOS33Image.FORMATS:
            raise ValueError(f"Unknown format: {format_key}")
        fmt = DOS33Image.FORMATS[format_key]
        size = fmt['tracks'] * fmt['sectors_per_track'] * SECTOR_SIZE
        container = Container(bytearray(size), ContainerKind.RAW_DO, ORDER_DOS)
        DOS33Image.format_store(BlockStore(container, SECTOR_SIZE), volume_number)
        with open(filepath, 'wb') as f:
            f.write(bytes(container.data))
        logger.info(f"Created blank DOS 3.3 image {filepath} (volume {volume_number})")
