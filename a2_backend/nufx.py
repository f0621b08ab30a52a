#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
NuFX (ShrinkIt) Archive Reader

Parses the master header, record headers and thread headers of .shk/.sdk
archives (and .bxy archives inside a Binary II envelope), and extracts
threads through the decompressors in nufx_codecs. Read-only.
"""

import struct
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .binary2 import BinaryIIArchive, is_binary2
from .entry import DirectoryEntry, Filesystem, STORAGE_SUBDIR, STORAGE_TREE
from .errors import CorruptArchive, EntryNotFound, UnrecognizedFormat, UnsupportedOperation
from .nufx_codecs import decompress_lzw1, decompress_lzw2, decompress_squeeze
from .prodos_directory import is_locked
from .utils import crc16, decode_iigs_datetime

logger = logging.getLogger(__name__)

MASTER_ID = bytes([0x4E, 0xF5, 0x46, 0xE9, 0x6C, 0xE5])
RECORD_ID = bytes([0x4E, 0xF5, 0x46, 0xD8])
MASTER_HEADER_SIZE = 48
RECORD_FIXED_SIZE = 56
THREAD_HEADER_SIZE = 16
THREAD_CRC_SEED = 0xFFFF
MAX_THREADS = 64

CLASS_MESSAGE = 0
CLASS_CONTROL = 1
CLASS_DATA = 2
CLASS_FILENAME = 3

KIND_DATA_FORK = 0
KIND_DISK_IMAGE = 1
KIND_RESOURCE_FORK = 2

FORMAT_UNCOMPRESSED = 0
FORMAT_SQUEEZE = 1
FORMAT_LZW1 = 2
FORMAT_LZW2 = 3
FORMAT_NAMES = {
    0: 'Uncompressed',
    1: 'Squeeze',
    2: 'LZW/1',
    3: 'LZW/2',
    4: 'LZC-12',
    5: 'LZC-16',
}


@dataclass
class NuFXThread:
    thread_class: int
    thread_format: int
    kind: int
    crc: int
    thread_eof: int
    comp_eof: int
    offset: int = 0

    @property
    def format_name(self) -> str:
        return FORMAT_NAMES.get(self.thread_format, f"Format {self.thread_format}")


@dataclass
class NuFXRecord:
    index: int
    version: int
    name: str = ''
    separator: str = '/'
    access: int = 0
    file_type: int = 0
    aux_type: int = 0
    storage_type: int = 0
    file_sys_id: int = 1
    created_at: Optional[object] = None
    modified_at: Optional[object] = None
    archived_at: Optional[object] = None
    threads: List[NuFXThread] = field(default_factory=list)
    header_crc_ok: bool = True

    def find_thread(self, thread_class: int, kind: int) -> Optional[NuFXThread]:
        return next((t for t in self.threads
                     if t.thread_class == thread_class and t.kind == kind), None)

    @property
    def data_thread(self) -> Optional[NuFXThread]:
        return self.find_thread(CLASS_DATA, KIND_DATA_FORK)

    @property
    def resource_thread(self) -> Optional[NuFXThread]:
        return self.find_thread(CLASS_DATA, KIND_RESOURCE_FORK)

    @property
    def disk_thread(self) -> Optional[NuFXThread]:
        return self.find_thread(CLASS_DATA, KIND_DISK_IMAGE)

    @property
    def is_disk_image(self) -> bool:
        return self.disk_thread is not None

    def disk_image_size(self) -> int:
        thread = self.disk_thread
        if thread is None:
            return 0
        # Disk records store the block size in storage_type, the block count in aux
        if thread.thread_eof:
            return thread.thread_eof
        return self.storage_type * self.aux_type

    @property
    def path(self) -> str:
        if self.separator and self.separator != '/':
            return self.name.replace(self.separator, '/')
        return self.name


def is_nufx(data: bytes) -> bool:
    return data[:len(MASTER_ID)] == MASTER_ID


class NuFXArchive(Filesystem):
    """Read-only view of a NuFX archive"""

    format_name = 'NuFX'

    def __init__(self, data: bytes, name: str = ''):
        self.name = name
        self.wrapped = False
        if is_binary2(data) and not is_nufx(data):
            envelope = BinaryIIArchive(data, name)
            if not envelope.files:
                raise UnrecognizedFormat("Empty Binary II envelope")
            data = envelope.file_data(0)
            self.wrapped = True
        if not is_nufx(data):
            raise UnrecognizedFormat("Missing NuFX master header")
        self.data = bytes(data)
        self.records: List[NuFXRecord] = []
        self.truncated = False
        self.parse()

    @classmethod
    def open(cls, path: str) -> 'NuFXArchive':
        with open(path, 'rb') as f:
            return cls(f.read(), name=str(path))

    def parse(self):
        """
        Parse the master header and every record.

        Raises:
            UnrecognizedFormat: If the master header is truncated.
        """
        if len(self.data) < MASTER_HEADER_SIZE:
            logger.critical("NuFX master header truncated")
            raise UnrecognizedFormat("NuFX master header truncated")
        master = self.data[:MASTER_HEADER_SIZE]
        stored_crc, self.total_records = struct.unpack_from('<HI', master, 6)
        self.master_crc_ok = crc16(master[8:MASTER_HEADER_SIZE]) == stored_crc
        if not self.master_crc_ok:
            logger.warning("NuFX master header CRC mismatch")
        self.created_at = decode_iigs_datetime(master[12:20])
        self.modified_at = decode_iigs_datetime(master[20:28])
        self.master_version = struct.unpack_from('<H', master, 28)[0]

        pos = MASTER_HEADER_SIZE
        for index in range(self.total_records):
            try:
                record, pos = self._parse_record(index, pos)
            except (struct.error, CorruptArchive) as e:
                logger.warning(f"Stopping at record {index}: {e}")
                self.truncated = True
                break
            self.records.append(record)
        logger.debug(f"Parsed NuFX archive: {len(self.records)} of {self.total_records} records")

    def _parse_record(self, index: int, off: int):
        data = self.data
        if data[off:off + 4] != RECORD_ID:
            raise CorruptArchive(f"Record signature missing at offset {off}")
        header_crc, attrib_count, version = struct.unpack_from('<HHH', data, off + 4)
        num_threads, fs_id, fs_info = struct.unpack_from('<IHH', data, off + 10)
        access, file_type, aux_type = struct.unpack_from('<III', data, off + 18)
        storage_type = struct.unpack_from('<H', data, off + 30)[0]
        if attrib_count < RECORD_FIXED_SIZE or num_threads > MAX_THREADS:
            raise CorruptArchive(f"Implausible record header at offset {off}")

        name_len = struct.unpack_from('<H', data, off + attrib_count)[0]
        name_start = off + attrib_count + 2
        header_name = data[name_start:name_start + name_len].decode('ascii', errors='replace')

        threads_start = name_start + name_len
        threads_end = threads_start + num_threads * THREAD_HEADER_SIZE
        if threads_end > len(data):
            raise CorruptArchive(f"Thread headers run past end of archive (record {index})")

        record = NuFXRecord(
            index=index,
            version=version,
            name=header_name,
            separator=chr(fs_info & 0x7F) if fs_info & 0x7F else '/',
            access=access & 0xFF,
            file_type=file_type & 0xFF,
            aux_type=aux_type & 0xFFFF,
            storage_type=storage_type,
            file_sys_id=fs_id,
            created_at=decode_iigs_datetime(data[off + 32:off + 40]),
            modified_at=decode_iigs_datetime(data[off + 40:off + 48]),
            archived_at=decode_iigs_datetime(data[off + 48:off + 56]),
        )
        record.header_crc_ok = crc16(data[off + 6:threads_end]) == header_crc
        if not record.header_crc_ok:
            logger.warning(f"Record {index} header CRC mismatch")

        data_pos = threads_end
        for t in range(num_threads):
            th = threads_start + t * THREAD_HEADER_SIZE
            t_class, t_format, t_kind, t_crc, t_eof, c_eof = struct.unpack_from('<HHHHII', data, th)
            record.threads.append(NuFXThread(t_class, t_format, t_kind, t_crc, t_eof, c_eof, data_pos))
            data_pos += c_eof

        filename_thread = next((t for t in record.threads if t.thread_class == CLASS_FILENAME), None)
        if filename_thread is not None:
            raw = data[filename_thread.offset:filename_thread.offset + filename_thread.thread_eof]
            record.name = raw.split(b'\x00', 1)[0].decode('ascii', errors='replace')
        if not record.name:
            record.name = f"UNNAMED.{index}"
        return record, data_pos

    def extract_thread(self, record: NuFXRecord, thread: NuFXThread, verify: bool = True) -> bytes:
        """
        Decompress one thread.

        Args:
            record: Record owning the thread.
            thread: Thread to extract.
            verify: Compare CRCs and raise on mismatch.

        Returns:
            Exactly the thread's uncompressed length in bytes.

        Raises:
            CorruptArchive: On a CRC mismatch; the decoded bytes are in its data attribute.
            UnsupportedOperation: For compression formats other than 0-3.
        """
        raw = self.data[thread.offset:thread.offset + thread.comp_eof]
        size = thread.thread_eof
        if thread.kind == KIND_DISK_IMAGE and thread.thread_class == CLASS_DATA:
            size = record.disk_image_size()
        embedded_ok = True

        logger.debug(f"Extracting {record.name} thread {thread.kind} "
                     f"({thread.format_name}, {thread.comp_eof} -> {size} bytes)")
        if len(raw) < thread.comp_eof:
            logger.warning(f"Thread data for '{record.name}' truncated")

        if thread.thread_format == FORMAT_UNCOMPRESSED:
            data = raw[:size]
        elif thread.thread_format == FORMAT_SQUEEZE:
            data = decompress_squeeze(raw, size)
        elif thread.thread_format == FORMAT_LZW1:
            data, embedded_ok = decompress_lzw1(raw, size)
        elif thread.thread_format == FORMAT_LZW2:
            data = decompress_lzw2(raw, size)
        else:
            raise UnsupportedOperation(f"Compression format {thread.format_name} is not supported")

        if not verify:
            return data
        if len(data) != size:
            raise CorruptArchive(f"'{record.name}': decoded {len(data)} of {size} bytes", data)
        if not embedded_ok:
            raise CorruptArchive(f"'{record.name}': LZW/1 checksum mismatch", data)
        if record.version >= 3 and crc16(data, THREAD_CRC_SEED) != thread.crc:
            raise CorruptArchive(f"'{record.name}': thread CRC mismatch", data)
        return data

    def _entry_record(self, entry: DirectoryEntry) -> NuFXRecord:
        if len(entry.location) != 1 or not 0 <= entry.location[0] < len(self.records):
            raise EntryNotFound(f"'{entry.name}' is not in this archive")
        return self.records[entry.location[0]]

    def _record_entry(self, record: NuFXRecord) -> DirectoryEntry:
        thread = record.data_thread or record.disk_thread
        if record.is_disk_image:
            size = record.disk_image_size()
        else:
            size = thread.thread_eof if thread else 0
        is_dir = record.storage_type == STORAGE_SUBDIR and thread is None
        return DirectoryEntry(
            name=record.path,
            is_directory=is_dir,
            file_type=record.file_type,
            aux_type=record.aux_type,
            size_bytes=size,
            storage_type=record.storage_type if record.storage_type <= STORAGE_TREE else None,
            created_at=record.created_at,
            modified_at=record.modified_at,
            locked=is_locked(record.access),
            access=record.access,
            path=record.path,
            location=(record.index,),
        )

    def list(self, directory: Optional[DirectoryEntry] = None) -> List[DirectoryEntry]:
        """Flat listing of every record"""
        if directory is not None:
            raise UnsupportedOperation("NuFX archives are listed flat")
        return [self._record_entry(record) for record in self.records]

    def read_file(self, entry: DirectoryEntry, fork: str = 'data') -> bytes:
        """
        Extract a record's data fork (or disk image), or its resource fork.

        Raises:
            CorruptArchive: On a CRC mismatch (best-effort bytes in .data).
        """
        record = self._entry_record(entry)
        if fork == 'resource':
            thread = record.resource_thread
        else:
            thread = record.data_thread or record.disk_thread
        if thread is None:
            return b''
        return self.extract_thread(record, thread)

    def extract_disk_image(self, record: NuFXRecord) -> bytes:
        """Return the raw block image stored in a disk-image record"""
        thread = record.disk_thread
        if thread is None:
            raise UnsupportedOperation(f"'{record.name}' is not a disk image")
        return self.extract_thread(record, thread)
