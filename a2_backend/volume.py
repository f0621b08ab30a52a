#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
Volume Facade
Detects what an image or archive holds, binds the matching engine and
serialises every call through a per-volume lock.
"""

import logging
import threading
from typing import List, Optional

from .binary2 import BinaryIIArchive, is_binary2, HEADER_SIZE
from .block_store import BlockStore, Container, BLOCK_SIZE, SECTOR_SIZE, TRACK_SIZE
from .dos33 import DOS33Image
from .entry import DirectoryEntry, Filesystem
from .errors import UnrecognizedFilesystem, UnsupportedOperation
from .nufx import NuFXArchive, is_nufx, MASTER_ID
from .prodos import ProDOSImage
from .ucsd import UCSDImage

logger = logging.getLogger(__name__)


def detect_filesystem(container: Container) -> Filesystem:
    """
    Bind the first engine whose signature matches the container.

    Probe order: ProDOS volume header, DOS 3.3 VTOC, UCSD Pascal directory.

    Raises:
        UnrecognizedFilesystem: If no engine recognizes the image.
    """
    blocks = BlockStore(container, BLOCK_SIZE)
    if ProDOSImage.probe(blocks):
        logger.debug("Detected ProDOS volume")
        return ProDOSImage(blocks)

    if container.data_length % TRACK_SIZE == 0:
        sectors = BlockStore(container, SECTOR_SIZE)
        if DOS33Image.probe(sectors):
            logger.debug("Detected DOS 3.3 volume")
            return DOS33Image(sectors)

    if UCSDImage.probe(blocks):
        logger.debug("Detected UCSD Pascal volume")
        return UCSDImage(blocks)

    logger.critical(f"No filesystem recognized in {container.kind} image "
                    f"({container.data_length} bytes)")
    raise UnrecognizedFilesystem("No ProDOS, DOS 3.3 or UCSD Pascal filesystem found")


def _is_bxy(data: bytes) -> bool:
    return is_binary2(data) and data[HEADER_SIZE:HEADER_SIZE + len(MASTER_ID)] == MASTER_ID


class Volume:
    """One opened image or archive

    Attributes:
        engine: The filesystem engine doing the work.
        source: Path or name the volume was opened from.
    """

    def __init__(self, engine: Filesystem, source: str = ''):
        self.engine = engine
        self.source = source
        self.lock = threading.RLock()

    @classmethod
    def open(cls, path: str, read_only: bool = False) -> 'Volume':
        """
        Open a disk image or archive file.

        Args:
            path: Image or archive path.
            read_only: Refuse every write to the image.

        Raises:
            UnrecognizedFormat: If the container cannot be identified.
            UnrecognizedFilesystem: If no filesystem is found in the image.
        """
        logger.info(f"Opening {path}")
        with open(path, 'rb') as f:
            head = f.read(HEADER_SIZE + len(MASTER_ID))
        if is_nufx(head) or _is_bxy(head) or is_binary2(head):
            with open(path, 'rb') as f:
                return cls.from_bytes(f.read(), name=str(path))
        container = Container.load(path, read_only=read_only)
        return cls(detect_filesystem(container), str(path))

    @classmethod
    def from_bytes(cls, data: bytes, name: str = '', read_only: bool = False) -> 'Volume':
        """Open an in-memory image or archive; changes stay in memory"""
        if is_nufx(data) or _is_bxy(data):
            archive = NuFXArchive(data, name)
            disks = [r for r in archive.records if r.is_disk_image]
            if len(archive.records) == 1 and disks:
                logger.info(f"Opening disk image '{disks[0].name}' embedded in {name or 'archive'}")
                image = archive.extract_disk_image(disks[0])
                container = Container.from_bytes(image, name=disks[0].name, read_only=read_only)
                return cls(detect_filesystem(container), name)
            return cls(archive, name)
        if is_binary2(data):
            return cls(BinaryIIArchive(data, name), name)
        container = Container.from_bytes(data, name=name, read_only=read_only)
        return cls(detect_filesystem(container), name)

    # ------------------------------------------------------------------
    # Volume information
    # ------------------------------------------------------------------

    @property
    def format_name(self) -> str:
        with self.lock:
            return self.engine.format_name

    @property
    def volume_name(self) -> str:
        with self.lock:
            return self.engine.volume_name

    @property
    def read_only(self) -> bool:
        with self.lock:
            return self.engine.read_only

    def free_space(self) -> int:
        with self.lock:
            return self.engine.get_free_space()

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------

    def list(self, directory: Optional[DirectoryEntry] = None) -> List[DirectoryEntry]:
        with self.lock:
            return self.engine.list(directory)

    def read_file(self, entry: DirectoryEntry, fork: str = 'data') -> bytes:
        """Read a file's data fork, or its resource fork where the format has one"""
        with self.lock:
            if fork == 'data':
                return self.engine.read_file(entry)
            if fork != 'resource':
                raise ValueError(f"Unknown fork '{fork}'")
            if isinstance(self.engine, NuFXArchive):
                return self.engine.read_file(entry, fork='resource')
            if isinstance(self.engine, ProDOSImage):
                return self.engine.read_resource_fork(entry)
            raise UnsupportedOperation(f"{self.engine.format_name} files have no resource fork")

    def write_file(self, entry: DirectoryEntry, data: bytes) -> DirectoryEntry:
        with self.lock:
            return self.engine.write_file(entry, data)

    def create_file(self, name: str, file_type, aux_type: int, data: bytes,
                    directory: Optional[DirectoryEntry] = None) -> DirectoryEntry:
        with self.lock:
            return self.engine.create_file(name, file_type, aux_type, data, directory)

    def create_directory(self, name: str,
                         directory: Optional[DirectoryEntry] = None) -> DirectoryEntry:
        with self.lock:
            return self.engine.create_directory(name, directory)

    def delete(self, entry: DirectoryEntry, recursive: bool = False):
        with self.lock:
            self.engine.delete(entry, recursive)

    def rename(self, entry: DirectoryEntry, new_name: str) -> DirectoryEntry:
        with self.lock:
            return self.engine.rename(entry, new_name)

    def move(self, entry: DirectoryEntry,
             new_directory: Optional[DirectoryEntry]) -> DirectoryEntry:
        with self.lock:
            return self.engine.move(entry, new_directory)

    def change_type(self, entry: DirectoryEntry, file_type,
                    aux_type: Optional[int] = None) -> DirectoryEntry:
        with self.lock:
            return self.engine.change_type(entry, file_type, aux_type)

    def set_locked(self, entry: DirectoryEntry, locked: bool) -> DirectoryEntry:
        with self.lock:
            return self.engine.set_locked(entry, locked)
