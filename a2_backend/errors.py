#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
Error types raised by the disk image engines.

Every failure surfaced by the package derives from DiskImageError so callers
can catch the whole family with one clause.
"""


class DiskImageError(Exception):
    """Base class for all disk image and archive errors"""


class UnrecognizedFormat(DiskImageError):
    """The container framing (size, header magic) was not recognized"""


class UnrecognizedFilesystem(DiskImageError):
    """No supported filesystem signature was found in the container"""


class OutOfRange(DiskImageError):
    """A block or sector index lies outside the volume"""


class NameCollision(DiskImageError):
    """An entry with the same name already exists in the target directory"""


class InvalidName(DiskImageError):
    """The name breaks the filesystem's character or length rules"""


class DirectoryNotEmpty(DiskImageError):
    """A non-empty directory was deleted without recursive=True"""


class VolumeFull(DiskImageError):
    """Not enough free blocks, sectors or directory slots"""


class FileLocked(DiskImageError):
    """The entry (or the whole image) is write-protected"""


class UnsupportedOperation(DiskImageError):
    """The bound filesystem does not support the requested operation"""


class CorruptStructure(DiskImageError):
    """A chain pointer, bitmap or header contradicts itself"""


class EntryNotFound(DiskImageError):
    """A DirectoryEntry no longer matches what is on disk"""


class CorruptArchive(DiskImageError):
    """Archive checksum mismatch.

    The decoded bytes are still available through ``data`` so a caller can
    keep what was recovered.
    """

    def __init__(self, message: str, data: bytes = b""):
        super().__init__(message)
        self.data = data
