#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
Shared helpers for the Apple II engines: date codecs, name rules,
high-ASCII text and CRC-16.
"""

import re
import datetime
from typing import Optional

from .errors import InvalidName

PRODOS_NAME_MAX = 15
DOS_NAME_MAX = 30

_PRODOS_NAME_RE = re.compile(r'^[A-Z][A-Z0-9.]*$')


def _expand_year(year: int) -> int:
    """Two-digit Apple II years: 40-99 are 19xx, 0-39 are 20xx"""
    if year < 40:
        return 2000 + year
    return 1900 + year


def decode_prodos_datetime(date_word: int, time_word: int) -> Optional[datetime.datetime]:
    """Decode a ProDOS date/time pair

    Date word bits 15-9: year, 8-5: month, 4-0: day.
    Time word high byte: hour, low byte: minute.
    Returns None for an unset or invalid stamp.
    """
    if date_word == 0:
        return None
    year = (date_word >> 9) & 0x7F
    month = (date_word >> 5) & 0x0F
    day = date_word & 0x1F
    hour = (time_word >> 8) & 0x1F
    minute = time_word & 0x3F
    try:
        return datetime.datetime(_expand_year(year) if year < 100 else 1900 + year,
                                 month, day, hour, minute)
    except ValueError:
        return None


def encode_prodos_datetime(dt: datetime.datetime) -> tuple:
    """Encode datetime to a (date_word, time_word) ProDOS pair"""
    year = dt.year % 100
    date_word = (year << 9) | (dt.month << 5) | dt.day
    time_word = (dt.hour << 8) | dt.minute
    return date_word, time_word


def decode_ucsd_date(value: int) -> Optional[datetime.date]:
    """Decode a UCSD Pascal date word

    Bits 0-3: month, 4-8: day, 9-15: year.
    """
    if value == 0:
        return None
    month = value & 0x0F
    day = (value >> 4) & 0x1F
    year = (value >> 9) & 0x7F
    if year >= 100:
        return None
    try:
        return datetime.date(_expand_year(year), month, day)
    except ValueError:
        return None


def encode_ucsd_date(d: datetime.date) -> int:
    return ((d.year % 100) << 9) | (d.day << 4) | d.month


def decode_iigs_datetime(raw: bytes) -> Optional[datetime.datetime]:
    """Decode an 8-byte Apple IIgs time record (NuFX, Binary II extensions)

    Layout: second, minute, hour, year (since 1900), day (0-based),
    month (0-based), filler, weekday.
    """
    if len(raw) < 8 or not any(raw[:6]):
        return None
    second, minute, hour, year, day, month = raw[0], raw[1], raw[2], raw[3], raw[4], raw[5]
    try:
        return datetime.datetime(_expand_year(year) if year < 100 else 1900 + year,
                                 month + 1, day + 1, hour, minute, second)
    except ValueError:
        return None


def encode_iigs_datetime(dt: datetime.datetime) -> bytes:
    return bytes([dt.second, dt.minute, dt.hour, dt.year - 1900,
                  dt.day - 1, dt.month - 1, 0, dt.isoweekday() % 7 + 1])


def validate_prodos_name(name: str) -> str:
    """Return the canonical (uppercase) form of a ProDOS name

    Raises:
        InvalidName: If the name is empty, too long, or uses characters
            other than letters, digits and '.' (must start with a letter).
    """
    candidate = name.strip().upper()
    if not candidate or len(candidate) > PRODOS_NAME_MAX:
        raise InvalidName(f"ProDOS names must be 1-{PRODOS_NAME_MAX} characters: '{name}'")
    if not _PRODOS_NAME_RE.match(candidate):
        raise InvalidName(f"Invalid ProDOS name: '{name}'")
    return candidate


def validate_dos_name(name: str) -> str:
    """Return the canonical form of a DOS 3.3 file name

    DOS 3.3 names start with a letter, hold up to 30 printable characters
    and never contain a comma.
    """
    candidate = name.rstrip()
    if not candidate or len(candidate) > DOS_NAME_MAX:
        raise InvalidName(f"DOS 3.3 names must be 1-{DOS_NAME_MAX} characters: '{name}'")
    if not candidate[0].isascii() or not candidate[0].isalpha():
        raise InvalidName(f"DOS 3.3 names must start with a letter: '{name}'")
    for ch in candidate:
        if ch == ',' or not (0x20 <= ord(ch) < 0x7F):
            raise InvalidName(f"Invalid character {ch!r} in DOS 3.3 name '{name}'")
    return candidate.upper()


def encode_high_ascii(text: str, length: int) -> bytes:
    """Encode text as space-padded high-bit ASCII"""
    raw = bytes((ord(ch) & 0x7F) | 0x80 for ch in text[:length])
    return raw + b'\xa0' * (length - len(raw))


def decode_high_ascii(raw: bytes) -> str:
    """Decode high-bit ASCII, dropping trailing spaces"""
    chars = []
    for b in raw:
        b &= 0x7F
        if b < 0x20:
            # Inverse/flashing control characters print as their letters
            b += 0x40
        chars.append(chr(b))
    return ''.join(chars).rstrip(' ')


def _make_crc16_table() -> list:
    table = []
    for i in range(256):
        crc = i << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
        table.append(crc)
    return table


_CRC16_TABLE = _make_crc16_table()


def crc16(data: bytes, crc: int = 0) -> int:
    """CRC-16/XMODEM (polynomial 0x1021) as used by NuFX and Binary II"""
    for b in data:
        crc = ((crc << 8) & 0xFFFF) ^ _CRC16_TABLE[((crc >> 8) ^ b) & 0xFF]
    return crc
