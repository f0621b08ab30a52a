#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
File-Type Registry

Static lookup tables for display names and categories of ProDOS, DOS 3.3
and UCSD Pascal file types, plus conversion between DOS 3.3 type letters
and ProDOS type codes. Pure data: the engines never need it to operate.
"""

from collections import namedtuple
from typing import Optional

FileTypeInfo = namedtuple('FileTypeInfo', ['short_name', 'description', 'category', 'is_graphics'])

# ProDOS file types: code -> (short name, description, category)
PRODOS_FILE_TYPES = {
    0x00: ('NON', 'Unknown', 'General'),
    0x01: ('BAD', 'Bad Blocks', 'System'),
    0x04: ('TXT', 'Text File', 'Text'),
    0x06: ('BIN', 'Binary', 'Code'),
    0x07: ('FNT', 'Apple III Font', 'Font'),
    0x08: ('FOT', 'Graphics Screen', 'Graphics'),
    0x0F: ('DIR', 'Folder', 'System'),
    0x19: ('ADB', 'AppleWorks Database', 'Productivity'),
    0x1A: ('AWP', 'AppleWorks Word Proc', 'Productivity'),
    0x1B: ('ASP', 'AppleWorks Spreadsheet', 'Productivity'),
    0x2A: ('8SC', 'Apple II Source Code', 'Code'),
    0x2B: ('8OB', 'Apple II Object Code', 'Code'),
    0x2E: ('P8C', 'ProDOS 8 Module', 'Code'),
    0x50: ('GWP', 'GS Word Processing', 'Productivity'),
    0x51: ('GSS', 'GS Spreadsheet', 'Productivity'),
    0x52: ('GDB', 'GS Database', 'Productivity'),
    0x53: ('DRW', 'Drawing', 'Graphics'),
    0x54: ('GDP', 'Desktop Publishing', 'Productivity'),
    0xB0: ('SRC', 'Apple IIgs Source', 'Code'),
    0xB1: ('OBJ', 'Apple IIgs Object', 'Code'),
    0xB2: ('LIB', 'Apple IIgs Library', 'Code'),
    0xB3: ('S16', 'GS/OS Application', 'System'),
    0xB4: ('RTL', 'GS/OS Runtime Library', 'System'),
    0xB5: ('EXE', 'Shell Command', 'System'),
    0xB6: ('PIF', 'Permanent Init File', 'System'),
    0xB7: ('TIF', 'Temporary Init File', 'System'),
    0xB8: ('NDA', 'New Desk Accessory', 'System'),
    0xB9: ('CDA', 'Classic Desk Accessory', 'System'),
    0xBA: ('TOL', 'Tool', 'System'),
    0xBB: ('DRV', 'Device Driver', 'System'),
    0xBC: ('LDF', 'Load File', 'System'),
    0xBD: ('FST', 'File System Translator', 'System'),
    0xC0: ('PNT', 'Packed Super Hi-Res', 'Graphics'),
    0xC1: ('PIC', 'Super Hi-Res', 'Graphics'),
    0xC2: ('ANI', 'Paintworks Animation', 'Graphics'),
    0xC3: ('PAL', 'Paintworks Palette', 'Graphics'),
    0xC5: ('OOG', 'Object Graphics', 'Graphics'),
    0xC8: ('FON', 'QuickDraw II Font', 'Font'),
    0xCA: ('ICN', 'Finder Icons', 'Graphics'),
    0xD5: ('MUS', 'Music', 'Audio'),
    0xD6: ('INS', 'Instrument', 'Audio'),
    0xD7: ('MDI', 'MIDI', 'Audio'),
    0xD8: ('SND', 'Sound', 'Audio'),
    0xE0: ('LBR', 'Library', 'Archive'),
    0xE2: ('ATK', 'AppleTalk Data', 'Network'),
    0xEF: ('PAS', 'Pascal Area', 'System'),
    0xF0: ('CMD', 'ProDOS Command', 'System'),
    0xFA: ('INT', 'Integer BASIC', 'Code'),
    0xFB: ('IVR', 'Integer Variables', 'Data'),
    0xFC: ('BAS', 'Applesoft BASIC', 'Code'),
    0xFD: ('VAR', 'Applesoft Variables', 'Data'),
    0xFE: ('REL', 'Relocatable', 'Code'),
    0xFF: ('SYS', 'ProDOS System', 'System'),
}

# (file type, aux type) pairs whose meaning depends on the aux type
PRODOS_AUX_VARIANTS = {
    (0x06, 0x2000): ('HGR', 'Hi-Res Graphics', 'Graphics'),
    (0x06, 0x4000): ('DHGR', 'Double Hi-Res Graphics', 'Graphics'),
    (0x08, 0x4000): ('HGR', 'Packed Hi-Res', 'Graphics'),
    (0x08, 0x4001): ('DHGR', 'Packed Double Hi-Res', 'Graphics'),
    (0xC0, 0x0001): ('SHR', 'Packed Super Hi-Res', 'Graphics'),
    (0xC0, 0x0002): ('PIC', 'Apple Preferred Format', 'Graphics'),
    (0xC1, 0x0002): ('SHR', 'SHR 3200 Color', 'Graphics'),
    (0xE0, 0x8002): ('SHK', 'ShrinkIt Archive', 'Archive'),
}

GRAPHICS_TYPES = {0x08, 0x53, 0xC0, 0xC1, 0xC2, 0xC5, 0xCA}

# DOS 3.3 catalog type byte (lock bit stripped) -> letter
DOS_TYPE_LETTERS = {
    0x00: 'T',
    0x01: 'I',
    0x02: 'A',
    0x04: 'B',
    0x08: 'S',
    0x10: 'R',
    0x20: 'a',
    0x40: 'b',
}
DOS_LETTER_TYPES = {letter: code for code, letter in DOS_TYPE_LETTERS.items()}

DOS_TYPE_DESCRIPTIONS = {
    'T': 'Text',
    'I': 'Integer BASIC',
    'A': 'Applesoft BASIC',
    'B': 'Binary',
    'S': 'Special',
    'R': 'Relocatable',
    'a': 'New A',
    'b': 'New B',
}

# DOS 3.3 letter <-> ProDOS file type
DOS_TO_PRODOS_TYPE = {
    'T': 0x04,
    'I': 0xFA,
    'A': 0xFC,
    'B': 0x06,
    'S': 0xF2,
    'R': 0xFE,
    'a': 0xF3,
    'b': 0xF4,
}
PRODOS_TO_DOS_TYPE = {code: letter for letter, code in DOS_TO_PRODOS_TYPE.items()}

UCSD_FILE_KINDS = {
    0: ('XDSK', 'Bad Blocks / Volume'),
    1: ('CODE', 'Code File'),
    2: ('TEXT', 'Text File'),
    3: ('INFO', 'Debugger Info'),
    4: ('DATA', 'Data File'),
    5: ('GRAF', 'Graphics'),
    6: ('FOTO', 'Screen Image'),
    7: ('SDIR', 'Secure Directory'),
}

# UCSD kind -> nearest ProDOS type
UCSD_TO_PRODOS_TYPE = {
    1: 0x02,
    2: 0x04,
    4: 0x06,
    5: 0x08,
    6: 0x08,
}


def get_type_info(file_type: int, aux_type: int = 0) -> FileTypeInfo:
    """
    Look up display information for a ProDOS file type.

    Args:
        file_type: ProDOS type code (0x00-0xFF).
        aux_type: Auxiliary type, used to refine a few graphics and archive types.

    Returns:
        FileTypeInfo with short name, description, category and graphics flag.
        Unknown codes yield a '$XX' short name in category 'General'.
    """
    variant = PRODOS_AUX_VARIANTS.get((file_type, aux_type))
    if variant:
        short, desc, cat = variant
    elif file_type in PRODOS_FILE_TYPES:
        short, desc, cat = PRODOS_FILE_TYPES[file_type]
    else:
        short, desc, cat = f"${file_type:02X}", 'Unknown', 'General'
    return FileTypeInfo(short, desc, cat, cat == 'Graphics' or file_type in GRAPHICS_TYPES)


def type_short_name(file_type: int, aux_type: int = 0) -> str:
    return get_type_info(file_type, aux_type).short_name


def dos_type_letter(type_byte: int) -> str:
    """Letter for a DOS 3.3 catalog type byte (lock bit ignored)"""
    code = type_byte & 0x7F
    if code in DOS_TYPE_LETTERS:
        return DOS_TYPE_LETTERS[code]
    # Non-standard values: report the highest set bit's letter
    for bit in (0x40, 0x20, 0x10, 0x08, 0x04, 0x02, 0x01):
        if code & bit:
            return DOS_TYPE_LETTERS[bit]
    return 'T'


def dos_to_prodos_type(letter: str) -> int:
    return DOS_TO_PRODOS_TYPE.get(letter, 0x06)


def prodos_to_dos_type(file_type: int) -> str:
    """
    Convert a ProDOS type code to the closest DOS 3.3 letter.

    TXT maps to T, BAS to A, INT to I, REL to R; anything without a DOS
    equivalent becomes B.
    """
    return PRODOS_TO_DOS_TYPE.get(file_type, 'B')


def resolve_dos_type(file_type) -> str:
    """Accept either a DOS letter ('T', 'B', ...) or a ProDOS code"""
    if isinstance(file_type, str):
        if file_type in DOS_LETTER_TYPES:
            return file_type
        upper = file_type.upper()
        if upper in DOS_LETTER_TYPES:
            return upper
        raise ValueError(f"Unknown DOS 3.3 file type: {file_type!r}")
    return prodos_to_dos_type(file_type)


def ucsd_kind_name(kind: int) -> str:
    return UCSD_FILE_KINDS.get(kind, (f"K{kind}", 'Unknown'))[0]


def describe(file_type: int, aux_type: int = 0, dos_letter: Optional[str] = None) -> str:
    """One-line description for listings, e.g. 'BIN $2000' or 'B'"""
    if dos_letter:
        return dos_letter
    info = get_type_info(file_type, aux_type)
    return f"{info.short_name} ${aux_type:04X}"
