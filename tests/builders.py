#!/usr/bin/env python3

# Copyright (c) 2026 Stephen P Smith
# MIT License

"""
Test-side writers for archives and images the library only reads.

- NuFX archives with uncompressed, LZW/1, LZW/2 or squeezed threads
- Binary II archives and .bxy envelopes
- UCSD Pascal volumes
"""

import heapq
import struct
import datetime

from a2_backend.nufx_codecs import lzw_code_width, CHUNK_SIZE, DEFAULT_RLE_DELIMITER, SQUEEZE_EOF
from a2_backend.utils import crc16, encode_iigs_datetime, encode_prodos_datetime, encode_ucsd_date

MASTER_ID = bytes([0x4E, 0xF5, 0x46, 0xE9, 0x6C, 0xE5])
RECORD_ID = bytes([0x4E, 0xF5, 0x46, 0xD8])
ARCHIVE_DATE = datetime.datetime(2024, 3, 15, 10, 30, 45)


# ----------------------------------------------------------------------
# ShrinkIt RLE and LZW
# ----------------------------------------------------------------------

def rle_compress(data: bytes, delimiter: int = DEFAULT_RLE_DELIMITER) -> bytes:
    out = bytearray()
    i = 0
    while i < len(data):
        b = data[i]
        run = 1
        while i + run < len(data) and data[i + run] == b and run < 256:
            run += 1
        if run >= 4 or b == delimiter:
            out += bytes([delimiter, b, run - 1])
        else:
            out += bytes([b]) * run
        i += run
    return bytes(out)


class BitWriter:
    def __init__(self):
        self.out = bytearray()
        self.acc = 0
        self.bits = 0

    def write(self, value: int, width: int):
        self.acc |= value << self.bits
        self.bits += width
        while self.bits >= 8:
            self.out.append(self.acc & 0xFF)
            self.acc >>= 8
            self.bits -= 8

    def flush(self) -> bytes:
        if self.bits:
            self.out.append(self.acc & 0xFF)
        self.acc = 0
        self.bits = 0
        return bytes(self.out)


def lzw_compress(data: bytes) -> bytes:
    """Encode one chunk with a fresh string table"""
    table = {bytes([i]): i for i in range(256)}
    next_code = 0x101
    emitted = 0
    writer = BitWriter()

    def emit(code):
        nonlocal emitted
        emitted += 1
        writer.write(code, lzw_code_width(0x100 + emitted))

    w = b''
    for b in data:
        wc = w + bytes([b])
        if wc in table:
            w = wc
            continue
        emit(table[w])
        if next_code < 0x1000:
            table[wc] = next_code
            next_code += 1
        w = bytes([b])
    if w:
        emit(table[w])
    return writer.flush()


def _chunks(data: bytes):
    for i in range(0, max(len(data), 1), CHUNK_SIZE):
        yield data[i:i + CHUNK_SIZE].ljust(CHUNK_SIZE, b'\x00')


def _rle_stage(chunk: bytes, delimiter: int):
    rle = rle_compress(chunk, delimiter)
    if len(rle) < CHUNK_SIZE:
        return rle, len(rle)
    return chunk, CHUNK_SIZE


def lzw1_compress(data: bytes, delimiter: int = DEFAULT_RLE_DELIMITER) -> bytes:
    padded = b''.join(_chunks(data))
    out = bytearray(struct.pack('<HBB', crc16(padded), 0, delimiter))
    for chunk in _chunks(data):
        staged, rle_len = _rle_stage(chunk, delimiter)
        packed = lzw_compress(staged)
        if len(packed) < len(staged):
            out += struct.pack('<HB', rle_len, 1) + packed
        else:
            out += struct.pack('<HB', rle_len, 0) + staged
    return bytes(out)


def lzw2_compress(data: bytes, delimiter: int = DEFAULT_RLE_DELIMITER) -> bytes:
    """LZW/2 writer; an LZW chunk is only used first or after a stored chunk"""
    out = bytearray(struct.pack('<BB', 0, delimiter))
    fresh_table = True
    for chunk in _chunks(data):
        staged, rle_len = _rle_stage(chunk, delimiter)
        packed = lzw_compress(staged) if fresh_table else None
        if packed is not None and len(packed) < len(staged):
            out += struct.pack('<HH', rle_len | 0x8000, len(packed) + 4) + packed
            fresh_table = False
        else:
            out += struct.pack('<H', rle_len) + staged
            fresh_table = True
    return bytes(out)


# ----------------------------------------------------------------------
# Squeeze
# ----------------------------------------------------------------------

def rle90_compress(data: bytes) -> bytes:
    out = bytearray()
    i = 0
    while i < len(data):
        b = data[i]
        if b == 0x90:
            out += b'\x90\x00'
            i += 1
            continue
        run = 1
        while i + run < len(data) and data[i + run] == b and run < 255:
            run += 1
        if run >= 3:
            out += bytes([b, 0x90, run])
        else:
            out += bytes([b]) * run
        i += run
    return bytes(out)


def squeeze_compress(data: bytes, name: str = 'FILE') -> bytes:
    stream = rle90_compress(data)
    counts = {}
    for b in stream:
        counts[b] = counts.get(b, 0) + 1
    counts[SQUEEZE_EOF] = 1

    heap = [(count, i, ('leaf', sym)) for i, (sym, count) in enumerate(sorted(counts.items()))]
    if len(heap) == 1:
        heap.append((0, len(heap), ('leaf', 0)))
    heapq.heapify(heap)
    order = len(heap)
    while len(heap) > 1:
        c1, _, a = heapq.heappop(heap)
        c2, _, b = heapq.heappop(heap)
        heapq.heappush(heap, (c1 + c2, order, ('node', a, b)))
        order += 1
    root = heap[0][2]

    # Number internal nodes breadth-first so the root is node 0
    nodes = []
    queue = [root]
    index = {}
    while queue:
        node = queue.pop(0)
        index[id(node)] = len(nodes)
        nodes.append(node)
        for child in node[1:]:
            if child[0] == 'node':
                queue.append(child)

    def ref(child):
        return -(child[1] + 1) if child[0] == 'leaf' else index[id(child)]

    codes = {}

    def assign(node, bits):
        if node[0] == 'leaf':
            codes[node[1]] = bits
            return
        assign(node[1], bits + [0])
        assign(node[2], bits + [1])
    assign(root, [])

    writer = BitWriter()
    for sym in list(stream) + [SQUEEZE_EOF]:
        for bit in codes[sym]:
            writer.write(bit, 1)

    out = bytearray(struct.pack('<HH', 0xFF76, sum(data) & 0xFFFF))
    out += name.encode('ascii') + b'\x00'
    out += struct.pack('<H', len(nodes))
    for node in nodes:
        out += struct.pack('<hh', ref(node[1]), ref(node[2]))
    out += writer.flush()
    return bytes(out)


# ----------------------------------------------------------------------
# NuFX
# ----------------------------------------------------------------------

COMPRESSORS = {
    0: lambda data: data,
    1: squeeze_compress,
    2: lzw1_compress,
    3: lzw2_compress,
}


def nufx_thread(data: bytes, thread_format: int = 0, kind: int = 0, thread_class: int = 2,
                thread_eof=None) -> dict:
    return {
        'class': thread_class,
        'format': thread_format,
        'kind': kind,
        'data': data,
        'packed': COMPRESSORS[thread_format](data),
        'eof': len(data) if thread_eof is None else thread_eof,
    }


def nufx_record(name: str, threads: list, file_type: int = 0x06, aux_type: int = 0x2000,
                access: int = 0xE3, storage_type: int = 1, version: int = 3) -> dict:
    return {
        'name': name,
        'threads': threads,
        'file_type': file_type,
        'aux_type': aux_type,
        'access': access,
        'storage_type': storage_type,
        'version': version,
    }


def _build_record(record: dict) -> bytes:
    name = record['name'].encode('ascii')
    threads = [nufx_thread(name, thread_class=3)] + record['threads']
    fixed = bytearray(58)
    fixed[0:4] = RECORD_ID
    struct.pack_into('<HHIHH', fixed, 6, 58, record['version'], len(threads), 1, ord('/'))
    struct.pack_into('<IIIH', fixed, 18, record['access'], record['file_type'],
                     record['aux_type'], record['storage_type'])
    stamp = encode_iigs_datetime(ARCHIVE_DATE)
    fixed[32:40] = stamp
    fixed[40:48] = stamp
    fixed[48:56] = stamp

    body = bytearray(fixed) + struct.pack('<H', 0)
    headers = bytearray()
    payload = bytearray()
    for t in threads:
        crc = crc16(t['data'], 0xFFFF)
        headers += struct.pack('<HHHHII', t['class'], t['format'], t['kind'], crc,
                               t['eof'], len(t['packed']))
        payload += t['packed']
    body += headers
    struct.pack_into('<H', body, 4, crc16(bytes(body[6:])))
    return bytes(body) + bytes(payload)


def build_nufx(records: list) -> bytes:
    body = b''.join(_build_record(r) for r in records)
    master = bytearray(48)
    master[0:6] = MASTER_ID
    struct.pack_into('<I', master, 8, len(records))
    master[12:20] = encode_iigs_datetime(ARCHIVE_DATE)
    master[20:28] = encode_iigs_datetime(ARCHIVE_DATE)
    struct.pack_into('<H', master, 28, 2)
    struct.pack_into('<I', master, 38, 48 + len(body))
    struct.pack_into('<H', master, 6, crc16(bytes(master[8:48])))
    return bytes(master) + body


# ----------------------------------------------------------------------
# Binary II
# ----------------------------------------------------------------------

def binary2_header(name: str, eof: int, file_type: int = 0x06, aux_type: int = 0,
                   access: int = 0xE3, storage_type: int = 1, files_to_follow: int = 0) -> bytes:
    header = bytearray(128)
    header[0:3] = b'\x0a\x47\x4c'
    header[3] = access
    header[4] = file_type
    struct.pack_into('<HBH', header, 5, aux_type, storage_type, (eof + 511) // 512)
    stamp = encode_prodos_datetime(ARCHIVE_DATE)
    struct.pack_into('<HHHH', header, 10, *stamp, *stamp)
    header[18] = 0x02
    header[20:23] = (eof & 0xFFFFFF).to_bytes(3, 'little')
    header[23] = len(name)
    header[24:24 + len(name)] = name.encode('ascii')
    header[116] = (eof >> 24) & 0xFF
    header[127] = files_to_follow
    return bytes(header)


def build_binary2(files: list) -> bytes:
    """files: (name, data, file_type, aux_type) tuples"""
    out = bytearray()
    for i, (name, data, file_type, aux_type) in enumerate(files):
        out += binary2_header(name, len(data), file_type, aux_type,
                              files_to_follow=len(files) - i - 1)
        out += data
        out += bytes(-len(data) % 128)
    return bytes(out)


# ----------------------------------------------------------------------
# UCSD Pascal
# ----------------------------------------------------------------------

def build_ucsd_image(files: list, volume_name: str = 'PASVOL', total_blocks: int = 280,
                     date: datetime.date = datetime.date(1985, 6, 1)) -> bytes:
    """files: (name, kind, first_block, last_block, last_byte, data) tuples"""
    image = bytearray(total_blocks * 512)
    directory = bytearray(4 * 512)
    struct.pack_into('<HHH', directory, 0, 0, 6, 0)
    directory[6] = len(volume_name)
    directory[7:7 + len(volume_name)] = volume_name.encode('ascii')
    struct.pack_into('<HHH', directory, 0x0E, total_blocks, len(files), 0)
    struct.pack_into('<H', directory, 0x14, encode_ucsd_date(date))
    for i, (name, kind, first, last, last_byte, data) in enumerate(files, start=1):
        off = i * 26
        struct.pack_into('<HHH', directory, off, first, last, kind)
        directory[off + 6] = len(name)
        directory[off + 7:off + 7 + len(name)] = name.encode('ascii')
        struct.pack_into('<HH', directory, off + 0x16, last_byte, encode_ucsd_date(date))
        if data and last <= total_blocks:
            image[first * 512:first * 512 + len(data)] = data
    image[2 * 512:6 * 512] = directory
    return bytes(image)
