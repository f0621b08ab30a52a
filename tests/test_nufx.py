import pytest
from a2_backend.nufx import NuFXArchive, is_nufx, FORMAT_LZW1
from a2_backend.nufx_codecs import (
    lzw_code_width, rle_expand, rle90_expand, decompress_lzw1, decompress_lzw2,
    decompress_squeeze, LZWDecoder
)
from a2_backend.prodos import ProDOSImage
from a2_backend.errors import CorruptArchive, UnrecognizedFormat, UnsupportedOperation
from builders import (
    ARCHIVE_DATE, BitWriter, build_binary2, build_nufx, lzw1_compress, lzw2_compress,
    nufx_record, nufx_thread, squeeze_compress
)

# Three 4 KiB chunks: text, a byte ramp with a long zero run, and RLE delimiter bytes
SAMPLE = (b'ShrinkIt archives hold Apple II files. ' * 200 + bytes(range(256)) * 8
          + bytes(3000) + b'\xdb\xdb\x90\x90\x90tail')
RESOURCE = b'\x00\x01resource fork bytes' * 10


@pytest.fixture
def archive():
    records = [
        nufx_record('READ.ME', [nufx_thread(b'Hello from the archive\r')], file_type=0x04, aux_type=0),
        nufx_record('SQUEEZED', [nufx_thread(SAMPLE, thread_format=1)]),
        nufx_record('LZW1.BIN', [nufx_thread(SAMPLE, thread_format=2)]),
        nufx_record('DIR/LZW2.BIN', [nufx_thread(SAMPLE, thread_format=3)]),
        nufx_record('FORKED', [nufx_thread(b'data fork'),
                               nufx_thread(RESOURCE, thread_format=2, kind=2)],
                    file_type=0xB3, aux_type=0xDB07, storage_type=5),
    ]
    return NuFXArchive(build_nufx(records), 'test.shk')


def by_name(archive, name):
    return next(e for e in archive.list() if e.name == name)


class TestCodecs:
    def test_code_width(self):
        assert lzw_code_width(0x101) == 9
        assert lzw_code_width(0x1FF) == 9
        assert lzw_code_width(0x200) == 10
        assert lzw_code_width(0x400) == 11
        assert lzw_code_width(0x800) == 12
        assert lzw_code_width(0xFFF) == 12

    def test_rle_expand(self):
        assert rle_expand(bytes([0x41, 0xDB, 0x42, 0x03, 0x43]), 0xDB) == b'ABBBBC'

    def test_rle90_expand(self):
        assert rle90_expand(b'A\x90\x05B\x90\x00') == b'AAAAAB\x90'

    def test_lzw1(self):
        assert decompress_lzw1(lzw1_compress(SAMPLE), len(SAMPLE)) == (SAMPLE, True)

    def test_lzw1_embedded_crc(self):
        packed = bytearray(lzw1_compress(SAMPLE))
        packed[0] ^= 0xFF
        data, crc_ok = decompress_lzw1(bytes(packed), len(SAMPLE))
        assert data == SAMPLE
        assert not crc_ok

    def test_lzw2(self):
        assert decompress_lzw2(lzw2_compress(SAMPLE), len(SAMPLE)) == SAMPLE

    def test_squeeze(self):
        assert decompress_squeeze(squeeze_compress(SAMPLE, 'SAMPLE'), len(SAMPLE)) == SAMPLE

    def test_invalid_lzw_code(self):
        writer = BitWriter()
        writer.write(0x41, 9)
        writer.write(0x150, 9)
        with pytest.raises(CorruptArchive):
            LZWDecoder().decode(writer.flush(), 0, 100)


class TestArchive:
    def test_master_header(self, archive):
        assert archive.total_records == 5
        assert archive.master_crc_ok
        assert not archive.truncated
        assert archive.created_at == ARCHIVE_DATE
        assert is_nufx(archive.data)

    def test_listing(self, archive):
        entries = archive.list()
        assert [e.name for e in entries] == ['READ.ME', 'SQUEEZED', 'LZW1.BIN', 'DIR/LZW2.BIN', 'FORKED']
        text = entries[0]
        assert text.file_type == 0x04
        assert text.size_bytes == len(b'Hello from the archive\r')
        assert text.modified_at == ARCHIVE_DATE
        assert not text.locked
        assert entries[1].size_bytes == len(SAMPLE)
        assert entries[1].aux_type == 0x2000
        assert all(r.header_crc_ok for r in archive.records)

    def test_extract_every_format(self, archive):
        assert archive.read_file(by_name(archive, 'READ.ME')) == b'Hello from the archive\r'
        assert archive.read_file(by_name(archive, 'SQUEEZED')) == SAMPLE
        assert archive.read_file(by_name(archive, 'LZW1.BIN')) == SAMPLE
        assert archive.read_file(by_name(archive, 'DIR/LZW2.BIN')) == SAMPLE

    def test_thread_formats(self, archive):
        assert archive.records[2].data_thread.format_name == 'LZW/1'
        assert archive.records[3].data_thread.format_name == 'LZW/2'

    def test_resource_fork(self, archive):
        forked = by_name(archive, 'FORKED')
        assert archive.read_file(forked) == b'data fork'
        assert archive.read_file(forked, fork='resource') == RESOURCE
        assert archive.read_file(by_name(archive, 'READ.ME'), fork='resource') == b''

    def test_flat_listing_only(self, archive):
        with pytest.raises(UnsupportedOperation):
            archive.list(archive.list()[0])

    def test_read_only(self, archive):
        entry = archive.list()[0]
        with pytest.raises(UnsupportedOperation):
            archive.create_file('NEW', 0x04, 0, b'')
        with pytest.raises(UnsupportedOperation):
            archive.delete(entry)

    def test_unnamed_record(self):
        archive = NuFXArchive(build_nufx([nufx_record('', [nufx_thread(b'x')])]))
        assert archive.list()[0].name == 'UNNAMED.0'


class TestIntegrity:
    def test_thread_crc_mismatch(self):
        thread = nufx_thread(b'hello world')
        thread['data'] = b'other bytes'
        archive = NuFXArchive(build_nufx([nufx_record('BAD', [thread])]))
        with pytest.raises(CorruptArchive) as exc:
            archive.read_file(archive.list()[0])
        assert exc.value.data == b'hello world'

    def test_old_records_skip_thread_crc(self):
        thread = nufx_thread(b'hello world')
        thread['data'] = b'other bytes'
        archive = NuFXArchive(build_nufx([nufx_record('OLD', [thread], version=2)]))
        assert archive.read_file(archive.list()[0]) == b'hello world'

    def test_lzw1_checksum_mismatch(self):
        thread = nufx_thread(SAMPLE, thread_format=FORMAT_LZW1)
        thread['packed'] = bytes([thread['packed'][0] ^ 0xFF]) + thread['packed'][1:]
        archive = NuFXArchive(build_nufx([nufx_record('LZW', [thread])]))
        with pytest.raises(CorruptArchive) as exc:
            archive.read_file(archive.list()[0])
        assert exc.value.data == SAMPLE

    def test_unsupported_compression(self):
        thread = nufx_thread(b'compressed elsewhere')
        thread['format'] = 4
        archive = NuFXArchive(build_nufx([nufx_record('LZC', [thread])]))
        assert archive.records[0].data_thread.format_name == 'LZC-12'
        with pytest.raises(UnsupportedOperation):
            archive.read_file(archive.list()[0])

    def test_header_crc_mismatch_flagged(self):
        data = bytearray(build_nufx([nufx_record('FILE', [nufx_thread(b'abc')])]))
        # Record file type byte sits 22 bytes into the first record
        data[48 + 22] ^= 0x01
        archive = NuFXArchive(bytes(data))
        assert not archive.records[0].header_crc_ok
        assert archive.read_file(archive.list()[0]) == b'abc'

    def test_master_crc_mismatch_is_tolerated(self):
        data = bytearray(build_nufx([nufx_record('FILE', [nufx_thread(b'abc')])]))
        data[12] ^= 0x01
        archive = NuFXArchive(bytes(data))
        assert not archive.master_crc_ok
        assert len(archive.records) == 1

    def test_truncated_archive(self):
        data = bytearray(build_nufx([nufx_record('ONLY', [nufx_thread(b'abc')])]))
        data[8] = 2
        archive = NuFXArchive(bytes(data))
        assert archive.truncated
        assert [r.name for r in archive.records] == ['ONLY']

    def test_not_an_archive(self):
        with pytest.raises(UnrecognizedFormat):
            NuFXArchive(b'PK\x03\x04' + bytes(100))


class TestDiskImages:
    def test_disk_image_size_from_block_count(self, tmp_path):
        path = tmp_path / "disk.po"
        ProDOSImage.create_empty_image(str(path), volume_name='SHRUNK')
        image = path.read_bytes()
        thread = nufx_thread(image, thread_format=2, kind=1, thread_eof=0)
        record = nufx_record('DISK.PO', [thread], file_type=0, aux_type=280, storage_type=512)
        archive = NuFXArchive(build_nufx([record]))
        disk = archive.records[0]
        assert disk.is_disk_image
        assert disk.disk_image_size() == 280 * 512
        assert archive.list()[0].size_bytes == 280 * 512
        assert archive.extract_disk_image(disk) == image

    def test_file_record_is_not_disk(self, archive):
        with pytest.raises(UnsupportedOperation):
            archive.extract_disk_image(archive.records[0])


class TestBinaryIIEnvelope:
    def test_bxy_unwrapped(self):
        shk = build_nufx([nufx_record('INSIDE', [nufx_thread(b'wrapped data')])])
        bxy = build_binary2([('INSIDE.SHK', shk, 0xE0, 0x8002)])
        archive = NuFXArchive(bxy, 'inside.bxy')
        assert archive.wrapped
        assert archive.read_file(archive.list()[0]) == b'wrapped data'
