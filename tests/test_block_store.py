import pytest
import struct
from unittest.mock import patch
from a2_backend.block_store import (
    BlockStore, Container, ContainerKind, build_2img_header, probe_order,
    BLOCK_SIZE, SECTOR_SIZE, ORDER_DOS, ORDER_PRODOS, DOS_TO_PRODOS_SECTOR,
    IMG2_FORMAT_DOS, IMG2_FORMAT_PRODOS, IMG2_FORMAT_NIBBLE
)
from a2_backend.dos33 import DOS33Image
from a2_backend.errors import CorruptStructure, FileLocked, OutOfRange, UnrecognizedFormat
from a2_backend.prodos import ProDOSImage

FLOPPY = 143360


def patterned_image(size=FLOPPY):
    # Every 256-byte physical sector filled with its own index
    return bytearray(b''.join(bytes([i & 0xFF]) * SECTOR_SIZE for i in range(size // SECTOR_SIZE)))


class TestContainerDetection:
    def test_po_extension(self):
        container = Container.from_bytes(bytes(FLOPPY), name='disk.po')
        assert container.kind == ContainerKind.RAW_PO
        assert container.order == ORDER_PRODOS

    def test_do_extension(self):
        container = Container.from_bytes(bytes(FLOPPY), name='disk.do')
        assert container.kind == ContainerKind.RAW_DO
        assert container.order == ORDER_DOS

    def test_hdv_extension(self):
        container = Container.from_bytes(bytes(1600 * BLOCK_SIZE), name='hard.hdv')
        assert container.kind == ContainerKind.HDV
        assert container.order == ORDER_PRODOS

    def test_do_size_must_be_whole_tracks(self):
        with pytest.raises(UnrecognizedFormat):
            Container.from_bytes(bytes(FLOPPY - 512), name='disk.do')

    def test_po_size_must_be_whole_blocks(self):
        with pytest.raises(UnrecognizedFormat):
            Container.from_bytes(bytes(1000), name='disk.po')

    def test_empty_image_rejected(self):
        with pytest.raises(UnrecognizedFormat):
            Container.from_bytes(b'', name='disk.dsk')

    def test_generic_blank_floppy_defaults_to_dos_order(self):
        container = Container.from_bytes(bytes(FLOPPY), name='disk.dsk')
        assert container.kind == ContainerKind.GENERIC_DSK
        assert container.order == ORDER_DOS

    def test_generic_large_image_defaults_to_prodos_order(self):
        container = Container.from_bytes(bytes(1600 * BLOCK_SIZE), name='disk.dsk')
        assert container.order == ORDER_PRODOS

    def test_probe_finds_prodos_in_dos_order(self, tmp_path):
        path = tmp_path / "prodos.do"
        ProDOSImage.create_empty_image(str(path))
        data = path.read_bytes()
        assert probe_order(data) == ORDER_DOS
        assert Container.from_bytes(data, name='mystery.dsk').order == ORDER_DOS

    def test_probe_finds_prodos_in_prodos_order(self, tmp_path):
        path = tmp_path / "prodos.po"
        ProDOSImage.create_empty_image(str(path))
        assert probe_order(path.read_bytes()) == ORDER_PRODOS

    def test_probe_finds_dos33_vtoc(self, tmp_path):
        path = tmp_path / "dos.do"
        DOS33Image.create_empty_image(str(path))
        assert probe_order(path.read_bytes()) == ORDER_DOS


class TestTwoImg:
    def test_header_honoured(self):
        body = patterned_image(1600 * BLOCK_SIZE)
        data = build_2img_header(len(body), IMG2_FORMAT_PRODOS) + bytes(body)
        container = Container.from_bytes(data, name='disk.2mg')
        assert container.kind == ContainerKind.TAGGED_2IMG
        assert container.data_offset == 64
        assert container.data_length == len(body)
        store = BlockStore(container, BLOCK_SIZE)
        assert store.block_count() == 1600
        assert store.read_block(3) == bytes(body[3 * 512:4 * 512])

    def test_dos_order_2img(self):
        body = patterned_image()
        data = build_2img_header(len(body), IMG2_FORMAT_DOS) + bytes(body)
        container = Container.from_bytes(data)
        assert container.order == ORDER_DOS

    def test_nibble_format_rejected(self):
        data = build_2img_header(232960, IMG2_FORMAT_NIBBLE) + bytes(232960)
        with pytest.raises(UnrecognizedFormat):
            Container.from_bytes(data)

    def test_data_past_end_rejected(self):
        data = build_2img_header(FLOPPY, IMG2_FORMAT_PRODOS) + bytes(FLOPPY // 2)
        with pytest.raises(UnrecognizedFormat):
            Container.from_bytes(data)

    def test_locked_flag_makes_read_only(self):
        data = build_2img_header(FLOPPY, IMG2_FORMAT_PRODOS, locked=True) + bytes(FLOPPY)
        store = BlockStore(Container.from_bytes(data), BLOCK_SIZE)
        assert store.read_only
        with pytest.raises(FileLocked):
            store.write_block(10, bytes(BLOCK_SIZE))

    def test_writes_land_after_header(self, tmp_path):
        path = tmp_path / "disk.2mg"
        path.write_bytes(build_2img_header(FLOPPY, IMG2_FORMAT_PRODOS) + bytes(FLOPPY))
        store = BlockStore(Container.load(str(path)), BLOCK_SIZE)
        store.write_block(0, b'\xAA' * BLOCK_SIZE)
        raw = path.read_bytes()
        assert raw[:4] == b'2IMG'
        assert raw[64:64 + BLOCK_SIZE] == b'\xAA' * BLOCK_SIZE


class TestInterleave:
    def test_table_is_self_inverse(self):
        for s in range(16):
            assert DOS_TO_PRODOS_SECTOR[DOS_TO_PRODOS_SECTOR[s]] == s

    def test_block_halves_in_dos_order(self):
        data = patterned_image()
        store = BlockStore(Container(data, ContainerKind.RAW_DO, ORDER_DOS), BLOCK_SIZE)
        # Block 1 = track 0, ProDOS sectors 2 and 3 = DOS sectors 13 and 12
        block = store.read_block(1)
        assert block[:256] == bytes([13]) * 256
        assert block[256:] == bytes([12]) * 256
        # Block 10 = track 1, ProDOS sectors 4 and 5 = DOS sectors 11 and 10
        block = store.read_block(10)
        assert block[:256] == bytes([16 + 11]) * 256
        assert block[256:] == bytes([16 + 10]) * 256

    def test_sectors_in_prodos_order(self):
        data = patterned_image()
        store = BlockStore(Container(data, ContainerKind.RAW_PO, ORDER_PRODOS), SECTOR_SIZE)
        # DOS sector 1 of track 0 is physical sector 14
        assert store.read_block(1) == bytes([14]) * 256
        assert store.read_block(0) == bytes([0]) * 256
        assert store.read_block(15) == bytes([15]) * 256

    def test_same_content_in_both_orders(self):
        # A DOS-order image and its ProDOS-order conversion hold the same blocks
        do_data = patterned_image()
        po_data = bytearray(FLOPPY)
        for track in range(35):
            for dos_sector in range(16):
                src = (track * 16 + dos_sector) * 256
                dst = (track * 16 + DOS_TO_PRODOS_SECTOR[dos_sector]) * 256
                po_data[dst:dst + 256] = do_data[src:src + 256]
        do_store = BlockStore(Container(do_data, ContainerKind.RAW_DO, ORDER_DOS), BLOCK_SIZE)
        po_store = BlockStore(Container(po_data, ContainerKind.RAW_PO, ORDER_PRODOS), BLOCK_SIZE)
        for n in range(do_store.block_count()):
            assert do_store.read_block(n) == po_store.read_block(n)

    def test_logical_block_maps_to_distinct_ranges(self):
        store = BlockStore(Container(bytearray(FLOPPY), ContainerKind.RAW_DO, ORDER_DOS), BLOCK_SIZE)
        offsets = set()
        for n in range(store.block_count()):
            offs = store.logical_block(n)
            assert len(offs) == 2
            offsets.update(offs)
        assert len(offsets) == FLOPPY // SECTOR_SIZE

    def test_write_then_read_through_interleave(self):
        data = bytearray(FLOPPY)
        store = BlockStore(Container(data, ContainerKind.RAW_DO, ORDER_DOS), BLOCK_SIZE)
        payload = bytes(range(256)) * 2
        store.write_block(42, payload)
        assert store.read_block(42) == payload
        sectors = BlockStore(Container(data, ContainerKind.RAW_DO, ORDER_DOS), SECTOR_SIZE)
        # Block 42 = track 5, k = 2: DOS sectors 11 and 10
        assert sectors.read_block(5 * 16 + 11) == payload[:256]
        assert sectors.read_block(5 * 16 + 10) == payload[256:]


class TestBlockAccess:
    def test_out_of_range(self):
        store = BlockStore(Container(bytearray(FLOPPY), ContainerKind.RAW_PO, ORDER_PRODOS))
        assert store.block_count() == 280
        with pytest.raises(OutOfRange):
            store.read_block(280)
        with pytest.raises(OutOfRange):
            store.read_block(-1)
        with pytest.raises(OutOfRange):
            store.write_block(280, bytes(BLOCK_SIZE))

    def test_wrong_write_length(self):
        store = BlockStore(Container(bytearray(FLOPPY), ContainerKind.RAW_PO, ORDER_PRODOS))
        with pytest.raises(OutOfRange):
            store.write_block(7, bytes(100))

    def test_read_only_container(self):
        container = Container(bytearray(FLOPPY), ContainerKind.RAW_PO, ORDER_PRODOS, read_only=True)
        store = BlockStore(container)
        with pytest.raises(FileLocked):
            store.write_block(7, bytes(BLOCK_SIZE))

    def test_write_is_persisted(self, tmp_path):
        path = tmp_path / "disk.po"
        path.write_bytes(bytes(FLOPPY))
        store = BlockStore(Container.load(str(path)))
        store.write_block(100, b'\x5A' * BLOCK_SIZE)
        assert path.read_bytes()[100 * 512:101 * 512] == b'\x5A' * BLOCK_SIZE

    def test_verification_failure(self, tmp_path):
        path = tmp_path / "disk.po"
        path.write_bytes(bytes(FLOPPY))
        container = Container.load(str(path))
        store = BlockStore(container)

        real_open = open

        class ShortReadFile:
            def __init__(self, f):
                self.f = f

            def __getattr__(self, name):
                return getattr(self.f, name)

            def __enter__(self):
                return self

            def __exit__(self, *args):
                self.f.close()

            def read(self, n):
                return b'\x00' * n

        def fake_open(file, mode='r', *args, **kwargs):
            return ShortReadFile(real_open(file, mode, *args, **kwargs))

        with patch('builtins.open', fake_open):
            with pytest.raises(CorruptStructure):
                store.write_block(9, b'\x11' * BLOCK_SIZE)


class TestTransactions:
    def test_staged_writes_visible_then_committed(self, tmp_path):
        path = tmp_path / "disk.po"
        path.write_bytes(bytes(FLOPPY))
        store = BlockStore(Container.load(str(path)))
        with store.transaction():
            store.write_block(20, b'\x01' * BLOCK_SIZE)
            assert store.read_block(20) == b'\x01' * BLOCK_SIZE
            assert path.read_bytes()[20 * 512] == 0
        assert path.read_bytes()[20 * 512] == 1

    def test_exception_discards_writes(self, tmp_path):
        path = tmp_path / "disk.po"
        path.write_bytes(bytes(FLOPPY))
        store = BlockStore(Container.load(str(path)))
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.write_block(20, b'\x01' * BLOCK_SIZE)
                raise RuntimeError("abort")
        assert store.read_block(20) == bytes(BLOCK_SIZE)
        assert path.read_bytes() == bytes(FLOPPY)

    def test_nested_transaction_joins_outer(self):
        data = bytearray(FLOPPY)
        store = BlockStore(Container(data, ContainerKind.RAW_PO, ORDER_PRODOS))
        with store.transaction():
            with store.transaction():
                store.write_block(30, b'\x02' * BLOCK_SIZE)
            assert data[30 * 512] == 0
        assert data[30 * 512] == 2

    def test_nested_failure_discards_everything(self):
        data = bytearray(FLOPPY)
        store = BlockStore(Container(data, ContainerKind.RAW_PO, ORDER_PRODOS))
        with pytest.raises(ValueError):
            with store.transaction():
                store.write_block(31, b'\x03' * BLOCK_SIZE)
                with store.transaction():
                    store.write_block(32, b'\x04' * BLOCK_SIZE)
                    raise ValueError("inner")
        assert data[31 * 512] == 0
        assert data[32 * 512] == 0


class TestHeaderBuilder:
    def test_2img_header_fields(self):
        header = build_2img_header(FLOPPY, IMG2_FORMAT_PRODOS, volume_number=254)
        magic, creator, size, version, fmt, flags, blocks, offset, length = \
            struct.unpack_from('<4s4sHHIIIII', header, 0)
        assert len(header) == 64
        assert magic == b'2IMG'
        assert size == 64
        assert fmt == IMG2_FORMAT_PRODOS
        assert blocks == 280
        assert offset == 64
        assert length == FLOPPY
        assert flags & 0xFF == 254
