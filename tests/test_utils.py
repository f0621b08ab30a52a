import pytest
import datetime
from a2_backend.utils import (
    crc16, decode_high_ascii, encode_high_ascii, decode_prodos_datetime, encode_prodos_datetime,
    decode_ucsd_date, encode_ucsd_date, decode_iigs_datetime, encode_iigs_datetime,
    validate_prodos_name, validate_dos_name
)
from a2_backend.errors import InvalidName


class TestDates:
    def test_prodos_datetime(self):
        stamp = datetime.datetime(1987, 9, 14, 17, 5)
        assert decode_prodos_datetime(*encode_prodos_datetime(stamp)) == stamp

    def test_prodos_two_digit_years(self):
        assert decode_prodos_datetime(*encode_prodos_datetime(datetime.datetime(2024, 1, 2))).year == 2024
        assert decode_prodos_datetime((85 << 9) | (6 << 5) | 1, 0).year == 1985

    def test_prodos_unset_and_invalid(self):
        assert decode_prodos_datetime(0, 0) is None
        # Month 13
        assert decode_prodos_datetime((90 << 9) | (13 << 5) | 1, 0) is None

    def test_ucsd_date(self):
        assert decode_ucsd_date(encode_ucsd_date(datetime.date(1983, 2, 28))) == datetime.date(1983, 2, 28)
        assert decode_ucsd_date(0) is None
        # Year 100 marks a temporary file
        assert decode_ucsd_date((100 << 9) | (1 << 4) | 1) is None

    def test_iigs_datetime(self):
        stamp = datetime.datetime(1991, 11, 30, 23, 59, 58)
        raw = encode_iigs_datetime(stamp)
        assert len(raw) == 8
        assert raw[3] == 91
        assert decode_iigs_datetime(raw) == stamp
        assert decode_iigs_datetime(bytes(8)) is None


class TestNames:
    def test_prodos_names(self):
        assert validate_prodos_name(' basic.system ') == 'BASIC.SYSTEM'
        assert validate_prodos_name('A' * 15) == 'A' * 15
        for bad in ('', 'A' * 16, '9LIVES', 'MY_FILE', 'A/B'):
            with pytest.raises(InvalidName):
                validate_prodos_name(bad)

    def test_dos_names(self):
        assert validate_dos_name('hello world') == 'HELLO WORLD'
        assert validate_dos_name('A' * 30) == 'A' * 30
        for bad in ('', 'A' * 31, '1ST', 'A,B', 'TAB\tNAME'):
            with pytest.raises(InvalidName):
                validate_dos_name(bad)


class TestHighAscii:
    def test_padding(self):
        raw = encode_high_ascii('HELLO', 8)
        assert raw == b'\xc8\xc5\xcc\xcc\xcf\xa0\xa0\xa0'
        assert decode_high_ascii(raw) == 'HELLO'

    def test_control_characters_shown_as_letters(self):
        assert decode_high_ascii(b'\xc1\x82') == 'AB'


class TestCrc:
    def test_xmodem_check_value(self):
        assert crc16(b'123456789') == 0x31C3

    def test_seed(self):
        assert crc16(b'') == 0
        assert crc16(b'', 0xFFFF) == 0xFFFF
        assert crc16(b'abc', 0xFFFF) != crc16(b'abc')
