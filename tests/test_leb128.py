import pytest

from machodump.macho import (
    ByteRegion,
    OpcodeStream,
    OutOfBoundsError,
    SLEBDecodeError,
    ULEBDecodeError,
    encode_sleb128,
    encode_uleb128,
    read_sleb128,
    read_uleb128,
)


class TestLEB128:
    def test_read_uleb128(self) -> None:
        assert read_uleb128(b"\xe5\x8e\x26", 0) == (624485, 3)
        assert read_uleb128(b"\x00", 0) == (0, 1)
        assert read_uleb128(b"\x7f", 0) == (127, 1)
        assert read_uleb128(b"\x80\x01", 0) == (128, 2)
        # Decoding starts at the provided offset, and stops after the first byte without the continuation bit
        assert read_uleb128(b"\xff\x02\x05\x06", 2) == (5, 3)

    def test_read_sleb128(self) -> None:
        assert read_sleb128(b"\x9b\xf1\x59", 0) == (-624485, 3)
        assert read_sleb128(b"\x7f", 0) == (-1, 1)
        assert read_sleb128(b"\x3f", 0) == (63, 1)
        assert read_sleb128(b"\x40", 0) == (-64, 1)
        assert read_sleb128(b"\x80\x7f", 0) == (-128, 2)

    def test_read_from_region(self) -> None:
        region = ByteRegion(b"\x00\x00\xe5\x8e\x26").slice(2, 3)
        assert read_uleb128(region, 0) == (624485, 3)

    def test_64_bit_limits(self) -> None:
        max_u64 = b"\xff" * 9 + b"\x01"
        assert read_uleb128(max_u64, 0) == ((1 << 64) - 1, 10)

        min_s64 = b"\x80" * 9 + b"\x7f"
        assert read_sleb128(min_s64, 0) == (-(1 << 63), 10)

    def test_truncated_values_raise(self) -> None:
        with pytest.raises(ULEBDecodeError):
            read_uleb128(b"\xe5\x8e", 0)
        with pytest.raises(ULEBDecodeError):
            read_uleb128(b"", 0)
        with pytest.raises(SLEBDecodeError):
            read_sleb128(b"\x9b\xf1", 0)

    def test_overflowing_values_raise(self) -> None:
        with pytest.raises(ULEBDecodeError):
            read_uleb128(b"\xff" * 9 + b"\x02", 0)
        with pytest.raises(ULEBDecodeError):
            read_uleb128(b"\x80" * 10 + b"\x01", 0)
        with pytest.raises(SLEBDecodeError):
            read_sleb128(b"\x80" * 10 + b"\x01", 0)

    def test_decode_error_reports_start_offset(self) -> None:
        with pytest.raises(ULEBDecodeError) as exc_info:
            read_uleb128(b"\x00\x00\x80", 2)
        assert exc_info.value.offset == 2

    def test_encode(self) -> None:
        assert encode_uleb128(624485) == b"\xe5\x8e\x26"
        assert encode_uleb128(0) == b"\x00"
        assert encode_sleb128(-624485) == b"\x9b\xf1\x59"
        assert encode_sleb128(-1) == b"\x7f"
        assert encode_sleb128(64) == b"\xc0\x00"
        with pytest.raises(ValueError):
            encode_uleb128(-1)

    @pytest.mark.parametrize("value", [0, 1, 127, 128, 624485, 2 ** 63])
    def test_uleb128_round_trip(self, value: int) -> None:
        encoded = encode_uleb128(value)
        assert read_uleb128(encoded, 0) == (value, len(encoded))

    @pytest.mark.parametrize("value", [0, -1, -127, -128, -624485, -(2 ** 63)])
    def test_sleb128_round_trip(self, value: int) -> None:
        encoded = encode_sleb128(value)
        assert read_sleb128(encoded, 0) == (value, len(encoded))


class TestOpcodeStream:
    def test_sequential_reads(self) -> None:
        stream = OpcodeStream(ByteRegion(b"\x12\xe5\x8e\x26\x7f_sym\x00\x01"))
        assert stream.peek_byte() == 0x12
        assert stream.read_byte() == 0x12
        assert stream.read_uleb() == 624485
        assert stream.read_sleb() == -1
        assert stream.read_cstring() == "_sym"
        assert not stream.at_end
        assert stream.read_byte() == 0x01
        assert stream.at_end

    def test_read_past_end(self) -> None:
        stream = OpcodeStream(ByteRegion(b"\x01"), offset=1)
        assert stream.at_end
        with pytest.raises(OutOfBoundsError):
            stream.read_byte()
        with pytest.raises(ULEBDecodeError):
            stream.read_uleb()
