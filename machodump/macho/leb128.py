from ctypes import c_uint8
from typing import Tuple, Union

from .byte_region import ByteRegion, BytesLike
from .errors import SLEBDecodeError, ULEBDecodeError

_U64_MASK = (1 << 64) - 1


def _as_region(data: Union[BytesLike, ByteRegion]) -> ByteRegion:
    if isinstance(data, ByteRegion):
        return data
    return ByteRegion(data)


def read_uleb128(data: Union[BytesLike, ByteRegion], offset: int) -> Tuple[int, int]:
    """Decode an unsigned LEB128 value.

    Args:
        data: The bytes (or ByteRegion) containing the encoded value
        offset: Index of the first byte of the encoded value

    Returns:
        A tuple of (decoded value, offset of the byte following the encoded value)

    Raises:
        ULEBDecodeError: the encoding runs off the end of `data`, or does not fit in 64 bits
    """
    region = _as_region(data)
    start_offset = offset
    result = 0
    shift = 0
    while True:
        if not region.contains(offset, 1):
            raise ULEBDecodeError(start_offset)
        byte = region.read_word(offset, c_uint8)
        offset += 1

        chunk = byte & 0x7F
        if shift >= 64 or (chunk << shift) >> 64:
            raise ULEBDecodeError(start_offset)
        result |= chunk << shift
        shift += 7

        if not byte & 0x80:
            return result, offset


def read_sleb128(data: Union[BytesLike, ByteRegion], offset: int) -> Tuple[int, int]:
    """Decode a signed LEB128 value. See read_uleb128() for the return value.

    Raises:
        SLEBDecodeError: the encoding runs off the end of `data`, or does not fit in 64 bits
    """
    region = _as_region(data)
    start_offset = offset
    result = 0
    shift = 0
    while True:
        if not region.contains(offset, 1):
            raise SLEBDecodeError(start_offset)
        byte = region.read_word(offset, c_uint8)
        offset += 1

        if shift >= 64:
            raise SLEBDecodeError(start_offset)
        result |= (byte & 0x7F) << shift
        shift += 7

        if not byte & 0x80:
            break

    if shift < 64:
        # Sign-extend from the last encoded bit
        if byte & 0x40:
            result -= 1 << shift
    else:
        # The encoding filled all 64 bits. Interpret them as two's complement
        result &= _U64_MASK
        if result & (1 << 63):
            result -= 1 << 64
    return result, offset


def encode_uleb128(value: int) -> bytes:
    if value < 0:
        raise ValueError(f"Cannot ULEB128-encode a negative value: {value}")
    encoded = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            encoded.append(byte | 0x80)
        else:
            encoded.append(byte)
            return bytes(encoded)


def encode_sleb128(value: int) -> bytes:
    encoded = bytearray()
    while True:
        byte = value & 0x7F
        # Python's >> on a negative int is an arithmetic shift
        value >>= 7
        is_last_byte = (value == 0 and not byte & 0x40) or (value == -1 and byte & 0x40)
        if is_last_byte:
            encoded.append(byte)
            return bytes(encoded)
        encoded.append(byte | 0x80)


class OpcodeStream:
    """A cursor over a ByteRegion, used to consume dyld opcode streams, the export trie and function-starts data.
    Every read is bounds-checked against the region the stream was created with.
    """

    def __init__(self, region: ByteRegion, offset: int = 0) -> None:
        self.region = region
        self.offset = offset

    def __repr__(self) -> str:
        return f"<OpcodeStream offset={hex(self.offset)} size={hex(len(self.region))}>"

    @property
    def at_end(self) -> bool:
        return self.offset >= len(self.region)

    def peek_byte(self) -> int:
        return self.region.read_word(self.offset, c_uint8)

    def read_byte(self) -> int:
        byte = self.peek_byte()
        self.offset += 1
        return byte

    def read_uleb(self) -> int:
        value, self.offset = read_uleb128(self.region, self.offset)
        return value

    def read_sleb(self) -> int:
        value, self.offset = read_sleb128(self.region, self.offset)
        return value

    def read_cstring(self) -> str:
        raw_string = self.region.read_cstring_bytes(self.offset)
        # Step over the string and its NUL terminator
        self.offset += len(raw_string) + 1
        return raw_string.decode("utf-8", errors="replace")
