from ctypes import Structure, c_uint32, sizeof
from typing import Any, Type, TypeVar, Union

from .errors import InvalidStringError, OutOfBoundsError

StructT = TypeVar("StructT", bound=Structure)

BytesLike = Union[bytes, bytearray, memoryview]


class ByteRegion:
    """A read-only, bounds-checked window over the bytes of a file.

    Every read of Mach-O content goes through a ByteRegion. Reads which would touch a byte outside the window raise
    OutOfBoundsError rather than returning short data, since the subject file may be hostile.
    Slicing a region does not copy: sub-regions share the parent's buffer.
    """

    def __init__(self, data: BytesLike, base_offset: int = 0) -> None:
        self._data = memoryview(data)
        if self._data.format != "B" or self._data.ndim != 1:
            self._data = self._data.cast("B")
        # Offset of this region within the region it was sliced from, for reporting absolute file offsets
        self.base_offset = base_offset

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"<ByteRegion [{hex(self.base_offset)} - {hex(self.base_offset + len(self))}]>"

    def contains(self, offset: int, size: int) -> bool:
        """Returns whether [offset, offset + size) lies entirely within the region."""
        return offset >= 0 and size >= 0 and offset + size <= len(self._data)

    def _check_bounds(self, offset: int, size: int) -> None:
        if not self.contains(offset, size):
            raise OutOfBoundsError(offset, size, len(self._data))

    def read(self, offset: int, struct_type: Type[StructT]) -> StructT:
        """Decode a ctypes structure located at the provided offset."""
        self._check_bounds(offset, sizeof(struct_type))
        return struct_type.from_buffer_copy(self._data, offset)

    def read_word(self, offset: int, word_type: Any = c_uint32) -> int:
        """Decode a ctypes scalar (c_uint8, c_uint32, c_uint64, ...) located at the provided offset."""
        self._check_bounds(offset, sizeof(word_type))
        return word_type.from_buffer_copy(self._data, offset).value

    def read_bytes(self, offset: int, length: int) -> bytes:
        self._check_bounds(offset, length)
        return self._data[offset : offset + length].tobytes()

    def read_cstring_bytes(self, offset: int) -> bytes:
        """Read the raw bytes of the NUL-terminated string beginning at offset, excluding the terminator.

        Raises:
            OutOfBoundsError: offset does not lie within the region
            InvalidStringError: the region ends before a NUL terminator is found
        """
        self._check_bounds(offset, 1)

        # Search an exponentially growing window for the terminator, so short strings in large regions stay cheap
        search_start = offset
        window = 16
        region_size = len(self._data)
        while search_start < region_size:
            chunk = self._data[search_start : search_start + window].tobytes()
            terminator_idx = chunk.find(b"\x00")
            if terminator_idx != -1:
                string_end = search_start + terminator_idx
                return self._data[offset:string_end].tobytes()
            search_start += len(chunk)
            window *= 2

        raise InvalidStringError(self.base_offset + offset)

    def read_cstring(self, offset: int) -> str:
        """Read the NUL-terminated string beginning at offset. Undecodable UTF-8 is replaced rather than rejected."""
        return self.read_cstring_bytes(offset).decode("utf-8", errors="replace")

    def slice(self, offset: int, length: int) -> "ByteRegion":
        """Return a sub-region of `length` bytes beginning at `offset`."""
        self._check_bounds(offset, length)
        return ByteRegion(self._data[offset : offset + length], self.base_offset + offset)

    def tobytes(self) -> bytes:
        return self._data.tobytes()
