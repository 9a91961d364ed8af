from typing import Optional


class MachoError(Exception):
    """Base class for every error raised while analyzing a Mach-O."""


class InvalidFormatError(MachoError):
    """Raised when the input has an unsupported or unrecognized magic."""


class FileCorruptError(MachoError):
    """Raised when a load command, segment, section or linkedit blob violates its declared bounds."""


class OutOfBoundsError(MachoError):
    """Raised when a read would run outside the bounds of a byte region."""

    def __init__(self, offset: int, size: int, region_size: int) -> None:
        super().__init__(f"Read of {size} bytes at offset {hex(offset)} exceeds region of {hex(region_size)} bytes")
        self.offset = offset
        self.size = size
        self.region_size = region_size


class InvalidStringError(MachoError):
    """Raised when a C string has no NUL terminator within its region."""

    def __init__(self, offset: int) -> None:
        super().__init__(f"No NUL terminator for string at offset {hex(offset)}")
        self.offset = offset


class AddressResolutionError(MachoError):
    """Raised when a virtual address does not map to a file offset."""

    def __init__(self, address: int) -> None:
        super().__init__(f"Could not map virtual address {hex(address)} to a file offset")
        self.address = address


class SectionNotFoundError(MachoError):
    """Raised when a section is missing although another present section implies it."""


class NoMetadataFoundError(MachoError):
    """Raised when a binary contains no Objective-C metadata sections."""


class LoadCommandMissingError(MachoError):
    """Raised when the binary is missing a load command."""


class OpcodeInvalidError(MachoError):
    """Raised when a dyld rebase/bind stream contains an unknown opcode."""

    def __init__(self, opcode: int, offset: Optional[int] = None) -> None:
        location = f" at offset {hex(offset)}" if offset is not None else ""
        super().__init__(f"Invalid dyld opcode {hex(opcode)}{location}")
        self.opcode = opcode
        self.offset = offset


class ULEBDecodeError(MachoError):
    """Raised when an unsigned LEB128 value is truncated or overflows 64 bits."""

    def __init__(self, offset: int) -> None:
        super().__init__(f"Error decoding ULEB128 at offset {hex(offset)}")
        self.offset = offset


class SLEBDecodeError(MachoError):
    """Raised when a signed LEB128 value is truncated or overflows 64 bits."""

    def __init__(self, offset: int) -> None:
        super().__init__(f"Error decoding SLEB128 at offset {hex(offset)}")
        self.offset = offset


class TrieWalkOutOfBoundsError(MachoError):
    """Raised when an export trie node offset lies outside the export blob."""

    def __init__(self, offset: int) -> None:
        super().__init__(f"Export trie walk went out of bounds at offset {hex(offset)}")
        self.offset = offset


class InvalidExportInfoError(MachoError):
    """Raised when an export trie node's terminal info is malformed."""

    def __init__(self, offset: int) -> None:
        super().__init__(f"Invalid export info at trie offset {hex(offset)}")
        self.offset = offset


class TypeDecodingError(MachoError):
    """Base class for errors raised while decoding an Objective-C type encoding."""

    def __init__(self, message: str, encoding: str, position: int) -> None:
        super().__init__(f"{message} at index {position} of {encoding!r}")
        self.encoding = encoding
        self.position = position


class UnexpectedEndError(TypeDecodingError):
    """Raised when a type encoding ends in the middle of a type."""


class UnbalancedBracketsError(TypeDecodingError):
    """Raised when a struct, union, block signature or quoted name is not closed."""


class InvalidArraySyntaxError(TypeDecodingError):
    """Raised when an array encoding is missing its element count or closing bracket."""


class InvalidBitfieldSyntaxError(TypeDecodingError):
    """Raised when a bitfield encoding is missing its width."""


class TrailingDataError(TypeDecodingError):
    """Raised when input remains after decoding a single type."""
