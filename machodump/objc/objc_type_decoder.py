import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from machodump.logger import machodump_logger
from machodump.macho.errors import (
    InvalidArraySyntaxError,
    InvalidBitfieldSyntaxError,
    TrailingDataError,
    TypeDecodingError,
    UnbalancedBracketsError,
    UnexpectedEndError,
)

logger = machodump_logger.getChild("objc_type_decoder")


class TypeKind(Enum):
    CHAR = "char"
    UCHAR = "unsigned char"
    SHORT = "short"
    USHORT = "unsigned short"
    INT = "int"
    UINT = "unsigned int"
    LONG = "long"
    ULONG = "unsigned long"
    LONGLONG = "long long"
    ULONGLONG = "unsigned long long"
    FLOAT = "float"
    DOUBLE = "double"
    LONG_DOUBLE = "long double"
    BOOL = "BOOL"
    VOID = "void"
    CSTRING = "char *"
    CLASS = "Class"
    SELECTOR = "SEL"
    UNKNOWN = "unknown"
    OBJECT = "object"
    BLOCK = "block"
    POINTER = "pointer"
    ARRAY = "array"
    STRUCT = "struct"
    UNION = "union"
    BITFIELD = "bitfield"


# https://developer.apple.com/library/archive/documentation/Cocoa/Conceptual/ObjCRuntimeGuide/Articles/ocrtTypeEncodings.html
_PRIMITIVE_ENCODINGS: Dict[str, TypeKind] = {
    "c": TypeKind.CHAR,
    "C": TypeKind.UCHAR,
    "s": TypeKind.SHORT,
    "S": TypeKind.USHORT,
    "i": TypeKind.INT,
    "I": TypeKind.UINT,
    "l": TypeKind.LONG,
    "L": TypeKind.ULONG,
    "q": TypeKind.LONGLONG,
    "Q": TypeKind.ULONGLONG,
    "f": TypeKind.FLOAT,
    "d": TypeKind.DOUBLE,
    "D": TypeKind.LONG_DOUBLE,
    "B": TypeKind.BOOL,
    "v": TypeKind.VOID,
    "*": TypeKind.CSTRING,
    "#": TypeKind.CLASS,
    ":": TypeKind.SELECTOR,
}
_KIND_TO_PRIMITIVE_ENCODING = {kind: code for code, kind in _PRIMITIVE_ENCODINGS.items()}

# const, in, inout, out, bycopy, byref, oneway, _Atomic, _Complex
_QUALIFIERS = frozenset("rnNoORVAj")

_PROTOCOL_NAME_PATTERN = re.compile(r"<([^<>]*)>")


@dataclass(frozen=True)
class StructMember:
    # Only present when the compiler emitted field names, ie {CGPoint="x"d"y"d}
    name: Optional[str]
    type: "DecodedType"

    @property
    def encoding(self) -> str:
        if self.name is None:
            return self.type.encoding
        return f'"{self.name}"{self.type.encoding}'


@dataclass(frozen=True)
class DecodedType:
    """One decoded type. Which of the optional fields are set depends on `kind`:

    OBJECT: `name` is the class name if the encoding named one, and `protocols` the protocols it conforms to
    BLOCK: `block_signature` if the encoding included one
    POINTER: `element` is the pointee
    ARRAY: `element` is the element type and `count` the number of elements
    STRUCT/UNION: `name`, plus `members` unless the encoding omitted the body
    BITFIELD: `count` is the bit width
    UNKNOWN: `name` is the encoding character which was not understood
    """

    kind: TypeKind
    name: Optional[str] = None
    element: Optional["DecodedType"] = None
    count: int = 0
    members: Optional[Tuple[StructMember, ...]] = None
    protocols: Tuple[str, ...] = ()
    block_signature: Optional["DecodedMethodSignature"] = None

    @property
    def encoding(self) -> str:
        """An encoding equivalent to the one this type was decoded from, without qualifiers or offsets"""
        if self.kind in _KIND_TO_PRIMITIVE_ENCODING:
            return _KIND_TO_PRIMITIVE_ENCODING[self.kind]
        if self.kind == TypeKind.UNKNOWN:
            return self.name or "?"
        if self.kind == TypeKind.OBJECT:
            if self.name is None and not self.protocols:
                return "@"
            protocol_list = "".join(f"<{p}>" for p in self.protocols)
            return f'@"{self.name or ""}{protocol_list}"'
        if self.kind == TypeKind.BLOCK:
            if self.block_signature is None:
                return "@?"
            return f"@?<{self.block_signature.encoding}>"
        if self.kind == TypeKind.POINTER:
            return f"^{self._element_type().encoding}"
        if self.kind == TypeKind.ARRAY:
            return f"[{self.count}{self._element_type().encoding}]"
        if self.kind == TypeKind.BITFIELD:
            return f"b{self.count}"

        open_char, close_char = ("{", "}") if self.kind == TypeKind.STRUCT else ("(", ")")
        if self.members is None:
            return f"{open_char}{self.name}{close_char}"
        member_encodings = "".join(m.encoding for m in self.members)
        return f"{open_char}{self.name}={member_encodings}{close_char}"

    def to_objc_string(self) -> str:
        """Render the type as it would be written in an Objective-C declaration"""
        if self.kind in _KIND_TO_PRIMITIVE_ENCODING:
            return self.kind.value
        if self.kind == TypeKind.UNKNOWN:
            return f"/*?{self.name or '?'}?*/"
        if self.kind == TypeKind.OBJECT:
            protocol_list = ""
            if self.protocols:
                protocol_list = f"<{', '.join(self.protocols)}>"
            if self.name is None:
                return f"id{protocol_list}"
            return f"{self.name}{protocol_list} *"
        if self.kind == TypeKind.BLOCK:
            return self._block_to_objc_string()
        if self.kind == TypeKind.POINTER:
            element = self._element_type()
            if element.kind == TypeKind.UNKNOWN:
                # ^? is a function pointer
                return "void *"
            pointee = element.to_objc_string()
            if pointee.endswith("*"):
                return f"{pointee}*"
            return f"{pointee} *"
        if self.kind == TypeKind.ARRAY:
            return f"{self._element_type().to_objc_string()}[{self.count}]"
        if self.kind == TypeKind.BITFIELD:
            return f"unsigned int /* bitfield :{self.count} */"

        keyword = "struct" if self.kind == TypeKind.STRUCT else "union"
        if not self.name or self.name == "?":
            return f"{keyword} <anonymous>"
        return f"{keyword} {self.name}"

    def _element_type(self) -> "DecodedType":
        if self.element is None:
            raise ValueError(f"{self.kind.name} type has no element type")
        return self.element

    def _block_to_objc_string(self) -> str:
        signature = self.block_signature
        if signature is None:
            return "void (^)(void)"
        # The first argument of a block is the block itself
        arguments = signature.arguments[1:]
        argument_list = ", ".join(a.to_objc_string() for a in arguments) if arguments else "void"
        return f"{signature.return_type.to_objc_string()} (^)({argument_list})"


@dataclass(frozen=True)
class DecodedMethodSignature:
    return_type: DecodedType
    # Includes the implicit self and _cmd arguments of a method
    arguments: Tuple[DecodedType, ...]

    @property
    def explicit_arguments(self) -> Tuple[DecodedType, ...]:
        """The arguments which follow self and _cmd"""
        return self.arguments[2:]

    @property
    def encoding(self) -> str:
        return self.return_type.encoding + "".join(a.encoding for a in self.arguments)


class ObjcTypeDecoder:
    """Recursive-descent decoder for the type encodings emitted by @encode() and stored in method lists, ivars and
    property attributes.
    """

    # Guards against exhausting the interpreter stack on adversarial input such as ^^^^^^...
    MAX_NESTING_DEPTH = 256

    def __init__(self) -> None:
        self._encoding = ""
        self._position = 0
        self._depth = 0

    def decode_type(self, encoding: str) -> DecodedType:
        """Decode an encoding which holds exactly one type, such as an ivar type.

        Raises:
            TrailingDataError: The encoding holds more than one type
            TypeDecodingError: The encoding is malformed
        """
        self._reset(encoding)
        decoded_type = self._decode_type_with_offset()
        if not self._at_end:
            raise TrailingDataError("Unexpected data after type", self._encoding, self._position)
        return decoded_type

    def decode_method_signature(self, encoding: str) -> DecodedMethodSignature:
        """Decode the return type and the argument types of a method's type encoding, ie v24@0:8@16

        Raises:
            TypeDecodingError: The encoding is malformed
        """
        self._reset(encoding)
        return_type = self._decode_type_with_offset()
        arguments: List[DecodedType] = []
        while not self._at_end:
            arguments.append(self._decode_type_with_offset())
        return DecodedMethodSignature(return_type, tuple(arguments))

    def _reset(self, encoding: str) -> None:
        self._encoding = encoding
        self._position = 0
        self._depth = 0

    @property
    def _at_end(self) -> bool:
        return self._position >= len(self._encoding)

    def _peek(self) -> Optional[str]:
        if self._at_end:
            return None
        return self._encoding[self._position]

    def _next_char(self) -> str:
        if self._at_end:
            raise UnexpectedEndError("Unexpected end of encoding", self._encoding, self._position)
        char = self._encoding[self._position]
        self._position += 1
        return char

    def _scan_digits(self) -> Optional[int]:
        start = self._position
        while not self._at_end and self._encoding[self._position].isdigit():
            self._position += 1
        if start == self._position:
            return None
        return int(self._encoding[start : self._position])

    def _scan_until(self, terminators: str) -> str:
        start = self._position
        while not self._at_end and self._encoding[self._position] not in terminators:
            self._position += 1
        return self._encoding[start : self._position]

    def _decode_type_with_offset(self) -> DecodedType:
        decoded_type = self._decode_single_type()
        # Method encodings follow each type with its offset in the argument frame
        self._scan_digits()
        return decoded_type

    def _decode_single_type(self) -> DecodedType:
        self._depth += 1
        try:
            if self._depth > self.MAX_NESTING_DEPTH:
                raise TypeDecodingError("Type nesting is too deep", self._encoding, self._position)
            while self._peek() in _QUALIFIERS:
                self._position += 1

            char = self._next_char()
            if char in _PRIMITIVE_ENCODINGS:
                return DecodedType(_PRIMITIVE_ENCODINGS[char])
            if char == "@":
                return self._decode_object_type()
            if char == "^":
                return DecodedType(TypeKind.POINTER, element=self._decode_single_type())
            if char == "[":
                return self._decode_array_type()
            if char == "{":
                return self._decode_struct_or_union_type(TypeKind.STRUCT, "}")
            if char == "(":
                return self._decode_struct_or_union_type(TypeKind.UNION, ")")
            if char == "b":
                return self._decode_bitfield_type()

            if char != "?":
                logger.debug(f"Unrecognized type encoding character {char!r} in {self._encoding!r}")
            return DecodedType(TypeKind.UNKNOWN, name=char)
        finally:
            self._depth -= 1

    def _decode_object_type(self) -> DecodedType:
        next_char = self._peek()
        if next_char == "?":
            self._position += 1
            return self._decode_block_type()
        if next_char != '"':
            # id
            return DecodedType(TypeKind.OBJECT)

        quote_position = self._position
        self._position += 1
        quoted = self._scan_until('"')
        if self._at_end:
            raise UnbalancedBracketsError("Unterminated class name", self._encoding, quote_position)
        self._position += 1

        # "Name<Protocol1><Protocol2>", where either part may be missing
        name_end = quoted.find("<")
        name = quoted if name_end == -1 else quoted[:name_end]
        protocols = tuple(_PROTOCOL_NAME_PATTERN.findall(quoted))
        return DecodedType(TypeKind.OBJECT, name=name or None, protocols=protocols)

    def _decode_block_type(self) -> DecodedType:
        if self._peek() != "<":
            return DecodedType(TypeKind.BLOCK)

        open_position = self._position
        self._position += 1
        types: List[DecodedType] = []
        while self._peek() != ">":
            if self._at_end:
                raise UnbalancedBracketsError("Unterminated block signature", self._encoding, open_position)
            types.append(self._decode_type_with_offset())
        self._position += 1

        if not types:
            return DecodedType(TypeKind.BLOCK)
        return DecodedType(TypeKind.BLOCK, block_signature=DecodedMethodSignature(types[0], tuple(types[1:])))

    def _decode_array_type(self) -> DecodedType:
        count = self._scan_digits()
        if count is None:
            raise InvalidArraySyntaxError("Array is missing its element count", self._encoding, self._position)
        element = self._decode_single_type()
        if self._peek() != "]":
            raise InvalidArraySyntaxError("Array is missing its closing bracket", self._encoding, self._position)
        self._position += 1
        return DecodedType(TypeKind.ARRAY, element=element, count=count)

    def _decode_struct_or_union_type(self, kind: TypeKind, close_char: str) -> DecodedType:
        open_position = self._position - 1
        name = self._scan_until("=" + close_char)
        if self._at_end:
            raise UnbalancedBracketsError(f"Unterminated {kind.value}", self._encoding, open_position)

        if self._next_char() == close_char:
            # The body is omitted when the type is only referenced through a pointer
            return DecodedType(kind, name=name)

        members: List[StructMember] = []
        while self._peek() != close_char:
            if self._at_end:
                raise UnbalancedBracketsError(f"Unterminated {kind.value}", self._encoding, open_position)
            member_name = None
            if self._peek() == '"':
                self._position += 1
                member_name = self._scan_until('"')
                if self._at_end:
                    raise UnbalancedBracketsError("Unterminated field name", self._encoding, open_position)
                self._position += 1
            members.append(StructMember(member_name, self._decode_single_type()))
        self._position += 1
        return DecodedType(kind, name=name, members=tuple(members))

    def _decode_bitfield_type(self) -> DecodedType:
        width = self._scan_digits()
        if width is None:
            raise InvalidBitfieldSyntaxError("Bitfield is missing its width", self._encoding, self._position)
        return DecodedType(TypeKind.BITFIELD, count=width)
