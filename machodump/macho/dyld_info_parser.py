from dataclasses import dataclass, field
from enum import IntEnum
from functools import partial
from typing import Callable, Dict, List, Optional, Set, Tuple, TypeVar

from machodump.logger import machodump_logger

from .byte_region import ByteRegion
from .errors import (
    FileCorruptError,
    InvalidExportInfoError,
    MachoError,
    OpcodeInvalidError,
    TrieWalkOutOfBoundsError,
)
from .leb128 import OpcodeStream
from .macho_binary import MachoBinary
from .macho_definitions import VirtualMemoryPointer

logger = machodump_logger.getChild("dyld_info_parser")

_T = TypeVar("_T")

_U64_MASK = (1 << 64) - 1
POINTER_SIZE = 8

OPCODE_MASK = 0xF0
IMMEDIATE_MASK = 0x0F


class RebaseOpcode(IntEnum):
    REBASE_OPCODE_DONE = 0x00
    REBASE_OPCODE_SET_TYPE_IMM = 0x10
    REBASE_OPCODE_SET_SEGMENT_AND_OFFSET_ULEB = 0x20
    REBASE_OPCODE_ADD_ADDR_ULEB = 0x30
    REBASE_OPCODE_ADD_ADDR_IMM_SCALED = 0x40
    REBASE_OPCODE_DO_REBASE_IMM_TIMES = 0x50
    REBASE_OPCODE_DO_REBASE_ULEB_TIMES = 0x60
    REBASE_OPCODE_DO_REBASE_ADD_ADDR_ULEB = 0x70
    REBASE_OPCODE_DO_REBASE_ULEB_TIMES_SKIPPING_ULEB = 0x80


class BindOpcode(IntEnum):
    BIND_OPCODE_DONE = 0x00
    BIND_OPCODE_SET_DYLIB_ORDINAL_IMM = 0x10
    BIND_OPCODE_SET_DYLIB_ORDINAL_ULEB = 0x20
    BIND_OPCODE_SET_DYLIB_SPECIAL_IMM = 0x30
    BIND_OPCODE_SET_SYMBOL_TRAILING_FLAGS_IMM = 0x40
    BIND_OPCODE_SET_TYPE_IMM = 0x50
    BIND_OPCODE_SET_ADDEND_SLEB = 0x60
    BIND_OPCODE_SET_SEGMENT_AND_OFFSET_ULEB = 0x70
    BIND_OPCODE_ADD_ADDR_ULEB = 0x80
    BIND_OPCODE_DO_BIND = 0x90
    BIND_OPCODE_DO_BIND_ADD_ADDR_ULEB = 0xA0
    BIND_OPCODE_DO_BIND_ADD_ADDR_IMM_SCALED = 0xB0
    BIND_OPCODE_DO_BIND_ULEB_TIMES_SKIPPING_ULEB = 0xC0
    BIND_OPCODE_THREADED = 0xD0

    # The immediate will contain a sub-opcode for BIND_OPCODE_THREADED
    BIND_SUBOPCODE_THREADED_SET_BIND_ORDINAL_TABLE_SIZE_ULEB = 0x00
    BIND_SUBOPCODE_THREADED_APPLY = 0x01


class RebaseType(IntEnum):
    REBASE_TYPE_POINTER = 1
    REBASE_TYPE_TEXT_ABSOLUTE32 = 2
    REBASE_TYPE_TEXT_PCREL32 = 3


class BindType(IntEnum):
    BIND_TYPE_POINTER = 1
    BIND_TYPE_TEXT_ABSOLUTE32 = 2
    BIND_TYPE_TEXT_PCREL32 = 3


class BindSpecialDylib(IntEnum):
    BIND_SPECIAL_DYLIB_SELF = 0
    BIND_SPECIAL_DYLIB_MAIN_EXECUTABLE = -1
    BIND_SPECIAL_DYLIB_FLAT_LOOKUP = -2
    BIND_SPECIAL_DYLIB_WEAK_LOOKUP = -3


class BindSymbolFlags(IntEnum):
    BIND_SYMBOL_FLAGS_WEAK_IMPORT = 0x1
    BIND_SYMBOL_FLAGS_NON_WEAK_DEFINITION = 0x8


class ExportSymbolFlags(IntEnum):
    EXPORT_SYMBOL_FLAGS_KIND_MASK = 0x03
    EXPORT_SYMBOL_FLAGS_WEAK_DEFINITION = 0x04
    EXPORT_SYMBOL_FLAGS_REEXPORT = 0x08
    EXPORT_SYMBOL_FLAGS_STUB_AND_RESOLVER = 0x10


class ExportSymbolKind(IntEnum):
    REGULAR = 0x00
    THREAD_LOCAL = 0x01
    ABSOLUTE = 0x02


_POINTER_TYPE_DESCRIPTIONS = {1: "Pointer", 2: "Text Abs32", 3: "Text PCRel32"}


def _pointer_type_description(pointer_type: int) -> str:
    return _POINTER_TYPE_DESCRIPTIONS.get(pointer_type, f"Unknown ({pointer_type})")


@dataclass(frozen=True)
class RebaseOperation:
    segment_index: int
    segment_offset: int
    type: int

    @property
    def type_description(self) -> str:
        return _pointer_type_description(self.type)


@dataclass(frozen=True)
class BindOperation:
    segment_index: int
    segment_offset: int
    type: int
    flags: int
    addend: int
    dylib_ordinal: int
    symbol_name: str

    @property
    def type_description(self) -> str:
        return _pointer_type_description(self.type)

    @property
    def is_weak_import(self) -> bool:
        return bool(self.flags & BindSymbolFlags.BIND_SYMBOL_FLAGS_WEAK_IMPORT)

    @property
    def ordinal_description(self) -> str:
        if self.dylib_ordinal == BindSpecialDylib.BIND_SPECIAL_DYLIB_SELF:
            return "Self"
        elif self.dylib_ordinal == BindSpecialDylib.BIND_SPECIAL_DYLIB_MAIN_EXECUTABLE:
            return "Main Executable"
        elif self.dylib_ordinal == BindSpecialDylib.BIND_SPECIAL_DYLIB_FLAT_LOOKUP:
            return "Flat Lookup"
        elif self.dylib_ordinal == BindSpecialDylib.BIND_SPECIAL_DYLIB_WEAK_LOOKUP:
            return "Weak Lookup"
        return f"Dylib #{self.dylib_ordinal}"


@dataclass(frozen=True)
class ExportedSymbol:
    name: str
    flags: int
    # Offset of the symbol from the image's virtual base. Zero for re-exports
    address: int
    # The resolver function offset, for stub-and-resolver exports
    other_offset: Optional[int] = None
    # The symbol name in the source dylib, for re-exports which rename the symbol
    import_name: Optional[str] = None
    import_library_ordinal: Optional[int] = None

    @property
    def kind(self) -> ExportSymbolKind:
        kind_bits = self.flags & ExportSymbolFlags.EXPORT_SYMBOL_FLAGS_KIND_MASK
        if kind_bits in ExportSymbolKind._value2member_map_:
            return ExportSymbolKind(kind_bits)
        # The kind mask has one unassigned value. Treat it as a regular export
        return ExportSymbolKind.REGULAR

    @property
    def is_reexport(self) -> bool:
        return bool(self.flags & ExportSymbolFlags.EXPORT_SYMBOL_FLAGS_REEXPORT)

    @property
    def is_weak_definition(self) -> bool:
        return bool(self.flags & ExportSymbolFlags.EXPORT_SYMBOL_FLAGS_WEAK_DEFINITION)

    @property
    def has_stub_and_resolver(self) -> bool:
        return bool(self.flags & ExportSymbolFlags.EXPORT_SYMBOL_FLAGS_STUB_AND_RESOLVER)


@dataclass
class ParsedDyldInfo:
    rebases: List[RebaseOperation] = field(default_factory=list)
    binds: List[BindOperation] = field(default_factory=list)
    weak_binds: List[BindOperation] = field(default_factory=list)
    lazy_binds: List[BindOperation] = field(default_factory=list)
    exports: List[ExportedSymbol] = field(default_factory=list)
    # Map of stream name ("rebase", "bind", "weak_bind", "lazy_bind", "export") to the error which stopped its parse
    errors: Dict[str, MachoError] = field(default_factory=dict)


@dataclass
class DyldBoundSymbol:
    address: VirtualMemoryPointer
    library_ordinal: int
    name: str
    dylib_name: str


class DyldInfoParser:
    """Interprets the opcode streams and export trie referenced by LC_DYLD_INFO(_ONLY).

    Each of the five streams is parsed independently: a stream which is corrupt is reported in
    ParsedDyldInfo.errors, and does not prevent the others from being parsed.
    """

    def __init__(self, binary: MachoBinary) -> None:
        # Raises LoadCommandMissingError if the binary has no LC_DYLD_INFO(_ONLY)
        self.dyld_info = binary.dyld_info
        self.binary = binary

        # Upper bound on the records a single stream may produce, so a hostile repeat count can't loop forever
        self._max_records = sum(segment.vmsize for segment in binary.segments) // POINTER_SIZE + 1

    def parse_all(self) -> ParsedDyldInfo:
        info = ParsedDyldInfo()
        dyld_info = self.dyld_info

        info.rebases = self._parse_stream(
            info, "rebase", dyld_info.rebase_off, dyld_info.rebase_size, self.parse_rebases
        )
        info.binds = self._parse_stream(info, "bind", dyld_info.bind_off, dyld_info.bind_size, self.parse_binds)
        info.weak_binds = self._parse_stream(
            info, "weak_bind", dyld_info.weak_bind_off, dyld_info.weak_bind_size, self.parse_binds
        )
        info.lazy_binds = self._parse_stream(
            info,
            "lazy_bind",
            dyld_info.lazy_bind_off,
            dyld_info.lazy_bind_size,
            partial(self.parse_binds, is_lazy=True),
        )
        info.exports = self._parse_stream(
            info, "export", dyld_info.export_off, dyld_info.export_size, self.parse_exports
        )

        logger.debug(
            f"dyld info: {len(info.rebases)} rebases, {len(info.binds)} binds, {len(info.weak_binds)} weak binds, "
            f"{len(info.lazy_binds)} lazy binds, {len(info.exports)} exports"
        )
        return info

    def _parse_stream(
        self,
        info: ParsedDyldInfo,
        stream_name: str,
        file_offset: int,
        size: int,
        parse_func: Callable[[ByteRegion], List[_T]],
    ) -> List[_T]:
        if not size:
            return []
        try:
            if not self.binary.region.contains(file_offset, size):
                raise FileCorruptError(
                    f"{stream_name} data [{hex(file_offset)} +{hex(size)}] lies outside the binary"
                )
            return parse_func(self.binary.region.slice(file_offset, size))
        except MachoError as e:
            logger.error(f"Failed to parse dyld {stream_name} info: {e}")
            info.errors[stream_name] = e
            return []

    def _check_repeat_count(self, count: int, records_so_far: int) -> None:
        if count + records_so_far > self._max_records:
            raise FileCorruptError(f"Opcode repeat count {count} exceeds the number of pointers in the image")

    def parse_rebases(self, region: ByteRegion) -> List[RebaseOperation]:
        """Interpret a rebase opcode stream"""
        stream = OpcodeStream(region)
        rebases: List[RebaseOperation] = []

        segment_index = 0
        segment_offset = 0
        rebase_type = RebaseType.REBASE_TYPE_POINTER.value

        def commit_rebase(count: int, stride: int) -> None:
            nonlocal segment_offset
            self._check_repeat_count(count, len(rebases))
            for _ in range(count):
                rebases.append(RebaseOperation(segment_index, segment_offset, rebase_type))
                segment_offset = (segment_offset + stride) & _U64_MASK

        while not stream.at_end:
            opcode_offset = stream.offset
            byte = stream.read_byte()
            opcode = byte & OPCODE_MASK
            immediate = byte & IMMEDIATE_MASK

            if opcode == RebaseOpcode.REBASE_OPCODE_DONE:
                return rebases
            elif opcode == RebaseOpcode.REBASE_OPCODE_SET_TYPE_IMM:
                rebase_type = immediate
            elif opcode == RebaseOpcode.REBASE_OPCODE_SET_SEGMENT_AND_OFFSET_ULEB:
                segment_index = immediate
                segment_offset = stream.read_uleb()
            elif opcode == RebaseOpcode.REBASE_OPCODE_ADD_ADDR_ULEB:
                segment_offset = (segment_offset + stream.read_uleb()) & _U64_MASK
            elif opcode == RebaseOpcode.REBASE_OPCODE_ADD_ADDR_IMM_SCALED:
                segment_offset = (segment_offset + immediate * POINTER_SIZE) & _U64_MASK
            elif opcode == RebaseOpcode.REBASE_OPCODE_DO_REBASE_IMM_TIMES:
                commit_rebase(immediate, POINTER_SIZE)
            elif opcode == RebaseOpcode.REBASE_OPCODE_DO_REBASE_ULEB_TIMES:
                commit_rebase(stream.read_uleb(), POINTER_SIZE)
            elif opcode == RebaseOpcode.REBASE_OPCODE_DO_REBASE_ADD_ADDR_ULEB:
                commit_rebase(1, POINTER_SIZE + stream.read_uleb())
            elif opcode == RebaseOpcode.REBASE_OPCODE_DO_REBASE_ULEB_TIMES_SKIPPING_ULEB:
                count = stream.read_uleb()
                skip = stream.read_uleb()
                commit_rebase(count, POINTER_SIZE + skip)
            else:
                raise OpcodeInvalidError(byte, region.base_offset + opcode_offset)

        logger.warning("Reached end of rebase info without REBASE_OPCODE_DONE")
        return rebases

    def parse_binds(self, region: ByteRegion, is_lazy: bool = False) -> List[BindOperation]:
        """Interpret a bind, weak bind or lazy bind opcode stream.
        Lazy bind streams hold one DONE-terminated entry per stub, so DONE does not end them.
        """
        stream = OpcodeStream(region)
        binds: List[BindOperation] = []

        segment_index = 0
        segment_offset = 0
        bind_type = BindType.BIND_TYPE_POINTER.value
        library_ordinal = 0
        symbol_name = ""
        symbol_flags = 0
        addend = 0

        def commit_bind(count: int, stride: int) -> None:
            nonlocal segment_offset
            self._check_repeat_count(count, len(binds))
            for _ in range(count):
                binds.append(
                    BindOperation(
                        segment_index, segment_offset, bind_type, symbol_flags, addend, library_ordinal, symbol_name
                    )
                )
                segment_offset = (segment_offset + stride) & _U64_MASK

        while not stream.at_end:
            opcode_offset = stream.offset
            byte = stream.read_byte()
            opcode = byte & OPCODE_MASK
            immediate = byte & IMMEDIATE_MASK

            if opcode == BindOpcode.BIND_OPCODE_DONE:
                if is_lazy:
                    continue
                return binds
            elif opcode == BindOpcode.BIND_OPCODE_SET_DYLIB_ORDINAL_IMM:
                library_ordinal = immediate
            elif opcode == BindOpcode.BIND_OPCODE_SET_DYLIB_ORDINAL_ULEB:
                library_ordinal = stream.read_uleb()
            elif opcode == BindOpcode.BIND_OPCODE_SET_DYLIB_SPECIAL_IMM:
                # The immediate is a non-positive ordinal, sign-extended with the opcode mask like dyld does
                if immediate == 0:
                    library_ordinal = BindSpecialDylib.BIND_SPECIAL_DYLIB_SELF.value
                else:
                    library_ordinal = (OPCODE_MASK | immediate) - 0x100
            elif opcode == BindOpcode.BIND_OPCODE_SET_SYMBOL_TRAILING_FLAGS_IMM:
                symbol_flags = immediate
                symbol_name = stream.read_cstring()
            elif opcode == BindOpcode.BIND_OPCODE_SET_TYPE_IMM:
                bind_type = immediate
            elif opcode == BindOpcode.BIND_OPCODE_SET_ADDEND_SLEB:
                addend = stream.read_sleb()
            elif opcode == BindOpcode.BIND_OPCODE_SET_SEGMENT_AND_OFFSET_ULEB:
                segment_index = immediate
                segment_offset = stream.read_uleb()
            elif opcode == BindOpcode.BIND_OPCODE_ADD_ADDR_ULEB:
                segment_offset = (segment_offset + stream.read_uleb()) & _U64_MASK
            elif opcode == BindOpcode.BIND_OPCODE_DO_BIND:
                commit_bind(1, POINTER_SIZE)
            elif opcode == BindOpcode.BIND_OPCODE_DO_BIND_ADD_ADDR_ULEB:
                commit_bind(1, POINTER_SIZE + stream.read_uleb())
            elif opcode == BindOpcode.BIND_OPCODE_DO_BIND_ADD_ADDR_IMM_SCALED:
                commit_bind(1, POINTER_SIZE + immediate * POINTER_SIZE)
            elif opcode == BindOpcode.BIND_OPCODE_DO_BIND_ULEB_TIMES_SKIPPING_ULEB:
                count = stream.read_uleb()
                skip = stream.read_uleb()
                commit_bind(count, POINTER_SIZE + skip)
            elif opcode == BindOpcode.BIND_OPCODE_THREADED:
                # Threaded binds describe chained fixups, which are not decoded. Consume the operands only
                if immediate == BindOpcode.BIND_SUBOPCODE_THREADED_SET_BIND_ORDINAL_TABLE_SIZE_ULEB:
                    stream.read_uleb()
                elif immediate != BindOpcode.BIND_SUBOPCODE_THREADED_APPLY:
                    raise OpcodeInvalidError(byte, region.base_offset + opcode_offset)
            else:
                raise OpcodeInvalidError(byte, region.base_offset + opcode_offset)

        if not is_lazy:
            logger.warning("Reached end of bind info without BIND_OPCODE_DONE")
        return binds

    def parse_exports(self, region: ByteRegion) -> List[ExportedSymbol]:
        """Walk the export trie, producing one ExportedSymbol per terminal node.

        A corrupt child branch is logged and skipped, and the walk continues with its siblings. Errors in the
        root node are raised.
        """
        exports: List[ExportedSymbol] = []
        visited_offsets: Set[int] = set()

        # Depth-first, pre-order. Children are pushed in reverse so they're visited in the order they're encoded
        nodes_to_visit: List[Tuple[int, str]] = [(0, "")]
        while nodes_to_visit:
            node_offset, prefix = nodes_to_visit.pop()
            is_root = node_offset == 0 and not prefix
            try:
                if node_offset >= len(region):
                    raise TrieWalkOutOfBoundsError(region.base_offset + node_offset)
                if node_offset in visited_offsets:
                    # Every node in a well-formed trie has exactly one parent
                    raise TrieWalkOutOfBoundsError(region.base_offset + node_offset)
                visited_offsets.add(node_offset)

                export, children = self._parse_export_node(region, node_offset, prefix)
            except MachoError as e:
                if is_root:
                    raise
                logger.error(f"Skipping export trie branch '{prefix}' at offset {hex(node_offset)}: {e}")
                continue

            if export:
                exports.append(export)
            nodes_to_visit.extend(reversed(children))

        return exports

    def _parse_export_node(
        self, region: ByteRegion, node_offset: int, prefix: str
    ) -> Tuple[Optional[ExportedSymbol], List[Tuple[int, str]]]:
        """Parse a single trie node.

        Returns:
            The symbol terminating at this node (if any), and a list of (offset, prefix) for each child node
        """
        stream = OpcodeStream(region, node_offset)
        terminal_size = stream.read_uleb()
        terminal_end = stream.offset + terminal_size
        if terminal_end > len(region):
            raise InvalidExportInfoError(region.base_offset + node_offset)

        export: Optional[ExportedSymbol] = None
        if terminal_size:
            try:
                export = self._read_export_terminal(region.slice(stream.offset, terminal_size), prefix)
            except MachoError as e:
                # The terminal info overran its declared size. Drop this symbol but keep walking its children
                logger.error(f"Skipping export '{prefix}' with malformed terminal info at {hex(node_offset)}: {e}")
            stream.offset = terminal_end

        children: List[Tuple[int, str]] = []
        if stream.at_end:
            return export, children

        child_count = stream.read_byte()
        try:
            for _ in range(child_count):
                edge_label = stream.read_cstring()
                child_offset = stream.read_uleb()
                children.append((child_offset, prefix + edge_label))
        except MachoError as e:
            logger.error(f"Export trie node at {hex(node_offset)} has a truncated child list: {e}")

        return export, children

    @staticmethod
    def _read_export_terminal(terminal: ByteRegion, name: str) -> ExportedSymbol:
        stream = OpcodeStream(terminal)
        flags = stream.read_uleb()

        if flags & ExportSymbolFlags.EXPORT_SYMBOL_FLAGS_REEXPORT:
            import_ordinal = stream.read_uleb()
            import_name = None
            if not stream.at_end:
                import_name = stream.read_cstring() or None
            return ExportedSymbol(
                name=name, flags=flags, address=0, import_name=import_name, import_library_ordinal=import_ordinal
            )

        address = stream.read_uleb()
        other_offset = None
        if flags & ExportSymbolFlags.EXPORT_SYMBOL_FLAGS_STUB_AND_RESOLVER:
            if stream.at_end:
                logger.warning(f"Stub-and-resolver export '{name}' is missing its resolver offset")
            else:
                other_offset = stream.read_uleb()
        return ExportedSymbol(name=name, flags=flags, address=address, other_offset=other_offset)

    def address_for_operation(self, segment_index: int, segment_offset: int) -> VirtualMemoryPointer:
        """The virtual address a rebase or bind record applies to."""
        return VirtualMemoryPointer(self.binary.segment_for_index(segment_index).vmaddr + segment_offset)

    def bound_symbols_by_address(self, binds: List[BindOperation]) -> Dict[VirtualMemoryPointer, DyldBoundSymbol]:
        """Map each address which dyld binds to the symbol bound there. Records naming a nonexistent segment are
        skipped.
        """
        bound_symbols: Dict[VirtualMemoryPointer, DyldBoundSymbol] = {}
        for bind in binds:
            try:
                address = self.address_for_operation(bind.segment_index, bind.segment_offset)
            except ValueError:
                logger.warning(f"Bind of {bind.symbol_name} references nonexistent segment #{bind.segment_index}")
                continue
            bound_symbols[address] = DyldBoundSymbol(
                address=address,
                library_ordinal=bind.dylib_ordinal,
                name=bind.symbol_name,
                dylib_name=self.binary.dylib_name_for_library_ordinal(bind.dylib_ordinal),
            )
        return bound_symbols
