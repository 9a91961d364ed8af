import struct
from typing import List, Sequence, Tuple

import pytest

from machodump.macho import (
    ByteRegion,
    DyldInfoParser,
    ExportSymbolKind,
    FileCorruptError,
    InvalidExportInfoError,
    InvalidStringError,
    LoadCommandMissingError,
    MachoLoadCommands,
    OpcodeInvalidError,
    RebaseOperation,
    VirtualMemoryPointer,
    encode_sleb128,
    encode_uleb128,
)
from tests.utils import DATA_VMADDR, MachoBuilder

REBASES = (
    # REBASE_OPCODE_SET_TYPE_IMM(pointer)
    b"\x11"
    # REBASE_OPCODE_SET_SEGMENT_AND_OFFSET_ULEB(segment 1, 0x10)
    + b"\x21"
    + encode_uleb128(0x10)
    # REBASE_OPCODE_DO_REBASE_IMM_TIMES(2)
    + b"\x52"
    # REBASE_OPCODE_ADD_ADDR_IMM_SCALED(1)
    + b"\x41"
    # REBASE_OPCODE_DO_REBASE_ADD_ADDR_ULEB(8)
    + b"\x70"
    + encode_uleb128(8)
    # REBASE_OPCODE_DO_REBASE_ULEB_TIMES_SKIPPING_ULEB(2, 8)
    + b"\x80"
    + encode_uleb128(2)
    + encode_uleb128(8)
    # REBASE_OPCODE_DONE
    + b"\x00"
)

BINDS = (
    # BIND_OPCODE_SET_DYLIB_ORDINAL_IMM(1)
    b"\x11"
    # BIND_OPCODE_SET_SYMBOL_TRAILING_FLAGS_IMM(0, "_NSLog")
    + b"\x40_NSLog\x00"
    # BIND_OPCODE_SET_TYPE_IMM(pointer)
    + b"\x51"
    # BIND_OPCODE_SET_SEGMENT_AND_OFFSET_ULEB(segment 1, 0x20)
    + b"\x71"
    + encode_uleb128(0x20)
    # BIND_OPCODE_DO_BIND
    + b"\x90"
    # BIND_OPCODE_SET_DYLIB_ORDINAL_IMM(2)
    + b"\x12"
    # BIND_OPCODE_SET_SYMBOL_TRAILING_FLAGS_IMM(weak import, "_objc_msgSend")
    + b"\x41_objc_msgSend\x00"
    # BIND_OPCODE_SET_ADDEND_SLEB(-8)
    + b"\x60"
    + encode_sleb128(-8)
    # BIND_OPCODE_DO_BIND_ADD_ADDR_IMM_SCALED(1)
    + b"\xb1"
    # BIND_OPCODE_SET_DYLIB_SPECIAL_IMM(flat lookup)
    + b"\x3e"
    # BIND_OPCODE_DO_BIND_ULEB_TIMES_SKIPPING_ULEB(2, 0)
    + b"\xc0"
    + encode_uleb128(2)
    + encode_uleb128(0)
    # BIND_OPCODE_DONE
    + b"\x00"
)

LAZY_BINDS = (
    b"\x71" + encode_uleb128(0x0) + b"\x11\x40_dlopen\x00\x90\x00"
    + b"\x71" + encode_uleb128(0x8) + b"\x12\x40_dlsym\x00\x90\x00"
)

WEAK_BINDS = b"\x71" + encode_uleb128(0x30) + b"\x40__ZdlPv\x00\x90\x00"


def export_trie(nodes: Sequence[Tuple[bytes, Sequence[Tuple[str, int]]]]) -> bytes:
    """Serialize trie nodes of (terminal info, [(edge label, child node index)]). Every offset must fit in one byte.
    """

    def node_bytes(terminal: bytes, children: Sequence[Tuple[str, int]], offsets: List[int]) -> bytes:
        encoded = encode_uleb128(len(terminal)) + terminal + bytes([len(children)])
        for label, child_idx in children:
            encoded += label.encode() + b"\x00" + encode_uleb128(offsets[child_idx])
        return encoded

    offsets = [0] * len(nodes)
    lengths = [len(node_bytes(terminal, children, offsets)) for terminal, children in nodes]
    offsets = [sum(lengths[:idx]) for idx in range(len(nodes))]
    return b"".join(node_bytes(terminal, children, offsets) for terminal, children in nodes)


EXPORTS = export_trie(
    [
        (b"", [("_", 1)]),
        (b"", [("foo", 2), ("bar", 3), ("resolved", 4)]),
        # Regular export at 0x1000
        (encode_uleb128(0) + encode_uleb128(0x1000), []),
        # Re-export of _baz from dylib #1
        (encode_uleb128(0x08) + encode_uleb128(1) + b"_baz\x00", []),
        # Stub and resolver
        (encode_uleb128(0x10) + encode_uleb128(0x2000) + encode_uleb128(0x2100), []),
    ]
)


def _binary_with_dyld_info(**streams: bytes) -> MachoBuilder:
    builder = MachoBuilder()
    builder.add_dylib("/System/Library/Frameworks/Foundation.framework/Foundation")
    builder.add_dylib("/usr/lib/libobjc.A.dylib")
    builder.set_dyld_info(**streams)
    return builder


class TestDyldInfoParser:
    def setup_method(self) -> None:
        builder = _binary_with_dyld_info(
            rebase=REBASES, bind=BINDS, weak_bind=WEAK_BINDS, lazy_bind=LAZY_BINDS, export=EXPORTS
        )
        self.binary = builder.build_binary()
        self.parser = DyldInfoParser(self.binary)
        self.info = self.parser.parse_all()

    def test_no_errors(self) -> None:
        assert self.info.errors == {}

    def test_rebases(self) -> None:
        assert [(x.segment_index, x.segment_offset) for x in self.info.rebases] == [
            (1, 0x10),
            (1, 0x18),
            (1, 0x28),
            (1, 0x38),
            (1, 0x48),
        ]
        assert all(x.type_description == "Pointer" for x in self.info.rebases)

    def test_binds(self) -> None:
        binds = self.info.binds
        assert [(x.segment_offset, x.symbol_name, x.dylib_ordinal) for x in binds] == [
            (0x20, "_NSLog", 1),
            (0x28, "_objc_msgSend", 2),
            (0x38, "_objc_msgSend", -2),
            (0x40, "_objc_msgSend", -2),
        ]
        assert binds[0].addend == 0
        assert not binds[0].is_weak_import
        assert binds[0].ordinal_description == "Dylib #1"

        assert binds[1].addend == -8
        assert binds[1].is_weak_import
        assert binds[2].ordinal_description == "Flat Lookup"

    def test_weak_binds(self) -> None:
        assert len(self.info.weak_binds) == 1
        assert self.info.weak_binds[0].symbol_name == "__ZdlPv"
        assert self.info.weak_binds[0].ordinal_description == "Self"

    def test_lazy_binds(self) -> None:
        # Each lazy bind entry ends with BIND_OPCODE_DONE
        assert [(x.segment_offset, x.symbol_name, x.dylib_ordinal) for x in self.info.lazy_binds] == [
            (0x0, "_dlopen", 1),
            (0x8, "_dlsym", 2),
        ]

    def test_exports(self) -> None:
        exports = {x.name: x for x in self.info.exports}
        assert [x.name for x in self.info.exports] == ["_foo", "_bar", "_resolved"]

        foo = exports["_foo"]
        assert foo.address == 0x1000
        assert foo.kind == ExportSymbolKind.REGULAR
        assert not foo.is_reexport

        bar = exports["_bar"]
        assert bar.is_reexport
        assert bar.address == 0
        assert bar.import_library_ordinal == 1
        assert bar.import_name == "_baz"

        resolved = exports["_resolved"]
        assert resolved.has_stub_and_resolver
        assert resolved.address == 0x2000
        assert resolved.other_offset == 0x2100

    def test_bound_symbols_by_address(self) -> None:
        bound_symbols = self.parser.bound_symbols_by_address(self.info.binds)
        nslog = bound_symbols[VirtualMemoryPointer(DATA_VMADDR + 0x20)]
        assert nslog.name == "_NSLog"
        assert nslog.dylib_name == "/System/Library/Frameworks/Foundation.framework/Foundation"

        flat_lookup = bound_symbols[VirtualMemoryPointer(DATA_VMADDR + 0x38)]
        assert flat_lookup.dylib_name == "<unknown dylib>"

    def test_address_for_operation(self) -> None:
        assert self.parser.address_for_operation(1, 0x10) == DATA_VMADDR + 0x10
        with pytest.raises(ValueError):
            self.parser.address_for_operation(9, 0)


class TestDyldInfoParserOpcodes:
    def setup_method(self) -> None:
        self.parser = DyldInfoParser(_binary_with_dyld_info().build_binary())

    def test_binary_without_dyld_info(self) -> None:
        with pytest.raises(LoadCommandMissingError):
            DyldInfoParser(MachoBuilder().build_binary())

    def test_empty_streams(self) -> None:
        info = self.parser.parse_all()
        assert info.rebases == []
        assert info.binds == []
        assert info.exports == []
        assert info.errors == {}

    def test_rebase_uleb_times(self) -> None:
        stream = b"\x11\x22" + encode_uleb128(0x100) + b"\x60" + encode_uleb128(3) + b"\x00"
        rebases = self.parser.parse_rebases(ByteRegion(stream))
        assert rebases == [
            RebaseOperation(2, 0x100, 1),
            RebaseOperation(2, 0x108, 1),
            RebaseOperation(2, 0x110, 1),
        ]

    def test_rebase_without_done(self) -> None:
        stream = b"\x11\x21" + encode_uleb128(0x8) + b"\x51"
        assert len(self.parser.parse_rebases(ByteRegion(stream))) == 1

    def test_invalid_rebase_opcode(self) -> None:
        with pytest.raises(OpcodeInvalidError) as exc_info:
            self.parser.parse_rebases(ByteRegion(b"\x11\x90"))
        assert exc_info.value.opcode == 0x90
        assert exc_info.value.offset == 1

    def test_oversized_repeat_count(self) -> None:
        stream = b"\x11\x21\x00\x60" + encode_uleb128(1 << 40) + b"\x00"
        with pytest.raises(FileCorruptError):
            self.parser.parse_rebases(ByteRegion(stream))

    def test_bind_ordinal_uleb(self) -> None:
        stream = b"\x20" + encode_uleb128(300) + b"\x40_sym\x00\x71\x00\x90\x00"
        binds = self.parser.parse_binds(ByteRegion(stream))
        assert binds[0].dylib_ordinal == 300

    def test_bind_special_ordinals(self) -> None:
        stream = b"\x40_sym\x00\x71\x00\x30\x90\x3f\x90\x3d\x90\x00"
        binds = self.parser.parse_binds(ByteRegion(stream))
        assert [x.dylib_ordinal for x in binds] == [0, -1, -3]
        assert [x.ordinal_description for x in binds] == ["Self", "Main Executable", "Weak Lookup"]

    def test_bind_add_addr_uleb(self) -> None:
        stream = b"\x11\x40_sym\x00\x71\x00\xa0" + encode_uleb128(0x10) + b"\x90\x80" + encode_uleb128(8) + b"\x90\x00"
        binds = self.parser.parse_binds(ByteRegion(stream))
        assert [x.segment_offset for x in binds] == [0x0, 0x18, 0x28]

    def test_threaded_binds_are_skipped(self) -> None:
        stream = b"\xd0" + encode_uleb128(4) + b"\xd1\x00"
        assert self.parser.parse_binds(ByteRegion(stream)) == []

    def test_invalid_threaded_subopcode(self) -> None:
        with pytest.raises(OpcodeInvalidError):
            self.parser.parse_binds(ByteRegion(b"\xd5\x00"))

    def test_bind_without_done(self) -> None:
        stream = b"\x11\x40_sym\x00\x71\x00\x90"
        assert len(self.parser.parse_binds(ByteRegion(stream))) == 1

    def test_truncated_symbol_name(self) -> None:
        with pytest.raises(InvalidStringError):
            self.parser.parse_binds(ByteRegion(b"\x11\x40_sym"))

    def test_invalid_stream_does_not_affect_others(self) -> None:
        builder = _binary_with_dyld_info(rebase=b"\x11\xf0", bind=BINDS, export=EXPORTS)
        info = DyldInfoParser(builder.build_binary()).parse_all()

        assert isinstance(info.errors["rebase"], OpcodeInvalidError)
        assert info.rebases == []
        assert len(info.binds) == 4
        assert len(info.exports) == 3

    def test_stream_outside_binary(self) -> None:
        builder = MachoBuilder()
        builder.add_command(struct.pack("<12I", MachoLoadCommands.LC_DYLD_INFO_ONLY, 48, 0, 0, 0x100000, 0x10, *[0] * 6))
        info = DyldInfoParser(builder.build_binary()).parse_all()
        assert set(info.errors.keys()) == {"bind"}
        assert isinstance(info.errors["bind"], FileCorruptError)


class TestExportTrie:
    def setup_method(self) -> None:
        self.parser = DyldInfoParser(_binary_with_dyld_info().build_binary())

    def test_corrupt_root_raises(self) -> None:
        # The root's terminal info runs past the end of the trie
        with pytest.raises(InvalidExportInfoError):
            self.parser.parse_exports(ByteRegion(b"\x20\x00"))

    def test_corrupt_root_is_reported(self) -> None:
        builder = _binary_with_dyld_info(export=b"\x20\x00")
        info = DyldInfoParser(builder.build_binary()).parse_all()
        assert isinstance(info.errors["export"], InvalidExportInfoError)
        assert info.exports == []

    def test_child_out_of_bounds_is_skipped(self) -> None:
        trie = export_trie(
            [
                (b"", [("_a", 1), ("_b", 2)]),
                (encode_uleb128(0) + encode_uleb128(0x10), []),
                (encode_uleb128(0) + encode_uleb128(0x20), []),
            ]
        )
        # Point the first edge past the end of the trie
        corrupt_trie = trie.replace(b"_a\x00\x0a", b"_a\x00\x7f")
        exports = self.parser.parse_exports(ByteRegion(corrupt_trie))
        assert [x.name for x in exports] == ["_b"]

    def test_cycle_is_skipped(self) -> None:
        # The child edge leads back to the root
        trie = export_trie([(b"", [("_loop", 0), ("_ok", 1)]), (encode_uleb128(0) + encode_uleb128(0x40), [])])
        exports = self.parser.parse_exports(ByteRegion(trie))
        assert [x.name for x in exports] == ["_ok"]

    def test_malformed_terminal_keeps_children(self) -> None:
        # Terminal info declares 1 byte, but the address ULEB needs 2
        trie = export_trie([(b"", [("_a", 1)]), (b"\x00", [("b", 2)]), (encode_uleb128(0) + encode_uleb128(0x8), [])])
        malformed = bytearray(trie)
        node_a = trie.index(b"\x01\x00\x01b\x00")
        malformed[node_a : node_a + 2] = b"\x01\x80"
        exports = self.parser.parse_exports(ByteRegion(bytes(malformed)))
        assert [x.name for x in exports] == ["_ab"]

    def test_export_kinds(self) -> None:
        trie = export_trie(
            [
                (b"", [("_tls", 1), ("_abs", 2), ("_weak", 3)]),
                (encode_uleb128(0x01) + encode_uleb128(0x10), []),
                (encode_uleb128(0x02) + encode_uleb128(0x20), []),
                (encode_uleb128(0x04) + encode_uleb128(0x30), []),
            ]
        )
        exports = {x.name: x for x in self.parser.parse_exports(ByteRegion(trie))}
        assert exports["_tls"].kind == ExportSymbolKind.THREAD_LOCAL
        assert exports["_abs"].kind == ExportSymbolKind.ABSOLUTE
        assert exports["_weak"].is_weak_definition
        assert exports["_weak"].kind == ExportSymbolKind.REGULAR

    def test_reexport_without_rename(self) -> None:
        trie = export_trie([(b"", [("_same", 1)]), (encode_uleb128(0x08) + encode_uleb128(2) + b"\x00", [])])
        exports = self.parser.parse_exports(ByteRegion(trie))
        assert exports[0].import_name is None
        assert exports[0].import_library_ordinal == 2
