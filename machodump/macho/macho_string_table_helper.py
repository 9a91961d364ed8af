from typing import Dict, List, Optional

from .macho_binary import MachoBinary, MachoSymbol
from .macho_definitions import NTYPE_VALUES, VirtualMemoryPointer


class MachoStringTableEntry:
    """Class encapsulating an entry into the Mach-O string table."""

    __slots__ = ["start_idx", "length", "full_string"]

    def __init__(self, start_idx: int, length: int, content: str) -> None:
        self.start_idx = start_idx
        self.length = length
        self.full_string = content

    def __repr__(self) -> str:
        return f"<MachoStringTableEntry [{self.start_idx}] {self.full_string}>"


class MachoStringTableHelper:
    """Class containing helper functions for processing the symbol and string tables of a Mach-O."""

    def __init__(self, binary: MachoBinary) -> None:
        self.binary = binary
        self.string_table_entries = MachoStringTableHelper.transform_string_section(self.binary.get_raw_string_table())
        self.imported_symbols: List[str] = []
        self.exported_symbols: Dict[VirtualMemoryPointer, str] = {}
        self.parse_sym_lists()

    @classmethod
    def transform_string_section(cls, strtab: bytes) -> Dict[int, MachoStringTableEntry]:
        """Create more efficient representation of string table data

        The string table is a large array of characters, representing NULL-terminated strings. There is no separator
        between entries aside from a NULL terminator. When other tables reference a string table entry, they will
        only reference the starting index. To avoid searching for the terminator on every lookup, we preprocess the
        string table into a map of start indexes to MachoStringTableEntry's.
        An unterminated run at the end of the table is not an entry.
        """
        string_table_entries = {}
        entry_start_idx = 0
        while True:
            entry_end_idx = strtab.find(b"\x00", entry_start_idx)
            if entry_end_idx == -1:
                break

            entry_byte_content = strtab[entry_start_idx:entry_end_idx]
            try:
                entry_content = entry_byte_content.decode("utf-8")
            except UnicodeDecodeError:
                # get a string literal of the raw bytes. 0x0080 -> "b'\\x00\\x80'"
                entry_content = str(entry_byte_content)

            string_table_entries[entry_start_idx] = MachoStringTableEntry(
                entry_start_idx, entry_end_idx - entry_start_idx, entry_content
            )
            # move to starting index of next string
            entry_start_idx = entry_end_idx + 1
        return string_table_entries

    def string_table_entry_for_strtab_index(self, start_idx: int) -> Optional[MachoStringTableEntry]:
        """For a index in the packed character table, get the corresponding MachoStringTableEntry

        Returns:
            A MachoStringTableEntry if provided index was the starting character of a string table entry, None if not
        """
        return self.string_table_entries.get(start_idx)

    def parse_sym_lists(self) -> None:
        """Sort the binary's symbols into imported and exported symbol lists."""
        self.imported_symbols = []
        self.exported_symbols = {}

        for sym in self.binary.symbols:
            if not sym.name or sym.is_debug_symbol:
                continue

            if sym.type == NTYPE_VALUES.N_UNDF:
                # Undefined symbols which are not external are references resolved within the image
                if not sym.is_external:
                    continue
                self.imported_symbols.append(sym.name)
            elif sym.type == NTYPE_VALUES.N_SECT:
                self.exported_symbols[sym.value] = sym.name

    def get_symbol_name_for_address(self, address: VirtualMemoryPointer) -> Optional[str]:
        """For an address of a function entrypoint, return the function's symbol name."""
        return self.exported_symbols.get(address)

    def symbols_imported_from_library_ordinal(self, library_ordinal: int) -> List[MachoSymbol]:
        """The undefined, external symbols which two-level namespace binding resolves from the provided dylib."""
        return [
            x
            for x in self.binary.symbols
            if x.type == NTYPE_VALUES.N_UNDF and x.is_external and x.library_ordinal == library_ordinal
        ]
