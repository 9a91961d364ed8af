from ctypes import c_uint32, c_uint64, sizeof
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Type, TypeVar, Union
from uuid import UUID

from more_itertools import chunked, first_true

from machodump.logger import machodump_logger

from .byte_region import ByteRegion
from .errors import (
    AddressResolutionError,
    FileCorruptError,
    InvalidFormatError,
    InvalidStringError,
    LoadCommandMissingError,
    OutOfBoundsError,
)
from .macho_definitions import (
    CPU_TYPE,
    HEADER_FLAGS,
    NLIST_NTYPE,
    NTYPE_VALUES,
    MachArch,
    MachoBuildVersionPlatform,
    MachoFileType,
    StaticFilePointer,
    VirtualMemoryPointer,
)
from .macho_load_commands import (
    DYLIB_LOAD_COMMANDS,
    DYLIB_ORDINAL_LOAD_COMMANDS,
    LINKEDIT_DATA_LOAD_COMMANDS,
    VERSION_MIN_LOAD_COMMANDS,
    MachoLoadCommands,
)
from .macho_structs import (
    DylibCommandStruct,
    DylinkerCommandStruct,
    MachoBuildToolVersionStruct,
    MachoBuildVersionCommandStruct,
    MachoDyldInfoCommandStruct,
    MachoDysymtabCommandStruct,
    MachoEncryptionInfoStruct,
    MachoEntryPointCommandStruct,
    MachoHeaderStruct,
    MachoLinkeditDataCommandStruct,
    MachoLoadCommandStruct,
    MachoNlistStruct,
    MachoSectionRawStruct,
    MachoSegmentCommandStruct,
    MachoSourceVersionCommandStruct,
    MachoStructure,
    MachoSymtabCommandStruct,
    MachoUUIDCommandStruct,
    MachoVersionMinCommandStruct,
)

logger = machodump_logger.getChild("macho_binary")

MS = TypeVar("MS", bound=MachoStructure)

# Section types (section.flags & SECTION_TYPE) which occupy no space in the file
_SECTION_TYPE_MASK = 0x000000FF
_ZEROFILL_SECTION_TYPES = frozenset([0x1, 0xC, 0x12])


class MachoSegment:
    def __init__(self, segment_command: MachoSegmentCommandStruct) -> None:
        self.command = segment_command
        self.cmd = segment_command.cmd
        self.cmdsize = segment_command.cmdsize

        self.name = segment_command.segname.decode("utf-8", errors="replace")
        self.sizeof = segment_command.sizeof

        self.vmaddr = VirtualMemoryPointer(segment_command.vmaddr)
        self.vmsize = segment_command.vmsize
        self.vm_end_address = self.vmaddr + self.vmsize

        self.offset = StaticFilePointer(segment_command.fileoff)
        self.size = segment_command.filesize
        self.end_address = self.offset + self.size

        self.section_count = segment_command.nsects
        self.sections: List["MachoSection"] = []

        self.maxprot = segment_command.maxprot
        self.initprot = segment_command.initprot
        self.flags = segment_command.flags

    def __repr__(self) -> str:
        virtual_loc = f"[0x{self.vmaddr:011x} - 0x{self.vm_end_address:011x}]"
        file_loc = f"[0x{self.offset:011x} - 0x{self.end_address:011x}]"
        return f"<MachoSegment {virtual_loc} (file {file_loc}) {self.name} ({self.section_count} sections)>"


class MachoSection:
    def __init__(self, section_command: MachoSectionRawStruct, segment: MachoSegment) -> None:
        self.command = section_command
        self.segment = segment

        self.name = section_command.sectname.decode("utf-8", errors="replace")
        self.segment_name = section_command.segname.decode("utf-8", errors="replace")
        self.address = VirtualMemoryPointer(section_command.addr)
        self.size = section_command.size
        self.end_address = self.address + self.size
        self.offset = StaticFilePointer(section_command.offset)

        self.align = section_command.align
        self.reloff = section_command.reloff
        self.nreloc = section_command.nreloc
        self.flags = section_command.flags

    @property
    def is_zerofill(self) -> bool:
        return (self.flags & _SECTION_TYPE_MASK) in _ZEROFILL_SECTION_TYPES

    def __repr__(self) -> str:
        virtual_loc = f"[0x{self.address:011x} - 0x{self.end_address:011x}]"
        return f'<MachoSection {virtual_loc} "{self.name}" ("{self.segment_name}")>'


class MachoDylibCommand:
    """A load command which names another image by path: LC_LOAD_DYLIB and friends, LC_ID_DYLIB, LC_LOAD_DYLINKER"""

    def __init__(self, command: Union[DylibCommandStruct, DylinkerCommandStruct], name: str) -> None:
        self.command = command
        self.cmd = command.cmd
        self.cmdsize = command.cmdsize
        self.binary_offset = command.binary_offset
        self.name = name

        if isinstance(command, DylibCommandStruct):
            self.timestamp: Optional[int] = command.dylib.timestamp
            self.current_version: Optional[int] = command.dylib.current_version
            self.compatibility_version: Optional[int] = command.dylib.compatibility_version
        else:
            self.timestamp = self.current_version = self.compatibility_version = None

    def __repr__(self) -> str:
        return f"<MachoDylibCommand {MachoLoadCommands(self.cmd).name} {self.name}>"


class MachoUnknownLoadCommand:
    """A load command whose payload is not decoded"""

    def __init__(self, cmd: int, cmdsize: int, binary_offset: int) -> None:
        self.cmd = cmd
        self.cmdsize = cmdsize
        self.binary_offset = binary_offset

    def __repr__(self) -> str:
        return f"<MachoUnknownLoadCommand cmd={hex(self.cmd)} cmdsize={hex(self.cmdsize)}>"


LoadCommand = Union[MachoStructure, MachoSegment, MachoDylibCommand, MachoUnknownLoadCommand]


@dataclass
class MachoSymbol:
    name: str
    type: int
    section_number: int
    description: int
    value: VirtualMemoryPointer
    is_external: bool
    raw_type: int

    @property
    def is_undefined(self) -> bool:
        return self.type == NTYPE_VALUES.N_UNDF

    @property
    def is_debug_symbol(self) -> bool:
        return bool(self.raw_type & NLIST_NTYPE.N_STAB)

    @property
    def library_ordinal(self) -> int:
        """The two-level namespace ordinal of the dylib an undefined symbol is bound from. GET_LIBRARY_ORDINAL()"""
        return (self.description >> 8) & 0xFF


@dataclass
class DynamicSymbolTableInfo:
    """Index ranges into the symbol table, as declared by LC_DYSYMTAB. Empty ranges are None."""

    local_symbols: Optional[range]
    external_symbols: Optional[range]
    undefined_symbols: Optional[range]
    indirect_symbol_offset: int
    indirect_symbol_count: int


class MachoBinary:
    SUPPORTED_MAG = [MachArch.MH_MAGIC_64]
    DEFAULT_VIRTUAL_BASE = VirtualMemoryPointer(0x100000000)
    BYTES_PER_POINTER = 8

    def __init__(
        self, region: ByteRegion, path: Optional[Path] = None, file_offset: Optional[StaticFilePointer] = None
    ) -> None:
        """Parse the bytes of a single 64-bit Mach-O slice.

        Raises:
            InvalidFormatError: The slice does not begin with MH_MAGIC_64
            FileCorruptError: The header or a load command violates its declared bounds
        """
        self.region = region
        self.path = path
        self.slice_filesize = len(region)
        # Offset of this slice within a FAT, or 0 for a thin file
        self.file_offset = file_offset or StaticFilePointer(0x0)
        self._load_commands_end_addr = 0

        # Mach-O header data
        self.cpu_type: CPU_TYPE = CPU_TYPE.UNKNOWN  # Overwritten later in the parse
        self._header: Optional[MachoHeaderStruct] = None
        self.header_flags: List[int] = []
        self.file_type: Optional[MachoFileType] = None
        self._virtual_base: Optional[VirtualMemoryPointer] = None

        self.load_commands: List[LoadCommand] = []
        self.segments: List[MachoSegment] = []
        self.sections: List[MachoSection] = []

        # Interesting load commands
        self._dysymtab: Optional[MachoDysymtabCommandStruct] = None
        self._symtab: Optional[MachoSymtabCommandStruct] = None
        self._dyld_info: Optional[MachoDyldInfoCommandStruct] = None
        self._entry_point_cmd: Optional[MachoEntryPointCommandStruct] = None
        self._uuid_cmd: Optional[MachoUUIDCommandStruct] = None
        self._version_min_cmd: Optional[MachoVersionMinCommandStruct] = None
        self._source_version_cmd: Optional[MachoSourceVersionCommandStruct] = None
        self._build_version_cmd: Optional[MachoBuildVersionCommandStruct] = None
        self._build_tool_versions: Optional[List[MachoBuildToolVersionStruct]] = None
        self._id_dylib_cmd: Optional[MachoDylibCommand] = None
        self.dylinker_cmd: Optional[MachoDylibCommand] = None
        self.load_dylib_commands: List[MachoDylibCommand] = []
        self.linkedit_data_commands: Dict[MachoLoadCommands, MachoLinkeditDataCommandStruct] = {}
        # Map of cryptid to (cryptoff, cryptsize)
        self.encryption_info: Dict[int, Tuple[int, int]] = {}

        self._functions_list: Optional[Set[VirtualMemoryPointer]] = None

        # This kicks off the parse of the binary
        self.parse()

        self.symbols = self._parse_symbols()
        logger.debug(f"parsed symtab, len = {len(self.symbols)}")

    def __repr__(self) -> str:
        return f"<MachoBinary binary={self.path}>"

    def parse(self) -> None:
        """Validate the slice magic, then read the header and every load command"""
        if not self.region.contains(0, sizeof(c_uint32)):
            raise InvalidFormatError("Slice is too small to contain a Mach-O magic")

        magic = self.slice_magic
        if magic == MachArch.MH_CIGAM_64:
            raise InvalidFormatError("Big-endian Mach-O slices are unsupported")
        if magic not in MachoBinary.SUPPORTED_MAG:
            raise InvalidFormatError(f"Unsupported Mach-O magic {hex(magic)}")

        self.parse_header()
        logger.debug(f"header parsed. {len(self.load_commands)} load commands, {len(self.segments)} segments")

    @property
    def slice_magic(self) -> int:
        """Read magic number identifier from this Mach-O slice."""
        return self.region.read_word(0, c_uint32)

    def parse_header(self) -> None:
        """Read the Mach-O header, header flags and CPU target, followed by every load command."""
        try:
            self._header = MachoHeaderStruct.read(self.region, 0)
        except OutOfBoundsError as e:
            raise FileCorruptError("Mach-O header is truncated") from e

        if self.header.cputype == MachArch.MH_CPU_TYPE_ARM64:
            self.cpu_type = CPU_TYPE.ARM64
        elif self.header.cputype == MachArch.MH_CPU_TYPE_X86_64:
            self.cpu_type = CPU_TYPE.X86_64
        else:
            self.cpu_type = CPU_TYPE.UNKNOWN

        self._parse_header_flags()
        if self.header.filetype in MachoFileType._value2member_map_:
            self.file_type = MachoFileType(self.header.filetype)

        # load commands begin directly after Mach O header, so the offset is the size of the header
        load_commands_off = self.header.sizeof
        self._load_commands_end_addr = load_commands_off + self.header.sizeofcmds
        if self._load_commands_end_addr > len(self.region):
            raise FileCorruptError(
                f"Load commands end at {hex(self._load_commands_end_addr)}, past the end of the slice"
            )
        self._parse_load_commands(load_commands_off, self.header.ncmds)

    def _parse_header_flags(self) -> None:
        """Interpret binary's header bitset and populate self.header_flags."""
        self.header_flags = []

        flags_bitset = self.header.flags
        for mask in [x.value for x in HEADER_FLAGS]:
            # is this mask set in the binary's flags?
            if (flags_bitset & mask) == mask:
                self.header_flags.append(mask)

    def _parse_load_commands(self, offset: int, ncmds: int) -> None:
        """Parse Mach-O load commands beginning at a given slice offset

        Args:
            offset: Slice offset to first load command
            ncmds: Number of load commands to parse, as declared by the header's ncmds field
        """
        for i in range(ncmds):
            if offset + MachoLoadCommandStruct.struct_size() > self._load_commands_end_addr:
                raise FileCorruptError(f"Load command #{i} at {hex(offset)} lies past the end of the load commands")

            load_command = MachoLoadCommandStruct.read(self.region, offset)
            if load_command.cmdsize < MachoLoadCommandStruct.struct_size():
                raise FileCorruptError(f"Load command #{i} at {hex(offset)} has invalid cmdsize {load_command.cmdsize}")
            if offset + load_command.cmdsize > self._load_commands_end_addr:
                raise FileCorruptError(
                    f"Load command #{i} at {hex(offset)} (cmdsize {hex(load_command.cmdsize)}) overruns sizeofcmds"
                )

            self.load_commands.append(self._parse_load_command(offset, load_command))

            # move to next load command in header
            offset += load_command.cmdsize

    def _read_load_command(self, offset: int, load_command: MachoLoadCommandStruct, struct_type: Type[MS]) -> MS:
        if load_command.cmdsize < struct_type.struct_size():
            raise _LoadCommandTooSmall()
        return struct_type.read(self.region, offset)

    def _parse_load_command(self, offset: int, load_command: MachoLoadCommandStruct) -> LoadCommand:
        """Decode the payload of a single load command.
        Commands whose cmdsize is too small for their declared type are kept as MachoUnknownLoadCommand.
        """
        try:
            return self._parse_known_load_command(offset, load_command)
        except _LoadCommandTooSmall:
            logger.debug(
                f"Skipping load command {hex(load_command.cmd)} at {hex(offset)}: "
                f"cmdsize {load_command.cmdsize} is too small for its payload"
            )
            return MachoUnknownLoadCommand(load_command.cmd, load_command.cmdsize, offset)

    def _parse_known_load_command(self, offset: int, load_command: MachoLoadCommandStruct) -> LoadCommand:
        cmd = load_command.cmd

        if cmd == MachoLoadCommands.LC_SEGMENT_64:
            segment_command = self._read_load_command(offset, load_command, MachoSegmentCommandStruct)
            segment = MachoSegment(segment_command)
            self._parse_sections_for_segment(segment, offset)
            self.segments.append(segment)
            if segment.name == "__TEXT" and self._virtual_base is None:
                self._virtual_base = segment.vmaddr
            return segment

        # some commands have their own structure that we interpret separately from a normal load command
        # if we want to interpret more commands in the future, this is the place to do it
        elif cmd == MachoLoadCommands.LC_ENCRYPTION_INFO_64:
            encryption_info = self._read_load_command(offset, load_command, MachoEncryptionInfoStruct)
            self.encryption_info[encryption_info.cryptid] = (encryption_info.cryptoff, encryption_info.cryptsize)
            return encryption_info

        elif cmd == MachoLoadCommands.LC_SYMTAB:
            self._symtab = self._read_load_command(offset, load_command, MachoSymtabCommandStruct)
            return self._symtab

        elif cmd == MachoLoadCommands.LC_DYSYMTAB:
            self._dysymtab = self._read_load_command(offset, load_command, MachoDysymtabCommandStruct)
            return self._dysymtab

        elif cmd in [MachoLoadCommands.LC_DYLD_INFO, MachoLoadCommands.LC_DYLD_INFO_ONLY]:
            self._dyld_info = self._read_load_command(offset, load_command, MachoDyldInfoCommandStruct)
            return self._dyld_info

        elif cmd in LINKEDIT_DATA_LOAD_COMMANDS:
            linkedit_cmd = self._read_load_command(offset, load_command, MachoLinkeditDataCommandStruct)
            self.linkedit_data_commands.setdefault(MachoLoadCommands(cmd), linkedit_cmd)
            return linkedit_cmd

        elif cmd in DYLIB_LOAD_COMMANDS:
            dylib_struct = self._read_load_command(offset, load_command, DylibCommandStruct)
            dylib_cmd = MachoDylibCommand(
                dylib_struct, self._read_load_command_string(offset, dylib_struct.cmdsize, dylib_struct.dylib.name.offset)
            )
            if cmd == MachoLoadCommands.LC_ID_DYLIB:
                self._id_dylib_cmd = dylib_cmd
            else:
                self.load_dylib_commands.append(dylib_cmd)
            return dylib_cmd

        elif cmd in [MachoLoadCommands.LC_LOAD_DYLINKER, MachoLoadCommands.LC_ID_DYLINKER]:
            dylinker_struct = self._read_load_command(offset, load_command, DylinkerCommandStruct)
            self.dylinker_cmd = MachoDylibCommand(
                dylinker_struct,
                self._read_load_command_string(offset, dylinker_struct.cmdsize, dylinker_struct.name.offset),
            )
            return self.dylinker_cmd

        elif cmd == MachoLoadCommands.LC_UUID:
            self._uuid_cmd = self._read_load_command(offset, load_command, MachoUUIDCommandStruct)
            return self._uuid_cmd

        elif cmd in VERSION_MIN_LOAD_COMMANDS:
            self._version_min_cmd = self._read_load_command(offset, load_command, MachoVersionMinCommandStruct)
            return self._version_min_cmd

        elif cmd == MachoLoadCommands.LC_SOURCE_VERSION:
            self._source_version_cmd = self._read_load_command(offset, load_command, MachoSourceVersionCommandStruct)
            return self._source_version_cmd

        elif cmd == MachoLoadCommands.LC_MAIN:
            self._entry_point_cmd = self._read_load_command(offset, load_command, MachoEntryPointCommandStruct)
            return self._entry_point_cmd

        elif cmd == MachoLoadCommands.LC_BUILD_VERSION:
            build_version_cmd = self._read_load_command(offset, load_command, MachoBuildVersionCommandStruct)
            # Parse the build tool versions following this structure
            tools_size = build_version_cmd.ntools * MachoBuildToolVersionStruct.struct_size()
            if build_version_cmd.sizeof + tools_size > build_version_cmd.cmdsize:
                raise FileCorruptError(f"LC_BUILD_VERSION at {hex(offset)} declares more tools than fit its cmdsize")

            self._build_version_cmd = build_version_cmd
            build_tool_offset = offset + build_version_cmd.sizeof
            self._build_tool_versions = []
            for _ in range(build_version_cmd.ntools):
                build_tool_version = MachoBuildToolVersionStruct.read(self.region, build_tool_offset)
                self._build_tool_versions.append(build_tool_version)
                build_tool_offset += build_tool_version.sizeof
            return build_version_cmd

        return MachoUnknownLoadCommand(cmd, load_command.cmdsize, offset)

    def _read_load_command_string(self, command_offset: int, cmdsize: int, string_offset: int) -> str:
        """Read an lc_str embedded in a load command. The string must lie within the command."""
        command_region = self.region.slice(command_offset, cmdsize)
        try:
            return command_region.read_cstring(string_offset)
        except (OutOfBoundsError, InvalidStringError):
            logger.warning(f"Load command at {hex(command_offset)} has an invalid name offset {hex(string_offset)}")
            return "<unknown dylib>"

    def _parse_sections_for_segment(self, segment: MachoSegment, segment_offset: int) -> None:
        """Parse all sections contained within a Mach-O segment, and add them to our list of sections

        Args:
            segment: The segment command whose sections should be read
            segment_offset: The offset within the file that the segment command is located at
        """
        if not segment.section_count:
            return

        sections_size = segment.section_count * MachoSectionRawStruct.struct_size()
        if segment.sizeof + sections_size > segment.cmdsize:
            raise FileCorruptError(
                f"Segment {segment.name} declares {segment.section_count} sections, "
                f"which overrun its cmdsize {hex(segment.cmdsize)}"
            )

        # The first section of this segment begins directly after the segment
        section_offset = segment_offset + segment.sizeof
        for _ in range(segment.section_count):
            section_command = MachoSectionRawStruct.read(self.region, section_offset)
            section = MachoSection(section_command, segment)
            segment.sections.append(section)
            self.sections.append(section)

            section_offset += section_command.sizeof

    def _parse_symbols(self) -> List[MachoSymbol]:
        """Decode every nlist_64 described by LC_SYMTAB, resolving names through the string table.
        A symbol or string table lying outside the slice yields no symbols.
        """
        if not self._symtab:
            return []

        symtab_size = self.symtab.nsyms * MachoNlistStruct.struct_size()
        if not self.region.contains(self.symtab.symoff, symtab_size):
            logger.warning(f"Symbol table [{hex(self.symtab.symoff)} +{hex(symtab_size)}] lies outside the slice")
            return []
        string_table = self._string_table_region()
        if string_table is None:
            return []

        logger.debug(f"parsing {self.symtab.nsyms} symtab entries")
        symbols = []
        # start reading from symoff and increment by one nlist_64 each iteration
        symoff = self.symtab.symoff
        for _ in range(self.symtab.nsyms):
            nlist = MachoNlistStruct.read(self.region, symoff)
            symbols.append(
                MachoSymbol(
                    name=self._symbol_name_for_strtab_index(string_table, nlist.n_un.n_strx),
                    type=nlist.n_type & NLIST_NTYPE.N_TYPE,
                    section_number=nlist.n_sect,
                    description=nlist.n_desc,
                    value=VirtualMemoryPointer(nlist.n_value),
                    is_external=bool(nlist.n_type & NLIST_NTYPE.N_EXT),
                    raw_type=nlist.n_type,
                )
            )
            symoff += nlist.sizeof
        return symbols

    @staticmethod
    def _symbol_name_for_strtab_index(string_table: ByteRegion, strtab_idx: int) -> str:
        if strtab_idx == 0:
            return ""
        if strtab_idx >= len(string_table):
            return "<InvalidStrOffset>"
        try:
            return string_table.read_cstring(strtab_idx)
        except InvalidStringError:
            return "<InvalidStr>"

    def _string_table_region(self) -> Optional[ByteRegion]:
        if not self.region.contains(self.symtab.stroff, self.symtab.strsize):
            logger.warning(f"String table [{hex(self.symtab.stroff)} +{hex(self.symtab.strsize)}] lies outside the slice")
            return None
        return self.region.slice(self.symtab.stroff, self.symtab.strsize)

    def get_raw_string_table(self) -> bytes:
        """Read the packed string table described by LC_SYMTAB. Each entry is terminated by a NULL character.
        Returns empty bytes if the string table lies outside the slice.
        """
        string_table = self._string_table_region()
        if string_table is None:
            return b""
        return string_table.tobytes()

    def get_indirect_symbol_table(self) -> List[int]:
        # dysymtab has fields that tell us the file offset of the indirect symbol table, as well as the number
        # of indirect symbols present in the mach-o
        indirect_symtab_off = self.dysymtab.indirectsymoff
        indirect_symtab = []
        # indirect symtab is an array of uint32's
        for _ in range(self.dysymtab.nindirectsyms):
            indirect_symtab.append(self.region.read_word(indirect_symtab_off, c_uint32))
            indirect_symtab_off += sizeof(c_uint32)
        return indirect_symtab

    @property
    def dynamic_symbol_info(self) -> DynamicSymbolTableInfo:
        def _index_range(start: int, count: int) -> Optional[range]:
            if not count:
                return None
            return range(start, start + count)

        dysymtab = self.dysymtab
        return DynamicSymbolTableInfo(
            local_symbols=_index_range(dysymtab.ilocalsym, dysymtab.nlocalsym),
            external_symbols=_index_range(dysymtab.iextdefsym, dysymtab.nextdefsym),
            undefined_symbols=_index_range(dysymtab.iundefsym, dysymtab.nundefsym),
            indirect_symbol_offset=dysymtab.indirectsymoff,
            indirect_symbol_count=dysymtab.nindirectsyms,
        )

    def get_virtual_base(self) -> VirtualMemoryPointer:
        """Retrieve the first virtual address of the Mach-O slice

        Returns:
            The vmaddr of the __TEXT segment, or 0x100000000 if the slice has no __TEXT segment
        """
        if self._virtual_base is None:
            return MachoBinary.DEFAULT_VIRTUAL_BASE
        return self._virtual_base

    def get_file_offset(self) -> StaticFilePointer:
        """Retrieve the offset within the file of this Mach-O slice."""
        return self.file_offset

    def segment_for_index(self, segment_index: int) -> MachoSegment:
        if 0 <= segment_index < len(self.segments):
            # Segments are stored in the order they appear in the Mach-O header
            return self.segments[segment_index]
        raise ValueError(f"segment_index ({segment_index}) out of bounds ({len(self.segments)})")

    def segment_with_name(self, desired_segment_name: str) -> Optional[MachoSegment]:
        """Returns the segment with the provided name. Returns None if there's no such segment in the binary."""
        return first_true(self.segments, pred=lambda s: s.name == desired_segment_name)

    def section_with_name(self, desired_section_name: str, parent_segment_name: str) -> Optional[MachoSection]:
        """Retrieve the section with the provided name which is contained within the provided segment.
        Returns None if no such section exists.
        """
        segment = self.segment_with_name(parent_segment_name)
        if segment:
            return first_true(segment.sections, pred=lambda s: s.name == desired_section_name)
        return None

    def section_with_name_in_segments(
        self, desired_section_name: str, segment_names: Tuple[str, ...] = ("__DATA_CONST", "__DATA")
    ) -> Optional[MachoSection]:
        """Retrieve the first section with the provided name, searching the segments in order."""
        for segment_name in segment_names:
            section = self.section_with_name(desired_section_name, segment_name)
            if section:
                return section
        return None

    def section_for_address(self, virt_addr: VirtualMemoryPointer) -> Optional[MachoSection]:
        """Given an address in the virtual address space, return the section which contains it."""
        return first_true(self.sections, pred=lambda s: s.address <= virt_addr < s.end_address)

    def section_name_for_address(self, virt_addr: VirtualMemoryPointer) -> Optional[str]:
        """Given an address in the virtual address space, return the name of the section which contains it."""
        section = self.section_for_address(virt_addr)
        if not section:
            return None
        return section.name

    def file_offset_for_virtual_address(self, virtual_address: int) -> StaticFilePointer:
        """Translate a virtual address to an offset within the slice.

        The address is located within a segment's virtual range. A section containing the address gives the most
        precise translation. Otherwise the segment's file mapping is used, but only within its filesize: the
        remainder of vmsize is zero-filled memory with no file contents.

        Raises:
            AddressResolutionError: The address is not backed by file contents
        """
        virtual_base = self.get_virtual_base()
        if virtual_address < virtual_base:
            raise AddressResolutionError(virtual_address)
        relative_address = virtual_address - virtual_base

        for segment in self.segments:
            segment_relative_start = segment.vmaddr - virtual_base
            if not segment_relative_start <= relative_address < segment_relative_start + segment.vmsize:
                continue

            for section in segment.sections:
                if section.address <= virtual_address < section.end_address:
                    if section.is_zerofill:
                        raise AddressResolutionError(virtual_address)
                    # https://reverseengineering.stackexchange.com/questions/8177/convert-mach-o-vm-address-to-file-offset
                    return StaticFilePointer(section.offset + (virtual_address - section.address))

            offset_within_segment = virtual_address - segment.vmaddr
            if offset_within_segment < segment.size:
                return StaticFilePointer(segment.offset + offset_within_segment)
            raise AddressResolutionError(virtual_address)

        raise AddressResolutionError(virtual_address)

    def read_struct(self, binary_offset: int, struct_type: Type[MS], virtual: bool = False) -> MS:
        """Given an binary offset, return the structure it describes.

        Params:
            binary_offset: Address from where to read the bytes.
            struct_type: MachoStructure subclass.
            virtual: Whether the address is a virtual address which must first be translated to a file offset.
        Returns:
            MachoStructure loaded from the pointed address.
        """
        if virtual:
            binary_offset = self.file_offset_for_virtual_address(binary_offset)
        return struct_type.read(self.region, binary_offset)

    def read_struct_at_address(self, address: int, struct_type: Type[MS]) -> MS:
        return self.read_struct(address, struct_type, virtual=True)

    def read_word(self, address: int, virtual: bool = True, word_type: Any = c_uint64) -> int:
        """Read a word from the binary, at a virtual address by default."""
        if virtual:
            address = self.file_offset_for_virtual_address(address)
        return self.region.read_word(address, word_type)

    def read_word_at_address(self, address: int, word_type: Any = c_uint64) -> int:
        return self.read_word(address, virtual=True, word_type=word_type)

    def read_pointer_at_address(self, address: int) -> VirtualMemoryPointer:
        return VirtualMemoryPointer(self.read_word(address, virtual=True, word_type=c_uint64))

    def get_bytes(self, offset: int, size: int) -> bytes:
        """Retrieve `size` bytes beginning at the slice offset. Raises OutOfBoundsError if the range is not in the slice.
        """
        return self.region.read_bytes(offset, size)

    def read_string_at_address(self, address: int) -> str:
        """Read the NUL-terminated string at a virtual address.

        Raises:
            AddressResolutionError: The address is not backed by file contents
            InvalidStringError: The string runs off the end of the slice
        """
        return self.region.read_cstring(self.file_offset_for_virtual_address(address))

    def read_pointer_section(self, section_name: str) -> Dict[VirtualMemoryPointer, VirtualMemoryPointer]:
        """Read all the pointers in a section

        It is the caller's responsibility to only call this with a `section_name` which indicates a section which should
        only contain a pointer list. The section is looked up in __DATA_CONST, then __DATA.

        Returns:
            A map of the virtual address of each slot in the section to the pointer value stored there
        """
        section = self.section_with_name_in_segments(section_name)
        if not section:
            return {}

        section_data = self.get_bytes(section.offset, section.size)
        address_to_pointer_map: Dict[VirtualMemoryPointer, VirtualMemoryPointer] = {}
        for idx, pointer_bytes in enumerate(chunked(section_data, self.BYTES_PER_POINTER)):
            # A trailing partial word is not a pointer
            if len(pointer_bytes) < self.BYTES_PER_POINTER:
                break
            # convert section offset of entry to absolute virtual address
            ptr_location = VirtualMemoryPointer(section.address + idx * self.BYTES_PER_POINTER)
            address_to_pointer_map[ptr_location] = VirtualMemoryPointer(
                c_uint64.from_buffer_copy(bytes(pointer_bytes)).value
            )
        return address_to_pointer_map

    def is_encrypted(self) -> bool:
        """Returns True if the binary declares an encrypted range with cryptid 1, False otherwise."""
        return 1 in self.encryption_info

    def is_range_encrypted(self, offset: int, size: int) -> bool:
        """Returns whether the provided file range overlaps with an encrypted range of the binary."""
        if not self.is_encrypted():
            return False
        cryptoff, cryptsize = self.encryption_info[1]
        # if 2 ranges overlap, the end address of the first range will be greater than the start of the second, and
        # the end address of the second will be greater than the start of the first
        return offset + size > cryptoff and cryptoff + cryptsize > offset

    def dylib_for_library_ordinal(self, library_ordinal: int) -> Optional[MachoDylibCommand]:
        """Retrieve the library information for the 'library ordinal' value, or None if no entry exists there.
        Library ordinals are 1-indexed.
        https://opensource.apple.com/source/cctools/cctools-795/include/mach-o/loader.h
        """
        ordinal_commands = [x for x in self.load_dylib_commands if x.cmd in DYLIB_ORDINAL_LOAD_COMMANDS]
        idx = library_ordinal - 1
        if library_ordinal < 1 or idx >= len(ordinal_commands):
            return None
        return ordinal_commands[idx]

    def dylib_name_for_library_ordinal(self, library_ordinal: int) -> str:
        """Read the name of the dynamic library by its library ordinal."""
        source_dylib = self.dylib_for_library_ordinal(library_ordinal)
        if source_dylib:
            return source_dylib.name
        # Some binaries reference an ordinal past the last LC_LOAD_DYLIB command. Use a placeholder name
        return "<unknown dylib>"

    def linked_dylibs(self) -> List[str]:
        """The path of every dylib this binary loads, in load command order."""
        return [x.name for x in self.load_dylib_commands]

    def dylib_id(self) -> Optional[str]:
        """If the binary contains an LC_ID_DYLIB load command, return the pathname which the binary represents."""
        if not self._id_dylib_cmd:
            return None
        return self._id_dylib_cmd.name

    @property
    def uuid(self) -> Optional[UUID]:
        if not self._uuid_cmd:
            return None
        return UUID(bytes=bytes(self._uuid_cmd.uuid))

    @property
    def entry_point_offset(self) -> Optional[int]:
        """The __TEXT offset of the entry point declared by LC_MAIN, if any."""
        if not self._entry_point_cmd:
            return None
        return self._entry_point_cmd.entryoff

    @property
    def source_version(self) -> Optional[str]:
        if not self._source_version_cmd:
            return None
        # A.B.C.D.E packed as a24.b10.c10.d10.e10
        version = self._source_version_cmd.version
        components = [(version >> 40) & 0xFFFFFF, (version >> 30) & 0x3FF, (version >> 20) & 0x3FF]
        components += [(version >> 10) & 0x3FF, version & 0x3FF]
        return ".".join(str(x) for x in components)

    @staticmethod
    def _decode_packed_version(encoded: int) -> Tuple[int, int, int]:
        # X.Y.Z is encoded in nibbles xxxx.yy.zz
        patch = (encoded >> (8 * 0)) & 0xFF
        minor = (encoded >> (8 * 1)) & 0xFF
        major = (encoded >> (8 * 2)) & 0xFFFF
        return major, minor, patch

    def get_minimum_deployment_target(self) -> Optional[Tuple[int, int, int]]:
        """The minimum OS version from LC_BUILD_VERSION, falling back to an LC_VERSION_MIN_* command."""
        if self._build_version_cmd:
            return self._decode_packed_version(self._build_version_cmd.minos)
        if self._version_min_cmd:
            return self._decode_packed_version(self._version_min_cmd.version)
        return None

    def get_build_version_platform(self) -> Optional[MachoBuildVersionPlatform]:
        if not self._build_version_cmd:
            return None
        platform = self._build_version_cmd.platform
        if platform not in MachoBuildVersionPlatform._value2member_map_:
            logger.debug(f"Unknown LC_BUILD_VERSION platform {platform}")
            return None
        return MachoBuildVersionPlatform(platform)

    def get_build_tool_versions(self) -> Optional[List[MachoBuildToolVersionStruct]]:
        return self._build_tool_versions

    def get_functions(self) -> Set[VirtualMemoryPointer]:
        """Get a list of the function entry points defined in LC_FUNCTION_STARTS. This includes objective-c methods.

        Returns: A set of VirtualMemoryPointers corresponding to each function's entry point. Empty if the binary
        has no LC_FUNCTION_STARTS.
        """
        from .function_starts_parser import FunctionStartsParser

        if self._functions_list is not None:
            return self._functions_list

        # Cannot do anything without LC_FUNCTION_STARTS
        if not self.function_starts_cmd:
            return set()

        self._functions_list = set(FunctionStartsParser.parse_function_starts(self))
        return self._functions_list

    def find_main_function_symbol(self) -> Optional[MachoSymbol]:
        """Find the defined, external symbol for main()"""
        return first_true(
            self.symbols,
            pred=lambda s: s.name in ["main", "_main"] and s.type == NTYPE_VALUES.N_SECT and s.is_external,
        )

    def find_crt_entry_point_symbol(self) -> Optional[MachoSymbol]:
        """Find the symbol for the C runtime entry point which LC_MAIN transfers control to, by its conventional name.
        Returns None if the binary has no LC_MAIN or no __TEXT segment.
        """
        if not self._entry_point_cmd or not self.segment_with_name("__TEXT"):
            return None

        for name in ["start", "_start"]:
            symbol = first_true(
                self.symbols,
                pred=lambda s: s.name == name
                and s.type in [NTYPE_VALUES.N_SECT, NTYPE_VALUES.N_ABS]
                and s.is_external,
            )
            if symbol:
                return symbol

        logger.debug("Could not find a CRT entry point symbol named start or _start")
        return None

    @property
    def header(self) -> MachoHeaderStruct:
        if self._header:
            return self._header
        raise LoadCommandMissingError()

    @property
    def dysymtab(self) -> MachoDysymtabCommandStruct:
        if self._dysymtab:
            return self._dysymtab
        raise LoadCommandMissingError("Binary has no LC_DYSYMTAB")

    @property
    def symtab(self) -> MachoSymtabCommandStruct:
        if self._symtab:
            return self._symtab
        raise LoadCommandMissingError("Binary has no LC_SYMTAB")

    @property
    def dyld_info(self) -> MachoDyldInfoCommandStruct:
        if self._dyld_info:
            return self._dyld_info
        raise LoadCommandMissingError("Binary has no LC_DYLD_INFO or LC_DYLD_INFO_ONLY")

    def has_dyld_info(self) -> bool:
        return self._dyld_info is not None

    @property
    def function_starts_cmd(self) -> Optional[MachoLinkeditDataCommandStruct]:
        return self.linkedit_data_commands.get(MachoLoadCommands.LC_FUNCTION_STARTS)


class _LoadCommandTooSmall(Exception):
    """Raised internally when a load command's cmdsize cannot hold its typed payload."""
