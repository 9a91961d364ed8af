import struct
from typing import Dict, List, Optional, Sequence, Tuple

from machodump.macho import MachArch, MachoBinary, MachoLoadCommands, MachoParser, encode_uleb128

TEXT_VMADDR = 0x100000000
DATA_VMADDR = 0x100004000
LINKEDIT_VMADDR = 0x100008000
LINKEDIT_FILEOFF = 0x8000
SEGMENT_SIZE = 0x4000

MH_EXECUTE = 0x2
RO_META = 0x1
FAST_IS_SWIFT_STABLE = 0x2
METHOD_LIST_IS_RELATIVE = 1 << 31

# (segment, section, virtual address, capacity)
SECTION_LAYOUT: List[Tuple[str, str, int, int]] = [
    ("__TEXT", "__text", 0x100001000, 0x1000),
    ("__TEXT", "__cstring", 0x100002000, 0x800),
    ("__TEXT", "__objc_methname", 0x100002800, 0x800),
    ("__TEXT", "__objc_classname", 0x100003000, 0x800),
    ("__TEXT", "__objc_methtype", 0x100003800, 0x400),
    ("__TEXT", "__swift5_types", 0x100003C00, 0x100),
    ("__TEXT", "__constg_swiftt", 0x100003D00, 0x300),
    ("__DATA", "__objc_classlist", 0x100004000, 0x400),
    ("__DATA", "__objc_catlist", 0x100004400, 0x400),
    ("__DATA", "__objc_protolist", 0x100004800, 0x400),
    ("__DATA", "__objc_selrefs", 0x100004C00, 0x400),
    ("__DATA", "__objc_const", 0x100005000, 0x1000),
    ("__DATA", "__objc_data", 0x100006000, 0x800),
    ("__DATA", "__objc_ivar", 0x100006800, 0x400),
    ("__DATA", "__data", 0x100006C00, 0x800),
    ("__DATA", "__const", 0x100007400, 0x400),
]


def _pad(data: bytes, alignment: int) -> bytes:
    return data + b"\x00" * (-len(data) % alignment)


def _name16(name: str) -> bytes:
    return name.encode().ljust(16, b"\x00")


def mach_header(ncmds: int, sizeofcmds: int, cputype: int = MachArch.MH_CPU_TYPE_ARM64, flags: int = 0) -> bytes:
    return struct.pack("<8I", MachArch.MH_MAGIC_64, cputype, 0, MH_EXECUTE, ncmds, sizeofcmds, flags, 0)


def section_entry(
    sectname: str, segname: str, addr: int, size: int, offset: int, flags: int = 0
) -> bytes:
    return _name16(sectname) + _name16(segname) + struct.pack("<QQIIIIIIII", addr, size, offset, 0, 0, 0, flags, 0, 0, 0)


def segment_command(
    segname: str, vmaddr: int, vmsize: int, fileoff: int, filesize: int, sections: Sequence[bytes] = ()
) -> bytes:
    cmdsize = 72 + 80 * len(sections)
    command = struct.pack("<II", MachoLoadCommands.LC_SEGMENT_64, cmdsize) + _name16(segname)
    command += struct.pack("<QQQQIIII", vmaddr, vmsize, fileoff, filesize, 7, 7, len(sections), 0)
    return command + b"".join(sections)


def linkedit_data_command(cmd: int, dataoff: int, datasize: int) -> bytes:
    return struct.pack("<IIII", cmd, 16, dataoff, datasize)


def dylib_command(path: str, cmd: int = MachoLoadCommands.LC_LOAD_DYLIB) -> bytes:
    name = _pad(path.encode() + b"\x00", 8)
    return struct.pack("<IIIIII", cmd, 24 + len(name), 24, 2, 0x10000, 0x10000) + name


def thin_macho(load_commands: Sequence[bytes], body_size: int = 0x1000, cputype: int = MachArch.MH_CPU_TYPE_ARM64) -> bytes:
    """A Mach-O made of a header, the provided load commands, and zeroes up to body_size"""
    commands = b"".join(load_commands)
    contents = mach_header(len(load_commands), len(commands), cputype) + commands
    return contents.ljust(body_size, b"\x00")


def fat_macho(slices: Sequence[Tuple[int, bytes]]) -> bytes:
    """A FAT archive holding each (cputype, slice) at a 0x1000-aligned offset"""
    header = struct.pack(">II", MachArch.FAT_MAGIC, len(slices))
    arch_entries = b""
    slice_data = b""
    offset = 0x1000
    for cputype, slice_bytes in slices:
        arch_entries += struct.pack(">5I", cputype, 0, offset + len(slice_data), len(slice_bytes), 12)
        slice_data += _pad(slice_bytes, 0x1000)
    return (header + arch_entries).ljust(offset, b"\x00") + slice_data


class MachoBuilder:
    """Assemble a small 64-bit Mach-O in memory.

    The image has __TEXT, __DATA and __LINKEDIT segments at fixed addresses. Section contents are appended with
    the add_* methods, which return the virtual address of what they wrote. Only sections with contents are emitted.
    """

    def __init__(self, cputype: int = MachArch.MH_CPU_TYPE_ARM64) -> None:
        self.cputype = cputype
        self.section_data: Dict[str, bytearray] = {sect: bytearray() for _, sect, _, _ in SECTION_LAYOUT}
        self.section_flags: Dict[str, int] = {}

        self.symbols: List[Tuple[str, int, int, int, int]] = []
        self.dyld_streams: Optional[Dict[str, bytes]] = None
        self.function_starts: Optional[bytes] = None
        self.dysymtab: Optional[Tuple[int, ...]] = None
        self.indirect_symbols: List[int] = []
        self.extra_commands: List[bytes] = []

        self._strings: Dict[Tuple[str, str], int] = {}

    @staticmethod
    def _layout(section_name: str) -> Tuple[str, int, int]:
        for segname, sectname, address, capacity in SECTION_LAYOUT:
            if sectname == section_name:
                return segname, address, capacity
        raise KeyError(section_name)

    def add_data(self, section_name: str, data: bytes, alignment: int = 8) -> int:
        _, section_address, capacity = self._layout(section_name)
        contents = self.section_data[section_name]
        contents.extend(b"\x00" * (-len(contents) % alignment))
        address = section_address + len(contents)
        contents.extend(data)
        if len(contents) > capacity:
            raise ValueError(f"{section_name} is full")
        return address

    def add_string(self, string: str, section_name: str = "__cstring") -> int:
        key = (section_name, string)
        if key not in self._strings:
            self._strings[key] = self.add_data(section_name, string.encode() + b"\x00", alignment=1)
        return self._strings[key]

    def add_pointer(self, section_name: str, pointer: int) -> int:
        return self.add_data(section_name, struct.pack("<Q", pointer))

    def overwrite(self, section_name: str, address: int, contents: bytes) -> None:
        """Replace contents previously written to a section by add_data"""
        _, section_address, _ = self._layout(section_name)
        offset = address - section_address
        self.section_data[section_name][offset : offset + len(contents)] = contents

    def write_pointer(self, address: int, pointer: int) -> None:
        """Overwrite a pointer previously written by add_data"""
        for _, sectname, section_address, capacity in SECTION_LAYOUT:
            if section_address <= address < section_address + capacity:
                offset = address - section_address
                self.section_data[sectname][offset : offset + 8] = struct.pack("<Q", pointer)
                return
        raise ValueError(f"{hex(address)} is not in a section")

    def add_symbol(self, name: str, n_type: int, n_sect: int = 0, n_desc: int = 0, n_value: int = 0) -> None:
        self.symbols.append((name, n_type, n_sect, n_desc, n_value))

    def set_dyld_info(
        self,
        rebase: bytes = b"",
        bind: bytes = b"",
        weak_bind: bytes = b"",
        lazy_bind: bytes = b"",
        export: bytes = b"",
    ) -> None:
        self.dyld_streams = {
            "rebase": rebase,
            "bind": bind,
            "weak_bind": weak_bind,
            "lazy_bind": lazy_bind,
            "export": export,
        }

    def set_function_starts(self, addresses: Sequence[int]) -> None:
        encoded = b""
        previous = TEXT_VMADDR
        for address in addresses:
            encoded += encode_uleb128(address - previous)
            previous = address
        self.function_starts = _pad(encoded + b"\x00", 8)

    def set_dysymtab(self, local: Tuple[int, int], extdef: Tuple[int, int], undef: Tuple[int, int]) -> None:
        self.dysymtab = (*local, *extdef, *undef)

    def add_dylib(self, path: str, cmd: int = MachoLoadCommands.LC_LOAD_DYLIB) -> None:
        self.extra_commands.append(dylib_command(path, cmd))

    def add_command(self, command: bytes) -> None:
        self.extra_commands.append(command)

    def _build_linkedit(self) -> Tuple[bytes, List[bytes]]:
        linkedit = b""
        commands: List[bytes] = []

        def append(blob: bytes) -> int:
            nonlocal linkedit
            offset = LINKEDIT_FILEOFF + len(linkedit)
            linkedit = _pad(linkedit + blob, 8)
            return offset

        if self.dyld_streams is not None:
            offsets_and_sizes: List[int] = []
            for stream_name in ["rebase", "bind", "weak_bind", "lazy_bind", "export"]:
                blob = self.dyld_streams[stream_name]
                offsets_and_sizes += [append(blob) if blob else 0, len(blob)]
            commands.append(struct.pack("<12I", MachoLoadCommands.LC_DYLD_INFO_ONLY, 48, *offsets_and_sizes))

        if self.function_starts is not None:
            dataoff = append(self.function_starts)
            commands.append(
                linkedit_data_command(MachoLoadCommands.LC_FUNCTION_STARTS, dataoff, len(self.function_starts))
            )

        if self.symbols:
            string_table = b"\x00"
            nlists = b""
            for name, n_type, n_sect, n_desc, n_value in self.symbols:
                strx = len(string_table) if name else 0
                if name:
                    string_table += name.encode() + b"\x00"
                nlists += struct.pack("<IBBHQ", strx, n_type, n_sect, n_desc, n_value)
            symoff = append(nlists)
            stroff = append(string_table)
            commands.append(
                struct.pack(
                    "<6I", MachoLoadCommands.LC_SYMTAB, 24, symoff, len(self.symbols), stroff, len(string_table)
                )
            )

        if self.dysymtab is not None:
            indirect_table = b"".join(struct.pack("<I", x) for x in self.indirect_symbols)
            indirectsymoff = append(indirect_table) if indirect_table else 0
            fields = [*self.dysymtab, 0, 0, 0, 0, 0, 0, indirectsymoff, len(self.indirect_symbols), 0, 0, 0, 0]
            commands.append(struct.pack("<20I", MachoLoadCommands.LC_DYSYMTAB, 80, *fields))

        return linkedit, commands

    def build(self) -> bytes:
        linkedit, linkedit_commands = self._build_linkedit()

        sections: Dict[str, List[bytes]] = {"__TEXT": [], "__DATA": []}
        for segname, sectname, address, _ in SECTION_LAYOUT:
            contents = self.section_data[sectname]
            if not contents:
                continue
            segment_vmaddr = TEXT_VMADDR if segname == "__TEXT" else DATA_VMADDR
            segment_fileoff = 0 if segname == "__TEXT" else SEGMENT_SIZE
            offset = segment_fileoff + address - segment_vmaddr
            flags = self.section_flags.get(sectname, 0)
            sections[segname].append(section_entry(sectname, segname, address, len(contents), offset, flags))

        linkedit_size = max(len(linkedit), 0x10)
        load_commands = [
            segment_command("__TEXT", TEXT_VMADDR, SEGMENT_SIZE, 0, SEGMENT_SIZE, sections["__TEXT"]),
            segment_command("__DATA", DATA_VMADDR, SEGMENT_SIZE, SEGMENT_SIZE, SEGMENT_SIZE, sections["__DATA"]),
            segment_command("__LINKEDIT", LINKEDIT_VMADDR, SEGMENT_SIZE, LINKEDIT_FILEOFF, linkedit_size),
            *linkedit_commands,
            *self.extra_commands,
        ]
        image = bytearray(thin_macho(load_commands, LINKEDIT_FILEOFF + linkedit_size, self.cputype))

        for segname, sectname, address, _ in SECTION_LAYOUT:
            contents = self.section_data[sectname]
            offset = address - TEXT_VMADDR
            image[offset : offset + len(contents)] = contents
        image[LINKEDIT_FILEOFF : LINKEDIT_FILEOFF + len(linkedit)] = linkedit
        return bytes(image)

    def build_binary(self) -> MachoBinary:
        return MachoParser.parse(self.build())


class ObjcBuilder:
    """Lays out Objective-C runtime structures in the sections of a MachoBuilder"""

    def __init__(self, builder: Optional[MachoBuilder] = None) -> None:
        self.builder = builder or MachoBuilder()

    def method_list(self, methods: Sequence[Tuple[str, str, int]], entsize: int = 24) -> int:
        """An absolute method_list_t of (selector, type encoding, implementation)"""
        if not methods:
            return 0
        entries = b""
        for name, types, imp in methods:
            name_ptr = self.builder.add_string(name, "__objc_methname")
            types_ptr = self.builder.add_string(types, "__objc_methtype")
            entries += struct.pack("<QQQ", name_ptr, types_ptr, imp).ljust(entsize, b"\x00")
        return self.builder.add_data("__objc_const", struct.pack("<II", entsize, len(methods)) + entries)

    def relative_method_list(self, methods: Sequence[Tuple[str, str, int]]) -> int:
        """A method_list_t whose entries are 32-bit offsets. Each name offset leads to a selref."""
        selrefs = [self.selref(name) for name, _, _ in methods]
        types_ptrs = [self.builder.add_string(types, "__objc_methtype") for _, types, _ in methods]

        list_address = self.builder.add_data("__objc_const", b"\x00" * (8 + 12 * len(methods)))
        contents = struct.pack("<II", METHOD_LIST_IS_RELATIVE | 12, len(methods))
        for idx, (_, _, imp) in enumerate(methods):
            entry_address = list_address + 8 + 12 * idx
            imp_offset = imp - (entry_address + 8) if imp else 0
            contents += struct.pack(
                "<iii", selrefs[idx] - entry_address, types_ptrs[idx] - (entry_address + 4), imp_offset
            )
        self.builder.overwrite("__objc_const", list_address, contents)
        return list_address

    def property_list(self, properties: Sequence[Tuple[str, str]]) -> int:
        if not properties:
            return 0
        entries = b""
        for name, attributes in properties:
            entries += struct.pack("<QQ", self.builder.add_string(name), self.builder.add_string(attributes))
        return self.builder.add_data("__objc_const", struct.pack("<II", 16, len(properties)) + entries)

    def ivar_list(self, ivars: Sequence[Tuple[str, str, int, int, int]]) -> int:
        """An ivar_list_t of (name, type encoding, offset, size, raw alignment)"""
        if not ivars:
            return 0
        entries = b""
        for name, type_encoding, offset, size, alignment_raw in ivars:
            offset_ptr = self.builder.add_pointer("__objc_ivar", offset)
            entries += struct.pack(
                "<QQQII",
                offset_ptr,
                self.builder.add_string(name, "__objc_methname"),
                self.builder.add_string(type_encoding, "__objc_methtype"),
                alignment_raw,
                size,
            )
        return self.builder.add_data("__objc_const", struct.pack("<II", 32, len(ivars)) + entries)

    def protocol_list(self, protocol_addresses: Sequence[int]) -> int:
        if not protocol_addresses:
            return 0
        contents = struct.pack("<Q", len(protocol_addresses))
        contents += b"".join(struct.pack("<Q", x) for x in protocol_addresses)
        return self.builder.add_data("__objc_const", contents)

    def protocol(
        self,
        name: str,
        base_protocols: Sequence[int] = (),
        instance_methods: Sequence[Tuple[str, str, int]] = (),
        class_methods: Sequence[Tuple[str, str, int]] = (),
        optional_instance_methods: Sequence[Tuple[str, str, int]] = (),
        properties: Sequence[Tuple[str, str]] = (),
        class_properties: Optional[Sequence[Tuple[str, str]]] = None,
        listed: bool = True,
    ) -> int:
        fields = struct.pack(
            "<8Q",
            0,
            self.builder.add_string(name, "__objc_classname"),
            self.protocol_list(base_protocols),
            self.method_list(instance_methods),
            self.method_list(class_methods),
            self.method_list(optional_instance_methods),
            0,
            self.property_list(properties),
        )
        if class_properties is None:
            protocol_data = fields + struct.pack("<II", 0x48, 0)
        else:
            # extended_method_types, demangled_name, class_properties
            tail = struct.pack("<QQQ", 0, 0, self.property_list(class_properties))
            protocol_data = fields + struct.pack("<II", 0x60, 0) + tail
        protocol_address = self.builder.add_data("__data", protocol_data)
        if listed:
            self.builder.add_pointer("__objc_protolist", protocol_address)
        return protocol_address

    def class_ro(
        self,
        name: str,
        flags: int = 0,
        methods: int = 0,
        protocols: int = 0,
        ivars: int = 0,
        properties: int = 0,
    ) -> int:
        name_ptr = self.builder.add_string(name, "__objc_classname") if name else 0
        contents = struct.pack("<IIII", flags, 8, 8, 0)
        contents += struct.pack("<7Q", 0, name_ptr, methods, protocols, ivars, 0, properties)
        return self.builder.add_data("__objc_const", contents)

    def objc_class(
        self,
        name: str,
        superclass: int = 0,
        instance_methods: Sequence[Tuple[str, str, int]] = (),
        class_methods: Sequence[Tuple[str, str, int]] = (),
        ivars: Sequence[Tuple[str, str, int, int, int]] = (),
        properties: Sequence[Tuple[str, str]] = (),
        class_properties: Sequence[Tuple[str, str]] = (),
        protocols: Sequence[int] = (),
        is_swift: bool = False,
        relative_methods: bool = False,
        listed: bool = True,
    ) -> int:
        """Write a class_t, its metaclass and both class_ro_t's. Returns the address of the class_t."""
        make_method_list = self.relative_method_list if relative_methods else self.method_list
        meta_ro = self.class_ro(
            name, RO_META, make_method_list(class_methods), properties=self.property_list(class_properties)
        )
        metaclass = self.builder.add_data("__objc_data", struct.pack("<5Q", 0, 0, 0, 0, meta_ro))

        instance_ro = self.class_ro(
            name,
            methods=make_method_list(instance_methods),
            protocols=self.protocol_list(protocols),
            ivars=self.ivar_list(ivars),
            properties=self.property_list(properties),
        )
        data_bits = FAST_IS_SWIFT_STABLE if is_swift else 0
        class_address = self.builder.add_data(
            "__objc_data", struct.pack("<5Q", metaclass, superclass, 0, 0, instance_ro | data_bits)
        )
        if listed:
            self.builder.add_pointer("__objc_classlist", class_address)
        return class_address

    def list_class(self, class_address: int) -> None:
        self.builder.add_pointer("__objc_classlist", class_address)

    def category(
        self,
        name: str,
        target_class: int,
        instance_methods: Sequence[Tuple[str, str, int]] = (),
        class_methods: Sequence[Tuple[str, str, int]] = (),
        protocols: Sequence[int] = (),
        properties: Sequence[Tuple[str, str]] = (),
    ) -> int:
        contents = struct.pack(
            "<6Q",
            self.builder.add_string(name, "__objc_classname"),
            target_class,
            self.method_list(instance_methods),
            self.method_list(class_methods),
            self.protocol_list(protocols),
            self.property_list(properties),
        )
        category_address = self.builder.add_data("__objc_const", contents)
        self.builder.add_pointer("__objc_catlist", category_address)
        return category_address

    def selref(self, selector: str) -> int:
        return self.builder.add_pointer("__objc_selrefs", self.builder.add_string(selector, "__objc_methname"))

    def build_binary(self) -> MachoBinary:
        return self.builder.build_binary()


class SwiftBuilder:
    """Lays out Swift type context descriptors, and the __swift5_types entries referring to them"""

    def __init__(self, builder: Optional[MachoBuilder] = None) -> None:
        self.builder = builder or MachoBuilder()

    def type_descriptor(self, flags: int, mangled_name: Optional[str] = None, name_address: int = 0) -> int:
        """A descriptor of flags, parent, name, access function and fields. Returns the descriptor's address."""
        if mangled_name is not None:
            name_address = self.builder.add_string(mangled_name)
        descriptor_address = self.builder.add_data("__constg_swiftt", b"\x00" * 20, alignment=4)
        # The name offset is relative to the name field, 8 bytes into the descriptor
        name_offset = name_address - (descriptor_address + 8) if name_address else 0
        self.builder.overwrite(
            "__constg_swiftt", descriptor_address, struct.pack("<IiiiI", flags, 0, name_offset, 0, 0)
        )
        return descriptor_address

    def list_type(self, descriptor_address: int, indirect: bool = False) -> int:
        entry_address = self.builder.add_data("__swift5_types", b"\x00" * 4, alignment=4)
        if not descriptor_address:
            return entry_address
        if indirect:
            target = self.builder.add_pointer("__data", descriptor_address)
            entry = (target - entry_address) | 1
        else:
            entry = descriptor_address - entry_address
        self.builder.overwrite("__swift5_types", entry_address, struct.pack("<i", entry))
        return entry_address

    def build_binary(self) -> MachoBinary:
        return self.builder.build_binary()
