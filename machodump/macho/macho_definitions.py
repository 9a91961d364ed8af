import struct
from ctypes import Structure, Union, c_char, c_int32, c_uint8, c_uint16, c_uint32, c_uint64
from enum import IntEnum
from typing import TypeVar

_BasePointerT = TypeVar("_BasePointerT", bound="_BasePointer")


class _BasePointer(int):
    def __add__(self: _BasePointerT, other: int) -> _BasePointerT:
        return type(self)(super().__add__(other))

    def __sub__(self: _BasePointerT, other: int) -> _BasePointerT:
        return self.__class__(super().__sub__(other))

    def __mul__(self: _BasePointerT, other: int) -> _BasePointerT:
        return self.__class__(super().__mul__(other))

    def __floordiv__(self: _BasePointerT, other: int) -> _BasePointerT:
        return self.__class__(super().__floordiv__(other))

    def __and__(self: _BasePointerT, other: int) -> _BasePointerT:
        return self.__class__(super().__and__(other))

    def __str__(self) -> str:
        return hex(self)

    def __repr__(self) -> str:
        return hex(self)


class StaticFilePointer(_BasePointer):
    """A pointer analogous to a file offset within the Mach-O slice
    """

    def __str__(self) -> str:
        return f"Phys[{super().__str__()}]"

    def __repr__(self) -> str:
        return f"Phys[{super().__repr__()}]"


class VirtualMemoryPointer(_BasePointer):
    """A pointer representing a virtual memory location within the Mach-O
    """


def swap32(i: int) -> int:
    """Reverse the bytes of a little-endian integer representation ie (3) -> 50331648"""
    return struct.unpack("<I", struct.pack(">I", i))[0]


class MachArch(IntEnum):
    MH_MAGIC = 0xFEEDFACE
    MH_CIGAM = 0xCEFAEDFE
    MH_MAGIC_64 = 0xFEEDFACF
    MH_CIGAM_64 = 0xCFFAEDFE

    FAT_MAGIC = 0xCAFEBABE
    FAT_CIGAM = 0xBEBAFECA

    MH_CPU_ARCH_ABI64 = 0x01000000
    MH_CPU_TYPE_X86 = 7
    MH_CPU_TYPE_X86_64 = MH_CPU_TYPE_X86 | MH_CPU_ARCH_ABI64
    MH_CPU_TYPE_ARM = 12
    MH_CPU_TYPE_ARM64 = MH_CPU_TYPE_ARM | MH_CPU_ARCH_ABI64


class CPU_TYPE(IntEnum):
    ARM64 = 0
    X86_64 = 1
    UNKNOWN = 2


class MachoFileType(IntEnum):
    MH_OBJECT = 1  # relocatable object file
    MH_EXECUTE = 2  # demand paged executable file
    MH_FVMLIB = 3  # fixed VM shared library file
    MH_CORE = 4  # core file
    MH_PRELOAD = 5  # preloaded executable file
    MH_DYLIB = 6  # dynamically bound shared library
    MH_DYLINKER = 7  # dynamic link editor
    MH_BUNDLE = 8  # dynamically bound bundle file
    MH_DYLIB_STUB = 9  # shared library stub for static linking only, no section contents
    MH_DSYM = 10  # companion file with only debug sections
    MH_KEXT_BUNDLE = 11  # x86_64 kext
    MH_FILESET = 12  # set of Mach-Os


class HEADER_FLAGS(IntEnum):
    NOUNDEFS = 0x1
    INCRLINK = 0x2
    DYLDLINK = 0x4
    BINDATLOAD = 0x8
    PREBOUND = 0x10
    SPLIT_SEGS = 0x20
    LAZY_INIT = 0x40
    TWOLEVEL = 0x80
    FORCE_FLAT = 0x100
    NOMULTIDEFS = 0x200
    NOFIXPREBINDING = 0x400
    PREBINDABLE = 0x800
    ALLMODSBOUND = 0x1000
    SUBSECTIONS_VIA_SYMBOLS = 0x2000
    CANONICAL = 0x4000
    WEAK_DEFINES = 0x8000
    BINDS_TO_WEAK = 0x10000
    ALLOW_STACK_EXECUTION = 0x20000
    ROOT_SAFE = 0x40000
    SETUID_SAFE = 0x80000
    NO_REEXPORTED_DYLIBS = 0x100000
    PIE = 0x200000
    DEAD_STRIPPABLE_DYLIB = 0x400000
    HAS_TLV_DESCRIPTORS = 0x800000
    NO_HEAP_EXECUTION = 0x1000000
    APP_EXTENSION_SAFE = 0x2000000


class NLIST_NTYPE(IntEnum):
    N_STAB = 0xE0  # symbolic debugging entry
    N_PEXT = 0x10  # private external symbol bit
    N_TYPE = 0x0E  # mask for type bits
    N_EXT = 0x01  # external symbol bit


class NTYPE_VALUES(IntEnum):
    N_UNDF = 0x0  # undefined, n_sect == NO_SECT
    N_ABS = 0x2  # absolute, n_sect == NO_SECT
    N_SECT = 0xE  # defined in section n_sect
    N_PBUD = 0xC  # prebound undefined (defined in a dylib)
    N_INDR = 0xA  # indirect


class MachoBuildVersionPlatform(IntEnum):
    MACOS = 1
    IOS = 2
    TVOS = 3
    WATCHOS = 4
    BRIDGEOS = 5
    MACCATALYST = 6
    IOSSIMULATOR = 7
    TVOSSIMULATOR = 8
    WATCHOSSIMULATOR = 9
    DRIVERKIT = 10


class MachoBuildTool(IntEnum):
    CLANG = 1
    SWIFT = 2
    LD = 3


class MachoHeader64(Structure):
    _fields_ = [
        ("magic", c_uint32),
        ("cputype", c_uint32),
        ("cpusubtype", c_uint32),
        ("filetype", c_uint32),
        ("ncmds", c_uint32),
        ("sizeofcmds", c_uint32),
        ("flags", c_uint32),
        ("reserved", c_uint32),
    ]


class MachoLoadCommand(Structure):
    _fields_ = [("cmd", c_uint32), ("cmdsize", c_uint32)]


class MachoSegmentCommand64(Structure):
    _fields_ = [
        *MachoLoadCommand._fields_,
        ("segname", c_char * 16),
        ("vmaddr", c_uint64),
        ("vmsize", c_uint64),
        ("fileoff", c_uint64),
        ("filesize", c_uint64),
        ("maxprot", c_uint32),
        ("initprot", c_uint32),
        ("nsects", c_uint32),
        ("flags", c_uint32),
    ]


class MachoSection64Raw(Structure):
    _fields_ = [
        ("sectname", c_char * 16),
        ("segname", c_char * 16),
        ("addr", c_uint64),
        ("size", c_uint64),
        ("offset", c_uint32),
        ("align", c_uint32),
        ("reloff", c_uint32),
        ("nreloc", c_uint32),
        ("flags", c_uint32),
        ("reserved1", c_uint32),
        ("reserved2", c_uint32),
        ("reserved3", c_uint32),
    ]


class MachoDysymtabCommand(Structure):
    """Python representation of struct dysymtab_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [
        *MachoLoadCommand._fields_,
        ("ilocalsym", c_uint32),
        ("nlocalsym", c_uint32),
        ("iextdefsym", c_uint32),
        ("nextdefsym", c_uint32),
        ("iundefsym", c_uint32),
        ("nundefsym", c_uint32),
        ("tocoff", c_uint32),
        ("ntoc", c_uint32),
        ("modtaboff", c_uint32),
        ("nmodtab", c_uint32),
        ("extrefsymoff", c_uint32),
        ("nextrefsyms", c_uint32),
        ("indirectsymoff", c_uint32),
        ("nindirectsyms", c_uint32),
        ("extreloff", c_uint32),
        ("nextrel", c_uint32),
        ("locreloff", c_uint32),
        ("nlocrel", c_uint32),
    ]


class MachoSymtabCommand(Structure):
    """Python representation of struct symtab_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [
        *MachoLoadCommand._fields_,
        ("symoff", c_uint32),
        ("nsyms", c_uint32),
        ("stroff", c_uint32),
        ("strsize", c_uint32),
    ]


class MachoDyldInfoCommand(Structure):
    """Python representation of struct dyld_info_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [
        *MachoLoadCommand._fields_,
        ("rebase_off", c_uint32),
        ("rebase_size", c_uint32),
        ("bind_off", c_uint32),
        ("bind_size", c_uint32),
        ("weak_bind_off", c_uint32),
        ("weak_bind_size", c_uint32),
        ("lazy_bind_off", c_uint32),
        ("lazy_bind_size", c_uint32),
        ("export_off", c_uint32),
        ("export_size", c_uint32),
    ]


class MachoLinkeditDataCommand(Structure):
    """Python representation of struct linkedit_data_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [*MachoLoadCommand._fields_, ("dataoff", c_uint32), ("datasize", c_uint32)]


class MachoBuildVersionCommand(Structure):
    """Python representation of struct build_version_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [
        *MachoLoadCommand._fields_,
        ("platform", c_uint32),
        ("minos", c_uint32),
        ("sdk", c_uint32),
        ("ntools", c_uint32),
    ]


class MachoBuildToolVersion(Structure):
    """Python representation of struct build_tool_version

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [
        ("tool", c_uint32),
        ("version", c_uint32),
    ]


class MachoVersionMinCommand(Structure):
    """Python representation of struct version_min_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [*MachoLoadCommand._fields_, ("version", c_uint32), ("sdk", c_uint32)]


class MachoSourceVersionCommand(Structure):
    """Python representation of struct source_version_command. The version is packed as A.B.C.D.E in 24.10.10.10.10 bits
    """

    _fields_ = [*MachoLoadCommand._fields_, ("version", c_uint64)]


class MachoEntryPointCommand(Structure):
    """Python representation of struct entry_point_command (LC_MAIN)"""

    _fields_ = [*MachoLoadCommand._fields_, ("entryoff", c_uint64), ("stacksize", c_uint64)]


class MachoUUIDCommand(Structure):
    _fields_ = [*MachoLoadCommand._fields_, ("uuid", c_uint8 * 16)]


class MachoNlistUn(Union):
    """Python representation of union n_un

    Definition found in <mach-o/nlist.h>
    """

    _fields_ = [("n_strx", c_uint32)]


class MachoNlist64(Structure):
    """Python representation of struct nlist_64

    Definition found in <mach-o/nlist.h>
    """

    _fields_ = [
        ("n_un", MachoNlistUn),
        ("n_type", c_uint8),
        ("n_sect", c_uint8),
        ("n_desc", c_uint16),
        ("n_value", c_uint64),
    ]


class MachoEncryptionInfo64Command(Structure):
    """Python representation of a struct encryption_info_command_64

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [
        *MachoLoadCommand._fields_,
        ("cryptoff", c_uint32),
        ("cryptsize", c_uint32),
        ("cryptid", c_uint32),
        ("pad", c_uint32),
    ]


class MachoFatHeader(Structure):
    """Python representation of a struct fat_header

    Definition found in <mach-o/fat.h>
    """

    _fields_ = [("magic", c_uint32), ("nfat_arch", c_uint32)]


class MachoFatArch(Structure):
    """Python representation of a struct fat_arch

    Definition found in <mach-o/fat.h>
    """

    _fields_ = [
        ("cputype", c_uint32),
        ("cpusubtype", c_uint32),
        ("offset", c_uint32),
        ("size", c_uint32),
        ("align", c_uint32),
    ]


class LcStr(Structure):
    """union lc_str. Within a file, only the offset member (relative to the start of the load command) is meaningful
    """

    _fields_ = [("offset", c_uint32)]


class DylibStruct(Structure):
    _fields_ = [
        ("name", LcStr),
        ("timestamp", c_uint32),
        ("current_version", c_uint32),
        ("compatibility_version", c_uint32),
    ]


class DylibCommand(Structure):
    _fields_ = [*MachoLoadCommand._fields_, ("dylib", DylibStruct)]


class DylinkerCommand(Structure):
    _fields_ = [*MachoLoadCommand._fields_, ("name", LcStr)]


# Some of these can be found at
# https://opensource.apple.com/source/objc4/objc4-818.2/runtime/objc-runtime-new.h.auto.html


class ObjcClassDataBits(IntEnum):
    """Flag bits stored in the low bits of class_t.data"""

    FAST_IS_SWIFT_LEGACY = 1 << 0
    FAST_IS_SWIFT_STABLE = 1 << 1
    FAST_FLAGS_MASK = 0x3


class ObjcListFlags(IntEnum):
    # Method lists built for iOS 14+ may hold 32-bit relative offsets rather than absolute pointers
    METHOD_LIST_IS_RELATIVE = 1 << 31
    # The low 2 bits and the high 16 bits of entsize_and_flags are flags, not part of the entry size
    ENTSIZE_MASK = 0x0000FFFC


class ObjcProtocolRaw64(Structure):
    _fields_ = [
        ("isa", c_uint64),
        ("name", c_uint64),
        ("protocols", c_uint64),
        ("required_instance_methods", c_uint64),
        ("required_class_methods", c_uint64),
        ("optional_instance_methods", c_uint64),
        ("optional_class_methods", c_uint64),
        ("instance_properties", c_uint64),
        ("size", c_uint32),
        ("flags", c_uint32),
    ]


class ObjcCategoryRaw64(Structure):
    _fields_ = [
        ("name", c_uint64),
        ("base_class", c_uint64),
        ("instance_methods", c_uint64),
        ("class_methods", c_uint64),
        ("base_protocols", c_uint64),
        ("instance_properties", c_uint64),
    ]


class ObjcClassRaw64(Structure):
    _fields_ = [
        ("metaclass", c_uint64),
        ("superclass", c_uint64),
        ("cache", c_uint64),
        ("vtable", c_uint64),
        ("data", c_uint64),
    ]


class ObjcDataRaw64(Structure):
    """struct class_ro_t"""

    _fields_ = [
        ("flags", c_uint32),
        ("instance_start", c_uint32),
        ("instance_size", c_uint32),
        ("reserved", c_uint32),
        ("ivar_layout", c_uint64),
        ("name", c_uint64),
        ("base_methods", c_uint64),
        ("base_protocols", c_uint64),
        ("ivars", c_uint64),
        ("weak_ivar_layout", c_uint64),
        ("base_properties", c_uint64),
    ]


class ObjcEntryListHeader(Structure):
    """Header of method_list_t, ivar_list_t and property_list_t. Entries follow directly after the header."""

    _fields_ = [("entsize_and_flags", c_uint32), ("count", c_uint32)]


class ObjcProtocolList64(Structure):
    _fields_ = [("count", c_uint64)]


class ObjcMethod64(Structure):
    _fields_ = [("name", c_uint64), ("signature", c_uint64), ("implementation", c_uint64)]


class ObjcMethodRelativeData(Structure):
    # Keep the field names the same so that this can be interacted with in the same way as ObjcMethod64
    # In reality, these fields are: selref_off, signature_off, implementation_off
    # Note that the `name` field points to a selref that must be dereferenced to retrieve the name.
    _fields_ = [("name", c_int32), ("signature", c_int32), ("implementation", c_int32)]


class ObjcIvar64(Structure):
    _fields_ = [
        ("offset_ptr", c_uint64),
        ("name", c_uint64),
        ("type", c_uint64),
        ("alignment_raw", c_uint32),
        ("size", c_uint32),
    ]


class ObjcProperty64(Structure):
    _fields_ = [("name", c_uint64), ("attributes", c_uint64)]


# https://github.com/apple/swift/blob/main/include/swift/ABI/MetadataValues.h


class SwiftContextDescriptorKind(IntEnum):
    MODULE = 0
    EXTENSION = 1
    ANONYMOUS = 2
    PROTOCOL = 3
    OPAQUE_TYPE = 4
    CLASS = 16
    STRUCT = 17
    ENUM = 18


class SwiftDescriptorFlags(IntEnum):
    # The low 5 bits of ContextDescriptorFlags hold the ContextDescriptorKind
    KIND_MASK = 0x1F
    # The low 2 bits of a __swift5_types entry hold its TypeReferenceKind
    TYPE_REFERENCE_KIND_MASK = 0x3
    INDIRECT_TYPE_DESCRIPTOR = 0x1


class SwiftTypeContextDescriptor(Structure):
    """The prefix shared by class, struct and enum descriptors. Every field after flags is a 32-bit offset relative to
    the address of the field itself.
    """

    _fields_ = [
        ("flags", c_uint32),
        ("parent", c_int32),
        ("name", c_int32),
        ("access_function", c_int32),
        ("fields", c_int32),
    ]
