from .errors import (
    MachoError,
    InvalidFormatError,
    FileCorruptError,
    OutOfBoundsError,
    InvalidStringError,
    AddressResolutionError,
    SectionNotFoundError,
    NoMetadataFoundError,
    LoadCommandMissingError,
    OpcodeInvalidError,
    ULEBDecodeError,
    SLEBDecodeError,
    TrieWalkOutOfBoundsError,
    InvalidExportInfoError,
    TypeDecodingError,
)

from .byte_region import ByteRegion

from .leb128 import (
    OpcodeStream,
    read_uleb128, read_sleb128,
    encode_uleb128, encode_sleb128,
)

from .macho_definitions import (
    swap32,
    CPU_TYPE,
    NLIST_NTYPE,
    NTYPE_VALUES,
    HEADER_FLAGS,
    StaticFilePointer, VirtualMemoryPointer,

    MachArch,
    MachoFileType,
    MachoBuildVersionPlatform,
    MachoBuildTool,
    SwiftContextDescriptorKind,
)

from .macho_structs import (
    MachoStructure,

    MachoHeaderStruct,
    MachoFatArchStruct,
    MachoFatHeaderStruct,
    MachoSectionRawStruct,
    MachoSegmentCommandStruct,
    MachoEncryptionInfoStruct,

    DylibCommandStruct,
    MachoLoadCommandStruct,
    MachoSymtabCommandStruct,
    MachoDysymtabCommandStruct,
    MachoDyldInfoCommandStruct,
    MachoLinkeditDataCommandStruct,
    MachoNlistStruct,
)

from .macho_load_commands import (
    MachoLoadCommands
)

from .macho_binary import (
    MachoBinary,
    MachoSymbol,
    MachoSection,
    MachoSegment,
    MachoDylibCommand,
    MachoUnknownLoadCommand,
    DynamicSymbolTableInfo,
)

from .macho_parse import MachoParser

from .function_starts_parser import FunctionStartsParser

from .macho_string_scanner import (
    FoundString,
    MachoStringScanner,
)

from .macho_string_table_helper import (
    MachoStringTableEntry,
    MachoStringTableHelper,
)

from .dyld_info_parser import (
    BindOpcode,
    RebaseOpcode,
    DyldInfoParser,
    DyldBoundSymbol,
    ParsedDyldInfo,
    BindOperation,
    RebaseOperation,
    ExportedSymbol,
    ExportSymbolKind,
)

from .objc_runtime_data_parser import (
    ObjcIvar,
    ObjcClass,
    ObjcMethod,
    ObjcSelref,
    ObjcCategory,
    ObjcMetadata,
    ObjcProperty,
    ObjcProtocol,
    ObjcRuntimeDataParser,
)

from .swift_metadata_parser import (
    SwiftType,
    SwiftMetadataParser,
)
