from ctypes import Structure, sizeof
from typing import TYPE_CHECKING, Any, Optional, Type, TypeVar

from .byte_region import ByteRegion
from .macho_definitions import (
    DylibCommand,
    DylinkerCommand,
    MachoBuildToolVersion,
    MachoBuildVersionCommand,
    MachoDyldInfoCommand,
    MachoDysymtabCommand,
    MachoEncryptionInfo64Command,
    MachoEntryPointCommand,
    MachoFatArch,
    MachoFatHeader,
    MachoHeader64,
    MachoLinkeditDataCommand,
    MachoLoadCommand,
    MachoNlist64,
    MachoSection64Raw,
    MachoSegmentCommand64,
    MachoSourceVersionCommand,
    MachoSymtabCommand,
    MachoUUIDCommand,
    MachoVersionMinCommand,
    ObjcCategoryRaw64,
    ObjcClassRaw64,
    ObjcDataRaw64,
    ObjcEntryListHeader,
    ObjcIvar64,
    ObjcMethod64,
    ObjcMethodRelativeData,
    ObjcProperty64,
    ObjcProtocolList64,
    ObjcProtocolRaw64,
    SwiftTypeContextDescriptor,
)

MachoStructureT = TypeVar("MachoStructureT", bound="MachoStructure")


class MachoStructure:
    """A decoded on-disk structure, plus the location it was read from.

    Each subclass names the ctypes layout it is backed by in _STRUCT. The fields of the layout are copied onto the
    instance as plain attributes, so callers never hold a reference into the file's buffer.
    """

    _STRUCT: Optional[Type[Structure]] = None

    @classmethod
    def get_backing_data_layout(cls) -> Type[Structure]:
        if cls._STRUCT is None:
            raise ValueError(f"{cls.__name__} does not define a backing struct")
        return cls._STRUCT

    @classmethod
    def struct_size(cls) -> int:
        return sizeof(cls.get_backing_data_layout())

    @classmethod
    def read(
        cls: Type[MachoStructureT],
        region: ByteRegion,
        offset: int,
        backing_layout: Optional[Type[Structure]] = None,
    ) -> MachoStructureT:
        """Read a structure from a region. Raises OutOfBoundsError if the structure does not fit.

        Args:
            region: The region to read from
            offset: Offset of the structure within the region
            backing_layout: Override the layout named by the class. Used when one logical structure has several
                on-disk encodings, such as absolute and relative method entries.
        """
        layout = backing_layout or cls.get_backing_data_layout()
        struct = region.read(offset, layout)
        return cls(region.base_offset + offset, struct)

    def __init__(self, binary_offset: int, struct: Structure) -> None:
        for field_name, *_ in struct._fields_:
            # clone fields from struct to this class
            setattr(self, field_name, getattr(struct, field_name))

        # record size of underlying struct, for when traversing file by structs
        self.sizeof = sizeof(struct)
        # record the location in the binary this struct was parsed from
        self.binary_offset = binary_offset

    if TYPE_CHECKING:
        # Fields are assigned dynamically from the backing layout
        def __getattr__(self, key: str) -> Any:
            pass

    def __repr__(self) -> str:
        attributes = "\t".join([f"{x}: {getattr(self, x)}" for x in self.__dict__.keys()])
        return f"{self.__class__.__name__} ({attributes})"


class MachoFatHeaderStruct(MachoStructure):
    _STRUCT = MachoFatHeader


class MachoFatArchStruct(MachoStructure):
    _STRUCT = MachoFatArch


class MachoHeaderStruct(MachoStructure):
    _STRUCT = MachoHeader64


class MachoLoadCommandStruct(MachoStructure):
    _STRUCT = MachoLoadCommand


class MachoSegmentCommandStruct(MachoStructure):
    _STRUCT = MachoSegmentCommand64


class MachoSectionRawStruct(MachoStructure):
    _STRUCT = MachoSection64Raw


class MachoEncryptionInfoStruct(MachoStructure):
    _STRUCT = MachoEncryptionInfo64Command


class MachoNlistStruct(MachoStructure):
    _STRUCT = MachoNlist64


class MachoSymtabCommandStruct(MachoStructure):
    _STRUCT = MachoSymtabCommand


class MachoDysymtabCommandStruct(MachoStructure):
    _STRUCT = MachoDysymtabCommand


class MachoDyldInfoCommandStruct(MachoStructure):
    _STRUCT = MachoDyldInfoCommand


class MachoLinkeditDataCommandStruct(MachoStructure):
    _STRUCT = MachoLinkeditDataCommand


class MachoBuildVersionCommandStruct(MachoStructure):
    _STRUCT = MachoBuildVersionCommand


class MachoBuildToolVersionStruct(MachoStructure):
    _STRUCT = MachoBuildToolVersion


class MachoVersionMinCommandStruct(MachoStructure):
    _STRUCT = MachoVersionMinCommand


class MachoSourceVersionCommandStruct(MachoStructure):
    _STRUCT = MachoSourceVersionCommand


class MachoEntryPointCommandStruct(MachoStructure):
    _STRUCT = MachoEntryPointCommand


class MachoUUIDCommandStruct(MachoStructure):
    _STRUCT = MachoUUIDCommand


class DylibCommandStruct(MachoStructure):
    _STRUCT = DylibCommand


class DylinkerCommandStruct(MachoStructure):
    _STRUCT = DylinkerCommand


class ObjcClassRawStruct(MachoStructure):
    _STRUCT = ObjcClassRaw64


class ObjcDataRawStruct(MachoStructure):
    _STRUCT = ObjcDataRaw64


class ObjcCategoryRawStruct(MachoStructure):
    _STRUCT = ObjcCategoryRaw64


class ObjcProtocolRawStruct(MachoStructure):
    _STRUCT = ObjcProtocolRaw64


class ObjcProtocolListStruct(MachoStructure):
    _STRUCT = ObjcProtocolList64


class ObjcEntryListHeaderStruct(MachoStructure):
    _STRUCT = ObjcEntryListHeader


class ObjcMethodStruct(MachoStructure):
    _STRUCT = ObjcMethod64
    _RELATIVE_STRUCT = ObjcMethodRelativeData


class ObjcIvarStruct(MachoStructure):
    _STRUCT = ObjcIvar64


class ObjcPropertyStruct(MachoStructure):
    _STRUCT = ObjcProperty64


class SwiftTypeContextDescriptorStruct(MachoStructure):
    _STRUCT = SwiftTypeContextDescriptor
