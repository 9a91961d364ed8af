from ctypes import c_int32, sizeof
from typing import List, Optional

from machodump.logger import machodump_logger

from .errors import MachoError
from .macho_binary import MachoBinary
from .macho_definitions import (
    SwiftContextDescriptorKind,
    SwiftDescriptorFlags,
    SwiftTypeContextDescriptor,
    VirtualMemoryPointer,
)
from .macho_structs import SwiftTypeContextDescriptorStruct
from .objc_runtime_data_parser import Demangler

logger = machodump_logger.getChild("swift_metadata_parser")


class SwiftType:
    __slots__ = ["mangled_name", "demangled_name", "kind", "vm_address"]

    def __init__(
        self,
        mangled_name: str,
        demangled_name: str,
        kind: SwiftContextDescriptorKind,
        vm_address: VirtualMemoryPointer,
    ) -> None:
        self.mangled_name = mangled_name
        self.demangled_name = demangled_name
        self.kind = kind
        # The address of the type context descriptor
        self.vm_address = vm_address

    def __repr__(self) -> str:
        return f"<SwiftType {self.kind.name.lower()} {self.demangled_name} @ {self.vm_address}>"


class SwiftMetadataParser:
    """Recover the nominal types a binary declares from its __TEXT,__swift5_types section.

    Each entry of __swift5_types is a 32-bit offset, relative to the entry's own address, to a type context descriptor.
    Class, struct and enum descriptors begin with their flags, then a relative pointer to the parent context, then a
    relative pointer to the mangled name of the type. Other descriptor kinds are skipped.
    """

    TYPES_SECTION = "__swift5_types"

    NOMINAL_TYPE_KINDS = [
        SwiftContextDescriptorKind.CLASS,
        SwiftContextDescriptorKind.STRUCT,
        SwiftContextDescriptorKind.ENUM,
    ]

    def __init__(self, binary: MachoBinary, demangler: Optional[Demangler] = None) -> None:
        self.binary = binary
        self.demangler = demangler

    def extract(self) -> List[SwiftType]:
        section = self.binary.section_with_name(self.TYPES_SECTION, "__TEXT")
        if not section:
            logger.debug(f"{self.binary} has no {self.TYPES_SECTION} section")
            return []

        try:
            section_region = self.binary.region.slice(section.offset, section.size)
        except MachoError as e:
            logger.warning(f"Failed to read the contents of {self.TYPES_SECTION}: {e}")
            return []

        swift_types: List[SwiftType] = []
        entry_size = sizeof(c_int32)
        # A trailing partial entry is ignored
        for entry_offset in range(0, len(section_region) - entry_size + 1, entry_size):
            entry_address = VirtualMemoryPointer(section.address + entry_offset)
            try:
                descriptor_address = self._resolve_type_reference(
                    entry_address, section_region.read_word(entry_offset, c_int32)
                )
                if descriptor_address is None:
                    continue
                swift_type = self._parse_type_descriptor(descriptor_address)
            except MachoError as e:
                logger.warning(f"Failed to read Swift type descriptor referenced @ {entry_address}: {e}")
                continue

            if swift_type:
                swift_types.append(swift_type)

        logger.debug(f"Found {len(swift_types)} Swift types in {self.TYPES_SECTION}")
        return swift_types

    def _resolve_type_reference(
        self, entry_address: VirtualMemoryPointer, relative_offset: int
    ) -> Optional[VirtualMemoryPointer]:
        """Given a __swift5_types entry, return the address of the descriptor it refers to, or None for a null entry"""
        reference_kind = relative_offset & SwiftDescriptorFlags.TYPE_REFERENCE_KIND_MASK
        relative_offset &= ~SwiftDescriptorFlags.TYPE_REFERENCE_KIND_MASK
        if not relative_offset:
            return None

        target_address = VirtualMemoryPointer(entry_address + relative_offset)
        if reference_kind == SwiftDescriptorFlags.INDIRECT_TYPE_DESCRIPTOR:
            # The entry leads to a pointer which holds the descriptor's address
            return self.binary.read_pointer_at_address(target_address)
        return target_address

    def _parse_type_descriptor(self, descriptor_address: VirtualMemoryPointer) -> Optional[SwiftType]:
        descriptor = self.binary.read_struct(descriptor_address, SwiftTypeContextDescriptorStruct, virtual=True)
        kind_value = descriptor.flags & SwiftDescriptorFlags.KIND_MASK
        if kind_value not in [kind.value for kind in self.NOMINAL_TYPE_KINDS]:
            logger.debug(f"Skipping descriptor @ {descriptor_address} of kind {kind_value}")
            return None
        kind = SwiftContextDescriptorKind(kind_value)
        kind_label = kind.name.title()

        if not descriptor.name:
            placeholder = f"<{kind_label}_Anonymous>"
            return SwiftType(placeholder, placeholder, kind, descriptor_address)

        name_address = descriptor_address + SwiftTypeContextDescriptor.name.offset + descriptor.name
        try:
            mangled_name = self.binary.read_string_at_address(name_address)
        except MachoError as e:
            logger.warning(f"Failed to read the mangled name of Swift type @ {descriptor_address}: {e}")
            placeholder = f"<{kind_label}_NameReadError>"
            return SwiftType(placeholder, placeholder, kind, descriptor_address)

        return SwiftType(mangled_name, self._demangle(mangled_name), kind, descriptor_address)

    def _demangle(self, name: str) -> str:
        if not self.demangler:
            return name
        return self.demangler(name)
