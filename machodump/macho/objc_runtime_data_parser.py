import copy
from ctypes import c_int32, c_uint64, sizeof
from typing import Callable, Dict, List, Optional

from more_itertools import first_true

from machodump.logger import machodump_logger

from .errors import MachoError, NoMetadataFoundError, SectionNotFoundError
from .macho_binary import MachoBinary
from .macho_definitions import ObjcClassDataBits, ObjcListFlags, VirtualMemoryPointer
from .macho_structs import (
    ObjcCategoryRawStruct,
    ObjcClassRawStruct,
    ObjcDataRawStruct,
    ObjcEntryListHeaderStruct,
    ObjcIvarStruct,
    ObjcMethodStruct,
    ObjcPropertyStruct,
    ObjcProtocolListStruct,
    ObjcProtocolRawStruct,
)

logger = machodump_logger.getChild("objc_runtime_data_parser")

Demangler = Callable[[str], str]


class ObjcMethod:
    __slots__ = ["name", "type_encoding", "implementation", "is_class_method"]

    def __init__(
        self, name: str, type_encoding: str, implementation: VirtualMemoryPointer, is_class_method: bool
    ) -> None:
        self.name = name
        self.type_encoding = type_encoding
        self.implementation = implementation
        self.is_class_method = is_class_method

    def __str__(self) -> str:
        prefix = "+" if self.is_class_method else "-"
        imp_addr = "NaN"
        if self.implementation:
            imp_addr = hex(int(self.implementation))
        return f"<{prefix}[{self.name}] {self.type_encoding} at {imp_addr}>"

    __repr__ = __str__


class ObjcProperty:
    __slots__ = ["name", "attributes"]

    def __init__(self, name: str, attributes: str) -> None:
        self.name = name
        # Raw attribute string, ie 'T@"NSString",&,N,V_name'
        self.attributes = attributes

    def __str__(self) -> str:
        return f"<@property {self.name} {self.attributes}>"

    __repr__ = __str__


class ObjcIvar:
    __slots__ = ["name", "type_encoding", "offset", "size", "alignment"]

    def __init__(self, name: str, type_encoding: str, offset: int, size: int, alignment: int) -> None:
        self.name = name
        self.type_encoding = type_encoding
        self.offset = offset
        self.size = size
        self.alignment = alignment

    def __str__(self) -> str:
        return f"<@ivar {self.type_encoding} {self.name}, off @ {self.offset}>"

    __repr__ = __str__


class ObjcSelref:
    __slots__ = ["selector_name", "reference_address", "selector_address"]

    def __init__(
        self, selector_name: str, reference_address: VirtualMemoryPointer, selector_address: VirtualMemoryPointer
    ) -> None:
        self.selector_name = selector_name
        # The address of the __objc_selrefs slot
        self.reference_address = reference_address
        # The address of the selector literal the slot points to
        self.selector_address = selector_address

    def __repr__(self) -> str:
        return (
            f"<ObjcSelref source=0x{self.reference_address:x} dest=0x{self.selector_address:x}"
            f" sel={self.selector_name}>"
        )


class ObjcProtocol:
    __slots__ = [
        "name",
        "vm_address",
        "base_protocols",
        "instance_methods",
        "class_methods",
        "optional_instance_methods",
        "optional_class_methods",
        "instance_properties",
        "class_properties",
    ]

    def __init__(self, name: str, vm_address: VirtualMemoryPointer) -> None:
        self.name = name
        self.vm_address = vm_address
        self.base_protocols: List[str] = []
        self.instance_methods: List[ObjcMethod] = []
        self.class_methods: List[ObjcMethod] = []
        self.optional_instance_methods: List[ObjcMethod] = []
        self.optional_class_methods: List[ObjcMethod] = []
        self.instance_properties: List[ObjcProperty] = []
        self.class_properties: List[ObjcProperty] = []

    def __repr__(self) -> str:
        method_count = (
            len(self.instance_methods)
            + len(self.class_methods)
            + len(self.optional_instance_methods)
            + len(self.optional_class_methods)
        )
        return f"<@protocol {self.name} sel_count={method_count} base_protocols={self.base_protocols}>"


class ObjcClass:
    """A class implemented in the binary.

    The record is created in the first pass of ObjcRuntimeDataParser with only its name, address and Swift flag.
    Every other field is filled in by the second pass, and by merging the categories which target the class.
    """

    __slots__ = [
        "name",
        "vm_address",
        "is_swift_class",
        "superclass_name",
        "metaclass_vm_address",
        "instance_methods",
        "class_methods",
        "properties",
        "class_properties",
        "ivars",
        "protocols",
    ]

    def __init__(
        self,
        name: str,
        vm_address: VirtualMemoryPointer,
        superclass_name: Optional[str] = None,
        is_swift_class: bool = False,
    ) -> None:
        self.name = name
        self.vm_address = vm_address
        self.is_swift_class = is_swift_class
        self.superclass_name = superclass_name
        self.metaclass_vm_address: Optional[VirtualMemoryPointer] = None
        self.instance_methods: List[ObjcMethod] = []
        self.class_methods: List[ObjcMethod] = []
        # Instance properties
        self.properties: List[ObjcProperty] = []
        self.class_properties: List[ObjcProperty] = []
        self.ivars: List[ObjcIvar] = []
        # Names of adopted protocols
        self.protocols: List[str] = []

    @property
    def selectors(self) -> List[ObjcMethod]:
        return self.instance_methods + self.class_methods

    def __str__(self) -> str:
        return f"ObjcClass({self.name} : {self.superclass_name})"

    def __repr__(self) -> str:
        return (
            f"<@class {self.name} : {self.superclass_name}"
            f" sel_count={len(self.selectors)} ivar_count={len(self.ivars)} protocol_count={len(self.protocols)}>"
        )


class ObjcCategory:
    __slots__ = [
        "name",
        "class_name",
        "target_class_address",
        "instance_methods",
        "class_methods",
        "protocols",
        "instance_properties",
        "class_properties",
    ]

    def __init__(self, name: str, target_class_address: Optional[VirtualMemoryPointer]) -> None:
        self.name = name
        # Populated once the target class is resolved
        self.class_name = "<Resolving>"
        self.target_class_address = target_class_address
        self.instance_methods: List[ObjcMethod] = []
        self.class_methods: List[ObjcMethod] = []
        self.protocols: List[str] = []
        self.instance_properties: List[ObjcProperty] = []
        self.class_properties: List[ObjcProperty] = []

    @property
    def full_name(self) -> str:
        return f"{self.class_name} ({self.name})"

    def __str__(self) -> str:
        return f"ObjcCategory({self.full_name})"

    def __repr__(self) -> str:
        return (
            f"<@category {self.full_name} sel_count={len(self.instance_methods) + len(self.class_methods)}"
            f" protocol_count={len(self.protocols)}>"
        )


class ObjcMetadata:
    """The Objective-C classes, protocols, categories and selector references of a binary."""

    def __init__(self) -> None:
        self.classes: Dict[str, ObjcClass] = {}
        self.protocols: Dict[str, ObjcProtocol] = {}
        # Categories whose target class is not implemented in the binary
        self.categories: List[ObjcCategory] = []
        self.selector_references: List[ObjcSelref] = []

    def classes_for_rendering(self, include_ivars: bool = True) -> List[ObjcClass]:
        """The classes in discovery order. When include_ivars is False, the classes are copies without ivars.
        """
        if include_ivars:
            return list(self.classes.values())

        stripped_classes = []
        for objc_class in self.classes.values():
            stripped_class = copy.copy(objc_class)
            stripped_class.ivars = []
            stripped_classes.append(stripped_class)
        return stripped_classes

    def get_method_imp_addresses(self, selector: str) -> List[VirtualMemoryPointer]:
        """Given a selector, return a list of virtual addresses corresponding to the start of each IMP for that SEL
        """
        return [
            objc_method.implementation
            for objc_class in self.classes.values()
            for objc_method in objc_class.selectors
            if objc_method.name == selector and objc_method.implementation
        ]

    def selref_for_selector_name(self, selector_name: str) -> Optional[ObjcSelref]:
        return first_true(self.selector_references, pred=lambda s: s.selector_name == selector_name)

    def __repr__(self) -> str:
        return (
            f"<ObjcMetadata classes={len(self.classes)} protocols={len(self.protocols)}"
            f" categories={len(self.categories)} selrefs={len(self.selector_references)}>"
        )


class ObjcRuntimeDataParser:
    """Recover the Objective-C runtime metadata of a binary by following the pointers in its __objc_* sections.

    Classes, superclasses, metaclasses and categories refer to each other by address, so extraction runs in two passes
    over a cache of classes keyed by their address. The first pass records every class with its superclass pointer
    still unresolved, reads every protocol, and reads every category with its target pointer unresolved. The second
    pass resolves those pointers to names, reads the bodies of each class and its metaclass, and merges each category
    into the class it extends.
    """

    OBJC_SECTIONS = ["__objc_classlist", "__objc_catlist", "__objc_protolist", "__objc_selrefs", "__objc_const"]

    # Protocols longer than this are treated as corrupt
    _MAX_PROTOCOL_LIST_COUNT = 500

    # protocol_t fields which only exist when protocol_t.size covers them
    _PROTOCOL_CLASS_PROPERTIES_OFFSET = 0x58
    _PROTOCOL_CLASS_PROPERTIES_END = 0x60

    # ivar_t.alignment_raw == ~0 signifies pointer alignment
    _IVAR_ALIGNMENT_WORD = 0xFFFFFFFF
    # Any other ivar_t.alignment_raw is log2 of the alignment
    _MAX_IVAR_ALIGNMENT_SHIFT = 64

    def __init__(self, binary: MachoBinary, demangler: Optional[Demangler] = None) -> None:
        self.binary = binary
        self.demangler = demangler

        self._classes_by_address: Dict[VirtualMemoryPointer, ObjcClass] = {}
        self._pending_superclass_pointers: Dict[VirtualMemoryPointer, VirtualMemoryPointer] = {}
        self._metaclass_ro_cache: Dict[VirtualMemoryPointer, ObjcDataRawStruct] = {}

    def extract(self) -> ObjcMetadata:
        """Run both passes over the binary's Objective-C sections.

        Raises:
            NoMetadataFoundError: The binary has none of the Objective-C sections
            SectionNotFoundError: The binary has a class list but no __objc_const
        """
        logger.debug(f"Parsing ObjC runtime info of {self.binary}...")
        self._classes_by_address = {}
        self._pending_superclass_pointers = {}
        self._metaclass_ro_cache = {}
        self._check_required_sections()

        metadata = ObjcMetadata()

        logger.debug("Pass 1: Parsing protocols, classes, and categories...")
        metadata.protocols = self._parse_protocols()
        self._parse_classes_base_info()
        categories = self._parse_categories()
        logger.debug(f"Pass 1 found {len(self._classes_by_address)} classes and {len(categories)} categories")

        logger.debug("Pass 2: Resolving class hierarchy, class data, and categories...")
        self._resolve_superclasses()
        self._parse_class_bodies()
        metadata.categories = self._resolve_and_merge_categories(categories)

        logger.debug("Parsing selrefs...")
        metadata.selector_references = self._parse_selrefs()

        for objc_class in self._classes_by_address.values():
            if objc_class.name in metadata.classes:
                logger.warning(f"Duplicate class name {objc_class.name} @ {objc_class.vm_address}, keeping the first")
                continue
            metadata.classes[objc_class.name] = objc_class

        logger.debug(f"Parsed {metadata}")
        return metadata

    def _check_required_sections(self) -> None:
        present_sections = [
            name for name in self.OBJC_SECTIONS if self.binary.section_with_name_in_segments(name) is not None
        ]
        if not present_sections:
            raise NoMetadataFoundError("Binary contains no Objective-C metadata sections")
        # class_ro_t lives in __objc_const
        if "__objc_classlist" in present_sections and "__objc_const" not in present_sections:
            raise SectionNotFoundError("Binary has an __objc_classlist but no __objc_const")

    def _read_pointer_section(self, section_name: str) -> Dict[VirtualMemoryPointer, VirtualMemoryPointer]:
        try:
            return self.binary.read_pointer_section(section_name)
        except MachoError as e:
            logger.warning(f"Failed to read the contents of {section_name}, skipping it: {e}")
            return {}

    def _section_pointers(self, section_name: str) -> List[VirtualMemoryPointer]:
        """Read the non-null pointers in a pointer-list section"""
        return [ptr for ptr in self._read_pointer_section(section_name).values() if ptr]

    def _read_string(self, address: int, placeholder: str) -> str:
        if not address:
            return placeholder
        return self.binary.read_string_at_address(address)

    def _demangle(self, name: str) -> str:
        if not self.demangler:
            return name
        return self.demangler(name)

    # Pass 1

    def _parse_protocols(self) -> Dict[str, ObjcProtocol]:
        """Parse protocols which code in the app conforms to, referenced by __objc_protolist"""
        protocols: Dict[str, ObjcProtocol] = {}
        for protocol_ptr in self._section_pointers("__objc_protolist"):
            try:
                protocol = self._parse_protocol(protocol_ptr)
            except MachoError as e:
                logger.warning(f"Failed to read protocol @ {protocol_ptr}: {e}")
                continue

            if protocol.name in protocols:
                logger.debug(f"Skipping duplicate definition of protocol {protocol.name} @ {protocol_ptr}")
                continue
            protocols[protocol.name] = protocol
        return protocols

    def _parse_protocol(self, protocol_ptr: VirtualMemoryPointer) -> ObjcProtocol:
        protocol_struct = self.binary.read_struct(protocol_ptr, ObjcProtocolRawStruct, virtual=True)
        protocol = ObjcProtocol(self._read_string(protocol_struct.name, "?PROTOCOL?"), protocol_ptr)

        protocol.base_protocols = self._read_protocol_list_names(protocol_struct.protocols)
        protocol.instance_methods = self._read_method_list(protocol_struct.required_instance_methods, False)
        protocol.class_methods = self._read_method_list(protocol_struct.required_class_methods, True)
        protocol.optional_instance_methods = self._read_method_list(protocol_struct.optional_instance_methods, False)
        protocol.optional_class_methods = self._read_method_list(protocol_struct.optional_class_methods, True)
        protocol.instance_properties = self._read_property_list(protocol_struct.instance_properties)

        if protocol_struct.size >= self._PROTOCOL_CLASS_PROPERTIES_END:
            class_properties_ptr = self.binary.read_pointer_at_address(
                protocol_ptr + self._PROTOCOL_CLASS_PROPERTIES_OFFSET
            )
            protocol.class_properties = self._read_property_list(class_properties_ptr)
        return protocol

    def _parse_classes_base_info(self) -> None:
        """Record the name, Swift flag and unresolved superclass pointer of each class in __objc_classlist"""
        for class_ptr in self._section_pointers("__objc_classlist"):
            if class_ptr in self._classes_by_address:
                continue
            try:
                self._parse_class_base_info(class_ptr)
            except MachoError as e:
                logger.warning(f"Failed to read class @ {class_ptr}: {e}")

    def _parse_class_base_info(self, class_ptr: VirtualMemoryPointer) -> None:
        class_struct = self._read_class_struct(class_ptr)
        data_struct = self._read_class_data(class_struct)
        if not data_struct.name:
            logger.warning(f"Skipping class @ {class_ptr} with no name")
            return

        # the least significant 2 bits of the data pointer are flags, set for Swift classes
        is_swift = bool(class_struct.data & ObjcClassDataBits.FAST_FLAGS_MASK)
        name = self.binary.read_string_at_address(data_struct.name)
        if is_swift:
            name = self._demangle(name)

        self._classes_by_address[class_ptr] = ObjcClass(name, class_ptr, is_swift_class=is_swift)
        if class_struct.superclass:
            self._pending_superclass_pointers[class_ptr] = VirtualMemoryPointer(class_struct.superclass)

    def _parse_categories(self) -> List[ObjcCategory]:
        categories = []
        for category_ptr in self._section_pointers("__objc_catlist"):
            try:
                category = self._parse_category(category_ptr)
            except MachoError as e:
                logger.warning(f"Failed to read category @ {category_ptr}: {e}")
                continue
            if category:
                categories.append(category)
        return categories

    def _parse_category(self, category_ptr: VirtualMemoryPointer) -> Optional[ObjcCategory]:
        category_struct = self.binary.read_struct(category_ptr, ObjcCategoryRawStruct, virtual=True)
        if not category_struct.name:
            logger.warning(f"Skipping category @ {category_ptr} with no name")
            return None

        target_class_address = None
        if category_struct.base_class:
            target_class_address = VirtualMemoryPointer(category_struct.base_class)
        category = ObjcCategory(self.binary.read_string_at_address(category_struct.name), target_class_address)

        # The method lists do not depend on the target class, so they are read now
        category.instance_methods = self._read_method_list(category_struct.instance_methods, False)
        category.class_methods = self._read_method_list(category_struct.class_methods, True)
        category.protocols = self._read_protocol_list_names(category_struct.base_protocols)
        category.instance_properties = self._read_property_list(category_struct.instance_properties)
        return category

    # Pass 2

    def _resolve_superclasses(self) -> None:
        for class_ptr, objc_class in self._classes_by_address.items():
            superclass_ptr = self._pending_superclass_pointers.pop(class_ptr, None)
            if superclass_ptr is None:
                # Root class
                continue
            objc_class.superclass_name = self._class_name_for_class_pointer(superclass_ptr)

    def _class_name_for_class_pointer(self, class_ptr: VirtualMemoryPointer) -> str:
        """Name the class at the provided address, whether or not it is listed in __objc_classlist"""
        cached_class = self._classes_by_address.get(class_ptr)
        if cached_class:
            return cached_class.name

        try:
            class_struct = self._read_class_struct(class_ptr)
            data_struct = self._read_class_data(class_struct)
            if not data_struct.name:
                return "<External>"
            name = self.binary.read_string_at_address(data_struct.name)
        except MachoError as e:
            logger.debug(f"Could not read name of external class @ {class_ptr}: {e}")
            return "<External>"

        if class_struct.data & ObjcClassDataBits.FAST_FLAGS_MASK:
            return self._demangle(name)
        return name

    def _parse_class_bodies(self) -> None:
        for class_ptr, objc_class in self._classes_by_address.items():
            try:
                class_struct = self._read_class_struct(class_ptr)
                self._parse_instance_data(objc_class, self._read_class_data(class_struct))
            except MachoError as e:
                logger.warning(f"Failed to read instance data of {objc_class.name}: {e}")
                continue

            try:
                self._parse_class_level_data(objc_class, VirtualMemoryPointer(class_struct.metaclass))
            except MachoError as e:
                logger.warning(f"Failed to read class methods of {objc_class.name}: {e}")

    def _parse_instance_data(self, objc_class: ObjcClass, data_struct: ObjcDataRawStruct) -> None:
        objc_class.instance_methods = self._read_method_list(data_struct.base_methods, False)
        objc_class.properties = self._read_property_list(data_struct.base_properties)
        objc_class.protocols = self._read_protocol_list_names(data_struct.base_protocols)
        objc_class.ivars = self._read_ivar_list(data_struct.ivars)

    def _parse_class_level_data(self, objc_class: ObjcClass, metaclass_ptr: VirtualMemoryPointer) -> None:
        """Read class methods and class properties from the class_ro_t of the metaclass"""
        if not metaclass_ptr:
            return
        objc_class.metaclass_vm_address = metaclass_ptr

        metaclass_data = self._metaclass_ro_cache.get(metaclass_ptr)
        if metaclass_data is None:
            metaclass_data = self._read_class_data(self._read_class_struct(metaclass_ptr))
            self._metaclass_ro_cache[metaclass_ptr] = metaclass_data

        objc_class.class_methods = self._read_method_list(metaclass_data.base_methods, True)
        objc_class.class_properties = self._read_property_list(metaclass_data.base_properties)

    def _resolve_and_merge_categories(self, categories: List[ObjcCategory]) -> List[ObjcCategory]:
        """Merge each category into the class it extends, and return the categories of classes outside the binary"""
        unmerged_categories = []
        for category in categories:
            target_ptr = category.target_class_address
            category.target_class_address = None

            if target_ptr is None:
                category.class_name = "<External>"
                unmerged_categories.append(category)
                continue

            target_class = self._classes_by_address.get(target_ptr)
            if not target_class:
                category.class_name = self._class_name_for_class_pointer(target_ptr)
                logger.debug(f"Category {category.name} extends class {category.class_name} outside the binary")
                unmerged_categories.append(category)
                continue

            category.class_name = target_class.name
            logger.debug(f"Merging category {category.name} into {target_class.name}")
            target_class.instance_methods += category.instance_methods
            target_class.class_methods += category.class_methods
            target_class.properties += category.instance_properties
            target_class.class_properties += category.class_properties

            adopted_protocols = set(target_class.protocols)
            for protocol_name in category.protocols:
                if protocol_name not in adopted_protocols:
                    target_class.protocols.append(protocol_name)
                    adopted_protocols.add(protocol_name)
        return unmerged_categories

    def _parse_selrefs(self) -> List[ObjcSelref]:
        selrefs = []
        for selref_ptr, selector_literal_ptr in self._read_pointer_section("__objc_selrefs").items():
            if not selector_literal_ptr:
                continue
            try:
                selector_name = self.binary.read_string_at_address(selector_literal_ptr)
            except MachoError as e:
                logger.warning(f"Failed to read selector name for selref @ {selref_ptr}: {e}")
                continue
            selrefs.append(ObjcSelref(selector_name, selref_ptr, selector_literal_ptr))
        return selrefs

    # Structure readers

    def _read_class_struct(self, class_ptr: VirtualMemoryPointer) -> ObjcClassRawStruct:
        return self.binary.read_struct(class_ptr, ObjcClassRawStruct, virtual=True)

    def _read_class_data(self, class_struct: ObjcClassRawStruct) -> ObjcDataRawStruct:
        """Read the class_ro_t of a class, ignoring the flags in the low bits of the data pointer"""
        data_ptr = class_struct.data & ~ObjcClassDataBits.FAST_FLAGS_MASK
        return self.binary.read_struct(data_ptr, ObjcDataRawStruct, virtual=True)

    def _read_list_header(self, list_ptr: int) -> ObjcEntryListHeaderStruct:
        return self.binary.read_struct(list_ptr, ObjcEntryListHeaderStruct, virtual=True)

    def _entries_in_bounds(self, list_ptr: int, entries_address: int, count: int, entsize: int) -> bool:
        """Whether `count` entries of `entsize` bytes fit in the section holding the list, and within the file"""
        if not count:
            return True
        entries_end = entries_address + count * entsize
        section = self.binary.section_for_address(VirtualMemoryPointer(list_ptr))
        if section and entries_end > section.end_address:
            return False
        try:
            last_byte_offset = self.binary.file_offset_for_virtual_address(entries_end - 1)
        except MachoError:
            return False
        return self.binary.region.contains(last_byte_offset, 1)

    def _read_method_list(self, methlist_ptr: int, is_class_method: bool) -> List[ObjcMethod]:
        """Given the virtual address of a method list, return the methods it holds"""
        if not methlist_ptr:
            return []
        header = self._read_list_header(methlist_ptr)
        is_relative = bool(header.entsize_and_flags & ObjcListFlags.METHOD_LIST_IS_RELATIVE)
        entsize = header.entsize_and_flags & ObjcListFlags.ENTSIZE_MASK

        layout = ObjcMethodStruct._RELATIVE_STRUCT if is_relative else ObjcMethodStruct.get_backing_data_layout()
        if entsize < sizeof(layout):
            logger.warning(f"Method list @ {hex(methlist_ptr)} has entsize {entsize}, smaller than a method entry")
            return []

        # the first entry appears directly after the list header
        entry_address = VirtualMemoryPointer(methlist_ptr + header.sizeof)
        if not self._entries_in_bounds(methlist_ptr, entry_address, header.count, entsize):
            logger.warning(f"Method list @ {hex(methlist_ptr)} with {header.count} entries overruns its section")
            return []

        methods: List[ObjcMethod] = []
        for _ in range(header.count):
            try:
                if is_relative:
                    method = self._read_relative_method(entry_address, is_class_method)
                else:
                    method = self._read_absolute_method(entry_address, is_class_method)
                methods.append(method)
            except MachoError as e:
                logger.warning(f"Skipping method entry @ {entry_address}: {e}")
            entry_address += entsize
        return methods

    def _read_absolute_method(self, entry_address: VirtualMemoryPointer, is_class_method: bool) -> ObjcMethod:
        method_ent = self.binary.read_struct(entry_address, ObjcMethodStruct, virtual=True)
        return ObjcMethod(
            self._read_string(method_ent.name, f"?SEL? ({hex(method_ent.name)})"),
            self._read_string(method_ent.signature, ""),
            VirtualMemoryPointer(method_ent.implementation),
            is_class_method,
        )

    def _read_relative_method(self, entry_address: VirtualMemoryPointer, is_class_method: bool) -> ObjcMethod:
        """Read a method entry made of three 32-bit offsets, each relative to the address of its own field"""
        method_ent = ObjcMethodStruct.read(
            self.binary.region,
            self.binary.file_offset_for_virtual_address(entry_address),
            backing_layout=ObjcMethodStruct._RELATIVE_STRUCT,
        )
        # The name offset leads to a selref, which holds the address of the selector literal
        selref_ptr = entry_address + method_ent.name
        selector_literal_ptr = self.binary.read_pointer_at_address(selref_ptr)
        signature_ptr = entry_address + sizeof(c_int32) + method_ent.signature

        implementation = VirtualMemoryPointer(0)
        if method_ent.implementation:
            implementation = entry_address + 2 * sizeof(c_int32) + method_ent.implementation

        return ObjcMethod(
            self._read_string(selector_literal_ptr, f"?SEL? ({hex(selref_ptr)})"),
            self._read_string(signature_ptr, ""),
            implementation,
            is_class_method,
        )

    def _read_property_list(self, proplist_ptr: int) -> List[ObjcProperty]:
        if not proplist_ptr:
            return []
        header = self._read_list_header(proplist_ptr)
        entsize = header.entsize_and_flags & ObjcListFlags.ENTSIZE_MASK
        if entsize < ObjcPropertyStruct.struct_size():
            logger.warning(f"Property list @ {hex(proplist_ptr)} has entsize {entsize}, smaller than a property")
            return []

        entry_address = VirtualMemoryPointer(proplist_ptr + header.sizeof)
        if not self._entries_in_bounds(proplist_ptr, entry_address, header.count, entsize):
            logger.warning(f"Property list @ {hex(proplist_ptr)} with {header.count} entries overruns its section")
            return []

        properties: List[ObjcProperty] = []
        for _ in range(header.count):
            try:
                property_ent = self.binary.read_struct(entry_address, ObjcPropertyStruct, virtual=True)
                properties.append(
                    ObjcProperty(
                        self._read_string(property_ent.name, "?PROP?"), self._read_string(property_ent.attributes, "")
                    )
                )
            except MachoError as e:
                logger.warning(f"Skipping property entry @ {entry_address}: {e}")
            entry_address += entsize
        return properties

    def _read_ivar_list(self, ivarlist_ptr: int) -> List[ObjcIvar]:
        """Given the virtual address of an ivar list, return a List of each encoded ObjcIvar"""
        if not ivarlist_ptr:
            return []
        header = self._read_list_header(ivarlist_ptr)
        entsize = header.entsize_and_flags & ObjcListFlags.ENTSIZE_MASK
        if entsize < ObjcIvarStruct.struct_size():
            logger.warning(f"Ivar list @ {hex(ivarlist_ptr)} has entsize {entsize}, smaller than an ivar")
            return []

        entry_address = VirtualMemoryPointer(ivarlist_ptr + header.sizeof)
        if not self._entries_in_bounds(ivarlist_ptr, entry_address, header.count, entsize):
            logger.warning(f"Ivar list @ {hex(ivarlist_ptr)} with {header.count} entries overruns its section")
            return []

        ivars: List[ObjcIvar] = []
        for _ in range(header.count):
            try:
                ivars.append(self._read_ivar(entry_address))
            except MachoError as e:
                logger.warning(f"Skipping ivar entry @ {entry_address}: {e}")
            entry_address += entsize
        return ivars

    def _read_ivar(self, entry_address: VirtualMemoryPointer) -> ObjcIvar:
        ivar_struct = self.binary.read_struct(entry_address, ObjcIvarStruct, virtual=True)
        name = self._read_string(ivar_struct.name, "?IVAR?")

        # The ivar's offset is stored in a global which the runtime may slide, ivar_t only points to it
        field_offset = 0
        if not ivar_struct.offset_ptr:
            logger.warning(f"Ivar {name} has a NULL offset pointer")
        else:
            try:
                field_offset = self.binary.read_word(ivar_struct.offset_ptr, word_type=c_uint64)
            except MachoError as e:
                logger.warning(f"Failed to read the offset of ivar {name} @ {hex(ivar_struct.offset_ptr)}: {e}")

        if ivar_struct.alignment_raw == self._IVAR_ALIGNMENT_WORD:
            alignment = self.binary.BYTES_PER_POINTER
        elif ivar_struct.alignment_raw < self._MAX_IVAR_ALIGNMENT_SHIFT:
            alignment = 1 << ivar_struct.alignment_raw
        else:
            logger.warning(f"Ivar {name} has invalid alignment {hex(ivar_struct.alignment_raw)}, assuming pointer size")
            alignment = self.binary.BYTES_PER_POINTER

        return ObjcIvar(name, self._read_string(ivar_struct.type, "?"), field_offset, ivar_struct.size, alignment)

    def _read_protocol_list_names(self, protolist_ptr: int) -> List[str]:
        """Accepts the virtual address of a protocol_list_t, and returns the names of the protocols it refers to"""
        if not protolist_ptr:
            return []
        protolist = self.binary.read_struct(protolist_ptr, ObjcProtocolListStruct, virtual=True)
        if protolist.count >= self._MAX_PROTOCOL_LIST_COUNT:
            logger.warning(f"Skipping protocol list @ {hex(protolist_ptr)} with unusually large count {protolist.count}")
            return []

        names: List[str] = []
        # pointers start directly after the 'count' field
        pointer_address = VirtualMemoryPointer(protolist_ptr + protolist.sizeof)
        for _ in range(protolist.count):
            try:
                protocol_ptr = self.binary.read_pointer_at_address(pointer_address)
                if protocol_ptr:
                    protocol_struct = self.binary.read_struct(protocol_ptr, ObjcProtocolRawStruct, virtual=True)
                    names.append(self.binary.read_string_at_address(protocol_struct.name))
            except MachoError as e:
                logger.warning(f"Failed to read protocol name from list entry @ {pointer_address}: {e}")
            pointer_address += self.binary.BYTES_PER_POINTER
        return names
