from ctypes import c_uint32, sizeof
from pathlib import Path
from typing import List, Optional, Union

from machodump.logger import machodump_logger

from .byte_region import ByteRegion, BytesLike
from .errors import FileCorruptError, InvalidFormatError, OutOfBoundsError
from .macho_binary import MachoBinary
from .macho_definitions import MachArch, StaticFilePointer, swap32
from .macho_structs import MachoFatArchStruct, MachoFatHeaderStruct

logger = machodump_logger.getChild("macho_parse")


class MachoParser:
    """Locate the Mach-O slice within a thin or FAT file, and parse it into a MachoBinary.

    Typical use is MachoParser.parse(data) or MachoParser.parse_file(path). Constructing a MachoParser directly
    validates the container and exposes the FAT architectures without parsing any slice.
    """

    _FAT_MAGIC = [MachArch.FAT_MAGIC, MachArch.FAT_CIGAM]
    _BIG_ENDIAN_MAG = [MachArch.FAT_CIGAM]

    def __init__(self, data: Union[BytesLike, ByteRegion], path: Optional[Path] = None) -> None:
        self.region = data if isinstance(data, ByteRegion) else ByteRegion(data)
        self.path = path

        self.header: Optional[MachoFatHeaderStruct] = None
        self.is_swapped: bool = False
        self.fat_archs: List[MachoFatArchStruct] = []

        if not self.region.contains(0, sizeof(c_uint32)):
            raise InvalidFormatError("File is too small to contain a magic")

        self.is_swapped = self.should_swap_bytes()
        if self.is_fat:
            self.parse_fat_header()

    @classmethod
    def parse(
        cls,
        data: Union[BytesLike, ByteRegion],
        desired_cpu_type: int = MachArch.MH_CPU_TYPE_ARM64,
        path: Optional[Path] = None,
    ) -> MachoBinary:
        """Parse a thin Mach-O or FAT archive, returning the slice built for desired_cpu_type.

        If a FAT archive contains no slice for desired_cpu_type, the first slice is used.

        Raises:
            InvalidFormatError: The magic is not a supported Mach-O or FAT magic, or the FAT has no architectures
            FileCorruptError: The selected slice, or one of its load commands, violates its declared bounds
        """
        return cls(data, path).get_slice(desired_cpu_type)

    @classmethod
    def parse_file(cls, path: Union[str, Path], desired_cpu_type: int = MachArch.MH_CPU_TYPE_ARM64) -> MachoBinary:
        """Read the file at the provided path once, and parse it with parse()."""
        path = Path(path)
        with open(path, "rb") as binary_file:
            data = binary_file.read()
        return cls.parse(data, desired_cpu_type, path)

    @property
    def file_magic(self) -> int:
        """Read file magic."""
        return self.region.read_word(0, c_uint32)

    @property
    def is_fat(self) -> bool:
        """Check if file magic indicates a FAT archive or not"""
        return self.file_magic in MachoParser._FAT_MAGIC

    def should_swap_bytes(self) -> bool:
        """Check if we need to swap due to a difference in endianness between host and binary

        FAT headers are always stored big-endian, so on a little-endian host a valid FAT reads as FAT_CIGAM.
        """
        return self.file_magic in MachoParser._BIG_ENDIAN_MAG

    def parse_fat_header(self) -> None:
        """Parse the FAT header implicitly found at the start of the file, and every fat_arch which follows it"""
        try:
            self.header = MachoFatHeaderStruct.read(self.region, 0)
        except OutOfBoundsError as e:
            raise FileCorruptError("FAT header is truncated") from e

        # remember to swap fields if file contains non-native byte order
        if self.is_swapped:
            self.header.nfat_arch = swap32(self.header.nfat_arch)

        if self.header.nfat_arch == 0:
            raise InvalidFormatError("FAT archive declares no architectures")

        # first fat_arch structure is directly after FAT header
        read_off = self.header.sizeof
        for i in range(self.header.nfat_arch):
            try:
                fat_arch = MachoFatArchStruct.read(self.region, read_off)
            except OutOfBoundsError as e:
                raise FileCorruptError(f"fat_arch #{i} at {hex(read_off)} lies outside the file") from e

            if self.is_swapped:
                # non-native byte order, swap every field in fat_arch
                for field_name, *_ in MachoFatArchStruct.get_backing_data_layout()._fields_:
                    setattr(fat_arch, field_name, swap32(getattr(fat_arch, field_name)))

            self.fat_archs.append(fat_arch)
            # move to next fat_arch structure in file
            read_off += fat_arch.sizeof

    def get_slice(self, desired_cpu_type: int = MachArch.MH_CPU_TYPE_ARM64) -> MachoBinary:
        """Parse the slice built for the provided CPU type.
        A thin file is returned as-is. A FAT without a matching slice falls back to its first slice.
        """
        if not self.is_fat:
            # Validates the thin magic itself
            return MachoBinary(self.region, self.path)

        fat_arch = next((x for x in self.fat_archs if x.cputype == desired_cpu_type), None)
        if not fat_arch:
            fat_arch = self.fat_archs[0]
            logger.warning(
                f"FAT archive has no slice for CPU type {hex(desired_cpu_type)}. "
                f"Falling back to the first slice (CPU type {hex(fat_arch.cputype)})"
            )
        return self.parse_thin_header(StaticFilePointer(fat_arch.offset), fat_arch.size)

    def get_arm64_slice(self) -> MachoBinary:
        """Retrieve the parsed slice built for ARM64."""
        return self.get_slice(MachArch.MH_CPU_TYPE_ARM64)

    def parse_thin_header(self, fileoff: StaticFilePointer, slice_size: int) -> MachoBinary:
        """Parse the Mach-O slice at a given file offset

        Args:
            fileoff: byte index into file to interpret Mach-O header at
            slice_size: Byte-count of the Mach-O slice in the file
        """
        if not self.region.contains(fileoff, slice_size):
            raise FileCorruptError(
                f"Slice [{hex(fileoff)} - {hex(fileoff + slice_size)}] lies outside the file ({hex(len(self.region))})"
            )
        logger.debug(f"parsing Mach-O slice @ {hex(fileoff)}")
        return MachoBinary(self.region.slice(fileoff, slice_size), self.path, file_offset=fileoff)
