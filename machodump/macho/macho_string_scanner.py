import re
from dataclasses import dataclass
from typing import List, Tuple

from machodump.logger import machodump_logger

from .macho_binary import MachoBinary
from .macho_definitions import StaticFilePointer, VirtualMemoryPointer

logger = machodump_logger.getChild("macho_string_scanner")


@dataclass(frozen=True)
class FoundString:
    string: str
    address: VirtualMemoryPointer
    file_offset: StaticFilePointer
    # Formatted as "__SEGMENT,__section"
    section_name: str


class MachoStringScanner:
    """Find the printable C strings embedded in the sections of a binary which commonly hold them"""

    STRING_SECTIONS: List[Tuple[str, str]] = [
        ("__TEXT", "__cstring"),
        ("__TEXT", "__objc_classname"),
        ("__TEXT", "__objc_methname"),
        ("__TEXT", "__objc_methtype"),
        ("__TEXT", "__const"),
        ("__DATA", "__const"),
        ("__DATA", "__data"),
    ]

    @classmethod
    def scan(cls, binary: MachoBinary, min_length: int = 4) -> List[FoundString]:
        """Scan for runs of at least `min_length` printable ASCII characters which are terminated by a NUL.

        Sections which are missing, zero-filled or lie outside the binary are skipped.

        Returns:
            The found strings, sorted by file offset
        """
        if min_length < 1:
            raise ValueError(f"min_length must be positive, got {min_length}")
        string_pattern = re.compile(rb"[\x20-\x7e]{%d,}(?=\x00)" % min_length)

        found_strings: List[FoundString] = []
        for segment_name, section_name in cls.STRING_SECTIONS:
            section = binary.section_with_name(section_name, segment_name)
            if not section or section.is_zerofill or not section.size:
                continue
            if not binary.region.contains(section.offset, section.size):
                logger.warning(f"Skipping string scan of {segment_name},{section_name}: section lies outside the binary")
                continue

            section_data = binary.get_bytes(section.offset, section.size)
            for match in string_pattern.finditer(section_data):
                found_strings.append(
                    FoundString(
                        string=match.group().decode("ascii"),
                        address=VirtualMemoryPointer(section.address + match.start()),
                        file_offset=StaticFilePointer(section.offset + match.start()),
                        section_name=f"{segment_name},{section_name}",
                    )
                )

        logger.debug(f"Found {len(found_strings)} strings")
        return sorted(found_strings, key=lambda s: s.file_offset)
