from typing import TYPE_CHECKING, List

from machodump.logger import machodump_logger

from .errors import FileCorruptError, LoadCommandMissingError
from .leb128 import OpcodeStream
from .macho_definitions import VirtualMemoryPointer

if TYPE_CHECKING:
    from .macho_binary import MachoBinary

logger = machodump_logger.getChild("function_starts_parser")


class FunctionStartsParser:
    @staticmethod
    def parse_function_starts(binary: "MachoBinary") -> List[VirtualMemoryPointer]:
        """Decode the function entry points listed by LC_FUNCTION_STARTS.

        The data is a sequence of ULEB128 deltas. The first is relative to the image's virtual base, and each one
        after is relative to the previous function start. A delta of zero terminates the list.

        Returns:
            The absolute virtual address of each function start, in the order they are encoded

        Raises:
            LoadCommandMissingError: The binary has no LC_FUNCTION_STARTS
            FileCorruptError: The function starts data lies outside the binary
            ULEBDecodeError: A delta is truncated or overflows
        """
        function_starts_cmd = binary.function_starts_cmd
        if not function_starts_cmd:
            raise LoadCommandMissingError("Binary has no LC_FUNCTION_STARTS")

        fs_start = function_starts_cmd.dataoff
        fs_size = function_starts_cmd.datasize
        if not binary.region.contains(fs_start, fs_size):
            raise FileCorruptError(f"Function starts data [{hex(fs_start)} +{hex(fs_size)}] lies outside the binary")

        stream = OpcodeStream(binary.region.slice(fs_start, fs_size))
        address = int(binary.get_virtual_base())
        function_starts: List[VirtualMemoryPointer] = []
        while not stream.at_end:
            address_delta = stream.read_uleb()
            # The list is zero-padded up to pointer alignment
            if address_delta == 0:
                break
            address += address_delta
            function_starts.append(VirtualMemoryPointer(address))

        logger.debug(f"Decoded {len(function_starts)} function starts")
        return function_starts
