"""
address_locator.py

Maps absolute addresses, as observed in the profiled process, to the library
whose mapping contains them and to an offset relative to that library.

Addresses are unsigned 64-bit values and can be well above 2**53, so all of
the arithmetic here is done on Python ints, never on floats.
"""

import bisect
import re
from typing import NamedTuple, Optional

from geckoproc.errors import AddressParseError

_HEX_ADDRESS_RE = re.compile(r'^0x[0-9a-fA-F]+$')


def parse_address(value) -> int:
    """
    Turn a lib mapping bound or a frame address into an int.

    Ints are returned unchanged. Strings are parsed as "0x"-prefixed hex, or
    as decimal digits (some importers write u64 bounds as decimal strings to
    keep them exact in JSON).
    """
    if isinstance(value, bool):
        raise AddressParseError(f'Not an address: {value!r}')
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        if _HEX_ADDRESS_RE.match(value):
            return int(value, 16)
        if value.isdigit():
            return int(value)
    raise AddressParseError(f'Not an address: {value!r}')


class LocatedAddress(NamedTuple):
    # The lib mapping containing the address, or None if no mapping does.
    lib: Optional[dict]
    # Library-relative offset when lib is set, otherwise the absolute address.
    relative_address: int


class AddressLocator:
    """
    Binary search over library mappings.

    `libs` must be sorted by start address and the [start, end) ranges must
    not overlap. This is the caller's responsibility and isn't re-checked.
    """

    def __init__(self, libs: list[dict]):
        self._libs = libs
        self._starts = [parse_address(lib['start']) for lib in libs]
        self._ends = [parse_address(lib['end']) for lib in libs]
        # address - base_address == address - start + offset
        self._base_addresses = [
            start - parse_address(lib.get('offset', 0))
            for start, lib in zip(self._starts, libs)
        ]

    def __len__(self):
        return len(self._libs)

    def locate_address(self, address_hex: str) -> LocatedAddress:
        """
        Find the library containing the address.

        Raises AddressParseError if address_hex isn't a "0x"-prefixed hex number.
        """
        if not isinstance(address_hex, str) or not _HEX_ADDRESS_RE.match(
                address_hex):
            raise AddressParseError(f'Not a hex address: {address_hex!r}')
        address = int(address_hex, 16)

        # Index of the last mapping that starts at or before the address.
        index = bisect.bisect_right(self._starts, address) - 1
        if index >= 0 and address < self._ends[index]:
            return LocatedAddress(self._libs[index],
                                  address - self._base_addresses[index])
        return LocatedAddress(None, address)
