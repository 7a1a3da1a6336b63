"""
Interning of the data that is per-thread or per-process in the raw profile
but global in the processed one: strings and libraries.

One GlobalDataCollector belongs to one conversion. It is handed explicitly to
every extraction step and is the only mutable state shared between threads,
so converting threads in parallel would need either one collector per thread
followed by a merge, or serialized access to it.
"""

from dataclasses import dataclass, field

from geckoproc.profile_schema import Lib, SharedData


@dataclass
class StringTable:
    strings: list[str] = field(default_factory=list)
    existing: dict[str, int] = field(default_factory=dict)

    @staticmethod
    def with_backing_array(strings: list[str]):
        """Wrap an existing list; new strings are appended to that list."""
        existing = {}
        for index, string in enumerate(strings):
            # First occurrence keeps its index.
            existing.setdefault(string, index)
        return StringTable(strings=strings, existing=existing)

    def index_for_string(self, string: str) -> int:
        if string in self.existing:
            return self.existing[string]
        index = len(self.strings)
        self.strings.append(string)
        self.existing[string] = index
        return index

    def has_string(self, string: str) -> bool:
        return string in self.existing

    def get_string(self, index: int) -> str:
        return self.strings[index]

    def __len__(self):
        return len(self.strings)


class GlobalDataCollector:
    """The interner for one conversion: one string table, one lib list."""

    def __init__(self):
        self._libs: list[Lib] = []
        self._lib_key_to_lib_index: dict[str, int] = {}
        self._string_table = StringTable()

    def index_for_lib(self, lib_mapping: dict | Lib) -> int:
        """Global index for this library, adding it to the list if necessary.

        Libraries are identified by debugName and breakpadId, so the same
        library mapped into several processes is listed once.
        """
        lib = lib_mapping if isinstance(lib_mapping, Lib) else Lib.load(
            lib_mapping)
        index = self._lib_key_to_lib_index.get(lib.key)
        if index is None:
            index = len(self._libs)
            self._libs.append(lib)
            self._lib_key_to_lib_index[lib.key] = index
        return index

    def get_string_table(self) -> StringTable:
        return self._string_table

    def finish(self) -> tuple[list[Lib], SharedData]:
        """Package up the de-duplicated tables for the processed profile."""
        return self._libs, SharedData(string_array=self._string_table.strings)
