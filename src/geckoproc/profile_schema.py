"""
The processed profile format.

Every per-thread table is a "struct of arrays": one list per column plus an
authoritative `length`. Whatever appends a row must push exactly one value on
every column of the table and then bump `length`; the add_* methods below are
the only places that do this. A table whose columns disagree with `length` is
corrupt and check_lengths() raises TableLengthError for it.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar

from geckoproc.constants import PROCESSED_PROFILE_VERSION
from geckoproc.errors import TableLengthError

MarkerPhase = int
MarkerPayload = dict[str, Any]


def check_struct_lengths(struct: dict, table_name: str = 'table'):
    """Length check for the untyped dict tables produced by to_struct_of_arrays."""
    length = struct['length']
    for key, column in struct.items():
        if isinstance(column, list) and len(column) != length:
            raise TableLengthError(
                f'Column {key!r} of {table_name} has {len(column)} rows, '
                f'expected {length}')


class ColumnTable:
    """Shared behaviour of the columnar tables.

    Subclasses are dataclasses whose list-valued fields are the columns. A
    column that is None is an optional column that this table doesn't carry.
    """
    length: int

    @classmethod
    def empty(cls):
        return cls()

    def columns(self) -> dict[str, list]:
        return {
            f.name: getattr(self, f.name)
            for f in dataclasses.fields(self)
            if isinstance(getattr(self, f.name), list)
        }

    def clone_shallow(self):
        """New column lists holding the same elements, same length."""
        return dataclasses.replace(
            self, **{name: list(column) for name, column in self.columns().items()})

    def check_lengths(self):
        for name, column in self.columns().items():
            if len(column) != self.length:
                raise TableLengthError(
                    f'Column {name!r} of {type(self).__name__} has '
                    f'{len(column)} rows, expected {self.length}')


@dataclass
class Lib:
    name: str = field(default_factory=str)
    path: str = field(default_factory=str)
    debug_name: str = field(default_factory=str)
    debug_path: str = field(default_factory=str)
    breakpad_id: str = field(default_factory=str)
    code_id: str | None = None
    arch: str | None = None

    @property
    def key(self) -> str:
        return f'{self.debug_name}/{self.breakpad_id}'

    @staticmethod
    def load(lib: dict):
        return Lib(
            name=lib.get('name', ''),
            path=lib.get('path', ''),
            debug_name=lib.get('debugName', ''),
            debug_path=lib.get('debugPath', ''),
            breakpad_id=lib.get('breakpadId', ''),
            code_id=lib.get('codeId'),
            arch=lib.get('arch'),
        )

    def json(self):
        result = {
            "name": self.name,
            "path": self.path,
            "debugName": self.debug_name,
            "debugPath": self.debug_path,
            "breakpadId": self.breakpad_id,
            "codeId": self.code_id,
        }
        if self.arch is not None:
            result["arch"] = self.arch
        return result


@dataclass
class SamplesTable(ColumnTable):
    stack: list[int | None] = field(default_factory=list)
    time_deltas: list[float] = field(default_factory=list)
    weight: list[int] | None = None
    weight_type: str = "samples"
    thread_cpu_delta: list[int | None] | None = None
    event_delay: list[float | None] | None = None
    responsiveness: list[float | None] | None = None
    length: int = field(default_factory=int)

    def json(self):
        result = {
            "stack": self.stack,
            "timeDeltas": self.time_deltas,
            "weight": self.weight,
            "weightType": self.weight_type,
            "length": self.length
        }
        if self.thread_cpu_delta is not None:
            result["threadCPUDelta"] = self.thread_cpu_delta
        if self.event_delay is not None:
            result["eventDelay"] = self.event_delay
        if self.responsiveness is not None:
            result["responsiveness"] = self.responsiveness
        return result


@dataclass
class RawStackTable(ColumnTable):
    frame: list[int] = field(default_factory=list)
    prefix: list[int | None] = field(default_factory=list)
    length: int = field(default_factory=int)

    def add_stack(self, frame: int, prefix: int | None) -> int:
        index = self.length
        self.frame.append(frame)
        self.prefix.append(prefix)
        self.length += 1
        return index

    def json(self):
        return {
            "frame": self.frame,
            "prefix": self.prefix,
            "length": self.length
        }


@dataclass
class FrameTable(ColumnTable):
    address: list[int] = field(default_factory=list)
    inline_depth: list[int] = field(default_factory=list)
    category: list[int | None] = field(default_factory=list)
    subcategory: list[int | None] = field(default_factory=list)
    func: list[int] = field(default_factory=list)
    native_symbol: list[int | None] = field(default_factory=list)
    inner_window_id: list[int | None] = field(default_factory=list)
    line: list[int | None] = field(default_factory=list)
    column: list[int | None] = field(default_factory=list)
    length: int = field(default_factory=int)

    def json(self):
        return {
            "address": self.address,
            "inlineDepth": self.inline_depth,
            "category": self.category,
            "subcategory": self.subcategory,
            "func": self.func,
            "nativeSymbol": self.native_symbol,
            "innerWindowID": self.inner_window_id,
            "line": self.line,
            "column": self.column,
            "length": self.length
        }


@dataclass
class FuncTable(ColumnTable):
    name: list[int] = field(default_factory=list)
    is_js: list[bool] = field(default_factory=list)
    relevant_for_js: list[bool] = field(default_factory=list)
    resource: list[int] = field(default_factory=list)
    file_name: list[int | None] = field(default_factory=list)
    line_number: list[int | None] = field(default_factory=list)
    column_number: list[int | None] = field(default_factory=list)
    length: int = field(default_factory=int)

    def add_func(self,
                 name: int,
                 resource: int = -1,
                 is_js: bool = False,
                 relevant_for_js: bool = False,
                 file_name: int | None = None,
                 line_number: int | None = None,
                 column_number: int | None = None) -> int:
        index = self.length
        self.name.append(name)
        self.is_js.append(is_js)
        self.relevant_for_js.append(relevant_for_js)
        self.resource.append(resource)
        self.file_name.append(file_name)
        self.line_number.append(line_number)
        self.column_number.append(column_number)
        self.length += 1
        return index

    def json(self):
        return {
            "name": self.name,
            "isJS": self.is_js,
            "relevantForJS": self.relevant_for_js,
            "resource": self.resource,
            "fileName": self.file_name,
            "lineNumber": self.line_number,
            "columnNumber": self.column_number,
            "length": self.length
        }


@dataclass
class ResourceTable(ColumnTable):
    length: int = field(default_factory=int)
    lib: list[int | None] = field(default_factory=list)
    name: list[int] = field(default_factory=list)
    host: list[int | None] = field(default_factory=list)
    type: list[int] = field(default_factory=list)

    def add_resource(self, lib: int | None, name: int, host: int | None,
                     type: int) -> int:
        index = self.length
        self.lib.append(lib)
        self.name.append(name)
        self.host.append(host)
        self.type.append(type)
        self.length += 1
        return index

    def json(self):
        return {
            "length": self.length,
            "lib": self.lib,
            "name": self.name,
            "host": self.host,
            "type": self.type,
        }


@dataclass
class NativeSymbolTable(ColumnTable):
    lib_index: list[int] = field(default_factory=list)
    address: list[int] = field(default_factory=list)
    name: list[int] = field(default_factory=list)
    function_size: list[int | None] = field(default_factory=list)
    length: int = field(default_factory=int)

    def json(self):
        return {
            "libIndex": self.lib_index,
            "address": self.address,
            "name": self.name,
            "functionSize": self.function_size,
            "length": self.length
        }


@dataclass
class RawMarkerTable(ColumnTable):
    data: list[MarkerPayload | None] = field(default_factory=list)
    name: list[int] = field(default_factory=list)
    start_time: list[float | None] = field(default_factory=list)
    end_time: list[float | None] = field(default_factory=list)
    phase: list[MarkerPhase] = field(default_factory=list)
    category: list[int] = field(default_factory=list)
    length: int = field(default_factory=int)

    def json(self):
        return {
            "data": self.data,
            "name": self.name,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "phase": self.phase,
            "category": self.category,
            "length": self.length
        }

    def add_marker(self, name: int, start_time: float | None,
                   end_time: float | None, phase: MarkerPhase, category: int,
                   data: MarkerPayload | None) -> int:
        index = self.length
        self.name.append(name)
        self.start_time.append(start_time)
        self.end_time.append(end_time)
        self.phase.append(phase)
        self.category.append(category)
        self.data.append(data)
        self.length += 1
        return index


@dataclass
class JsAllocationsTable(ColumnTable):
    time: list[float] = field(default_factory=list)
    class_name: list[str] = field(default_factory=list)
    type_name: list[str] = field(default_factory=list)
    coarse_type: list[str] = field(default_factory=list)
    weight: list[int] = field(default_factory=list)
    weight_type: str = "bytes"
    in_nursery: list[bool] = field(default_factory=list)
    stack: list[int | None] = field(default_factory=list)
    length: int = field(default_factory=int)

    def add_allocation(self, time, class_name, type_name, coarse_type, weight,
                       in_nursery, stack) -> int:
        index = self.length
        self.time.append(time)
        self.class_name.append(class_name)
        self.type_name.append(type_name)
        self.coarse_type.append(coarse_type)
        self.weight.append(weight)
        self.in_nursery.append(in_nursery)
        self.stack.append(stack)
        self.length += 1
        return index

    def json(self):
        return {
            "time": self.time,
            "className": self.class_name,
            "typeName": self.type_name,
            "coarseType": self.coarse_type,
            "weight": self.weight,
            "weightType": self.weight_type,
            "inNursery": self.in_nursery,
            "stack": self.stack,
            "length": self.length
        }


@dataclass
class NativeAllocationsTable(ColumnTable):
    """Native allocations, "balanced" when the memory addresses are known."""
    time: list[float] = field(default_factory=list)
    weight: list[int] = field(default_factory=list)
    weight_type: str = "bytes"
    stack: list[int | None] = field(default_factory=list)
    memory_address: list[int] | None = None
    thread_id: list[int] | None = None
    length: int = field(default_factory=int)

    @property
    def is_balanced(self) -> bool:
        return self.memory_address is not None

    def json(self):
        result = {
            "time": self.time,
            "weight": self.weight,
            "weightType": self.weight_type,
            "stack": self.stack,
        }
        if self.memory_address is not None:
            result["memoryAddress"] = self.memory_address
            result["threadId"] = self.thread_id
        result["length"] = self.length
        return result


@dataclass
class ExtensionTable(ColumnTable):
    id: list[str] = field(default_factory=list)
    name: list[str] = field(default_factory=list)
    base_url: list[str] = field(default_factory=list)
    length: int = field(default_factory=int)

    @staticmethod
    def from_struct(struct: dict):
        return ExtensionTable(id=struct['id'],
                              name=struct['name'],
                              base_url=struct['baseURL'],
                              length=struct['length'])

    def json(self):
        return {
            "id": self.id,
            "name": self.name,
            "baseURL": self.base_url,
            "length": self.length
        }


@dataclass
class SourceTable(ColumnTable):
    uuid: list[str | None] = field(default_factory=list)
    filename: list[int] = field(default_factory=list)
    length: int = field(default_factory=int)

    def json(self):
        return {
            "uuid": self.uuid,
            "filename": self.filename,
            "length": self.length
        }


@dataclass
class CounterSamplesTable(ColumnTable):
    time_deltas: list[float] = field(default_factory=list)
    number: list[int] | None = None
    count: list[int] = field(default_factory=list)
    length: int = field(default_factory=int)

    def json(self):
        result = {"timeDeltas": self.time_deltas, "count": self.count}
        if self.number is not None:
            result["number"] = self.number
        result["length"] = self.length
        return result


@dataclass
class Counter:
    name: str
    category: str
    description: str
    pid: str
    main_thread_index: int
    samples: CounterSamplesTable

    def json(self):
        return {
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "pid": self.pid,
            "mainThreadIndex": self.main_thread_index,
            "samples": self.samples.json(),
        }


@dataclass
class ProfilerOverhead:
    # The overhead samples keep whatever schema the backend emitted, so they
    # stay an untyped struct of arrays.
    samples: dict
    pid: str
    main_thread_index: int
    statistics: dict | None = None

    def json(self):
        return {
            "samples": self.samples,
            "pid": self.pid,
            "mainThreadIndex": self.main_thread_index,
            "statistics": self.statistics,
        }


@dataclass
class MarkerSchemaField:
    key: str
    label: str | None = None
    format: str | None = None
    hidden: bool | None = None

    def json(self):
        result = {"key": self.key}
        for name, value in (("label", self.label), ("format", self.format),
                            ("hidden", self.hidden)):
            if value is not None:
                result[name] = value
        return result


@dataclass
class MarkerSchema:
    name: str
    display: list[str] = field(default_factory=list)
    fields: list[MarkerSchemaField] = field(default_factory=list)
    tooltip_label: str | None = None
    table_label: str | None = None
    chart_label: str | None = None
    description: str | None = None
    graphs: list[dict] | None = None
    is_stack_based: bool | None = None

    def json(self):
        result = {
            "name": self.name,
            "display": self.display,
            "fields": [f.json() for f in self.fields],
        }
        for name, value in (("tooltipLabel", self.tooltip_label),
                            ("tableLabel", self.table_label),
                            ("chartLabel", self.chart_label),
                            ("description", self.description),
                            ("graphs", self.graphs),
                            ("isStackBased", self.is_stack_based)):
            if value is not None:
                result[name] = value
        return result


@dataclass
class ProfileMeta:
    interval: float = field(default_factory=float)
    start_time: float = field(default_factory=float)
    process_type: int = field(default_factory=int)
    product: str = field(default_factory=str)
    stackwalk: int = field(default_factory=int)
    debug: bool = field(default_factory=bool)
    version: int = field(default_factory=int)
    preprocessed_profile_version: int = PROCESSED_PROFILE_VERSION
    symbolicated: bool = field(default_factory=bool)
    categories: list[dict] = field(default_factory=list)
    marker_schema: list[MarkerSchema] = field(default_factory=list)
    extensions: ExtensionTable = field(default_factory=ExtensionTable)
    profiling_start_time: float | None = None
    profiling_end_time: float | None = None
    # Descriptive fields copied verbatim from the raw meta when present,
    # keyed by their JSON name.
    passthrough: dict[str, Any] = field(default_factory=dict)

    PASSTHROUGH_KEYS: ClassVar[tuple[str, ...]] = (
        'startTimeAsClockMonotonicNanosecondsSinceBoot',
        'startTimeAsMachAbsoluteTimeNanoseconds',
        'startTimeAsQueryPerformanceCounterValue',
        'abi',
        'misc',
        'oscpu',
        'platform',
        'toolkit',
        'appBuildID',
        'visualMetrics',
        'configuration',
        'sourceURL',
        'physicalCPUs',
        'logicalCPUs',
        'CPUName',
        'updateChannel',
        'sampleUnits',
        'device',
    )

    def json(self):
        result = {
            "interval": self.interval,
            "startTime": self.start_time,
            "processType": self.process_type,
            "product": self.product,
            "stackwalk": self.stackwalk,
            "debug": self.debug,
            "version": self.version,
            "preprocessedProfileVersion": self.preprocessed_profile_version,
            "symbolicated": self.symbolicated,
            "categories": self.categories,
            "markerSchema": [s.json() for s in self.marker_schema],
            "extensions": self.extensions.json(),
        }
        result.update(
            (k, v) for k, v in self.passthrough.items() if v is not None)
        if self.profiling_start_time is not None:
            result["profilingStartTime"] = self.profiling_start_time
            result["profilingEndTime"] = self.profiling_end_time
        return result


@dataclass
class Thread:
    process_type: str = field(default_factory=str)
    process_startup_time: float = field(default_factory=float)
    process_shutdown_time: float | None = None
    register_time: float = field(default_factory=float)
    unregister_time: float | None = None
    paused_ranges: list[dict] = field(default_factory=list)
    name: str = field(default_factory=str)
    etld_plus_one: str | None = None
    is_main_thread: bool = field(default_factory=bool)
    process_name: str = field(default_factory=str)
    is_private_browsing: bool | None = None
    user_context_id: int | None = None
    pid: str = field(default_factory=str)
    tid: int | str | None = None
    samples: SamplesTable = field(default_factory=SamplesTable)
    markers: RawMarkerTable = field(default_factory=RawMarkerTable)
    stack_table: RawStackTable = field(default_factory=RawStackTable)
    frame_table: FrameTable = field(default_factory=FrameTable)
    func_table: FuncTable = field(default_factory=FuncTable)
    resource_table: ResourceTable = field(default_factory=ResourceTable)
    native_symbols: NativeSymbolTable = field(
        default_factory=NativeSymbolTable)
    js_allocations: JsAllocationsTable | None = None
    native_allocations: NativeAllocationsTable | None = None

    def tables(self) -> list[ColumnTable]:
        tables = [
            self.samples, self.markers, self.stack_table, self.frame_table,
            self.func_table, self.resource_table, self.native_symbols
        ]
        if self.js_allocations is not None:
            tables.append(self.js_allocations)
        if self.native_allocations is not None:
            tables.append(self.native_allocations)
        return tables

    def check_lengths(self):
        for table in self.tables():
            table.check_lengths()

    def json(self):
        result = {
            "processType": self.process_type,
            "processStartupTime": self.process_startup_time,
            "processShutdownTime": self.process_shutdown_time,
            "registerTime": self.register_time,
            "unregisterTime": self.unregister_time,
            "pausedRanges": self.paused_ranges,
            "name": self.name,
            "isMainThread": self.is_main_thread,
            "processName": self.process_name,
            "pid": self.pid,
            "tid": self.tid,
            "samples": self.samples.json(),
            "markers": self.markers.json(),
            "stackTable": self.stack_table.json(),
            "frameTable": self.frame_table.json(),
            "funcTable": self.func_table.json(),
            "resourceTable": self.resource_table.json(),
            "nativeSymbols": self.native_symbols.json(),
        }
        if self.etld_plus_one is not None:
            result["eTLD+1"] = self.etld_plus_one
        if self.is_private_browsing is not None:
            result["isPrivateBrowsing"] = self.is_private_browsing
        if self.user_context_id is not None:
            result["userContextId"] = self.user_context_id
        if self.js_allocations is not None:
            result["jsAllocations"] = self.js_allocations.json()
        if self.native_allocations is not None:
            result["nativeAllocations"] = self.native_allocations.json()
        return result


@dataclass
class SharedData:
    string_array: list[str] = field(default_factory=list)
    source_table: SourceTable = field(default_factory=SourceTable)

    def json(self):
        return {
            "stringArray": self.string_array,
            "sourceTable": self.source_table.json(),
        }


@dataclass
class Profile:
    meta: ProfileMeta = field(default_factory=ProfileMeta)
    libs: list[Lib] = field(default_factory=list)
    pages: list[dict] = field(default_factory=list)
    counters: list[Counter] = field(default_factory=list)
    profiler_overhead: list[ProfilerOverhead] = field(default_factory=list)
    shared: SharedData = field(default_factory=SharedData)
    threads: list[Thread] = field(default_factory=list)
    profiling_log: dict = field(default_factory=dict)
    profile_gathering_log: dict = field(default_factory=dict)

    def check_lengths(self):
        for thread in self.threads:
            thread.check_lengths()
        for counter in self.counters:
            counter.samples.check_lengths()
        for overhead in self.profiler_overhead:
            check_struct_lengths(overhead.samples, 'profiler overhead samples')
        self.shared.source_table.check_lengths()

    def json(self):
        return {
            "meta": self.meta.json(),
            "libs": [l.json() for l in self.libs],
            "pages": self.pages,
            "counters": [c.json() for c in self.counters],
            "profilerOverhead": [o.json() for o in self.profiler_overhead],
            "shared": self.shared.json(),
            "threads": [t.json() for t in self.threads],
            "profilingLog": self.profiling_log,
            "profileGatheringLog": self.profile_gathering_log,
        }
