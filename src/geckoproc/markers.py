"""
markers.py

Turns the schema-indexed tuple tables of one raw thread into the columnar
tables of the processed format: samples, stacks, frames and markers. Markers
are also reshaped here: stacks become causes, GC payloads are normalized, and
allocation markers are moved into their own tables.

The adjust_* functions shift processed tables of a subprocess onto the time
base of the root process.
"""

import dataclasses
import math

from geckoproc.configured_logger import new_logger
from geckoproc.errors import MalformedProfileError, MarkerTimeError
from geckoproc.interner import StringTable
from geckoproc.profile_schema import (
    FrameTable,
    JsAllocationsTable,
    MarkerSchema,
    MarkerSchemaField,
    NativeAllocationsTable,
    RawMarkerTable,
    RawStackTable,
    SamplesTable,
)

logger = new_logger('markers')

NS_PER_MS = 1000000

# Payload formats whose values are indexes into the thread's string table.
STRING_INDEX_FIELD_FORMATS = ('unique-string', 'flow-id', 'terminating-flow-id')

# Network payload timestamps that move with the process time base.
NETWORK_TIME_FIELDS = (
    'domainLookupStart',
    'domainLookupEnd',
    'connectStart',
    'tcpConnectEnd',
    'secureConnectionStart',
    'connectEnd',
    'requestStart',
    'responseStart',
    'responseEnd',
)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_struct_of_arrays(gecko_table: dict) -> dict:
    """
    Turn a raw `{schema, data}` table into a struct of arrays.

    e.g. {'schema': {'a': 0, 'b': 1}, 'data': [[1, 2], [3]]} becomes
    {'length': 2, 'a': [1, 3], 'b': [2, None]}. Items missing from a short
    tuple become None.
    """
    data = gecko_table['data']
    result = {'length': len(data)}
    for field_name, field_index in gecko_table['schema'].items():
        if not isinstance(field_index, int) or isinstance(field_index, bool):
            raise MalformedProfileError(
                'fieldIndex must be a number in the Gecko profile table.')
        result[field_name] = [
            entry[field_index] if field_index < len(entry) else None
            for entry in data
        ]
    return result


def _struct_column(struct: dict, name: str) -> list:
    column = struct.get(name)
    if column is None:
        return [None] * struct['length']
    return column


def sort_markers(gecko_markers: dict) -> dict:
    """
    Copy of the raw marker table with its tuples sorted by time.

    The key is the end time, or the start time when the end time is null or
    zero. Tracing markers arrive in capture order rather than time order.
    """
    schema = gecko_markers['schema']
    start_index = schema['startTime']
    end_index = schema['endTime']

    def marker_time(marker):
        time = ((marker[end_index] if end_index < len(marker) else None) or
                (marker[start_index] if start_index < len(marker) else None))
        if time is None:
            logger.error(f'Marker without a time: {marker!r}')
            raise MarkerTimeError('A marker had null start and end time.')
        return time

    return dict(gecko_markers,
                data=sorted(gecko_markers['data'], key=marker_time))


def time_column_to_compact_time_deltas(time: list[float]) -> list[float]:
    """
    Deltas between consecutive timestamps, the first one relative to zero.

    Each timestamp is rounded to integer nanoseconds before subtracting, so
    that the deltas stay short when written as JSON (252.728334 - 240.520375
    is 12.207958999999988 in floating point, but 12.207959 here).
    """
    time_deltas = []
    prev_time_ns = 0
    for t in time:
        current_time_ns = math.floor(t * NS_PER_MS + 0.5)
        time_deltas.append((current_time_ns - prev_time_ns) / NS_PER_MS)
        prev_time_ns = current_time_ns
    return time_deltas


def process_samples(gecko_samples: dict) -> SamplesTable:
    samples = SamplesTable(
        stack=gecko_samples['stack'],
        time_deltas=time_column_to_compact_time_deltas(gecko_samples['time']),
        weight=None,
        weight_type='samples',
        length=gecko_samples['length'],
    )

    thread_cpu_delta = gecko_samples.get('threadCPUDelta')
    # Threads such as JVM threads only have null CPU deltas; drop the column
    # for them.
    if thread_cpu_delta and any(
            value is not None for value in thread_cpu_delta):
        samples.thread_cpu_delta = thread_cpu_delta

    if 'eventDelay' in gecko_samples:
        samples.event_delay = gecko_samples['eventDelay']
    elif 'responsiveness' in gecko_samples:
        samples.responsiveness = gecko_samples['responsiveness']
    else:
        raise MalformedProfileError(
            'Expected an eventDelay or responsiveness array in the samples '
            'table, but none was found.')
    return samples


def process_frame_table(gecko_frame_struct: dict, frame_funcs: list[int],
                        frame_addresses: list[int | None]) -> FrameTable:
    length = gecko_frame_struct['length']
    return FrameTable(
        address=[-1 if a is None else a for a in frame_addresses],
        inline_depth=[0] * length,
        category=_struct_column(gecko_frame_struct, 'category'),
        subcategory=_struct_column(gecko_frame_struct, 'subcategory'),
        func=frame_funcs,
        native_symbol=[None] * length,
        inner_window_id=_struct_column(gecko_frame_struct, 'innerWindowID'),
        line=_struct_column(gecko_frame_struct, 'line'),
        column=_struct_column(gecko_frame_struct, 'column'),
        length=length,
    )


def process_stack_table(gecko_stack_struct: dict) -> RawStackTable:
    return RawStackTable(frame=gecko_stack_struct['frame'],
                         prefix=gecko_stack_struct['prefix'],
                         length=gecko_stack_struct['length'])


def _first_stack_sample(payload: dict):
    stack = payload.get('stack')
    if stack and stack['samples']['data']:
        return stack['samples']['schema'], stack['samples']['data'][0]
    return None


def convert_stack_to_cause(payload: dict) -> dict:
    """
    Replace the `stack` field of a payload with a `cause`: the tid, the time
    and the stack index of the first sample of the embedded profile.

    If that sample has no stack, the field is removed without a cause.
    """
    first_sample = _first_stack_sample(payload)
    if first_sample is None:
        return payload

    schema, sample = first_sample
    new_payload = {k: v for k, v in payload.items() if k != 'stack'}
    stack_index = sample[schema['stack']] if schema['stack'] < len(
        sample) else None
    if stack_index is not None:
        new_payload['cause'] = {
            'tid': payload['stack'].get('tid'),
            'time': sample[schema['time']],
            'stack': stack_index,
        }
    return new_payload


def convert_payload_stack_to_index(payload: dict | None) -> int | None:
    """Stack index of the first sample of a payload's stack, if any."""
    if not payload:
        return None
    first_sample = _first_stack_sample(payload)
    if first_sample is None:
        return None
    schema, sample = first_sample
    return sample[schema['stack']] if schema['stack'] < len(sample) else None


def convert_phase_times(old_phases: dict) -> dict:
    """GC phase times from milliseconds to microseconds."""
    return {phase: time * 1000 for phase, time in old_phases.items()}


def _divide_or_none(value, divisor):
    return value / divisor if _is_number(value) else None


def process_marker_payload(gecko_payload: dict | None, string_array: list[str],
                           string_table: StringTable,
                           string_index_fields_by_data_type: dict[str, list[str]]):
    """
    Convert one raw payload: stack to cause, GC timings, IPC pid, and string
    index fields moved from the thread string table to the shared one.
    """
    if not gecko_payload:
        return None

    payload = convert_stack_to_cause(gecko_payload)
    payload_type = payload.get('type')

    if payload_type == 'GCSlice':
        timings = dict(payload.get('timings') or {})
        times = timings.pop('times', None)
        timings['phase_times'] = convert_phase_times(times) if times else {}
        return {'type': 'GCSlice', 'timings': timings}

    if payload_type == 'GCMajor':
        gecko_timings = payload.get('timings') or {}
        status = gecko_timings.get('status')
        if status == 'completed':
            timings = {k: v for k, v in gecko_timings.items() if k != 'totals'}
            timings['phase_times'] = convert_phase_times(
                gecko_timings.get('totals') or {})
            timings['mmu_20ms'] = _divide_or_none(
                gecko_timings.get('mmu_20ms'), 100)
            timings['mmu_50ms'] = _divide_or_none(
                gecko_timings.get('mmu_50ms'), 100)
            return {'type': 'GCMajor', 'timings': timings}
        if status == 'aborted':
            return {'type': 'GCMajor', 'timings': {'status': 'aborted'}}
        raise MalformedProfileError(f'Unknown GCMajor status {status!r}')

    if payload_type == 'IPC':
        ipc_payload = {'type': 'IPC'}
        for key in ('startTime', 'endTime', 'otherPid', 'messageType',
                    'messageSeqno', 'side', 'direction', 'phase', 'sync',
                    'threadId'):
            if key in payload:
                ipc_payload[key] = payload[key]
        # Pids are strings in the processed format.
        ipc_payload['otherPid'] = str(payload.get('otherPid'))
        return ipc_payload

    if not payload_type:
        return payload

    string_index_fields = string_index_fields_by_data_type.get(payload_type)
    if string_index_fields is None:
        return payload

    new_payload = payload
    for field_key in string_index_fields:
        string_index = payload.get(field_key)
        if _is_number(string_index):
            if new_payload is payload:
                new_payload = dict(payload)
            new_payload[field_key] = string_table.index_for_string(
                string_array[string_index])
    return new_payload


def _ensure_exists(value, message):
    if value is None:
        raise MalformedProfileError(message)
    return value


def process_markers(gecko_markers: dict, string_array: list[str],
                    string_index_fields_by_data_type: dict[str, list[str]],
                    string_table: StringTable):
    """
    Build the processed marker table of a thread from its sorted marker struct.

    "JS allocation" and "Native allocation" markers are moved out into
    allocation tables. Whether native allocations carry memoryAddress and
    threadId columns is decided by the first native allocation.

    Returns (markers, js_allocations, native_allocations); the allocation
    tables are None when the thread has no such markers.
    """
    markers = RawMarkerTable()
    js_allocations = JsAllocationsTable()
    native_allocations = NativeAllocationsTable()
    memory_address = []
    thread_id = []
    has_memory_addresses = None

    for marker_index in range(gecko_markers['length']):
        gecko_payload = gecko_markers['data'][marker_index]
        start_time = gecko_markers['startTime'][marker_index]
        payload_type = gecko_payload.get('type') if gecko_payload else None

        if payload_type == 'JS allocation':
            js_allocations.add_allocation(
                time=_ensure_exists(
                    start_time, 'JS Allocations are assumed to have a startTime'),
                class_name=gecko_payload.get('className'),
                type_name=gecko_payload.get('typeName'),
                coarse_type=gecko_payload.get('coarseType'),
                weight=gecko_payload.get('size'),
                in_nursery=gecko_payload.get('inNursery'),
                stack=convert_payload_stack_to_index(gecko_payload),
            )
            continue

        if payload_type == 'Native allocation':
            if has_memory_addresses is None:
                has_memory_addresses = 'memoryAddress' in gecko_payload
            native_allocations.time.append(
                _ensure_exists(
                    start_time,
                    'Native Allocations are assumed to have a startTime'))
            native_allocations.weight.append(gecko_payload.get('size'))
            native_allocations.stack.append(
                convert_payload_stack_to_index(gecko_payload))
            native_allocations.length += 1
            if has_memory_addresses:
                memory_address.append(
                    _ensure_exists(
                        gecko_payload.get('memoryAddress'),
                        'Could not find the memoryAddress property on a gecko marker payload.'
                    ))
                thread_id.append(
                    _ensure_exists(
                        gecko_payload.get('threadId'),
                        'Could not find a threadId property on a gecko marker payload.'
                    ))
            continue

        payload = process_marker_payload(gecko_payload, string_array,
                                         string_table,
                                         string_index_fields_by_data_type)
        markers.add_marker(
            name=string_table.index_for_string(
                string_array[gecko_markers['name'][marker_index]]),
            start_time=start_time,
            end_time=gecko_markers['endTime'][marker_index],
            phase=gecko_markers['phase'][marker_index],
            category=gecko_markers['category'][marker_index],
            data=payload,
        )

    if native_allocations.length == 0:
        native_allocations = None
    elif has_memory_addresses:
        native_allocations.memory_address = memory_address
        native_allocations.thread_id = thread_id

    if js_allocations.length == 0:
        js_allocations = None

    return markers, js_allocations, native_allocations


def adjust_table_time_deltas(table, delta: float):
    """Shift a table stored as time deltas by moving its first delta."""
    time_deltas = list(table.time_deltas)
    if time_deltas:
        time_deltas[0] += delta
    return dataclasses.replace(table, time_deltas=time_deltas)


def adjust_table_timestamps(table, delta: float):
    return dataclasses.replace(table, time=[t + delta for t in table.time])


def adjust_profiler_overhead_timestamps(samples: dict, delta: float) -> dict:
    """Overhead times are microseconds; they come out as milliseconds."""
    return dict(samples, time=[t / 1000 + delta for t in samples['time']])


def _adjust_payload_timestamps(data: dict, delta: float) -> dict:
    new_data = dict(data)
    for key in ('startTime', 'endTime'):
        if _is_number(new_data.get(key)):
            new_data[key] += delta
    cause = new_data.get('cause')
    if cause and cause.get('time') is not None:
        new_data['cause'] = dict(cause, time=cause['time'] + delta)
    if new_data.get('type') == 'Network':
        for key in NETWORK_TIME_FIELDS:
            if _is_number(new_data.get(key)):
                new_data[key] += delta
    return new_data


def adjust_marker_timestamps(markers: RawMarkerTable,
                             delta: float) -> RawMarkerTable:
    """Shift every timestamp of a marker table, payloads included."""

    def adjust(time):
        return time if time is None else time + delta

    return dataclasses.replace(
        markers,
        start_time=[adjust(t) for t in markers.start_time],
        end_time=[adjust(t) for t in markers.end_time],
        data=[
            _adjust_payload_timestamps(data, delta) if data else data
            for data in markers.data
        ],
    )


def convert_gecko_marker_schema(gecko_schema: dict) -> MarkerSchema:
    """
    Raw marker schema to processed marker schema.

    Keyed data entries become fields. Of the static entries only one is kept,
    as the description: the one labelled "Description", or else the first.
    """
    fields = []
    static_fields = []
    for f in gecko_schema.get('data') or []:
        if 'key' in f:
            fields.append(
                MarkerSchemaField(key=f['key'],
                                  label=f.get('label'),
                                  format=f.get('format'),
                                  hidden=f.get('hidden')))
        else:
            static_fields.append(f)

    description = None
    if static_fields:
        description_index = next(
            (i for i, f in enumerate(static_fields)
             if f.get('label') == 'Description'), 0)
        discarded = [
            f for i, f in enumerate(static_fields)
            if i != description_index and f.get('label') != 'Marker' and
            f.get('value') != 'UserTiming'
        ]
        if discarded:
            logger.warning(
                f"Discarding the following static fields from marker schema "
                f"\"{gecko_schema.get('name')}\": " + ', '.join(
                    f"{f.get('label')}: {f.get('value')}" for f in discarded))
        description = static_fields[description_index].get('value')

    return MarkerSchema(
        name=gecko_schema['name'],
        display=gecko_schema.get('display') or [],
        fields=fields,
        tooltip_label=gecko_schema.get('tooltipLabel'),
        table_label=gecko_schema.get('tableLabel'),
        chart_label=gecko_schema.get('chartLabel'),
        description=description,
        graphs=gecko_schema.get('graphs'),
        is_stack_based=gecko_schema.get('isStackBased'),
    )


def compute_string_index_marker_fields_by_data_type(
        marker_schemas: list[MarkerSchema]) -> dict[str, list[str]]:
    """Payload keys holding string indexes, per marker data type."""
    # CompositorScreenshot markers have no schema, but their url is a string
    # index.
    fields_by_data_type = {'CompositorScreenshot': ['url']}
    for schema in marker_schemas:
        string_index_fields = [
            f.key
            for f in schema.fields
            if f.format in STRING_INDEX_FIELD_FORMATS and f.key
        ]
        if string_index_fields:
            fields_by_data_type[schema.name] = string_index_fields
    return fields_by_data_type
