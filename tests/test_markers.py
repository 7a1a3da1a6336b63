import pytest

from geckoproc.constants import INSTANT, INTERVAL
from geckoproc.errors import MalformedProfileError, MarkerTimeError
from geckoproc.interner import StringTable
from geckoproc.markers import (
    adjust_marker_timestamps,
    adjust_profiler_overhead_timestamps,
    adjust_table_time_deltas,
    compute_string_index_marker_fields_by_data_type,
    convert_gecko_marker_schema,
    process_marker_payload,
    process_markers,
    process_samples,
    sort_markers,
    time_column_to_compact_time_deltas,
    to_struct_of_arrays,
)
from geckoproc.profile_schema import RawMarkerTable, SamplesTable
from geckoproc.test_utils.fixtures import CURRENT_MARKERS_SCHEMA


def _payload_stack(tid, stack, time):
    return {
        'tid': tid,
        'samples': {
            'schema': {'stack': 0, 'time': 1},
            'data': [[stack, time]]
        },
    }


def _marker_struct(rows):
    """Struct of arrays of (name, start, end, phase, category, data) rows."""
    return to_struct_of_arrays({
        'schema': CURRENT_MARKERS_SCHEMA,
        'data': [list(row) for row in rows]
    })


def test_to_struct_of_arrays():
    struct = to_struct_of_arrays({
        'schema': {'a': 0, 'b': 1},
        'data': [[1, 2], [3]]
    })
    assert struct == {'length': 2, 'a': [1, 3], 'b': [2, None]}


@pytest.mark.parametrize('field_index', ['0', None, True])
def test_to_struct_of_arrays_rejects_bad_schema(field_index):
    with pytest.raises(MalformedProfileError):
        to_struct_of_arrays({'schema': {'a': field_index}, 'data': []})


def test_sort_markers_uses_end_time_then_start_time():
    markers = {
        'schema': CURRENT_MARKERS_SCHEMA,
        'data': [
            [0, 1.0, 9.0, INTERVAL, 0, None],
            [1, 5.0, None, INSTANT, 0, None],
            [2, 3.0, 0, INSTANT, 0, None],
        ]
    }
    sorted_markers = sort_markers(markers)
    assert [m[0] for m in sorted_markers['data']] == [2, 1, 0]
    # The input table isn't reordered.
    assert [m[0] for m in markers['data']] == [0, 1, 2]


def test_sort_markers_without_time_raises():
    markers = {
        'schema': CURRENT_MARKERS_SCHEMA,
        'data': [[0, 1.0, None, INSTANT, 0, None],
                 [1, None, None, INSTANT, 0, None]]
    }
    with pytest.raises(MarkerTimeError):
        sort_markers(markers)


def test_compact_time_deltas():
    assert time_column_to_compact_time_deltas([240.520375, 252.728334]) == [
        240.520375, 12.207959
    ]
    assert time_column_to_compact_time_deltas([]) == []
    assert time_column_to_compact_time_deltas([1.0, 1.0, 3.5]) == [1.0, 0.0, 2.5]


def test_process_samples():
    samples = process_samples({
        'length': 2,
        'stack': [0, None],
        'time': [1.0, 2.5],
        'eventDelay': [0.0, 3.0],
        'threadCPUDelta': [None, 12],
    })
    assert samples.time_deltas == [1.0, 1.5]
    assert samples.event_delay == [0.0, 3.0]
    assert samples.thread_cpu_delta == [None, 12]
    assert samples.responsiveness is None
    assert samples.json()['weightType'] == 'samples'


def test_process_samples_drops_null_cpu_deltas_and_keeps_responsiveness():
    samples = process_samples({
        'length': 1,
        'stack': [0],
        'time': [1.0],
        'responsiveness': [2.0],
        'threadCPUDelta': [None],
    })
    assert samples.thread_cpu_delta is None
    assert samples.responsiveness == [2.0]
    assert 'threadCPUDelta' not in samples.json()


def test_process_samples_without_delays_raises():
    with pytest.raises(MalformedProfileError):
        process_samples({'length': 0, 'stack': [], 'time': []})


def test_allocations_are_split_from_markers():
    string_array = ['JS allocation', 'Native allocation', 'Paint']
    struct = _marker_struct([
        (0, 1.0, None, INSTANT, 0, {
            'type': 'JS allocation',
            'className': 'Function',
            'typeName': 'JSObject',
            'coarseType': 'Object',
            'size': 48,
            'inNursery': True,
            'stack': _payload_stack(1, 4, 1.0),
        }),
        (1, 2.0, None, INSTANT, 0, {
            'type': 'Native allocation',
            'size': 1024,
            'memoryAddress': 0xbeef,
            'threadId': 7,
            'stack': _payload_stack(1, 2, 2.0),
        }),
        (1, 3.0, None, INSTANT, 0, {
            'type': 'Native allocation',
            'size': -1024,
            'memoryAddress': 0xbeef,
            'threadId': 7,
        }),
        (2, 4.0, 5.0, INTERVAL, 3, None),
    ])
    string_table = StringTable()
    markers, js_allocations, native_allocations = process_markers(
        struct, string_array, {}, string_table)

    assert markers.length == 1
    assert string_table.get_string(markers.name[0]) == 'Paint'
    assert markers.data == [None]

    assert js_allocations.json() == {
        'time': [1.0],
        'className': ['Function'],
        'typeName': ['JSObject'],
        'coarseType': ['Object'],
        'weight': [48],
        'weightType': 'bytes',
        'inNursery': [True],
        'stack': [4],
        'length': 1,
    }
    assert native_allocations.is_balanced
    assert native_allocations.time == [2.0, 3.0]
    assert native_allocations.weight == [1024, -1024]
    assert native_allocations.stack == [2, None]
    assert native_allocations.memory_address == [0xbeef, 0xbeef]
    assert native_allocations.thread_id == [7, 7]
    native_allocations.check_lengths()


def test_unbalanced_native_allocations():
    struct = _marker_struct([(0, 1.0, None, INSTANT, 0, {
        'type': 'Native allocation',
        'size': 8
    })])
    markers, js_allocations, native_allocations = process_markers(
        struct, ['Native allocation'], {}, StringTable())
    assert markers.length == 0
    assert js_allocations is None
    assert not native_allocations.is_balanced
    assert 'memoryAddress' not in native_allocations.json()


def test_balanced_native_allocation_without_thread_id_raises():
    struct = _marker_struct([(0, 1.0, None, INSTANT, 0, {
        'type': 'Native allocation',
        'size': 8,
        'memoryAddress': 1,
    })])
    with pytest.raises(MalformedProfileError):
        process_markers(struct, ['Native allocation'], {}, StringTable())


def test_no_allocation_tables_without_allocations():
    struct = _marker_struct([(0, 1.0, None, INSTANT, 0, None)])
    _, js_allocations, native_allocations = process_markers(
        struct, ['Paint'], {}, StringTable())
    assert js_allocations is None
    assert native_allocations is None


def test_stack_becomes_cause():
    payload = process_marker_payload(
        {'type': 'Styles', 'stack': _payload_stack(42, 3, 4.5)}, [],
        StringTable(), {})
    assert payload == {
        'type': 'Styles',
        'cause': {'tid': 42, 'time': 4.5, 'stack': 3}
    }


def test_stack_without_stack_index_is_dropped():
    payload = process_marker_payload(
        {'type': 'Styles', 'stack': _payload_stack(42, None, 4.5)}, [],
        StringTable(), {})
    assert payload == {'type': 'Styles'}


def test_gc_major_payloads():
    completed = process_marker_payload({
        'type': 'GCMajor',
        'timings': {
            'status': 'completed',
            'totals': {'mark': 1.5, 'sweep': 2},
            'mmu_20ms': 50,
            'mmu_50ms': 70,
            'slices': 2,
        }
    }, [], StringTable(), {})
    assert completed == {
        'type': 'GCMajor',
        'timings': {
            'status': 'completed',
            'phase_times': {'mark': 1500.0, 'sweep': 2000},
            'mmu_20ms': 0.5,
            'mmu_50ms': 0.7,
            'slices': 2,
        }
    }

    aborted = process_marker_payload(
        {'type': 'GCMajor', 'timings': {'status': 'aborted', 'slices': 1}},
        [], StringTable(), {})
    assert aborted == {'type': 'GCMajor', 'timings': {'status': 'aborted'}}

    with pytest.raises(MalformedProfileError):
        process_marker_payload(
            {'type': 'GCMajor', 'timings': {'status': 'pending'}}, [],
            StringTable(), {})


def test_gc_slice_payload():
    payload = process_marker_payload({
        'type': 'GCSlice',
        'timings': {'budget': '10ms', 'times': {'mark': 0.25}}
    }, [], StringTable(), {})
    assert payload == {
        'type': 'GCSlice',
        'timings': {'budget': '10ms', 'phase_times': {'mark': 250.0}}
    }


def test_ipc_pid_becomes_string():
    payload = process_marker_payload({
        'type': 'IPC',
        'startTime': 1.0,
        'otherPid': 1234,
        'messageType': 'PContent::Msg_Foo',
        'messageSeqno': 3,
        'side': 'parent',
        'direction': 'sending',
        'phase': 'endpoint',
        'sync': False,
        'unknownKey': 'dropped',
    }, [], StringTable(), {})
    assert payload['otherPid'] == '1234'
    assert payload['messageSeqno'] == 3
    assert 'unknownKey' not in payload


def test_string_index_fields_are_moved_to_the_shared_table():
    string_table = StringTable.with_backing_array(['already', 'there'])
    string_array = ['Text', 'hello']
    gecko_payload = {'type': 'Text', 'name': 1, 'other': 1}
    payload = process_marker_payload(gecko_payload, string_array,
                                     string_table, {'Text': ['name']})
    assert payload == {'type': 'Text', 'name': 2, 'other': 1}
    assert string_table.get_string(2) == 'hello'
    # The raw payload is untouched.
    assert gecko_payload['name'] == 1


def test_compositor_screenshot_urls_are_string_indexes():
    fields = compute_string_index_marker_fields_by_data_type([])
    assert fields == {'CompositorScreenshot': ['url']}

    string_table = StringTable()
    payload = process_marker_payload(
        {'type': 'CompositorScreenshot', 'url': 0, 'windowWidth': 10},
        ['data:image/jpg;base64,AAAA'], string_table, fields)
    assert string_table.get_string(payload['url']) == (
        'data:image/jpg;base64,AAAA')


def test_string_index_fields_from_schemas():
    schemas = [
        convert_gecko_marker_schema({
            'name': 'Flow',
            'display': ['marker-chart'],
            'data': [
                {'key': 'name', 'format': 'unique-string'},
                {'key': 'flow', 'format': 'flow-id'},
                {'key': 'end', 'format': 'terminating-flow-id'},
                {'key': 'text', 'format': 'string'},
            ]
        }),
        convert_gecko_marker_schema({
            'name': 'Plain',
            'display': [],
            'data': [{'key': 'text', 'format': 'string'}]
        }),
    ]
    fields = compute_string_index_marker_fields_by_data_type(schemas)
    assert fields == {
        'CompositorScreenshot': ['url'],
        'Flow': ['name', 'flow', 'end'],
    }


def test_convert_gecko_marker_schema():
    schema = convert_gecko_marker_schema({
        'name': 'Log',
        'display': ['marker-table'],
        'tableLabel': '({marker.data.module}) {marker.data.name}',
        'data': [
            {'key': 'module', 'label': 'Module', 'format': 'string',
             'searchable': True},
            {'label': 'Marker', 'value': 'Log'},
            {'label': 'Description', 'value': 'Log messages'},
            {'label': 'Other', 'value': 'discarded'},
        ],
    })
    assert schema.json() == {
        'name': 'Log',
        'display': ['marker-table'],
        'fields': [{'key': 'module', 'label': 'Module', 'format': 'string'}],
        'tableLabel': '({marker.data.module}) {marker.data.name}',
        'description': 'Log messages',
    }


def test_first_static_field_is_the_default_description():
    schema = convert_gecko_marker_schema({
        'name': 'Pinned',
        'display': [],
        'data': [{'label': 'Note', 'value': 'first'}],
    })
    assert schema.description == 'first'
    assert schema.fields == []


def test_adjust_time_deltas_moves_only_the_first_delta():
    samples = SamplesTable(stack=[0, 0], time_deltas=[1.0, 2.0], length=2)
    adjusted = adjust_table_time_deltas(samples, 10)
    assert adjusted.time_deltas == [11.0, 2.0]
    assert samples.time_deltas == [1.0, 2.0]


def test_adjust_marker_timestamps():
    markers = RawMarkerTable()
    markers.add_marker(name=0, start_time=1.0, end_time=None, phase=INSTANT,
                       category=0, data=None)
    markers.add_marker(name=1,
                       start_time=2.0,
                       end_time=3.0,
                       phase=INTERVAL,
                       category=0,
                       data={
                           'type': 'Network',
                           'startTime': 2.0,
                           'endTime': 3.0,
                           'requestStart': 2.5,
                           'cause': {'tid': 1, 'time': 1.5, 'stack': 0},
                       })
    adjusted = adjust_marker_timestamps(markers, 10)

    assert adjusted.start_time == [11.0, 12.0]
    assert adjusted.end_time == [None, 13.0]
    assert adjusted.data[0] is None
    assert adjusted.data[1] == {
        'type': 'Network',
        'startTime': 12.0,
        'endTime': 13.0,
        'requestStart': 12.5,
        'cause': {'tid': 1, 'time': 11.5, 'stack': 0},
    }
    assert markers.data[1]['startTime'] == 2.0


def test_adjust_profiler_overhead_timestamps():
    samples = {'length': 2, 'time': [1000.0, 2500.0], 'locking': [1, 2]}
    adjusted = adjust_profiler_overhead_timestamps(samples, 10)
    assert adjusted == {'length': 2, 'time': [11.0, 12.5], 'locking': [1, 2]}
