import copy
import json

import deepdiff
import pytest

from geckoproc.constants import (
    GECKO_PROFILE_VERSION,
    INSTANT,
    INTERVAL,
    INTERVAL_END,
    INTERVAL_START,
)
from geckoproc.errors import MissingMetaError, UnsupportedVersionError
from geckoproc.gecko_versioning import (
    UPGRADERS,
    NoMigration,
    NotSupported,
    Upgrade,
    upgrade_gecko_profile_to_current_version,
)
from geckoproc.test_utils.fixtures import (
    make_gecko_profile,
    make_minimal_profile_at_version,
)


def test_every_version_has_an_upgrader():
    assert sorted(UPGRADERS) == list(range(1, GECKO_PROFILE_VERSION + 1))
    for version in (1, 2, 3):
        assert isinstance(UPGRADERS[version], NotSupported)
    for version in (24, 25, 28, 30, 31):
        assert isinstance(UPGRADERS[version], NoMigration)
    for version in range(4, 30):
        if version not in (24, 25, 28):
            assert isinstance(UPGRADERS[version], Upgrade)


@pytest.mark.parametrize('version', range(4, GECKO_PROFILE_VERSION + 1))
def test_minimal_profile_reaches_current_version(version):
    profile = make_minimal_profile_at_version(version - 1)
    upgrade_gecko_profile_to_current_version(profile)
    assert profile['meta']['version'] == GECKO_PROFILE_VERSION


@pytest.mark.parametrize('version', [0, 1, 2])
def test_ancient_versions_are_rejected(version):
    profile = make_minimal_profile_at_version(version)
    with pytest.raises(UnsupportedVersionError):
        upgrade_gecko_profile_to_current_version(profile)


def test_missing_version_is_treated_as_version_0():
    profile = make_minimal_profile_at_version(3)
    del profile['meta']['version']
    with pytest.raises(UnsupportedVersionError):
        upgrade_gecko_profile_to_current_version(profile)


def test_future_version_is_rejected():
    profile = make_minimal_profile_at_version(GECKO_PROFILE_VERSION + 1)
    with pytest.raises(UnsupportedVersionError):
        upgrade_gecko_profile_to_current_version(profile)


def test_missing_meta_is_rejected():
    with pytest.raises(MissingMetaError):
        upgrade_gecko_profile_to_current_version({'threads': []})


def test_upgrading_is_idempotent(two_process_v3_profile):
    upgrade_gecko_profile_to_current_version(two_process_v3_profile)
    upgraded = copy.deepcopy(two_process_v3_profile)
    upgrade_gecko_profile_to_current_version(two_process_v3_profile)
    diff = deepdiff.DeepDiff(upgraded, two_process_v3_profile)
    assert not diff, diff


def test_current_profile_is_left_alone(thread_builder):
    thread_builder.add_sample(thread_builder.add_call_stack('main'), 1.0)
    profile = make_gecko_profile([thread_builder.build()])
    expected = copy.deepcopy(profile)
    upgrade_gecko_profile_to_current_version(profile)
    assert not deepdiff.DeepDiff(expected, profile)


def test_v3_profile_upgrade(two_process_v3_profile):
    profile = two_process_v3_profile
    upgrade_gecko_profile_to_current_version(profile)

    assert profile['meta']['version'] == GECKO_PROFILE_VERSION
    assert [lib['debugName'] for lib in profile['libs']
           ] == ['libxul.so', 'libc.so']
    assert profile['libs'][0]['path'] == '/usr/lib/libxul.so'
    assert profile['libs'][0]['arch'] == 'x86_64'
    assert profile['libs'][0]['debugPath'] == ''

    (subprocess_profile,) = profile['processes']
    assert len(profile['threads']) == 1
    # Content threads of old tab processes were renamed.
    sub_thread = subprocess_profile['threads'][0]
    assert sub_thread['name'] == 'GeckoMain'
    assert sub_thread['processType'] == 'tab'
    assert profile['threads'][0]['processType'] == 'default'

    thread = profile['threads'][0]
    assert thread['samples']['schema'] == {
        'stack': 0,
        'time': 1,
        'responsiveness': 2,
        'rss': 3,
        'uss': 4
    }
    assert all(len(sample) == 5 for sample in thread['samples']['data'])
    assert thread['registerTime'] == 0
    assert thread['unregisterTime'] is None
    assert profile['pausedRanges'] == []

    assert thread['frameTable']['schema'] == {
        'location': 0,
        'relevantForJS': 1,
        'innerWindowID': 2,
        'implementation': 3,
        'line': 5,
        'column': 6,
        'category': 7,
        'subcategory': 8,
    }
    # The OTHER bitmask is category 1, with subcategory 0.
    first_frame = thread['frameTable']['data'][0]
    assert first_frame[1] is False
    assert first_frame[2] == 0
    assert first_frame[7] == 1
    assert first_frame[8] == 0

    category_names = [c['name'] for c in profile['meta']['categories']]
    assert category_names[:8] == [
        'Idle', 'Other', 'JavaScript', 'Layout', 'Graphics', 'DOM', 'GC / CC',
        'Network'
    ]
    assert all(c['subcategories'] == ['Other']
               for c in profile['meta']['categories'])
    assert [s['name'] for s in profile['meta']['markerSchema']][:3] == [
        'GCMajor', 'GCMinor', 'GCSlice'
    ]
    assert subprocess_profile['meta']['markerSchema'] == []


def test_gc_major_slices_double_encoding(two_process_v3_profile):
    upgrade_gecko_profile_to_current_version(two_process_v3_profile)
    markers = two_process_v3_profile['threads'][0]['markers']
    assert markers['schema'] == {
        'name': 0,
        'startTime': 1,
        'endTime': 2,
        'phase': 3,
        'category': 4,
        'data': 5
    }
    (marker,) = markers['data']
    assert marker[1:5] == [2.5, None, INSTANT, 6]
    timings = marker[5]['timings']
    assert timings['status'] == 'completed'
    assert timings['slices'] == 2
    assert timings['slices_list'] == [{'slice': 0}, {'slice': 1}]
    assert timings['allocated_bytes'] == 2 * 1024 * 1024


def test_payload_times_become_interval(two_process_v3_profile):
    upgrade_gecko_profile_to_current_version(two_process_v3_profile)
    sub_thread = two_process_v3_profile['processes'][0]['threads'][0]
    (marker,) = sub_thread['markers']['data']
    name, start, end, phase, category, data = marker
    assert sub_thread['stringTable'][name] == 'UserTiming'
    assert (start, end, phase) == (1.5, 2.5, INTERVAL)
    # UserTiming is a DOM marker.
    assert category == 5
    assert 'startTime' not in data and 'endTime' not in data


def _v9_profile_with_markers(string_table, markers):
    return {
        'meta': {'version': 9, 'startTime': 0},
        'libs': [],
        'processes': [],
        'threads': [{
            'name': 'GeckoMain',
            'stringTable': string_table,
            'markers': {'schema': {'name': 0, 'time': 1, 'data': 2},
                        'data': markers},
            'frameTable': {'schema': {'location': 0, 'category': 4},
                           'data': []},
            'samples': {'schema': {'stack': 0, 'time': 1}, 'data': []},
            'stackTable': {'schema': {'prefix': 0, 'frame': 1}, 'data': []},
        }],
    }


def test_dom_events_become_start_end_pairs_with_latency():
    profile = _v9_profile_with_markers(['DOMEvent'], [[
        0, 5.0, {
            'type': 'DOMEvent',
            'eventType': 'click',
            'phase': 1,
            'startTime': 5.0,
            'endTime': 8.0,
            'timeStamp': 4.0,
        }
    ]])
    upgrade_gecko_profile_to_current_version(profile)

    markers = profile['threads'][0]['markers']['data']
    assert len(markers) == 2
    start_marker, end_marker = markers
    assert start_marker[1:4] == [5.0, None, INTERVAL_START]
    assert end_marker[1:4] == [None, 8.0, INTERVAL_END]
    assert start_marker[5] == {
        'type': 'DOMEvent',
        'category': 'DOMEvent',
        'interval': 'start',
        'eventType': 'click',
        'phase': 1,
        'latency': 1.0,
    }
    # DOMEvent is a DOM marker.
    assert start_marker[4] == end_marker[4] == 5


def test_relevant_for_js_and_file_io_renames():
    profile = _v9_profile_with_markers(
        ['AutoEntryScript setTimeout handler', 'Node.appendChild', 'foo',
         'DiskIO'],
        [[3, 1.0, {'type': 'DiskIO', 'operation': 'write'}]])
    thread = profile['threads'][0]
    thread['frameTable']['data'] = [[0], [1], [2]]

    upgrade_gecko_profile_to_current_version(profile)

    frames = thread['frameTable']['data']
    string_table = thread['stringTable']
    assert [frame[1] for frame in frames] == [True, True, False]
    assert string_table[frames[0][0]] == 'setTimeout handler'
    (marker,) = thread['markers']['data']
    assert string_table[marker[0]] == 'FileIO'
    assert marker[5]['type'] == 'FileIO'


def test_pages_get_inner_window_ids():
    profile = make_minimal_profile_at_version(16)
    profile['pages'] = [
        {'docshellId': '{a}', 'historyId': 1, 'url': 'https://a.org',
         'isSubFrame': False},
        {'docshellId': '{a}', 'historyId': 2, 'url': 'https://a.org/2',
         'isSubFrame': False},
        {'docshellId': '{b}', 'historyId': 1, 'url': 'https://b.org',
         'isSubFrame': True},
    ]
    profile['meta']['configuration'] = {'activeBrowsingContextID': 7}

    upgrade_gecko_profile_to_current_version(profile)

    assert profile['pages'] == [
        {'url': 'https://a.org', 'tabID': 1, 'innerWindowID': 1,
         'embedderInnerWindowID': 0},
        {'url': 'https://a.org/2', 'tabID': 1, 'innerWindowID': 2,
         'embedderInnerWindowID': 0},
        {'url': 'https://b.org', 'tabID': 2, 'innerWindowID': 3,
         'embedderInnerWindowID': 0},
    ]
    assert profile['meta']['configuration'] == {'activeTabID': 7}


def test_counter_sample_groups_are_flattened():
    profile = make_minimal_profile_at_version(17)
    samples = {'schema': {'time': 0, 'count': 1}, 'data': [[1.0, 4]]}
    profile['counters'] = [
        {'name': 'malloc', 'category': 'Memory', 'description': '',
         'sample_groups': {'id': 0, 'samples': samples}},
        {'name': 'empty', 'category': 'Memory', 'description': '',
         'sample_groups': {}},
    ]

    upgrade_gecko_profile_to_current_version(profile)

    malloc, empty = profile['counters']
    assert malloc['samples'] == samples
    assert 'sample_groups' not in malloc
    assert empty['sample_groups'] == []


def test_searchable_marker_schema_fields():
    profile = make_minimal_profile_at_version(25)
    profile['meta']['markerSchema'] = [
        {'name': 'Log', 'display': [], 'data': [
            {'key': 'module', 'format': 'string'},
            {'key': 'other', 'format': 'string'},
        ]},
        {'name': 'FileIO', 'display': [], 'data': []},
    ]

    upgrade_gecko_profile_to_current_version(profile)

    log_schema, file_io_schema = profile['meta']['markerSchema']
    assert log_schema['data'][0]['searchable'] is True
    assert 'searchable' not in log_schema['data'][1]
    assert file_io_schema['data'] == [{
        'key': 'threadId',
        'label': 'Thread ID',
        'format': 'string',
        'searchable': True,
    }]


def test_subprocesses_are_upgraded_with_the_same_code():
    subprocess_profile = {
        'meta': {'version': 3, 'startTime': 5},
        'libs': '[]',
        'threads': [],
    }
    profile = {
        'meta': {'version': 3, 'startTime': 0},
        'libs': '[]',
        'threads': [json.dumps(subprocess_profile)],
    }
    upgrade_gecko_profile_to_current_version(profile)
    (upgraded_subprocess,) = profile['processes']
    assert upgraded_subprocess['libs'] == []
    assert upgraded_subprocess['pausedRanges'] == []
    assert upgraded_subprocess['meta']['shutdownTime'] is None
    assert upgraded_subprocess['meta']['markerSchema'] == []


def _v15_process(marker_schema, markers):
    profile = make_minimal_profile_at_version(15)
    profile['threads'] = [{
        'name': 'GeckoMain',
        'stringTable': ['Paint'],
        'markers': {'schema': marker_schema, 'data': markers},
        'frameTable': {'schema': {'location': 0, 'category': 4}, 'data': []},
        'samples': {'schema': {'stack': 0, 'time': 1}, 'data': []},
        'stackTable': {'schema': {'prefix': 0, 'frame': 1}, 'data': []},
    }]
    return profile


def test_uncategorized_subprocess_of_categorized_process():
    profile = _v15_process({'name': 0, 'time': 1, 'data': 2, 'category': 3},
                           [[0, 1.0, None, 2]])
    profile['processes'] = [
        _v15_process({'name': 0, 'time': 1, 'data': 2}, [[0, 2.0, None]])
    ]

    upgrade_gecko_profile_to_current_version(profile)

    (root_marker,) = profile['threads'][0]['markers']['data']
    assert root_marker[1:5] == [1.0, None, INSTANT, 2]
    subprocess_markers = profile['processes'][0]['threads'][0]['markers']
    assert subprocess_markers['schema']['category'] == 4
    (subprocess_marker,) = subprocess_markers['data']
    assert subprocess_marker[1:5] == [2.0, None, INSTANT, None]
