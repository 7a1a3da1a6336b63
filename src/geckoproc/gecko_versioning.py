"""
gecko_versioning.py

Upgrades old versions of the raw ("Gecko") profile format to the current one.

Old captures saved to disk, and captures from non-Nightly builds of the
browser, use older revisions of the format. UPGRADERS[v] moves a profile from
version v - 1 to version v by mutating it in place, and every entry recurses
into the subprocess profiles with the same code, since a subprocess profile
has the same shape as the root one.

Every version has an entry, of one of three kinds:
  - Upgrade: a real migration.
  - NoMigration: the version bump didn't change anything we can convert.
  - NotSupported: the version is too old; any profile claiming it is rejected.
"""

import copy
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from geckoproc.configured_logger import new_logger
from geckoproc.constants import (
    DEFAULT_CATEGORIES,
    GECKO_PROFILE_VERSION,
    INSTANT,
    INTERVAL,
    INTERVAL_END,
    INTERVAL_START,
    UNANNOTATED_VERSION,
    VERSION_11_CATEGORIES,
)
from geckoproc.errors import (
    MalformedProfileError,
    MissingMetaError,
    UnsupportedVersionError,
)
from geckoproc.interner import StringTable

logger = new_logger('gecko_versioning')

GeckoProfile = dict[str, Any]


@dataclass(frozen=True)
class Upgrade:
    fn: Callable[[GeckoProfile], None]

    def apply(self, profile: GeckoProfile):
        self.fn(profile)


@dataclass(frozen=True)
class NoMigration:
    reason: str

    def apply(self, profile: GeckoProfile):
        pass


@dataclass(frozen=True)
class NotSupported:
    reason: str

    def apply(self, profile: GeckoProfile):
        raise UnsupportedVersionError(self.reason)


UPGRADERS: dict[int, Upgrade | NoMigration | NotSupported] = {}


def upgrader(version: int):
    """Register the decorated function as the upgrader to `version`."""

    def register(fn):
        assert version not in UPGRADERS, version
        UPGRADERS[version] = Upgrade(fn)
        return fn

    return register


def get_profile_meta(profile) -> dict:
    if isinstance(profile, dict) and isinstance(profile.get('meta'), dict):
        return profile['meta']
    raise MissingMetaError('Could not find the meta property on a profile.')


def upgrade_gecko_profile_to_current_version(profile: GeckoProfile):
    """
    Upgrade the profile to GECKO_PROFILE_VERSION by mutating it.

    Running this on a profile that is already current does nothing.

    Raises:
        MissingMetaError: the profile has no meta object.
        UnsupportedVersionError: the profile is newer than this code, or so
            old that no conversion exists for it.
    """
    profile_version = get_profile_meta(profile).get(
        'version') or UNANNOTATED_VERSION
    if profile_version == GECKO_PROFILE_VERSION:
        return

    if profile_version > GECKO_PROFILE_VERSION:
        raise UnsupportedVersionError(
            f'Unable to parse a Gecko profile of version {profile_version}. '
            f'The most recent version understood by this converter is version '
            f'{GECKO_PROFILE_VERSION}; a newer release is needed.')

    logger.debug(
        f'Upgrading Gecko profile from version {profile_version} to {GECKO_PROFILE_VERSION}'
    )
    for dest_version in range(profile_version + 1, GECKO_PROFILE_VERSION + 1):
        UPGRADERS[dest_version].apply(profile)

    get_profile_meta(profile)['version'] = GECKO_PROFILE_VERSION


def _subprocesses(p: GeckoProfile) -> list[GeckoProfile]:
    return p.get('processes') or []


def _for_each_process(p: GeckoProfile, fn: Callable[[GeckoProfile], None]):
    """Apply fn to p and, depth first, to all of its subprocess profiles."""
    fn(p)
    for subprocess_profile in _subprocesses(p):
        _for_each_process(subprocess_profile, fn)


def _set_tuple_item(row: list, index: int, value):
    """Assign row[index], growing the tuple with nulls when it's too short."""
    if index >= len(row):
        row.extend([None] * (index + 1 - len(row)))
    row[index] = value


def _tuple_item(row: list, index: Optional[int]):
    if index is None or index >= len(row):
        return None
    return row[index]


def _arch_from_abi(abi):
    if abi == 'x86_64-gcc3':
        return 'x86_64'
    return abi


UPGRADERS[1] = NotSupported(
    'Gecko profiles without version numbers are very old and no conversion '
    'code has been written for that version of the profile format.')
UPGRADERS[2] = NotSupported(
    'Gecko profile version 1 is very old and no conversion code has been '
    'written for that version of the profile format.')
UPGRADERS[3] = NotSupported(
    'Gecko profile version 2 is very old and no conversion code has been '
    'written for that version of the profile format.')


@upgrader(4)
def _convert_to_version_4(profile):
    # Before version 4, p.libs was a JSON string. Now it's an array sorted by
    # start address, each lib with debugName, debugPath, breakpadId and path.
    # Subprocess profiles are still JSON strings inside the threads array.

    def convert_lib(lib, abi):
        if 'breakpadId' in lib:
            lib['debugName'] = lib['name'][lib['name'].rfind('/') + 1:]
        else:
            lib['debugName'] = lib['pdbName']
            pdb_sig = re.sub(r'[{}-]', '', lib['pdbSignature']).upper()
            lib['breakpadId'] = f"{pdb_sig}{lib['pdbAge']}"
        lib.pop('pdbName', None)
        lib.pop('pdbAge', None)
        lib.pop('pdbSignature', None)
        lib['path'] = lib['name']
        lib['name'] = (lib['debugName'][:-4]
                       if lib['debugName'].endswith('.pdb') else
                       lib['debugName'])
        lib['arch'] = _arch_from_abi(abi)
        lib['debugPath'] = ''
        return lib

    def convert(p):
        libs = p['libs']
        if isinstance(libs, str):
            libs = json.loads(libs)
        abi = p['meta'].get('abi')
        p['libs'] = sorted((convert_lib(lib, abi) for lib in libs),
                           key=lambda lib: lib['start'])

        for thread_index, thread in enumerate(p['threads']):
            if isinstance(thread, str):
                subprocess_profile = json.loads(thread)
                convert(subprocess_profile)
                p['threads'][thread_index] = json.dumps(subprocess_profile)
            elif 'processType' not in thread:
                # Early version 3 profiles named every thread of a tab
                # process "Content" and had no processType; the version
                # number wasn't bumped when that changed.
                if thread.get('name') == 'Content':
                    thread['processType'] = 'tab'
                    thread['name'] = 'GeckoMain'
                elif thread.get('name') == 'Plugin':
                    thread['processType'] = 'plugin'
                else:
                    thread['processType'] = 'default'

        p['meta']['version'] = 4

    convert(profile)


@upgrader(5)
def _convert_to_version_5(profile):
    # Subprocess profiles move from JSON strings in the threads array to a
    # separate "processes" array of real objects.

    def convert(p):
        processes = []
        threads = []
        for thread_or_process in p['threads']:
            if isinstance(thread_or_process, str):
                process_profile = json.loads(thread_or_process)
                convert(process_profile)
                processes.append(process_profile)
            else:
                threads.append(thread_or_process)
        p['processes'] = processes
        p['threads'] = threads
        p['meta']['version'] = 5

    convert(profile)


@upgrader(6)
def _convert_to_version_6(profile):
    # The frameNumber column was removed from the samples table. It used to
    # be the last item of the tuple, at index 5.

    def convert(p):
        for thread in p['threads']:
            thread['samples']['schema'].pop('frameNumber', None)
            for sample in thread['samples']['data']:
                del sample[5:]

    _for_each_process(profile, convert)


@upgrader(7)
def _convert_to_version_7(profile):
    # The type field of DOMEvent payloads was renamed to eventType.

    def convert(p):
        for thread in p['threads']:
            name_index = thread['markers']['schema']['name']
            data_index = thread['markers']['schema']['data']
            for marker in thread['markers']['data']:
                if thread['stringTable'][marker[name_index]] == 'DOMEvent':
                    data = marker[data_index]
                    data['eventType'] = data.get('type')
                    data['type'] = 'DOMEvent'

    _for_each_process(profile, convert)


@upgrader(8)
def _convert_to_version_8(profile):
    # New: meta.shutdownTime, pausedRanges, and per thread registerTime and
    # unregisterTime. Missing data can't be invented, so: the profiler was
    # never paused, every process is still alive, and every thread was
    # registered at process startup and is still alive.

    def convert(p):
        p['pausedRanges'] = []
        p['meta']['shutdownTime'] = None
        for thread in p['threads']:
            thread['registerTime'] = 0
            thread['unregisterTime'] = None

    _for_each_process(profile, convert)


def _upgrade_gc_major_marker_8_to_9(marker):
    timings = marker.get('timings')
    if isinstance(timings, dict) and 'status' not in timings:
        # The old GCMajor marker.
        timings['status'] = 'completed'

        # The old version could include the slices field twice with different
        # meanings, so it's either the number of slices or a list of them.
        if isinstance(timings.get('slices'), list):
            timings['slices_list'] = timings['slices']
            timings['slices'] = len(timings['slices'])

        if 'allocated' in timings:
            timings['allocated_bytes'] = timings['allocated'] * 1024 * 1024
    return marker


def _upgrade_gc_minor_marker(marker):
    nursery = marker.get('nursery')
    if nursery is None:
        return marker
    if 'status' in nursery:
        if nursery['status'] == 'no collection':
            nursery['status'] = 'nursery empty'
        return marker

    # The old GCMinor format: rename some properties and set the status.
    # Properties such as promotion_rate are kept so they still show up in the
    # raw data of converted profiles.
    nursery['status'] = 'complete'
    for old_key, new_key in (('nursery_bytes', 'bytes_used'),
                             ('new_nursery_bytes', 'new_capacity'),
                             ('timings', 'phase_times')):
        if old_key in nursery:
            nursery[new_key] = nursery.pop(old_key)
    return marker


@upgrader(9)
def _convert_to_version_9(profile):
    # Upgrade GC markers.

    def convert(p):
        for thread in p['threads']:
            data_index = thread['markers']['schema']['data']
            for marker_tuple in thread['markers']['data']:
                marker = _tuple_item(marker_tuple, data_index)
                if not marker:
                    continue
                if marker.get('type') == 'GCMinor':
                    marker = _upgrade_gc_minor_marker(marker)
                elif marker.get('type') == 'GCMajor':
                    marker = _upgrade_gc_major_marker_8_to_9(marker)
                marker_tuple[data_index] = marker

    _for_each_process(profile, convert)


@upgrader(10)
def _convert_to_version_10(profile):
    # DOMEvent markers lost their startDate and endDate and became tracing
    # markers, which need a start marker and an end marker. The old marker
    # becomes the start marker, and an end marker is appended for it. Raw
    # markers don't need to be sorted by time.

    def convert(p):
        for thread in p['threads']:
            markers = thread['markers']
            name_index = markers['schema']['name']
            data_index = markers['schema']['data']
            time_index = markers['schema']['time']
            extra_markers = []
            for marker in markers['data']:
                name = thread['stringTable'][marker[name_index]]
                data = _tuple_item(marker, data_index)
                if (name != 'DOMEvent' or not data or
                        data.get('type') == 'tracing'):
                    continue
                end_marker = []
                _set_tuple_item(
                    end_marker, data_index, {
                        'type': 'tracing',
                        'category': 'DOMEvent',
                        'timeStamp': data.get('timeStamp'),
                        'interval': 'end',
                        'eventType': data.get('eventType'),
                        'phase': data.get('phase'),
                    })
                _set_tuple_item(end_marker, time_index, data.get('endTime'))
                _set_tuple_item(end_marker, name_index, marker[name_index])
                extra_markers.append(end_marker)

                _set_tuple_item(marker, time_index, data.get('startTime'))
                _set_tuple_item(
                    marker, data_index, {
                        'type': 'tracing',
                        'category': 'DOMEvent',
                        'timeStamp': data.get('timeStamp'),
                        'interval': 'start',
                        'eventType': data.get('eventType'),
                        'phase': data.get('phase'),
                    })
            markers['data'].extend(extra_markers)

    _for_each_process(profile, convert)


# Old category bitmask values to indexes into VERSION_11_CATEGORIES.
_OLD_CATEGORY_TO_NEW_CATEGORY = {
    1 << 4: 1,  # OTHER -> Other
    1 << 5: 3,  # CSS -> Layout
    1 << 6: 2,  # JS -> JavaScript
    1 << 7: 6,  # GC -> GC / CC
    1 << 8: 6,  # CC -> GC / CC
    1 << 9: 7,  # NETWORK -> Network
    1 << 10: 4,  # GRAPHICS -> Graphics
    1 << 11: 1,  # STORAGE -> Other
    1 << 12: 1,  # EVENTS -> Other
}


@upgrader(11)
def _convert_to_version_11(profile):
    # Make sure every thread has a pid. This is unrelated to the version bump;
    # a unique label is made up for threads without one.
    unknown_pid = 0

    def ensure_pids(p):
        nonlocal unknown_pid
        for thread in p['threads']:
            if thread.get('pid') is None:
                unknown_pid += 1
                thread['pid'] = f'Unknown Process {unknown_pid}'

    _for_each_process(profile, ensure_pids)

    # meta.categories is new, and the frameTable category column now indexes
    # into it instead of holding a bitmask. All processes share one list.
    categories = copy.deepcopy(VERSION_11_CATEGORIES)

    def convert(p):
        p['meta']['categories'] = categories
        for thread in p['threads']:
            category_index = thread['frameTable']['schema']['category']
            for frame in thread['frameTable']['data']:
                if category_index < len(frame) and frame[
                        category_index] is not None:
                    frame[category_index] = _OLD_CATEGORY_TO_NEW_CATEGORY.get(
                        frame[category_index], 1)

    _for_each_process(profile, convert)


@upgrader(12)
def _convert_to_version_12(profile):
    # JS frames get a column number. The new "column" column takes index 4,
    # where "category" used to be, and category moves to index 5.
    old_category_index = 4
    new_category_index = 5

    def convert(p):
        for thread in p['threads']:
            frame_table = thread['frameTable']
            category_index = frame_table['schema']['category']
            for frame in frame_table['data']:
                if category_index < len(frame):
                    _set_tuple_item(frame, new_category_index,
                                    _tuple_item(frame, old_category_index))
                    frame[old_category_index] = None
            frame_table['schema']['category'] = new_category_index
            frame_table['schema']['column'] = old_category_index

    _for_each_process(profile, convert)


@upgrader(13)
def _convert_to_version_13(profile):
    # Some markers had no type field. VsyncTimestamp and LayerTranslation had
    # their category field renamed to type, and CompositorScreenshot gets one.

    def convert(p):
        for thread in p['threads']:
            name_index = thread['markers']['schema']['name']
            data_index = thread['markers']['schema']['data']
            for marker in thread['markers']['data']:
                name = thread['stringTable'][marker[name_index]]
                if name in ('VsyncTimestamp', 'LayerTranslation',
                            'CompositorScreenshot'):
                    data = marker[data_index]
                    data['type'] = name
                    data.pop('category', None)

    _for_each_process(profile, convert)


# WebIDL exit points: constructor, method, getter or setter, e.g.
#   StructuredCloneHolder constructor
#   Node.appendChild
#   get Element.scrollTop
#   set CSS2Properties.height
_DOM_CALL_RE = re.compile(r'^(get |set )?\w+(\.\w+| constructor)$')
_AUTO_ENTRY_SCRIPT = 'AutoEntryScript '


@upgrader(14)
def _convert_to_version_14(profile):
    # The frameTable gets a relevantForJS column: true on the label frames
    # that are JS entry points ("AutoEntryScript <reason>") and exit points
    # (WebIDL calls), false elsewhere.

    def convert(p):
        for thread in p['threads']:
            frame_table = thread['frameTable']
            frame_table['schema'] = {
                'location': 0,
                'relevantForJS': 1,
                'implementation': 2,
                'optimizations': 3,
                'line': 4,
                'column': 5,
                'category': 6,
            }
            location_index = frame_table['schema']['location']
            relevant_for_js_index = frame_table['schema']['relevantForJS']
            string_table = StringTable.with_backing_array(
                thread['stringTable'])
            for frame in frame_table['data']:
                frame.insert(relevant_for_js_index, False)
                location = string_table.get_string(frame[location_index])
                if location.startswith(_AUTO_ENTRY_SCRIPT):
                    frame[relevant_for_js_index] = True
                    frame[location_index] = string_table.index_for_string(
                        location[len(_AUTO_ENTRY_SCRIPT):])
                else:
                    frame[relevant_for_js_index] = bool(
                        _DOM_CALL_RE.match(location))

    _for_each_process(profile, convert)


@upgrader(15)
def _convert_to_version_15(profile):
    # DiskIO markers were renamed to FileIO.

    def convert(p):
        for thread in p['threads']:
            string_table = StringTable.with_backing_array(
                thread['stringTable'])
            if not string_table.has_string('DiskIO'):
                continue
            file_io_string_index = string_table.index_for_string('FileIO')
            name_index = thread['markers']['schema']['name']
            data_index = thread['markers']['schema']['data']
            for marker in thread['markers']['data']:
                payload = _tuple_item(marker, data_index)
                if payload and payload.get('type') == 'DiskIO':
                    marker[name_index] = file_io_string_index
                    payload['type'] = 'FileIO'

    _for_each_process(profile, convert)


# Marker name or payload type -> category name, for profiles recorded before
# markers had categories.
_MARKER_KEY_TO_CATEGORY_NAME = [
    ('DOMEvent', 'DOM'),
    ('Navigation::DOMComplete', 'DOM'),
    ('Navigation::DOMInteractive', 'DOM'),
    ('Navigation::Start', 'DOM'),
    ('UserTiming', 'DOM'),
    ('CC', 'GC / CC'),
    ('GCMajor', 'GC / CC'),
    ('GCMinor', 'GC / CC'),
    ('GCSlice', 'GC / CC'),
    ('Paint', 'Graphics'),
    ('VsyncTimestamp', 'Graphics'),
    ('CompositorScreenshot', 'Graphics'),
    ('JS allocation', 'JavaScript'),
    ('Styles', 'Layout'),
    ('nsRefreshDriver::Tick waiting for paint', 'Layout'),
    ('Navigation', 'Network'),
    ('Network', 'Network'),
    ('firstLoadURI', 'Other'),
    ('IPC', 'Other'),
    ('Text', 'Other'),
    ('MainThreadLongTask', 'Other'),
    ('FileIO', 'Other'),
    ('Log', 'Other'),
    ('PreferenceRead', 'Other'),
    ('BHR-detected hang', 'Other'),
]


def _category_index(categories, name):
    for index, category in enumerate(categories):
        if category['name'] == name:
            return index
    return -1


@upgrader(16)
def _convert_to_version_16(profile):
    # Categories get subcategories, and the frameTable a subcategory column.
    # Every frame with a category gets subcategory 0, "Other".

    def convert(p):
        for category in p['meta']['categories']:
            category['subcategories'] = ['Other']
        for thread in p['threads']:
            frame_table = thread['frameTable']
            frame_table['schema']['subcategory'] = 7
            category_index = frame_table['schema']['category']
            for frame in frame_table['data']:
                if _tuple_item(frame, category_index):
                    _set_tuple_item(frame,
                                    frame_table['schema']['subcategory'], 0)

    _for_each_process(profile, convert)

    # Profiles recorded before version 16 may have markers without
    # categories; derive one from the marker name or payload type.
    categories = profile['meta']['categories']
    for default_category in DEFAULT_CATEGORIES:
        if _category_index(categories, default_category['name']) == -1:
            categories.append(copy.deepcopy(default_category))

    other_category = _category_index(categories, 'Other')
    key_to_category_index = {}
    for key, category_name in _MARKER_KEY_TO_CATEGORY_NAME:
        index = _category_index(categories, category_name)
        if index == -1:
            raise MalformedProfileError(
                'Could not find a category index to map to.')
        key_to_category_index[key] = index

    def add_marker_categories(p):
        for thread in p['threads']:
            markers = thread['markers']
            if 'category' in markers['schema']:
                # Already categorized; the rest of this process and its
                # subprocesses are left as they are.
                return
            markers['schema']['category'] = 3
            for marker in markers['data']:
                key = thread['stringTable'][marker[markers['schema']['name']]]
                data = _tuple_item(marker, markers['schema']['data'])
                if data and data.get('type'):
                    key = (data.get('category')
                           if data['type'] == 'tracing' else data['type'])
                _set_tuple_item(
                    marker, markers['schema']['category'],
                    key_to_category_index.get(key, other_category))
        for subprocess_profile in _subprocesses(p):
            add_marker_categories(subprocess_profile)

    add_marker_categories(profile)


@upgrader(17)
def _convert_to_version_17(profile):
    # Pages were keyed by DocShell ID and DocShell history ID; now they carry
    # a Browsing Context ID and an Inner Window ID, and marker payloads only
    # keep innerWindowID. The counters are shared by the whole profile.
    browsing_context_id = 1
    inner_window_id = 1

    def convert(p):
        nonlocal browsing_context_id, inner_window_id
        pages = p.get('pages')
        if not pages:
            return

        old_keys_to_new_key = {}
        doc_shell_id_to_browsing_context_id = {}
        for page in pages:
            old_keys_to_new_key[
                f"d{page.get('docshellId')}h{page.get('historyId')}"] = inner_window_id

            current_browsing_context_id = doc_shell_id_to_browsing_context_id.get(
                page.get('docshellId'))
            if not current_browsing_context_id:
                current_browsing_context_id = browsing_context_id
                browsing_context_id += 1
                doc_shell_id_to_browsing_context_id[page.get(
                    'docshellId')] = current_browsing_context_id

            page['browsingContextID'] = current_browsing_context_id
            page['innerWindowID'] = inner_window_id
            # isSubFrame can't tell us the embedder; 0 means null.
            page['embedderInnerWindowID'] = 0

            inner_window_id += 1
            page.pop('docshellId', None)
            page.pop('historyId', None)
            page.pop('isSubFrame', None)

        for thread in p['threads']:
            data_index = thread['markers']['schema']['data']
            for marker in thread['markers']['data']:
                payload = _tuple_item(marker, data_index)
                if (payload and payload.get('docShellId') is not None and
                        payload.get('docshellHistoryId') is not None):
                    new_key = old_keys_to_new_key.get(
                        f"d{payload['docShellId']}h{payload['docshellHistoryId']}"
                    )
                    if new_key is None:
                        logger.warning(
                            'No page found with given docShellId and historyId')
                    else:
                        payload['innerWindowID'] = new_key
                    del payload['docShellId']
                    del payload['docshellHistoryId']

    _for_each_process(profile, convert)


@upgrader(18)
def _convert_to_version_18(profile):
    # sample_groups used to be a single object instead of an array. It can
    # also be an empty object, which becomes an empty array.

    def convert(p):
        for counter in p.get('counters') or []:
            if 'samples' in counter['sample_groups']:
                counter['sample_groups'] = [counter['sample_groups']]
            else:
                counter['sample_groups'] = []

    _for_each_process(profile, convert)


@upgrader(19)
def _convert_to_version_19(profile):
    # The frameTable gets an innerWindowID column, filled with 0 since the
    # real value is unknown.

    def convert(p):
        for thread in p['threads']:
            frame_table = thread['frameTable']
            frame_table['schema'] = {
                'location': 0,
                'relevantForJS': 1,
                'innerWindowID': 2,
                'implementation': 3,
                'optimizations': 4,
                'line': 5,
                'column': 6,
                'category': 7,
                'subcategory': 8,
            }
            inner_window_id_index = frame_table['schema']['innerWindowID']
            for frame in frame_table['data']:
                frame.insert(inner_window_id_index, 0)

    _for_each_process(profile, convert)


@upgrader(20)
def _convert_to_version_20(profile):
    # Phased markers: the single time column is replaced by startTime,
    # endTime and phase. Payload startTime/endTime are dropped, except on IPC
    # and Network markers which need them later.
    new_schema = {
        'name': 0,
        'startTime': 1,
        'endTime': 2,
        'phase': 3,
        'category': 4,
        'data': 5,
    }

    def convert(p):
        for thread in p['threads']:
            markers = thread['markers']
            old_schema = markers['schema']
            markers['schema'] = dict(new_schema)

            for marker_index, marker_tuple in enumerate(markers['data']):
                time = _tuple_item(marker_tuple, old_schema['time'])
                data = _tuple_item(marker_tuple, old_schema['data'])

                new_start_time = time
                new_end_time = None
                phase = INSTANT

                if data:
                    start_time = data.get('startTime')
                    end_time = data.get('endTime')
                    if data.get('type') == 'tracing':
                        if data.get('interval') == 'start':
                            phase = INTERVAL_START
                        elif data.get('interval') == 'end':
                            new_start_time = None
                            new_end_time = time
                            phase = INTERVAL_END
                        # Without an interval it stays an instant marker.
                    elif (_is_number(start_time) and _is_number(end_time) and
                          start_time != end_time):
                        new_start_time = start_time
                        new_end_time = end_time
                        phase = INTERVAL

                    if data.get('type') not in ('IPC', 'Network'):
                        data.pop('startTime', None)
                        data.pop('endTime', None)

                new_tuple = [None] * len(new_schema)
                new_tuple[new_schema['name']] = _tuple_item(
                    marker_tuple, old_schema['name'])
                new_tuple[new_schema['startTime']] = new_start_time
                new_tuple[new_schema['endTime']] = new_end_time
                new_tuple[new_schema['phase']] = phase
                new_tuple[new_schema['category']] = _tuple_item(
                    marker_tuple, old_schema.get('category'))
                new_tuple[new_schema['data']] = data
                markers['data'][marker_index] = new_tuple

    _for_each_process(profile, convert)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@upgrader(21)
def _convert_to_version_21(profile):
    # DOMEvent tracing markers become DOMEvent markers, with a latency
    # computed from their timeStamp.

    def convert(p):
        for thread in p['threads']:
            markers = thread['markers']
            for marker_tuple in markers['data']:
                payload = _tuple_item(marker_tuple, markers['schema']['data'])
                if (payload and payload.get('type') == 'tracing' and
                        payload.get('category') == 'DOMEvent'):
                    start_time = marker_tuple[markers['schema']['startTime']]
                    payload['type'] = 'DOMEvent'
                    # End markers have no start time, and so no latency.
                    if (_is_number(start_time) and
                            _is_number(payload.get('timeStamp'))):
                        payload['latency'] = start_time - payload['timeStamp']
                    payload.pop('timeStamp', None)

    _for_each_process(profile, convert)


# The marker schema back-filled into version 21 profiles.
_VERSION_22_MARKER_SCHEMA = [
    {
        'name': 'GCMajor',
        'display': ['marker-chart', 'marker-table', 'timeline-memory'],
        'data': [],
    },
    {
        'name': 'GCMinor',
        'display': ['marker-chart', 'marker-table', 'timeline-memory'],
        'data': [],
    },
    {
        'name': 'GCSlice',
        'display': ['marker-chart', 'marker-table', 'timeline-memory'],
        'data': [],
    },
    {
        'name': 'CC',
        'tooltipLabel': 'Cycle Collect',
        'display': ['marker-chart', 'marker-table', 'timeline-memory'],
        'data': [],
    },
    {
        'name': 'FileIO',
        'display': ['marker-chart', 'marker-table'],
        'data': [
            {'key': 'operation', 'label': 'Operation', 'format': 'string', 'searchable': True},
            {'key': 'source', 'label': 'Source', 'format': 'string', 'searchable': True},
            {'key': 'filename', 'label': 'Filename', 'format': 'file-path', 'searchable': True},
        ],
    },
    {
        'name': 'MediaSample',
        'display': ['marker-chart', 'marker-table'],
        'data': [
            {'key': 'sampleStartTimeUs', 'label': 'Sample start time', 'format': 'microseconds'},
            {'key': 'sampleEndTimeUs', 'label': 'Sample end time', 'format': 'microseconds'},
        ],
    },
    {
        'name': 'Styles',
        'display': ['marker-chart', 'marker-table', 'timeline-overview'],
        'data': [
            {'key': 'elementsTraversed', 'label': 'Elements traversed', 'format': 'integer'},
            {'key': 'elementsStyled', 'label': 'Elements styled', 'format': 'integer'},
            {'key': 'elementsMatched', 'label': 'Elements matched', 'format': 'integer'},
            {'key': 'stylesShared', 'label': 'Styles shared', 'format': 'integer'},
            {'key': 'stylesReused', 'label': 'Styles reused', 'format': 'integer'},
        ],
    },
    {
        'name': 'PreferenceRead',
        'display': ['marker-chart', 'marker-table'],
        'data': [
            {'key': 'prefName', 'label': 'Name', 'format': 'string'},
            {'key': 'prefKind', 'label': 'Kind', 'format': 'string'},
            {'key': 'prefType', 'label': 'Type', 'format': 'string'},
            {'key': 'prefValue', 'label': 'Value', 'format': 'string'},
        ],
    },
    {
        'name': 'UserTiming',
        'tooltipLabel': '{marker.data.name}',
        'chartLabel': '{marker.data.name}',
        'tableLabel': '{marker.data.name}',
        'display': ['marker-chart', 'marker-table'],
        'data': [
            {'label': 'Marker', 'value': 'UserTiming'},
            {'key': 'entryType', 'label': 'Entry Type', 'format': 'string'},
            {
                'label': 'Description',
                'value': 'UserTiming is created using the DOM APIs '
                         'performance.mark() and performance.measure().',
            },
        ],
    },
    {
        'name': 'Text',
        'tableLabel': '{marker.name} — {marker.data.name}',
        'chartLabel': '{marker.name} — {marker.data.name}',
        'display': ['marker-chart', 'marker-table'],
        'data': [{'key': 'name', 'label': 'Details', 'format': 'string'}],
    },
    {
        'name': 'Log',
        'display': ['marker-table'],
        'tableLabel': '({marker.data.module}) {marker.data.name}',
        'data': [
            {'key': 'module', 'label': 'Module', 'format': 'string'},
            {'key': 'name', 'label': 'Name', 'format': 'string'},
        ],
    },
    {
        'name': 'DOMEvent',
        'tooltipLabel': '{marker.data.eventType} — DOMEvent',
        'tableLabel': '{marker.data.eventType}',
        'chartLabel': '{marker.data.eventType}',
        'display': ['marker-chart', 'marker-table', 'timeline-overview'],
        'data': [{'key': 'latency', 'label': 'Latency', 'format': 'duration'}],
    },
    # Paint, Navigation and Layout should have been one "tracing" schema.
    {
        'name': 'Paint',
        'display': ['marker-chart', 'marker-table', 'timeline-overview'],
        'data': [{'key': 'category', 'label': 'Type', 'format': 'string'}],
    },
    {
        'name': 'Navigation',
        'display': ['marker-chart', 'marker-table', 'timeline-overview'],
        'data': [{'key': 'category', 'label': 'Type', 'format': 'string'}],
    },
    {
        'name': 'Layout',
        'display': ['marker-chart', 'marker-table', 'timeline-overview'],
        'data': [{'key': 'category', 'label': 'Type', 'format': 'string'}],
    },
    {
        'name': 'IPC',
        'tooltipLabel': 'IPC — {marker.data.niceDirection}',
        'tableLabel': '{marker.name} — {marker.data.messageType} — {marker.data.niceDirection}',
        'chartLabel': '{marker.data.messageType}',
        'display': ['marker-chart', 'marker-table', 'timeline-ipc'],
        'data': [
            {'key': 'messageType', 'label': 'Type', 'format': 'string'},
            {'key': 'sync', 'label': 'Sync', 'format': 'string'},
            {'key': 'sendThreadName', 'label': 'From', 'format': 'string'},
            {'key': 'recvThreadName', 'label': 'To', 'format': 'string'},
        ],
    },
    # Unused: no upgraded profile has RefreshDriverTick payloads.
    {
        'name': 'RefreshDriverTick',
        'display': ['marker-chart', 'marker-table', 'timeline-overview'],
        'data': [{'key': 'name', 'label': 'Tick Reasons', 'format': 'string'}],
    },
    {
        'name': 'Network',
        'display': ['marker-table'],
        'data': [],
    },
]


@upgrader(22)
def _convert_to_version_22(profile):
    # The marker schema was added. The root process gets the default schema;
    # subprocesses get an empty one since schemas are merged across processes.
    profile['meta']['markerSchema'] = copy.deepcopy(_VERSION_22_MARKER_SCHEMA)
    for subprocess_profile in _subprocesses(profile):
        subprocess_profile['meta']['markerSchema'] = []


@upgrader(23)
def _convert_to_version_23(profile):
    # browsingContextID on pages and activeBrowsingContextID in the
    # configuration were renamed to tabID and activeTabID.
    configuration = profile['meta'].get('configuration')
    if configuration and configuration.get('activeBrowsingContextID'):
        configuration['activeTabID'] = configuration.pop(
            'activeBrowsingContextID')

    def convert(p):
        for page in p.get('pages') or []:
            page['tabID'] = page.pop('browsingContextID', None)

    _for_each_process(profile, convert)


UPGRADERS[24] = NoMigration(
    'Network markers may have the STATUS_CANCELED end status; older browsers '
    'never produced it.')
UPGRADERS[25] = NoMigration(
    'Private browsing data may be captured; older browsers never captured it.')


@upgrader(26)
def _convert_to_version_26(profile):
    # Marker schema fields get a `searchable` property, replacing a
    # hardcoded list of searchable fields.

    def convert(p):
        for schema in p['meta'].get('markerSchema') or []:
            name = schema.get('name')
            if name == 'FileIO':
                schema['data'].append({
                    'key': 'threadId',
                    'label': 'Thread ID',
                    'format': 'string',
                    'searchable': True,
                })
                searchable_field_keys = []
            elif name == 'Log':
                searchable_field_keys = ['name', 'module']
            elif name == 'DOMEvent':
                schema['data'].append({
                    'key': 'eventType',
                    'label': 'Event Type',
                    'format': 'string',
                    'searchable': True,
                })
                searchable_field_keys = ['target']
            elif name == 'TraceEvent':
                searchable_field_keys = ['name1', 'name2', 'val1', 'val2']
            else:
                searchable_field_keys = ['name', 'category']

            for schema_field in schema['data']:
                if schema_field.get('key') in searchable_field_keys:
                    schema_field['searchable'] = True

    _for_each_process(profile, convert)


@upgrader(27)
def _convert_to_version_27(profile):
    # The optimizations column was removed from the frame table.

    def convert(p):
        for thread in p['threads']:
            thread['frameTable']['schema'].pop('optimizations', None)

    _for_each_process(profile, convert)


UPGRADERS[28] = NoMigration(
    'Added the "unique-string" marker field format, which older browsers '
    'never produced.')


@upgrader(29)
def _convert_to_version_29(profile):
    # The sample_groups object was removed from counters.

    def convert(p):
        for counter in p.get('counters') or []:
            if not counter.get('sample_groups'):
                # Nothing was sampled, or the counter is already in the new
                # format, like the external power counters.
                continue
            counter['samples'] = counter['sample_groups'][0]['samples']
            del counter['sample_groups']

    _for_each_process(profile, convert)


UPGRADERS[30] = NoMigration(
    'Added the "sanitized-string" marker field format, which older browsers '
    'never produced.')
UPGRADERS[31] = NoMigration(
    'Added the "flow-id" and "terminating-flow-id" marker field formats and '
    'the optional isStackBased schema property.')

assert sorted(UPGRADERS) == list(range(1, GECKO_PROFILE_VERSION + 1))
