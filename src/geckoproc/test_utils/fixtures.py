import copy
import json

import pytest

from geckoproc.constants import (
    DEFAULT_CATEGORIES,
    GECKO_PROFILE_VERSION,
    INSTANT,
    VERSION_11_CATEGORIES,
)
from geckoproc.interner import GlobalDataCollector

CURRENT_SAMPLES_SCHEMA = {
    'stack': 0,
    'time': 1,
    'eventDelay': 2,
    'threadCPUDelta': 3
}
CURRENT_MARKERS_SCHEMA = {
    'name': 0,
    'startTime': 1,
    'endTime': 2,
    'phase': 3,
    'category': 4,
    'data': 5
}
CURRENT_FRAME_SCHEMA = {
    'location': 0,
    'relevantForJS': 1,
    'innerWindowID': 2,
    'implementation': 3,
    'line': 4,
    'column': 5,
    'category': 6,
    'subcategory': 7,
}
STACK_SCHEMA = {'prefix': 0, 'frame': 1}


class GeckoThreadBuilder:
    """Builds a raw thread in the current format, one row at a time."""

    def __init__(self,
                 name='GeckoMain',
                 pid=1000,
                 tid=1000,
                 process_type='default'):
        self.thread = {
            'name': name,
            'pid': pid,
            'tid': tid,
            'processType': process_type,
            'registerTime': 0,
            'unregisterTime': None,
            'stringTable': [],
            'samples': {
                'schema': dict(CURRENT_SAMPLES_SCHEMA),
                'data': []
            },
            'markers': {
                'schema': dict(CURRENT_MARKERS_SCHEMA),
                'data': []
            },
            'stackTable': {
                'schema': dict(STACK_SCHEMA),
                'data': []
            },
            'frameTable': {
                'schema': dict(CURRENT_FRAME_SCHEMA),
                'data': []
            },
        }

    def string(self, value):
        strings = self.thread['stringTable']
        if value not in strings:
            strings.append(value)
        return strings.index(value)

    def add_frame(self,
                  location,
                  relevant_for_js=False,
                  line=None,
                  column=None,
                  category=1,
                  subcategory=0):
        frames = self.thread['frameTable']['data']
        frames.append([
            self.string(location), relevant_for_js, 0, None, line, column,
            category, subcategory
        ])
        return len(frames) - 1

    def add_stack(self, frame, prefix=None):
        stacks = self.thread['stackTable']['data']
        stacks.append([prefix, frame])
        return len(stacks) - 1

    def add_call_stack(self, *locations):
        """Frames and stacks for a call chain, outermost first."""
        prefix = None
        for location in locations:
            prefix = self.add_stack(self.add_frame(location), prefix)
        return prefix

    def add_sample(self, stack, time, event_delay=0.0, cpu_delta=None):
        self.thread['samples']['data'].append(
            [stack, time, event_delay, cpu_delta])

    def add_marker(self,
                   name,
                   start_time,
                   end_time=None,
                   phase=INSTANT,
                   category=1,
                   data=None):
        self.thread['markers']['data'].append(
            [self.string(name), start_time, end_time, phase, category, data])

    def build(self):
        return self.thread


def make_gecko_meta(version=GECKO_PROFILE_VERSION, start_time=1000.0, **extra):
    meta = {
        'version': version,
        'startTime': start_time,
        'shutdownTime': None,
        'interval': 1,
        'stackwalk': 1,
        'processType': 0,
        'product': 'Firefox',
        'debug': False,
        'platform': 'X11',
        'categories': copy.deepcopy(DEFAULT_CATEGORIES),
        'markerSchema': [],
    }
    meta.update(extra)
    return meta


def make_gecko_profile(threads, libs=None, processes=None, meta=None, **extra):
    """A raw profile in the current format."""
    profile = {
        'meta': meta if meta is not None else make_gecko_meta(),
        'libs': libs or [],
        'pages': [],
        'pausedRanges': [],
        'threads': threads,
        'processes': processes or [],
    }
    profile.update(extra)
    return profile


def make_lib(name, breakpad_id, start, end, offset=0):
    return {
        'name': name,
        'path': f'/usr/lib/{name}',
        'debugName': name,
        'debugPath': f'/usr/lib/{name}',
        'breakpadId': breakpad_id,
        'codeId': None,
        'arch': 'x86_64',
        'start': start,
        'end': end,
        'offset': offset,
    }


def make_minimal_profile_at_version(version):
    """
    The smallest document the upgraders accept as a profile of `version`:
    no threads, and only the fields older upgraders leave for newer ones.
    """
    meta = {'version': version, 'startTime': 0}
    if version >= 11:
        categories = copy.deepcopy(VERSION_11_CATEGORIES)
        if version >= 16:
            for category in categories:
                category['subcategories'] = ['Other']
        meta['categories'] = categories
    if version >= 22:
        meta['markerSchema'] = []
    profile = {
        'meta': meta,
        'libs': '[]' if version < 4 else [],
        'threads': [],
    }
    if version >= 5:
        profile['processes'] = []
    return profile


# Raw frame table layout before version 11: the category is a bitmask.
V3_FRAME_SCHEMA = {
    'location': 0,
    'implementation': 1,
    'optimizations': 2,
    'line': 3,
    'category': 4
}
V3_SAMPLES_SCHEMA = {
    'stack': 0,
    'time': 1,
    'responsiveness': 2,
    'rss': 3,
    'uss': 4,
    'frameNumber': 5
}
V3_MARKERS_SCHEMA = {'name': 0, 'time': 1, 'data': 2}
CATEGORY_OTHER_BITMASK = 1 << 4
CATEGORY_JS_BITMASK = 1 << 6


def make_v3_thread(name, pid, tid, locations, sample_times, markers=()):
    """
    A version 3 thread with one frame and stack per location (each stack
    calling the next) and one sample per time, all on the deepest stack.

    markers is a list of (name, time, payload).
    """
    string_table = []

    def string(value):
        if value not in string_table:
            string_table.append(value)
        return string_table.index(value)

    frames = []
    stacks = []
    for index, location in enumerate(locations):
        category = CATEGORY_JS_BITMASK if '.js:' in location else CATEGORY_OTHER_BITMASK
        frames.append([string(location), None, None, None, category])
        stacks.append([index - 1 if index else None, index])

    deepest_stack = len(stacks) - 1 if stacks else None
    samples = [[deepest_stack, time, 0.5, 0, 0, 7] for time in sample_times]

    return {
        'name': name,
        'pid': pid,
        'tid': tid,
        'stringTable': string_table,
        'samples': {
            'schema': dict(V3_SAMPLES_SCHEMA),
            'data': samples
        },
        'markers': {
            'schema': dict(V3_MARKERS_SCHEMA),
            'data': [[string(m_name), time, payload]
                     for m_name, time, payload in markers]
        },
        'stackTable': {
            'schema': dict(STACK_SCHEMA),
            'data': stacks
        },
        'frameTable': {
            'schema': dict(V3_FRAME_SCHEMA),
            'data': frames
        },
    }


def make_v3_lib(name, breakpad_id, start, end, offset=0):
    return {
        'start': start,
        'end': end,
        'offset': offset,
        'name': f'/usr/lib/{name}',
        'breakpadId': breakpad_id,
    }


def make_two_process_v3_profile():
    """
    A version 3 capture: a parent process, and a content process stored as
    a JSON string in the parent's thread list, started 10ms after it.

    libxul.so is mapped in both processes, at different addresses.
    """
    subprocess_profile = {
        'meta': {
            'version': 3,
            'startTime': 1010,
            'interval': 1,
            'stackwalk': 1,
            'processType': 2,
            'product': 'Firefox',
            'abi': 'x86_64-gcc3',
        },
        'libs': json.dumps([
            make_v3_lib('libxul.so', 'XUL1', 0x5000, 0x6000),
            make_v3_lib('libfoo.so', 'FOO1', 0x6000, 0x7000),
        ]),
        'threads': [
            make_v3_thread(
                'Content', 2000, 2001,
                ['0x5010', '0x6010', 'onLoad (http://example.com/app.js:12:3)'],
                [1.0, 2.0],
                markers=[('UserTiming', 1.5, {
                    'type': 'UserTiming',
                    'startTime': 1.5,
                    'endTime': 2.5,
                    'name': 'measure',
                    'entryType': 'measure',
                })]),
        ],
    }
    return {
        'meta': {
            'version': 3,
            'startTime': 1000,
            'interval': 1,
            'stackwalk': 1,
            'processType': 0,
            'product': 'Firefox',
            'abi': 'x86_64-gcc3',
        },
        'libs': json.dumps([
            make_v3_lib('libc.so', 'LIBC1', 0x2000, 0x3000),
            make_v3_lib('libxul.so', 'XUL1', 0x1000, 0x2000),
        ]),
        'threads': [
            make_v3_thread(
                'GeckoMain', 1000, 1001,
                ['0x1010', '0x2010', 'NS_ProcessNextEvent (in libxul.so) + 12'],
                [1.0, 2.0, 3.0],
                markers=[('GCMajor', 2.5, {
                    'type': 'GCMajor',
                    'timings': {
                        'slices': [{'slice': 0}, {'slice': 1}],
                        'allocated': 2,
                        'totals': {'mark': 1.5},
                        'mmu_20ms': 50,
                        'mmu_50ms': 70,
                    },
                })]),
            json.dumps(subprocess_profile),
        ],
    }


@pytest.fixture
def collector():
    return GlobalDataCollector()


@pytest.fixture
def thread_builder():
    return GeckoThreadBuilder()


@pytest.fixture
def two_process_v3_profile():
    return make_two_process_v3_profile()


@pytest.fixture
def test_config():
    return {'log_level': 'DEBUG', 'check_invariants': True, 'indent': None}
