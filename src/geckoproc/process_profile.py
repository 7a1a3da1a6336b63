"""
process_profile.py

Converts a raw ("Gecko") profile into the processed format: upgrades it,
converts the threads of the root process and of every subprocess in a fixed
order, moves the subprocesses onto the root's time base, and assembles the
processed document around the shared string and library tables.
"""

import json
import math
from typing import Any, Optional

from geckoproc.config import load_config
from geckoproc.configured_logger import new_logger
from geckoproc.constants import MAIN_THREAD_NAME
from geckoproc.errors import MalformedProfileError, MissingMetaError
from geckoproc.extraction import extract_funcs_and_resources_from_frame_locations
from geckoproc.gecko_versioning import upgrade_gecko_profile_to_current_version
from geckoproc.return_addresses import nudge_return_addresses
from geckoproc.visual_metrics import process_visual_metrics
from geckoproc.interner import GlobalDataCollector
from geckoproc.markers import (
    adjust_marker_timestamps,
    adjust_profiler_overhead_timestamps,
    adjust_table_time_deltas,
    adjust_table_timestamps,
    compute_string_index_marker_fields_by_data_type,
    convert_gecko_marker_schema,
    process_frame_table,
    process_markers,
    process_samples,
    process_stack_table,
    sort_markers,
    time_column_to_compact_time_deltas,
    to_struct_of_arrays,
)
from geckoproc.profile_schema import (
    Counter,
    CounterSamplesTable,
    ExtensionTable,
    MarkerSchema,
    NativeSymbolTable,
    Profile,
    ProfileMeta,
    ProfilerOverhead,
    Thread,
)

logger = new_logger('process_profile')

GeckoProfile = dict[str, Any]


def process_marker_schema(gecko_profile: GeckoProfile) -> list[MarkerSchema]:
    """
    Merge the marker schemas of all processes into one list.

    Each process only lists the schemas of the markers it used. The root's
    come first; a subprocess schema is added when its name is new.
    """
    combined_schemas = [
        convert_gecko_marker_schema(schema)
        for schema in gecko_profile['meta'].get('markerSchema') or []
    ]
    names = {schema.name for schema in combined_schemas}
    for subprocess_profile in gecko_profile.get('processes') or []:
        for schema in subprocess_profile['meta'].get('markerSchema') or []:
            if schema['name'] not in names:
                names.add(schema['name'])
                combined_schemas.append(convert_gecko_marker_schema(schema))
    return combined_schemas


def _find_main_thread(gecko_profile: GeckoProfile,
                      stable_thread_list: list[Thread]):
    """
    (pid, index in stable_thread_list) of the process's main thread, or None
    if the process has no main thread.

    Counters and overhead are listed per process, not per thread, so they
    point at the main thread through its index in the processed thread list.
    """
    main_thread = next((thread for thread in gecko_profile['threads']
                        if thread.get('name') == MAIN_THREAD_NAME), None)
    if main_thread is None:
        return None

    main_thread_pid = f"{main_thread.get('pid')}"
    for index, thread in enumerate(stable_thread_list):
        if thread.name == MAIN_THREAD_NAME and thread.pid == main_thread_pid:
            return main_thread_pid, index
    raise MalformedProfileError(
        f'Unable to find the main thread of process {main_thread_pid} in the '
        f'stable thread list.')


def _process_counter_samples(gecko_samples: dict) -> CounterSamplesTable:
    return CounterSamplesTable(
        time_deltas=time_column_to_compact_time_deltas(gecko_samples['time']),
        number=gecko_samples.get('number'),
        count=gecko_samples['count'],
        length=gecko_samples['length'],
    )


def _process_counters(gecko_profile: GeckoProfile,
                      stable_thread_list: list[Thread],
                      delta: float) -> list[Counter]:
    gecko_counters = gecko_profile.get('counters')
    if not gecko_counters:
        return []
    main_thread = _find_main_thread(gecko_profile, stable_thread_list)
    if main_thread is None:
        return []
    main_thread_pid, main_thread_index = main_thread

    counters = []
    for gecko_counter in gecko_counters:
        samples = gecko_counter.get('samples')
        if not samples or not samples['data']:
            # Nothing was sampled during the capture.
            continue
        processed_samples = _process_counter_samples(
            to_struct_of_arrays(samples))
        counters.append(
            Counter(
                name=gecko_counter['name'],
                category=gecko_counter['category'],
                description=gecko_counter['description'],
                pid=main_thread_pid,
                main_thread_index=main_thread_index,
                samples=adjust_table_time_deltas(processed_samples, delta),
            ))
    return counters


def _process_profiler_overhead(gecko_profile: GeckoProfile,
                               stable_thread_list: list[Thread],
                               delta: float) -> Optional[ProfilerOverhead]:
    gecko_overhead = gecko_profile.get('profilerOverhead')
    if not gecko_overhead:
        return None
    main_thread = _find_main_thread(gecko_profile, stable_thread_list)
    if main_thread is None:
        return None
    main_thread_pid, main_thread_index = main_thread

    return ProfilerOverhead(
        samples=adjust_profiler_overhead_timestamps(
            to_struct_of_arrays(gecko_overhead['samples']), delta),
        pid=main_thread_pid,
        main_thread_index=main_thread_index,
        statistics=gecko_overhead.get('statistics'),
    )


def process_thread(thread: dict, process_profile: GeckoProfile,
                   extensions: ExtensionTable,
                   string_index_fields_by_data_type: dict[str, list[str]],
                   global_data_collector: GlobalDataCollector) -> Thread:
    """Convert one raw thread, on the time base of its own process."""
    gecko_frame_struct = to_struct_of_arrays(thread['frameTable'])
    gecko_stack_struct = to_struct_of_arrays(thread['stackTable'])
    gecko_samples = to_struct_of_arrays(thread['samples'])
    gecko_markers = to_struct_of_arrays(sort_markers(thread['markers']))

    frame_count = gecko_frame_struct['length']
    extracted = extract_funcs_and_resources_from_frame_locations(
        gecko_frame_struct['location'],
        gecko_frame_struct.get('relevantForJS') or [False] * frame_count,
        thread['stringTable'],
        process_profile['libs'],
        extensions,
        global_data_collector,
    )
    markers, js_allocations, native_allocations = process_markers(
        gecko_markers,
        thread['stringTable'],
        string_index_fields_by_data_type,
        global_data_collector.get_string_table(),
    )

    process_name = thread.get('processName')
    new_thread = Thread(
        name=thread.get('name', ''),
        is_main_thread=thread.get('name') == MAIN_THREAD_NAME,
        etld_plus_one=thread.get('eTLD+1'),
        process_type=thread.get('processType'),
        process_name=process_name if isinstance(process_name, str) else '',
        process_startup_time=0,
        process_shutdown_time=process_profile['meta'].get('shutdownTime'),
        register_time=thread.get('registerTime', 0),
        unregister_time=thread.get('unregisterTime'),
        tid=thread.get('tid'),
        pid=f"{thread.get('pid')}",
        paused_ranges=process_profile.get('pausedRanges') or [],
        frame_table=process_frame_table(gecko_frame_struct,
                                        extracted.frame_funcs,
                                        extracted.frame_addresses),
        func_table=extracted.func_table,
        native_symbols=NativeSymbolTable(),
        resource_table=extracted.resource_table,
        stack_table=process_stack_table(gecko_stack_struct),
        markers=markers,
        samples=process_samples(gecko_samples),
        # Both are missing before Firefox 98, and on threads without origin
        # attributes.
        is_private_browsing=thread.get('isPrivateBrowsing'),
        user_context_id=thread.get('userContextId'),
        js_allocations=js_allocations,
        native_allocations=native_allocations,
    )
    logger.debug(
        f'Processed thread {new_thread.name} (pid {new_thread.pid}, tid '
        f'{new_thread.tid}): {new_thread.samples.length} samples, '
        f'{new_thread.markers.length} markers, '
        f'{new_thread.func_table.length} funcs')
    return nudge_return_addresses(new_thread)


def _adjust_thread_timestamps(thread: Thread, delta: float):
    thread.samples = adjust_table_time_deltas(thread.samples, delta)
    thread.markers = adjust_marker_timestamps(thread.markers, delta)
    if thread.js_allocations is not None:
        thread.js_allocations = adjust_table_timestamps(thread.js_allocations,
                                                        delta)
    if thread.native_allocations is not None:
        thread.native_allocations = adjust_table_timestamps(
            thread.native_allocations, delta)
    thread.process_startup_time += delta
    if thread.process_shutdown_time is not None:
        thread.process_shutdown_time += delta
    thread.register_time += delta
    if thread.unregister_time is not None:
        thread.unregister_time += delta


def _process_meta(gecko_meta: dict, extensions: ExtensionTable,
                  marker_schema: list[MarkerSchema]) -> ProfileMeta:
    meta = ProfileMeta(
        interval=gecko_meta.get('interval'),
        start_time=gecko_meta.get('startTime'),
        process_type=gecko_meta.get('processType'),
        product=gecko_meta.get('product') or '',
        stackwalk=gecko_meta.get('stackwalk'),
        debug=bool(gecko_meta.get('debug')),
        version=gecko_meta.get('version'),
        # Set by importers of already symbolicated formats, missing in
        # profiles coming from the browser.
        symbolicated=bool(gecko_meta.get('presymbolicated')),
        categories=gecko_meta.get('categories'),
        marker_schema=marker_schema,
        extensions=extensions,
        passthrough={
            key: gecko_meta[key]
            for key in ProfileMeta.PASSTHROUGH_KEYS
            if key in gecko_meta
        },
    )
    if 'profilingStartTime' in gecko_meta:
        meta.profiling_start_time = gecko_meta['profilingStartTime']
        meta.profiling_end_time = gecko_meta.get('profilingEndTime')
    return meta


def process_gecko_profile(gecko_profile: GeckoProfile,
                          config: Optional[dict] = None) -> Profile:
    """
    Convert a raw profile into the processed format.

    The raw profile is upgraded in place first.

    Raises:
        ProfileError: the profile can't be converted.
    """
    if config is None:
        config = load_config()

    upgrade_gecko_profile_to_current_version(gecko_profile)

    marker_schema = process_marker_schema(gecko_profile)
    string_index_fields_by_data_type = compute_string_index_marker_fields_by_data_type(
        marker_schema)

    gecko_extensions = gecko_profile['meta'].get('extensions')
    extensions = (ExtensionTable.from_struct(
        to_struct_of_arrays(gecko_extensions))
                  if gecko_extensions else ExtensionTable())

    global_data_collector = GlobalDataCollector()

    threads = [
        process_thread(thread, gecko_profile, extensions,
                       string_index_fields_by_data_type, global_data_collector)
        for thread in gecko_profile['threads']
    ]
    counters = _process_counters(gecko_profile, threads, 0)
    profiler_overhead = [_process_profiler_overhead(gecko_profile, threads, 0)]

    subprocesses = gecko_profile.get('processes') or []
    for subprocess_profile in subprocesses:
        adjust_timestamps_by = (subprocess_profile['meta']['startTime'] -
                                gecko_profile['meta']['startTime'])
        for thread in subprocess_profile['threads']:
            new_thread = process_thread(thread, subprocess_profile, extensions,
                                        string_index_fields_by_data_type,
                                        global_data_collector)
            _adjust_thread_timestamps(new_thread, adjust_timestamps_by)
            threads.append(new_thread)

        counters.extend(
            _process_counters(subprocess_profile, threads,
                              adjust_timestamps_by))
        profiler_overhead.append(
            _process_profiler_overhead(subprocess_profile, threads,
                                       adjust_timestamps_by))

    pages = list(gecko_profile.get('pages') or [])
    for subprocess_profile in subprocesses:
        pages.extend(subprocess_profile.get('pages') or [])

    # Only present when the backend recorded it.
    profiling_log = dict(gecko_profile.get('profilingLog') or {})
    for subprocess_profile in subprocesses:
        profiling_log.update(subprocess_profile.get('profilingLog') or {})

    # Only the parent process has this one.
    profile_gathering_log = dict(gecko_profile.get('profileGatheringLog') or {})

    meta = _process_meta(gecko_profile['meta'], extensions, marker_schema)
    process_visual_metrics(threads, meta,
                           gecko_profile['meta'].get('visualMetrics'), pages,
                           global_data_collector.get_string_table())

    libs, shared = global_data_collector.finish()
    profile = Profile(
        meta=meta,
        libs=libs,
        pages=pages,
        counters=counters,
        profiler_overhead=[o for o in profiler_overhead if o is not None],
        shared=shared,
        threads=threads,
        profiling_log=profiling_log,
        profile_gathering_log=profile_gathering_log,
    )

    if config.get('check_invariants', True):
        profile.check_lengths()

    logger.info(
        f'Processed profile: {len(profile.threads)} threads in '
        f'{1 + len(subprocesses)} processes, {len(profile.libs)} libs, '
        f'{len(profile.shared.string_array)} strings')
    return profile


def process_gecko_or_devtools_profile(json_profile,
                                      config: Optional[dict] = None) -> Profile:
    """
    Convert a raw profile, possibly wrapped as {"profile": ...} the way the
    old DevTools performance panel exported it.
    """
    if not json_profile:
        raise MissingMetaError('The profile was empty.')
    if not isinstance(json_profile, dict):
        raise MissingMetaError('The profile was not an object.')

    gecko_profile = json_profile
    if json_profile.get('profile'):
        gecko_profile = json_profile['profile']

    if not isinstance(gecko_profile, dict) or not gecko_profile.get('meta'):
        raise MissingMetaError(
            'This does not appear to be a valid Gecko Profile, there is no '
            'meta field.')

    return process_gecko_profile(gecko_profile, config)


def serialize_profile(profile: Profile, indent=None) -> str:
    return json.dumps(profile.json(), indent=indent)


def insert_external_markers_into_profile(external_markers: dict,
                                         gecko_profile: GeckoProfile):
    """
    Add markers supplied by the browser outside of the profiler to the main
    thread of the parent process, along with their schemas and categories.

    External marker tuples use names instead of string indexes, and times
    relative to meta.profilingStartTime.
    """
    if (not external_markers.get('markerSchema') or
            not external_markers.get('categories') or
            not external_markers.get('markers')):
        return

    meta = gecko_profile['meta']
    for schema in external_markers['markerSchema']:
        existing_schema = next((s for s in meta['markerSchema']
                                if s['name'] == schema['name']), None)
        if existing_schema is None:
            meta['markerSchema'].append(schema)
        elif existing_schema != schema:
            logger.error(
                f"Existing marker schema for {schema['name']} doesn't match: "
                f"{schema!r} != {existing_schema!r}")

    category_map = {}
    for i, category in enumerate(external_markers['categories']):
        index = next((j for j, c in enumerate(meta['categories'])
                      if c['name'] == category['name']), None)
        if index is None:
            meta['categories'].append(category)
            index = len(meta['categories']) - 1
        category_map[i] = index

    main_thread = next(
        (thread for thread in gecko_profile['threads']
         if thread.get('name') == MAIN_THREAD_NAME and
         thread.get('processType') == 'default'), None)
    if main_thread is None:
        raise MalformedProfileError(
            'Could not find the main thread in the gecko profile')

    schema = external_markers['markers']['schema']
    for prop, index in main_thread['markers']['schema'].items():
        if schema.get(prop) != index:
            raise MalformedProfileError(
                'Marker table schema in the gecko profile and the external '
                'marker data do not match')

    profiling_start_time = meta.get('profilingStartTime')
    string_table = main_thread['stringTable']
    for marker in external_markers['markers']['data']:
        name = marker[schema['name']]
        if name in string_table:
            string_id = string_table.index(name)
        else:
            string_id = len(string_table)
            string_table.append(name)
        marker[schema['name']] = string_id
        if marker[schema['startTime']] and profiling_start_time:
            marker[schema['startTime']] += profiling_start_time
        if marker[schema['endTime']] and profiling_start_time:
            marker[schema['endTime']] += profiling_start_time
        marker[schema['category']] = category_map.get(
            marker[schema['category']]) or 0
        main_thread['markers']['data'].append(marker)


def insert_external_power_counters_into_profile(counters: list[dict],
                                                gecko_profile: GeckoProfile):
    """
    Add power counters supplied by the browser to the root process.

    Their sample times are relative to meta.profilingStartTime and become
    relative to meta.startTime, rounded to nanoseconds.
    """
    profiling_start_time = gecko_profile['meta'].get('profilingStartTime') or 0
    for counter in counters:
        samples = counter['samples']
        time_index = samples['schema']['time']
        for sample in samples['data']:
            sample[time_index] = math.floor(
                (sample[time_index] + profiling_start_time) * 1e6 + 0.5) / 1e6
        if not gecko_profile.get('counters'):
            gecko_profile['counters'] = []
        gecko_profile['counters'].append(counter)
