"""
visual_metrics.py

Browsertime attaches visual progress measurements to meta.visualMetrics.
They become markers on the parent process main thread and on the main thread
of the tab that rendered the page: one interval per metric, and one instant
per progress change.
"""

from typing import Optional

from geckoproc.configured_logger import new_logger
from geckoproc.constants import INSTANT, INTERVAL, INTERVAL_END, MAIN_THREAD_NAME
from geckoproc.interner import StringTable
from geckoproc.profile_schema import (
    MarkerSchema,
    MarkerSchemaField,
    ProfileMeta,
    Thread,
)

logger = new_logger('visual_metrics')

VISUAL_METRICS = ('Visual', 'ContentfulSpeedIndex', 'PerceptualSpeedIndex')

PROGRESS_MARKER_SCHEMA_NAME = 'VisualMetricProgress'


def progress_marker_schema() -> MarkerSchema:
    return MarkerSchema(
        name=PROGRESS_MARKER_SCHEMA_NAME,
        table_label='{marker.name} — {marker.data.percentage}',
        display=['marker-chart', 'marker-table'],
        fields=[
            MarkerSchemaField(key='percentage',
                              label='Percentage',
                              format='percentage')
        ],
    )


def find_tab_main_thread(threads: list[Thread], pages: list[dict],
                         string_table: StringTable) -> Optional[int]:
    """
    Index of the tab main thread that rendered the top level page.

    That's the first tab process main thread with a RefreshDriverTick marker
    whose innerWindowID is a page without an embedder. Only good enough for
    visual metrics.
    """
    if not string_table.has_string('RefreshDriverTick'):
        return None
    refresh_driver_tick = string_table.index_for_string('RefreshDriverTick')
    top_level_pages = {
        page.get('innerWindowID')
        for page in pages
        if page.get('embedderInnerWindowID') == 0
    }

    for thread_index, thread in enumerate(threads):
        if thread.name != MAIN_THREAD_NAME or thread.process_type != 'tab':
            continue
        markers = thread.markers
        for name, data in zip(markers.name, markers.data):
            if (name == refresh_driver_tick and data and
                    data.get('innerWindowID') and
                    data['innerWindowID'] in top_level_pages):
                return thread_index
    return None


def _add_metric_marker(thread: Thread, string_table: StringTable, name: str,
                       phase: int, start_time, end_time, category: int,
                       payload: Optional[dict] = None):
    # Browsertime can report null timestamps; such markers are skipped.
    if ((phase != INTERVAL_END and start_time is None) or
            (phase in (INTERVAL, INTERVAL_END) and end_time is None)):
        return
    thread.markers.add_marker(name=string_table.index_for_string(name),
                              start_time=start_time,
                              end_time=end_time,
                              phase=phase,
                              category=category,
                              data=payload)


def process_visual_metrics(threads: list[Thread], meta: ProfileMeta,
                           visual_metrics: Optional[dict], pages: list[dict],
                           string_table: StringTable):
    """Add the visual metrics markers, if both main threads can be found."""
    if not pages or not visual_metrics:
        return

    main_thread_index = next(
        (i for i, thread in enumerate(threads)
         if thread.name == MAIN_THREAD_NAME and
         thread.process_type == 'default'), None)
    tab_thread_index = find_tab_main_thread(threads, pages, string_table)
    if main_thread_index is None or tab_thread_index is None:
        logger.warning(
            'Visual metrics were recorded, but the parent process or tab '
            'main thread could not be found')
        return
    main_thread = threads[main_thread_index]
    tab_thread = threads[tab_thread_index]

    if meta.categories is None:
        return
    test_category = next(
        (i for i, category in enumerate(meta.categories)
         if category['name'] == 'Test'), -1)

    navigation_start_time = None
    if string_table.has_string('Navigation::Start'):
        navigation_start = string_table.index_for_string('Navigation::Start')
        markers = tab_thread.markers
        if navigation_start in markers.name:
            navigation_start_time = markers.start_time[markers.name.index(
                navigation_start)]

    for metric_name in VISUAL_METRICS:
        metric = visual_metrics.get(f'{metric_name}Progress')
        if not metric:
            continue

        start_time = navigation_start_time
        if start_time is None:
            start_time = metric[0]['timestamp']
        end_time = metric[-1]['timestamp']

        for thread in (main_thread, tab_thread):
            _add_metric_marker(thread, string_table, f'{metric_name} Progress',
                               INTERVAL, start_time, end_time, test_category)

        if not any(schema.name == PROGRESS_MARKER_SCHEMA_NAME
                   for schema in meta.marker_schema):
            meta.marker_schema.append(progress_marker_schema())

        for progress in metric:
            payload = {
                'type': PROGRESS_MARKER_SCHEMA_NAME,
                # Percentage fields hold a fraction.
                'percentage': progress['percent'] / 100,
            }
            for thread in (main_thread, tab_thread):
                _add_metric_marker(thread, string_table,
                                   f'{metric_name} Change', INSTANT,
                                   progress['timestamp'], None, test_category,
                                   dict(payload))
