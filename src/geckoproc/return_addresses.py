"""
return_addresses.py

In the raw format the address of every caller frame is a return address: it
points just after the call instruction. The processed format wants it inside
the call instruction, so symbolication finds the right line and inlined
frames. nudge_return_addresses subtracts one byte from those addresses.

Frames sampled from the instruction pointer keep their address. A frame that
was seen both ways is duplicated: the copy keeps the exact address and is
used by the sampled stacks, the original gets nudged and is used by the
caller and backtrace stacks.
"""

from typing import Optional

from geckoproc.errors import MalformedProfileError
from geckoproc.profile_schema import RawStackTable, Thread


def gather_stack_references(thread: Thread) -> tuple[dict, dict]:
    """
    (sampling self stacks, sync backtrace self stacks) of a thread, as
    insertion ordered sets.

    Samples reference the former. Marker causes and allocations reference the
    latter: their leaf frame comes from stack walking, not from the
    instruction pointer.
    """
    sampling_self_stacks = dict.fromkeys(
        stack for stack in thread.samples.stack if stack is not None)

    sync_backtrace_self_stacks = {}
    for data in thread.markers.data:
        cause = data.get('cause') if data else None
        if cause and cause.get('stack') is not None:
            sync_backtrace_self_stacks[cause['stack']] = None
    for allocations in (thread.js_allocations, thread.native_allocations):
        if allocations is not None:
            sync_backtrace_self_stacks.update(
                dict.fromkeys(stack for stack in allocations.stack
                              if stack is not None))

    return sampling_self_stacks, sync_backtrace_self_stacks


def _stack_updater(old_stack_to_new_stack: dict[int, int]):

    def convert(old_stack: Optional[int]) -> Optional[int]:
        if old_stack is None:
            return None
        new_stack = old_stack_to_new_stack.get(old_stack)
        if new_stack is None:
            raise MalformedProfileError(
                f'Stack {old_stack} is referenced but not in the stack table')
        return new_stack

    return convert


def nudge_return_addresses(thread: Thread) -> Thread:
    """
    Move every return address of the thread back by one byte.

    The thread is left alone when none of its frames has an address.
    Otherwise it gets new frame and stack tables, and every stack reference
    of its samples, marker causes and allocations is rewritten. The func
    table is not touched.
    """
    sampling_self_stacks, sync_backtrace_self_stacks = gather_stack_references(
        thread)
    stack_table = thread.stack_table
    frame_table = thread.frame_table

    old_ip_frame_to_new_ip_frame = {}
    ip_frames = set()
    for stack in sampling_self_stacks:
        frame = stack_table.frame[stack]
        old_ip_frame_to_new_ip_frame[frame] = frame
        if frame_table.address[frame] != -1:
            ip_frames.add(frame)

    return_address_frames: dict[int, int] = {}
    for stack in sync_backtrace_self_stacks:
        frame = stack_table.frame[stack]
        if frame_table.address[frame] != -1:
            return_address_frames[frame] = frame_table.address[frame]
    prefix_stacks = set()
    for prefix in stack_table.prefix:
        if prefix is None or prefix in prefix_stacks:
            continue
        prefix_stacks.add(prefix)
        prefix_frame = stack_table.frame[prefix]
        if frame_table.address[prefix_frame] != -1:
            return_address_frames[prefix_frame] = frame_table.address[
                prefix_frame]

    if not ip_frames and not return_address_frames:
        return thread

    new_frame_table = frame_table.clone_shallow()
    for frame, address in return_address_frames.items():
        if frame in ip_frames:
            new_ip_frame = new_frame_table.length
            for column in new_frame_table.columns().values():
                column.append(column[frame])
            new_frame_table.length += 1
            old_ip_frame_to_new_ip_frame[frame] = new_ip_frame
        new_frame_table.address[frame] = address - 1

    new_stack_table = RawStackTable()
    map_for_sampling_self_stacks = {}
    map_for_backtrace_self_stacks = {}
    prefix_map = {}
    for stack in range(stack_table.length):
        frame = stack_table.frame[stack]
        prefix = stack_table.prefix[stack]
        new_prefix = None if prefix is None else prefix_map[prefix]

        if stack in prefix_stacks or stack in sync_backtrace_self_stacks:
            new_stack = new_stack_table.add_stack(frame, new_prefix)
            prefix_map[stack] = new_stack
            map_for_backtrace_self_stacks[stack] = new_stack

        if stack in sampling_self_stacks:
            map_for_sampling_self_stacks[stack] = new_stack_table.add_stack(
                old_ip_frame_to_new_ip_frame[frame], new_prefix)

    return _update_thread_stacks(thread, new_frame_table, new_stack_table,
                                 _stack_updater(map_for_sampling_self_stacks),
                                 _stack_updater(map_for_backtrace_self_stacks))


def _update_thread_stacks(thread: Thread, frame_table, stack_table,
                          convert_stack, convert_backtrace_stack) -> Thread:
    thread.frame_table = frame_table
    thread.stack_table = stack_table

    samples = thread.samples.clone_shallow()
    samples.stack = [convert_stack(stack) for stack in samples.stack]
    thread.samples = samples

    markers = thread.markers.clone_shallow()
    for index, data in enumerate(markers.data):
        if data and data.get('cause'):
            markers.data[index] = dict(
                data,
                cause=dict(data['cause'],
                           stack=convert_backtrace_stack(
                               data['cause'].get('stack'))))
    thread.markers = markers

    if thread.js_allocations is not None:
        thread.js_allocations = thread.js_allocations.clone_shallow()
        thread.js_allocations.stack = [
            convert_backtrace_stack(stack)
            for stack in thread.js_allocations.stack
        ]
    if thread.native_allocations is not None:
        thread.native_allocations = thread.native_allocations.clone_shallow()
        thread.native_allocations.stack = [
            convert_backtrace_stack(stack)
            for stack in thread.native_allocations.stack
        ]
    return thread
