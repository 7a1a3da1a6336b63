from geckoproc.process_profile import process_gecko_profile
from geckoproc.test_utils.fixtures import (
    GeckoThreadBuilder,
    make_gecko_profile,
    make_lib,
)

LIBS = [make_lib('libxul.so', 'XUL0', 0x1000, 0x2000)]


def _stack_payload(builder, stack):
    return {
        'type': 'Text',
        'name': 'with a backtrace',
        'stack': {
            'tid': builder.thread['tid'],
            'samples': {
                'schema': {'stack': 0, 'time': 1},
                'data': [[stack, 1.5]]
            },
        },
    }


def test_return_addresses_are_nudged_and_shared_frames_duplicated(
        test_config):
    builder = GeckoThreadBuilder()
    outer = builder.add_call_stack('0x1100')
    inner = builder.add_stack(builder.add_frame('0x1200'), outer)
    builder.add_sample(inner, 1.0)
    builder.add_sample(outer, 2.0)
    builder.add_marker('Text', 1.5, data=_stack_payload(builder, inner))

    profile = process_gecko_profile(
        make_gecko_profile([builder.build()], libs=LIBS), test_config)
    (thread,) = profile.threads

    # The sampled copies of both frames keep the exact address.
    assert thread.frame_table.address == [0xff, 0x1ff, 0x200, 0x100]
    assert thread.frame_table.func == [0, 1, 1, 0]
    thread.frame_table.check_lengths()

    assert thread.stack_table.frame == [0, 3, 1, 2]
    assert thread.stack_table.prefix == [None, None, 0, 0]
    assert thread.samples.stack == [3, 1]
    assert thread.markers.data[0]['cause']['stack'] == 2

    # The func names still carry the raw addresses.
    names = [profile.shared.string_array[i] for i in thread.func_table.name]
    assert names == ['0x1100', '0x1200']


def test_threads_without_addresses_are_unchanged(test_config):
    builder = GeckoThreadBuilder()
    leaf = builder.add_call_stack('main', 'run')
    builder.add_sample(leaf, 1.0)

    profile = process_gecko_profile(make_gecko_profile([builder.build()]),
                                    test_config)
    (thread,) = profile.threads
    assert thread.frame_table.address == [-1, -1]
    assert thread.stack_table.frame == [0, 1]
    assert thread.stack_table.prefix == [None, 0]
    assert thread.samples.stack == [1]
