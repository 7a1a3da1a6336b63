#!/usr/bin/env python3
from argparse import ArgumentParser
import gzip
import json
import logging
import sys

from geckoproc import config as geckoproc_config
from geckoproc.configured_logger import new_logger, set_level
from geckoproc.errors import ProfileError
from geckoproc.gecko_versioning import upgrade_gecko_profile_to_current_version
from geckoproc.process_profile import (
    process_gecko_or_devtools_profile,
    serialize_profile,
)

logger = new_logger('cli')

GZIP_MAGIC = b'\x1f\x8b'


def read_profile(path):
    """Load a JSON profile from a file, gzip-compressed or not."""
    with open(path, 'rb') as f:
        data = f.read()
    if data[:2] == GZIP_MAGIC:
        data = gzip.decompress(data)
    return json.loads(data)


def write_output(text, path):
    if path is None or path == '-':
        sys.stdout.write(text)
        sys.stdout.write('\n')
        return
    with open(path, 'w') as f:
        f.write(text)
    logger.info(f'Done writing to {path}')


# Converts a raw profile from the browser's profiler to the processed format.
def main(args, config):
    gecko_profile = read_profile(args.input)

    if args.upgrade_only:
        # Upgrading keeps the devtools wrapper, if any.
        profile = gecko_profile
        if isinstance(profile, dict) and profile.get('profile'):
            profile = profile['profile']
        upgrade_gecko_profile_to_current_version(profile)
        write_output(json.dumps(gecko_profile, indent=config['indent']),
                     args.output)
        return

    profile = process_gecko_or_devtools_profile(gecko_profile, config)
    write_output(serialize_profile(profile, indent=config['indent']),
                 args.output)


def build_parser():
    parser = ArgumentParser(
        description='Convert a raw Gecko profile to the processed profile format.')
    parser.add_argument('input',
                        type=str,
                        help='Path to the raw profile JSON, optionally gzipped.')
    parser.add_argument('-o',
                        '--output',
                        type=str,
                        default=None,
                        help='Path to the output JSON file. Defaults to stdout.')
    parser.add_argument('--upgrade-only',
                        action='store_true',
                        help='Only upgrade the raw profile to the current '
                        'raw format version.')
    parser.add_argument('--verbose',
                        action='store_true',
                        help='Log debug messages.')
    return parser


def run(argv=None):
    args = build_parser().parse_args(argv)
    config = geckoproc_config.load_config()
    set_level(logging.DEBUG if args.verbose else geckoproc_config.log_level(
        config))

    try:
        main(args, config)
    except ProfileError as e:
        logger.error(f'Failed to convert {args.input}: {e}')
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(run())
