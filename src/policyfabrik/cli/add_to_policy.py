# Copyright (C) 2026 Linuxfabrik <info@linuxfabrik.ch>
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 2 of the License, or
# (at your option) any later version.
#
# On Debian systems, the complete text of the GNU General Public License
# version 2 can be found in /usr/share/common-licenses/GPL-2.
#
# SPDX-License-Identifier: GPL-2.0-or-later

"""CLI entry point for augmenting object references in policy files."""

import argparse
import sys

import policyfabrik
from policyfabrik import patch

__author__ = 'Linuxfabrik GmbH, Zurich/Switzerland'

DESCRIPTION = """Augment objects in policy files. Every occurrence of OLD in group
members and in rule src, dst and user lists is followed by NEW. Changes are done
in place without backup files; only changed files are written."""


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='add-to-policy',
        description=DESCRIPTION,
    )

    parser.add_argument(
        'path',
        help='policy file or directory',
    )

    parser.add_argument(
        'pairs',
        nargs='*',
        metavar='OLD NEW',
        help='pairs of typed names like network:n1 host:h1',
    )

    parser.add_argument(
        '-f',
        '--file',
        default='',
        dest='FILE',
        help='read pairs from file',
    )

    parser.add_argument(
        '-q',
        '--quiet',
        action='store_true',
        dest='QUIET',
        help="don't print the number of changes",
    )

    parser.add_argument(
        '-V',
        '--version',
        action='version',
        version=f'%(prog)s: v{policyfabrik.__version__} by {__author__}',
    )

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    try:
        pairs = {}
        if args.FILE:
            pairs.update(patch.read_pairs(args.FILE))
        if args.pairs:
            pairs.update(patch.build_pairs(args.pairs))
        results = patch.process_path(args.path, pairs)
    except (patch.PatchError, OSError) as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    for path, count, warnings in results:
        for warning in warnings:
            print(f'Warning: {warning}', file=sys.stderr)
        if not args.QUIET:
            print(f'{count} changes in {path}', file=sys.stderr)
    return 0


if __name__ == '__main__':
    sys.exit(main())
