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

"""CLI entry point for the policy compiler."""

import argparse
import logging
import sys
import time

import policyfabrik
import policyfabrik.core
import policyfabrik.driver
from policyfabrik.compiler import CompilerStatus, Severity

__author__ = 'Linuxfabrik GmbH, Zurich/Switzerland'

DESCRIPTION = """PolicyFabrik policy compiler. Loads a YAML network security policy,
checks it and, when no errors are found, writes one packet filter configuration
per managed device."""


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='policyfabrik-compile',
        description=DESCRIPTION,
    )

    parser.add_argument(
        'policy_file',
        help='path to the .yaml policy file',
    )

    parser.add_argument(
        '-d',
        '--destdir',
        default='',
        dest='DESTDIR',
        help='output directory for generated device files; '
        'only checks are run when omitted',
    )

    parser.add_argument(
        '--set',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        dest='SET',
        help='override a compiler option from the policy file (repeatable)',
    )

    parser.add_argument(
        '--debug-rule',
        default=None,
        dest='DEBUG_RULE',
        help='log the path rules of one rule (e.g. rule:r1) after every rule processor',
    )

    parser.add_argument(
        '-q',
        '--quiet',
        action='store_true',
        dest='QUIET',
        help='only print errors',
    )

    parser.add_argument(
        '-v',
        '--verbose',
        action='count',
        default=0,
        dest='VERBOSE',
        help='verbose output (repeat for higher verbosity)',
    )

    parser.add_argument(
        '-V',
        '--version',
        action='version',
        version=f'%(prog)s: v{policyfabrik.__version__} by {__author__}',
    )

    return parser.parse_args(argv)


def _parse_overrides(items):
    overrides = {}
    for item in items:
        key, sep, value = item.partition('=')
        if not sep or not key:
            msg = f"expected KEY=VALUE, got '{item}'"
            raise ValueError(msg)
        overrides[key.strip()] = value.strip()
    return overrides


def _setup_logging(verbose):
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )


def main(argv=None):
    args = parse_args(argv)
    t_start = time.monotonic()
    _setup_logging(args.VERBOSE)

    try:
        overrides = _parse_overrides(args.SET)
    except ValueError as e:
        print(f'Error: --set: {e}', file=sys.stderr)
        return 1

    if not args.QUIET:
        print(f'Loading policy from {args.policy_file} ...', file=sys.stderr)

    try:
        db = policyfabrik.core.DatabaseManager()
        db.load(args.policy_file)
    except (policyfabrik.core.PolicyLoadError, OSError) as e:
        print(
            f'Error: failed to load policy from {args.policy_file}: {e}',
            file=sys.stderr,
        )
        return 1

    driver = policyfabrik.driver.CompilerDriver(db)
    driver.wdir = args.DESTDIR
    driver.debug_rule = args.DEBUG_RULE
    driver.overrides = overrides

    if not args.QUIET:
        print('Compiling ...', file=sys.stderr)
    try:
        status = driver.run()
    except policyfabrik.core.PolicyLoadError as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    for diagnostic in driver.result.diagnostics:
        if diagnostic.severity == Severity.ERROR:
            print(diagnostic, file=sys.stderr)
        elif diagnostic.severity == Severity.WARNING and not args.QUIET:
            print(diagnostic, file=sys.stderr)
        elif args.VERBOSE and not args.QUIET:
            print(diagnostic, file=sys.stderr)
    if not args.QUIET:
        for warning in driver.all_warnings[driver.result.warning_count :]:
            print(warning, file=sys.stderr)
        if status == CompilerStatus.ERROR:
            print(
                f'Aborted with {driver.result.error_count} error(s)',
                file=sys.stderr,
            )
        elif driver.file_names:
            print(
                f'Wrote {len(driver.file_names)} device file(s) to {args.DESTDIR}',
                file=sys.stderr,
            )

        elapsed = time.monotonic() - t_start
        hours, remainder = divmod(int(elapsed), 3600)
        minutes, seconds = divmod(remainder, 60)
        print(f'Compile time: {hours:02d}:{minutes:02d}:{seconds:02d}', file=sys.stderr)

    return 1 if status == CompilerStatus.ERROR else 0


if __name__ == '__main__':
    sys.exit(main())
