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

"""Augment object references in policy files.

Every occurrence of a typed name OLD inside group ``members`` and inside
the ``src``, ``dst`` and ``user`` lists of rules is followed by a typed
name NEW.  Files are edited as text so comments and layout survive.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

VALID_TYPES = frozenset({'network', 'host', 'interface', 'any', 'group', 'area'})

_INVALID_CHAR = re.compile(r'[^-\w.:@/\[\]]')

_COMMENT = re.compile(r'[ \t]*#.*(?:\n|$)')
_START_LIST = re.compile(r'.*?\b(?:members|src|dst|user)[ \t]*:[ \t]*')
_TYPED_NAME = re.compile(r'(\s*)(\w+:[-\w.@:/]+)')
_EXTENSION = re.compile(r'\[(?:auto|all)\]')
_FLOW_START = re.compile(r'\s*\[[ \t]*')
_FLOW_END = re.compile(r'\s*\]')
_BLOCK_ITEM = re.compile(r'\s*-[ \t]+')
_COMMA = re.compile(r'\s*,')
_NEGATION = re.compile(r'\s*!')
_INTERSECTION = re.compile(r'\s*&')
_REST_OF_LINE = re.compile(r'.*\n|.+$')

# What is left of a line before an entry that stands alone on it
_LONE_PREFIX = re.compile(r'[ \t]*(?:-[ \t]+)?$')
_KEY_PREFIX = re.compile(r'[-\w]+[ \t]*:[ \t]*$')
_TAIL = re.compile(r'((?:[ \t]*,)?)([ \t]*(?:#.*)?)(?:\n|$)')


class PatchError(ValueError):
    """Raised for invalid typed names or pair lists."""


def check_name(typed_name: str) -> None:
    kind, sep, name = typed_name.partition(':')
    if not sep:
        msg = f'Missing type in {typed_name}'
        raise PatchError(msg)
    if kind not in VALID_TYPES:
        msg = f"Can't use type in {typed_name}"
        raise PatchError(msg)
    m = _INVALID_CHAR.search(name)
    if m:
        msg = f"Invalid character '{m.group(0)}' in {typed_name}"
        raise PatchError(msg)


def build_pairs(words: list[str]) -> dict[str, str]:
    """Map OLD -> NEW from a flat list ``[OLD, NEW, OLD, NEW, ...]``."""
    pairs = {}
    for i in range(0, len(words), 2):
        old = words[i]
        if i + 1 >= len(words):
            msg = f"Missing 2nd. element for '{old}'"
            raise PatchError(msg)
        new = words[i + 1]
        check_name(old)
        check_name(new)
        pairs[old] = new
    return pairs


def read_pairs(path) -> dict[str, str]:
    words = Path(path).read_text(encoding='utf-8').split()
    if not words:
        msg = f'Missing pairs in {path}'
        raise PatchError(msg)
    return build_pairs(words)


class _Scanner:
    def __init__(self, text: str, pairs: dict[str, str]) -> None:
        self.text = text
        self.pos = 0
        self.pairs = pairs
        self.out: list[str] = []
        self.changes = 0
        self.warnings: list[str] = []

    def match(self, regex):
        m = regex.match(self.text, self.pos)
        if m is None:
            return None
        self.pos = m.end()
        return m

    def line_prefix(self) -> str:
        written = ''.join(self.out)
        return written[written.rfind('\n') + 1 :]

    def run(self) -> str:
        in_list = False
        subst_done = False
        while self.pos < len(self.text):
            if (m := self.match(_COMMENT)) and m.group(0):
                self.out.append(m.group(0))
            elif in_list:
                if m := self.match(_TYPED_NAME):
                    space, obj = m.groups()
                    if ext := self.match(_EXTENSION):
                        obj += ext.group(0)
                    self.out.append(space)
                    new = self.pairs.get(obj)
                    if new is None:
                        self.out.append(obj)
                        subst_done = False
                        continue
                    self.changes += 1
                    subst_done = True
                    self._add(obj, new)
                else:
                    in_list = False
                    for regex in (
                        _FLOW_START,
                        _BLOCK_ITEM,
                        _COMMA,
                        _NEGATION,
                        _INTERSECTION,
                        _FLOW_END,
                    ):
                        if m := self.match(regex):
                            self.out.append(m.group(0))
                            in_list = regex is not _FLOW_END
                            if subst_done and regex is _INTERSECTION:
                                self.warnings.append('Substituted in intersection')
                            break
            elif m := self.match(_START_LIST):
                self.out.append(m.group(0))
                in_list = True
            elif m := self.match(_REST_OF_LINE):
                self.out.append(m.group(0))
            else:
                break
        return ''.join(self.out)

    def _add(self, obj, new):
        prefix = self.line_prefix()
        if _KEY_PREFIX.search(prefix):
            # Scalar value becomes a flow list
            self.out.append(f'[{obj}, {new}]')
        elif _LONE_PREFIX.match(prefix) and (m := self.match(_TAIL)):
            delim, comment = m.groups()
            if '-' in prefix:
                self.out.append(f'{obj}{delim}{comment}\n{prefix}{new}\n')
            else:
                self.out.append(f'{obj},{comment}\n{prefix}{new}{delim}\n')
        else:
            self.out.append(f'{obj}, {new}')


def process(text: str, pairs: dict[str, str]) -> tuple[int, str, list[str]]:
    """Apply *pairs* to *text*; return change count, new text and warnings."""
    scanner = _Scanner(text, pairs)
    result = scanner.run()
    return scanner.changes, result, scanner.warnings


def policy_files(path) -> list[Path]:
    """*path* itself or every file below it, skipping hidden entries and ``raw``."""
    path = Path(path)
    if path.is_file():
        return [path]
    files = []
    for f in sorted(path.rglob('*')):
        parts = f.relative_to(path).parts
        if any(p.startswith('.') for p in parts) or parts[0] == 'raw':
            continue
        if f.is_file():
            files.append(f)
    return files


def process_path(path, pairs: dict[str, str]) -> list[tuple[Path, int, list[str]]]:
    """Patch all policy files below *path* in place; only changed files are written."""
    results = []
    for f in policy_files(path):
        count, text, warnings = process(f.read_text(encoding='utf-8'), pairs)
        if not count:
            continue
        f.write_text(text, encoding='utf-8')
        logger.debug('%d changes in %s', count, f)
        results.append((f, count, warnings))
    return results
