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

"""Shared code for the reader and the compiler loader.

Typed-name helpers, the ParseResult dataclass and the load error type.
"""

import dataclasses
import re

from . import objects

# Object types that may appear in src/dst lists and group definitions
ENDPOINT_TYPES = frozenset({'network', 'host', 'interface', 'any', 'group', 'area'})

PROTOCOL_TYPES = frozenset({'protocol', 'protocolgroup'})

TYPED_NAME_RE = re.compile(r'^(\w+):([-\w.:@/\[\]]+)$')


class PolicyLoadError(ValueError):
    """Raised when a policy file cannot be turned into a consistent model."""


@dataclasses.dataclass
class ParseResult:
    """Holds the parsed policy object graph."""

    policy: objects.Policy
    counts: dict[str, int]


def interface_name(router: str, name: str) -> str:
    return f'interface:{router}.{name}'

