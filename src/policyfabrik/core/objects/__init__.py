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

from ._addresses import Address, Aggregate, Area, Host, Network
from ._base import Base, enable_sqlite_fks
from ._devices import Interface, Managed, Router, Tunnel
from ._policy import (
    Group,
    Owner,
    Policy,
    ProtocolDef,
    ProtocolGroup,
    Rule,
    RuleAction,
)

__all__ = [
    'Address',
    'Aggregate',
    'Area',
    'Base',
    'Group',
    'Host',
    'Interface',
    'Managed',
    'Network',
    'Owner',
    'Policy',
    'ProtocolDef',
    'ProtocolGroup',
    'Router',
    'Rule',
    'RuleAction',
    'Tunnel',
    'enable_sqlite_fks',
]
