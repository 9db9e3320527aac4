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

from ._database import DatabaseManager, duplicate_object_name
from ._util import ParseResult, PolicyLoadError
from ._yaml_reader import YamlReader

__all__ = [
    'DatabaseManager',
    'ParseResult',
    'PolicyLoadError',
    'YamlReader',
    'duplicate_object_name',
]
