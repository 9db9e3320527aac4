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

"""Custom column types."""

import json

import sqlalchemy
import sqlalchemy.types


class JSONEncodedSet(sqlalchemy.types.TypeDecorator):
    """Stores a Python set as a sorted JSON list."""

    impl = sqlalchemy.Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return json.dumps(sorted(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return set(json.loads(value))
