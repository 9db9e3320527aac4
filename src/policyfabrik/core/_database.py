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

import contextlib
import logging
import pathlib
import re

import sqlalchemy
import sqlalchemy.exc
import sqlalchemy.orm

from . import objects
from ._util import PolicyLoadError
from ._yaml_reader import YamlReader

logger = logging.getLogger(__name__)

_TABLE_LABELS = {
    'addresses': 'object',
    'areas': 'area',
    'groups': 'group',
    'interfaces': 'interface',
    'owners': 'owner',
    'protocol_groups': 'protocolgroup',
    'protocols': 'protocol',
    'routers': 'router',
    'rules': 'rule',
    'tunnels': 'crypto',
}

_ADDRESS_PREFIXES = {
    'Network': 'network',
    'Host': 'host',
    'Aggregate': 'any',
}


def duplicate_object_name(exc):
    """Extract a typed name from a UNIQUE-constraint IntegrityError.

    Returns a string like ``"network:n1"`` or *None* when the name cannot
    be determined from the failed statement.
    """
    stmt = getattr(exc, 'statement', None) or ''
    params = getattr(exc, 'params', None)
    if not stmt or not params:
        return None
    m = re.search(r'\(([^)]+)\)\s*VALUES', stmt)
    if not m:
        return None
    cols = [c.strip() for c in m.group(1).split(',')]
    table = ''
    cm = re.search(
        r'UNIQUE constraint failed:\s*(\w+)\.', str(getattr(exc, 'orig', ''))
    )
    if cm:
        table = cm.group(1)

    rows = params if isinstance(params, list) else [params]
    if 'name' not in cols:
        return None
    name_idx = cols.index('name')
    type_idx = cols.index('type') if 'type' in cols else -1

    # The conflicting row is the second one with the same (type, name)
    seen = set()
    row = rows[0]
    for r in rows:
        if not isinstance(r, (tuple, list)):
            return None
        key = (r[type_idx] if type_idx >= 0 else None, r[name_idx])
        if key in seen:
            row = r
            break
        seen.add(key)
    if not isinstance(row, (tuple, list)):
        return None
    name = row[name_idx]
    if 0 <= type_idx < len(row):
        prefix = _ADDRESS_PREFIXES.get(row[type_idx], row[type_idx])
    else:
        prefix = _TABLE_LABELS.get(table, table or 'object')
    return f'{prefix}:{name}'


class DatabaseManager:
    """Holds one loaded policy in an in-memory SQLite database."""

    def __init__(self, connection_string='sqlite:///:memory:'):
        self.engine = sqlalchemy.create_engine(connection_string, echo=False)
        self._session_factory = sqlalchemy.orm.sessionmaker(self.engine)
        self.source_path = None
        objects.enable_sqlite_fks(self.engine)
        self._reset_db()

    @contextlib.contextmanager
    def session(self):
        """Create a new database session. The transaction is committed when the contextmanager exits and rolled back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def load(self, path):
        path = pathlib.Path(path)
        logger.debug('Loading policy from %s', path)
        match path.suffix:
            case '.yaml' | '.yml':
                self._load_yaml(path)
            case _:
                raise PolicyLoadError(f'Unsupported file extension: {path}')
        self.source_path = path
        return path

    def _import(self, data):
        try:
            with self.session() as session:
                session.add(data.policy)
        except sqlalchemy.exc.IntegrityError as e:
            name = duplicate_object_name(e)
            if name:
                msg = f'Duplicate definition of {name}'
            else:
                msg = f'Duplicate object definition: {e.orig}'
            raise PolicyLoadError(msg) from e

    def _load_yaml(self, input_path):
        reader = YamlReader()
        result = reader.parse(input_path)
        self._reset_db()
        self._import(result)

    def _reset_db(self):
        logger.debug('Resetting database')
        objects.Base.metadata.drop_all(self.engine)
        objects.Base.metadata.create_all(self.engine)
