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

"""Shared pytest fixtures and helpers for the policy compiler tests."""

import textwrap
from pathlib import Path

import pytest

import policyfabrik.core
from policyfabrik.compiler import Pipeline, load_model

FIXTURES_DIR = Path(__file__).parent / 'fixtures'


_db_cache: dict[Path, bytes] = {}


def _get_db(fixture_path: Path) -> policyfabrik.core.DatabaseManager:
    """Return a DatabaseManager loaded from a cached in-memory SQLite snapshot.

    The fixture file is parsed once and its database serialized via
    ``sqlite3.Connection.serialize()``.  Each call creates a fresh
    DatabaseManager and restores the snapshot with ``deserialize()``
    so that every test is fully isolated.
    """
    resolved = fixture_path.resolve()
    if resolved not in _db_cache:
        db = policyfabrik.core.DatabaseManager()
        db.load(fixture_path)
        conn = db.engine.raw_connection()
        snapshot = conn.dbapi_connection.serialize()
        conn.close()
        _db_cache[resolved] = snapshot

    copy = policyfabrik.core.DatabaseManager()
    conn = copy.engine.raw_connection()
    conn.dbapi_connection.deserialize(_db_cache[resolved])
    conn.close()
    copy.source_path = fixture_path
    return copy


def load_fixture(name: str, overrides: dict | None = None):
    """Build the compiler model of ``fixtures/<name>.yaml``."""
    db = _get_db(FIXTURES_DIR / f'{name}.yaml')
    with db.session() as session:
        return load_model(session, overrides)


def run_until(model, stage: str | None = None):
    """Run the pipeline up to and including *stage* (all stages when None)."""
    return Pipeline().run(model, until=stage)


def messages(result, severity=None) -> list[str]:
    return [
        d.message
        for d in result.diagnostics
        if severity is None or d.severity == severity
    ]


def find(model, typed_name: str) -> int:
    """Handle of a subnet, router, rule, zone or NAT domain by typed name."""
    kind = typed_name.split(':', 1)[0]
    match kind:
        case 'zone':
            return next(i for i, z in enumerate(model.zones) if z.name == typed_name)
        case 'nat_domain':
            return next(
                i for i, d in enumerate(model.nat_domains) if d.name == typed_name
            )
        case 'interface':
            return model.interface_handle(typed_name)
        case _:
            return model.lookup(typed_name)[0]


@pytest.fixture
def build_model(tmp_path):
    """Write a policy from YAML text and return its compiler model."""

    def _build(text: str, overrides: dict | None = None):
        path = tmp_path / 'policy.yaml'
        path.write_text(textwrap.dedent(text), encoding='utf-8')
        db = policyfabrik.core.DatabaseManager()
        db.load(path)
        with db.session() as session:
            return load_model(session, overrides)

    return _build


@pytest.fixture
def policy_dir(tmp_path):
    """Copy a fixture into an empty directory so raw/ files can be added."""

    def _copy(name: str) -> Path:
        target = tmp_path / 'policy'
        target.mkdir(exist_ok=True)
        path = target / f'{name}.yaml'
        path.write_text(
            (FIXTURES_DIR / f'{name}.yaml').read_text(encoding='utf-8'),
            encoding='utf-8',
        )
        return path

    return _copy
