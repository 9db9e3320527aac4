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

"""Tests for CompilerDriver: device files and raw configuration fragments."""

from ipaddress import IPv4Network

import pytest

import policyfabrik.core
from policyfabrik.compiler import CompilerStatus
from policyfabrik.driver import CompilerDriver
from policyfabrik.driver._jinja2_template import format_address


def _driver(path, wdir=''):
    db = policyfabrik.core.DatabaseManager()
    db.load(path)
    driver = CompilerDriver(db)
    driver.wdir = str(wdir) if wdir else ''
    return driver


class TestPrintCode:
    def test_device_files(self, policy_dir, tmp_path):
        out = tmp_path / 'out'
        driver = _driver(policy_dir('chain'), out)
        assert driver.run() == CompilerStatus.SUCCESS
        assert sorted(p.name for p in out.iterdir()) == ['r1', 'r2']
        assert driver.file_names == {'r1': str(out / 'r1'), 'r2': str(out / 'r2')}

        r1 = (out / 'r1').read_text(encoding='utf-8')
        assert r1.startswith('! r1: generated by policyfabrik')
        assert '! [ Managed = full ]\n' in r1
        assert '! [ IP = 10.1.1.1 ]\n' in r1
        assert 'interface t\n  ip address 10.3.3.1\n' in r1
        assert 'route 10.2.2.0/24 dev t via 10.3.3.2\n' in r1
        assert 'route 10.1.1.0/24 dev n1\n' in r1
        assert (
            'acl n1_in {\n'
            '  deny udp 10.1.1.0/24 host 10.2.2.30\n'
            '  permit tcp 5432 host 10.1.1.20 host 10.2.2.30\n'
            '  deny ip any any\n'
            '}\n'
        ) in r1

        r2 = (out / 'r2').read_text(encoding='utf-8')
        assert '! [ Managed = secondary ]\n' in r2
        assert '! [ IP = 10.3.3.2 ]\n' in r2
        assert 'route 10.1.1.0/24 dev t via 10.3.3.1\n' in r2
        assert (
            'acl t_in {\n'
            '  deny udp 10.1.1.0/24 host 10.2.2.30\n'
            '  permit ip 10.1.1.0/24 10.2.2.0/24\n'
            '  deny ip any any\n'
            '}\n'
        ) in r2
        assert 'acl n2_in {\n  permit ip any 10.2.2.0/24\n  deny ip any any\n}\n' in r2
        assert r2.index('acl n2_in') < r2.index('acl t_in')

    def test_check_only(self, policy_dir, tmp_path):
        driver = _driver(policy_dir('chain'))
        assert driver.run() == CompilerStatus.SUCCESS
        assert driver.file_names == {}
        assert list(tmp_path.iterdir()) == [tmp_path / 'policy']

    def test_errors_suppress_output(self, policy_dir, tmp_path):
        out = tmp_path / 'out'
        driver = _driver(policy_dir('unstable_nat'), out)
        assert driver.run() == CompilerStatus.ERROR
        assert not out.exists()
        assert any(
            e.startswith('Error: Unstable NAT in rule:to-hd') for e in driver.all_errors
        )


class TestCopyRaw:
    def test_raw_file_is_appended(self, policy_dir, tmp_path):
        path = policy_dir('chain')
        raw = path.parent / 'raw'
        raw.mkdir()
        (raw / 'r1').write_text('ntp server 10.1.1.10\n', encoding='utf-8')
        (raw / '.r2.swp').write_text('ignored\n', encoding='utf-8')
        out = tmp_path / 'out'

        driver = _driver(path, out)
        assert driver.run() == CompilerStatus.SUCCESS
        assert (out / 'r1').read_text(encoding='utf-8').endswith(
            '}\nntp server 10.1.1.10\n'
        )
        assert 'ignored' not in (out / 'r2').read_text(encoding='utf-8')
        assert driver.all_warnings == []

    def test_unused_raw_file(self, policy_dir, tmp_path, caplog):
        path = policy_dir('chain')
        raw = path.parent / 'raw'
        raw.mkdir()
        (raw / 'r9').write_text('ntp server 10.1.1.10\n', encoding='utf-8')

        driver = _driver(path, tmp_path / 'out')
        driver.run()
        assert driver.all_warnings == [f'Warning: Found unused raw file {raw / "r9"}']
        assert 'Found unused raw file' in caplog.text


@pytest.mark.parametrize(
    ('network', 'expected'),
    [
        (None, 'any'),
        (IPv4Network('0.0.0.0/0'), 'any'),
        (IPv4Network('10.1.1.10/32'), 'host 10.1.1.10'),
        (IPv4Network('10.1.1.0/24'), '10.1.1.0/24'),
    ],
)
def test_format_address(network, expected):
    assert format_address(network) == expected
