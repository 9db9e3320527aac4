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

"""Tests for reading YAML policies and building the compiler model."""

import ipaddress

import pytest

import policyfabrik.core
from policyfabrik.compiler import SubnetKind
from policyfabrik.core import PolicyLoadError, YamlReader

from .conftest import FIXTURES_DIR, load_fixture

BASE = """
networks:
  - name: n1
    ip: 10.1.1.0/24
    hosts:
      - {name: h1, ip: 10.1.1.10}
  - {name: n2, ip: 10.2.2.0/24}
routers:
  - name: r1
    managed: full
    interfaces:
      - {name: n1, ip: 10.1.1.1}
      - {name: n2, ip: 10.2.2.1}
"""


def _write(tmp_path, text, name='policy.yaml'):
    path = tmp_path / name
    path.write_text(text, encoding='utf-8')
    return path


class TestYamlReader:
    def test_counts(self):
        result = YamlReader().parse(FIXTURES_DIR / 'topology.yaml')
        assert result.policy.name == 'topology'
        assert result.counts['networks'] == 4
        assert result.counts['rules'] == 2
        assert [r.position for r in result.policy.rules] == [1, 2]

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path, 'networks: [\n')
        with pytest.raises(PolicyLoadError, match='invalid YAML'):
            YamlReader().parse(path)

    def test_unknown_top_level_key(self, tmp_path):
        path = _write(tmp_path, 'name: x\nfirewalls: []\n')
        with pytest.raises(PolicyLoadError, match='unknown top-level keys: firewalls'):
            YamlReader().parse(path)

    def test_duplicate_name(self, tmp_path):
        path = _write(
            tmp_path,
            'networks:\n'
            '  - {name: n1, ip: 10.1.1.0/24}\n'
            '  - {name: n1, ip: 10.2.2.0/24}\n',
        )
        with pytest.raises(PolicyLoadError, match='Duplicate definition of network:n1'):
            YamlReader().parse(path)

    def test_managed_values(self, tmp_path):
        path = _write(
            tmp_path,
            'routers:\n  - {name: r1, managed: sometimes}\n',
        )
        with pytest.raises(PolicyLoadError, match='managed must be one of'):
            YamlReader().parse(path)

    def test_nat_needs_ip_or_hidden(self, tmp_path):
        path = _write(
            tmp_path,
            'networks:\n'
            '  - {name: n1, ip: 10.1.1.0/24, nat: {x: {dynamic: true}}}\n',
        )
        with pytest.raises(PolicyLoadError, match="needs 'ip' or 'hidden: true'"):
            YamlReader().parse(path)

    def test_rule_action(self, tmp_path):
        path = _write(
            tmp_path,
            'rules:\n  - {name: r, action: drop, src: network:n1, dst: network:n1}\n',
        )
        with pytest.raises(PolicyLoadError, match='action must be permit or deny'):
            YamlReader().parse(path)


class TestDatabaseManager:
    def test_unsupported_extension(self, tmp_path):
        path = _write(tmp_path, BASE, name='policy.json')
        with pytest.raises(PolicyLoadError, match='Unsupported file extension'):
            policyfabrik.core.DatabaseManager().load(path)

    def test_load_sets_source_path(self, tmp_path):
        path = _write(tmp_path, BASE)
        db = policyfabrik.core.DatabaseManager()
        assert db.load(path) == path
        assert db.source_path == path


class TestLoadModel:
    def test_names_and_kinds(self):
        model = load_fixture('chain')
        web = model.subnets[model.subnet_handle('host:web')]
        assert web.kind == SubnetKind.HOST
        assert web.ip == ipaddress.IPv4Network('10.1.1.20/32')
        assert model.subnets[web.network].name == 'network:n1'
        r2 = model.routers[model.router_handle('r2')]
        assert r2.managed == 'secondary'
        assert model.options.policy_distribution_point == 'host:admin'

    def test_overrides(self):
        model = load_fixture('chain', {'max_workers': '1'})
        assert model.options.max_workers == 1

    def test_invalid_override(self):
        with pytest.raises(PolicyLoadError, match='Unknown compiler option'):
            load_fixture('chain', {'bogus': '1'})

    def test_host_range_split_into_blocks(self, build_model):
        model = build_model(
            BASE.replace(
                '{name: h1, ip: 10.1.1.10}',
                '{name: h1, range: 10.1.1.3-10.1.1.8}',
            )
        )
        blocks = [model.subnets[h].ip for h in model.lookup('host:h1')]
        assert blocks == [
            ipaddress.IPv4Network('10.1.1.3/32'),
            ipaddress.IPv4Network('10.1.1.4/30'),
            ipaddress.IPv4Network('10.1.1.8/32'),
        ]

    def test_host_outside_network(self, build_model):
        with pytest.raises(PolicyLoadError, match='is not inside network:n1'):
            build_model(BASE.replace('10.1.1.10', '10.9.9.9'))

    def test_interface_outside_network(self, build_model):
        with pytest.raises(PolicyLoadError, match='is not inside network:n2'):
            build_model(BASE.replace('10.2.2.1}', '10.3.3.1}'))

    def test_unknown_reference_in_rule(self, build_model):
        text = BASE + (
            'rules:\n'
            '  - {name: r, src: network:n1, dst: network:n3, prt: tcp 80}\n'
        )
        with pytest.raises(PolicyLoadError, match='references unknown network:n3'):
            build_model(text)

    def test_unnumbered_interface_in_rule(self, build_model):
        text = BASE.replace('{name: n2, ip: 10.2.2.1}', '{name: n2}') + (
            'rules:\n'
            '  - {name: r, src: network:n1, dst: interface:r1.n2, prt: tcp 22}\n'
        )
        with pytest.raises(PolicyLoadError, match='unnumbered interface:r1.n2'):
            build_model(text)

    def test_local_needs_filter_only(self, build_model):
        with pytest.raises(PolicyLoadError, match="needs filter_only"):
            build_model(BASE.replace('managed: full', 'managed: local'))

    def test_static_nat_of_undefined_tag(self, build_model):
        text = BASE.replace(
            '{name: h1, ip: 10.1.1.10}',
            '{name: h1, ip: 10.1.1.10, nat: {x: 192.0.2.1}}',
        )
        with pytest.raises(PolicyLoadError, match='nat:x is not defined at network:n1'):
            build_model(text)

    def test_tunnel_interfaces(self):
        model = load_fixture('crypto')
        hub = model.routers[model.router_handle('hub')]
        names = [model.interfaces[i].name for i in hub.interfaces]
        assert names == [
            'interface:hub.inet',
            'interface:hub.lan1',
            'interface:hub.vpn',
        ]
        transport = model.interfaces[model.interface_handle('interface:hub.inet')]
        assert transport.is_transport
        vpn = model.interfaces[hub.interfaces[-1]]
        assert vpn.tunnel == 'vpn'
        assert vpn.crypto_role == 'hub'
        assert model.interfaces[vpn.transport].name == 'interface:hub.inet'
