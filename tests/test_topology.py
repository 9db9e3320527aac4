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

"""Tests for zones, NAT domains and NAT tag classification."""

from policyfabrik.compiler import Category, Severity
from policyfabrik.compiler._model import NatType
from policyfabrik.compiler._topology import UnionFind, distribute_nat_info

from .conftest import find, load_fixture

TWO_ROUTERS = """
networks:
  - name: n1
    ip: 10.1.1.0/24
    nat:
{nat}
  - {{name: n2, ip: 10.2.2.0/24}}
  - {{name: n3, ip: 10.3.3.0/24}}
routers:
  - name: r1
    managed: full
    interfaces:
      - {{name: n1, ip: 10.1.1.1}}
      - {{name: n2, ip: 10.2.2.1, bind_nat: [{r1_bind}]}}
  - name: r2
    managed: full
    interfaces:
      - {{name: n2, ip: 10.2.2.2, bind_nat: [{r2_bind}]}}
      - {{name: n3, ip: 10.3.3.1, bind_nat: [{r2_bind}]}}
"""


def _policy(nat='      x: {ip: 192.0.2.0/24}', r1_bind='x', r2_bind='x'):
    return TWO_ROUTERS.format(nat=nat, r1_bind=r1_bind, r2_bind=r2_bind)


def _messages(result, severity):
    return [d.message for d in result.diagnostics if d.severity == severity]


def test_union_find_groups():
    uf = UnionFind(range(5))
    uf.union(3, 1)
    uf.union(4, 3)
    groups = sorted(sorted(g) for g in uf.groups())
    assert groups == [[0], [1, 3, 4], [2]]
    assert uf.find(4) == 1


class TestZones:
    def test_unmanaged_router_joins_networks(self):
        model = distribute_nat_info(load_fixture('topology')).model
        assert [z.name for z in model.zones] == ['zone:a1', 'zone:b1', 'zone:c1']
        zone = model.zones[find(model, 'zone:a1')]
        assert [model.subnets[h].name for h in zone.networks] == [
            'network:a1',
            'network:a2',
        ]

    def test_zone_interfaces_are_managed_only(self):
        model = distribute_nat_info(load_fixture('topology')).model
        zone = model.zones[find(model, 'zone:b1')]
        assert [model.interfaces[i].name for i in zone.interfaces] == [
            'interface:fw1.b1',
            'interface:fw2.b1',
        ]

    def test_subnets_inherit_zone(self):
        model = distribute_nat_info(load_fixture('supernet')).model
        zone = find(model, 'zone:n0')
        for name in ('network:n0', 'network:n1', 'network:n23', 'interface:fw.n23'):
            assert model.subnets[model.subnet_handle(name)].zone == zone
        aggregate = model.subnets[find(model, 'any:all')]
        assert model.zones[aggregate.zone].name == 'zone:client'

    def test_tunnel_joins_zone_of_unmanaged_peer(self):
        model = distribute_nat_info(load_fixture('crypto')).model
        zone = model.zones[model.subnets[find(model, 'tunnel:vpn')].zone]
        assert zone.name == 'zone:inet'
        assert len(zone.networks) == 3


class TestNatDomains:
    def test_domains_split_at_bind_nat(self):
        result = distribute_nat_info(load_fixture('nat'))
        model = result.model
        assert [d.name for d in model.nat_domains] == [
            'nat_domain:dmz',
            'nat_domain:outside',
        ]
        outside = model.nat_domains[find(model, 'nat_domain:outside')]
        assert outside.active == {'pub', 'pool', 'hide'}
        assert model.nat_domains[find(model, 'nat_domain:dmz')].active == frozenset()
        assert result.diagnostics == ()

    def test_nat_types(self):
        model = distribute_nat_info(load_fixture('nat')).model
        assert model.nat_types == {
            'hide': NatType.HIDDEN,
            'pool': NatType.DYNAMIC,
            'pub': NatType.STATIC,
        }

    def test_inconsistent_binding(self, build_model):
        result = distribute_nat_info(build_model(_policy(r2_bind='')))
        errors = [d for d in result.diagnostics if d.severity == Severity.ERROR]
        assert len(errors) == 1
        assert errors[0].category == Category.TOPOLOGY
        assert errors[0].message == (
            'Inconsistent NAT binding in nat_domain:n2: '
            'interface:r1.n2 binds nat:x; interface:r2.n2 binds nothing'
        )
        model = result.model
        assert model.unstable_tags == {'x'}
        assert all('x' not in d.active for d in model.nat_domains)

    def test_consistent_binding(self, build_model):
        result = distribute_nat_info(build_model(_policy()))
        assert _messages(result, Severity.ERROR) == []
        model = result.model
        domain = model.nat_domains[find(model, 'nat_domain:n2')]
        assert domain.active == {'x'}
        assert [model.subnets[h].name for h in domain.networks] == [
            'network:n2',
            'network:n3',
        ]

    def test_hidden_and_non_hidden(self, build_model):
        text = _policy(nat='      x: {hidden: true}').replace(
            '{name: n3, ip: 10.3.3.0/24}',
            '{name: n3, ip: 10.3.3.0/24, nat: {x: {ip: 192.0.2.0/24}}}',
        )
        result = distribute_nat_info(build_model(text))
        assert 'nat:x is used as hidden and as non hidden NAT' in _messages(
            result, Severity.ERROR
        )
        assert result.model.nat_types['x'] == NatType.HIDDEN

    def test_static_size_mismatch(self, build_model):
        result = distribute_nat_info(
            build_model(_policy(nat='      x: {ip: 192.0.2.0/25}'))
        )
        assert _messages(result, Severity.ERROR) == [
            'network:n1: static nat:x 192.0.2.0/25 must have the same size as '
            '10.1.1.0/24'
        ]

    def test_two_active_tags(self, build_model):
        text = _policy(
            nat='      x: {ip: 192.0.2.0/24}\n      y: {ip: 198.51.100.0/24}',
            r1_bind='x, y',
            r2_bind='x, y',
        )
        result = distribute_nat_info(build_model(text))
        assert _messages(result, Severity.ERROR) == [
            'network:n1 has more than one active NAT tag in nat_domain:n2: '
            'nat:x, nat:y'
        ]

    def test_unbound_and_undefined_tags(self, build_model):
        result = distribute_nat_info(build_model(_policy(r1_bind='ghost', r2_bind='ghost')))
        assert _messages(result, Severity.WARNING) == [
            'nat:ghost is bound but never defined',
            'nat:x is defined but never bound',
        ]
