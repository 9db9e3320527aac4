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

"""Tests for owner, unused-object and redundancy checks and subnet combination."""

from ipaddress import collapse_addresses

import pytest

from policyfabrik.compiler import Severity, SubnetKind
from policyfabrik.compiler._analyzer import (
    check_redundant_rules,
    check_supernet_rules,
    combine_subnets_in_rules,
    remove_simple_duplicate_rules,
)

from .conftest import FIXTURES_DIR, find, load_fixture, messages, run_until

PAIR = """
networks:
  - {name: n1, ip: 10.1.1.0/24}
  - {name: n2, ip: 10.2.2.0/24}
owners:
  - {name: netops}
routers:
  - name: r1
    managed: full
    interfaces:
      - {name: n1, ip: 10.1.1.1}
      - {name: n2, ip: 10.2.2.1}
rules:
"""

HALVES = """
networks:
  - {name: client, ip: 192.168.1.0/24}
  - {name: h0, ip: 10.1.0.0/24}
  - {name: h1, ip: 10.1.1.0/24}
routers:
  - name: fw
    managed: full
    interfaces:
      - {name: client, ip: 192.168.1.1}
      - {name: h0, ip: 10.1.0.1}
  - name: sw
    interfaces:
      - {name: h0}
      - {name: h1}
rules:
  - {name: r, src: network:client, dst: [network:h0, network:h1], prt: tcp 443}
"""


def _pair(*rules):
    return PAIR + ''.join(f'  - {rule}\n' for rule in rules)


class TestCheckServiceOwner:
    def test_unused_owner(self):
        result = run_until(load_fixture('topology'), 'CheckServiceOwner')
        assert messages(result, Severity.WARNING) == ['Unused owner:idle']

    def test_undeclared_owner(self, build_model):
        model = build_model(
            _pair(
                '{name: a, src: network:n1, dst: network:n2, prt: tcp 80, owner: ghost}',
                "{name: b, src: network:n1, dst: network:n2, prt: tcp 81, owner: 'owner:netops'}",
            )
        )
        result = run_until(model, 'CheckServiceOwner')
        assert messages(result, Severity.ERROR) == [
            'rule:a references undeclared owner:ghost'
        ]
        assert messages(result, Severity.WARNING) == []


class TestCheckUnusedGroups:
    def test_unused_groups(self):
        result = run_until(load_fixture('topology'), 'CheckUnusedGroups')
        assert messages(result, Severity.WARNING) == [
            'Unused owner:idle',
            'unused group:g-all',
            'unused group:g-unused',
        ]

    def test_check_levels(self, build_model):
        text = PAIR.replace(
            'rules:\n',
            'protocols:\n'
            '  - {name: ntp, spec: udp 123}\n'
            'groups:\n'
            '  - {name: g, members: [network:n1]}\n'
            'rules:\n',
        ) + '  - {name: a, src: network:n1, dst: network:n2, prt: tcp 80, owner: netops}\n'
        model = build_model(
            text, {'check_unused_groups': 'err', 'check_unused_protocols': 'info'}
        )
        result = run_until(model, 'CheckUnusedGroups')
        assert messages(result, Severity.ERROR) == ['unused group:g']
        assert messages(result, Severity.INFO) == ['unused protocol:ntp']


class TestMarkManagedLocal:
    def test_local_devices(self):
        model = run_until(load_fixture('local'), 'MarkManagedLocal').model
        loc = find(model, 'router:loc')
        for name in ('network:n1', 'network:n2', 'interface:fw.n2'):
            assert model.subnets[model.subnet_handle(name)].local_devices == {loc}
        assert model.subnets[model.subnet_handle('network:ext')].local_devices == set()

    def test_network_outside_filter_only(self, build_model):
        text = (FIXTURES_DIR / 'local.yaml').read_text(encoding='utf-8')
        text = text.replace('[10.1.0.0/16]', '[10.1.1.0/24]')
        result = run_until(build_model(text), 'MarkManagedLocal')
        assert messages(result, Severity.ERROR) == [
            'network:n2 at interface:loc.n2 must match filter_only of router:loc'
        ]


class TestRedundancy:
    def test_supernet_rule_removes_subnet_rule(self):
        result = run_until(load_fixture('supernet'), 'CheckSupernetRules')
        assert messages(result, Severity.INFO) == [
            'rule:to-sub is redundant to rule:to-super'
        ]
        model = result.model
        assert [model.rule_name(pr.rule) for pr in model.path_rules] == [
            'rule:to-super'
        ]

    def test_supernet_check_is_idempotent(self):
        model = run_until(load_fixture('supernet'), 'CheckSupernetRules').model
        again = check_supernet_rules(model)
        assert again.model.path_rules == model.path_rules
        assert again.diagnostics == ()

    def test_nat_keeps_subnet_rule(self, build_model):
        text = (FIXTURES_DIR / 'supernet.yaml').read_text(encoding='utf-8')
        text = text.replace(
            '{name: n0, ip: 10.0.0.0/24}',
            '{name: n0, ip: 10.0.0.0/24, nat: {x: {ip: 192.0.2.0/24}}}',
        ).replace(
            '{name: client, ip: 192.168.1.1}',
            '{name: client, ip: 192.168.1.1, bind_nat: [x]}',
        )
        result = run_until(build_model(text), 'CheckSupernetRules')
        assert result.error_count == 0
        assert messages(result, Severity.INFO) == []
        assert len(result.model.path_rules) == 2

    def test_duplicate_rules(self, build_model):
        model = build_model(
            _pair(
                '{name: a, src: network:n1, dst: network:n2, prt: tcp 80, owner: netops}',
                '{name: b, src: network:n1, dst: network:n2, prt: tcp 80}',
            )
        )
        result = run_until(model)
        assert messages(result, Severity.INFO) == ['Duplicate rules in rule:b and rule:a']
        model = result.model
        (pr,) = model.device_rules[find(model, 'router:r1')]
        assert model.rule_name(pr.rule) == 'rule:a'

    def test_redundant_protocol(self, build_model):
        model = build_model(
            _pair(
                '{name: a, src: network:n1, dst: network:n2, prt: tcp 80-90, owner: netops}',
                '{name: b, src: network:n1, dst: network:n2, prt: tcp 85}',
            )
        )
        result = run_until(model, 'CheckRedundantRules')
        assert messages(result, Severity.INFO) == ['rule:b is redundant to rule:a']
        assert [str(pr.prt) for pr in result.model.path_rules] == ['tcp 80-90']

    def test_permit_does_not_hide_deny(self, build_model):
        model = build_model(
            _pair(
                '{name: a, src: network:n1, dst: network:n2, prt: tcp, owner: netops}',
                '{name: b, action: deny, src: network:n1, dst: network:n2, prt: tcp 22}',
            )
        )
        result = run_until(model, 'CheckRedundantRules')
        assert len(result.model.path_rules) == 2


class TestCombineSubnets:
    def test_halves_are_combined(self, build_model):
        result = run_until(build_model(HALVES), 'CombineSubnetsInRules')
        model = result.model
        (pr,) = model.path_rules
        combined = model.subnets[pr.dst]
        assert combined.name == 'network:[10.1.0.0/23]'
        assert combined.kind == SubnetKind.COMBINED
        for name in ('network:h0', 'network:h1'):
            assert model.subnets[model.subnet_handle(name)].parent == pr.dst

    def test_existing_network_is_reused(self, build_model):
        text = HALVES.replace(
            '  - {name: h1, ip: 10.1.1.0/24}',
            '  - {name: h1, ip: 10.1.1.0/24}\n  - {name: big, ip: 10.1.0.0/23}',
        ).replace('      - {name: h1}', '      - {name: h1}\n      - {name: big}')
        model = run_until(build_model(text), 'CombineSubnetsInRules').model
        (pr,) = model.path_rules
        assert model.subnets[pr.dst].name == 'network:big'

    def test_option_off(self, build_model):
        model = build_model(HALVES, {'combine_subnets': '0'})
        model = run_until(model, 'CombineSubnetsInRules').model
        assert len(model.path_rules) == 2


def _traffic(model):
    """(routers, action, src, dst, prt) of every address based path rule."""
    return [
        (
            tuple(hop.router for hop in pr.path),
            pr.action,
            model.subnets[pr.src].ip,
            model.subnets[pr.dst].ip,
            pr.prt,
        )
        for pr in model.path_rules
        if pr.src is not None
    ]


def _covered(item, traffic):
    routers, action, src, dst, prt = item
    return any(
        r == routers
        and a == action
        and src.subnet_of(s)
        and dst.subnet_of(d)
        and p.contains(prt)
        for r, a, s, d, p in traffic
    )


def _within(item, traffic):
    """*item* only spans addresses some rule of *traffic* already permitted."""
    routers, action, src, dst, prt = item
    same = [
        (s, d) for r, a, s, d, p in traffic if r == routers and a == action and p == prt
    ]
    srcs = list(collapse_addresses(s for s, _ in same))
    dsts = list(collapse_addresses(d for _, d in same))
    return any(src.subnet_of(s) for s in srcs) and any(dst.subnet_of(d) for d in dsts)


ANALYZED = [
    pytest.param(lambda build: load_fixture('supernet'), id='supernet'),
    pytest.param(lambda build: build(HALVES), id='halves'),
    pytest.param(
        lambda build: build(
            _pair(
                '{name: a, src: network:n1, dst: network:n2, prt: tcp 80-90, owner: netops}',
                '{name: b, src: network:n1, dst: network:n2, prt: tcp 85}',
                '{name: c, src: network:n1, dst: network:n2, prt: tcp 80-90}',
            )
        ),
        id='redundant',
    ),
]


class TestAnalyzerProperties:
    @pytest.mark.parametrize('make', ANALYZED)
    def test_permitted_traffic_is_unchanged(self, build_model, make):
        model = make(build_model)
        before = _traffic(run_until(model, 'CheckUnusedGroups').model)
        after = _traffic(run_until(model, 'CombineSubnetsInRules').model)
        assert len(after) <= len(before)
        assert all(_covered(item, after) for item in before)
        assert all(_within(item, before) for item in after)

    @pytest.mark.parametrize('make', ANALYZED)
    def test_second_run_removes_nothing(self, build_model, make):
        model = run_until(make(build_model), 'CombineSubnetsInRules').model
        again = model
        for stage in (
            remove_simple_duplicate_rules,
            check_supernet_rules,
            check_redundant_rules,
            remove_simple_duplicate_rules,
            combine_subnets_in_rules,
        ):
            result = stage(again)
            assert result.diagnostics == ()
            again = result.model
        assert {pr.key() for pr in again.path_rules} == {
            pr.key() for pr in model.path_rules
        }
        assert len(again.path_rules) == len(model.path_rules)
