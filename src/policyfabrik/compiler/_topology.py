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

"""Topology and NAT domain model.

``distribute_nat_info`` partitions the network graph into zones (networks
connected by unmanaged routers) and NAT domains (networks connected by
router interfaces with identical ``bind_nat``), and classifies every NAT
tag as static, dynamic or hidden.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import defaultdict
from typing import TYPE_CHECKING

from policyfabrik.compiler._base import Category, Diagnostics, StageResult
from policyfabrik.compiler._model import (
    NatDomain,
    NatType,
    SubnetKind,
    Zone,
    frozen_map,
)

if TYPE_CHECKING:
    from policyfabrik.compiler._model import Model

logger = logging.getLogger(__name__)


class UnionFind:
    """Disjoint sets over integer handles; the smallest handle is the root."""

    def __init__(self, items):
        self._parent = {i: i for i in items}

    def find(self, x):
        root = x
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[x] != root:
            self._parent[x], x = root, self._parent[x]
        return root

    def union(self, a, b):
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            lo, hi = min(ra, rb), max(ra, rb)
            self._parent[hi] = lo

    def groups(self):
        result = defaultdict(list)
        for item in self._parent:
            result[self.find(item)].append(item)
        return list(result.values())


def _short(name: str) -> str:
    return name.split(':', 1)[1]


def _fmt_tags(tags) -> str:
    return ', '.join(f'nat:{t}' for t in sorted(tags)) or 'nothing'


def _partition(model: Model, networks, joins):
    """Group *networks* into components, ordered by their first network name."""
    uf = UnionFind(networks)
    for a, b in joins:
        uf.union(a, b)
    components = []
    for members in uf.groups():
        members.sort(key=lambda h: model.subnets[h].name)
        components.append(tuple(members))
    components.sort(key=lambda c: model.subnets[c[0]].name)
    return components


def distribute_nat_info(model: Model) -> StageResult:
    diags = Diagnostics()
    subnets = model.subnets
    networks = [
        h
        for h, s in enumerate(subnets)
        if s.kind in (SubnetKind.NETWORK, SubnetKind.TUNNEL)
    ]

    # Zones: networks joined by unmanaged routers
    zone_joins = []
    for router in model.routers:
        if router.is_managed:
            continue
        nets = [model.interfaces[i].network for i in router.interfaces]
        zone_joins.extend((nets[0], n) for n in nets[1:])
    zone_parts = _partition(model, networks, zone_joins)
    zone_of = {n: z for z, part in enumerate(zone_parts) for n in part}

    # NAT domains: networks joined by interfaces of one router with equal bind_nat
    domain_joins = []
    for router in model.routers:
        by_binding = defaultdict(list)
        for i in router.interfaces:
            intf = model.interfaces[i]
            by_binding[intf.bind_nat].append(intf.network)
        for nets in by_binding.values():
            domain_joins.extend((nets[0], n) for n in nets[1:])
    domain_parts = _partition(model, networks, domain_joins)
    domain_of = {n: d for d, part in enumerate(domain_parts) for n in part}

    interfaces = tuple(
        dataclasses.replace(
            intf, zone=zone_of[intf.network], nat_domain=domain_of[intf.network]
        )
        for intf in model.interfaces
    )

    # All interfaces touching one domain must agree on bind_nat
    domain_intfs = defaultdict(list)
    for i, intf in enumerate(interfaces):
        domain_intfs[intf.nat_domain].append(i)
    unstable = set()
    actives = []
    for d, part in enumerate(domain_parts):
        name = f'nat_domain:{_short(subnets[part[0]].name)}'
        bindings = {}
        for i in domain_intfs[d]:
            bindings.setdefault(interfaces[i].bind_nat, i)
        if len(bindings) > 1:
            details = '; '.join(
                f'{interfaces[i].name} binds {_fmt_tags(tags)}'
                for tags, i in sorted(bindings.items(), key=lambda kv: kv[1])
            )
            diags.error(
                Category.TOPOLOGY, f'Inconsistent NAT binding in {name}: {details}'
            )
            sets = list(bindings)
            common = frozenset.intersection(*sets)
            unstable |= frozenset.union(*sets) - common
            actives.append(common)
        elif bindings:
            actives.append(next(iter(bindings)))
        else:
            actives.append(frozenset())

    nat_types = _classify_nat_tags(model, diags)
    bound = set().union(*(intf.bind_nat for intf in interfaces))
    for tag in sorted(bound - set(nat_types)):
        diags.warning(Category.NAT, f'nat:{tag} is bound but never defined')
    for tag in sorted(set(nat_types) - bound):
        diags.warning(Category.NAT, f'nat:{tag} is defined but never bound')

    if unstable:
        logger.info('Excluding unstable NAT tags: %s', ', '.join(sorted(unstable)))

    zones = []
    for z, part in enumerate(zone_parts):
        managed_intfs = tuple(
            i
            for i, intf in enumerate(interfaces)
            if intf.zone == z and model.routers[intf.router].is_managed
        )
        zones.append(
            Zone(
                name=f'zone:{_short(subnets[part[0]].name)}',
                networks=part,
                interfaces=managed_intfs,
                nat_domain=domain_of[part[0]],
            )
        )

    domains = []
    for d, part in enumerate(domain_parts):
        domains.append(
            NatDomain(
                name=f'nat_domain:{_short(subnets[part[0]].name)}',
                networks=part,
                zones=tuple(sorted({zone_of[n] for n in part})),
                interfaces=tuple(domain_intfs[d]),
                active=actives[d] - unstable,
            )
        )

    # A network must not be translated by two tags in one domain
    for domain in domains:
        for n in networks:
            tags = set(subnets[n].nat) & domain.active
            if len(tags) > 1:
                diags.error(
                    Category.NAT,
                    f'{subnets[n].name} has more than one active NAT tag in '
                    f'{domain.name}: {_fmt_tags(tags)}',
                )

    new_subnets = [
        dataclasses.replace(
            s,
            zone=zone_of[_anchor(s, h)],
            nat_domain=domain_of[_anchor(s, h)],
        )
        for h, s in enumerate(subnets)
    ]

    logger.info('Found %d zones and %d NAT domains', len(zones), len(domains))
    return StageResult(
        model.evolve(
            subnets=tuple(new_subnets),
            interfaces=interfaces,
            zones=tuple(zones),
            nat_domains=tuple(domains),
            nat_types=frozen_map(nat_types),
            unstable_tags=frozenset(unstable),
        ),
        diags.snapshot(),
    )


def _anchor(subnet, handle):
    """Network handle deciding zone and NAT domain of a subnet."""
    if subnet.kind == SubnetKind.AGGREGATE:
        return subnet.link
    if subnet.network is not None:
        return subnet.network
    return handle


def _classify_nat_tags(model: Model, diags: Diagnostics) -> dict[str, NatType]:
    kinds = defaultdict(set)
    for s in model.subnets:
        if s.kind != SubnetKind.NETWORK:
            continue
        for tag, mapping in sorted(s.nat.items()):
            kinds[tag].add(mapping.type)
            if (
                mapping.type == NatType.STATIC
                and mapping.ip.prefixlen != s.ip.prefixlen
            ):
                diags.error(
                    Category.NAT,
                    f'{s.name}: static nat:{tag} {mapping.ip} must have the '
                    f'same size as {s.ip}',
                )
    nat_types = {}
    for tag in sorted(kinds):
        found = kinds[tag]
        if NatType.HIDDEN in found and len(found) > 1:
            diags.error(
                Category.NAT,
                f'nat:{tag} is used as hidden and as non hidden NAT',
            )
        if NatType.HIDDEN in found:
            nat_types[tag] = NatType.HIDDEN
        elif NatType.DYNAMIC in found:
            nat_types[tag] = NatType.DYNAMIC
        else:
            nat_types[tag] = NatType.STATIC
    return nat_types
