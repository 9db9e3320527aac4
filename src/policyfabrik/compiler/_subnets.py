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

"""Subnet and NAT resolver.

Builds the containment forest of every zone and, for every NAT domain,
the translated address and the hierarchy of each subnet.  Rules whose
endpoints cannot be filtered by a stable address are reported here.
"""

from __future__ import annotations

import dataclasses
import functools
import logging
from collections import defaultdict
from typing import TYPE_CHECKING

from policyfabrik.compiler._base import (
    Category,
    Diagnostics,
    StageResult,
    parallel_map,
)
from policyfabrik.compiler._model import SubnetKind, frozen_map
from policyfabrik.compiler._nat import (
    active_mapping,
    dynamic_without_static,
    hidden_by,
    nat_address,
)

if TYPE_CHECKING:
    import ipaddress
    from collections.abc import Iterable

    from policyfabrik.compiler._model import Model

logger = logging.getLogger(__name__)


def build_hierarchy(
    blocks: Iterable[tuple[int, ipaddress.IPv4Network, int]],
) -> tuple[dict[int, int], list[tuple[int, int]]]:
    """Parent of every block and the pairs of blocks that collide.

    *blocks* are ``(handle, address, rank)`` triples.  The parent of a
    block is the smallest enclosing block; for identical addresses the
    block with the lower rank encloses the other.  Two blocks with the
    same address and the same rank collide.
    """
    by_net: dict[ipaddress.IPv4Network, list[tuple[int, int]]] = defaultdict(list)
    for handle, ip, rank in blocks:
        by_net[ip].append((rank, handle))
    collisions = []
    for entries in by_net.values():
        entries.sort()
        for (r1, h1), (r2, h2) in zip(entries, entries[1:], strict=False):
            if r1 == r2:
                collisions.append((h1, h2))

    parents = {}
    for ip, entries in by_net.items():
        for idx, (rank, handle) in enumerate(entries):
            lower = [h for r, h in entries[:idx] if r < rank]
            if lower:
                parents[handle] = lower[-1]
                continue
            for prefixlen in range(ip.prefixlen - 1, -1, -1):
                outer = by_net.get(ip.supernet(new_prefix=prefixlen))
                if outer:
                    parents[handle] = outer[-1][1]
                    break
    return parents, collisions


def _zone_members(model: Model) -> dict[int, list[int]]:
    members = defaultdict(list)
    for h, s in enumerate(model.subnets):
        if s.ip is not None and s.zone is not None:
            members[s.zone].append(h)
    return members


def find_subnets_in_zone(model: Model) -> StageResult:
    diags = Diagnostics()
    members = _zone_members(model)

    def work(zone):
        blocks = [
            (h, model.subnets[h].ip, model.subnets[h].rank) for h in members[zone]
        ]
        return zone, build_hierarchy(blocks)

    results = parallel_map(work, range(len(model.zones)), model.options.max_workers)

    parents = {}
    for zone, (zone_parents, collisions) in results:
        parents.update(zone_parents)
        for a, b in collisions:
            diags.error(
                Category.TOPOLOGY,
                f'{model.subnets[a].name} and {model.subnets[b].name} have '
                f'identical address {model.subnets[a].ip} in {model.zones[zone].name}',
            )

    subnets = tuple(
        dataclasses.replace(s, parent=parents.get(h))
        for h, s in enumerate(model.subnets)
    )
    zones = tuple(
        dataclasses.replace(
            z,
            subnets=tuple(
                sorted(members[i], key=lambda h: (subnets[h].ip, subnets[h].rank))
            ),
        )
        for i, z in enumerate(model.zones)
    )
    logger.info('Found subnet relations in %d zones', len(zones))
    return StageResult(model.evolve(subnets=subnets, zones=zones), diags.snapshot())


def domain_view(model: Model, domain: int):
    """Translated addresses, per-zone hierarchy and colliding networks in *domain*."""
    addresses = {}
    for h, s in enumerate(model.subnets):
        if s.ip is not None:
            addresses[h] = nat_address(model, h, domain)

    parents = {}
    for zone_handles in _zone_members(model).values():
        blocks = [
            (h, addresses[h], model.subnets[h].rank)
            for h in zone_handles
            if addresses[h] is not None
        ]
        parents.update(build_hierarchy(blocks)[0])

    active = model.nat_domains[domain].active
    seen: dict[ipaddress.IPv4Network, int] = {}
    collisions = []
    for h, s in enumerate(model.subnets):
        if s.kind != SubnetKind.NETWORK or addresses.get(h) is None:
            continue
        other = seen.setdefault(addresses[h], h)
        if other == h:
            continue
        a = active_mapping(model.subnets[other], active)
        b = active_mapping(s, active)
        # Networks sharing one dynamic pool
        if a is not None and b is not None and a.tag == b.tag and a.dynamic:
            continue
        collisions.append((other, h))
    return addresses, parents, collisions


def find_subnets_in_nat_domain(model: Model) -> StageResult:
    diags = Diagnostics()
    results = parallel_map(
        functools.partial(domain_view, model),
        range(len(model.nat_domains)),
        model.options.max_workers,
    )
    for domain, (addresses, _, collisions) in enumerate(results):
        for a, b in collisions:
            diags.error(
                Category.NAT,
                f'{model.subnets[a].name} and {model.subnets[b].name} have '
                f'identical address {addresses[a]} in {model.nat_domains[domain].name}',
            )
    logger.info('Computed addresses in %d NAT domains', len(results))
    return StageResult(
        model.evolve(
            domain_addresses=tuple(frozen_map(r[0]) for r in results),
            domain_parents=tuple(frozen_map(r[1]) for r in results),
        ),
        diags.snapshot(),
    )


def exclude_rules(model: Model, rules: Iterable[int]) -> Model:
    """Mark *rules* as excluded and drop their path rules."""
    excluded = model.excluded_rules | frozenset(rules)
    return model.evolve(
        excluded_rules=excluded,
        path_rules=tuple(pr for pr in model.path_rules if pr.rule not in excluded),
    )


def check_unstable_nat_rules(model: Model) -> StageResult:
    diags = Diagnostics()
    reported = set()
    for pr in model.path_rules:
        domains = model.eval_domains(pr.path)
        for endpoint in (pr.src, pr.dst):
            if endpoint is None or (pr.rule, endpoint) in reported:
                continue
            seen = {}
            for d in domains:
                addr = model.address_in(endpoint, d)
                if addr is not None:
                    seen.setdefault(addr, d)
            if len(seen) < 2:
                continue
            reported.add((pr.rule, endpoint))
            (a1, d1), (a2, d2) = list(seen.items())[:2]
            diags.error(
                Category.NAT,
                f'Unstable NAT in {model.rule_name(pr.rule)}: '
                f'{model.subnets[endpoint].name} is {a1} in '
                f'{model.nat_domains[d1].name} but {a2} in '
                f'{model.nat_domains[d2].name}',
                model.rule_name(pr.rule),
            )
    bad_rules = {rule for rule, _ in reported}
    if bad_rules:
        logger.info('Excluding %d rules with unstable NAT', len(bad_rules))
    return StageResult(exclude_rules(model, bad_rules), diags.snapshot())


def check_dynamic_nat_rules(model: Model) -> StageResult:
    diags = Diagnostics()
    reported = set()
    for pr in model.path_rules:
        rule_name = model.rule_name(pr.rule)
        for d in model.eval_domains(pr.path):
            domain_name = model.nat_domains[d].name
            for endpoint in (pr.src, pr.dst):
                if endpoint is None:
                    continue
                tag = hidden_by(model, endpoint, d)
                if tag is not None and (pr.rule, endpoint, tag) not in reported:
                    reported.add((pr.rule, endpoint, tag))
                    diags.error(
                        Category.NAT,
                        f'{model.subnets[endpoint].name} is hidden by nat:{tag} '
                        f'in {domain_name} and can not be used in {rule_name}',
                        rule_name,
                    )
            tag = dynamic_without_static(model, pr.dst, d)
            if tag is not None and (pr.rule, pr.dst, tag) not in reported:
                reported.add((pr.rule, pr.dst, tag))
                diags.error(
                    Category.NAT,
                    f'{model.subnets[pr.dst].name} needs static translation for '
                    f'dynamic nat:{tag} in {domain_name} to be used as '
                    f'destination in {rule_name}',
                    rule_name,
                )
    bad_rules = {rule for rule, _, _ in reported}
    return StageResult(exclude_rules(model, bad_rules), diags.snapshot())
