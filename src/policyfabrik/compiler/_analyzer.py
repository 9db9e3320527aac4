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

"""Redundancy and consistency analyzer.

All removal passes only drop path rules that are dominated by a rule
which survives the same pass, so running a pass twice removes nothing
the second time.
"""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
from collections import defaultdict
from typing import TYPE_CHECKING

from policyfabrik.compiler._base import Category, Diagnostics, StageResult
from policyfabrik.compiler._model import Subnet, SubnetKind, frozen_map
from policyfabrik.compiler._nat import nat_address
from policyfabrik.compiler._rule_processor import RuleChain
from policyfabrik.compiler.processors import Begin, RemoveDuplicatePathRules
from policyfabrik.core._util import TYPED_NAME_RE
from policyfabrik.core.objects import Managed

if TYPE_CHECKING:
    from policyfabrik.compiler._model import Model, PathRule

logger = logging.getLogger(__name__)


def _owner_name(text: str) -> str:
    return text.removeprefix('owner:')


def check_service_owner(model: Model) -> StageResult:
    diags = Diagnostics()
    declared = {o.name for o in model.owners}
    used = set()
    for h, rule in enumerate(model.rules):
        if rule.owner is None:
            continue
        name = _owner_name(rule.owner)
        used.add(name)
        if name not in declared:
            diags.error(
                Category.OWNER,
                f'{model.rule_name(h)} references undeclared owner:{name}',
                model.rule_name(h),
            )
    for owner in model.owners:
        if owner.name not in used:
            diags.report(
                model.options.check_service_owner,
                Category.OWNER,
                f'Unused owner:{owner.name}',
            )
    return StageResult(model, diags.snapshot())


def mark_managed_local(model: Model) -> StageResult:
    """Tag subnets inside ``filter_only`` of attached ``managed: local`` routers."""
    diags = Diagnostics()
    local_of = defaultdict(set)
    for r, router in enumerate(model.routers):
        if router.managed != Managed.Local:
            continue
        zones = set()
        for i in router.interfaces:
            intf = model.interfaces[i]
            zones.add(intf.zone)
            network = model.subnets[intf.network]
            if network.ip is None:
                continue
            if not any(network.ip.subnet_of(f) for f in router.filter_only):
                diags.error(
                    Category.TOPOLOGY,
                    f'{network.name} at {intf.name} must match filter_only of '
                    f'router:{router.name}',
                )
        for z in zones:
            for h in model.zones[z].subnets:
                ip = model.subnets[h].ip
                if any(ip.subnet_of(f) for f in router.filter_only):
                    local_of[h].add(r)
    subnets = tuple(
        dataclasses.replace(s, local_devices=frozenset(local_of[h]))
        if h in local_of
        else s
        for h, s in enumerate(model.subnets)
    )
    return StageResult(model.evolve(subnets=subnets), diags.snapshot())


def check_unused_groups(model: Model) -> StageResult:
    diags = Diagnostics()
    groups = {f'group:{g.name}': g for g in model.groups}
    prt_groups = {f'protocolgroup:{g.name}': g for g in model.protocol_groups}
    used = set()

    def mark(ref):
        if ref in used:
            return
        used.add(ref)
        if ref in groups:
            for member in groups[ref].members:
                mark(member)
        elif ref in prt_groups:
            for member in prt_groups[ref].members:
                mark(member)

    for h, rule in enumerate(model.rules):
        if h in model.excluded_rules:
            continue
        for ref in rule.src + rule.dst + rule.prt:
            if TYPED_NAME_RE.match(ref):
                mark(ref)

    for name in sorted(groups):
        if name not in used:
            diags.report(
                model.options.check_unused_groups, Category.UNUSED, f'unused {name}'
            )
    level = model.options.check_unused_protocols
    for p in model.protocol_defs:
        if f'protocol:{p.name}' not in used:
            diags.report(level, Category.UNUSED, f'unused protocol:{p.name}')
    for name in sorted(prt_groups):
        if name not in used:
            diags.report(level, Category.UNUSED, f'unused {name}')
    return StageResult(model, diags.snapshot())


def remove_simple_duplicate_rules(
    model: Model, debug_rule: str | None = None
) -> StageResult:
    diags = Diagnostics()
    chain = RuleChain(model, diags, debug_rule=debug_rule)
    chain.add(Begin()).add(RemoveDuplicatePathRules())
    return StageResult(model.evolve(path_rules=tuple(chain.run())), diags.snapshot())


def _group_key(pr: PathRule) -> tuple:
    return (pr.path, pr.action, pr.reverse, pr.crypto, pr.stateless_only)


class _Containment:
    """Subnet containment along the zone hierarchy, checked in every NAT domain."""

    def __init__(self, model: Model) -> None:
        self.model = model
        self._chains: dict[int, tuple[int, ...]] = {}

    def chain(self, handle: int) -> tuple[int, ...]:
        """*handle* followed by all its ancestors."""
        if handle not in self._chains:
            result = []
            h = handle
            while h is not None:
                result.append(h)
                h = self.model.subnets[h].parent
            self._chains[handle] = tuple(result)
        return self._chains[handle]

    def guard(self, outer: PathRule, inner: PathRule) -> bool:
        """Translated addresses of *outer* enclose those of *inner* everywhere."""
        model = self.model
        for d in model.eval_domains(inner.path):
            for big, small in ((outer.src, inner.src), (outer.dst, inner.dst)):
                a = model.address_in(big, d)
                b = model.address_in(small, d)
                if a is None or b is None or not b.subnet_of(a):
                    return False
        return True


def _remove_dominated(model: Model, diags: Diagnostics, level, strict_addresses):
    """Drop path rules dominated by another rule with the same path and action.

    With *strict_addresses* the dominating rule has a larger src or dst;
    otherwise it has the same src and dst and a larger protocol.
    """
    contain = _Containment(model)
    by_pair = defaultdict(list)
    for pr in model.path_rules:
        if pr.src is not None:
            by_pair[(_group_key(pr), pr.src, pr.dst)].append(pr)

    dropped = set()
    reported = set()
    for idx, pr in enumerate(model.path_rules):
        if pr.src is None:
            continue
        if strict_addresses:
            candidates = (
                other
                for s in contain.chain(pr.src)
                for d in contain.chain(pr.dst)
                if (s, d) != (pr.src, pr.dst)
                for other in by_pair.get((_group_key(pr), s, d), ())
                if other.prt.contains(pr.prt)
            )
        else:
            candidates = (
                other
                for other in by_pair[(_group_key(pr), pr.src, pr.dst)]
                if other.prt != pr.prt and other.prt.contains(pr.prt)
            )
        for other in candidates:
            if not contain.guard(other, pr):
                logger.debug(
                    'NAT guard keeps %s against %s',
                    model.rule_name(pr.rule),
                    model.rule_name(other.rule),
                )
                continue
            dropped.add(idx)
            if other.rule != pr.rule and (pr.rule, other.rule) not in reported:
                reported.add((pr.rule, other.rule))
                diags.report(
                    level,
                    Category.REDUNDANT,
                    f'{model.rule_name(pr.rule)} is redundant to '
                    f'{model.rule_name(other.rule)}',
                    model.rule_name(pr.rule),
                )
            break
    if dropped:
        logger.info('Removed %d redundant path rules', len(dropped))
    return model.evolve(
        path_rules=tuple(
            pr for idx, pr in enumerate(model.path_rules) if idx not in dropped
        )
    )


def check_supernet_rules(model: Model) -> StageResult:
    diags = Diagnostics()
    new = _remove_dominated(
        model, diags, model.options.check_supernet_rules, strict_addresses=True
    )
    return StageResult(new, diags.snapshot())


def check_redundant_rules(model: Model) -> StageResult:
    diags = Diagnostics()
    new = _remove_dominated(
        model, diags, model.options.check_redundant_rules, strict_addresses=False
    )
    return StageResult(new, diags.snapshot())


class _Combiner:
    """Merges sibling blocks into their exact union, creating subnets on demand."""

    def __init__(self, model: Model) -> None:
        self.model = model
        self.subnets = list(model.subnets)
        self.zone_subnets = [list(z.subnets) for z in model.zones]
        self.domain_addresses = [dict(m) for m in model.domain_addresses]
        self.domain_parents = [dict(m) for m in model.domain_parents]
        self.by_address = {}
        for h, s in enumerate(self.subnets):
            if s.ip is not None and s.kind != SubnetKind.AGGREGATE:
                key = (s.zone, s.ip)
                if key not in self.by_address or s.rank < self.subnets[
                    self.by_address[key]
                ].rank:
                    self.by_address[key] = h
        self.created = 0

    def _class(self, h):
        s = self.subnets[h]
        match s.kind:
            case SubnetKind.NETWORK:
                return None if s.nat else ('net',)
            case SubnetKind.COMBINED:
                return ('net',) if s.network is None else ('in', s.network)
            case SubnetKind.HOST | SubnetKind.INTERFACE:
                network = self.subnets[s.network]
                if any(m.dynamic or m.hidden for m in network.nat.values()):
                    return None
                return ('in', s.network)
            case _:
                return None

    def siblings(self, a, b) -> bool:
        sa, sb = self.subnets[a], self.subnets[b]
        if sa.ip.prefixlen != sb.ip.prefixlen or sa.ip.prefixlen == 0:
            return False
        if sa.ip == sb.ip or sa.ip.supernet() != sb.ip.supernet():
            return False
        if sa.zone != sb.zone or sa.parent != sb.parent:
            return False
        cls = self._class(a)
        return cls is not None and cls == self._class(b)

    def union(self, a, b) -> int:
        sa = self.subnets[a]
        ip = sa.ip.supernet()
        existing = self.by_address.get((sa.zone, ip))
        if existing is not None:
            return existing
        cls = self._class(a)
        handle = len(self.subnets)
        self.subnets.append(
            Subnet(
                name=f'network:[{ip}]',
                kind=SubnetKind.COMBINED,
                ip=ip,
                network=cls[1] if cls[0] == 'in' else None,
                zone=sa.zone,
                nat_domain=sa.nat_domain,
                parent=sa.parent,
                local_devices=sa.local_devices & self.subnets[b].local_devices,
            )
        )
        self.by_address[(sa.zone, ip)] = handle
        self.created += 1

        # Blocks of the old parent inside the new one move below it
        children = [
            h
            for h in self.zone_subnets[sa.zone]
            if self.subnets[h].parent == sa.parent and self.subnets[h].ip.subnet_of(ip)
        ]
        for h in children:
            self.subnets[h] = dataclasses.replace(self.subnets[h], parent=handle)
        self.zone_subnets[sa.zone].append(handle)

        view = dataclasses.replace(self.model, subnets=tuple(self.subnets))
        for d, addresses in enumerate(self.domain_addresses):
            addresses[handle] = nat_address(view, handle, d)
            parents = self.domain_parents[d]
            if a in parents:
                parents[handle] = parents[a]
            for h in children:
                if addresses.get(h) is not None:
                    parents[h] = handle
        return handle

    def combine(self, handles):
        blocks = set(handles)
        changed = True
        while changed:
            changed = False
            ordered = sorted(blocks, key=lambda h: self.subnets[h].ip)
            for a, b in zip(ordered, ordered[1:], strict=False):
                if self.siblings(a, b):
                    blocks -= {a, b}
                    blocks.add(self.union(a, b))
                    changed = True
                    break
        return sorted(blocks, key=lambda h: (self.subnets[h].ip, h))

    def model_with_subnets(self) -> Model:
        zones = tuple(
            dataclasses.replace(z, subnets=tuple(self.zone_subnets[i]))
            for i, z in enumerate(self.model.zones)
        )
        return self.model.evolve(
            subnets=tuple(self.subnets),
            zones=zones,
            domain_addresses=tuple(frozen_map(a) for a in self.domain_addresses),
            domain_parents=tuple(frozen_map(p) for p in self.domain_parents),
        )


def _combine_side(combiner: _Combiner, path_rules, side: str):
    other = 'src' if side == 'dst' else 'dst'
    groups: dict[tuple, list[int]] = {}
    templates = {}
    passthrough = []
    for pr in path_rules:
        if pr.src is None or pr.crypto == 'encrypted':
            passthrough.append(pr)
            continue
        key = (pr.rule, _group_key(pr), pr.prt, getattr(pr, other))
        groups.setdefault(key, []).append(getattr(pr, side))
        templates.setdefault(key, pr)
    result = list(passthrough)
    for key, handles in groups.items():
        template = templates[key]
        for h in combiner.combine(handles):
            result.append(dataclasses.replace(template, **{side: h}))
    return result


def combine_subnets_in_rules(model: Model) -> StageResult:
    if not model.options.combine_subnets:
        return StageResult(model)
    combiner = _Combiner(model)
    rules = _combine_side(combiner, model.path_rules, 'dst')
    rules = _combine_side(combiner, rules, 'src')

    unique = {}
    for pr in rules:
        unique.setdefault(pr.key(), pr)
    ordered = sorted(
        unique.values(),
        key=lambda pr: (
            model.rules[pr.rule].position if pr.rule is not None else -1,
            pr.reverse,
            pr.crypto or '',
            combiner.subnets[pr.src].ip if pr.src is not None else ipaddress.IPv4Network('0.0.0.0/0'),
            combiner.subnets[pr.dst].ip,
            pr.prt.sort_key(),
        ),
    )
    if combiner.created or len(ordered) != len(model.path_rules):
        logger.info(
            'Combined subnets: %d path rules left, %d new blocks',
            len(ordered),
            combiner.created,
        )
    new = combiner.model_with_subnets().evolve(path_rules=tuple(ordered))
    return StageResult(new)
