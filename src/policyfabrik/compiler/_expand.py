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

"""Rule expander.

Turns abstract rules into path rules: protocols are normalized, group
references are resolved to subnets, and every src/dst pair gets the
managed routers on its path.  Crypto splitting and reverse rules are
built with rule processor chains.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from policyfabrik.compiler._base import Category, Diagnostics, StageResult
from policyfabrik.compiler._model import Hop, PathRule, SubnetKind, frozen_map
from policyfabrik.compiler._protocols import ProtocolError, normalize, parse_protocol
from policyfabrik.compiler._routing import RouteFinder
from policyfabrik.compiler._rule_processor import RuleChain
from policyfabrik.compiler.processors import (
    Begin,
    ExpandCryptoRule,
    GenerateReverseRule,
)
from policyfabrik.core._util import TYPED_NAME_RE

if TYPE_CHECKING:
    from policyfabrik.compiler._model import Model
    from policyfabrik.compiler._protocols import Protocol

logger = logging.getLogger(__name__)


def link_reroute_permit(model: Model) -> StageResult:
    diags = Diagnostics()
    interfaces = list(model.interfaces)
    for i, intf in enumerate(interfaces):
        if not intf.reroute_permit_names:
            continue
        if not model.routers[intf.router].is_managed:
            diags.warning(
                Category.TOPOLOGY,
                f'Ignoring reroute_permit at unmanaged {intf.name}',
            )
            continue
        handles = []
        for name in intf.reroute_permit_names:
            h = model.subnet_handle(name)
            if model.subnets[h].zone != intf.zone:
                diags.error(
                    Category.TOPOLOGY,
                    f'Invalid reroute_permit for {name} at {intf.name}: '
                    f'different security zones',
                )
                continue
            handles.append(h)
        interfaces[i] = dataclasses.replace(intf, reroute_permit=tuple(handles))
    return StageResult(model.evolve(interfaces=tuple(interfaces)), diags.snapshot())


class _ProtocolExpander:
    def __init__(self, model: Model, diags: Diagnostics) -> None:
        self.defs = {f'protocol:{p.name}': p for p in model.protocol_defs}
        self.groups = {f'protocolgroup:{g.name}': g for g in model.protocol_groups}
        self.diags = diags
        self._parsed: dict[str, Protocol | None] = {}
        self._reported: set[str] = set()

    def _error(self, message):
        if message not in self._reported:
            self._reported.add(message)
            self.diags.error(Category.REFERENCE, message)

    def _parse(self, spec, what):
        if spec not in self._parsed:
            try:
                self._parsed[spec] = parse_protocol(spec)
            except ProtocolError as e:
                self._parsed[spec] = None
                self._error(f'{what}: {e}')
        return self._parsed[spec]

    def expand(self, ref: str, what: str, stack=()) -> list[Protocol]:
        if ref in self.defs:
            prt = self._parse(self.defs[ref].spec, ref)
            return [prt] if prt is not None else []
        if ref in self.groups:
            if ref in stack:
                self._error(f'Found recursion in definition of {ref}')
                return []
            result = []
            for member in self.groups[ref].members:
                result.extend(self.expand(member, ref, (*stack, ref)))
            return result
        prt = self._parse(ref, what)
        return [prt] if prt is not None else []


def normalize_services(model: Model) -> StageResult:
    diags = Diagnostics()
    expander = _ProtocolExpander(model, diags)
    rule_prts = {}
    for h, rule in enumerate(model.rules):
        what = f'rule:{rule.name}'
        prts = []
        for ref in rule.prt:
            prts.extend(expander.expand(ref, what))
        rule_prts[h] = normalize(prts)
        if not rule.prt:
            diags.warning(Category.REFERENCE, f'{what} has no protocols', what)
    return StageResult(model.evolve(rule_prts=frozen_map(rule_prts)), diags.snapshot())


def area_zones(model: Model, area_handle: int) -> set[int]:
    """Zones reachable from the anchor of an area without crossing its border."""
    area = model.areas[area_handle]
    start = model.subnets[area.anchor].zone
    seen = {start}
    todo = [start]
    while todo:
        zone = todo.pop()
        for i in model.zones[zone].interfaces:
            if i in area.border:
                continue
            router = model.routers[model.interfaces[i].router]
            for o in router.interfaces:
                if o in area.border:
                    continue
                z = model.interfaces[o].zone
                if z not in seen:
                    seen.add(z)
                    todo.append(z)
    return seen


class _EndpointExpander:
    def __init__(self, model: Model, diags: Diagnostics) -> None:
        self.model = model
        self.diags = diags
        self._groups: dict[str, tuple[int, ...]] = {}
        self._reported: set[str] = set()

    def expand(self, ref: str, stack=()) -> tuple[int, ...]:
        model = self.model
        kind, name = TYPED_NAME_RE.match(ref).groups()
        match kind:
            case 'group':
                return self._group(ref, stack)
            case 'area':
                zones = area_zones(model, model.lookup(ref)[0])
                return tuple(
                    h
                    for z in sorted(zones)
                    for h in model.zones[z].networks
                    if model.subnets[h].kind == SubnetKind.NETWORK
                )
            case 'interface' if name.endswith('.[all]'):
                router = model.routers[model.router_handle(name[: -len('.[all]')])]
                return tuple(
                    model.interfaces[i].subnet
                    for i in router.interfaces
                    if model.interfaces[i].subnet is not None
                )
            case _:
                return model.lookup(ref)

    def _group(self, ref, stack):
        if ref in stack:
            if ref not in self._reported:
                self._reported.add(ref)
                self.diags.error(
                    Category.REFERENCE, f'Found recursion in definition of {ref}'
                )
            return ()
        if ref in self._groups:
            return self._groups[ref]
        group = self.model.groups[self.model.lookup(ref)[0]]
        result = []
        for member in group.members:
            result.extend(self.expand(member, (*stack, ref)))
        self._groups[ref] = tuple(result)
        return self._groups[ref]


def convert_hosts_in_rules(model: Model) -> StageResult:
    """Resolve src and dst of every rule to sorted tuples of subnet handles."""
    diags = Diagnostics()
    expander = _EndpointExpander(model, diags)
    endpoints = {}
    for h, rule in enumerate(model.rules):
        if h in model.excluded_rules:
            continue
        what = model.rule_name(h)
        sides = []
        for side, refs in (('src', rule.src), ('dst', rule.dst)):
            handles = set()
            for ref in refs:
                handles.update(expander.expand(ref))
            if not handles:
                diags.warning(Category.REFERENCE, f'{what} has empty {side}', what)
            sides.append(tuple(sorted(handles)))
        endpoints[h] = tuple(sides)
    return StageResult(
        model.evolve(rule_endpoints=frozen_map(endpoints)), diags.snapshot()
    )


def _device_of(model: Model, handle: int) -> tuple[int, int] | None:
    """Managed router and interface owning an interface subnet."""
    subnet = model.subnets[handle]
    if subnet.kind != SubnetKind.INTERFACE:
        return None
    intf = model.interfaces[subnet.interface]
    if not model.routers[intf.router].is_managed:
        return None
    return intf.router, subnet.interface


def _end_at(hops, router, intf):
    for idx, hop in enumerate(hops):
        if hop.router == router:
            return (*hops[:idx], Hop(router, hop.in_intf, None))
    return (*hops, Hop(router, intf, None))


def _location(model, handle):
    device = _device_of(model, handle)
    return (model.subnets[handle].zone, *(device or (None, None)))


def find_path(finder: RouteFinder, model: Model, src_loc, dst_loc):
    """Hops between two locations; a location is ``(zone, router, interface)``.

    Router and interface are set for interfaces of managed routers, which
    make the router itself the start or end of the path.
    """
    src_zone, src_router, _ = src_loc
    dst_zone, dst_router, dst_intf = dst_loc
    if src_router is not None and src_router == dst_router:
        return ()
    if src_router is not None:
        hops = finder.path_from_router(src_router, dst_zone)
    else:
        hops = finder.path(src_zone, dst_zone)
    if hops is None:
        return None
    if dst_router is not None:
        hops = _end_at(hops, dst_router, dst_intf)
    return hops


def group_path_rules(model: Model) -> StageResult:
    diags = Diagnostics()
    finder = RouteFinder(model)
    paths: dict[tuple, tuple[Hop, ...] | None] = {}
    path_rules = []
    for h, rule in enumerate(model.rules):
        if h in model.excluded_rules or h not in model.rule_endpoints:
            continue
        src, dst = model.rule_endpoints[h]
        reported = set()
        for s in src:
            src_loc = _location(model, s)
            for d in dst:
                dst_loc = _location(model, d)
                key = (src_loc, dst_loc)
                if key not in paths:
                    paths[key] = find_path(finder, model, src_loc, dst_loc)
                path = paths[key]
                if path is None:
                    if key not in reported:
                        reported.add(key)
                        diags.error(
                            Category.PATH,
                            f'No path from {model.subnets[s].name} to '
                            f'{model.subnets[d].name} in {model.rule_name(h)}',
                            model.rule_name(h),
                        )
                    continue
                if not path:
                    continue
                path_rules.extend(
                    PathRule(
                        rule=h,
                        src=s,
                        dst=d,
                        prt=prt,
                        action=rule.action,
                        owner=rule.owner,
                        path=path,
                    )
                    for prt in model.rule_prts.get(h, ())
                )
    logger.info(
        'Expanded %d rules into %d path rules over %d paths',
        len(model.rule_endpoints),
        len(path_rules),
        len(paths),
    )
    return StageResult(model.evolve(path_rules=tuple(path_rules)), diags.snapshot())


def expand_crypto(model: Model, debug_rule: str | None = None) -> StageResult:
    diags = Diagnostics()
    chain = RuleChain(model, diags, debug_rule=debug_rule)
    chain.add(Begin()).add(ExpandCryptoRule())
    return StageResult(model.evolve(path_rules=tuple(chain.run())), diags.snapshot())


def gen_reverse_rules(model: Model, debug_rule: str | None = None) -> StageResult:
    diags = Diagnostics()
    chain = RuleChain(model, diags, debug_rule=debug_rule)
    chain.add(Begin()).add(GenerateReverseRule())
    rules = chain.run()
    logger.info(
        'Generated %d reverse path rules', len(rules) - len(model.path_rules)
    )
    return StageResult(model.evolve(path_rules=tuple(rules)), diags.snapshot())
