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

"""Distribution scheduler.

Assigns path rules to the devices that enforce them, computes route
tables and the address each device is managed from.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import defaultdict
from typing import TYPE_CHECKING

from policyfabrik.compiler._base import (
    Category,
    Diagnostics,
    StageResult,
    parallel_map,
)
from policyfabrik.compiler._model import PathRule, Route, SubnetKind, frozen_map
from policyfabrik.compiler._protocols import IP
from policyfabrik.compiler._routing import RouteFinder
from policyfabrik.core.objects import Managed, RuleAction

if TYPE_CHECKING:
    from policyfabrik.compiler._model import Model

logger = logging.getLogger(__name__)

# Lower is preferred as primary device
_MANAGED_RANK = {
    Managed.Full: 0,
    Managed.Local: 0,
    Managed.Secondary: 1,
}


def set_policy_distribution_ip(model: Model) -> StageResult:
    diags = Diagnostics()
    admin_ips = {}
    pdp = model.options.policy_distribution_point
    pdp_handles = model.lookup(pdp) if pdp else ()
    if pdp and not pdp_handles:
        diags.error(
            Category.REFERENCE,
            f'policy_distribution_point references unknown {pdp}',
        )
    finder = RouteFinder(model) if pdp_handles else None

    for r in model.managed_routers():
        router = model.routers[r]
        if router.admin_ip is not None:
            admin_ips[r] = router.admin_ip
            continue
        if finder is None:
            continue
        target = model.subnets[pdp_handles[0]]
        step = finder.next_hop(r, target.zone)
        address = None
        if step is not None:
            intf = model.interfaces[step[0]]
            if intf.subnet is not None:
                address = model.address_in(intf.subnet, target.nat_domain)
        if address is None:
            diags.warning(
                Category.PATH,
                f'Missing policy distribution address for router:{router.name}',
            )
            continue
        admin_ips[r] = address.network_address
    return StageResult(model.evolve(admin_ips=frozen_map(admin_ips)), diags.snapshot())


def find_active_routes(model: Model) -> StageResult:
    finder = RouteFinder(model)
    networks = [
        h for h, s in enumerate(model.subnets) if s.kind == SubnetKind.NETWORK
    ]

    def work(router):
        routes = []
        for n in networks:
            step = finder.next_hop(router, model.subnets[n].zone)
            if step is None:
                logger.debug(
                    'No route from router:%s to %s',
                    model.routers[router].name,
                    model.subnets[n].name,
                )
                continue
            out_intf, next_intf = step
            next_router = None if next_intf is None else model.interfaces[next_intf].router
            routes.append(Route(n, out_intf, next_router))
        return router, tuple(routes)

    results = parallel_map(work, model.managed_routers(), model.options.max_workers)
    return StageResult(model.evolve(routes=frozen_map(dict(results))))


def _takes_rule(model: Model, router: int, pr: PathRule) -> bool:
    """True if *router* gets a copy of *pr* at all."""
    device = model.routers[router]
    if pr.stateless_only and not device.stateless:
        return False
    if device.managed == Managed.Local:
        ends = [h for h in (pr.src, pr.dst) if h is not None]
        return any(router in model.subnets[h].local_devices for h in ends)
    return True


def _is_coarse(model: Model, router: int, pr: PathRule) -> bool:
    """True if *router* only needs a coarse copy of *pr*.

    Only ``managed: secondary`` devices get coarse copies, and only when
    the primary device is a full or local one enforcing the exact rule.
    """
    if pr.primary is None or router == pr.primary:
        return False
    if model.routers[router].managed != Managed.Secondary:
        return False
    return model.routers[pr.primary].managed in (Managed.Full, Managed.Local)


def mark_secondary_rules(model: Model) -> StageResult:
    """Choose the primary device of every permit path rule.

    The primary device is the best ranked device on the path, nearest to
    the destination among equals.  Deny rules have no primary device and
    are enforced everywhere.
    """
    path_rules = []
    secondary = 0
    for pr in model.path_rules:
        if pr.action == RuleAction.Deny:
            path_rules.append(dataclasses.replace(pr, primary=None))
            continue
        candidates = [
            (_MANAGED_RANK[model.routers[hop.router].managed], len(pr.path) - idx, hop.router)
            for idx, hop in enumerate(pr.path)
            if _takes_rule(model, hop.router, pr)
        ]
        marked = dataclasses.replace(
            pr, primary=min(candidates)[2] if candidates else None
        )
        secondary += sum(1 for c in candidates if _is_coarse(model, c[2], marked))
        path_rules.append(marked)
    logger.info('Marked %d secondary device copies', secondary)
    return StageResult(model.evolve(path_rules=tuple(path_rules)))


def _sort_key(model: Model, pr: PathRule):
    position = model.rules[pr.rule].position if pr.rule is not None else -1
    return (pr.action != RuleAction.Deny, position)


def rules_distribution(model: Model) -> StageResult:
    buckets = defaultdict(list)
    for pr in model.path_rules:
        for hop in pr.path:
            if not _takes_rule(model, hop.router, pr):
                continue
            is_secondary = _is_coarse(model, hop.router, pr)
            copy = dataclasses.replace(
                pr,
                device=hop.router,
                in_intf=hop.in_intf,
                out_intf=hop.out_intf,
                secondary=is_secondary,
            )
            if is_secondary:
                copy = dataclasses.replace(
                    copy,
                    src=model.owning_network(pr.src),
                    dst=model.owning_network(pr.dst),
                    prt=IP,
                )
            buckets[hop.router].append(copy)

    def work(router):
        unique = {}
        for pr in buckets[router]:
            unique.setdefault(pr.key(), pr)
        rules = sorted(unique.values(), key=lambda pr: _sort_key(model, pr))
        for i in model.routers[router].interfaces:
            rules.extend(
                PathRule(
                    rule=None,
                    src=None,
                    dst=h,
                    prt=IP,
                    action=RuleAction.Permit,
                    device=router,
                    in_intf=i,
                    primary=router,
                )
                for h in model.interfaces[i].reroute_permit
            )
        return router, tuple(rules)

    results = parallel_map(work, model.managed_routers(), model.options.max_workers)
    device_rules = dict(results)
    logger.info(
        'Distributed %d rules to %d devices',
        sum(len(r) for r in device_rules.values()),
        len(device_rules),
    )
    return StageResult(model.evolve(device_rules=frozen_map(device_rules)))
