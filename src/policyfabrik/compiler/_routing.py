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

"""Deterministic routing over the zone/router graph.

Paths are found by breadth-first search from the destination zone over a
bipartite graph of zones and managed routers.  Among equal-cost next
steps the lexicographically smallest router name wins, then the smallest
interface name.  Crypto transport interfaces carry no cleartext traffic
and are left out of the graph.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import TYPE_CHECKING

from policyfabrik.compiler._model import Hop

if TYPE_CHECKING:
    from policyfabrik.compiler._model import Model


class RouteFinder:
    """Path and next-hop queries on one model snapshot; safe to share between threads."""

    def __init__(self, model: Model) -> None:
        self.model = model
        self._lock = threading.Lock()
        self._distances: dict[int, tuple[dict[int, int], dict[int, int]]] = {}

        def order(i):
            intf = model.interfaces[i]
            return (model.routers[intf.router].name, intf.name)

        self._zone_intfs: list[list[int]] = [[] for _ in model.zones]
        self._router_intfs: dict[int, list[int]] = {}
        for r in model.managed_routers():
            usable = [
                i
                for i in model.routers[r].interfaces
                if not model.interfaces[i].is_transport
            ]
            self._router_intfs[r] = sorted(usable, key=order)
            for i in usable:
                self._zone_intfs[model.interfaces[i].zone].append(i)
        for intfs in self._zone_intfs:
            intfs.sort(key=order)

    def _zone(self, intf: int) -> int:
        return self.model.interfaces[intf].zone

    def _router(self, intf: int) -> int:
        return self.model.interfaces[intf].router

    def distances(self, dst_zone: int) -> tuple[dict[int, int], dict[int, int]]:
        """Hop distances of zones and routers to *dst_zone*."""
        with self._lock:
            cached = self._distances.get(dst_zone)
        if cached is not None:
            return cached
        zone_dist = {dst_zone: 0}
        router_dist: dict[int, int] = {}
        queue = deque([(True, dst_zone)])
        while queue:
            is_zone, node = queue.popleft()
            if is_zone:
                d = zone_dist[node]
                for i in self._zone_intfs[node]:
                    r = self._router(i)
                    if r not in router_dist:
                        router_dist[r] = d + 1
                        queue.append((False, r))
            else:
                d = router_dist[node]
                for i in self._router_intfs[node]:
                    z = self._zone(i)
                    if z not in zone_dist:
                        zone_dist[z] = d + 1
                        queue.append((True, z))
        result = (zone_dist, router_dist)
        with self._lock:
            self._distances[dst_zone] = result
        return result

    def path(self, src_zone: int, dst_zone: int) -> tuple[Hop, ...] | None:
        """Managed routers between two zones, or None if unreachable."""
        if src_zone == dst_zone:
            return ()
        zone_dist, router_dist = self.distances(dst_zone)
        if src_zone not in zone_dist:
            return None
        hops = []
        zone = src_zone
        while zone != dst_zone:
            d = zone_dist[zone]
            in_intf = next(
                i
                for i in self._zone_intfs[zone]
                if router_dist.get(self._router(i)) == d - 1
            )
            router = self._router(in_intf)
            out_intf = next(
                o
                for o in self._router_intfs[router]
                if zone_dist.get(self._zone(o)) == d - 2
            )
            hops.append(Hop(router, in_intf, out_intf))
            zone = self._zone(out_intf)
        return tuple(hops)

    def next_hop(self, router: int, dst_zone: int) -> tuple[int, int | None] | None:
        """Outgoing interface of *router* towards *dst_zone* and the next router's interface.

        The next-hop interface is None when *dst_zone* is directly attached.
        """
        zone_dist, router_dist = self.distances(dst_zone)
        if router not in router_dist:
            return None
        d = router_dist[router]
        out_intf = next(
            o
            for o in self._router_intfs[router]
            if zone_dist.get(self._zone(o)) == d - 1
        )
        zone = self._zone(out_intf)
        if zone == dst_zone:
            return out_intf, None
        next_intf = next(
            i
            for i in self._zone_intfs[zone]
            if router_dist.get(self._router(i)) == d - 2
        )
        return out_intf, next_intf

    def path_from_router(self, router: int, dst_zone: int) -> tuple[Hop, ...] | None:
        """Path of traffic that starts at *router* itself."""
        step = self.next_hop(router, dst_zone)
        if step is None:
            return None
        out_intf = step[0]
        rest = self.path(self._zone(out_intf), dst_zone)
        return (Hop(router, None, out_intf), *rest)
