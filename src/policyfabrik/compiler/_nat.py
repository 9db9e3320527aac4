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

"""NAT address computation.

All functions here are pure: the translated address of a subnet depends
only on the subnet record, its owning network and the set of NAT tags
active in the domain it is looked at from.
"""

from __future__ import annotations

import ipaddress
from typing import TYPE_CHECKING

from policyfabrik.compiler._model import NatMapping, Subnet, SubnetKind

if TYPE_CHECKING:
    from policyfabrik.compiler._model import Model


def active_mapping(network: Subnet, active: frozenset[str]) -> NatMapping | None:
    """The NAT mapping of *network* that applies for the *active* tags.

    Two active tags on one network are a topology error reported
    elsewhere; the lexicographically first tag wins so the result stays
    deterministic.
    """
    tags = sorted(set(network.nat) & active)
    if not tags:
        return None
    return network.nat[tags[0]]


def translate(
    subnet: Subnet, network: Subnet | None, active: frozenset[str]
) -> ipaddress.IPv4Network | None:
    """Address of *subnet* inside a domain with *active* NAT tags.

    Returns None when the subnet is hidden in that domain.
    """
    if subnet.ip is None:
        return None
    if network is None or subnet.kind == SubnetKind.AGGREGATE:
        return subnet.ip
    mapping = active_mapping(network, active)
    if mapping is None:
        return subnet.ip
    if mapping.hidden:
        return None
    if mapping.dynamic:
        if subnet.kind == SubnetKind.NETWORK:
            return mapping.ip
        static = subnet.static_nat.get(mapping.tag)
        if static is not None:
            return ipaddress.IPv4Network(static)
        return mapping.ip
    offset = int(subnet.ip.network_address) - int(network.ip.network_address)
    base = int(mapping.ip.network_address) + offset
    return ipaddress.IPv4Network((base, subnet.ip.prefixlen))


def network_of(subnets: tuple[Subnet, ...], subnet: Subnet) -> Subnet | None:
    if subnet.kind == SubnetKind.NETWORK:
        return subnet
    if subnet.network is None:
        return None
    return subnets[subnet.network]


def nat_address(
    model: Model, handle: int, domain: int
) -> ipaddress.IPv4Network | None:
    """Translated address of subnet *handle* as seen from NAT *domain*."""
    subnet = model.subnets[handle]
    active = model.nat_domains[domain].active
    return translate(subnet, network_of(model.subnets, subnet), active)


def hidden_by(model: Model, handle: int, domain: int) -> str | None:
    """NAT tag hiding subnet *handle* in *domain*, if any."""
    subnet = model.subnets[handle]
    network = network_of(model.subnets, subnet)
    if network is None:
        return None
    mapping = active_mapping(network, model.nat_domains[domain].active)
    if mapping is not None and mapping.hidden:
        return mapping.tag
    return None


def dynamic_without_static(model: Model, handle: int, domain: int) -> str | None:
    """Dynamic NAT tag under which subnet *handle* has no fixed address."""
    subnet = model.subnets[handle]
    if subnet.kind in (SubnetKind.NETWORK, SubnetKind.AGGREGATE, SubnetKind.TUNNEL):
        return None
    network = network_of(model.subnets, subnet)
    if network is None:
        return None
    mapping = active_mapping(network, model.nat_domains[domain].active)
    if mapping is None or not mapping.dynamic or mapping.hidden:
        return None
    if mapping.tag in subnet.static_nat:
        return None
    return mapping.tag
