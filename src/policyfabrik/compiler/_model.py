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

"""Arena-style compiler model.

Every topology and policy object lives in a tuple of frozen records inside
:class:`Model` and refers to other objects by integer handle (the index in
the owning tuple).  Stages never modify a model; they build the next
snapshot with :meth:`Model.evolve`.
"""

from __future__ import annotations

import dataclasses
import enum
import ipaddress
import types
from collections.abc import Mapping
from typing import TYPE_CHECKING

from policyfabrik.core.options import COMPILER_DEFAULTS, CompilerDefaults

if TYPE_CHECKING:
    from policyfabrik.compiler._protocols import Protocol


def frozen_map(data=None) -> Mapping:
    return types.MappingProxyType(dict(data or {}))


def _empty_map():
    return types.MappingProxyType({})


class SubnetKind(enum.StrEnum):
    NETWORK = 'network'
    AGGREGATE = 'aggregate'
    HOST = 'host'
    INTERFACE = 'interface'
    COMBINED = 'combined'
    TUNNEL = 'tunnel'


# Containment order for blocks with identical addresses
KIND_RANK = {
    SubnetKind.AGGREGATE: 0,
    SubnetKind.NETWORK: 1,
    SubnetKind.COMBINED: 2,
    SubnetKind.HOST: 3,
    SubnetKind.INTERFACE: 3,
    SubnetKind.TUNNEL: 1,
}


class NatType(enum.StrEnum):
    STATIC = 'static'
    DYNAMIC = 'dynamic'
    HIDDEN = 'hidden'


@dataclasses.dataclass(frozen=True, slots=True)
class NatMapping:
    tag: str
    ip: ipaddress.IPv4Network | None
    dynamic: bool = False
    hidden: bool = False

    @property
    def type(self) -> NatType:
        if self.hidden:
            return NatType.HIDDEN
        if self.dynamic:
            return NatType.DYNAMIC
        return NatType.STATIC


@dataclasses.dataclass(frozen=True, slots=True)
class Subnet:
    name: str
    kind: SubnetKind
    ip: ipaddress.IPv4Network | None
    network: int | None = None
    link: int | None = None
    interface: int | None = None
    nat: Mapping[str, NatMapping] = dataclasses.field(
        default_factory=_empty_map, compare=False
    )
    static_nat: Mapping[str, ipaddress.IPv4Address] = dataclasses.field(
        default_factory=_empty_map, compare=False
    )
    zone: int | None = None
    nat_domain: int | None = None
    parent: int | None = None
    local_devices: frozenset[int] = frozenset()

    @property
    def rank(self) -> int:
        return KIND_RANK[self.kind]


@dataclasses.dataclass(frozen=True, slots=True)
class Zone:
    name: str
    networks: tuple[int, ...]
    subnets: tuple[int, ...] = ()
    interfaces: tuple[int, ...] = ()
    nat_domain: int | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class Router:
    name: str
    managed: str | None
    interfaces: tuple[int, ...] = ()
    stateless: bool = False
    filter_only: tuple[ipaddress.IPv4Network, ...] = ()
    admin_ip: ipaddress.IPv4Address | None = None
    model: str = 'generic'

    @property
    def is_managed(self) -> bool:
        return self.managed is not None


@dataclasses.dataclass(frozen=True, slots=True)
class Interface:
    name: str
    router: int
    network: int
    ip: ipaddress.IPv4Address | None = None
    subnet: int | None = None
    hardware: str = ''
    bind_nat: frozenset[str] = frozenset()
    reroute_permit_names: tuple[str, ...] = ()
    reroute_permit: tuple[int, ...] = ()
    tunnel: str | None = None
    crypto_role: str | None = None
    transport: int | None = None
    is_transport: bool = False
    zone: int | None = None
    nat_domain: int | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class NatDomain:
    name: str
    networks: tuple[int, ...]
    zones: tuple[int, ...] = ()
    interfaces: tuple[int, ...] = ()
    active: frozenset[str] = frozenset()


@dataclasses.dataclass(frozen=True, slots=True)
class Group:
    name: str
    members: tuple[str, ...]


@dataclasses.dataclass(frozen=True, slots=True)
class Area:
    name: str
    anchor: int
    border: frozenset[int] = frozenset()


@dataclasses.dataclass(frozen=True, slots=True)
class Owner:
    name: str
    admins: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True, slots=True)
class ProtocolDef:
    name: str
    spec: str


@dataclasses.dataclass(frozen=True, slots=True)
class ProtocolGroup:
    name: str
    members: tuple[str, ...]


@dataclasses.dataclass(frozen=True, slots=True)
class Rule:
    name: str
    position: int
    action: str
    src: tuple[str, ...]
    dst: tuple[str, ...]
    prt: tuple[str, ...]
    owner: str | None = None
    bidirectional: bool = False


@dataclasses.dataclass(frozen=True, slots=True)
class Hop:
    """One managed router on a path with the interfaces traffic uses."""

    router: int
    in_intf: int | None
    out_intf: int | None

    def reversed(self) -> Hop:
        return Hop(self.router, self.out_intf, self.in_intf)


@dataclasses.dataclass(frozen=True, slots=True)
class PathRule:
    """A rule instantiated for one src/dst subnet pair and one protocol.

    ``path`` lists every managed router between source and destination.
    Distribution turns one path rule into one copy per enforcing device
    with ``device``, ``in_intf``, ``out_intf`` and ``secondary`` set.
    ``src`` is None for reroute permit rules (any source).
    """

    rule: int | None
    src: int | None
    dst: int
    prt: Protocol
    action: str
    owner: str | None = None
    path: tuple[Hop, ...] = ()
    reverse: bool = False
    crypto: str | None = None
    stateless_only: bool = False
    primary: int | None = None
    device: int | None = None
    in_intf: int | None = None
    out_intf: int | None = None
    secondary: bool = False

    def key(self) -> tuple:
        """Identity used for duplicate detection."""
        return (
            self.device,
            self.in_intf,
            self.out_intf,
            self.path,
            self.src,
            self.dst,
            self.prt,
            self.action,
            self.reverse,
            self.crypto,
            self.stateless_only,
            self.secondary,
        )


@dataclasses.dataclass(frozen=True, slots=True)
class Route:
    network: int
    out_intf: int
    next_hop: int | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class Model:
    """Immutable snapshot handed from stage to stage."""

    name: str = ''
    source_dir: str = '.'
    options: CompilerDefaults = COMPILER_DEFAULTS

    subnets: tuple[Subnet, ...] = ()
    zones: tuple[Zone, ...] = ()
    routers: tuple[Router, ...] = ()
    interfaces: tuple[Interface, ...] = ()
    nat_domains: tuple[NatDomain, ...] = ()
    groups: tuple[Group, ...] = ()
    areas: tuple[Area, ...] = ()
    owners: tuple[Owner, ...] = ()
    protocol_defs: tuple[ProtocolDef, ...] = ()
    protocol_groups: tuple[ProtocolGroup, ...] = ()
    rules: tuple[Rule, ...] = ()

    # typed name -> handles; hosts with address ranges map to several subnets
    names: Mapping[str, tuple[int, ...]] = dataclasses.field(
        default_factory=_empty_map, compare=False
    )

    nat_types: Mapping[str, NatType] = dataclasses.field(
        default_factory=_empty_map, compare=False
    )
    unstable_tags: frozenset[str] = frozenset()

    # Derived per rule
    rule_prts: Mapping[int, tuple[Protocol, ...]] = dataclasses.field(
        default_factory=_empty_map, compare=False
    )
    rule_endpoints: Mapping[int, tuple[tuple[int, ...], tuple[int, ...]]] = (
        dataclasses.field(default_factory=_empty_map, compare=False)
    )
    excluded_rules: frozenset[int] = frozenset()
    path_rules: tuple[PathRule, ...] = ()

    # Per NAT domain: subnet -> translated block, subnet -> parent
    domain_addresses: tuple[Mapping[int, ipaddress.IPv4Network | None], ...] = ()
    domain_parents: tuple[Mapping[int, int], ...] = ()

    # Per managed router
    admin_ips: Mapping[int, ipaddress.IPv4Address] = dataclasses.field(
        default_factory=_empty_map, compare=False
    )
    routes: Mapping[int, tuple[Route, ...]] = dataclasses.field(
        default_factory=_empty_map, compare=False
    )
    device_rules: Mapping[int, tuple[PathRule, ...]] = dataclasses.field(
        default_factory=_empty_map, compare=False
    )

    def evolve(self, **changes) -> Model:
        return dataclasses.replace(self, **changes)

    # -- Lookups --

    def lookup(self, typed_name: str) -> tuple[int, ...]:
        return self.names.get(typed_name, ())

    def subnet_handle(self, typed_name: str) -> int:
        """Handle of a single-subnet object; raises KeyError if unknown."""
        return self.names[typed_name][0]

    def router_handle(self, name: str) -> int:
        return self.names[f'router:{name}'][0]

    def interface_handle(self, typed_name: str) -> int:
        return self.subnets[self.names[typed_name][0]].interface

    def rule_name(self, handle: int | None) -> str:
        if handle is None:
            return 'reroute_permit'
        return f'rule:{self.rules[handle].name}'

    def managed_routers(self) -> list[int]:
        return [h for h, r in enumerate(self.routers) if r.is_managed]

    def owning_network(self, handle: int) -> int:
        """Network handle a subnet belongs to; the subnet itself for blocks."""
        subnet = self.subnets[handle]
        if subnet.network is not None:
            return subnet.network
        return handle

    def domain_of_hop(self, hop: Hop) -> int:
        intf = hop.in_intf if hop.in_intf is not None else hop.out_intf
        return self.interfaces[intf].nat_domain

    def eval_domains(self, path: tuple[Hop, ...]) -> tuple[int, ...]:
        """NAT domains a path rule is evaluated in, in path order."""
        seen = []
        for hop in path:
            domain = self.domain_of_hop(hop)
            if domain not in seen:
                seen.append(domain)
        return tuple(seen)

    def address_in(self, handle: int, domain: int) -> ipaddress.IPv4Network | None:
        if self.domain_addresses:
            return self.domain_addresses[domain].get(handle)
        return self.subnets[handle].ip
