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

"""Read the object database once and build the arena :class:`Model`."""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
import pathlib
from typing import TYPE_CHECKING

import sqlalchemy

from policyfabrik.compiler import _model as m
from policyfabrik.core import objects
from policyfabrik.core._util import (
    ENDPOINT_TYPES,
    PROTOCOL_TYPES,
    PolicyLoadError,
    TYPED_NAME_RE,
    interface_name,
)
from policyfabrik.core.options import CompilerDefaults

if TYPE_CHECKING:
    import sqlalchemy.orm

logger = logging.getLogger(__name__)


def _ip_network(text, what):
    try:
        return ipaddress.IPv4Network(text)
    except ValueError as e:
        msg = f'{what}: invalid IPv4 network {text!r}: {e}'
        raise PolicyLoadError(msg) from None


def _ip_address(text, what):
    try:
        return ipaddress.IPv4Address(text)
    except ValueError as e:
        msg = f'{what}: invalid IPv4 address {text!r}: {e}'
        raise PolicyLoadError(msg) from None


def _host_blocks(text, what):
    """Minimal list of CIDR blocks covering a host address or range."""
    first, sep, last = text.partition('-')
    lo = _ip_address(first, what)
    if not sep:
        return [ipaddress.IPv4Network(lo)]
    hi = _ip_address(last, what)
    if hi < lo:
        msg = f'{what}: invalid range {text!r}'
        raise PolicyLoadError(msg)
    return list(ipaddress.summarize_address_range(lo, hi))


class _Builder:
    """Collects records and the name index while walking the database."""

    def __init__(self):
        self.subnets: list[m.Subnet] = []
        self.routers: list[m.Router] = []
        self.interfaces: list[m.Interface] = []
        self.names: dict[str, list[int]] = {}
        self.intf_index: dict[str, int] = {}

    def register(self, typed_name, handle, *, multi=False):
        if typed_name in self.names and not multi:
            msg = f'Duplicate definition of {typed_name}'
            raise PolicyLoadError(msg)
        self.names.setdefault(typed_name, []).append(handle)

    def add_subnet(self, subnet, *, multi=False):
        handle = len(self.subnets)
        self.subnets.append(subnet)
        self.register(subnet.name, handle, multi=multi)
        return handle


def load_model(session: sqlalchemy.orm.Session, overrides=None) -> m.Model:
    """Build the compiler model from the policy stored in *session*.

    Raises :class:`PolicyLoadError` for malformed addresses, dangling
    references and duplicate names.
    """
    policy = session.scalars(sqlalchemy.select(objects.Policy)).first()
    if policy is None:
        msg = 'No policy loaded'
        raise PolicyLoadError(msg)
    try:
        options = CompilerDefaults.from_mapping(policy.options, overrides)
    except ValueError as e:
        raise PolicyLoadError(str(e)) from None

    b = _Builder()
    _load_networks(session, b)
    _load_routers(session, b)
    _load_tunnels(session, b)
    _load_aggregates(session, b)

    areas = []
    for area in session.scalars(
        sqlalchemy.select(objects.Area).order_by(objects.Area.name)
    ):
        what = f'area:{area.name}'
        anchor = _single(b, area.anchor, what, ('network',))
        border = frozenset(_interface(b, name, what) for name in area.border or [])
        b.register(what, len(areas))
        areas.append(m.Area(area.name, anchor, border))

    groups = []
    for group in session.scalars(
        sqlalchemy.select(objects.Group).order_by(objects.Group.name)
    ):
        b.register(f'group:{group.name}', len(groups))
        groups.append(m.Group(group.name, tuple(group.members or ())))

    protocol_defs = []
    for prt in session.scalars(
        sqlalchemy.select(objects.ProtocolDef).order_by(objects.ProtocolDef.name)
    ):
        b.register(f'protocol:{prt.name}', len(protocol_defs))
        protocol_defs.append(m.ProtocolDef(prt.name, prt.spec))

    protocol_groups = []
    for prt_group in session.scalars(
        sqlalchemy.select(objects.ProtocolGroup).order_by(objects.ProtocolGroup.name)
    ):
        b.register(f'protocolgroup:{prt_group.name}', len(protocol_groups))
        protocol_groups.append(
            m.ProtocolGroup(prt_group.name, tuple(prt_group.members or ()))
        )

    owners = []
    for owner in session.scalars(
        sqlalchemy.select(objects.Owner).order_by(objects.Owner.name)
    ):
        b.register(f'owner:{owner.name}', len(owners))
        owners.append(m.Owner(owner.name, tuple(owner.admins or ())))

    rules = []
    for rule in session.scalars(
        sqlalchemy.select(objects.Rule).order_by(objects.Rule.position)
    ):
        b.register(f'rule:{rule.name}', len(rules))
        rules.append(
            m.Rule(
                name=rule.name,
                position=rule.position,
                action=str(rule.action),
                src=tuple(rule.src or ()),
                dst=tuple(rule.dst or ()),
                prt=tuple(rule.prt or ()),
                owner=rule.owner,
                bidirectional=bool(rule.bidirectional),
            )
        )

    # All objects are known now; check references
    for group in groups:
        for member in group.members:
            _check_endpoint(b, member, f'group:{group.name}')
    for prt_group in protocol_groups:
        for member in prt_group.members:
            _check_protocol_ref(b, member, f'protocolgroup:{prt_group.name}')
    for rule in rules:
        what = f'rule:{rule.name}'
        for member in rule.src + rule.dst:
            _check_endpoint(b, member, what)
        for member in rule.prt:
            _check_protocol_ref(b, member, what)
    for intf in b.interfaces:
        for name in intf.reroute_permit_names:
            _single(b, name, f'{intf.name}: reroute_permit', ('network',))

    source_dir = '.'
    if policy.source_file:
        source_dir = str(pathlib.Path(policy.source_file).parent)

    model = m.Model(
        name=policy.name,
        source_dir=source_dir,
        options=options,
        subnets=tuple(b.subnets),
        routers=tuple(b.routers),
        interfaces=tuple(b.interfaces),
        groups=tuple(groups),
        areas=tuple(areas),
        owners=tuple(owners),
        protocol_defs=tuple(protocol_defs),
        protocol_groups=tuple(protocol_groups),
        rules=tuple(rules),
        names=m.frozen_map({k: tuple(v) for k, v in b.names.items()}),
    )
    logger.info(
        'Loaded %d subnets, %d routers, %d rules from policy %s',
        len(model.subnets),
        len(model.routers),
        len(model.rules),
        model.name,
    )
    return model


def _load_networks(session, b):
    for network in session.scalars(
        sqlalchemy.select(objects.Network).order_by(objects.Network.name)
    ):
        what = f'network:{network.name}'
        ip = _ip_network(network.ip, what)
        nat = {}
        for tag, spec in (network.nat or {}).items():
            nat_ip = _ip_network(spec['ip'], f'{what}: nat:{tag}') if spec.get('ip') else None
            nat[tag] = m.NatMapping(
                tag=tag,
                ip=nat_ip,
                dynamic=bool(spec.get('dynamic')),
                hidden=bool(spec.get('hidden')),
            )
        net_handle = b.add_subnet(
            m.Subnet(
                name=what,
                kind=m.SubnetKind.NETWORK,
                ip=ip,
                nat=m.frozen_map(nat),
            )
        )
        for host in sorted(network.hosts, key=lambda h: h.name):
            host_what = f'host:{host.name}'
            static_nat = _static_nat(host.nat, nat, host_what, what)
            blocks = _host_blocks(host.ip, host_what)
            for block in blocks:
                if not block.subnet_of(ip):
                    msg = f'{host_what}: {host.ip} is not inside {what} {ip}'
                    raise PolicyLoadError(msg)
                b.add_subnet(
                    m.Subnet(
                        name=host_what,
                        kind=m.SubnetKind.HOST,
                        ip=block,
                        network=net_handle,
                        static_nat=static_nat if len(blocks) == 1 else m.frozen_map(),
                    ),
                    multi=True,
                )


def _static_nat(values, network_nat, what, network_name):
    static = {}
    for tag, addr in (values or {}).items():
        if tag not in network_nat:
            msg = f'{what}: nat:{tag} is not defined at {network_name}'
            raise PolicyLoadError(msg)
        static[tag] = _ip_address(addr, f'{what}: nat:{tag}')
    return m.frozen_map(static)


def _load_routers(session, b):
    for router in session.scalars(
        sqlalchemy.select(objects.Router).order_by(objects.Router.name)
    ):
        what = f'router:{router.name}'
        r_handle = len(b.routers)
        b.register(what, r_handle)
        if router.managed != objects.Managed.Local and router.filter_only:
            msg = f"{what}: filter_only needs 'managed: local'"
            raise PolicyLoadError(msg)
        if router.managed == objects.Managed.Local and not router.filter_only:
            msg = f"{what}: 'managed: local' needs filter_only"
            raise PolicyLoadError(msg)
        intf_handles = []
        for intf in sorted(router.interfaces, key=lambda i: i.name):
            name = interface_name(router.name, intf.name)
            net_name = f'network:{intf.network}'
            if net_name not in b.names:
                msg = f'{name}: references unknown {net_name}'
                raise PolicyLoadError(msg)
            net_handle = b.names[net_name][0]
            network = b.subnets[net_handle]
            i_handle = len(b.interfaces)
            ip = subnet = None
            if intf.ip:
                ip = _ip_address(intf.ip, name)
                if ip not in network.ip:
                    msg = f'{name}: address {ip} is not inside {net_name} {network.ip}'
                    raise PolicyLoadError(msg)
                subnet = b.add_subnet(
                    m.Subnet(
                        name=name,
                        kind=m.SubnetKind.INTERFACE,
                        ip=ipaddress.IPv4Network(ip),
                        network=net_handle,
                        interface=i_handle,
                        static_nat=_static_nat(intf.nat, network.nat, name, net_name),
                    )
                )
            b.intf_index[name] = i_handle
            b.interfaces.append(
                m.Interface(
                    name=name,
                    router=r_handle,
                    network=net_handle,
                    ip=ip,
                    subnet=subnet,
                    hardware=intf.hardware or intf.name,
                    bind_nat=frozenset(intf.bind_nat or ()),
                    reroute_permit_names=tuple(intf.reroute_permit or ()),
                )
            )
            intf_handles.append(i_handle)
        b.routers.append(
            m.Router(
                name=router.name,
                managed=str(router.managed) if router.managed else None,
                interfaces=tuple(intf_handles),
                stateless=bool(router.stateless),
                filter_only=tuple(
                    _ip_network(f, f'{what}: filter_only')
                    for f in router.filter_only or ()
                ),
                admin_ip=(
                    _ip_address(router.admin_ip, f'{what}: admin_ip')
                    if router.admin_ip
                    else None
                ),
                model=router.model or 'generic',
            )
        )


def _load_tunnels(session, b):
    """Add the tunnel pseudo network and one tunnel interface per peer."""
    for tunnel in session.scalars(
        sqlalchemy.select(objects.Tunnel).order_by(objects.Tunnel.name)
    ):
        what = f'crypto:{tunnel.name}'
        hub = _interface(b, tunnel.hub, what)
        spoke = _interface(b, tunnel.spoke, what)
        if b.interfaces[hub].router == b.interfaces[spoke].router:
            msg = f'{what}: hub and spoke are on the same router'
            raise PolicyLoadError(msg)
        net_handle = b.add_subnet(
            m.Subnet(name=f'tunnel:{tunnel.name}', kind=m.SubnetKind.TUNNEL, ip=None)
        )
        for role, transport in (('hub', hub), ('spoke', spoke)):
            real = b.interfaces[transport]
            b.interfaces[transport] = dataclasses.replace(real, is_transport=True)
            router = b.routers[real.router]
            i_handle = len(b.interfaces)
            name = interface_name(router.name, tunnel.name)
            if name in b.intf_index:
                msg = f'{what}: {name} is already defined'
                raise PolicyLoadError(msg)
            b.intf_index[name] = i_handle
            b.interfaces.append(
                m.Interface(
                    name=name,
                    router=real.router,
                    network=net_handle,
                    hardware=real.hardware,
                    tunnel=tunnel.name,
                    crypto_role=role,
                    transport=transport,
                )
            )
            b.routers[real.router] = dataclasses.replace(
                router, interfaces=(*router.interfaces, i_handle)
            )


def _load_aggregates(session, b):
    for aggregate in session.scalars(
        sqlalchemy.select(objects.Aggregate).order_by(objects.Aggregate.name)
    ):
        what = f'any:{aggregate.name}'
        link = _single(b, aggregate.link or '', what, ('network',))
        b.add_subnet(
            m.Subnet(
                name=what,
                kind=m.SubnetKind.AGGREGATE,
                ip=_ip_network(aggregate.ip or '0.0.0.0/0', what),
                link=link,
            )
        )


def _single(b, typed_name, what, types):
    m_ = TYPED_NAME_RE.match(typed_name or '')
    if not m_ or m_.group(1) not in types:
        msg = f"{what}: expected {' or '.join(types)} reference, got {typed_name!r}"
        raise PolicyLoadError(msg)
    handles = b.names.get(typed_name)
    if not handles:
        msg = f'{what}: references unknown {typed_name}'
        raise PolicyLoadError(msg)
    return handles[0]


def _check_endpoint(b, typed_name, what):
    m_ = TYPED_NAME_RE.match(typed_name)
    if not m_ or m_.group(1) not in ENDPOINT_TYPES:
        msg = f'{what}: invalid object reference {typed_name!r}'
        raise PolicyLoadError(msg)
    kind, name = m_.groups()
    if kind == 'interface' and name.endswith('.[all]'):
        router = name[: -len('.[all]')]
        if f'router:{router}' not in b.names:
            msg = f'{what}: references unknown router:{router}'
            raise PolicyLoadError(msg)
        return
    if typed_name not in b.names:
        if typed_name in b.intf_index:
            msg = f'{what}: unnumbered {typed_name} can not be used in rules'
        else:
            msg = f'{what}: references unknown {typed_name}'
        raise PolicyLoadError(msg)


def _check_protocol_ref(b, text, what):
    m_ = TYPED_NAME_RE.match(text)
    if m_ and m_.group(1) in PROTOCOL_TYPES:
        if text not in b.names:
            msg = f'{what}: references unknown {text}'
            raise PolicyLoadError(msg)


def _interface(b, typed_name, what):
    """Interface handle for ``interface:<router>.<name>``, numbered or not."""
    if typed_name not in b.intf_index:
        msg = f'{what}: references unknown interface {typed_name!r}'
        raise PolicyLoadError(msg)
    return b.intf_index[typed_name]
