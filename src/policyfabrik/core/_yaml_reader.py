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

"""YAML reader for loading a policy file into the database model."""

import logging
import pathlib
import uuid

import yaml

from . import objects
from ._util import ParseResult, PolicyLoadError

logger = logging.getLogger(__name__)

_TOP_LEVEL_KEYS = frozenset(
    {
        'name',
        'comment',
        'options',
        'networks',
        'aggregates',
        'areas',
        'routers',
        'crypto',
        'groups',
        'protocols',
        'protocolgroups',
        'owners',
        'rules',
    }
)


def _as_list(value, what):
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        msg = f'{what}: expected a list, got {type(value).__name__}'
        raise PolicyLoadError(msg)
    return [str(v) for v in value]


def _coerce_bool(value, what):
    """Accept YAML booleans and the quoted strings ``"true"``/``"false"``."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ('true', 'false'):
        return value.lower() == 'true'
    if value is None:
        return False
    msg = f'{what}: expected a boolean, got {value!r}'
    raise PolicyLoadError(msg)


class YamlReader:
    """Parses a single YAML policy file into a ParseResult for DatabaseManager.load()."""

    def __init__(self):
        self._counts = {}
        self._seen = set()
        self._path = None

    def parse(self, input_path):
        input_path = pathlib.Path(input_path)
        self._path = input_path
        self._counts = {}
        self._seen.clear()

        # Phase 1: Load YAML file
        try:
            with pathlib.Path.open(input_path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            msg = f'{input_path}: invalid YAML: {e}'
            raise PolicyLoadError(msg) from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            msg = f'{input_path}: top level must be a mapping'
            raise PolicyLoadError(msg)
        unknown = sorted(set(data) - _TOP_LEVEL_KEYS)
        if unknown:
            msg = f'{input_path}: unknown top-level keys: {", ".join(unknown)}'
            raise PolicyLoadError(msg)

        # Phase 2: Create objects
        policy = objects.Policy(
            id=uuid.uuid4(),
            name=str(data.get('name', input_path.stem)),
            comment=str(data.get('comment', '') or ''),
            source_file=str(input_path),
            options=self._mapping(data.get('options'), 'options'),
        )
        for entry in self._entries(data, 'networks'):
            policy.addresses.append(self._parse_network(entry, policy))
        for entry in self._entries(data, 'aggregates'):
            policy.addresses.append(
                objects.Aggregate(
                    id=uuid.uuid4(),
                    name=self._name(entry, 'aggregates', 'any'),
                    ip=str(entry.get('ip', '0.0.0.0/0')),
                    link=self._required(entry, 'link', 'aggregates'),
                )
            )
        for entry in self._entries(data, 'areas'):
            name = self._name(entry, 'areas', 'area')
            policy.areas.append(
                objects.Area(
                    id=uuid.uuid4(),
                    name=name,
                    anchor=self._required(entry, 'anchor', f'area:{name}'),
                    border=_as_list(entry.get('border'), f'area:{name}: border'),
                )
            )
        for entry in self._entries(data, 'routers'):
            policy.routers.append(self._parse_router(entry))
        for entry in self._entries(data, 'crypto'):
            name = self._name(entry, 'crypto', 'crypto')
            policy.tunnels.append(
                objects.Tunnel(
                    id=uuid.uuid4(),
                    name=name,
                    hub=self._required(entry, 'hub', f'crypto:{name}'),
                    spoke=self._required(entry, 'spoke', f'crypto:{name}'),
                )
            )
        for entry in self._entries(data, 'groups'):
            name = self._name(entry, 'groups', 'group')
            policy.groups.append(
                objects.Group(
                    id=uuid.uuid4(),
                    name=name,
                    comment=str(entry.get('comment', '') or ''),
                    members=_as_list(entry.get('members'), f'group:{name}'),
                )
            )
        for entry in self._entries(data, 'protocols'):
            name = self._name(entry, 'protocols', 'protocol')
            policy.protocols.append(
                objects.ProtocolDef(
                    id=uuid.uuid4(),
                    name=name,
                    spec=self._required(entry, 'spec', f'protocol:{name}'),
                )
            )
        for entry in self._entries(data, 'protocolgroups'):
            name = self._name(entry, 'protocolgroups', 'protocolgroup')
            policy.protocol_groups.append(
                objects.ProtocolGroup(
                    id=uuid.uuid4(),
                    name=name,
                    members=_as_list(entry.get('members'), f'protocolgroup:{name}'),
                )
            )
        for entry in self._entries(data, 'owners'):
            name = self._name(entry, 'owners', 'owner')
            policy.owners.append(
                objects.Owner(
                    id=uuid.uuid4(),
                    name=name,
                    admins=_as_list(entry.get('admins'), f'owner:{name}'),
                )
            )
        for position, entry in enumerate(self._entries(data, 'rules'), start=1):
            policy.rules.append(self._parse_rule(entry, position))

        logger.debug('Parsed %s: %s', input_path, self._counts)
        return ParseResult(policy=policy, counts=dict(self._counts))

    def _error(self, text):
        return PolicyLoadError(f'{self._path}: {text}')

    def _entries(self, data, key):
        entries = data.get(key) or []
        if not isinstance(entries, list):
            raise self._error(f'{key}: expected a list')
        for entry in entries:
            if not isinstance(entry, dict):
                raise self._error(f'{key}: every entry must be a mapping, got {entry!r}')
        self._counts[key] = len(entries)
        return entries

    def _mapping(self, value, what):
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise self._error(f'{what}: expected a mapping')
        return value

    def _name(self, entry, what, prefix=None):
        name = entry.get('name')
        if not name or not isinstance(name, (str, int)):
            raise self._error(f'{what}: entry without name: {entry!r}')
        name = str(name)
        if prefix is not None:
            # Interfaces pass 'interface:<router>.' as prefix
            typed = f'{prefix}{name}' if prefix.endswith('.') else f'{prefix}:{name}'
            if typed in self._seen:
                raise self._error(f'Duplicate definition of {typed}')
            self._seen.add(typed)
        return name

    def _required(self, entry, key, what):
        value = entry.get(key)
        if value is None or value == '':
            raise self._error(f"{what}: missing '{key}'")
        return str(value)

    def _parse_network(self, entry, policy):
        name = self._name(entry, 'networks', 'network')
        what = f'network:{name}'
        nat = {}
        for tag, spec in self._mapping(entry.get('nat'), f'{what}: nat').items():
            spec = self._mapping(spec, f'{what}: nat:{tag}')
            hidden = _coerce_bool(spec.get('hidden'), f'{what}: nat:{tag}: hidden')
            if not hidden and not spec.get('ip'):
                raise self._error(f"{what}: nat:{tag} needs 'ip' or 'hidden: true'")
            nat[str(tag)] = {
                'ip': str(spec['ip']) if spec.get('ip') else None,
                'dynamic': _coerce_bool(
                    spec.get('dynamic'), f'{what}: nat:{tag}: dynamic'
                ),
                'hidden': hidden,
            }
        network = objects.Network(
            id=uuid.uuid4(),
            name=name,
            comment=str(entry.get('comment', '') or ''),
            ip=self._required(entry, 'ip', what),
            nat=nat,
        )
        for host in entry.get('hosts') or []:
            if not isinstance(host, dict):
                raise self._error(f'{what}: hosts must be mappings')
            host_name = self._name(host, f'{what}: hosts', 'host')
            ip = host.get('ip') or host.get('range')
            if not ip:
                raise self._error(f"host:{host_name}: missing 'ip' or 'range'")
            network.hosts.append(
                objects.Host(
                    id=uuid.uuid4(),
                    policy=policy,
                    name=host_name,
                    ip=str(ip).replace(' ', ''),
                    nat={
                        str(k): str(v)
                        for k, v in self._mapping(
                            host.get('nat'), f'host:{host_name}: nat'
                        ).items()
                    },
                )
            )
        return network

    def _parse_router(self, entry):
        name = self._name(entry, 'routers', 'router')
        what = f'router:{name}'
        managed = entry.get('managed')
        if managed is True:
            managed = objects.Managed.Full
        elif managed in (None, False):
            managed = None
        else:
            try:
                managed = objects.Managed(str(managed))
            except ValueError:
                raise self._error(
                    f"{what}: managed must be one of full, secondary, local, got '{managed}'"
                ) from None
        router = objects.Router(
            id=uuid.uuid4(),
            name=name,
            comment=str(entry.get('comment', '') or ''),
            managed=managed,
            model=str(entry.get('model', 'generic')),
            stateless=_coerce_bool(entry.get('stateless'), f'{what}: stateless'),
            filter_only=_as_list(entry.get('filter_only'), f'{what}: filter_only'),
            admin_ip=str(entry['admin_ip']) if entry.get('admin_ip') else None,
        )
        for intf in entry.get('interfaces') or []:
            if not isinstance(intf, dict):
                raise self._error(f'{what}: interfaces must be mappings')
            intf_name = self._name(intf, f'{what}: interfaces', f'interface:{name}.')
            router.interfaces.append(
                objects.Interface(
                    id=uuid.uuid4(),
                    name=intf_name,
                    network=str(intf.get('network', intf_name)),
                    ip=str(intf['ip']) if intf.get('ip') else None,
                    hardware=str(intf.get('hardware', '') or ''),
                    bind_nat=set(
                        _as_list(intf.get('bind_nat'), f'{what}.{intf_name}: bind_nat')
                    ),
                    nat={
                        str(k): str(v)
                        for k, v in self._mapping(
                            intf.get('nat'), f'interface:{name}.{intf_name}: nat'
                        ).items()
                    },
                    reroute_permit=_as_list(
                        intf.get('reroute_permit'),
                        f'{what}.{intf_name}: reroute_permit',
                    ),
                )
            )
        return router

    def _parse_rule(self, entry, position):
        name = self._name(entry, 'rules', 'rule')
        what = f'rule:{name}'
        action = str(entry.get('action', objects.RuleAction.Permit))
        try:
            action = objects.RuleAction(action)
        except ValueError:
            raise self._error(
                f"{what}: action must be permit or deny, got '{action}'"
            ) from None
        return objects.Rule(
            id=uuid.uuid4(),
            name=name,
            comment=str(entry.get('comment', '') or ''),
            position=position,
            action=action,
            src=_as_list(entry.get('src'), f'{what}: src'),
            dst=_as_list(entry.get('dst'), f'{what}: dst'),
            prt=_as_list(entry.get('prt'), f'{what}: prt'),
            owner=str(entry['owner']) if entry.get('owner') else None,
            bidirectional=_coerce_bool(
                entry.get('bidirectional'), f'{what}: bidirectional'
            ),
        )
