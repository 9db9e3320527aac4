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

"""Canonical protocol intervals.

A :class:`Protocol` is one service interval: a protocol with a destination
port range, a source port range, an ICMP type/code or an IP protocol
number.  :func:`normalize` turns any list of protocols into the minimal
sorted set of non-overlapping intervals so that redundancy checks can rely
on exact equality and containment.
"""

from __future__ import annotations

import dataclasses
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

FULL_RANGE = (1, 65535)

_PROTO_ORDER = {'ip': 0, 'tcp': 1, 'udp': 2, 'icmp': 3, 'proto': 4}

_RANGE_RE = re.compile(r'^(\d+)(?:-(\d+))?$')

# Reply types for ICMP request types
_ICMP_REPLY = {8: 0, 13: 14, 15: 16, 17: 18}

# IP protocol numbers that must be written with their keyword
_KEYWORD_NUMBERS = {1: 'icmp', 6: 'tcp', 17: 'udp'}


class ProtocolError(ValueError):
    pass


@dataclasses.dataclass(frozen=True, slots=True)
class Protocol:
    proto: str
    ports: tuple[int, int] | None = None
    src_ports: tuple[int, int] | None = None
    icmp_type: int | None = None
    icmp_code: int | None = None
    number: int | None = None
    established: bool = False

    def __str__(self) -> str:
        match self.proto:
            case 'tcp' | 'udp':
                text = self.proto
                dst = _fmt_range(self.ports)
                if self.src_ports != FULL_RANGE:
                    text = f'{text} {_fmt_range(self.src_ports)}:{dst}'
                elif self.ports != FULL_RANGE:
                    text = f'{text} {dst}'
                if self.established:
                    text += ' established'
                return text
            case 'icmp':
                if self.icmp_type is None:
                    return 'icmp'
                if self.icmp_code is None:
                    return f'icmp {self.icmp_type}'
                return f'icmp {self.icmp_type}/{self.icmp_code}'
            case 'proto':
                return f'proto {self.number}'
            case _:
                return self.proto

    def sort_key(self) -> tuple:
        return (
            _PROTO_ORDER[self.proto],
            self.number if self.number is not None else -1,
            self.ports or (0, 0),
            self.src_ports or (0, 0),
            self.icmp_type if self.icmp_type is not None else -1,
            self.icmp_code if self.icmp_code is not None else -1,
            self.established,
        )

    def contains(self, other: Protocol) -> bool:
        """True when every packet matched by *other* is matched by self."""
        if self.proto == 'ip':
            return True
        if self.proto != other.proto:
            return False
        match self.proto:
            case 'tcp' | 'udp':
                if self.established and not other.established:
                    return False
                return _range_contains(self.ports, other.ports) and _range_contains(
                    self.src_ports, other.src_ports
                )
            case 'icmp':
                if self.icmp_type is None:
                    return True
                if self.icmp_type != other.icmp_type:
                    return False
                return self.icmp_code is None or self.icmp_code == other.icmp_code
            case _:
                return self.number == other.number


IP = Protocol('ip')
ESP = Protocol('proto', number=50)


def _fmt_range(r: tuple[int, int] | None) -> str:
    if r is None:
        return ''
    lo, hi = r
    return str(lo) if lo == hi else f'{lo}-{hi}'


def _range_contains(a, b) -> bool:
    return a[0] <= b[0] and b[1] <= a[1]


def _parse_range(text: str, spec: str) -> tuple[int, int]:
    m = _RANGE_RE.match(text)
    if not m:
        msg = f"Invalid port range '{text}' in '{spec}'"
        raise ProtocolError(msg)
    lo = int(m.group(1))
    hi = int(m.group(2)) if m.group(2) is not None else lo
    if not 1 <= lo <= hi <= 65535:
        msg = f"Port range '{text}' out of 1-65535 in '{spec}'"
        raise ProtocolError(msg)
    return lo, hi


def parse_protocol(spec: str) -> Protocol:
    """Parse ``tcp 80``, ``udp 1024-65535:53``, ``icmp 3/4``, ``proto 50``, ``ip``."""
    words = spec.split()
    if not words:
        msg = 'Empty protocol specification'
        raise ProtocolError(msg)
    name, args = words[0].lower(), words[1:]
    match name:
        case 'ip':
            if args:
                msg = f"Unexpected arguments in '{spec}'"
                raise ProtocolError(msg)
            return IP
        case 'tcp' | 'udp':
            if len(args) > 1:
                msg = f"Unexpected arguments in '{spec}'"
                raise ProtocolError(msg)
            src, dst = FULL_RANGE, FULL_RANGE
            if args:
                src_text, sep, dst_text = args[0].rpartition(':')
                dst = _parse_range(dst_text, spec)
                if sep:
                    src = _parse_range(src_text, spec)
            return Protocol(name, ports=dst, src_ports=src)
        case 'icmp':
            if not args:
                return Protocol('icmp')
            if len(args) > 1:
                msg = f"Unexpected arguments in '{spec}'"
                raise ProtocolError(msg)
            type_text, sep, code_text = args[0].partition('/')
            try:
                icmp_type = int(type_text)
                icmp_code = int(code_text) if sep else None
            except ValueError:
                msg = f"Invalid ICMP type/code in '{spec}'"
                raise ProtocolError(msg) from None
            if not 0 <= icmp_type <= 255 or (
                icmp_code is not None and not 0 <= icmp_code <= 255
            ):
                msg = f"ICMP type/code out of range in '{spec}'"
                raise ProtocolError(msg)
            return Protocol('icmp', icmp_type=icmp_type, icmp_code=icmp_code)
        case 'proto':
            if len(args) != 1 or not args[0].isdigit():
                msg = f"Expected 'proto <number>', got '{spec}'"
                raise ProtocolError(msg)
            number = int(args[0])
            if not 0 <= number <= 255:
                msg = f"Protocol number out of range in '{spec}'"
                raise ProtocolError(msg)
            if number in _KEYWORD_NUMBERS:
                msg = f"Use '{_KEYWORD_NUMBERS[number]}' instead of '{spec}'"
                raise ProtocolError(msg)
            return Protocol('proto', number=number)
        case _:
            msg = f"Unknown protocol in '{spec}'"
            raise ProtocolError(msg)


def normalize(protocols: Iterable[Protocol]) -> tuple[Protocol, ...]:
    """Merge overlapping and adjacent port ranges and drop contained protocols.

    The result is sorted and contains no protocol that is contained in
    another one, so normalizing twice gives the same result.
    """
    protocols = set(protocols)
    if IP in protocols:
        return (IP,)

    merged: set[Protocol] = set()
    ranges: dict[tuple, list[tuple[int, int]]] = {}
    for p in protocols:
        if p.proto in ('tcp', 'udp'):
            ranges.setdefault((p.proto, p.src_ports, p.established), []).append(
                p.ports
            )
        else:
            merged.add(p)
    for (proto, src_ports, established), port_list in ranges.items():
        port_list.sort()
        lo, hi = port_list[0]
        for a, b in port_list[1:]:
            if a <= hi + 1:
                hi = max(hi, b)
                continue
            merged.add(Protocol(proto, (lo, hi), src_ports, established=established))
            lo, hi = a, b
        merged.add(Protocol(proto, (lo, hi), src_ports, established=established))

    result = [
        p for p in merged if not any(q != p and q.contains(p) for q in merged)
    ]
    return tuple(sorted(result, key=Protocol.sort_key))


def reverse_protocol(p: Protocol) -> Protocol:
    """Protocol of the answer packets of *p*."""
    match p.proto:
        case 'tcp':
            return Protocol('tcp', p.src_ports, p.ports, established=True)
        case 'udp':
            return Protocol('udp', p.src_ports, p.ports)
        case 'icmp' if p.icmp_type in _ICMP_REPLY:
            return Protocol('icmp', icmp_type=_ICMP_REPLY[p.icmp_type], icmp_code=0)
        case _:
            return p
