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

"""Unit tests for protocol parsing, containment and normalization."""

import pytest

from policyfabrik.compiler import Protocol, ProtocolError, normalize, parse_protocol
from policyfabrik.compiler._protocols import ESP, FULL_RANGE, IP, reverse_protocol


class TestParseProtocol:
    def test_tcp_single_port(self):
        p = parse_protocol('tcp 80')
        assert p == Protocol('tcp', ports=(80, 80), src_ports=FULL_RANGE)
        assert str(p) == 'tcp 80'

    def test_udp_with_source_range(self):
        p = parse_protocol('udp 1024-65535:53')
        assert p.ports == (53, 53)
        assert p.src_ports == (1024, 65535)
        assert str(p) == 'udp 1024-65535:53'

    def test_bare_tcp_covers_all_ports(self):
        p = parse_protocol('TCP')
        assert p.ports == FULL_RANGE
        assert str(p) == 'tcp'

    def test_icmp_variants(self):
        assert str(parse_protocol('icmp')) == 'icmp'
        assert parse_protocol('icmp 8').icmp_type == 8
        p = parse_protocol('icmp 3/4')
        assert (p.icmp_type, p.icmp_code) == (3, 4)

    def test_ip_and_proto(self):
        assert parse_protocol('ip') is IP
        assert parse_protocol('proto 50') == ESP

    @pytest.mark.parametrize(
        'spec',
        [
            '',
            'tcp 0',
            'tcp 90-80',
            'tcp 70000',
            'udp 53 54',
            'icmp x',
            'icmp 300',
            'proto 6',
            'proto 256',
            'ip 1',
            'gre',
        ],
    )
    def test_invalid(self, spec):
        with pytest.raises(ProtocolError):
            parse_protocol(spec)


class TestContains:
    def test_ip_contains_everything(self):
        assert IP.contains(parse_protocol('udp 53'))
        assert IP.contains(ESP)

    def test_port_ranges(self):
        wide = parse_protocol('tcp 80-90')
        assert wide.contains(parse_protocol('tcp 85'))
        assert not wide.contains(parse_protocol('tcp 91'))
        assert not wide.contains(parse_protocol('udp 85'))

    def test_icmp_type_contains_codes(self):
        assert parse_protocol('icmp 3').contains(parse_protocol('icmp 3/4'))
        assert not parse_protocol('icmp 3/4').contains(parse_protocol('icmp 3'))


class TestNormalize:
    def test_merges_overlapping_and_adjacent_ranges(self):
        result = normalize(
            parse_protocol(s) for s in ('tcp 81-90', 'tcp 80', 'tcp 85-100', 'tcp 443')
        )
        assert [str(p) for p in result] == ['tcp 80-100', 'tcp 443']

    def test_drops_contained_protocols(self):
        result = normalize(parse_protocol(s) for s in ('icmp', 'icmp 8', 'udp 53'))
        assert [str(p) for p in result] == ['udp 53', 'icmp']

    def test_ip_absorbs_all(self):
        assert normalize([parse_protocol('tcp 22'), IP]) == (IP,)

    def test_idempotent(self):
        once = normalize(parse_protocol(s) for s in ('tcp 1-10', 'tcp 5-20', 'udp'))
        assert normalize(once) == once


class TestReverse:
    def test_tcp_answer_is_established(self):
        p = reverse_protocol(parse_protocol('tcp 80'))
        assert p.ports == FULL_RANGE
        assert p.src_ports == (80, 80)
        assert p.established

    def test_icmp_echo_reply(self):
        p = reverse_protocol(parse_protocol('icmp 8'))
        assert (p.icmp_type, p.icmp_code) == (0, 0)

    def test_other_protocols_unchanged(self):
        assert reverse_protocol(ESP) == ESP
