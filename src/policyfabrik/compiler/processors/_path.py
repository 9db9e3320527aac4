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

"""Rule processors operating on path rules."""

from __future__ import annotations

import dataclasses
import logging

from policyfabrik.compiler._base import Category
from policyfabrik.compiler._model import Hop, PathRule
from policyfabrik.compiler._protocols import ESP, reverse_protocol
from policyfabrik.compiler._rule_processor import BasicRuleProcessor
from policyfabrik.core.objects import RuleAction

logger = logging.getLogger(__name__)


class Begin(BasicRuleProcessor):
    """Injects the chain's path rules into the pipeline."""

    def __init__(self, name: str = 'Begin') -> None:
        super().__init__(name)
        self._init = False

    def process_next(self) -> bool:
        if not self._init:
            self.tmp_queue.extend(self.chain.rules)
            self._init = True
            return bool(self.tmp_queue)
        return False


class ExpandCryptoRule(BasicRuleProcessor):
    """Splits rules crossing a crypto tunnel into plain and encrypted parts.

    The original rule stays on the tunnel interfaces and is tagged
    ``plain``.  Per tunnel one ESP rule between the transport addresses
    of both peers is added, tagged ``encrypted``.  Its path holds the
    transport interface of every managed tunnel endpoint.
    """

    def __init__(self, name: str = 'Expand crypto') -> None:
        super().__init__(name)
        self._seen: set[tuple] = set()
        self._broken: set[str] = set()

    def process_next(self) -> bool:
        rule = self.prev_processor.get_next_rule()
        if rule is None:
            return False
        model = self.chain.model

        # tunnel -> [(router, tunnel interface, inbound)] in path order
        crossings: dict[str, list[tuple[int, int, bool]]] = {}
        for hop in rule.path:
            for intf, inbound in ((hop.in_intf, True), (hop.out_intf, False)):
                if intf is None or model.interfaces[intf].tunnel is None:
                    continue
                crossings.setdefault(model.interfaces[intf].tunnel, []).append(
                    (hop.router, intf, inbound)
                )
        if not crossings:
            self.tmp_queue.append(rule)
            return True

        self.tmp_queue.append(dataclasses.replace(rule, crypto='plain'))
        for tunnel, ends in crossings.items():
            esp = self._esp_rule(rule, tunnel, ends)
            if esp is not None:
                self.tmp_queue.append(esp)
        return True

    def _esp_rule(self, rule, tunnel, ends):
        model = self.chain.model
        key = (rule.rule, tunnel, tuple((r, inbound) for r, _, inbound in ends))
        if key in self._seen:
            return None
        self._seen.add(key)

        _, intf, inbound = ends[0]
        tunnel_intf = model.interfaces[intf]
        peer = next(
            i
            for i, other in enumerate(model.interfaces)
            if other.tunnel == tunnel and i != intf
        )
        own = model.interfaces[tunnel_intf.transport]
        remote = model.interfaces[model.interfaces[peer].transport]
        if own.subnet is None or remote.subnet is None:
            if tunnel not in self._broken:
                self._broken.add(tunnel)
                self.chain.diagnostics.error(
                    Category.TOPOLOGY,
                    f'crypto:{tunnel} needs numbered transport '
                    f'interfaces {own.name} and {remote.name}',
                )
            return None

        if inbound:
            src, dst = remote.subnet, own.subnet
        else:
            src, dst = own.subnet, remote.subnet
        path = []
        for router, end, end_inbound in ends:
            transport = model.interfaces[end].transport
            if end_inbound:
                path.append(Hop(router, transport, None))
            else:
                path.append(Hop(router, None, transport))
        return PathRule(
            rule=rule.rule,
            src=src,
            dst=dst,
            prt=ESP,
            action=RuleAction.Permit,
            owner=rule.owner,
            path=tuple(path),
            crypto='encrypted',
        )


class GenerateReverseRule(BasicRuleProcessor):
    """Adds the answer direction of bidirectional rules and of rules on stateless devices."""

    def __init__(self, name: str = 'Generate reverse rules') -> None:
        super().__init__(name)

    def process_next(self) -> bool:
        rule = self.prev_processor.get_next_rule()
        if rule is None:
            return False
        self.tmp_queue.append(rule)
        if rule.reverse or rule.src is None or rule.action != RuleAction.Permit:
            return True

        model = self.chain.model
        if model.rules[rule.rule].bidirectional:
            stateless_only = False
        elif any(model.routers[hop.router].stateless for hop in rule.path):
            stateless_only = True
        else:
            return True
        self.tmp_queue.append(
            dataclasses.replace(
                rule,
                src=rule.dst,
                dst=rule.src,
                prt=reverse_protocol(rule.prt),
                path=tuple(hop.reversed() for hop in reversed(rule.path)),
                reverse=True,
                stateless_only=stateless_only,
            )
        )
        return True


class RemoveDuplicatePathRules(BasicRuleProcessor):
    """Collapses identical path rules to the one of the earliest policy rule.

    Uses slurp(); duplicates coming from different policy rules are
    reported with the configured ``check_duplicate_rules`` level.
    """

    def __init__(self, name: str = 'Remove duplicate rules') -> None:
        super().__init__(name)
        self._done = False

    def process_next(self) -> bool:
        if self._done:
            return False
        self.slurp()
        self._done = True
        model = self.chain.model

        kept: list[PathRule] = []
        index: dict[tuple, int] = {}
        pairs = set()
        for rule in self.tmp_queue:
            key = rule.key()
            if key not in index:
                index[key] = len(kept)
                kept.append(rule)
                continue
            other = kept[index[key]]
            if other.rule != rule.rule:
                first, second = sorted(
                    (other.rule, rule.rule), key=lambda r: model.rules[r].position
                )
                pairs.add((first, second))
                if first == rule.rule:
                    kept[index[key]] = rule
            logger.debug('Dropping duplicate %s', self.chain.debug_print_rule(rule))

        level = model.options.check_duplicate_rules
        for first, second in sorted(
            pairs,
            key=lambda p: (model.rules[p[0]].position, model.rules[p[1]].position),
        ):
            self.chain.diagnostics.report(
                level,
                Category.REDUNDANT,
                f'Duplicate rules in {model.rule_name(second)} and '
                f'{model.rule_name(first)}',
                model.rule_name(second),
            )
        dropped = len(self.tmp_queue) - len(kept)
        if dropped:
            logger.info('Removed %d duplicate path rules', dropped)
        self.tmp_queue.clear()
        self.tmp_queue.extend(kept)
        return bool(self.tmp_queue)
