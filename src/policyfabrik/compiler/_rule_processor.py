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

"""Rule processor chain.

Implements the pull-based chain pattern:
- Each processor has a tmp_queue and a prev_processor reference.
- get_next_rule() calls process_next() until tmp_queue is non-empty.
- slurp() consumes the entire upstream chain into tmp_queue at once.

A :class:`RuleChain` owns the processors of one stage, feeds them the
path rules of the current model and collects what falls out of the end.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from policyfabrik.compiler._base import Diagnostics
    from policyfabrik.compiler._model import Model, PathRule

logger = logging.getLogger(__name__)


class BasicRuleProcessor:
    """Base class for all rule processors in a chain."""

    def __init__(self, name: str = '') -> None:
        self.chain: RuleChain | None = None
        self.prev_processor: BasicRuleProcessor | None = None
        self.tmp_queue: deque[PathRule] = deque()
        self.name: str = name or type(self).__name__
        self._do_once: bool = False

    def set_context(self, chain: RuleChain) -> None:
        self.chain = chain

    def set_data_source(self, src: BasicRuleProcessor) -> None:
        """Link this processor to its upstream data source."""
        self.prev_processor = src

    def get_next_rule(self) -> PathRule | None:
        """Pull-based: keep calling process_next() until queue has data."""
        while not self.tmp_queue and self.process_next():
            pass
        if self.tmp_queue:
            return self.tmp_queue.popleft()
        return None

    def process_next(self) -> bool:
        """Process next rule(s). Must be overridden by subclasses.

        Returns True if more rules may be available, False when done.
        Implementation should put processed rules into self.tmp_queue.
        """
        raise NotImplementedError

    def slurp(self) -> bool:
        """Consume ALL upstream rules into tmp_queue at once.

        Only executes once.
        """
        if not self._do_once:
            assert self.prev_processor is not None
            rule = self.prev_processor.get_next_rule()
            while rule is not None:
                self.tmp_queue.append(rule)
                rule = self.prev_processor.get_next_rule()
            self._do_once = True
            return len(self.tmp_queue) > 0
        return False


class Debug(BasicRuleProcessor):
    """Logs the rules of one policy rule after the previous processor.

    Inserted after every processor by :meth:`RuleChain.add` when the
    chain has a debug rule.
    """

    def process_next(self) -> bool:
        assert self.chain is not None
        assert self.prev_processor is not None

        self.slurp()
        if not self.tmp_queue:
            return False

        n = self.prev_processor.name
        pad = '-' * max(1, 74 - len(n))
        self.chain.info(f'--- {n} {pad}')
        for rule in self.tmp_queue:
            if self.chain.model.rule_name(rule.rule) == self.chain.debug_rule:
                self.chain.info(self.chain.debug_print_rule(rule))
        return True


class RuleChain:
    """Processor chain context for one compiler stage."""

    def __init__(
        self,
        model: Model,
        diagnostics: Diagnostics,
        rules=None,
        debug_rule: str | None = None,
    ) -> None:
        self.model = model
        self.diagnostics = diagnostics
        self.rules = list(model.path_rules if rules is None else rules)
        self.debug_rule = debug_rule
        self._processors: list[BasicRuleProcessor] = []

    @property
    def rule_debug_on(self) -> bool:
        return bool(self.debug_rule)

    def add(self, processor: BasicRuleProcessor) -> RuleChain:
        processor.set_context(self)
        if self._processors:
            processor.set_data_source(self._processors[-1])
        self._processors.append(processor)
        if self.rule_debug_on and not isinstance(processor, Debug):
            self.add(Debug())
        return self

    def run(self) -> list[PathRule]:
        """Drain the last processor and return the rules in order."""
        if not self._processors:
            return list(self.rules)
        last = self._processors[-1]
        result = []
        rule = last.get_next_rule()
        while rule is not None:
            result.append(rule)
            rule = last.get_next_rule()
        return result

    def info(self, msg: str) -> None:
        logger.info(msg)

    def debug_print_rule(self, rule: PathRule) -> str:
        model = self.model
        src = 'any' if rule.src is None else model.subnets[rule.src].name
        hops = ' '.join(
            model.routers[hop.router].name for hop in rule.path
        ) or '-'
        flags = []
        if rule.reverse:
            flags.append('reverse')
        if rule.crypto:
            flags.append(rule.crypto)
        if rule.stateless_only:
            flags.append('stateless')
        text = (
            f'{model.rule_name(rule.rule)}: {rule.action} {src} -> '
            f'{model.subnets[rule.dst].name} {rule.prt} via {hops}'
        )
        if flags:
            text += f" [{', '.join(flags)}]"
        return text
