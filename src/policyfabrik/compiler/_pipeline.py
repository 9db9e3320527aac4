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

"""Stage sequence of the policy compiler.

Every stage is a function ``model -> StageResult``.  The pipeline threads
the model snapshots through the stages, collects their diagnostics and
stops at a gate when errors have been reported so far.
"""

from __future__ import annotations

import dataclasses
import functools
import logging
import time
from typing import TYPE_CHECKING

from policyfabrik.compiler._analyzer import (
    check_redundant_rules,
    check_service_owner,
    check_supernet_rules,
    check_unused_groups,
    combine_subnets_in_rules,
    mark_managed_local,
    remove_simple_duplicate_rules,
)
from policyfabrik.compiler._base import CompilerStatus, Severity
from policyfabrik.compiler._distribution import (
    find_active_routes,
    mark_secondary_rules,
    rules_distribution,
    set_policy_distribution_ip,
)
from policyfabrik.compiler._expand import (
    convert_hosts_in_rules,
    expand_crypto,
    gen_reverse_rules,
    group_path_rules,
    link_reroute_permit,
    normalize_services,
)
from policyfabrik.compiler._subnets import (
    check_dynamic_nat_rules,
    check_unstable_nat_rules,
    find_subnets_in_nat_domain,
    find_subnets_in_zone,
)
from policyfabrik.compiler._topology import distribute_nat_info

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from policyfabrik.compiler._base import Diagnostic, StageResult
    from policyfabrik.compiler._model import Model

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, slots=True)
class Stage:
    name: str
    run: Callable[..., StageResult]
    # Stages built from rule processor chains accept a debug rule
    chain: bool = False


# Abort here when errors have been reported
GATE = Stage('gate', lambda model: None)

STAGES: tuple[Stage, ...] = (
    Stage('DistributeNatInfo', distribute_nat_info),
    Stage('FindSubnetsInZone', find_subnets_in_zone),
    Stage('LinkReroutePermit', link_reroute_permit),
    Stage('NormalizeServices', normalize_services),
    GATE,
    Stage('CheckServiceOwner', check_service_owner),
    Stage('ConvertHostsInRules', convert_hosts_in_rules),
    Stage('GroupPathRules', group_path_rules),
    Stage('FindSubnetsInNatDomain', find_subnets_in_nat_domain),
    Stage('CheckUnstableNatRules', check_unstable_nat_rules),
    Stage('MarkManagedLocal', mark_managed_local),
    Stage('CheckDynamicNatRules', check_dynamic_nat_rules),
    Stage('CheckUnusedGroups', check_unused_groups),
    Stage('RemoveSimpleDuplicateRules', remove_simple_duplicate_rules, chain=True),
    Stage('CheckSupernetRules', check_supernet_rules),
    Stage('CheckRedundantRules', check_redundant_rules),
    Stage('RemoveSimpleDuplicateRules', remove_simple_duplicate_rules, chain=True),
    Stage('CombineSubnetsInRules', combine_subnets_in_rules),
    Stage('SetPolicyDistributionIP', set_policy_distribution_ip),
    Stage('ExpandCrypto', expand_crypto, chain=True),
    Stage('FindActiveRoutes', find_active_routes),
    Stage('GenReverseRules', gen_reverse_rules, chain=True),
    GATE,
    Stage('MarkSecondaryRules', mark_secondary_rules),
    Stage('RulesDistribution', rules_distribution),
)


@dataclasses.dataclass(frozen=True, slots=True)
class PipelineResult:
    """Final model snapshot and everything reported on the way."""

    model: Model
    diagnostics: tuple[Diagnostic, ...] = ()
    # Name of the last stage run before a gate stopped the pipeline
    stopped_after: str | None = None

    @property
    def error_count(self) -> int:
        return sum(1 for d in self.diagnostics if d.severity == Severity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for d in self.diagnostics if d.severity == Severity.WARNING)

    @property
    def completed(self) -> bool:
        return self.stopped_after is None

    @property
    def status(self) -> CompilerStatus:
        if self.error_count:
            return CompilerStatus.ERROR
        if self.warning_count:
            return CompilerStatus.WARNING
        return CompilerStatus.SUCCESS


class Pipeline:
    def __init__(
        self,
        stages: Sequence[Stage] = STAGES,
        debug_rule: str | None = None,
    ) -> None:
        self.stages = tuple(stages)
        self.debug_rule = debug_rule

    def run(self, model: Model, until: str | None = None) -> PipelineResult:
        """Run all stages, or the stages up to and including *until*."""
        diagnostics: list[Diagnostic] = []
        errors = 0
        last = None
        for stage in self.stages:
            if stage is GATE:
                if errors:
                    logger.info('Aborted after %d errors', errors)
                    return PipelineResult(model, tuple(diagnostics), last)
                continue
            run = stage.run
            if stage.chain:
                run = functools.partial(run, debug_rule=self.debug_rule)
            started = time.monotonic()
            result = run(model)
            logger.debug(
                '%s: %.3fs, %d path rules',
                stage.name,
                time.monotonic() - started,
                len(result.model.path_rules),
            )
            model = result.model
            diagnostics.extend(result.diagnostics)
            errors += result.error_count
            last = stage.name
            if stage.name == until:
                break
        return PipelineResult(model, tuple(diagnostics))
