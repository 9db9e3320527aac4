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

"""Canonical compiler option keys using StrEnum.

The keys are used in the ``options:`` mapping of a policy file and with
``--set KEY=VALUE`` on the command line.  Using StrEnum catches typos at
import time and lets the keys be used directly as dict keys.

Example:
    from policyfabrik.core.options import CompilerOption

    level = defaults.get(CompilerOption.CHECK_UNUSED_GROUPS)
"""

from enum import StrEnum


class CompilerOption(StrEnum):
    """Options controlling checks and output of the policy compiler."""

    # Consistency checks ('err', 'warn', 'info' or '0')
    CHECK_UNUSED_GROUPS = 'check_unused_groups'
    CHECK_UNUSED_PROTOCOLS = 'check_unused_protocols'
    CHECK_REDUNDANT_RULES = 'check_redundant_rules'
    CHECK_DUPLICATE_RULES = 'check_duplicate_rules'
    CHECK_SUPERNET_RULES = 'check_supernet_rules'
    CHECK_SERVICE_OWNER = 'check_service_owner'

    # Optimization
    COMBINE_SUBNETS = 'combine_subnets'

    # Distribution
    POLICY_DISTRIBUTION_POINT = 'policy_distribution_point'

    # Runtime
    MAX_WORKERS = 'max_workers'


class CheckLevel(StrEnum):
    """Severity a consistency check reports with; ``Off`` silences it."""

    Err = 'err'
    Warn = 'warn'
    Info = 'info'
    Off = '0'
