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

"""Policy compiler: arena model, stages and the pipeline running them."""

from ._base import (
    Category,
    CompilerStatus,
    Diagnostic,
    Diagnostics,
    Severity,
    StageResult,
)
from ._loader import load_model
from ._model import Model, PathRule, SubnetKind
from ._pipeline import STAGES, Pipeline, PipelineResult, Stage
from ._protocols import Protocol, ProtocolError, normalize, parse_protocol
from ._rule_processor import BasicRuleProcessor, Debug, RuleChain

__all__ = [
    'STAGES',
    'BasicRuleProcessor',
    'Category',
    'CompilerStatus',
    'Debug',
    'Diagnostic',
    'Diagnostics',
    'Model',
    'PathRule',
    'Pipeline',
    'PipelineResult',
    'Protocol',
    'ProtocolError',
    'RuleChain',
    'Severity',
    'Stage',
    'StageResult',
    'SubnetKind',
    'load_model',
    'normalize',
    'parse_protocol',
]
