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

"""Typed option schema with defaults.

``CompilerDefaults`` is the single source of truth for which compiler
options exist, their types and their default values.  Values coming from
the policy file or the command line are strings or YAML scalars and are
coerced by :meth:`CompilerDefaults.from_mapping`.
"""

import dataclasses
from dataclasses import dataclass

from ._keys import CheckLevel, CompilerOption

_CHECK_FIELDS = frozenset(
    {
        CompilerOption.CHECK_UNUSED_GROUPS,
        CompilerOption.CHECK_UNUSED_PROTOCOLS,
        CompilerOption.CHECK_REDUNDANT_RULES,
        CompilerOption.CHECK_DUPLICATE_RULES,
        CompilerOption.CHECK_SUPERNET_RULES,
        CompilerOption.CHECK_SERVICE_OWNER,
    }
)

_TRUE = frozenset({'1', 'true', 'yes', 'on'})
_FALSE = frozenset({'0', 'false', 'no', 'off', ''})


@dataclass(frozen=True)
class CompilerDefaults:
    """Default values for compiler options."""

    check_unused_groups: CheckLevel = CheckLevel.Warn
    check_unused_protocols: CheckLevel = CheckLevel.Off
    check_redundant_rules: CheckLevel = CheckLevel.Info
    check_duplicate_rules: CheckLevel = CheckLevel.Info
    check_supernet_rules: CheckLevel = CheckLevel.Info
    check_service_owner: CheckLevel = CheckLevel.Warn

    combine_subnets: bool = True

    # Typed name of the host policies are pushed from, e.g. 'host:admin'
    policy_distribution_point: str = ''

    max_workers: int = 4  # 1 disables threading

    @classmethod
    def from_mapping(cls, values=None, overrides=None):
        """Build defaults from the policy ``options:`` mapping plus overrides.

        Unknown keys and malformed values raise ``ValueError``.
        """
        merged = dict(values or {})
        merged.update(overrides or {})
        kwargs = {}
        for key, raw in merged.items():
            try:
                option = CompilerOption(key)
            except ValueError:
                msg = f'Unknown compiler option: {key}'
                raise ValueError(msg) from None
            kwargs[str(option)] = _coerce(option, raw)
        return cls(**kwargs)

    def get(self, option: CompilerOption):
        return getattr(self, str(option))

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}


def _coerce(option, raw):
    if option in _CHECK_FIELDS:
        # YAML turns a bare 0 into an int
        text = str(raw).strip().lower() if raw is not False else '0'
        try:
            return CheckLevel(text)
        except ValueError:
            msg = f"Invalid value '{raw}' for option {option}, expected one of err, warn, info, 0"
            raise ValueError(msg) from None
    if option == CompilerOption.COMBINE_SUBNETS:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        msg = f"Invalid boolean '{raw}' for option {option}"
        raise ValueError(msg)
    if option == CompilerOption.MAX_WORKERS:
        try:
            value = int(raw)
        except (TypeError, ValueError):
            msg = f"Invalid integer '{raw}' for option {option}"
            raise ValueError(msg) from None
        if value < 1:
            msg = f'Option {option} must be at least 1'
            raise ValueError(msg)
        return value
    return str(raw or '')


COMPILER_DEFAULTS = CompilerDefaults()
