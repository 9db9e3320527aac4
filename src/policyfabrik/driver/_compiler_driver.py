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

"""CompilerDriver: loads the policy, runs the stage pipeline and writes
one configuration file per managed device.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import policyfabrik
from policyfabrik.compiler._base import CompilerStatus, Severity
from policyfabrik.compiler._loader import load_model
from policyfabrik.compiler._pipeline import Pipeline
from policyfabrik.driver._jinja2_template import Jinja2Template

if TYPE_CHECKING:
    from policyfabrik.compiler._model import Model, PathRule
    from policyfabrik.compiler._pipeline import PipelineResult
    from policyfabrik.core._database import DatabaseManager

logger = logging.getLogger(__name__)

DEVICE_TEMPLATE = 'device.j2'


class CompilerDriver:
    """Orchestrates the full compilation process.

    Handles:
    - Reading the object database into the compiler model
    - Running the stage pipeline
    - Rendering one output file per managed device (PrintCode)
    - Appending raw configuration fragments (CopyRaw)
    """

    def __init__(self, db: DatabaseManager) -> None:
        self.db: DatabaseManager = db

        # Options
        self.wdir: str = ''
        self.platform: str = 'generic'
        self.debug_rule: str | None = None
        self.overrides: dict[str, str] = {}

        # Output
        self.file_names: dict[str, str] = {}
        self.result: PipelineResult | None = None
        self.all_errors: list[str] = []
        self.all_warnings: list[str] = []

    def run(self) -> CompilerStatus:
        """Compile the loaded policy; emit code only when no error was found."""
        with self.db.session() as session:
            model = load_model(session, self.overrides)

        self.result = Pipeline(debug_rule=self.debug_rule).run(model)
        for diagnostic in self.result.diagnostics:
            if diagnostic.severity == Severity.ERROR:
                self.all_errors.append(str(diagnostic))
            elif diagnostic.severity == Severity.WARNING:
                self.all_warnings.append(str(diagnostic))

        if self.result.error_count:
            logger.info('Not writing output: %d errors', self.result.error_count)
            return CompilerStatus.ERROR
        if self.wdir:
            self.print_code(self.result.model)
            self.copy_raw(self.result.model)
        return self.result.status

    # -- PrintCode --

    def print_code(self, model: Model) -> None:
        out_dir = Path(self.wdir)
        out_dir.mkdir(parents=True, exist_ok=True)
        for r in sorted(model.device_rules, key=lambda r: model.routers[r].name):
            name = model.routers[r].name
            path = out_dir / name
            path.write_text(self.render_device(model, r), encoding='utf-8')
            self.file_names[name] = str(path)
        logger.info('Wrote %d device files to %s', len(self.file_names), out_dir)

    def render_device(self, model: Model, router: int) -> str:
        device = model.routers[router]
        template = Jinja2Template(self.platform, DEVICE_TEMPLATE)
        return template.render(
            {
                'version': policyfabrik.__version__,
                'policy': model.name,
                'device': {
                    'name': device.name,
                    'model': device.model,
                    'managed': device.managed,
                    'stateless': device.stateless,
                    'admin_ip': model.admin_ips.get(router),
                },
                'interfaces': [
                    {
                        'name': model.interfaces[i].name,
                        'hardware': model.interfaces[i].hardware,
                        'ip': model.interfaces[i].ip,
                        'tunnel': model.interfaces[i].tunnel,
                    }
                    for i in device.interfaces
                ],
                'routes': self._routes(model, router),
                'acls': self._acls(model, router),
            }
        )

    def _routes(self, model: Model, router: int) -> list[dict]:
        result = []
        for route in model.routes.get(router, ()):
            out = model.interfaces[route.out_intf]
            via = None
            if route.next_hop is not None:
                via = next(
                    (
                        model.interfaces[i].ip
                        for i in model.routers[route.next_hop].interfaces
                        if model.interfaces[i].zone == out.zone
                        and model.interfaces[i].ip is not None
                    ),
                    None,
                )
            network = model.subnets[route.network]
            result.append(
                {
                    'network': model.address_in(route.network, out.nat_domain)
                    or network.ip,
                    'interface': out.hardware,
                    'via': via,
                }
            )
        return result

    def _acls(self, model: Model, router: int) -> list[dict]:
        acls: dict[tuple[int, str], list[dict]] = {}
        for pr in model.device_rules.get(router, ()):
            if pr.in_intf is not None:
                key = (pr.in_intf, 'in')
            else:
                key = (pr.out_intf, 'out')
            acls.setdefault(key, []).append(self._rule_line(model, pr, key[0]))
        result = []
        for (intf, direction), lines in sorted(
            acls.items(), key=lambda kv: (model.interfaces[kv[0][0]].name, kv[0][1])
        ):
            result.append(
                {
                    'name': f'{model.interfaces[intf].hardware}_{direction}',
                    'interface': model.interfaces[intf].name,
                    'lines': lines,
                }
            )
        return result

    def _rule_line(self, model: Model, pr: PathRule, intf: int) -> dict:
        domain = model.interfaces[intf].nat_domain
        return {
            'action': pr.action,
            'prt': str(pr.prt),
            'src': None if pr.src is None else model.address_in(pr.src, domain),
            'dst': model.address_in(pr.dst, domain),
            'encrypted': pr.crypto == 'encrypted',
        }

    # -- CopyRaw --

    def copy_raw(self, model: Model) -> None:
        """Append ``<policy dir>/raw/<device>`` to the generated file of that device."""
        raw_dir = Path(model.source_dir) / 'raw'
        if not raw_dir.is_dir():
            return
        for raw in sorted(raw_dir.iterdir()):
            if raw.name.startswith('.') or not raw.is_file():
                continue
            target = self.file_names.get(raw.name)
            if target is None:
                msg = f'Found unused raw file {raw}'
                logger.warning(msg)
                self.all_warnings.append(f'Warning: {msg}')
                continue
            with Path(target).open('a', encoding='utf-8') as f:
                f.write(raw.read_text(encoding='utf-8'))
            logger.info('Appended %s', raw)
