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

"""Jinja2 template loader and renderer for device configurations.

Templates are looked up in ``~/policyfabrik/templates/<platform>/``
first, then in the package's ``resources/templates/<platform>/``.
Address blocks are rendered with the ``address`` filter.
"""

from __future__ import annotations

import importlib.resources
import ipaddress
from pathlib import Path

import jinja2


def _get_package_resources_dir() -> Path:
    ref = importlib.resources.files('policyfabrik') / 'resources'
    return Path(str(ref))


def format_address(network: ipaddress.IPv4Network | None) -> str:
    """``any`` for the full range and missing sides, ``host A`` for single addresses."""
    if network is None or network.prefixlen == 0:
        return 'any'
    if network.prefixlen == 32:
        return f'host {network.network_address}'
    return str(network)


class Jinja2Template:
    """Load and render a device template of one platform."""

    def __init__(self, platform: str, template_name: str) -> None:
        search_paths: list[str] = []

        user_dir = Path.home() / 'policyfabrik' / 'templates' / platform
        if user_dir.is_dir():
            search_paths.append(str(user_dir))
        search_paths.append(str(_get_package_resources_dir() / 'templates' / platform))

        self._env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(search_paths),
            undefined=jinja2.StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._env.filters['address'] = format_address
        self._template = self._env.get_template(template_name)

    def render(self, context: dict) -> str:
        return self._template.render(context)
