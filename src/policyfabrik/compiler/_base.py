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

"""Diagnostics, stage results and compiler status shared by all stages."""

from __future__ import annotations

import concurrent.futures
import dataclasses
import enum
import logging
import threading
from enum import IntEnum
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from policyfabrik.compiler._model import Model

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


class CompilerStatus(IntEnum):
    """Compiler exit status codes."""

    SUCCESS = 0
    WARNING = 1
    ERROR = 2


class Severity(enum.StrEnum):
    ERROR = 'Error'
    WARNING = 'Warning'
    INFO = 'Info'


class Category(enum.StrEnum):
    TOPOLOGY = 'topology'
    NAT = 'nat'
    REFERENCE = 'reference'
    PATH = 'path'
    OWNER = 'owner'
    UNUSED = 'unused'
    REDUNDANT = 'redundant'
    GUARD = 'guard'


@dataclasses.dataclass(frozen=True, slots=True)
class Diagnostic:
    severity: Severity
    category: Category
    message: str
    rule: str = ''

    def __str__(self) -> str:
        return f'{self.severity}: {self.message}'


class Diagnostics:
    """Thread-safe accumulator of diagnostics.

    Workers of one stage may report concurrently; every record is also
    logged at debug level.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: list[Diagnostic] = []

    def add(self, diagnostic: Diagnostic) -> None:
        with self._lock:
            self._items.append(diagnostic)
        logger.debug('[%s] %s', diagnostic.category, diagnostic)

    def error(self, category: Category, message: str, rule: str = '') -> None:
        self.add(Diagnostic(Severity.ERROR, category, message, rule))

    def warning(self, category: Category, message: str, rule: str = '') -> None:
        self.add(Diagnostic(Severity.WARNING, category, message, rule))

    def info(self, category: Category, message: str, rule: str = '') -> None:
        self.add(Diagnostic(Severity.INFO, category, message, rule))

    def report(
        self, level: str, category: Category, message: str, rule: str = ''
    ) -> None:
        """Report with a configurable check level ('err', 'warn', 'info', '0')."""
        match level:
            case 'err':
                self.error(category, message, rule)
            case 'warn':
                self.warning(category, message, rule)
            case 'info':
                self.info(category, message, rule)
            case _:
                logger.debug('Suppressed: %s', message)

    def snapshot(self) -> tuple[Diagnostic, ...]:
        with self._lock:
            return tuple(self._items)


@dataclasses.dataclass(frozen=True, slots=True)
class StageResult:
    """New model snapshot plus everything the stage reported."""

    model: Model
    diagnostics: tuple[Diagnostic, ...] = ()

    @property
    def error_count(self) -> int:
        return sum(1 for d in self.diagnostics if d.severity == Severity.ERROR)


def parallel_map(
    fn: Callable[[T], R], items: Iterable[T], max_workers: int = 1
) -> list[R]:
    """Apply *fn* to every item, on worker threads when *max_workers* > 1.

    Results keep the order of *items*.  Exceptions raised by a worker
    propagate to the caller.
    """
    items = list(items)
    if max_workers <= 1 or len(items) <= 1:
        return [fn(item) for item in items]
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(fn, items))
