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

"""Policy root, groups, protocols, owners and rules."""

from __future__ import (
    annotations,  # This is needed since SQLAlchemy does not support forward references yet
)

import enum
import uuid
from typing import TYPE_CHECKING

import sqlalchemy
import sqlalchemy.orm

from ._base import Base

if TYPE_CHECKING:
    from ._addresses import Address, Area
    from ._devices import Router, Tunnel


class RuleAction(enum.StrEnum):
    Permit = 'permit'
    Deny = 'deny'


class Policy(Base):
    """Root of one loaded policy; everything else hangs below it."""

    __tablename__ = 'policies'

    id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        primary_key=True,
    )
    name: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    comment: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Text,
        default='',
    )
    source_file: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    options: sqlalchemy.orm.Mapped[dict | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=dict,
    )

    addresses: sqlalchemy.orm.Mapped[list[Address]] = sqlalchemy.orm.relationship(
        'Address',
        back_populates='policy',
    )
    areas: sqlalchemy.orm.Mapped[list[Area]] = sqlalchemy.orm.relationship(
        'Area',
        back_populates='policy',
    )
    routers: sqlalchemy.orm.Mapped[list[Router]] = sqlalchemy.orm.relationship(
        'Router',
        back_populates='policy',
    )
    tunnels: sqlalchemy.orm.Mapped[list[Tunnel]] = sqlalchemy.orm.relationship(
        'Tunnel',
        back_populates='policy',
    )
    groups: sqlalchemy.orm.Mapped[list[Group]] = sqlalchemy.orm.relationship(
        'Group',
        back_populates='policy',
    )
    protocols: sqlalchemy.orm.Mapped[list[ProtocolDef]] = sqlalchemy.orm.relationship(
        'ProtocolDef',
        back_populates='policy',
    )
    protocol_groups: sqlalchemy.orm.Mapped[list[ProtocolGroup]] = (
        sqlalchemy.orm.relationship(
            'ProtocolGroup',
            back_populates='policy',
        )
    )
    owners: sqlalchemy.orm.Mapped[list[Owner]] = sqlalchemy.orm.relationship(
        'Owner',
        back_populates='policy',
    )
    rules: sqlalchemy.orm.Mapped[list[Rule]] = sqlalchemy.orm.relationship(
        'Rule',
        back_populates='policy',
        order_by='Rule.position',
    )


class Group(Base):
    """Named list of typed object references (``network:n1``, ``group:g2``, ...)."""

    __tablename__ = 'groups'

    id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        primary_key=True,
    )
    policy_id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        sqlalchemy.ForeignKey('policies.id'),
        nullable=False,
    )
    name: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    comment: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Text,
        default='',
    )
    members: sqlalchemy.orm.Mapped[list | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=list,
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint('policy_id', 'name', name='uq_groups_policy'),
    )

    policy: sqlalchemy.orm.Mapped[Policy] = sqlalchemy.orm.relationship(
        'Policy',
        back_populates='groups',
    )


class ProtocolDef(Base):
    """Named protocol, e.g. ``protocol:https`` with spec ``tcp 443``."""

    __tablename__ = 'protocols'

    id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        primary_key=True,
    )
    policy_id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        sqlalchemy.ForeignKey('policies.id'),
        nullable=False,
    )
    name: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    spec: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint('policy_id', 'name', name='uq_protocols_policy'),
    )

    policy: sqlalchemy.orm.Mapped[Policy] = sqlalchemy.orm.relationship(
        'Policy',
        back_populates='protocols',
    )


class ProtocolGroup(Base):
    __tablename__ = 'protocol_groups'

    id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        primary_key=True,
    )
    policy_id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        sqlalchemy.ForeignKey('policies.id'),
        nullable=False,
    )
    name: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    members: sqlalchemy.orm.Mapped[list | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=list,
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint(
            'policy_id', 'name', name='uq_protocol_groups_policy'
        ),
    )

    policy: sqlalchemy.orm.Mapped[Policy] = sqlalchemy.orm.relationship(
        'Policy',
        back_populates='protocol_groups',
    )


class Owner(Base):
    __tablename__ = 'owners'

    id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        primary_key=True,
    )
    policy_id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        sqlalchemy.ForeignKey('policies.id'),
        nullable=False,
    )
    name: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    admins: sqlalchemy.orm.Mapped[list | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=list,
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint('policy_id', 'name', name='uq_owners_policy'),
    )

    policy: sqlalchemy.orm.Mapped[Policy] = sqlalchemy.orm.relationship(
        'Policy',
        back_populates='owners',
    )


class Rule(Base):
    """Abstract rule as written by the policy author.

    ``src``, ``dst`` and ``prt`` hold typed references; ``prt`` may also
    hold inline protocol specs such as ``tcp 80``.  The owner is kept as a
    plain name so that undeclared owners can be reported by the compiler
    instead of failing the load.
    """

    __tablename__ = 'rules'

    id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        primary_key=True,
    )
    policy_id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        sqlalchemy.ForeignKey('policies.id'),
        nullable=False,
    )
    name: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    comment: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Text,
        default='',
    )
    position: sqlalchemy.orm.Mapped[int] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Integer,
        default=0,
    )
    action: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String(16),
        default=RuleAction.Permit,
    )
    src: sqlalchemy.orm.Mapped[list | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=list,
    )
    dst: sqlalchemy.orm.Mapped[list | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=list,
    )
    prt: sqlalchemy.orm.Mapped[list | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=list,
    )
    owner: sqlalchemy.orm.Mapped[str | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        nullable=True,
        default=None,
    )
    bidirectional: sqlalchemy.orm.Mapped[bool] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Boolean,
        default=False,
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint('policy_id', 'name', name='uq_rules_policy'),
    )

    policy: sqlalchemy.orm.Mapped[Policy] = sqlalchemy.orm.relationship(
        'Policy',
        back_populates='rules',
    )
