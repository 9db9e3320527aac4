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

"""Device models: Router, Interface and crypto Tunnel."""

from __future__ import (
    annotations,  # This is needed since SQLAlchemy does not support forward references yet
)

import enum
import uuid
from typing import TYPE_CHECKING

import sqlalchemy
import sqlalchemy.orm

from ._base import Base
from ._types import JSONEncodedSet

if TYPE_CHECKING:
    from ._policy import Policy


class Managed(enum.StrEnum):
    Full = 'full'
    Secondary = 'secondary'
    Local = 'local'


class Router(Base):
    """Router connecting networks.  Only managed routers filter traffic."""

    __tablename__ = 'routers'

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
    managed: sqlalchemy.orm.Mapped[str | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String(16),
        nullable=True,
        default=None,
    )
    model: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='generic',
    )
    stateless: sqlalchemy.orm.Mapped[bool] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Boolean,
        default=False,
    )
    filter_only: sqlalchemy.orm.Mapped[list | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=list,
    )
    admin_ip: sqlalchemy.orm.Mapped[str | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        nullable=True,
        default=None,
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint('policy_id', 'name', name='uq_routers_policy'),
    )

    policy: sqlalchemy.orm.Mapped[Policy] = sqlalchemy.orm.relationship(
        'Policy',
        back_populates='routers',
    )
    interfaces: sqlalchemy.orm.Mapped[list[Interface]] = sqlalchemy.orm.relationship(
        'Interface',
        back_populates='router',
        cascade='all, delete-orphan',
    )


class Interface(Base):
    """Router interface attached to one network.

    ``network`` is the plain network name; ``bind_nat`` is the set of NAT
    tags active in the network on this side of the router.
    """

    __tablename__ = 'interfaces'

    id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        primary_key=True,
    )
    router_id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        sqlalchemy.ForeignKey('routers.id'),
        nullable=False,
    )
    name: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    network: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    ip: sqlalchemy.orm.Mapped[str | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        nullable=True,
        default=None,
    )
    hardware: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    bind_nat: sqlalchemy.orm.Mapped[set[str] | None] = sqlalchemy.orm.mapped_column(
        JSONEncodedSet,
        default=set,
    )
    nat: sqlalchemy.orm.Mapped[dict | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=dict,
    )
    reroute_permit: sqlalchemy.orm.Mapped[list | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=list,
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint('router_id', 'name', name='uq_interfaces_router'),
    )

    router: sqlalchemy.orm.Mapped[Router] = sqlalchemy.orm.relationship(
        'Router',
        back_populates='interfaces',
    )

    @property
    def typed_name(self) -> str:
        return f'interface:{self.router.name}.{self.name}'


class Tunnel(Base):
    """Encrypted tunnel between a hub and a spoke transport interface."""

    __tablename__ = 'tunnels'

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
    hub: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    spoke: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint('policy_id', 'name', name='uq_tunnels_policy'),
    )

    policy: sqlalchemy.orm.Mapped[Policy] = sqlalchemy.orm.relationship(
        'Policy',
        back_populates='tunnels',
    )
