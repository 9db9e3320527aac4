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

"""Address models (STI) and areas."""

from __future__ import (
    annotations,  # This is needed since SQLAlchemy does not support forward references yet
)

import uuid
from typing import TYPE_CHECKING

import sqlalchemy
import sqlalchemy.orm

from ._base import Base

if TYPE_CHECKING:
    from ._policy import Policy


class Address(Base):
    """Base class for all named address blocks."""

    __tablename__ = 'addresses'

    id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        primary_key=True,
    )
    type: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String(50),
    )
    policy_id: sqlalchemy.orm.Mapped[uuid.UUID] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        sqlalchemy.ForeignKey('policies.id'),
        nullable=False,
    )
    network_id: sqlalchemy.orm.Mapped[uuid.UUID | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Uuid,
        sqlalchemy.ForeignKey('addresses.id'),
        nullable=True,
        default=None,
    )
    name: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    comment: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.Text,
        default='',
    )
    ip: sqlalchemy.orm.Mapped[str | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        nullable=True,
        default=None,
    )
    nat: sqlalchemy.orm.Mapped[dict | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=dict,
    )
    link: sqlalchemy.orm.Mapped[str | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        nullable=True,
        default=None,
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint(
            'policy_id', 'type', 'name', name='uq_addresses_policy'
        ),
    )

    __mapper_args__ = {
        'polymorphic_on': 'type',
        'polymorphic_identity': 'Address',
    }

    PREFIX = 'address'

    policy: sqlalchemy.orm.Mapped[Policy] = sqlalchemy.orm.relationship(
        'Policy',
        back_populates='addresses',
    )

    @property
    def typed_name(self) -> str:
        return f'{self.PREFIX}:{self.name}'


class Network(Address):
    """IPv4 network.  ``nat`` maps a NAT tag to ``{ip, dynamic, hidden}``."""

    __mapper_args__ = {'polymorphic_identity': 'Network'}

    PREFIX = 'network'

    hosts: sqlalchemy.orm.Mapped[list[Host]] = sqlalchemy.orm.relationship(
        'Host',
        back_populates='network',
    )


class Host(Address):
    """Single address or address range inside a network.

    ``ip`` holds either one address or ``first-last``.  ``nat`` maps a
    NAT tag to the static address used for that tag.
    """

    __mapper_args__ = {'polymorphic_identity': 'Host'}

    PREFIX = 'host'

    network: sqlalchemy.orm.Mapped[Network | None] = sqlalchemy.orm.relationship(
        'Network',
        back_populates='hosts',
        remote_side='Address.id',
    )


class Aggregate(Address):
    """``any:`` object: an address block inside the zone of ``link``."""

    __mapper_args__ = {'polymorphic_identity': 'Aggregate'}

    PREFIX = 'any'


class Area(Base):
    """Set of zones flood-filled from ``anchor`` up to the ``border`` interfaces."""

    __tablename__ = 'areas'

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
    anchor: sqlalchemy.orm.Mapped[str] = sqlalchemy.orm.mapped_column(
        sqlalchemy.String,
        default='',
    )
    border: sqlalchemy.orm.Mapped[list | None] = sqlalchemy.orm.mapped_column(
        sqlalchemy.JSON,
        default=list,
    )

    __table_args__ = (
        sqlalchemy.UniqueConstraint('policy_id', 'name', name='uq_areas_policy'),
    )

    policy: sqlalchemy.orm.Mapped[Policy] = sqlalchemy.orm.relationship(
        'Policy',
        back_populates='areas',
    )
