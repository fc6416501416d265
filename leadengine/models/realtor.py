"""
Realtor, Team and TeamMember — read models for eligibility.

Owned by the account/agency CRUD; the distribution engine only reads them.
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import validates
from sqlalchemy.sql import func

from leadengine.config import REALTOR_ACTIVE, REALTOR_STATUSES, TEAM_ROLES
from leadengine.database import Base


class Realtor(Base):
    __tablename__ = 'realtors'

    id = Column(Text, primary_key=True)
    name = Column(Text, default='')
    email = Column(Text, default='')
    status = Column(Text, nullable=False, default=REALTOR_ACTIVE)  # ACTIVE / SUSPENDED / DISABLED
    created_at = Column(DateTime, server_default=func.now())

    @validates('status')
    def _validate_status(self, key, value):
        if value not in REALTOR_STATUSES:
            raise ValueError(f"Unknown realtor status {value!r}")
        return value


class Team(Base):
    __tablename__ = 'teams'

    id = Column(Text, primary_key=True)
    name = Column(Text, default='')
    owner_id = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class TeamMember(Base):
    __tablename__ = 'team_members'

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Text, ForeignKey('teams.id'), nullable=False, index=True)
    realtor_id = Column(Text, ForeignKey('realtors.id'), nullable=False, index=True)
    role = Column(Text, nullable=False, default='REALTOR')  # OWNER / MANAGER / REALTOR / ASSISTANT
    joined_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint('team_id', 'realtor_id', name='uq_team_member'),
    )

    @validates('role')
    def _validate_role(self, key, value):
        if value not in TEAM_ROLES:
            raise ValueError(f"Unknown team role {value!r}")
        return value
