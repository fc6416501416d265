"""
LeadAssignmentLog — append-only audit trail of lead ownership changes.

Written once per assignment-bearing transition; never updated or deleted by
the engine (cleanup leaves this table alone).
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey
from sqlalchemy.sql import func

from leadengine.database import Base, utcnow


class LeadAssignmentLog(Base):
    __tablename__ = 'lead_assignment_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Text, ForeignKey('leads.id'), nullable=False, index=True)
    from_realtor_id = Column(Text, nullable=True)
    to_realtor_id = Column(Text, nullable=False)
    changed_by_user_id = Column(Text, nullable=True)  # None = system (re-route)
    team_id = Column(Text, nullable=True)
    reason = Column(Text, nullable=False)  # ACCEPTED / REROUTED / FORCE_ASSIGNED
    created_at = Column(DateTime, default=utcnow, server_default=func.now())
