"""
LeadEvent — timeline row for every emitted lead state change.

Recorded best-effort by the event emitter; a failed insert never blocks a
transition.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON
from sqlalchemy.sql import func

from leadengine.database import Base, utcnow


class LeadEvent(Base):
    __tablename__ = 'lead_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Text, nullable=False, index=True)
    type = Column(Text, nullable=False)  # RESERVED / ACCEPTED / REJECTED / EXPIRED / EXHAUSTED / ...
    from_status = Column(Text, nullable=True)
    to_status = Column(Text, nullable=False)
    realtor_id = Column(Text, nullable=True)
    actor_id = Column(Text, nullable=True)
    event_metadata = Column('metadata', JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, server_default=func.now())
