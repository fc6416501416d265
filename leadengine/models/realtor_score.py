"""
RealtorScore + ScoreHistory — the realtor score store.

Mutated by the rating/activity subsystem (services/score_store.py writers);
read-only from the distribution engine's point of view.
"""
from sqlalchemy import Column, Integer, Float, Text, DateTime
from sqlalchemy.sql import func

from leadengine.database import Base, utcnow


class RealtorScore(Base):
    __tablename__ = 'realtor_scores'

    realtor_id = Column(Text, primary_key=True)
    avg_rating = Column(Float, nullable=True)
    total_ratings = Column(Integer, nullable=False, default=0)
    points = Column(Integer, nullable=False, default=0)
    leads_accepted = Column(Integer, nullable=False, default=0)
    leads_rejected = Column(Integer, nullable=False, default=0)
    leads_expired = Column(Integer, nullable=False, default=0)
    total_response_minutes = Column(Integer, nullable=False, default=0)
    avg_response_minutes = Column(Float, nullable=True)
    last_assigned_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ScoreHistory(Base):
    __tablename__ = 'score_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    realtor_id = Column(Text, nullable=False, index=True)
    action = Column(Text, nullable=False)  # RATING_5_STARS / ACCEPT_LEAD_FAST / RESERVATION_EXPIRED / ...
    points = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, server_default=func.now())
