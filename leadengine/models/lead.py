"""
Lead model — one row per client inquiry about one property.

The reservation fields are owned by the reservation state machine. They are
only ever written through compare-and-swap updates keyed on `version`
(see distribution/reservations.py), never by plain attribute assignment.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON, Index, CheckConstraint
from sqlalchemy.orm import validates

from leadengine.config import (
    UNASSIGNED, RESERVED, ACCEPTED, EXHAUSTED, PIPELINE_STAGES, TERMINAL_PIPELINE_STAGES,
)
from leadengine.database import Base, utcnow


class Lead(Base):
    __tablename__ = 'leads'

    id = Column(Text, primary_key=True)
    property_id = Column(Text, nullable=False)
    contact_id = Column(Text, nullable=True)
    team_id = Column(Text, nullable=True)  # explicit team override; falls back to property.team_id
    pipeline_stage = Column(Text, nullable=False, default='NEW')
    status = Column(Text, nullable=False, default=UNASSIGNED)
    responded_at = Column(DateTime, nullable=True)

    # Reservation
    reserved_realtor_id = Column(Text, nullable=True)
    reserved_at = Column(DateTime, nullable=True)
    reserved_until = Column(DateTime, nullable=True)
    rejected_realtor_ids = Column(JSON, nullable=False, default=list)
    assigned_realtor_id = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=0)

    # Derived — refreshed by the ranking recalculation job, pruned by cleanup
    candidate_ranking = Column(JSON, nullable=True)
    ranked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    terminal_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_leads_status_reserved_until', 'status', 'reserved_until'),
        Index('ix_leads_reserved_realtor_id', 'reserved_realtor_id'),
        CheckConstraint(
            "pipeline_stage IN (" + ', '.join(f"'{s}'" for s in PIPELINE_STAGES) + ")",
            name='ck_leads_pipeline_stage',
        ),
    )

    @validates('pipeline_stage')
    def _validate_pipeline_stage(self, key, value):
        if value not in PIPELINE_STAGES:
            raise ValueError(f"Unknown pipeline stage {value!r}")
        return value

    def reservation_active(self, now) -> bool:
        """True while a realtor holds this lead and the TTL has not passed."""
        return (
            self.status == RESERVED
            and self.reserved_until is not None
            and self.reserved_until > now
        )

    def reservation_lapsed(self, now) -> bool:
        """Still RESERVED on disk but logically expired (sweep has not run yet)."""
        return (
            self.status == RESERVED
            and self.reserved_until is not None
            and self.reserved_until <= now
        )

    @property
    def is_terminal(self) -> bool:
        return (
            self.status in (ACCEPTED, EXHAUSTED)
            or self.pipeline_stage in TERMINAL_PIPELINE_STAGES
        )

    def to_dict(self):
        return {
            'id': self.id,
            'property_id': self.property_id,
            'contact_id': self.contact_id,
            'team_id': self.team_id,
            'pipeline_stage': self.pipeline_stage,
            'status': self.status,
            'reserved_realtor_id': self.reserved_realtor_id,
            'reserved_until': self.reserved_until.isoformat() if self.reserved_until else None,
            'rejected_realtor_ids': list(self.rejected_realtor_ids or []),
            'assigned_realtor_id': self.assigned_realtor_id,
            'responded_at': self.responded_at.isoformat() if self.responded_at else None,
            'candidate_ranking': self.candidate_ranking,
            'version': self.version,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
