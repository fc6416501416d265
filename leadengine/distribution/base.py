"""
Distribution contracts.

Plain value types passed between the eligibility filter, ranking policy,
reservation state machine and jobs. Nothing here touches the database.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Any, Optional


# ── Transition outcomes ──────────────────────────────────────────────────────

APPLIED = 'APPLIED'                            # transition committed
NOOP = 'NOOP'                                  # already in the requested state
STATE_CHANGED = 'STATE_CHANGED'                # optimistic guard failed — re-read
NOT_YOUR_RESERVATION = 'NOT_YOUR_RESERVATION'
RESERVATION_EXPIRED = 'RESERVATION_EXPIRED'
INVALID_STATE = 'INVALID_STATE'
NO_CANDIDATES = 'NO_CANDIDATES'                # lead moved to EXHAUSTED
WAITING = 'WAITING'                            # every candidate is busy — retry next tick

# Transition reasons carried on LeadStateChange / LeadEvent.type
REASON_CREATED = 'CREATED'
REASON_RESERVED = 'RESERVED'
REASON_ACCEPTED = 'ACCEPTED'
REASON_REJECTED = 'REJECTED'
REASON_EXPIRED = 'EXPIRED'
REASON_EXHAUSTED = 'EXHAUSTED'
REASON_FORCE_ASSIGNED = 'FORCE_ASSIGNED'


@dataclass(frozen=True)
class ScoreSnapshot:
    """Read-only view of one realtor's score store row."""
    realtor_id: str
    avg_rating: Optional[float] = None
    total_ratings: int = 0
    points: int = 0
    last_assigned_at: Optional[datetime] = None
    acceptance_rate: Optional[float] = None
    avg_response_minutes: Optional[float] = None


@dataclass(frozen=True)
class RealtorCandidate:
    """One ranked entry — computed per distribution pass, never persisted."""
    realtor_id: str
    score: float
    last_assigned_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'realtor_id': self.realtor_id,
            'score': round(self.score, 4),
            'last_assigned_at': self.last_assigned_at.isoformat() if self.last_assigned_at else None,
        }


@dataclass
class EligibilityResult:
    """
    Output of the eligibility filter.

    `candidates` may receive the lead right now. `deferred` are realtors who
    pass every rule except single-concurrent-reservation; they become
    candidates again once their other reservation resolves.
    """
    candidates: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return not self.candidates and not self.deferred


@dataclass
class TransitionResult:
    """Uniform output of every state machine operation."""
    outcome: str
    lead: Optional[Dict[str, Any]] = None
    message: str = ''

    @property
    def ok(self) -> bool:
        return self.outcome in (APPLIED, NOOP, NO_CANDIDATES)

    @property
    def applied(self) -> bool:
        """True when this call committed a state change."""
        return self.outcome in (APPLIED, NO_CANDIDATES)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ok': self.ok,
            'outcome': self.outcome,
            'message': self.message,
            'lead': self.lead,
        }


@dataclass
class LeadStateChange:
    """Payload handed to every onLeadStateChanged subscriber."""
    lead_id: str
    from_state: Optional[str]
    to_state: str
    reason: str
    realtor_id: Optional[str] = None
    actor_id: Optional[str] = None
    team_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    lead: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lead_id': self.lead_id,
            'from_state': self.from_state,
            'to_state': self.to_state,
            'reason': self.reason,
            'realtor_id': self.realtor_id,
            'actor_id': self.actor_id,
            'team_id': self.team_id,
            'occurred_at': self.occurred_at.isoformat() if self.occurred_at else None,
            'meta': self.meta,
        }


@dataclass
class JobResult:
    """Uniform output from every recurring job run."""
    job: str
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    lead_ids: List[str] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job': self.job,
            'processed': self.processed,
            'succeeded': self.succeeded,
            'skipped': self.skipped,
            'failed': self.failed,
            'errors': self.errors[-20:],
            'lead_ids': self.lead_ids,
            'meta': self.meta,
        }
