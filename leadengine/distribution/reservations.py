"""
Reservation state machine — owns the lifecycle of a lead's assignment.

    UNASSIGNED ──reserve──▶ RESERVED ──accept──▶ ACCEPTED
        ▲  │                  │
        │  │                  ├──reject──▶ UNASSIGNED (realtor added to rejected set)
        │  │                  └──expire──▶ UNASSIGNED (realtor added to rejected set)
        │  └──no candidates──▶ EXHAUSTED ──force_assign──▶ ACCEPTED
        └──────────────────── force_assign (UNASSIGNED) ──▶ ACCEPTED

Every transition is one conditional UPDATE keyed on (id, version, status).
If the row moved since we read it, the UPDATE matches nothing and the
transition reports STATE_CHANGED instead of overwriting. No locks are held
across the read and the write. A reservation additionally locks the chosen
realtor's row after its UPDATE, so two leads can never both commit a live
reservation for one realtor; reserve() is the only call that retries, once.

Each applied transition commits, then emits exactly one LeadStateChange.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import update

from leadengine.config import (
    UNASSIGNED, RESERVED, ACCEPTED, EXHAUSTED, RESERVATION_STATES,
    MANAGEMENT_ROLES, TEAM_MANAGEMENT_ROLES,
)
from leadengine.database import utcnow
from leadengine.distribution.base import (
    TransitionResult, LeadStateChange,
    APPLIED, NOOP, STATE_CHANGED, NOT_YOUR_RESERVATION, RESERVATION_EXPIRED,
    INVALID_STATE, NO_CANDIDATES, WAITING,
    REASON_CREATED, REASON_RESERVED, REASON_ACCEPTED, REASON_REJECTED,
    REASON_EXPIRED, REASON_EXHAUSTED, REASON_FORCE_ASSIGNED,
)
from leadengine.distribution.eligibility import evaluate_eligibility, resolve_team_id, claim_realtor
from leadengine.distribution.errors import LeadNotFoundError, LeadInvariantViolation, PermissionDenied
from leadengine.distribution.events import EventEmitter
from leadengine.distribution.policy import DistributionPolicy, get_policy
from leadengine.distribution.ranking import rank
from leadengine.models.assignment_log import LeadAssignmentLog
from leadengine.models.lead import Lead
from leadengine.models.realtor import Realtor, Team, TeamMember
from leadengine.services.score_store import RealtorScoreStore

logger = logging.getLogger('distribution.reservations')

_CLEARED_RESERVATION = {
    'reserved_realtor_id': None,
    'reserved_at': None,
    'reserved_until': None,
}


def compare_and_swap(session, lead_id: str, expected_version: int, expected_status: str,
                     values: dict, bump_version: bool = True) -> bool:
    """
    Apply `values` only if the lead still has the expected version and status.

    Returns False when another writer got there first. Does not commit.
    """
    new_values = dict(values)
    new_values['updated_at'] = utcnow()
    if bump_version:
        new_values['version'] = expected_version + 1
    stmt = (
        update(Lead)
        .where(
            Lead.id == lead_id,
            Lead.version == expected_version,
            Lead.status == expected_status,
        )
        .values(**new_values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def check_invariants(lead: Lead) -> None:
    """Raise LeadInvariantViolation if the persisted reservation fields contradict each other."""
    status = lead.status
    rejected = set(lead.rejected_realtor_ids or [])

    if status not in RESERVATION_STATES:
        raise LeadInvariantViolation(lead.id, f"unknown status {status!r}")

    if status == RESERVED:
        if not lead.reserved_realtor_id or lead.reserved_until is None:
            raise LeadInvariantViolation(lead.id, "RESERVED without a holder or expiry")
        if lead.assigned_realtor_id:
            raise LeadInvariantViolation(
                lead.id, f"reserved to {lead.reserved_realtor_id} while assigned to {lead.assigned_realtor_id}")
        if lead.reserved_realtor_id in rejected:
            raise LeadInvariantViolation(
                lead.id, f"reserved to {lead.reserved_realtor_id}, who already rejected it")
    elif status == ACCEPTED:
        if not lead.assigned_realtor_id:
            raise LeadInvariantViolation(lead.id, "ACCEPTED without an assigned realtor")
        if lead.reserved_realtor_id:
            raise LeadInvariantViolation(
                lead.id, f"assigned to {lead.assigned_realtor_id} while reserved to {lead.reserved_realtor_id}")
    else:
        if lead.reserved_realtor_id or lead.reserved_until is not None:
            raise LeadInvariantViolation(lead.id, f"{status} lead still carries a reservation")
        if lead.assigned_realtor_id:
            raise LeadInvariantViolation(lead.id, f"{status} lead has assigned realtor {lead.assigned_realtor_id}")


class ReservationStateMachine:
    """
    Session-scoped state machine.

    Usage:
        machine = ReservationStateMachine(session, emitter=build_default_emitter())
        result = machine.accept(lead_id, realtor_id)
        if not result.ok: ...  # result.outcome says why
    """

    def __init__(self, session, emitter: EventEmitter = None, policy: DistributionPolicy = None,
                 score_store: RealtorScoreStore = None):
        self.session = session
        self.emitter = emitter or EventEmitter()
        self.policy = policy or get_policy()
        self.score_store = score_store or RealtorScoreStore(session, self.policy)

    # ── Plumbing ──────────────────────────────────────────────────────

    def load(self, lead_id: str) -> Lead:
        """Fresh read of the lead row (bypasses the identity map)."""
        lead = self.session.get(Lead, lead_id, populate_existing=True)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return lead

    def _transition(self, lead: Lead, to_state: str, reason: str, values: dict, now,
                    realtor_id: str = None, actor_id: str = None, log_entry: LeadAssignmentLog = None,
                    meta: dict = None, outcome: str = APPLIED, message: str = '',
                    exclusive_realtor: str = None) -> TransitionResult:
        """
        CAS the lead, append the audit row, commit, then emit.

        With exclusive_realtor set, the commit only happens if that realtor
        holds no other live reservation once the write is in place.
        """
        from_state = lead.status
        lead_id = lead.id
        team_id = resolve_team_id(self.session, lead)

        values = dict(values)
        values['status'] = to_state
        if not compare_and_swap(self.session, lead_id, lead.version, from_state, values):
            self.session.rollback()
            logger.info("Lead %s: %s → %s lost the race, state changed underneath", lead_id, from_state, to_state)
            return TransitionResult(
                STATE_CHANGED, lead=self._fresh_dict(lead_id),
                message='Lead state changed, please re-read',
            )

        if exclusive_realtor and not claim_realtor(self.session, exclusive_realtor, lead_id, now):
            self.session.rollback()
            logger.info("Lead %s: %s was reserved for another lead first", lead_id, exclusive_realtor,
                        extra={'lead_id': lead_id, 'realtor_id': exclusive_realtor})
            return TransitionResult(
                STATE_CHANGED, lead=self._fresh_dict(lead_id),
                message=f'{exclusive_realtor} was reserved for another lead',
            )

        if log_entry is not None:
            log_entry.team_id = team_id
            self.session.add(log_entry)
        self.session.commit()

        fresh = self.load(lead_id)
        logger.info("Lead %s: %s → %s (%s)", lead_id, from_state, to_state, reason,
                    extra={'lead_id': lead_id, 'realtor_id': realtor_id})
        self.emitter.emit(LeadStateChange(
            lead_id=lead_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            realtor_id=realtor_id,
            actor_id=actor_id,
            team_id=team_id,
            occurred_at=now,
            lead=fresh.to_dict(),
            meta=meta or {},
        ))
        return TransitionResult(outcome, lead=fresh.to_dict(), message=message)

    def _fresh_dict(self, lead_id: str) -> Optional[dict]:
        lead = self.session.get(Lead, lead_id, populate_existing=True)
        return lead.to_dict() if lead else None

    # ── Registration ──────────────────────────────────────────────────

    def register(self, lead_id: str, now=None) -> TransitionResult:
        """New lead enters the pool as UNASSIGNED. Idempotent: only version 0 registers."""
        now = now or utcnow()
        lead = self.load(lead_id)
        check_invariants(lead)
        if lead.version != 0 or lead.status != UNASSIGNED:
            return TransitionResult(NOOP, lead=lead.to_dict(), message='Lead already registered')

        return self._transition(
            lead, UNASSIGNED, REASON_CREATED,
            {'rejected_realtor_ids': list(lead.rejected_realtor_ids or [])},
            now, meta={'property_id': lead.property_id},
        )

    # ── UNASSIGNED → RESERVED / EXHAUSTED ─────────────────────────────

    def reserve(self, lead_id: str, now=None) -> TransitionResult:
        """
        Offer the lead to the best eligible realtor, or mark it exhausted.

        A lead that is still RESERVED returns NOOP even when its TTL has
        passed. Only expire() (the sweep) releases a reservation; the next
        distribute run then offers the lead again.

        When the write loses to a change that leaves the lead UNASSIGNED,
        usually the chosen realtor being reserved for another lead first,
        the decision is made once more on fresh state.
        """
        now = now or utcnow()
        result = self._reserve_once(lead_id, now)
        if result.outcome == STATE_CHANGED and (result.lead or {}).get('status') == UNASSIGNED:
            result = self._reserve_once(lead_id, now)
        return result

    def _reserve_once(self, lead_id: str, now) -> TransitionResult:
        lead = self.load(lead_id)
        check_invariants(lead)

        if lead.status == RESERVED:
            return TransitionResult(NOOP, lead=lead.to_dict(), message='Lead already has a reservation')
        if lead.status != UNASSIGNED or lead.is_terminal:
            return TransitionResult(INVALID_STATE, lead=lead.to_dict(), message=f'Lead is {lead.status}')

        eligibility = evaluate_eligibility(self.session, lead, now=now, policy=self.policy)

        if eligibility.exhausted:
            return self._transition(
                lead, EXHAUSTED, REASON_EXHAUSTED,
                {'terminal_at': now, 'candidate_ranking': [], 'ranked_at': now},
                now, outcome=NO_CANDIDATES, message='No eligible realtor left',
                meta={'rejected_count': len(lead.rejected_realtor_ids or [])},
            )
        if not eligibility.candidates:
            logger.info("Lead %s: all %d candidates busy, waiting", lead.id, len(eligibility.deferred))
            return TransitionResult(WAITING, lead=lead.to_dict(), message='All candidates are busy')

        scores = self.score_store.get_many(eligibility.candidates)
        ranked = rank(eligibility.candidates, scores, self.policy, prior_mean=self.score_store.global_prior())
        top = ranked[0]

        reserved_until = now + timedelta(minutes=self.policy.reservation_ttl_minutes)
        log_entry = None
        rejected = lead.rejected_realtor_ids or []
        if rejected:
            log_entry = LeadAssignmentLog(
                lead_id=lead.id,
                from_realtor_id=rejected[-1],
                to_realtor_id=top.realtor_id,
                changed_by_user_id=None,
                reason='REROUTED',
            )

        return self._transition(
            lead, RESERVED, REASON_RESERVED,
            {
                'reserved_realtor_id': top.realtor_id,
                'reserved_at': now,
                'reserved_until': reserved_until,
                'candidate_ranking': [c.to_dict() for c in ranked],
                'ranked_at': now,
            },
            now, realtor_id=top.realtor_id, log_entry=log_entry,
            exclusive_realtor=top.realtor_id if self.policy.single_reservation_per_realtor else None,
            meta={
                'score': round(top.score, 4),
                'reserved_until': reserved_until.isoformat(),
                'candidates': len(ranked),
            },
        )

    # ── RESERVED → ACCEPTED / UNASSIGNED ──────────────────────────────

    def _expire(self, lead: Lead, now, reason: str = REASON_EXPIRED) -> TransitionResult:
        holder = lead.reserved_realtor_id
        values = dict(_CLEARED_RESERVATION)
        values['rejected_realtor_ids'] = list(lead.rejected_realtor_ids or []) + [holder]
        return self._transition(
            lead, UNASSIGNED, reason, values, now, realtor_id=holder,
            meta={'reserved_until': lead.reserved_until.isoformat() if lead.reserved_until else None},
        )

    def _caller_holds(self, lead: Lead, realtor_id: str) -> bool:
        return lead.status == RESERVED and lead.reserved_realtor_id == realtor_id

    def accept(self, lead_id: str, realtor_id: str, now=None) -> TransitionResult:
        """Realtor takes the lead they hold."""
        now = now or utcnow()
        lead = self.load(lead_id)
        check_invariants(lead)

        if lead.status == ACCEPTED and lead.assigned_realtor_id == realtor_id:
            return TransitionResult(NOOP, lead=lead.to_dict(), message='Lead already accepted')
        if not self._caller_holds(lead, realtor_id):
            return TransitionResult(NOT_YOUR_RESERVATION, lead=lead.to_dict(), message='Not your reservation')

        if lead.reservation_lapsed(now):
            expired = self._expire(lead, now)
            if expired.outcome == STATE_CHANGED:
                return expired
            return TransitionResult(RESERVATION_EXPIRED, lead=expired.lead, message='Reservation expired')

        started = lead.reserved_at or lead.created_at or now
        response_minutes = max(0, int((now - started).total_seconds() // 60))
        values = dict(_CLEARED_RESERVATION)
        values.update({
            'assigned_realtor_id': realtor_id,
            'responded_at': now,
            'terminal_at': now,
        })
        return self._transition(
            lead, ACCEPTED, REASON_ACCEPTED, values, now,
            realtor_id=realtor_id, actor_id=realtor_id,
            log_entry=LeadAssignmentLog(
                lead_id=lead.id,
                from_realtor_id=lead.assigned_realtor_id,
                to_realtor_id=realtor_id,
                changed_by_user_id=realtor_id,
                reason='ACCEPTED',
            ),
            meta={'response_minutes': response_minutes},
        )

    def reject(self, lead_id: str, realtor_id: str, now=None) -> TransitionResult:
        """Realtor declines the lead they hold. No score penalty."""
        now = now or utcnow()
        lead = self.load(lead_id)
        check_invariants(lead)

        if not self._caller_holds(lead, realtor_id):
            return TransitionResult(NOT_YOUR_RESERVATION, lead=lead.to_dict(), message='Not your reservation')

        if lead.reservation_lapsed(now):
            expired = self._expire(lead, now)
            if expired.outcome == STATE_CHANGED:
                return expired
            return TransitionResult(RESERVATION_EXPIRED, lead=expired.lead, message='Reservation expired')

        return self._expire(lead, now, reason=REASON_REJECTED)

    def expire(self, lead_id: str, now=None) -> TransitionResult:
        """Release a lapsed reservation. Called only by the expiry sweep."""
        now = now or utcnow()
        lead = self.load(lead_id)
        check_invariants(lead)

        if lead.status != RESERVED:
            return TransitionResult(NOOP, lead=lead.to_dict(), message=f'Lead is {lead.status}')
        if not lead.reservation_lapsed(now):
            return TransitionResult(INVALID_STATE, lead=lead.to_dict(), message='Reservation still active')
        return self._expire(lead, now)

    # ── Management override ───────────────────────────────────────────

    def _has_authority(self, lead: Lead, actor_id: str, actor_role: str = None) -> bool:
        if actor_role and actor_role.upper() in MANAGEMENT_ROLES:
            return True
        team_id = resolve_team_id(self.session, lead)
        if not team_id:
            return False
        team = self.session.get(Team, team_id)
        if team is not None and team.owner_id == actor_id:
            return True
        membership = self.session.query(TeamMember).filter_by(team_id=team_id, realtor_id=actor_id).first()
        return membership is not None and membership.role in TEAM_MANAGEMENT_ROLES

    def force_assign(self, lead_id: str, realtor_id: str, actor_id: str, actor_role: str = None,
                     now=None) -> TransitionResult:
        """Manager hands an UNASSIGNED or EXHAUSTED lead straight to a realtor."""
        now = now or utcnow()
        lead = self.load(lead_id)
        check_invariants(lead)

        if not self._has_authority(lead, actor_id, actor_role):
            raise PermissionDenied(actor_id, lead_id)
        if self.session.get(Realtor, realtor_id) is None:
            raise ValueError(f"Unknown realtor {realtor_id}")

        if lead.status == ACCEPTED and lead.assigned_realtor_id == realtor_id:
            return TransitionResult(NOOP, lead=lead.to_dict(), message='Lead already assigned to this realtor')
        if lead.status not in (UNASSIGNED, EXHAUSTED):
            return TransitionResult(INVALID_STATE, lead=lead.to_dict(), message=f'Lead is {lead.status}')

        return self._transition(
            lead, ACCEPTED, REASON_FORCE_ASSIGNED,
            {'assigned_realtor_id': realtor_id, 'terminal_at': now},
            now, realtor_id=realtor_id, actor_id=actor_id,
            log_entry=LeadAssignmentLog(
                lead_id=lead.id,
                from_realtor_id=lead.assigned_realtor_id,
                to_realtor_id=realtor_id,
                changed_by_user_id=actor_id,
                reason='FORCE_ASSIGNED',
            ),
            meta={'previous_status': lead.status},
        )

    # ── Derived ranking cache ─────────────────────────────────────────

    def refresh_ranking(self, lead_id: str, now=None) -> TransitionResult:
        """Recompute candidate order for a waiting lead without reserving it."""
        now = now or utcnow()
        lead = self.load(lead_id)
        check_invariants(lead)

        if lead.status != UNASSIGNED or lead.is_terminal:
            return TransitionResult(NOOP, lead=lead.to_dict(), message=f'Lead is {lead.status}')

        eligibility = evaluate_eligibility(self.session, lead, now=now, policy=self.policy)
        pool = eligibility.candidates + eligibility.deferred
        scores = self.score_store.get_many(pool)
        ranked = rank(pool, scores, self.policy, prior_mean=self.score_store.global_prior())

        swapped = compare_and_swap(
            self.session, lead.id, lead.version, UNASSIGNED,
            {'candidate_ranking': [c.to_dict() for c in ranked], 'ranked_at': now},
            bump_version=False,
        )
        if not swapped:
            self.session.rollback()
            return TransitionResult(STATE_CHANGED, lead=self._fresh_dict(lead.id), message='Lead state changed')
        self.session.commit()
        return TransitionResult(APPLIED, lead=self.load(lead.id).to_dict())
