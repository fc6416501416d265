"""
Eligibility filter — which realtors may receive a given lead right now.

Hard exclusions, applied in order:
  1. Team membership (lead.team_id, else property.team_id); assistants never
     own leads. Without a team, the property's capturer / owner-linked
     realtor is the whole pool.
  2. Realtors in lead.rejected_realtor_ids.
  3. Realtors holding an active reservation on a different lead, when the
     single-concurrent-reservation policy is on. These are reported as
     `deferred` rather than dropped.
  4. Realtors whose account is not ACTIVE.

Output is sorted by realtor id; ordering by merit is the ranking policy's job.
"""
import logging
from typing import List, Optional, Set

from leadengine.config import RESERVED, REALTOR_ACTIVE, NON_ASSIGNABLE_TEAM_ROLES
from leadengine.database import utcnow
from leadengine.distribution.base import EligibilityResult
from leadengine.distribution.policy import DistributionPolicy, get_policy
from leadengine.models.lead import Lead
from leadengine.models.property import Property
from leadengine.models.realtor import Realtor, TeamMember

logger = logging.getLogger('distribution.eligibility')


def resolve_team_id(session, lead: Lead) -> Optional[str]:
    """The team that owns this lead: explicit lead team first, then the property's."""
    if lead.team_id:
        return lead.team_id
    prop = session.get(Property, lead.property_id)
    return prop.team_id if prop else None


def _ownership_pool(session, lead: Lead) -> Set[str]:
    """Rule 1 — realtors structurally allowed to own the lead."""
    team_id = resolve_team_id(session, lead)
    if team_id:
        rows = session.query(TeamMember.realtor_id).filter(
            TeamMember.team_id == team_id,
            TeamMember.role.notin_(NON_ASSIGNABLE_TEAM_ROLES),
        ).all()
        return {r.realtor_id for r in rows}

    prop = session.get(Property, lead.property_id)
    if prop is None:
        logger.warning("Lead %s references missing property %s", lead.id, lead.property_id)
        return set()
    return {rid for rid in (prop.capturer_realtor_id, prop.owner_realtor_id) if rid}


def _busy_realtors(session, realtor_ids: Set[str], lead_id: str, now) -> Set[str]:
    """Rule 3 — realtors holding a live reservation on some other lead."""
    if not realtor_ids:
        return set()
    rows = session.query(Lead.reserved_realtor_id).filter(
        Lead.status == RESERVED,
        Lead.reserved_until > now,
        Lead.reserved_realtor_id.in_(realtor_ids),
        Lead.id != lead_id,
    ).all()
    return {r.reserved_realtor_id for r in rows}


def claim_realtor(session, realtor_id: str, lead_id: str, now) -> bool:
    """
    Rule 3 again, at write time. Locks the realtor row until the caller's
    transaction ends, then checks for a live reservation on another lead.

    Two writers reserving different leads for the same realtor serialize on
    that lock, and the second one sees the first one's committed row.
    SQLite ignores FOR UPDATE but already serializes writers.
    """
    session.query(Realtor.id).filter(Realtor.id == realtor_id).with_for_update().one_or_none()
    return not _busy_realtors(session, {realtor_id}, lead_id, now)


def _active_realtors(session, realtor_ids: Set[str]) -> Set[str]:
    """Rule 4 — accounts that exist and are ACTIVE."""
    if not realtor_ids:
        return set()
    rows = session.query(Realtor.id).filter(
        Realtor.id.in_(realtor_ids),
        Realtor.status == REALTOR_ACTIVE,
    ).all()
    return {r.id for r in rows}


def evaluate_eligibility(session, lead: Lead, now=None, policy: DistributionPolicy = None) -> EligibilityResult:
    """Apply all four rules and split the survivors into candidates / deferred."""
    now = now or utcnow()
    policy = policy or get_policy()

    pool = _ownership_pool(session, lead)
    pool -= set(lead.rejected_realtor_ids or [])
    pool &= _active_realtors(session, pool)

    busy = set()
    if policy.single_reservation_per_realtor:
        busy = _busy_realtors(session, pool, lead.id, now)

    return EligibilityResult(
        candidates=sorted(pool - busy),
        deferred=sorted(busy),
    )


def eligible_candidates(session, lead: Lead, now=None, policy: DistributionPolicy = None) -> List[str]:
    """Realtor ids that may be offered this lead right now."""
    return evaluate_eligibility(session, lead, now=now, policy=policy).candidates
