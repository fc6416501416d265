"""
Distribution service — the inbound surface of the engine.

Route handlers and the CRM side call these functions; each opens its own
session, drives the reservation state machine and returns a TransitionResult.
Reservation of new leads happens asynchronously: on_lead_created registers
the lead and enqueues a targeted distribution run on RQ.
"""
import logging
from typing import List, Optional

from sqlalchemy import and_, or_

from leadengine.config import RQ_QUEUE_NAME, RESERVED, ACCEPTED, EXHAUSTED
from leadengine.database import get_session, utcnow
from leadengine.distribution.base import TransitionResult
from leadengine.distribution.errors import LeadNotFoundError
from leadengine.distribution.events import build_default_emitter
from leadengine.distribution.reservations import ReservationStateMachine
from leadengine.models.lead import Lead
from leadengine.models.property import Property

logger = logging.getLogger('distribution.service')


# ── Lazy RQ queue (avoids import-time Redis connection in tests) ──────────

_queue = None

def _get_queue():
    global _queue
    if _queue is None:
        from leadengine.extensions import redis_client
        from rq import Queue
        _queue = Queue(RQ_QUEUE_NAME, connection=redis_client)
    return _queue


def _machine(session) -> ReservationStateMachine:
    return ReservationStateMachine(session, emitter=build_default_emitter())


# ── Public API ────────────────────────────────────────────────────────────────

def enqueue_distribution(lead_ids: List[str] = None):
    """Schedule a distribution run, optionally restricted to specific leads."""
    from leadengine.distribution.jobs import run_distribute_job
    job = _get_queue().enqueue(run_distribute_job, lead_ids, job_timeout=600)
    logger.info("Enqueued distribution for %s", lead_ids or 'all waiting leads')
    return job


def on_lead_created(lead_id: str, now=None) -> TransitionResult:
    """
    A new lead row exists: register it as UNASSIGNED and ask for distribution.

    The enqueue is best-effort; if Redis is down the periodic distribute job
    picks the lead up on its next tick.
    """
    session = get_session()
    try:
        result = _machine(session).register(lead_id, now=now)
    finally:
        session.close()

    try:
        enqueue_distribution([lead_id])
    except Exception as e:
        logger.warning("Could not enqueue distribution for lead %s: %s", lead_id, e)
    return result


def accept_reservation(lead_id: str, realtor_id: str, now=None) -> TransitionResult:
    session = get_session()
    try:
        return _machine(session).accept(lead_id, realtor_id, now=now)
    finally:
        session.close()


def reject_reservation(lead_id: str, realtor_id: str, now=None) -> TransitionResult:
    """Decline, then enqueue re-routing so the next candidate is offered promptly."""
    session = get_session()
    try:
        result = _machine(session).reject(lead_id, realtor_id, now=now)
    finally:
        session.close()

    if result.applied:
        try:
            enqueue_distribution([lead_id])
        except Exception as e:
            logger.warning("Could not enqueue re-routing for lead %s: %s", lead_id, e)
    return result


def force_assign(lead_id: str, realtor_id: str, actor_id: str, actor_role: str = None,
                 now=None) -> TransitionResult:
    session = get_session()
    try:
        return _machine(session).force_assign(
            lead_id, realtor_id, actor_id, actor_role=actor_role, now=now,
        )
    finally:
        session.close()


def _reservation_view(lead: Lead, now) -> dict:
    state = lead.to_dict()
    active = lead.reservation_active(now)
    state['reservation_active'] = active
    state['seconds_remaining'] = int((lead.reserved_until - now).total_seconds()) if active else 0
    return state


def get_lead_state(lead_id: str, now=None) -> dict:
    """Current reservation view, with the remaining TTL when a reservation is live."""
    now = now or utcnow()
    session = get_session()
    try:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return _reservation_view(lead, now)
    finally:
        session.close()


def list_realtor_leads(realtor_id: str, now=None, limit: int = 100) -> List[dict]:
    """
    A realtor's inbox: leads offered to them (RESERVED) and leads they took
    (ACCEPTED), newest first.

    A reservation whose TTL has passed but that the sweep has not released
    yet is still listed, with reservation_active False and no time left.
    """
    now = now or utcnow()
    session = get_session()
    try:
        rows = session.query(Lead, Property.title).outerjoin(
            Property, Property.id == Lead.property_id,
        ).filter(or_(
            and_(Lead.status == RESERVED, Lead.reserved_realtor_id == realtor_id),
            and_(Lead.status == ACCEPTED, Lead.assigned_realtor_id == realtor_id),
        )).order_by(Lead.created_at.desc(), Lead.id.desc()).limit(limit).all()

        leads = []
        for lead, title in rows:
            view = _reservation_view(lead, now)
            view['property_title'] = title
            leads.append(view)
        return leads
    finally:
        session.close()


def list_exhausted_leads(team_id: Optional[str] = None, limit: int = 100) -> List[dict]:
    """Leads waiting for a manager: nobody eligible was left to take them."""
    session = get_session()
    try:
        q = session.query(Lead).filter(Lead.status == EXHAUSTED)
        if team_id:
            q = q.outerjoin(Property, Property.id == Lead.property_id).filter(or_(
                Lead.team_id == team_id,
                and_(Lead.team_id.is_(None), Property.team_id == team_id),
            ))
        return [lead.to_dict() for lead in q.order_by(Lead.terminal_at.desc()).limit(limit).all()]
    finally:
        session.close()
