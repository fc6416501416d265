"""
Recurring jobs — distribution, expiry sweep, ranking recalculation, cleanup.

Each job walks every matching lead, batch_size rows per query, and drives
them through the reservation state machine one at a time. A lead that stays
pending never blocks the leads behind it. A failure on one lead is logged
and counted, never allowed to abort the pass:

  LeadInvariantViolation → CRITICAL + on-call alert, lead left untouched
  DependencyUnavailable  → warning, lead retried on the next tick
  anything else          → error with traceback, lead retried on the next tick

Every job is idempotent: running it twice with no intervening change
does nothing the second time.

The run_*_job functions are the bodies scheduler.run_recurring runs;
run_distribute_job is also enqueued directly for targeted re-routing.
"""
import logging
from datetime import timedelta
from typing import Callable, Iterator, List

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

from leadengine.config import (
    UNASSIGNED, RESERVED, ACCEPTED, EXHAUSTED, TERMINAL_PIPELINE_STAGES,
    JOB_DISTRIBUTE, JOB_EXPIRY_SWEEP, JOB_RANKING_RECALCULATION, JOB_CLEANUP,
)
from leadengine.database import get_session, utcnow
from leadengine.distribution.base import JobResult, TransitionResult, APPLIED, STATE_CHANGED
from leadengine.distribution.errors import LeadInvariantViolation, DependencyUnavailable
from leadengine.distribution.events import EventEmitter, build_default_emitter
from leadengine.distribution.policy import DistributionPolicy, get_policy
from leadengine.distribution.reservations import ReservationStateMachine, compare_and_swap
from leadengine.models.lead import Lead
from leadengine.models.realtor_score import ScoreHistory
from leadengine.services.notifications import notify_invariant_violation

logger = logging.getLogger('distribution.jobs')


def _run_for_lead(session, result: JobResult, lead_id: str, step: Callable[[str], TransitionResult]):
    """Apply one state machine step to one lead, isolating its failure."""
    result.processed += 1
    context = {'lead_id': lead_id, 'job': result.job}
    try:
        outcome = step(lead_id)
    except LeadInvariantViolation as e:
        session.rollback()
        result.failed += 1
        result.errors.append(f"{lead_id}: {e.problem}")
        logger.critical("Lead %s reservation state is corrupt: %s", lead_id, e.problem, extra=context)
        notify_invariant_violation(lead_id, e.problem)
        return
    except DependencyUnavailable as e:
        session.rollback()
        result.skipped += 1
        result.errors.append(f"{lead_id}: {e}")
        logger.warning("Lead %s skipped, %s", lead_id, e, extra=context)
        return
    except Exception as e:
        session.rollback()
        result.failed += 1
        result.errors.append(f"{lead_id}: {e}")
        logger.error("Lead %s failed in %s", lead_id, result.job, exc_info=True, extra=context)
        return

    counts = result.meta.setdefault('outcomes', {})
    counts[outcome.outcome] = counts.get(outcome.outcome, 0) + 1
    if outcome.applied:
        result.succeeded += 1
        result.lead_ids.append(lead_id)
    else:
        result.skipped += 1


def _paged_lead_ids(session, filters, order_col, page_size: int) -> Iterator[str]:
    """
    Every lead id matching `filters`, ordered by (order_col, id), fetched
    page_size rows at a time.

    Pages are keyed on the last (order_col, id) seen rather than on an
    offset, so leads that stay pending (WAITING, failing) never hold the
    rest of the backlog out of the pass.
    """
    last = None
    while True:
        q = session.query(Lead.id, order_col.label('sort_key')).filter(*filters)
        if last is not None:
            last_key, last_id = last
            q = q.filter(or_(order_col > last_key, and_(order_col == last_key, Lead.id > last_id)))
        page = q.order_by(order_col, Lead.id).limit(page_size).all()
        for row in page:
            yield row.id
        if len(page) < page_size:
            return
        last = (page[-1].sort_key, page[-1].id)


def _log_summary(result: JobResult):
    logger.info(
        "%s: processed=%d succeeded=%d skipped=%d failed=%d",
        result.job, result.processed, result.succeeded, result.skipped, result.failed,
        extra={'job': result.job},
    )


# ── Jobs ──────────────────────────────────────────────────────────────────────

def distribute_pending_leads(lead_ids: List[str] = None, now=None, emitter: EventEmitter = None,
                             policy: DistributionPolicy = None) -> JobResult:
    """Offer every waiting UNASSIGNED lead (oldest first) to its best candidate."""
    now = now or utcnow()
    policy = policy or get_policy()
    result = JobResult(JOB_DISTRIBUTE)
    session = get_session()
    try:
        filters = [
            Lead.status == UNASSIGNED,
            Lead.pipeline_stage.notin_(TERMINAL_PIPELINE_STAGES),
        ]
        if lead_ids:
            filters.append(Lead.id.in_(lead_ids))

        machine = ReservationStateMachine(session, emitter=emitter or build_default_emitter(), policy=policy)
        for lead_id in _paged_lead_ids(session, filters, Lead.created_at, policy.batch_size):
            _run_for_lead(session, result, lead_id, lambda lid: machine.reserve(lid, now=now))
    finally:
        session.close()

    _log_summary(result)
    return result


def sweep_expired_reservations(now=None, emitter: EventEmitter = None,
                               policy: DistributionPolicy = None) -> JobResult:
    """Release every reservation whose TTL has passed. result.lead_ids are the released leads."""
    now = now or utcnow()
    policy = policy or get_policy()
    result = JobResult(JOB_EXPIRY_SWEEP)
    session = get_session()
    try:
        filters = [Lead.status == RESERVED, Lead.reserved_until <= now]

        machine = ReservationStateMachine(session, emitter=emitter or build_default_emitter(), policy=policy)
        for lead_id in _paged_lead_ids(session, filters, Lead.reserved_until, policy.batch_size):
            _run_for_lead(session, result, lead_id, lambda lid: machine.expire(lid, now=now))
    finally:
        session.close()

    _log_summary(result)
    return result


def recalculate_rankings(now=None, policy: DistributionPolicy = None) -> JobResult:
    """Refresh the cached candidate order of waiting leads. Never reserves."""
    now = now or utcnow()
    policy = policy or get_policy()
    result = JobResult(JOB_RANKING_RECALCULATION)
    session = get_session()
    try:
        filters = [
            Lead.status == UNASSIGNED,
            Lead.pipeline_stage.notin_(TERMINAL_PIPELINE_STAGES),
        ]

        machine = ReservationStateMachine(session, policy=policy)
        for lead_id in _paged_lead_ids(session, filters, Lead.created_at, policy.batch_size):
            _run_for_lead(session, result, lead_id, lambda lid: machine.refresh_ranking(lid, now=now))
    finally:
        session.close()

    _log_summary(result)
    return result


def cleanup_terminal_leads(now=None, policy: DistributionPolicy = None) -> JobResult:
    """
    Drop the derived ranking cache from leads that have been terminal for a
    while, and prune old score history. Assignment logs are kept forever.
    """
    now = now or utcnow()
    policy = policy or get_policy()
    cutoff = now - timedelta(hours=policy.terminal_retention_hours)
    result = JobResult(JOB_CLEANUP)
    session = get_session()
    try:
        rows = session.query(Lead.id, Lead.version, Lead.status).filter(
            Lead.ranked_at.isnot(None),
            (
                (Lead.status.in_([ACCEPTED, EXHAUSTED]) & (Lead.terminal_at < cutoff))
                | (Lead.pipeline_stage.in_(TERMINAL_PIPELINE_STAGES) & (Lead.updated_at < cutoff))
            ),
        ).limit(policy.batch_size).all()

        def clear_cache(row):
            if not compare_and_swap(session, row.id, row.version, row.status,
                                    {'candidate_ranking': None, 'ranked_at': None}, bump_version=False):
                session.rollback()
                return TransitionResult(STATE_CHANGED)
            session.commit()
            return TransitionResult(APPLIED)

        by_id = {row.id: row for row in rows}
        for lead_id in by_id:
            _run_for_lead(session, result, lead_id, lambda lid: clear_cache(by_id[lid]))

        history_cutoff = now - timedelta(days=policy.score_history_retention_days)
        try:
            pruned = session.query(ScoreHistory).filter(
                ScoreHistory.created_at < history_cutoff,
            ).delete(synchronize_session=False)
            session.commit()
            result.meta['score_history_pruned'] = pruned
        except SQLAlchemyError as e:
            session.rollback()
            result.errors.append(f"score_history: {e}")
            logger.warning("Score history pruning failed: %s", e)
    finally:
        session.close()

    _log_summary(result)
    return result


# ── RQ entry points ───────────────────────────────────────────────────────────

def run_distribute_job(lead_ids: List[str] = None) -> dict:
    return distribute_pending_leads(lead_ids=lead_ids).to_dict()


def run_expiry_sweep_job() -> dict:
    """Sweep, then enqueue a targeted distribution for whatever was released."""
    result = sweep_expired_reservations()
    if result.lead_ids:
        from leadengine.distribution.service import enqueue_distribution
        try:
            enqueue_distribution(result.lead_ids)
        except Exception as e:
            # The periodic distribute job will pick these up anyway
            logger.warning("Could not enqueue re-routing for %d leads: %s", len(result.lead_ids), e)
    return result.to_dict()


def run_ranking_job() -> dict:
    return recalculate_rankings().to_dict()


def run_cleanup_job() -> dict:
    return cleanup_terminal_leads().to_dict()


JOB_FUNCTIONS = {
    JOB_DISTRIBUTE: run_distribute_job,
    JOB_EXPIRY_SWEEP: run_expiry_sweep_job,
    JOB_RANKING_RECALCULATION: run_ranking_job,
    JOB_CLEANUP: run_cleanup_job,
}
