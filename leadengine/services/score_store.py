"""
Realtor score store — reads for the ranking policy, writes for the external
rating/activity subsystem.

The distribution engine only calls the read side (get / get_many /
global_prior). apply_rating() and adjust_points() are called by the rating
and admin surfaces; record_activity() is subscribed to lead state changes so
accept/reject/expire counters follow the state machine without the machine
ever writing scores itself.
"""
import logging
from typing import Dict, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from leadengine.database import get_session, utcnow
from leadengine.distribution.base import (
    ScoreSnapshot, LeadStateChange,
    REASON_ACCEPTED, REASON_REJECTED, REASON_EXPIRED, REASON_FORCE_ASSIGNED,
)
from leadengine.distribution.errors import DependencyUnavailable
from leadengine.distribution.policy import DistributionPolicy, get_policy
from leadengine.models.realtor_score import RealtorScore, ScoreHistory

logger = logging.getLogger('services.score_store')


def _snapshot(row: Optional[RealtorScore], realtor_id: str) -> ScoreSnapshot:
    """Convert a row into a snapshot; a missing row is a neutral new realtor."""
    if row is None:
        return ScoreSnapshot(realtor_id=realtor_id)
    responses = (row.leads_accepted or 0) + (row.leads_rejected or 0) + (row.leads_expired or 0)
    return ScoreSnapshot(
        realtor_id=realtor_id,
        avg_rating=row.avg_rating,
        total_ratings=row.total_ratings or 0,
        points=row.points or 0,
        last_assigned_at=row.last_assigned_at,
        acceptance_rate=round((row.leads_accepted or 0) / responses, 4) if responses else None,
        avg_response_minutes=row.avg_response_minutes,
    )


class RealtorScoreStore:
    """Session-scoped access to realtor_scores / score_history."""

    def __init__(self, session, policy: DistributionPolicy = None):
        self.session = session
        self.policy = policy or get_policy()

    # ── Reads (engine side) ───────────────────────────────────────────

    def get(self, realtor_id: str) -> ScoreSnapshot:
        """Score for one realtor; unknown realtors get a neutral default."""
        try:
            row = self.session.get(RealtorScore, realtor_id)
        except SQLAlchemyError as e:
            raise DependencyUnavailable('score_store', e) from e
        return _snapshot(row, realtor_id)

    def get_many(self, realtor_ids: Iterable[str]) -> Dict[str, ScoreSnapshot]:
        """Scores for a candidate set, one query."""
        ids = list(dict.fromkeys(realtor_ids))
        if not ids:
            return {}
        try:
            rows = self.session.query(RealtorScore).filter(RealtorScore.realtor_id.in_(ids)).all()
        except SQLAlchemyError as e:
            raise DependencyUnavailable('score_store', e) from e
        by_id = {row.realtor_id: row for row in rows}
        return {rid: _snapshot(by_id.get(rid), rid) for rid in ids}

    def global_prior(self) -> float:
        """
        Platform-wide mean star rating, itself shrunk toward the configured
        prior_mean by prior_weight pseudo-ratings.

        With few rated realtors the prior stays near prior_mean, so a handful
        of ratings never lifts every unrated realtor to the same level.
        """
        try:
            total, weighted = self.session.query(
                func.coalesce(func.sum(RealtorScore.total_ratings), 0),
                func.coalesce(func.sum(RealtorScore.avg_rating * RealtorScore.total_ratings), 0.0),
            ).filter(RealtorScore.total_ratings > 0).one()
        except SQLAlchemyError as e:
            raise DependencyUnavailable('score_store', e) from e
        weight = self.policy.prior_weight
        if weight + total <= 0:
            return self.policy.prior_mean
        return (weight * self.policy.prior_mean + float(weighted)) / (weight + float(total))

    # ── Writes (rating / activity subsystem) ──────────────────────────

    def _row(self, realtor_id: str) -> RealtorScore:
        row = self.session.get(RealtorScore, realtor_id)
        if row is None:
            row = RealtorScore(
                realtor_id=realtor_id,
                total_ratings=0,
                points=0,
                leads_accepted=0,
                leads_rejected=0,
                leads_expired=0,
                total_response_minutes=0,
            )
            self.session.add(row)
            self.session.flush()
        return row

    def _add_points(self, row: RealtorScore, points: int, action: str, description: str = None) -> int:
        """Apply a point delta (floored at zero) and append a ScoreHistory row."""
        row.points = max(0, (row.points or 0) + points)
        self.session.add(ScoreHistory(
            realtor_id=row.realtor_id,
            action=action,
            points=points,
            description=description,
        ))
        return row.points

    def apply_rating(self, realtor_id: str, stars: int) -> RealtorScore:
        """Fold one 1–5 star rating into the running average and award its points."""
        if stars not in (1, 2, 3, 4, 5):
            raise ValueError(f"Rating must be 1-5 stars, got {stars!r}")

        row = self._row(realtor_id)
        total = (row.total_ratings or 0) + 1
        row.avg_rating = ((row.avg_rating or 0.0) * (row.total_ratings or 0) + stars) / total
        row.total_ratings = total

        points = self.policy.rating_points.get(stars, 0)
        if points:
            suffix = 'STAR' if stars == 1 else 'STARS'
            self._add_points(row, points, f'RATING_{stars}_{suffix}', f'Received a {stars}-star rating')

        self.session.commit()
        logger.info("Realtor %s rated %d stars (avg=%.2f over %d)", realtor_id, stars, row.avg_rating, total)
        return row

    def adjust_points(self, realtor_id: str, points: int, action: str, description: str = None) -> int:
        """Manual point change (admin correction). Returns the new total."""
        row = self._row(realtor_id)
        new_total = self._add_points(row, points, action, description)
        self.session.commit()
        return new_total

    def record_activity(self, change: LeadStateChange) -> None:
        """Update counters for accept / reject / expire transitions."""
        if not change.realtor_id:
            return

        row = self._row(change.realtor_id)
        policy = self.policy

        if change.reason in (REASON_ACCEPTED, REASON_FORCE_ASSIGNED):
            row.last_assigned_at = change.occurred_at or utcnow()
        if change.reason == REASON_ACCEPTED:
            minutes = int(change.meta.get('response_minutes') or 0)
            row.leads_accepted = (row.leads_accepted or 0) + 1
            row.total_response_minutes = (row.total_response_minutes or 0) + minutes
            row.avg_response_minutes = round(row.total_response_minutes / row.leads_accepted, 2)
            if minutes < policy.fast_accept_minutes and policy.fast_accept_points:
                self._add_points(
                    row, policy.fast_accept_points, 'ACCEPT_LEAD_FAST',
                    f'Accepted lead {change.lead_id} in under {policy.fast_accept_minutes} minutes',
                )
        elif change.reason == REASON_REJECTED:
            row.leads_rejected = (row.leads_rejected or 0) + 1
            if policy.reject_points:
                self._add_points(row, policy.reject_points, 'REJECT_LEAD', f'Rejected lead {change.lead_id}')
        elif change.reason == REASON_EXPIRED:
            row.leads_expired = (row.leads_expired or 0) + 1
            if policy.expired_points:
                self._add_points(
                    row, policy.expired_points, 'RESERVATION_EXPIRED',
                    f'Let reservation on lead {change.lead_id} expire',
                )

        self.session.commit()


def record_activity(change: LeadStateChange) -> None:
    """Event subscriber: update the score store after a lead transition."""
    session = get_session()
    try:
        RealtorScoreStore(session).record_activity(change)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
