"""
Ranking policy — deterministic ordering of eligible realtors.

Sort keys, best first:
  1. score, descending — star average shrunk toward the platform prior
     (so one 5-star rating cannot outrank an established 4.7), plus a small
     contribution from accumulated activity points
  2. idle time, descending — never-assigned realtors first, then the oldest
     last_assigned_at
  3. realtor id, ascending

Pure functions only: no database access, no clock reads.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from leadengine.distribution.base import RealtorCandidate, ScoreSnapshot
from leadengine.distribution.policy import DistributionPolicy


def shrunk_rating(snapshot: ScoreSnapshot, prior_mean: float, prior_weight: float) -> float:
    """Bayesian average: (prior_weight * prior_mean + n * avg) / (prior_weight + n)."""
    n = max(0, snapshot.total_ratings or 0)
    avg = snapshot.avg_rating if snapshot.avg_rating is not None else prior_mean
    denominator = prior_weight + n
    if denominator <= 0:
        return prior_mean
    return (prior_weight * prior_mean + n * avg) / denominator


def score_candidate(snapshot: ScoreSnapshot, prior_mean: float, policy: DistributionPolicy) -> float:
    """Composite ranking score for one realtor."""
    rating = shrunk_rating(snapshot, prior_mean, policy.prior_weight)
    return rating + policy.points_weight * max(0, snapshot.points or 0)


def _sort_key(candidate: RealtorCandidate):
    # Never-assigned realtors sort ahead of everyone else on the idle key
    idle_key = (0, datetime.min) if candidate.last_assigned_at is None else (1, candidate.last_assigned_at)
    return (-candidate.score, idle_key, candidate.realtor_id)


def rank(
    candidates: Iterable[str],
    scores: Dict[str, ScoreSnapshot],
    policy: DistributionPolicy,
    prior_mean: Optional[float] = None,
) -> List[RealtorCandidate]:
    """
    Order candidate realtor ids best first.

    Args:
        candidates: eligible realtor ids (any order, duplicates ignored).
        scores:     snapshot per realtor id; missing ids rank as neutral.
        policy:     weights.
        prior_mean: platform-wide rating mean; defaults to policy.prior_mean.
    """
    prior = policy.prior_mean if prior_mean is None else prior_mean
    ranked = []
    for realtor_id in dict.fromkeys(candidates):
        snapshot = scores.get(realtor_id) or ScoreSnapshot(realtor_id=realtor_id)
        ranked.append(RealtorCandidate(
            realtor_id=realtor_id,
            score=score_candidate(snapshot, prior, policy),
            last_assigned_at=snapshot.last_assigned_at,
        ))
    ranked.sort(key=_sort_key)
    return ranked
