"""
Distribution policy loader — reservation TTL, ranking weights, point deltas,
job cadence.

YAML file with in-memory cache and hardcoded fallback if the file is missing.
Keys present in the YAML override the defaults; anything it omits keeps the
default value.
"""
import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

import yaml

from leadengine.config import (
    DISTRIBUTION_CONFIG_PATH,
    JOB_DISTRIBUTE, JOB_EXPIRY_SWEEP, JOB_RANKING_RECALCULATION, JOB_CLEANUP,
)

logger = logging.getLogger('distribution.policy')


_policy_config = None


def _default_config():
    """Hardcoded fallback if YAML is missing."""
    return {
        'version': 'default',
        'reservation': {
            'ttl_minutes': 10,
            'single_reservation_per_realtor': True,
        },
        'ranking': {
            'prior_mean': 4.0,
            'prior_weight': 5,
            'points_weight': 0.01,
        },
        'rating_points': {
            5: 15,
            4: 10,
            3: 5,
            2: 0,
            1: -5,
        },
        'activity_points': {
            'fast_accept_minutes': 5,
            'fast_accept': 5,
            'reservation_expired': -8,
            'reject': 0,
        },
        'jobs': {
            'intervals': {
                JOB_DISTRIBUTE: 120,
                JOB_EXPIRY_SWEEP: 60,
                JOB_RANKING_RECALCULATION: 600,
                JOB_CLEANUP: 3600,
            },
            'batch_size': 200,
        },
        'cleanup': {
            'terminal_retention_hours': 24,
            'score_history_retention_days': 30,
        },
    }


def _merge(base: dict, override: dict) -> dict:
    """Recursively overlay `override` onto a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _config_path() -> str:
    return DISTRIBUTION_CONFIG_PATH or os.path.join(os.path.dirname(__file__), 'distribution_config.yaml')


def load_policy_config() -> dict:
    """Load policy config from YAML, with in-memory cache and hardcoded fallback."""
    global _policy_config
    if _policy_config is not None:
        return _policy_config

    try:
        with open(_config_path(), 'r') as f:
            loaded = yaml.safe_load(f) or {}
        _policy_config = _merge(_default_config(), loaded)
        logger.info("Config loaded from YAML (version=%s)", _policy_config.get('version', '?'))
    except Exception as e:
        logger.warning("YAML config not found (%s), using defaults", e)
        _policy_config = _default_config()

    return _policy_config


def reset_cache():
    """Reset the in-memory cache (useful for testing)."""
    global _policy_config
    _policy_config = None


@dataclass(frozen=True)
class DistributionPolicy:
    """Typed view over the policy config — what the engine actually consumes."""
    reservation_ttl_minutes: int = 10
    single_reservation_per_realtor: bool = True
    prior_mean: float = 4.0
    prior_weight: float = 5.0
    points_weight: float = 0.01
    rating_points: Dict[int, int] = field(default_factory=lambda: {5: 15, 4: 10, 3: 5, 2: 0, 1: -5})
    fast_accept_minutes: int = 5
    fast_accept_points: int = 5
    expired_points: int = -8
    reject_points: int = 0
    job_intervals: Dict[str, int] = field(default_factory=dict)
    batch_size: int = 200
    terminal_retention_hours: int = 24
    score_history_retention_days: int = 30

    @classmethod
    def from_config(cls, cfg: dict) -> 'DistributionPolicy':
        reservation = cfg.get('reservation', {})
        ranking = cfg.get('ranking', {})
        activity = cfg.get('activity_points', {})
        jobs = cfg.get('jobs', {})
        cleanup = cfg.get('cleanup', {})
        return cls(
            reservation_ttl_minutes=int(reservation.get('ttl_minutes', 10)),
            single_reservation_per_realtor=bool(reservation.get('single_reservation_per_realtor', True)),
            prior_mean=float(ranking.get('prior_mean', 4.0)),
            prior_weight=float(ranking.get('prior_weight', 5)),
            points_weight=float(ranking.get('points_weight', 0.01)),
            # YAML may give star keys as strings
            rating_points={int(k): int(v) for k, v in cfg.get('rating_points', {}).items()},
            fast_accept_minutes=int(activity.get('fast_accept_minutes', 5)),
            fast_accept_points=int(activity.get('fast_accept', 5)),
            expired_points=int(activity.get('reservation_expired', -8)),
            reject_points=int(activity.get('reject', 0)),
            job_intervals={k: int(v) for k, v in jobs.get('intervals', {}).items()},
            batch_size=int(jobs.get('batch_size', 200)),
            terminal_retention_hours=int(cleanup.get('terminal_retention_hours', 24)),
            score_history_retention_days=int(cleanup.get('score_history_retention_days', 30)),
        )


def get_policy(overrides: Optional[dict] = None) -> DistributionPolicy:
    """Build the typed policy, optionally overlaying ad-hoc overrides (tests, admin)."""
    cfg = load_policy_config()
    if overrides:
        cfg = _merge(cfg, overrides)
    return DistributionPolicy.from_config(cfg)
