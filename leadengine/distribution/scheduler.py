"""
Recurring job scheduler, built on RQ's own scheduler.

Every recurring job is a chain of RQ jobs: each run, when it finishes, puts
the next run on the queue with `enqueue_in(interval)`. Workers started with
`rq worker --with-scheduler` move due runs onto the queue; there is no
separate clock process.

The id of a job's pending run lives in Redis (scheduler:next:<name>), so
`ensure_scheduled()` can tell a live chain from a broken one and restart
only the broken ones. It runs once at deploy (run_scheduler.py) and again
at the end of every recurring run, so a chain lost to a crashed worker is
restarted by the next run of any other job.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

from redis.exceptions import RedisError
from rq import get_current_job

from leadengine.config import RECURRING_JOBS
from leadengine.distribution.policy import DistributionPolicy, get_policy

logger = logging.getLogger('distribution.scheduler')

_IN_FLIGHT = {'queued', 'started', 'deferred', 'scheduled'}


@dataclass
class RecurringJob:
    name: str
    func: Callable
    interval_seconds: int
    timeout: int = 600

    @property
    def description(self) -> str:
        return f'recurring:{self.name}'

    @property
    def next_run_key(self) -> str:
        return f'scheduler:next:{self.name}'

    @property
    def last_run_key(self) -> str:
        return f'scheduler:last:{self.name}'


class Scheduler:
    """Keeps one pending RQ run per recurring job."""

    def __init__(self, queue, redis_client, jobs: List[RecurringJob]):
        self.queue = queue
        self.redis = redis_client
        self.jobs = {job.name: job for job in jobs}

    def _pending(self, job: RecurringJob):
        """The chain's next (or current) RQ run, if it is still alive."""
        job_id = self.redis.get(job.next_run_key)
        if not job_id:
            return None
        if isinstance(job_id, bytes):
            job_id = job_id.decode()
        rq_job = self.queue.fetch_job(job_id)
        if rq_job is None:
            return None
        status = rq_job.get_status()
        return rq_job if getattr(status, 'value', status) in _IN_FLIGHT else None

    def _schedule(self, job: RecurringJob, delay_seconds: int):
        kwargs = dict(job_timeout=job.timeout, description=job.description)
        if delay_seconds > 0:
            rq_job = self.queue.enqueue_in(timedelta(seconds=delay_seconds), run_recurring, job.name, **kwargs)
        else:
            rq_job = self.queue.enqueue(run_recurring, job.name, **kwargs)
        self.redis.set(job.next_run_key, rq_job.id)
        return rq_job

    def ensure_scheduled(self) -> List[str]:
        """Start a chain for every job that has no live pending run. Returns the names started."""
        started = []
        for job in self.jobs.values():
            try:
                if self._pending(job) is not None:
                    continue
                self._schedule(job, 0)
                started.append(job.name)
                logger.info("Started recurring chain for %s (every %ds)", job.name, job.interval_seconds,
                            extra={'job': job.name})
            except RedisError as e:
                logger.error("Could not schedule %s: %s", job.name, e, extra={'job': job.name})
        return started

    def schedule_next(self, name: str, current_id: Optional[str] = None):
        """
        Queue the run after the current one. A run that is not the chain's own
        (a manual enqueue) leaves a live chain alone so cadence never doubles.
        """
        job = self.jobs[name]
        pending = self._pending(job)
        if pending is not None and pending.id != current_id:
            logger.info("%s already has a pending run %s", name, pending.id)
            return None
        return self._schedule(job, job.interval_seconds)

    def mark_started(self, name: str, now: float = None):
        self.redis.set(self.jobs[name].last_run_key, now if now is not None else time.time())

    def status(self) -> List[dict]:
        rows = []
        for job in self.jobs.values():
            last = self.redis.get(job.last_run_key)
            pending = self._pending(job)
            next_run_at = None
            if pending is not None:
                state = pending.get_status()
                if getattr(state, 'value', state) == 'scheduled':
                    next_run_at = self.queue.scheduled_job_registry.get_scheduled_time(pending.id).isoformat()
            rows.append({
                'name': job.name,
                'interval_seconds': job.interval_seconds,
                'last_started_at': float(last) if last else None,
                'pending_job_id': pending.id if pending is not None else None,
                'next_run_at': next_run_at,
            })
        return rows


def build_scheduler(queue=None, redis_client=None, policy: DistributionPolicy = None) -> Scheduler:
    """Scheduler wired to the configured queue and the policy's job intervals."""
    from leadengine.distribution.jobs import JOB_FUNCTIONS

    policy = policy or get_policy()
    if redis_client is None:
        from leadengine.extensions import redis_client
    if queue is None:
        from leadengine.distribution.service import _get_queue
        queue = _get_queue()

    jobs = [
        RecurringJob(name, JOB_FUNCTIONS[name], policy.job_intervals.get(name, 60))
        for name in RECURRING_JOBS
    ]
    return Scheduler(queue, redis_client, jobs)


def run_recurring(name: str, scheduler: Scheduler = None):
    """RQ entry point for one run of a recurring job; chains the next run whatever happens."""
    scheduler = scheduler or build_scheduler()
    try:
        scheduler.mark_started(name)
        return scheduler.jobs[name].func()
    finally:
        current = get_current_job()
        try:
            scheduler.schedule_next(name, current_id=current.id if current is not None else None)
            scheduler.ensure_scheduled()
        except RedisError as e:
            logger.error("Could not chain the next %s run: %s", name, e, extra={'job': name})
