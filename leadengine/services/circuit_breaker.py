"""
Redis-backed circuit breaker for outbound event consumers.

Event delivery is best-effort, so a consumer that keeps failing should stop
costing each transition a network timeout. States:
  - CLOSED    → deliveries pass through
  - OPEN      → deliveries short-circuit with CircuitOpenError
  - HALF_OPEN → after reset_timeout, one trial delivery is let through

State lives in Redis so the web tier, scheduler and every RQ worker share it.
"""
import logging
import time

logger = logging.getLogger('services.circuit_breaker')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'

# name → (failure_threshold, reset_timeout seconds)
BREAKER_SPECS = {
    'lead_events_webhook': (5, 120),
    'slack': (3, 300),
}


class CircuitOpenError(Exception):
    """Raised when delivering through an open circuit breaker."""
    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN — consumer unavailable")


class CircuitBreaker:
    """
    Usage:
        cb = CircuitBreaker('slack', redis_client, failure_threshold=3, reset_timeout=300)
        cb.call(requests.post, url, json=payload, timeout=10)
    """

    PREFIX = 'leadengine:cb'

    def __init__(self, name, redis_client, failure_threshold=3, reset_timeout=300):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

    def _key(self, suffix):
        return f'{self.PREFIX}:{self.name}:{suffix}'

    # ── State ─────────────────────────────────────────────────────────

    def _opened_at(self):
        raw = self.redis.get(self._key('opened_at'))
        return float(raw) if raw else None

    @property
    def state(self):
        try:
            current = self.redis.get(self._key('state')) or CLOSED
            if current == OPEN:
                opened_at = self._opened_at()
                if opened_at and time.time() - opened_at > self.reset_timeout:
                    self.redis.set(self._key('state'), HALF_OPEN)
                    return HALF_OPEN
            return current
        except Exception:
            return CLOSED  # Redis down → never block delivery on breaker bookkeeping

    @property
    def failure_count(self):
        try:
            return int(self.redis.get(self._key('failures')) or 0)
        except Exception:
            return 0

    def get_health(self):
        """Health dict for GET /api/health."""
        try:
            stats = self.redis.hgetall(self._key('health')) or {}
        except Exception:
            stats = {}
        return {
            'name': self.name,
            'state': self.state,
            'failure_count': self.failure_count,
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'total_success': int(stats.get('success', 0)),
            'total_failure': int(stats.get('failure', 0)),
            'last_error': stats.get('last_error', ''),
        }

    # ── Calls ─────────────────────────────────────────────────────────

    def call(self, func, *args, **kwargs):
        """Run func through the breaker, re-raising its errors."""
        if self.state == OPEN:
            opened_at = self._opened_at()
            retry_after = max(0.0, self.reset_timeout - (time.time() - opened_at)) if opened_at else None
            raise CircuitOpenError(self.name, retry_after=retry_after)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def _on_success(self):
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.hincrby(self._key('health'), 'success', 1)
            pipe.execute()
        except Exception:
            logger.debug("Could not record success for breaker '%s'", self.name)

    def _on_failure(self, error):
        try:
            count = self.redis.incr(self._key('failures'))
            pipe = self.redis.pipeline()
            pipe.hincrby(self._key('health'), 'failure', 1)
            pipe.hset(self._key('health'), 'last_error', str(error)[:200])
            if count >= self.failure_threshold:
                pipe.set(self._key('state'), OPEN)
                pipe.set(self._key('opened_at'), str(time.time()))
            pipe.execute()
        except Exception:
            logger.debug("Could not record failure for breaker '%s'", self.name)
            return
        if count >= self.failure_threshold:
            logger.warning("Circuit '%s' OPENED after %d failures: %s", self.name, count, error)
        else:
            logger.info("Circuit '%s' failure %d/%d: %s", self.name, count, self.failure_threshold, error)

    def reset(self):
        """Force the breaker back to CLOSED."""
        pipe = self.redis.pipeline()
        pipe.set(self._key('state'), CLOSED)
        pipe.set(self._key('failures'), 0)
        pipe.delete(self._key('opened_at'))
        pipe.execute()
        logger.info("Circuit '%s' manually reset to CLOSED", self.name)


# ── Registry ─────────────────────────────────────────────────────────────────

_registry = {}


def init_breakers(redis_client):
    """Create one breaker per outbound consumer in BREAKER_SPECS."""
    for name, (threshold, timeout) in BREAKER_SPECS.items():
        _registry[name] = CircuitBreaker(name, redis_client, failure_threshold=threshold, reset_timeout=timeout)
    return dict(_registry)


def get_breaker(name):
    """Registered breaker by name, creating it lazily against the shared Redis client."""
    if name not in _registry:
        from leadengine.extensions import redis_client
        threshold, timeout = BREAKER_SPECS.get(name, (3, 300))
        _registry[name] = CircuitBreaker(name, redis_client, failure_threshold=threshold, reset_timeout=timeout)
    return _registry[name]


def get_all_breakers():
    return dict(_registry)
