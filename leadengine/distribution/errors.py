"""
Distribution errors.

Guard failures, foreign reservations and exhaustion are normal control flow
and are reported through TransitionResult outcomes, not raised.
"""


class LeadNotFoundError(LookupError):
    """Raised when a lead id does not exist."""
    def __init__(self, lead_id):
        self.lead_id = lead_id
        super().__init__(f"Lead {lead_id} not found")


class DependencyUnavailable(RuntimeError):
    """Score store or database read failed — skip the lead until the next tick."""
    def __init__(self, dependency, cause=None):
        self.dependency = dependency
        self.cause = cause
        super().__init__(f"Dependency '{dependency}' unavailable: {cause}")


class LeadInvariantViolation(RuntimeError):
    """Persisted reservation fields contradict each other. Never auto-fixed."""
    def __init__(self, lead_id, problem):
        self.lead_id = lead_id
        self.problem = problem
        super().__init__(f"Lead {lead_id} violates reservation invariant: {problem}")


class PermissionDenied(Exception):
    """Actor lacks management authority for a force-assign."""
    def __init__(self, actor_id, lead_id):
        self.actor_id = actor_id
        self.lead_id = lead_id
        super().__init__(f"Actor {actor_id} may not assign lead {lead_id}")
