"""
Lead state change emitter — the single onLeadStateChanged hook.

Only the reservation state machine calls emit(), once per committed
transition. Subscribers are called in registration order; a subscriber that
raises is logged and skipped, and the transition it reports stays committed.
"""
import json
import logging
from typing import Callable, List, Tuple

import requests

from leadengine.config import EXHAUSTED, LEAD_EVENTS_WEBHOOK_URL
from leadengine.database import get_session
from leadengine.distribution.base import LeadStateChange
from leadengine.models.lead_event import LeadEvent

logger = logging.getLogger('distribution.events')

Subscriber = Callable[[LeadStateChange], None]

BOARD_CHANNEL = 'leads:board'


def realtor_channel(realtor_id: str) -> str:
    return f'realtor:{realtor_id}'


class EventEmitter:
    """Fan-out of LeadStateChange to best-effort subscribers."""

    def __init__(self, subscribers: List[Tuple[str, Subscriber]] = None):
        self._subscribers: List[Tuple[str, Subscriber]] = list(subscribers or [])

    def subscribe(self, handler: Subscriber, name: str = None):
        self._subscribers.append((name or getattr(handler, '__name__', repr(handler)), handler))
        return handler

    @property
    def subscriber_names(self) -> List[str]:
        return [name for name, _ in self._subscribers]

    def emit(self, change: LeadStateChange) -> int:
        """Deliver to every subscriber. Returns how many succeeded."""
        delivered = 0
        for name, handler in self._subscribers:
            try:
                handler(change)
                delivered += 1
            except Exception:
                logger.error(
                    "Subscriber '%s' failed for lead %s (%s → %s)",
                    name, change.lead_id, change.from_state, change.to_state, exc_info=True,
                )
        logger.debug("Lead %s %s: delivered to %d/%d subscribers",
                     change.lead_id, change.reason, delivered, len(self._subscribers))
        return delivered


# ── Default subscribers ──────────────────────────────────────────────────────

def record_lead_event(change: LeadStateChange) -> None:
    """Append a LeadEvent timeline row."""
    session = get_session()
    try:
        session.add(LeadEvent(
            lead_id=change.lead_id,
            type=change.reason,
            from_status=change.from_state,
            to_status=change.to_state,
            realtor_id=change.realtor_id,
            actor_id=change.actor_id,
            event_metadata=change.meta or None,
        ))
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def publish_realtime(change: LeadStateChange) -> None:
    """Push the change to the realtor's channel and the shared lead board."""
    from leadengine.extensions import redis_client

    payload = json.dumps(change.to_dict())
    if change.realtor_id:
        redis_client.publish(realtor_channel(change.realtor_id), payload)
    redis_client.publish(BOARD_CHANNEL, payload)


def post_webhook(change: LeadStateChange) -> None:
    """POST the change to the external assistant/notification service, if configured."""
    if not LEAD_EVENTS_WEBHOOK_URL:
        return
    from leadengine.services.circuit_breaker import get_breaker

    def _send():
        resp = requests.post(LEAD_EVENTS_WEBHOOK_URL, json=change.to_dict(), timeout=5)
        resp.raise_for_status()
        return resp

    get_breaker('lead_events_webhook').call(_send)


def alert_if_exhausted(change: LeadStateChange) -> None:
    """Surface exhausted leads to the agency channel for manual assignment."""
    if change.to_state != EXHAUSTED:
        return
    from leadengine.services.notifications import notify_lead_exhausted
    notify_lead_exhausted(change)


def build_default_emitter() -> EventEmitter:
    """The emitter wired up at process start for web, scheduler and workers."""
    from leadengine.services.score_store import record_activity

    return EventEmitter([
        ('lead_event', record_lead_event),
        ('score_activity', record_activity),
        ('realtime', publish_realtime),
        ('webhook', post_webhook),
        ('exhausted_alert', alert_if_exhausted),
    ])
