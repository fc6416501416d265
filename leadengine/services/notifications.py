"""
Notifications — Slack webhook alerts for leads that need a human.

Two cases: a lead exhausted its candidate pool (agency must assign it by
hand) and a lead whose persisted reservation state is corrupt. Notification
failure never blocks the engine.
"""
import logging
import requests
from redis.exceptions import RedisError

from leadengine.config import SLACK_WEBHOOK_URL, INVARIANT_ALERT_REPEAT_SECONDS
from leadengine.services.circuit_breaker import get_breaker

logger = logging.getLogger('services.notifications')


def _post(blocks):
    get_breaker('slack').call(requests.post, SLACK_WEBHOOK_URL, json={"blocks": blocks}, timeout=10)


def notify_lead_exhausted(change):
    """Tell the agency channel a lead has no eligible realtor left."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        rejected = change.lead.get('rejected_realtor_ids') or []
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "Lead needs manual assignment"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Lead:* {change.lead_id}"},
                    {"type": "mrkdwn", "text": f"*Team:* {change.team_id or 'none'}"},
                    {"type": "mrkdwn", "text": f"*Realtors tried:* {len(rejected)}"},
                    {"type": "mrkdwn", "text": f"*Property:* {change.lead.get('property_id', '')}"},
                ],
            },
        ]
        _post(blocks)
        logger.info("Exhausted-lead notification sent for %s", change.lead_id)
    except Exception:
        logger.error("Failed to send exhausted notification for lead %s", change.lead_id, exc_info=True)


def _first_alert(lead_id) -> bool:
    """Claim the alert slot for this lead; False while an earlier alert is still fresh."""
    from leadengine.extensions import redis_client
    try:
        return bool(redis_client.set(f'alert:invariant:{lead_id}', 1, nx=True, ex=INVARIANT_ALERT_REPEAT_SECONDS))
    except RedisError as e:
        logger.warning("Could not check alert history for lead %s: %s", lead_id, e)
        return True


def _release_alert(lead_id):
    """Let the next tick retry an alert that never reached Slack."""
    from leadengine.extensions import redis_client
    try:
        redis_client.delete(f'alert:invariant:{lead_id}')
    except RedisError as e:
        logger.warning("Could not clear alert history for lead %s: %s", lead_id, e)


def notify_invariant_violation(lead_id, problem):
    """Alert on-call that a lead's reservation state is corrupt and was left untouched."""
    if not SLACK_WEBHOOK_URL:
        return
    if not _first_alert(lead_id):
        logger.info("Invariant alert for lead %s already sent, not repeating", lead_id)
        return

    try:
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "Lead reservation state CORRUPT"},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Lead:* {lead_id}\n*Problem:* ```{str(problem)[:500]}```"},
            },
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": "Distribution is halted for this lead until it is fixed by hand."}],
            },
        ]
        _post(blocks)
        logger.info("Invariant alert sent for lead %s", lead_id)
    except Exception:
        logger.error("Failed to send invariant alert for lead %s", lead_id, exc_info=True)
        _release_alert(lead_id)
