"""
Lead routes — reservation actions for realtors and managers.

Realtor app and the management dashboard call these; each route is a thin
wrapper over distribution/service.py and maps the transition outcome to an
HTTP status.
"""
import logging
from flask import Blueprint, request, jsonify

from leadengine.distribution import service
from leadengine.distribution.base import (
    APPLIED, NOOP, STATE_CHANGED, NOT_YOUR_RESERVATION, RESERVATION_EXPIRED,
    INVALID_STATE, NO_CANDIDATES, WAITING,
)
from leadengine.distribution.errors import LeadNotFoundError, PermissionDenied

logger = logging.getLogger('routes.leads')

bp = Blueprint('leads', __name__)

OUTCOME_STATUS = {
    APPLIED: 200,
    NOOP: 200,
    NO_CANDIDATES: 200,
    WAITING: 202,
    STATE_CHANGED: 409,
    NOT_YOUR_RESERVATION: 409,
    RESERVATION_EXPIRED: 409,
    INVALID_STATE: 409,
}


def _respond(result):
    return jsonify(result.to_dict()), OUTCOME_STATUS.get(result.outcome, 200)


def _required(data, *keys):
    missing = [k for k in keys if not data.get(k)]
    if missing:
        return jsonify({'error': f"Missing field(s): {', '.join(missing)}"}), 400
    return None


@bp.errorhandler(LeadNotFoundError)
def _lead_not_found(e):
    return jsonify({'error': str(e)}), 404


@bp.errorhandler(PermissionDenied)
def _permission_denied(e):
    logger.warning("Denied: %s", e)
    return jsonify({'error': str(e)}), 403


# ── Lead lifecycle ───────────────────────────────────────────────────────────

@bp.route('/api/leads/<lead_id>/register', methods=['POST'])
def register_lead(lead_id):
    """Called by the CRM after it creates a lead row."""
    result = service.on_lead_created(lead_id)
    body, status = _respond(result)
    return body, 201 if result.outcome == APPLIED else status


@bp.route('/api/leads/<lead_id>/accept', methods=['POST'])
def accept_lead(lead_id):
    data = request.get_json(silent=True) or {}
    error = _required(data, 'realtor_id')
    if error:
        return error
    return _respond(service.accept_reservation(lead_id, data['realtor_id']))


@bp.route('/api/leads/<lead_id>/reject', methods=['POST'])
def reject_lead(lead_id):
    data = request.get_json(silent=True) or {}
    error = _required(data, 'realtor_id')
    if error:
        return error
    return _respond(service.reject_reservation(lead_id, data['realtor_id']))


@bp.route('/api/leads/<lead_id>/assign', methods=['POST'])
def assign_lead(lead_id):
    """Manager override for UNASSIGNED / EXHAUSTED leads."""
    data = request.get_json(silent=True) or {}
    error = _required(data, 'realtor_id', 'actor_id')
    if error:
        return error
    try:
        result = service.force_assign(
            lead_id, data['realtor_id'], data['actor_id'], actor_role=data.get('actor_role'),
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    return _respond(result)


# ── Read views ───────────────────────────────────────────────────────────────

@bp.route('/api/leads/<lead_id>/reservation')
def get_reservation(lead_id):
    return jsonify(service.get_lead_state(lead_id))


@bp.route('/api/leads/exhausted')
def list_exhausted():
    """Queue of leads that need a manual assignment."""
    try:
        limit = min(int(request.args.get('limit', 100)), 500)
    except ValueError:
        return jsonify({'error': 'limit must be an integer'}), 400
    leads = service.list_exhausted_leads(team_id=request.args.get('team_id'), limit=limit)
    return jsonify({'leads': leads, 'count': len(leads)})


@bp.route('/api/realtors/<realtor_id>/leads')
def list_realtor_leads(realtor_id):
    """Leads reserved to or accepted by one realtor, with the reservation countdown."""
    try:
        limit = min(int(request.args.get('limit', 100)), 500)
    except ValueError:
        return jsonify({'error': 'limit must be an integer'}), 400
    leads = service.list_realtor_leads(realtor_id, limit=limit)
    return jsonify({'leads': leads, 'count': len(leads)})
