"""
Health routes — liveness, circuit breaker states, scheduler cadence.
"""
import logging
from flask import Blueprint, jsonify

from leadengine.services.circuit_breaker import get_all_breakers, get_breaker, BREAKER_SPECS

logger = logging.getLogger('routes.health')

bp = Blueprint('health', __name__)


@bp.route('/health')
def health_check():
    """Health check endpoint."""
    return jsonify({"status": "healthy"}), 200


@bp.route('/api/health')
def service_health():
    """Circuit breaker state for every outbound dependency."""
    breakers = {name: breaker.get_health() for name, breaker in get_all_breakers().items()}
    degraded = any(b['state'] != 'closed' for b in breakers.values())
    return jsonify({'status': 'degraded' if degraded else 'healthy', 'services': breakers})


@bp.route('/api/health/<service>/reset', methods=['POST'])
def reset_breaker(service):
    if service not in BREAKER_SPECS:
        return jsonify({'error': f'Unknown service: {service}'}), 404
    get_breaker(service).reset()
    logger.info("Circuit breaker '%s' reset manually", service)
    return jsonify({'status': 'success', 'service': service})


@bp.route('/api/scheduler')
def scheduler_status():
    """Last start, pending RQ run and next run time per recurring job."""
    from leadengine.distribution.scheduler import build_scheduler
    try:
        jobs = build_scheduler().status()
    except Exception as e:
        logger.error("Error reading scheduler status: %s", e)
        return jsonify({'error': str(e)}), 503
    return jsonify({'jobs': jobs})
