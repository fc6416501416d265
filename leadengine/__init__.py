"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints.
"""
import os
from flask import Flask


def create_app():
    """Create and configure the Flask application."""
    from leadengine.logging_config import configure_logging

    app = Flask(__name__)

    configure_logging(app)

    app.secret_key = os.getenv('SECRET_KEY', 'dev-secret-change-me')

    # Register blueprints
    from leadengine.routes.health import bp as health_bp
    from leadengine.routes.leads import bp as leads_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(leads_bp)

    # Initialize circuit breakers for outbound event consumers
    from leadengine.extensions import redis_client
    from leadengine.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Import models so Base.metadata knows about them (required for SQLAlchemy).
    # Schema is managed by Alembic — no init_db() call.
    import importlib
    importlib.import_module('leadengine.models.lead')
    importlib.import_module('leadengine.models.realtor')
    importlib.import_module('leadengine.models.property')
    importlib.import_module('leadengine.models.realtor_score')
    importlib.import_module('leadengine.models.assignment_log')
    importlib.import_module('leadengine.models.lead_event')

    return app
