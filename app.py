"""Application factory; clean entry point for the Flask application."""

from __future__ import annotations

import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import event
from werkzeug.exceptions import HTTPException

from cli import cli as billing_cli
from config import enable_sqlite_fks, load_config
from extensions import csrf, db, limiter
from models import AuditLog, BillingEvent, Subscription, User
from routes import register_blueprints
from services import subscriptions
from services.access_policy import evaluate

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

__all__ = [
    "AuditLog",
    "BillingEvent",
    "Subscription",
    "User",
    "create_app",
    "db",
]

# Endpoints the access gate never blocks
_ACCESS_EXEMPT = {
    "billing.webhook_stripe",
    "jobs.grace_periods",
    "jobs.usage_summary",
    "static",
}

# Where the UI sends locked organizations
BILLING_SETTINGS_PATH = "/settings/billing"


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, jobs_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    app.config["JOBS_CONFIG"] = jobs_cfg

    # Session security
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = (
        os.environ.get("FLASK_ENV", "") != "development"
    )
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()

    register_blueprints(app)
    app.cli.add_command(billing_cli, name="billing")

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    @app.before_request
    def load_current_user():
        """Set ``g.current_user`` and ``g.organization_id`` from the session."""
        g.current_user = None
        g.organization_id = None
        user_id = session.get("user_id")
        if not user_id:
            return
        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            session.clear()
            return
        g.current_user = user
        g.organization_id = user.organization_id

    @app.before_request
    def check_subscription_access():
        """Enforce the organization's access status on every request."""
        if not request.endpoint or request.endpoint in _ACCESS_EXEMPT:
            return None
        org = getattr(g, "organization_id", None)
        if not org:
            return None
        sub = subscriptions.get_by_organization(org)
        decision = evaluate(sub, request.path)
        if decision.permits(request.method):
            return None
        if not decision.allowed:
            logger.info("Blocked %s %s for locked organization %s", request.method, request.path, org)
            return jsonify({
                "error": "subscription_locked",
                "message": "Your subscription is locked. Update your payment details to continue.",
                "redirect": BILLING_SETTINGS_PATH,
            }), 403
        return jsonify({
            "error": "read_only",
            "message": "Your subscription has ended. The account is read-only.",
            "redirect": BILLING_SETTINGS_PATH,
        }), 403

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({"error": error.name, "message": error.description}), error.code

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return jsonify({"error": "Too Many Requests", "message": "Rate limit exceeded."}), 429

    @app.errorhandler(500)
    def server_error(_error):
        db.session.rollback()
        return jsonify({"error": "Internal Server Error", "message": "Internal server error."}), 500

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
