"""Internal job endpoints, called by the external scheduler."""

import hmac
import logging

from flask import Blueprint, abort, current_app, jsonify, request

from extensions import csrf, limiter
from services.grace_sweeper import check_grace_periods
from services.subscriptions import send_usage_summary

logger = logging.getLogger(__name__)

jobs_bp = Blueprint("jobs", __name__, url_prefix="/internal/jobs")


def _require_internal_token():
    expected = current_app.config["JOBS_CONFIG"].internal_token
    supplied = request.headers.get("X-Internal-Token", "")
    if not expected or not hmac.compare_digest(supplied, expected):
        logger.warning("Rejected internal job call from %s", request.remote_addr)
        abort(403)


@jobs_bp.route("/grace-periods", methods=["POST"])
@csrf.exempt
@limiter.exempt
def grace_periods():
    """Lock organizations whose grace period has ended.  Run daily."""
    _require_internal_token()
    result = check_grace_periods()
    return jsonify(result.to_dict())


@jobs_bp.route("/usage-summary", methods=["POST"])
@csrf.exempt
@limiter.exempt
def usage_summary():
    """Log the per-organization usage digest.  Run weekly."""
    _require_internal_token()
    return jsonify({"organizations": send_usage_summary()})
