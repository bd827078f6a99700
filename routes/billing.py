"""Billing routes: Stripe webhook receiver and the organization's billing API."""

import logging

from flask import Blueprint, abort, jsonify, request

from extensions import csrf, db, limiter
from services import ledger, seats, subscriptions
from services.auth import get_current_tier, get_current_user, login_required, require_organization
from services.ledger import DEFAULT_HISTORY_LIMIT
from services.seats import SeatLimitError
from services.stripe_billing import MalformedPayloadError, WebhookSignatureError, handle_webhook
from services.tiers import can_access_tier, is_known_tier
from utils import safe_int

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__)

PRICING_PATH = "/pricing"


# ---------------------------------------------------------------------------
# Stripe webhook
# ---------------------------------------------------------------------------

@billing_bp.route("/webhooks/stripe", methods=["POST"])
@csrf.exempt
@limiter.exempt
def webhook_stripe():
    """Handle Stripe webhook events."""
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature", "")
    try:
        result = handle_webhook(payload, sig_header)
    except WebhookSignatureError as e:
        logger.warning("Stripe webhook rejected: %s", e)
        return jsonify({"error": "invalid signature"}), 400
    except MalformedPayloadError as e:
        logger.warning("Stripe webhook payload rejected: %s", e)
        return jsonify({"error": "malformed payload"}), 400
    except Exception:
        db.session.rollback()
        logger.exception("Stripe webhook processing failed")
        return jsonify({"error": "processing failed"}), 500
    return jsonify({"received": True, "duplicate": result.duplicate}), 200


# ---------------------------------------------------------------------------
# Organization billing API
# ---------------------------------------------------------------------------

@billing_bp.route("/billing/subscription")
@login_required
def subscription():
    org = require_organization()
    sub = subscriptions.get_by_organization(org)
    return jsonify({"subscription": sub.to_dict() if sub else None})


@billing_bp.route("/billing/stats")
@login_required
def stats():
    return jsonify(subscriptions.get_stats(require_organization()))


@billing_bp.route("/billing/history")
@login_required
def history():
    org = require_organization()
    limit = safe_int(request.args.get("limit"), DEFAULT_HISTORY_LIMIT)
    offset = safe_int(request.args.get("offset"), 0)
    event_type = request.args.get("event_type") or None
    events = ledger.get_history(org, limit=limit, offset=offset, event_type=event_type)
    return jsonify({
        "events": [e.to_dict() for e in events],
        "total": ledger.count_history(org, event_type=event_type),
    })


def _seat_count() -> int:
    data = request.get_json(silent=True) or request.form
    count = safe_int(data.get("count"), 0)
    if count < 1:
        abort(400, description="count must be a positive integer")
    return count


@billing_bp.route("/billing/seats/add", methods=["POST"])
@login_required
@limiter.limit("30 per minute")
def add_seats():
    org = require_organization()
    count = _seat_count()
    try:
        sub = seats.add_seats(org, count, user_id=get_current_user().id)
    except SeatLimitError as e:
        abort(400, description=str(e))
    except LookupError:
        abort(404, description="No subscription for this organization.")
    return jsonify({"subscription": sub.to_dict()})


@billing_bp.route("/billing/seats/remove", methods=["POST"])
@login_required
@limiter.limit("30 per minute")
def remove_seats():
    org = require_organization()
    count = _seat_count()
    try:
        sub = seats.remove_seats(org, count, user_id=get_current_user().id)
    except SeatLimitError as e:
        abort(400, description=str(e))
    except LookupError:
        abort(404, description="No subscription for this organization.")
    return jsonify({"subscription": sub.to_dict()})


@billing_bp.route("/billing/pending-downgrade/clear", methods=["POST"])
@login_required
def clear_pending_downgrade():
    org = require_organization()
    sub = subscriptions.get_by_organization(org)
    if sub is None:
        abort(404, description="No subscription for this organization.")
    subscriptions.clear_pending_downgrade(sub)
    db.session.commit()
    return jsonify({"subscription": sub.to_dict()})


@billing_bp.route("/billing/require-tier")
@login_required
def require_tier():
    """Answer whether the organization's plan includes ``?tier=``."""
    required = request.args.get("tier", "")
    if not is_known_tier(required):
        abort(400, description="tier query parameter required")
    current = get_current_tier()
    body = {"tier": current, "required": required}
    if not can_access_tier(current, required):
        return jsonify({**body, "allowed": False, "redirect": PRICING_PATH}), 403
    return jsonify({**body, "allowed": True})
