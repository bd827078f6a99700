"""Subscription record store and access-status state machine.

The functions here mutate the session but never commit: webhook handlers run
them inside :func:`services.ledger.apply_once`, and user-facing operations
commit in their own service layer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import func

from extensions import db
from models import VALID_BILLING_INTERVALS, VALID_BILLING_STATUSES, Subscription, User
from services.tiers import TIER_CONFIG, get_tier_config, is_known_tier, subscription_cost
from utils import DAY, as_utc, isoformat, utc_now

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 28

# Provider statuses that have no direct counterpart in VALID_BILLING_STATUSES
_PROVIDER_STATUS_ALIASES = {
    "unpaid": "past_due",
}


def get_grace_period_days() -> int:
    """Return the configured grace period in days."""
    cfg = current_app.config.get("BILLING_CONFIG")
    if cfg and cfg.grace_period_days > 0:
        return cfg.grace_period_days
    return DEFAULT_GRACE_PERIOD_DAYS


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_by_organization(organization_id: str) -> Optional[Subscription]:
    return Subscription.query.filter_by(organization_id=organization_id).first()


def get_by_external_ref(external_subscription_ref: str) -> Optional[Subscription]:
    if not external_subscription_ref:
        return None
    return Subscription.query.filter_by(
        external_subscription_ref=external_subscription_ref
    ).first()


def count_active_users(organization_id: str) -> int:
    return User.query.filter_by(organization_id=organization_id, is_active=True).count()


def _earliest_user_created_at(organization_id: str) -> Optional[datetime]:
    return as_utc(
        db.session.query(func.min(User.created_at))
        .filter(User.organization_id == organization_id)
        .scalar()
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def ensure_free_subscription(organization_id: str, now: Optional[datetime] = None) -> Subscription:
    """Return the organization's record, materializing a free-tier one if absent."""
    sub = get_by_organization(organization_id)
    if sub:
        return sub
    now = now or utc_now()
    free = TIER_CONFIG["free"]
    sub = Subscription(
        organization_id=organization_id,
        tier="free",
        billing_status="active",
        access_status="active",
        billing_interval="monthly",
        seats_included=free.seats_included,
        seats_total=free.seats_included,
        seats_active=0,
        current_period_start=now,
        cancel_at_period_end=False,
        created_at=now,
        updated_at=now,
    )
    db.session.add(sub)
    db.session.flush()
    logger.info("Created free-tier subscription for organization %s", organization_id)
    return sub


def create_subscription(
    *,
    organization_id: str,
    external_customer_ref: Optional[str],
    external_subscription_ref: str,
    tier: str,
    billing_status: str = "active",
    billing_interval: str = "monthly",
    seats_total: Optional[int] = None,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
    upgrade_trigger_feature: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Create the paid record for an organization, or upgrade its existing one.

    An organization without a record is on the free tier, so both paths
    count as a transition from free when the previous tier was free.
    """
    now = now or utc_now()
    tier_cfg = get_tier_config(tier)
    sub = get_by_organization(organization_id)
    previous_tier = sub.tier if sub else "free"
    free_record_created_at = as_utc(sub.created_at) if sub and sub.tier == "free" else None

    if sub is None:
        sub = Subscription(organization_id=organization_id, created_at=now)
        db.session.add(sub)

    sub.external_customer_ref = external_customer_ref
    sub.external_subscription_ref = external_subscription_ref
    sub.tier = tier if is_known_tier(tier) else "starter"
    sub.billing_status = normalize_billing_status(billing_status) or "active"
    sub.billing_interval = billing_interval if billing_interval in VALID_BILLING_INTERVALS else "monthly"
    sub.seats_included = tier_cfg.seats_included
    sub.seats_total = seats_total if seats_total is not None else tier_cfg.seats_included
    sub.seats_active = count_active_users(organization_id)
    sub.current_period_start = current_period_start or now
    sub.current_period_end = current_period_end
    sub.cancel_at_period_end = bool(cancel_at_period_end)
    sub.pending_downgrade_tier = None
    sub.pending_downgrade_effective_at = None
    sub.updated_at = now
    # New checkout restores access, including from locked
    sub.access_status = "active"
    _clear_grace(sub)
    _apply_access_for_status(sub, sub.billing_status, now)

    if previous_tier == "free" and sub.tier != "free":
        record_conversion(
            sub,
            upgraded_at=now,
            trigger_feature=upgrade_trigger_feature,
            free_since=_earliest_user_created_at(organization_id) or free_record_created_at,
        )

    db.session.flush()
    logger.info(
        "Subscription %s for organization %s set to %s (%s)",
        external_subscription_ref, organization_id, sub.tier, sub.billing_status,
    )
    return sub


def record_conversion(
    sub: Subscription,
    *,
    upgraded_at: datetime,
    trigger_feature: Optional[str] = None,
    free_since: Optional[datetime] = None,
) -> bool:
    """Capture free -> paid conversion metadata.  Never overwrites."""
    if sub.upgraded_at is not None:
        return False
    upgraded_at = as_utc(upgraded_at)
    free_since = as_utc(free_since) or upgraded_at
    sub.upgraded_from = "free"
    sub.upgraded_at = upgraded_at
    sub.upgrade_trigger_feature = trigger_feature
    sub.free_tier_created_at = free_since
    sub.days_on_free_tier = max(0, int((upgraded_at - free_since) / DAY))
    return True


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

def normalize_billing_status(raw: Optional[str]) -> Optional[str]:
    """Map a provider status onto VALID_BILLING_STATUSES, or None if unknown."""
    if not raw:
        return None
    status = _PROVIDER_STATUS_ALIASES.get(raw, raw)
    if status not in VALID_BILLING_STATUSES:
        logger.warning("Unknown billing status %r; ignoring", raw)
        return None
    return status


def _clear_grace(sub: Subscription) -> None:
    sub.grace_period_started_at = None
    sub.grace_period_ends_at = None


def _apply_access_for_status(sub: Subscription, provider_status: str, now: datetime) -> None:
    if provider_status == "active":
        sub.access_status = "active"
        _clear_grace(sub)
    elif provider_status == "past_due":
        start_grace_period(sub, get_grace_period_days(), now=now, from_read_only=True)
    elif provider_status in ("canceled", "unpaid"):
        sub.access_status = "read_only"
        _clear_grace(sub)


def sync_from_provider(
    sub: Subscription,
    *,
    provider_status: Optional[str],
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    cancel_at_period_end: Optional[bool] = None,
    tier: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Apply a provider subscription snapshot to the record."""
    now = now or utc_now()
    status = normalize_billing_status(provider_status)
    if status:
        sub.billing_status = status
    if current_period_start is not None:
        sub.current_period_start = current_period_start
    if current_period_end is not None:
        sub.current_period_end = current_period_end
    if cancel_at_period_end is not None:
        sub.cancel_at_period_end = bool(cancel_at_period_end)
    if tier and is_known_tier(tier) and tier != sub.tier:
        logger.info("Organization %s tier %s -> %s", sub.organization_id, sub.tier, tier)
        sub.tier = tier
        sub.seats_included = get_tier_config(tier).seats_included
    if provider_status:
        _apply_access_for_status(sub, provider_status, now)
    sub.updated_at = now
    return sub


def update_status(
    sub: Subscription,
    billing_status: str,
    access_status: Optional[str] = None,
    cancel_at_period_end: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Set billing (and optionally access) status.

    Cancellation always clears the grace window and never leaves the record
    in ``grace_period``.
    """
    if billing_status not in VALID_BILLING_STATUSES:
        raise ValueError(f"Invalid billing status: {billing_status!r}")
    sub.billing_status = billing_status
    if access_status:
        sub.access_status = access_status
    if cancel_at_period_end is not None:
        sub.cancel_at_period_end = bool(cancel_at_period_end)
    if billing_status == "canceled":
        if sub.access_status in ("active", "grace_period"):
            sub.access_status = "read_only"
        _clear_grace(sub)
    elif sub.access_status != "grace_period":
        _clear_grace(sub)
    sub.updated_at = now or utc_now()
    return sub


def start_grace_period(
    sub: Subscription,
    grace_period_days: int,
    now: Optional[datetime] = None,
    from_read_only: bool = False,
) -> bool:
    """Open a grace window.  Returns False when nothing changed.

    An open window is never moved and a locked record is never re-armed.
    A read-only record only re-enters grace when *from_read_only* is set,
    which the provider sync does when a lapsed subscription goes past_due.
    """
    if sub.access_status == "grace_period" and sub.grace_period_started_at:
        return False
    blocked = ("locked",) if from_read_only else ("locked", "read_only")
    if sub.access_status in blocked:
        logger.info(
            "Not starting grace period for organization %s (access=%s)",
            sub.organization_id, sub.access_status,
        )
        return False
    now = now or utc_now()
    sub.access_status = "grace_period"
    sub.grace_period_started_at = now
    sub.grace_period_ends_at = now + timedelta(days=grace_period_days)
    sub.updated_at = now
    logger.info(
        "Organization %s entered grace period until %s",
        sub.organization_id, sub.grace_period_ends_at,
    )
    return True


def end_grace_period(
    sub: Subscription,
    payment_successful: bool,
    now: Optional[datetime] = None,
) -> bool:
    """Close the grace window: restore access on payment, lock otherwise."""
    if payment_successful:
        if sub.access_status not in ("grace_period", "locked"):
            return False
        sub.access_status = "active"
    else:
        if sub.access_status != "grace_period":
            return False
        sub.access_status = "locked"
    _clear_grace(sub)
    sub.updated_at = now or utc_now()
    logger.info(
        "Grace period ended for organization %s -> %s",
        sub.organization_id, sub.access_status,
    )
    return True


def expire_grace_period(sub: Subscription, now: Optional[datetime] = None) -> bool:
    """Lock an organization whose grace window ran out without payment."""
    return end_grace_period(sub, payment_successful=False, now=now)


def grace_period_elapsed(sub: Subscription, now: datetime) -> bool:
    ends = as_utc(sub.grace_period_ends_at)
    return sub.access_status == "grace_period" and ends is not None and as_utc(now) >= ends


# ---------------------------------------------------------------------------
# Seats and pending downgrade
# ---------------------------------------------------------------------------

def update_seats(
    sub: Subscription,
    seats_total: Optional[int] = None,
    seats_active: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Patch seat counters.  Over-limit (active > total) is allowed."""
    for name, value in (("seats_total", seats_total), ("seats_active", seats_active)):
        if value is not None and value < 0:
            raise ValueError(f"{name} must be non-negative, got {value}")
    if seats_total is not None:
        sub.seats_total = seats_total
    if seats_active is not None:
        sub.seats_active = seats_active
    sub.updated_at = now or utc_now()
    return sub


def set_pending_downgrade(
    sub: Subscription,
    tier: str,
    effective_date: datetime,
    now: Optional[datetime] = None,
) -> Subscription:
    if not is_known_tier(tier):
        raise ValueError(f"Unknown tier: {tier!r}")
    sub.pending_downgrade_tier = tier
    sub.pending_downgrade_effective_at = effective_date
    sub.updated_at = now or utc_now()
    return sub


def clear_pending_downgrade(sub: Subscription, now: Optional[datetime] = None) -> Subscription:
    sub.pending_downgrade_tier = None
    sub.pending_downgrade_effective_at = None
    sub.updated_at = now or utc_now()
    return sub


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_stats(organization_id: str, now: Optional[datetime] = None) -> dict:
    """Seat availability and access summary for the billing UI."""
    sub = get_by_organization(organization_id)
    if not sub:
        free = TIER_CONFIG["free"]
        return {
            "has_subscription": False,
            "tier": "free",
            "access_status": "active",
            "seats_included": free.seats_included,
            "seats_total": free.seats_included,
            "seats_active": 0,
            "seats_available": free.seats_included,
            "is_over_limit": False,
            "overage": 0,
            "grace_days_remaining": None,
            "pending_downgrade": None,
            "cost": 0,
        }
    now = as_utc(now or utc_now())
    grace_days_remaining = None
    if sub.access_status == "grace_period" and sub.grace_period_ends_at:
        grace_days_remaining = max(0, (as_utc(sub.grace_period_ends_at) - now).days)
    pending = sub.pending_downgrade
    return {
        "has_subscription": True,
        "tier": sub.tier,
        "access_status": sub.access_status,
        "seats_included": sub.seats_included,
        "seats_total": sub.seats_total,
        "seats_active": sub.seats_active,
        "seats_available": sub.seats_available,
        "is_over_limit": sub.is_over_limit,
        "overage": max(0, sub.seats_active - sub.seats_total),
        "grace_days_remaining": grace_days_remaining,
        "pending_downgrade": (
            {"tier": pending["tier"], "effective_date": pending["effective_date"].isoformat()}
            if pending else None
        ),
        "cost": subscription_cost(sub.tier, sub.billing_interval, sub.seats_total),
    }


def get_conversion_metrics() -> dict:
    """Free -> paid conversions across all organizations, newest first."""
    converted = (
        Subscription.query.filter(Subscription.upgraded_at.isnot(None))
        .order_by(Subscription.upgraded_at.desc())
        .all()
    )
    by_feature: dict[str, int] = {}
    conversions = []
    for sub in converted:
        feature = sub.upgrade_trigger_feature
        by_feature[feature or "unknown"] = by_feature.get(feature or "unknown", 0) + 1
        conversions.append({
            "organization_id": sub.organization_id,
            "upgraded_at": isoformat(sub.upgraded_at),
            "trigger_feature": feature,
            "days_on_free_tier": sub.days_on_free_tier or 0,
        })

    average = None
    if conversions:
        average = round(sum(c["days_on_free_tier"] for c in conversions) / len(conversions))
    return {
        "total_conversions": len(conversions),
        "by_feature": by_feature,
        "average_days_on_free_tier": average,
        "conversions": conversions,
    }


def send_usage_summary() -> int:
    """Log tier and seat usage for every organization.  Returns the count.

    Run weekly by the external scheduler; delivery beyond the log is left
    to whatever consumes it.
    """
    summaries = [
        {
            "organization_id": sub.organization_id,
            "tier": sub.tier,
            "seats_active": sub.seats_active,
            "seats_total": sub.seats_total,
        }
        for sub in Subscription.query.order_by(Subscription.organization_id).all()
    ]
    for summary in summaries:
        logger.info(
            "Usage summary: organization=%s tier=%s seats=%s/%s",
            summary["organization_id"], summary["tier"],
            summary["seats_active"], summary["seats_total"],
        )
    logger.info("Usage summary sent for %s organizations", len(summaries))
    return len(summaries)
