"""SQLAlchemy models for subscriptions, the billing ledger and the user directory."""

from __future__ import annotations

from extensions import db
from utils import as_utc, isoformat, utc_now

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

VALID_TIERS = ("free", "starter", "professional")
VALID_BILLING_STATUSES = {
    "active",
    "past_due",
    "canceled",
    "trialing",
    "paused",
    "incomplete",
    "incomplete_expired",
}
VALID_ACCESS_STATUSES = {"active", "grace_period", "locked", "read_only"}
VALID_BILLING_INTERVALS = {"monthly", "annual"}
VALID_EVENT_STATUSES = {"succeeded", "failed", "pending"}


# ---------------------------------------------------------------------------
# User directory (read model owned by the identity layer)
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    name = db.Column(db.String(120), nullable=False, default="")
    external_user_id = db.Column(db.String(120), unique=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.Index("ix_user_organization_active", "organization_id", "is_active"),
        db.Index("ix_user_organization_created", "organization_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "email": self.email,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": isoformat(self.created_at),
        }


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    """One billing record per organization; the state consulted for access gating."""
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(120), unique=True, nullable=False)
    external_customer_ref = db.Column(db.String(120), unique=True)
    external_subscription_ref = db.Column(db.String(120), unique=True)
    tier = db.Column(db.String(30), nullable=False, default="free")
    billing_status = db.Column(db.String(30), nullable=False, default="active")
    access_status = db.Column(db.String(30), nullable=False, default="active")
    billing_interval = db.Column(db.String(20), nullable=False, default="monthly")
    seats_included = db.Column(db.Integer, nullable=False, default=1)
    seats_total = db.Column(db.Integer, nullable=False, default=1)
    seats_active = db.Column(db.Integer, nullable=False, default=0)
    current_period_start = db.Column(db.DateTime(timezone=True))
    current_period_end = db.Column(db.DateTime(timezone=True))
    grace_period_started_at = db.Column(db.DateTime(timezone=True))
    grace_period_ends_at = db.Column(db.DateTime(timezone=True))
    pending_downgrade_tier = db.Column(db.String(30))
    pending_downgrade_effective_at = db.Column(db.DateTime(timezone=True))
    # Conversion tracking, written once on the free -> paid transition
    upgraded_from = db.Column(db.String(30))
    upgraded_at = db.Column(db.DateTime(timezone=True))
    upgrade_trigger_feature = db.Column(db.String(120))
    free_tier_created_at = db.Column(db.DateTime(timezone=True))
    days_on_free_tier = db.Column(db.Integer)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.CheckConstraint(
            "(grace_period_started_at IS NULL) = (grace_period_ends_at IS NULL)",
            name="grace_window_pair",
        ),
        db.CheckConstraint(
            "(pending_downgrade_tier IS NULL) = (pending_downgrade_effective_at IS NULL)",
            name="pending_downgrade_pair",
        ),
        db.CheckConstraint(
            "seats_included >= 0 AND seats_total >= 0 AND seats_active >= 0",
            name="seats_non_negative",
        ),
        db.Index("ix_subscription_access_status", "access_status"),
    )

    @property
    def is_over_limit(self) -> bool:
        return self.seats_active > self.seats_total

    @property
    def seats_available(self) -> int:
        return self.seats_total - self.seats_active

    @property
    def pending_downgrade(self):
        if not self.pending_downgrade_tier:
            return None
        return {
            "tier": self.pending_downgrade_tier,
            "effective_date": as_utc(self.pending_downgrade_effective_at),
        }

    @property
    def conversion_tracking(self):
        if self.upgraded_at is None:
            return None
        return {
            "free_tier_created_at": as_utc(self.free_tier_created_at),
            "upgraded_at": as_utc(self.upgraded_at),
            "trigger_feature": self.upgrade_trigger_feature,
            "days_on_free_tier": self.days_on_free_tier,
        }

    def to_dict(self) -> dict:
        pending = self.pending_downgrade
        conversion = self.conversion_tracking
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "external_customer_ref": self.external_customer_ref,
            "external_subscription_ref": self.external_subscription_ref,
            "tier": self.tier,
            "billing_status": self.billing_status,
            "access_status": self.access_status,
            "billing_interval": self.billing_interval,
            "seats_included": self.seats_included,
            "seats_total": self.seats_total,
            "seats_active": self.seats_active,
            "current_period_start": isoformat(self.current_period_start),
            "current_period_end": isoformat(self.current_period_end),
            "grace_period_started_at": isoformat(self.grace_period_started_at),
            "grace_period_ends_at": isoformat(self.grace_period_ends_at),
            "pending_downgrade": (
                {"tier": pending["tier"], "effective_date": isoformat(pending["effective_date"])}
                if pending else None
            ),
            "upgraded_from": self.upgraded_from,
            "conversion_tracking": (
                {
                    "free_tier_created_at": isoformat(conversion["free_tier_created_at"]),
                    "upgraded_at": isoformat(conversion["upgraded_at"]),
                    "trigger_feature": conversion["trigger_feature"],
                    "days_on_free_tier": conversion["days_on_free_tier"],
                }
                if conversion else None
            ),
            "cancel_at_period_end": self.cancel_at_period_end,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


# ---------------------------------------------------------------------------
# Billing ledger
# ---------------------------------------------------------------------------

class BillingEvent(db.Model):
    """Append-only record of a billing event, keyed by the provider's event id."""
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(120), nullable=False)
    subscription_ref = db.Column(db.String(120))
    event_type = db.Column(db.String(80), nullable=False)
    external_event_id = db.Column(db.String(255), nullable=False, unique=True)
    amount = db.Column(db.Integer)  # minor currency units
    currency = db.Column(db.String(10))
    status = db.Column(db.String(20), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    event_metadata = db.Column("metadata", db.JSON)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        db.Index("ix_billing_event_org_created", "organization_id", "created_at"),
        db.Index("ix_billing_event_org_type", "organization_id", "event_type"),
        db.Index("ix_billing_event_subscription_ref", "subscription_ref"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "subscription_ref": self.subscription_ref,
            "event_type": self.event_type,
            "external_event_id": self.external_event_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "description": self.description,
            "metadata": self.event_metadata,
            "created_at": isoformat(self.created_at),
        }


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(120), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="SET NULL"))
    action = db.Column(db.String(80), nullable=False)
    target_type = db.Column(db.String(40), nullable=False)
    target_id = db.Column(db.String(120), nullable=False)
    changes = db.Column(db.JSON)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    user = db.relationship("User")

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
    )
