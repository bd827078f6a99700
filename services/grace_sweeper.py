"""Daily sweep that locks organizations whose grace period has run out."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from extensions import db
from models import Subscription
from services import ledger, subscriptions
from services.ledger import LedgerEntry
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)

EXPIRED_EVENT_TYPE = "grace_period.expired"


@dataclass
class SweepResult:
    checked: int = 0
    locked: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "locked": self.locked,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def expiry_event_id(sub: Subscription) -> str:
    """Synthetic ledger key; one lock per subscription per grace window."""
    started = as_utc(sub.grace_period_started_at)
    return f"{EXPIRED_EVENT_TYPE}:{sub.id}:{int(started.timestamp())}"


def _lock(subscription_id: int, now: datetime) -> bool:
    # Re-read: a payment may have landed since the candidate query ran
    sub = db.session.get(Subscription, subscription_id, populate_existing=True)
    if sub is None or not subscriptions.grace_period_elapsed(sub, now):
        return False
    ends = as_utc(sub.grace_period_ends_at)

    entry = LedgerEntry(
        organization_id=sub.organization_id,
        subscription_ref=sub.external_subscription_ref,
        event_type=EXPIRED_EVENT_TYPE,
        external_event_id=expiry_event_id(sub),
        status="failed",
        description="Grace period expired; access locked",
        metadata={"grace_period_ends_at": ends.isoformat()},
    )
    result = ledger.apply_once(
        entry, lambda: subscriptions.expire_grace_period(sub, now=now)
    )
    return result.created


def check_grace_periods(now: Optional[datetime] = None) -> SweepResult:
    """Lock every subscription whose grace window ended at or before *now*."""
    now = as_utc(now or utc_now())
    result = SweepResult()
    candidate_ids = [
        row.id
        for row in db.session.query(Subscription.id)
        .filter(Subscription.access_status == "grace_period")
        .filter(Subscription.grace_period_ends_at.isnot(None))
        .order_by(Subscription.id)
        .all()
    ]

    for subscription_id in candidate_ids:
        result.checked += 1
        try:
            if _lock(subscription_id, now):
                result.locked += 1
            else:
                result.skipped += 1
        except Exception:
            db.session.rollback()
            result.failed += 1
            logger.exception("Grace period sweep failed for subscription %s", subscription_id)

    logger.info(
        "Grace period sweep: checked=%s locked=%s skipped=%s failed=%s",
        result.checked, result.locked, result.skipped, result.failed,
    )
    return result
