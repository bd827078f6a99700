"""Seat reconciliation: keep ``seats_active`` equal to the active user count."""

from __future__ import annotations

import logging
from typing import Optional

from extensions import db
from services import subscriptions
from services.audit import log_action
from services.tiers import get_tier_config

logger = logging.getLogger(__name__)


class SeatLimitError(ValueError):
    """Raised when a seat change would leave the tier's allowed range."""


def recalculate(organization_id: str) -> int:
    """Recount active users and store the result.  Does not commit.

    The count is always taken from the user table, so running this twice in a
    row is a no-op the second time.  Returns the active user count even when
    the organization has no subscription record.
    """
    active = subscriptions.count_active_users(organization_id)
    sub = subscriptions.get_by_organization(organization_id)
    if sub is None:
        return active
    if sub.seats_active != active:
        logger.info(
            "Organization %s seats_active %s -> %s",
            organization_id, sub.seats_active, active,
        )
        subscriptions.update_seats(sub, seats_active=active)
        if sub.is_over_limit:
            logger.warning(
                "Organization %s is over its seat limit (%s active / %s total)",
                organization_id, sub.seats_active, sub.seats_total,
            )
    return active


def _change_seats(organization_id: str, delta: int, user_id: Optional[int]):
    sub = subscriptions.get_by_organization(organization_id)
    if sub is None:
        raise LookupError(f"No subscription for organization {organization_id}")
    tier = get_tier_config(sub.tier)
    new_total = sub.seats_total + delta
    if new_total < tier.seats_min or new_total > tier.seats_max:
        raise SeatLimitError(
            f"{tier.name} plan allows {tier.seats_min}-{tier.seats_max} seats, "
            f"requested {new_total}"
        )
    old_total = sub.seats_total
    subscriptions.update_seats(sub, seats_total=new_total)
    recalculate(organization_id)
    log_action(
        organization_id,
        "seats.changed",
        "subscription",
        sub.id,
        changes={"seats_total": [old_total, new_total]},
        user_id=user_id,
    )
    db.session.commit()
    return sub


def add_seats(organization_id: str, count: int, user_id: Optional[int] = None):
    """Buy *count* additional seats."""
    if count < 1:
        raise SeatLimitError("Seat count must be at least 1")
    return _change_seats(organization_id, count, user_id)


def remove_seats(organization_id: str, count: int, user_id: Optional[int] = None):
    """Release *count* seats.  Active users above the new total stay active."""
    if count < 1:
        raise SeatLimitError("Seat count must be at least 1")
    return _change_seats(organization_id, -count, user_id)
