"""User directory operations that affect seat usage."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from extensions import db
from models import User
from services import seats, subscriptions
from services.audit import log_action
from utils import utc_now

logger = logging.getLogger(__name__)


class UserNotFoundError(LookupError):
    """Raised when a user id does not resolve (within the organization)."""


@dataclass
class SeatChange:
    status: str  # deactivated | reactivated | noop
    seats_active: int
    organization_id: str

    def to_dict(self) -> dict:
        return asdict(self)


def _get_user(user_id: int, organization_id: Optional[str]) -> User:
    user = db.session.get(User, user_id)
    if user is None or (organization_id is not None and user.organization_id != organization_id):
        raise UserNotFoundError("User not found")
    return user


def create_user(
    organization_id: str,
    email: str,
    name: str = "",
    external_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> User:
    """Add an active user, materializing the free-tier record on first use."""
    now = now or utc_now()
    subscriptions.ensure_free_subscription(organization_id, now=now)
    user = User(
        organization_id=organization_id,
        email=email.strip().lower(),
        name=name,
        external_user_id=external_user_id,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.session.add(user)
    db.session.flush()
    seats.recalculate(organization_id)
    log_action(organization_id, "user.created", "user", user.id, changes={"email": user.email})
    db.session.commit()
    logger.info("Created user %s in organization %s", user.id, organization_id)
    return user


def _set_active(user_id: int, active: bool, organization_id: Optional[str]) -> SeatChange:
    user = _get_user(user_id, organization_id)
    org = user.organization_id
    if user.is_active == active:
        sub = subscriptions.get_by_organization(org)
        current = sub.seats_active if sub else subscriptions.count_active_users(org)
        return SeatChange("noop", current, org)

    user.is_active = active
    db.session.flush()
    count = seats.recalculate(org)
    status = "reactivated" if active else "deactivated"
    log_action(org, f"user.{status}", "user", user.id, changes={"is_active": [not active, active]})
    db.session.commit()
    logger.info("User %s %s; organization %s has %s active seats", user_id, status, org, count)
    return SeatChange(status, count, org)


def deactivate_user(user_id: int, organization_id: Optional[str] = None) -> SeatChange:
    return _set_active(user_id, False, organization_id)


def reactivate_user(user_id: int, organization_id: Optional[str] = None) -> SeatChange:
    """Reactivate a user.  Allowed even when it puts the organization over its limit."""
    return _set_active(user_id, True, organization_id)
