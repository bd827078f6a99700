"""Session user and organization context.

Authentication itself happens upstream; by the time a request reaches us the
session carries ``user_id`` and the before_request hook has resolved it.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Optional

from flask import abort, g

from models import User
from services.subscriptions import get_by_organization

logger = logging.getLogger(__name__)


def get_current_user() -> Optional[User]:
    """Return the currently logged-in user from ``flask.g``."""
    return getattr(g, "current_user", None)


def get_current_organization_id() -> Optional[str]:
    user = get_current_user()
    return user.organization_id if user else None


def require_organization() -> str:
    """Return the current organization id or abort with 403."""
    org = get_current_organization_id()
    if org is None:
        abort(403, description="No organization selected.")
    return org


def login_required(f):
    """Decorator that answers 401 if no user is authenticated."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not get_current_user():
            abort(401)
        return f(*args, **kwargs)

    return decorated


def get_current_tier() -> str:
    """Tier of the current organization; organizations without a record are free."""
    org = get_current_organization_id()
    sub = get_by_organization(org) if org else None
    return sub.tier if sub else "free"
