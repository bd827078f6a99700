"""Decide whether an organization may use the application right now."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

# Paths a locked organization can still reach, so it can pay or sign out
ALLOWED_WHEN_LOCKED = ("/billing", "/login", "/logout", "/webhooks")

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str
    read_only: bool = False

    def permits(self, method: str) -> bool:
        """Whether a request with *method* may proceed under this decision."""
        if not self.allowed:
            return False
        return not (self.read_only and method.upper() in MUTATING_METHODS)


def is_allow_listed(path: Optional[str]) -> bool:
    if not path:
        return False
    return any(path == prefix or path.startswith(prefix + "/") for prefix in ALLOWED_WHEN_LOCKED)


def evaluate(subscription, path: Optional[str] = None) -> AccessDecision:
    """Pure function of the subscription's access status (and the request path)."""
    if subscription is None:
        return AccessDecision(True, "free")

    status = subscription.access_status
    if status == "active":
        return AccessDecision(True, "active")
    if status == "grace_period":
        return AccessDecision(True, "grace_period")
    if status == "read_only":
        # Allow-listed paths stay writable
        return AccessDecision(True, "read_only", read_only=not is_allow_listed(path))
    if status == "locked":
        if is_allow_listed(path):
            return AccessDecision(True, "locked_allow_listed")
        return AccessDecision(False, "locked")
    return AccessDecision(False, f"unknown_status:{status}")
