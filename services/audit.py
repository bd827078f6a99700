"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from flask import g, has_request_context

from extensions import db
from models import AuditLog


def _current_user_id() -> Optional[int]:
    if not has_request_context():
        return None
    user = getattr(g, "current_user", None)
    return user.id if user else None


def log_action(
    organization_id: str,
    action: str,
    target_type: str,
    target_id,
    changes: Optional[dict] = None,
    user_id: Optional[int] = None,
) -> None:
    """Record an audit log entry.

    NOTE: This does NOT commit; the entry joins the caller's unit of work
    and is discarded with it on rollback.
    """
    db.session.add(
        AuditLog(
            organization_id=organization_id,
            user_id=user_id if user_id is not None else _current_user_id(),
            action=action,
            target_type=target_type,
            target_id=str(target_id),
            changes=changes,
        )
    )
