"""Billing event ledger; the single idempotency gate for billing mutations.

Every state change driven by an external event goes through
:func:`apply_once`: the subscription mutation and the ledger insert share one
transaction, and the unique ``external_event_id`` index decides which of two
concurrent deliveries wins.  A redelivered event therefore becomes a no-op
even if a side effect after the original commit (e.g. an email) failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import VALID_EVENT_STATUSES, BillingEvent

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 200


class LedgerImmutableError(Exception):
    """Raised when code attempts to update or delete a billing event."""


@dataclass
class LedgerEntry:
    organization_id: str
    event_type: str
    external_event_id: str
    status: str
    description: str
    subscription_ref: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.status not in VALID_EVENT_STATUSES:
            raise ValueError(f"Invalid billing event status: {self.status!r}")
        if not self.external_event_id:
            raise ValueError("external_event_id is required")


@dataclass
class AppendResult:
    record_id: int
    created: bool


def _find_event_id(external_event_id: str) -> Optional[int]:
    return (
        db.session.query(BillingEvent.id)
        .filter(BillingEvent.external_event_id == external_event_id)
        .scalar()
    )


def is_event_processed(external_event_id: str) -> bool:
    """Return True when a record with *external_event_id* already exists."""
    return _find_event_id(external_event_id) is not None


def apply_once(
    entry: LedgerEntry,
    mutation: Optional[Callable[[], None]] = None,
) -> AppendResult:
    """Run *mutation* and append *entry* atomically, at most once per event id.

    Returns the record id and whether this call created it.  A duplicate is
    a successful no-op: *mutation* is not run (or is rolled back when a
    concurrent delivery won the insert race).  Any other persistence error
    rolls back and propagates so the provider retries.
    """
    existing_id = _find_event_id(entry.external_event_id)
    if existing_id is not None:
        logger.info(
            "Billing event %s already recorded (id=%s); skipping",
            entry.external_event_id, existing_id,
        )
        return AppendResult(existing_id, False)

    try:
        if mutation is not None:
            mutation()
        record = BillingEvent(
            organization_id=entry.organization_id,
            subscription_ref=entry.subscription_ref,
            event_type=entry.event_type,
            external_event_id=entry.external_event_id,
            amount=entry.amount,
            currency=entry.currency,
            status=entry.status,
            description=entry.description,
            event_metadata=entry.metadata or None,
        )
        db.session.add(record)
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        existing_id = _find_event_id(entry.external_event_id)
        if existing_id is None:
            raise
        logger.info(
            "Billing event %s recorded concurrently (id=%s); rolled back",
            entry.external_event_id, existing_id,
        )
        return AppendResult(existing_id, False)
    except SQLAlchemyError:
        db.session.rollback()
        raise

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing_id = _find_event_id(entry.external_event_id)
        if existing_id is None:
            raise
        return AppendResult(existing_id, False)
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info(
        "Recorded billing event %s (%s) for organization %s",
        entry.external_event_id, entry.event_type, entry.organization_id,
    )
    return AppendResult(record.id, True)


def append(entry: LedgerEntry) -> int:
    """Idempotent append; returns the id of the new or the existing record."""
    return apply_once(entry).record_id


def get_history(
    organization_id: str,
    limit: int = DEFAULT_HISTORY_LIMIT,
    offset: int = 0,
    event_type: Optional[str] = None,
) -> list[BillingEvent]:
    """Billing events for an organization, most recent first."""
    limit = max(1, min(limit, MAX_HISTORY_LIMIT))
    query = BillingEvent.query.filter_by(organization_id=organization_id)
    if event_type:
        query = query.filter_by(event_type=event_type)
    return (
        query.order_by(BillingEvent.created_at.desc(), BillingEvent.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )


def count_history(organization_id: str, event_type: Optional[str] = None) -> int:
    query = BillingEvent.query.filter_by(organization_id=organization_id)
    if event_type:
        query = query.filter_by(event_type=event_type)
    return query.count()


def get_by_subscription(subscription_ref: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[BillingEvent]:
    return (
        BillingEvent.query.filter_by(subscription_ref=subscription_ref)
        .order_by(BillingEvent.created_at.desc(), BillingEvent.id.desc())
        .limit(max(1, min(limit, MAX_HISTORY_LIMIT)))
        .all()
    )


# ---------------------------------------------------------------------------
# Immutability guard
# ---------------------------------------------------------------------------

def _reject_mutation(_mapper, _connection, target):
    raise LedgerImmutableError(
        f"Billing event {target.external_event_id} is append-only"
    )


event.listen(BillingEvent, "before_update", _reject_mutation)
event.listen(BillingEvent, "before_delete", _reject_mutation)
