"""Typed views of the Stripe webhook payloads the billing engine consumes.

Only the fields the handlers read are extracted; everything else in the
provider payload is ignored so API-version additions never break parsing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from utils import from_epoch, safe_int

logger = logging.getLogger(__name__)

_INTERVALS = {"month": "monthly", "year": "annual"}


class MalformedPayloadError(ValueError):
    """Raised when a webhook body is not a usable Stripe event."""


def _ref(value) -> Optional[str]:
    """Return an object id whether Stripe sent the id or the expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _metadata(obj: dict) -> dict:
    raw = obj.get("metadata")
    return {str(k): str(v) for k, v in raw.items()} if isinstance(raw, dict) else {}


def _text(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _first(value) -> dict:
    """First element of a list when it is an object, else an empty dict."""
    if isinstance(value, list) and value:
        return _dict(value[0])
    return {}


def _first_item(obj: dict) -> dict:
    return _first(_dict(obj.get("items")).get("data"))


def normalize_interval(raw: Optional[str]) -> str:
    if not isinstance(raw, str):
        return "monthly"
    if raw in _INTERVALS.values():
        return raw
    return _INTERVALS.get(raw, "monthly")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data: dict = field(repr=False)
    created: Optional[datetime] = None


def parse_event(payload: str) -> WebhookEvent:
    try:
        body = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise MalformedPayloadError(f"Invalid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise MalformedPayloadError("Event body must be a JSON object")
    event_id = body.get("id")
    event_type = body.get("type")
    data = (body.get("data") or {}).get("object") if isinstance(body.get("data"), dict) else None
    if not event_id or not event_type or not isinstance(data, dict):
        raise MalformedPayloadError("Event is missing id, type or data.object")
    return WebhookEvent(
        id=str(event_id),
        type=str(event_type),
        data=data,
        created=from_epoch(body.get("created")),
    )


# ---------------------------------------------------------------------------
# Per-type payloads
# ---------------------------------------------------------------------------

def parse_object(payload_cls, obj: dict):
    """Build *payload_cls* from a data.object, rejecting unreadable shapes."""
    try:
        return payload_cls.from_object(obj)
    except (AttributeError, TypeError, ValueError) as exc:
        raise MalformedPayloadError(f"Unreadable {payload_cls.__name__}: {exc}") from exc


@dataclass(frozen=True)
class CheckoutSessionCompleted:
    session_id: str
    mode: Optional[str]
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    organization_id: Optional[str]
    tier: Optional[str]
    seats: Optional[int]
    billing_interval: str
    trigger_feature: Optional[str]

    @classmethod
    def from_object(cls, obj: dict) -> "CheckoutSessionCompleted":
        meta = _metadata(obj)
        seats = safe_int(meta.get("seats"), default=0) or None
        return cls(
            session_id=str(obj.get("id", "")),
            mode=_text(obj.get("mode")),
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=_ref(obj.get("subscription")),
            organization_id=meta.get("organizationId") or None,
            tier=meta.get("tier") or None,
            seats=seats,
            billing_interval=normalize_interval(meta.get("billingInterval")),
            trigger_feature=meta.get("triggerFeature") or None,
        )


@dataclass(frozen=True)
class SubscriptionPayload:
    id: str
    customer_ref: Optional[str]
    status: Optional[str]
    cancel_at_period_end: bool
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    price_id: Optional[str]
    quantity: Optional[int]
    billing_interval: str
    organization_id: Optional[str]
    tier: Optional[str]
    trigger_feature: Optional[str]

    @classmethod
    def from_object(cls, obj: dict) -> "SubscriptionPayload":
        item = _first_item(obj)
        price = item.get("price") or {}
        if not isinstance(price, dict):
            price = {"id": price}
        meta = _metadata(obj)
        # Newer API versions moved the period onto the subscription item
        period_start = obj.get("current_period_start", item.get("current_period_start"))
        period_end = obj.get("current_period_end", item.get("current_period_end"))
        return cls(
            id=str(obj.get("id", "")),
            customer_ref=_ref(obj.get("customer")),
            status=_text(obj.get("status")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            current_period_start=from_epoch(period_start),
            current_period_end=from_epoch(period_end),
            price_id=_ref(price),
            quantity=safe_int(item.get("quantity"), default=0) or None,
            billing_interval=normalize_interval(_dict(price.get("recurring")).get("interval")),
            organization_id=meta.get("organizationId") or None,
            tier=meta.get("tier") or None,
            trigger_feature=meta.get("triggerFeature") or None,
        )


@dataclass(frozen=True)
class SchedulePhase:
    start_date: Optional[datetime]
    price_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionSchedulePayload:
    id: str
    subscription_ref: Optional[str]
    phases: tuple

    @property
    def last_phase(self) -> Optional[SchedulePhase]:
        return self.phases[-1] if self.phases else None

    @classmethod
    def from_object(cls, obj: dict) -> "SubscriptionSchedulePayload":
        phases = []
        raw_phases = obj.get("phases")
        for phase in raw_phases if isinstance(raw_phases, list) else []:
            if not isinstance(phase, dict):
                continue
            price_id = _ref(_first(phase.get("items")).get("price"))
            phases.append(SchedulePhase(from_epoch(phase.get("start_date")), price_id))
        return cls(
            id=str(obj.get("id", "")),
            subscription_ref=_ref(obj.get("subscription")),
            phases=tuple(phases),
        )


@dataclass(frozen=True)
class InvoicePayload:
    id: str
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    amount_paid: int
    amount_due: int
    currency: Optional[str]
    billing_reason: Optional[str]
    attempt_count: int

    @classmethod
    def from_object(cls, obj: dict) -> "InvoicePayload":
        sub_ref = _ref(obj.get("subscription"))
        if not sub_ref:
            details = _dict(_dict(obj.get("parent")).get("subscription_details"))
            sub_ref = _ref(details.get("subscription"))
        return cls(
            id=str(obj.get("id", "")),
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=sub_ref,
            amount_paid=safe_int(obj.get("amount_paid")),
            amount_due=safe_int(obj.get("amount_due")),
            currency=_text(obj.get("currency")),
            billing_reason=_text(obj.get("billing_reason")),
            attempt_count=safe_int(obj.get("attempt_count")),
        )
