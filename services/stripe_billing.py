"""Stripe webhook ingestion: signature verification, parsing and dispatch."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import stripe
from flask import current_app

from services import ledger, subscriptions
from services.ledger import AppendResult, LedgerEntry
from services.stripe_events import (
    CheckoutSessionCompleted,
    InvoicePayload,
    MalformedPayloadError,
    SubscriptionPayload,
    SubscriptionSchedulePayload,
    WebhookEvent,
    parse_event,
    parse_object,
)
from services.tiers import tier_for_price
from utils import utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "HANDLERS",
    "MalformedPayloadError",
    "WebhookResult",
    "WebhookSignatureError",
    "handle_webhook",
    "verify_signature",
]


class WebhookSignatureError(Exception):
    """Raised when the Stripe-Signature header is missing or does not verify."""


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    handled: bool
    duplicate: bool = False
    record_id: Optional[int] = None


def _billing_config():
    return current_app.config["BILLING_CONFIG"]


def _currency(raw: Optional[str]) -> str:
    if raw:
        return raw.lower()
    return current_app.config["APP_CONFIG"].currency


def verify_signature(payload: str, sig_header: Optional[str]) -> None:
    cfg = _billing_config()
    if not cfg.webhook_secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, cfg.webhook_secret, cfg.webhook_tolerance
        )
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(str(e)) from e


# ---------------------------------------------------------------------------
# Handlers: each returns the ledger outcome, or None when nothing applied
# ---------------------------------------------------------------------------

def handle_checkout_completed(event: WebhookEvent) -> Optional[AppendResult]:
    session = parse_object(CheckoutSessionCompleted, event.data)
    if session.mode != "subscription":
        logger.info("Ignoring checkout session %s with mode %s", session.session_id, session.mode)
        return None
    if not (session.organization_id and session.tier and session.seats and session.subscription_ref):
        logger.warning("Checkout session %s is missing subscription metadata", session.session_id)
        return None
    if subscriptions.get_by_external_ref(session.subscription_ref):
        logger.info("Subscription %s already exists; checkout is a no-op", session.subscription_ref)
        return None

    now = utc_now()
    period_end = now + timedelta(days=_billing_config().checkout_period_days)

    def mutation():
        subscriptions.create_subscription(
            organization_id=session.organization_id,
            external_customer_ref=session.customer_ref,
            external_subscription_ref=session.subscription_ref,
            tier=session.tier,
            billing_status="active",
            billing_interval=session.billing_interval,
            seats_total=session.seats,
            current_period_start=now,
            current_period_end=period_end,
            upgrade_trigger_feature=session.trigger_feature,
            now=now,
        )

    entry = LedgerEntry(
        organization_id=session.organization_id,
        subscription_ref=session.subscription_ref,
        event_type=event.type,
        external_event_id=event.id,
        status="succeeded",
        description=f"Subscribed to {session.tier} with {session.seats} seats",
        metadata={"tier": session.tier, "seats": session.seats, "session_id": session.session_id},
    )
    return ledger.apply_once(entry, mutation)


def handle_subscription_created(event: WebhookEvent) -> Optional[AppendResult]:
    payload = parse_object(SubscriptionPayload, event.data)
    existing = subscriptions.get_by_external_ref(payload.id)

    if existing is not None:
        organization_id = existing.organization_id

        def mutation():
            subscriptions.sync_from_provider(
                existing,
                provider_status=payload.status,
                current_period_start=payload.current_period_start,
                current_period_end=payload.current_period_end,
                cancel_at_period_end=payload.cancel_at_period_end,
                tier=tier_for_price(payload.price_id),
            )
    else:
        if not payload.organization_id:
            logger.warning("Subscription %s created without organizationId metadata", payload.id)
            return None
        organization_id = payload.organization_id
        tier = payload.tier or tier_for_price(payload.price_id) or "starter"

        def mutation():
            subscriptions.create_subscription(
                organization_id=organization_id,
                external_customer_ref=payload.customer_ref,
                external_subscription_ref=payload.id,
                tier=tier,
                billing_status=payload.status or "active",
                billing_interval=payload.billing_interval,
                seats_total=payload.quantity,
                current_period_start=payload.current_period_start,
                current_period_end=payload.current_period_end,
                cancel_at_period_end=payload.cancel_at_period_end,
                upgrade_trigger_feature=payload.trigger_feature,
            )

    entry = LedgerEntry(
        organization_id=organization_id,
        subscription_ref=payload.id,
        event_type=event.type,
        external_event_id=event.id,
        status="succeeded",
        description=f"Subscription created ({payload.status})",
        metadata={"status": payload.status, "price_id": payload.price_id},
    )
    return ledger.apply_once(entry, mutation)


def handle_subscription_updated(event: WebhookEvent) -> Optional[AppendResult]:
    payload = parse_object(SubscriptionPayload, event.data)
    sub = subscriptions.get_by_external_ref(payload.id)
    if sub is None:
        logger.info("Update for unknown subscription %s; ignoring", payload.id)
        return None

    def mutation():
        subscriptions.sync_from_provider(
            sub,
            provider_status=payload.status,
            current_period_start=payload.current_period_start,
            current_period_end=payload.current_period_end,
            cancel_at_period_end=payload.cancel_at_period_end,
            tier=tier_for_price(payload.price_id),
        )

    entry = LedgerEntry(
        organization_id=sub.organization_id,
        subscription_ref=payload.id,
        event_type=event.type,
        external_event_id=event.id,
        status="succeeded",
        description=f"Subscription updated ({payload.status})",
        metadata={
            "status": payload.status,
            "cancel_at_period_end": payload.cancel_at_period_end,
            "price_id": payload.price_id,
        },
    )
    return ledger.apply_once(entry, mutation)


def handle_schedule_created(event: WebhookEvent) -> Optional[AppendResult]:
    schedule = parse_object(SubscriptionSchedulePayload, event.data)
    sub = subscriptions.get_by_external_ref(schedule.subscription_ref)
    if sub is None:
        logger.info("Schedule %s for unknown subscription; ignoring", schedule.id)
        return None
    phase = schedule.last_phase
    if phase is None or phase.start_date is None:
        logger.warning("Schedule %s has no dated phase; ignoring", schedule.id)
        return None
    tier = tier_for_price(phase.price_id) or sub.tier

    def mutation():
        subscriptions.set_pending_downgrade(sub, tier, phase.start_date)

    entry = LedgerEntry(
        organization_id=sub.organization_id,
        subscription_ref=schedule.subscription_ref,
        event_type=event.type,
        external_event_id=event.id,
        status="pending",
        description=f"Change to {tier} scheduled for {phase.start_date.date().isoformat()}",
        metadata={"schedule_id": schedule.id, "tier": tier},
    )
    return ledger.apply_once(entry, mutation)


def handle_payment_succeeded(event: WebhookEvent) -> Optional[AppendResult]:
    invoice = parse_object(InvoicePayload, event.data)
    sub = subscriptions.get_by_external_ref(invoice.subscription_ref)
    if sub is None:
        logger.info("Payment for unknown subscription %s; ignoring", invoice.subscription_ref)
        return None

    def mutation():
        subscriptions.end_grace_period(sub, payment_successful=True)
        if sub.billing_status == "past_due":
            subscriptions.update_status(sub, "active")

    entry = LedgerEntry(
        organization_id=sub.organization_id,
        subscription_ref=invoice.subscription_ref,
        event_type=event.type,
        external_event_id=event.id,
        amount=invoice.amount_paid,
        currency=_currency(invoice.currency),
        status="succeeded",
        description="Payment received",
        metadata={"invoice_id": invoice.id, "billing_reason": invoice.billing_reason},
    )
    return ledger.apply_once(entry, mutation)


def handle_payment_failed(event: WebhookEvent) -> Optional[AppendResult]:
    invoice = parse_object(InvoicePayload, event.data)
    sub = subscriptions.get_by_external_ref(invoice.subscription_ref)
    if sub is None:
        logger.info("Failed payment for unknown subscription %s; ignoring", invoice.subscription_ref)
        return None
    grace_days = subscriptions.get_grace_period_days()

    def mutation():
        if sub.billing_status != "canceled":
            subscriptions.update_status(sub, "past_due")
        subscriptions.start_grace_period(sub, grace_days)

    entry = LedgerEntry(
        organization_id=sub.organization_id,
        subscription_ref=invoice.subscription_ref,
        event_type=event.type,
        external_event_id=event.id,
        amount=invoice.amount_due,
        currency=_currency(invoice.currency),
        status="failed",
        description="Payment failed",
        metadata={"invoice_id": invoice.id, "attempt_count": invoice.attempt_count},
    )
    return ledger.apply_once(entry, mutation)


def handle_subscription_deleted(event: WebhookEvent) -> Optional[AppendResult]:
    payload = parse_object(SubscriptionPayload, event.data)
    sub = subscriptions.get_by_external_ref(payload.id)
    if sub is None:
        logger.info("Deletion of unknown subscription %s; ignoring", payload.id)
        return None

    def mutation():
        subscriptions.update_status(
            sub, "canceled", access_status="read_only", cancel_at_period_end=False
        )

    entry = LedgerEntry(
        organization_id=sub.organization_id,
        subscription_ref=payload.id,
        event_type=event.type,
        external_event_id=event.id,
        status="succeeded",
        description="Subscription canceled",
    )
    return ledger.apply_once(entry, mutation)


HANDLERS: dict[str, Callable[[WebhookEvent], Optional[AppendResult]]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "subscription_schedule.created": handle_schedule_created,
    "invoice.payment_succeeded": handle_payment_succeeded,
    "invoice.payment_failed": handle_payment_failed,
    "customer.subscription.deleted": handle_subscription_deleted,
}


def handle_webhook(payload: str, sig_header: Optional[str]) -> WebhookResult:
    """Verify, parse and apply a Stripe webhook delivery.

    Raises WebhookSignatureError / MalformedPayloadError for rejected
    deliveries; persistence errors propagate so the provider retries.
    """
    verify_signature(payload, sig_header)
    event = parse_event(payload)

    handler = HANDLERS.get(event.type)
    if handler is None:
        logger.info("Ignoring unhandled Stripe event %s (%s)", event.id, event.type)
        return WebhookResult(event.id, event.type, handled=False)

    if ledger.is_event_processed(event.id):
        logger.info("Stripe event %s already processed", event.id)
        return WebhookResult(event.id, event.type, handled=True, duplicate=True)

    outcome = handler(event)
    if outcome is None:
        return WebhookResult(event.id, event.type, handled=False)
    return WebhookResult(
        event.id,
        event.type,
        handled=True,
        duplicate=not outcome.created,
        record_id=outcome.record_id,
    )
