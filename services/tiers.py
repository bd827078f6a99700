"""Tier catalogue: seat bounds and prices per subscription tier."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import current_app

PER_SEAT_PRICE = 1000  # minor units per additional seat per month


@dataclass(frozen=True)
class TierConfig:
    name: str
    seats_included: int
    seats_min: int
    seats_max: int
    price_monthly: int
    price_annual: int


TIER_CONFIG: dict[str, TierConfig] = {
    "free": TierConfig("Free", 1, 1, 1, 0, 0),
    "starter": TierConfig("Starter", 5, 5, 19, 5000, 50000),
    "professional": TierConfig("Professional", 20, 20, 40, 25000, 250000),
}

TIER_RANK = {"free": 0, "starter": 1, "professional": 2}


def get_tier_config(tier: Optional[str]) -> TierConfig:
    """Return the config for *tier*, falling back to starter for unknown slugs."""
    return TIER_CONFIG.get(tier or "", TIER_CONFIG["starter"])


def is_known_tier(tier: Optional[str]) -> bool:
    return tier in TIER_CONFIG


def can_access_tier(current: str, required: str) -> bool:
    return TIER_RANK.get(current, 0) >= TIER_RANK.get(required, 0)


def tier_for_price(price_id: Optional[str]) -> Optional[str]:
    """Map a provider price id to a tier using the configured price table."""
    if not price_id:
        return None
    cfg = current_app.config.get("BILLING_CONFIG")
    if not cfg:
        return None
    return cfg.price_tiers.get(price_id)


def subscription_cost(tier: str, interval: str, seats_total: int) -> int:
    """Total cost in minor units for *seats_total* seats on *tier*."""
    if tier == "free":
        return 0
    config = get_tier_config(tier)
    base = config.price_annual if interval == "annual" else config.price_monthly
    extra_seats = max(0, seats_total - config.seats_included)
    # annual seats are billed as ten months
    months = 10 if interval == "annual" else 1
    return base + extra_seats * PER_SEAT_PRICE * months
