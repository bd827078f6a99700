"""Configuration loading; YAML file + environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, BillingConfig, JobsConfig

logger = logging.getLogger(__name__)

# Env var name -> tier slug.  The env var holds the provider's price id.
PRICE_ENV_VARS = {
    "STRIPE_PRICE_STARTER_MONTHLY": "starter",
    "STRIPE_PRICE_STARTER_ANNUAL": "starter",
    "STRIPE_PRICE_PROFESSIONAL_MONTHLY": "professional",
    "STRIPE_PRICE_PROFESSIONAL_ANNUAL": "professional",
}


def _env_int(name: str, fallback) -> int:
    raw = os.environ.get(name, fallback)
    try:
        return int(raw)
    except (ValueError, TypeError):
        logger.warning("Invalid integer for %s: %r, using %s", name, raw, fallback)
        return int(fallback)


def _load_price_tiers(billing_cfg: dict) -> dict[str, str]:
    """Build the price-id -> tier map from config.yaml, then env overrides."""
    price_tiers: dict[str, str] = {}
    for price_id, tier in (billing_cfg.get("price_tiers") or {}).items():
        price_tiers[str(price_id)] = str(tier)
    for env_var, tier in PRICE_ENV_VARS.items():
        price_id = os.environ.get(env_var, "")
        if price_id:
            price_tiers[price_id] = tier
    return price_tiers


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, JobsConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    billing_cfg = raw.get("billing", {})
    jobs_cfg = raw.get("jobs", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    webhook_secret = os.environ.get(
        "STRIPE_WEBHOOK_SECRET", billing_cfg.get("webhook_secret", "")
    )
    if not webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not configured; all webhooks will be rejected")

    internal_token = os.environ.get("INTERNAL_JOB_TOKEN", jobs_cfg.get("internal_token", ""))

    return (
        AppConfig(
            name=app_cfg.get("name", "Billing Engine"),
            secret_key=secret_key,
            currency=os.environ.get("BILLING_CURRENCY", app_cfg.get("currency", "gbp")).lower(),
        ),
        BillingConfig(
            grace_period_days=_env_int(
                "GRACE_PERIOD_DAYS", billing_cfg.get("grace_period_days", 28)
            ),
            webhook_secret=webhook_secret,
            webhook_tolerance=_env_int(
                "STRIPE_WEBHOOK_TOLERANCE", billing_cfg.get("webhook_tolerance", 300)
            ),
            checkout_period_days=_env_int(
                "CHECKOUT_PERIOD_DAYS", billing_cfg.get("checkout_period_days", 30)
            ),
            price_tiers=_load_price_tiers(billing_cfg),
        ),
        JobsConfig(internal_token=internal_token),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///billing.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
