#!/usr/bin/env python3
"""Operational CLI for the billing engine.

Registered on the Flask app as ``flask billing ...`` and runnable standalone:

Usage:
    python cli.py --help
    python cli.py init-db
    python cli.py sweep-grace-periods
    python cli.py usage-summary
    python cli.py conversion-metrics
    python cli.py recalculate-seats ORG_ID
    python cli.py purge-subscription ORG_ID --yes
"""

from __future__ import annotations

import json
import sys
from datetime import datetime
from typing import Optional

import click
from flask.cli import with_appcontext

from extensions import db


@click.group()
def cli():
    """Billing maintenance commands."""
    pass


@cli.command("init-db")
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("Database initialized.")


@cli.command("sweep-grace-periods")
@click.option("--now", "now_iso", default=None, help="Evaluate as of this ISO-8601 instant.")
@with_appcontext
def sweep_grace_periods(now_iso: Optional[str]):
    """Lock organizations whose grace period has ended."""
    from services.grace_sweeper import check_grace_periods
    from utils import as_utc

    now = None
    if now_iso:
        try:
            now = as_utc(datetime.fromisoformat(now_iso))
        except ValueError:
            raise click.BadParameter(f"not an ISO-8601 timestamp: {now_iso}", param_hint="--now")
    result = check_grace_periods(now=now)
    click.echo(
        f"Checked {result.checked}, locked {result.locked}, "
        f"skipped {result.skipped}, failed {result.failed}"
    )
    if result.failed:
        sys.exit(1)


@cli.command("usage-summary")
@with_appcontext
def usage_summary():
    """Log tier and seat usage for every organization."""
    from services.subscriptions import send_usage_summary

    count = send_usage_summary()
    click.echo(f"Usage summary sent for {count} organizations")


@cli.command("conversion-metrics")
@with_appcontext
def conversion_metrics():
    """Print free-to-paid conversion metrics as JSON."""
    from services.subscriptions import get_conversion_metrics

    click.echo(json.dumps(get_conversion_metrics(), indent=2))


@cli.command("recalculate-seats")
@click.argument("organization_id")
@with_appcontext
def recalculate_seats(organization_id: str):
    """Recount active users for ORGANIZATION_ID."""
    from services.seats import recalculate

    count = recalculate(organization_id)
    db.session.commit()
    click.echo(f"{organization_id}: {count} active seats")


@cli.command("purge-subscription")
@click.argument("organization_id")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@with_appcontext
def purge_subscription(organization_id: str, yes: bool):
    """Delete the subscription record for ORGANIZATION_ID.

    Ledger entries are kept; they are append-only.
    """
    from services import subscriptions
    from services.audit import log_action

    sub = subscriptions.get_by_organization(organization_id)
    if sub is None:
        click.echo(f"No subscription for {organization_id}", err=True)
        sys.exit(1)
    if not yes and not click.confirm(f"Delete subscription for {organization_id}?"):
        click.echo("Aborted.")
        return
    log_action(
        organization_id,
        "subscription.purged",
        "subscription",
        sub.id,
        changes={"tier": sub.tier, "external_subscription_ref": sub.external_subscription_ref},
    )
    db.session.delete(sub)
    db.session.commit()
    click.echo(f"Subscription for {organization_id} deleted.")


if __name__ == "__main__":
    from app import create_app

    with create_app().app_context():
        cli()
