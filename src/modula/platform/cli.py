#!/usr/bin/env python
"""
CLI management commands for the Modula pricing engine.
"""

import asyncio
from datetime import UTC, datetime

import click

from modula.platform.db import create_all_tables_async, get_session_maker
from modula.platform.logging import setup_logging
from modula.platform.pricing.subscriptions.sweep import advance_due_subscriptions


def _parse_instant(value: str | None) -> datetime:
    if value is None:
        return datetime.now(UTC)
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


@click.group()
def cli() -> None:
    """Modula pricing engine CLI."""
    setup_logging()


@cli.command()
def init_database() -> None:
    """Create the pricing tables."""
    click.echo("Initializing database...")
    asyncio.run(create_all_tables_async())
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--at", "at", default=None, help="ISO-8601 instant to sweep at (default: now)")
@click.option("--concurrency", type=int, default=None, help="Subscriptions advanced in parallel")
def sweep(at: str | None, concurrency: int | None) -> None:
    """Advance every subscription with a due period boundary."""
    try:
        now = _parse_instant(at)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--at") from exc

    click.echo(f"Sweeping subscriptions due at {now.isoformat()}...")
    report = asyncio.run(
        advance_due_subscriptions(get_session_maker(), now, concurrency=concurrency)
    )
    click.echo(
        f"Examined {report.examined}: {report.advanced} advanced, "
        f"{report.unchanged} unchanged, {report.failed} failed"
    )
    for subscription_id in report.failed_ids:
        click.echo(f"  failed: {subscription_id}", err=True)
    if report.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
