# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/saleflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP (PowerShell: $env:FLASK_APP="saleflow:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use "flask db upgrade" for migrations).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Counters:
# - python -m flask sequences show receipt
#   Print the current value of a named counter.
#
# Payments:
# - python -m flask payments expire-stale --minutes 30
#   Mark M-Pesa transactions still pending after N minutes as failed.
#
# Maintenance:
# - python -m flask maintenance prune-movements --keep 100
#   Keep only the newest N stock movements per product.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .services import inventory_service, mpesa_service, sequence_service
from .domain import counters as counter_rules


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Database tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('sequences')
def sequences_group():
    """Receipt and order number counters."""


@sequences_group.command('show')
@click.argument('key', default=counter_rules.RECEIPT_KEY)
@with_appcontext
def show_sequence(key):
    """Show a counter without advancing it."""
    state = sequence_service.peek(key)
    if state is None:
        click.echo(f"Counter '{key}' has not been used yet.")
        return
    click.echo(
        f"{state['key']}: seq={state['seq']} reset={state['reset_period']} last_reset={state['last_reset']}"
    )


@click.group('payments')
def payments_group():
    """M-Pesa reconciliation commands."""


@payments_group.command('expire-stale')
@click.option('--minutes', type=int, default=30, show_default=True)
@with_appcontext
def expire_stale_cli(minutes):
    """Fail STK pushes that never got a callback."""
    if minutes < 1:
        raise click.BadParameter("must be at least 1", param_hint="--minutes")
    expired = mpesa_service.expire_stale_payments(timedelta(minutes=minutes))
    click.echo(f"Expired {expired} pending M-Pesa transactions older than {minutes} minutes.")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('prune-movements')
@click.option('--keep', type=int, default=None, help='Defaults to STOCK_MOVEMENT_RETENTION')
@with_appcontext
def prune_movements_cli(keep):
    """Trim each product's stock movement log to the newest entries."""
    if keep is not None and keep < 0:
        raise click.BadParameter("must be >= 0", param_hint="--keep")
    deleted = inventory_service.prune_stock_movements(keep)
    click.echo(f"Deleted {deleted} stock movements.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sequences_group)
    app.cli.add_command(payments_group)
    app.cli.add_command(maintenance_group)
