# Overview: Flask CLI command groups for bootstrap, plans, registry maintenance and membership expiry.

# backend/fitsense/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Create all tables (idempotent). Use `flask db upgrade` for managed schemas.
# - python -m flask system create-admin --name "Front Desk" --email desk@gym.local --password "Password123!" [--super]
#   Create an operator account; --super allows deleting ledger entries.
#
# Plans:
# - python -m flask plans list [--all]
# - python -m flask plans create --name Monthly --price-cents 150000 --days 30
#
# Registry:
# - python -m flask registry sync
#   Reconcile every member account into the registry and unlink orphans.
# - python -m flask registry import members.csv
#   Upsert members from a CSV file (header row required).
#
# Memberships:
# - python -m flask memberships expire
#   Mark ACTIVE memberships past their end date as EXPIRED (run daily).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models.accounts import ROLE_ADMIN
from .services.auth_service import create_account
from .services import membership_service, reconciliation_service, import_service
from .validation import SERVICE_ERRORS


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create all tables that do not exist yet."""
    click.echo("START Initializing database...")
    db.create_all()
    click.echo("PASS Tables ready")


@system_group.command('create-admin')
@click.option('--name', required=True, help='Display name')
@click.option('--email', required=True, help='Login email')
@click.option('--password', required=True, help='Password (8+ chars, upper, lower, digit, special)')
@click.option('--super', 'is_super', is_flag=True, default=False, help='Allow deleting ledger entries')
@with_appcontext
def create_admin(name, email, password, is_super):
    try:
        user = create_account(
            name=name, email=email, phone=None, password=password,
            role=ROLE_ADMIN, is_super_admin=is_super,
        )
    except SERVICE_ERRORS as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Created admin: {user.email} (ID: {user.id}, super={user.is_super_admin})")


@click.group('plans')
def plans_group():
    """Membership plan commands."""


@plans_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, default=False, help='Include inactive plans')
@with_appcontext
def list_plans(include_inactive):
    plans = membership_service.list_plans(include_inactive=include_inactive)
    if not plans:
        click.echo("No plans found.")
        return
    click.echo("\n" + "=" * 60)
    click.echo(f"{'ID':<5} {'Name':<25} {'Price':>12} {'Days':>6} {'Active':>7}")
    click.echo("=" * 60)
    for plan in plans:
        click.echo(
            f"{plan.id:<5} {plan.name:<25} {plan.price_cents / 100:>12,.2f} {plan.duration_days:>6} "
            f"{'yes' if plan.is_active else 'no':>7}"
        )
    click.echo("=" * 60 + "\n")


@plans_group.command('create')
@click.option('--name', required=True, help='Plan name (unique)')
@click.option('--price-cents', type=int, required=True, help='Price in cents')
@click.option('--days', type=int, default=30, show_default=True, help='Duration in days')
@with_appcontext
def create_plan(name, price_cents, days):
    try:
        plan = membership_service.create_plan(name, price_cents, days)
    except SERVICE_ERRORS as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Created plan: {plan.name} (ID: {plan.id})")


@click.group('registry')
def registry_group():
    """Member registry maintenance."""


@registry_group.command('sync')
@with_appcontext
def sync_registry():
    report = reconciliation_service.run_reconciliation()
    click.echo(
        f"PASS created={report.created} updated={report.updated} unchanged={report.unchanged} "
        f"orphaned={report.orphaned} failed={report.failed} skipped={report.skipped}"
    )
    for line in report.details:
        click.echo(f"  - {line}")


@registry_group.command('import')
@click.argument('csv_file', type=click.File('r', encoding='utf-8'))
@with_appcontext
def import_registry(csv_file):
    rows = import_service.rows_from_csv(csv_file.read())
    report = import_service.import_member_rows(rows, recorded_by="cli import")
    click.echo(f"PASS imported={report.imported} skipped={report.skipped} total={report.total}")
    for line in report.errors:
        click.echo(f"WARN  {line}")


@click.group('memberships')
def memberships_group():
    """Live membership maintenance."""


@memberships_group.command('expire')
@with_appcontext
def expire_memberships():
    count = membership_service.expire_memberships()
    click.echo(f"PASS Expired {count} memberships")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(plans_group)
    app.cli.add_command(registry_group)
    app.cli.add_command(memberships_group)
