# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/fulfillment/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--store "Main Store" --code MAIN --timezone UTC]
#   Create all tables and a default store (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Store management:
# - python -m flask stores list
# - python -m flask stores create --name "North Warehouse" --code NORTH --timezone America/Bogota
#
# Inventory:
# - python -m flask inventory verify [--store-id 1]
#   Check SUM(movement deltas) == stock - initial_stock for every product.
#
# Sessions:
# - python -m flask sessions list --store-id 1 [--kind picking] [--active]
#   List recent work sessions.

import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Store, WorkSession
from .models.sessions import SESSION_KINDS
from .services import inventory_service, session_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--store', 'store_name', default='Main Store', help='Default store name')
@click.option('--code', 'store_code', default='MAIN', help='Default store code')
@click.option('--timezone', 'tz_name', default='UTC', help='IANA timezone of the store')
@with_appcontext
def init_system(store_name, store_code, tz_name):
    """
    Create the schema and a default store.

    Safe to run repeatedly: existing tables and stores are left alone.
    """
    click.echo("START Initializing fulfillment database...")
    db.create_all()
    click.echo("PASS Tables created")

    store = db.session.query(Store).first()
    if store:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")
        return

    store = Store(name=store_name, code=store_code, timezone=tz_name)
    db.session.add(store)
    db.session.commit()
    click.echo(f"PASS Created default store: {store.name} (ID: {store.id}, Code: {store.code})")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("This will delete ALL data. Continue?", abort=True)

    click.echo("DROP  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to create a store.")


@click.group('stores')
def stores_group():
    """Store management commands."""


@stores_group.command('list')
@with_appcontext
def list_stores():
    """List all stores."""
    stores = db.session.query(Store).order_by(Store.id).all()

    if not stores:
        click.echo("No stores found.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<12} {'Timezone'}")
    click.echo("="*70)

    for store in stores:
        click.echo(f"{store.id:<5} {store.name:<30} {store.code or '-':<12} {store.timezone}")

    click.echo("="*70 + "\n")


@stores_group.command('create')
@click.option('--name', required=True, help='Store name')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--timezone', 'tz_name', default='UTC', help='IANA timezone used for daily session codes')
@with_appcontext
def create_store_cli(name, code, tz_name):
    """Create a new store."""
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        click.echo(f"FAIL Unknown timezone: {tz_name}")
        sys.exit(1)

    existing = db.session.query(Store).filter_by(code=code).first()
    if existing:
        click.echo(f"FAIL Store with code '{code}' already exists")
        sys.exit(1)

    store = Store(name=name, code=code, timezone=tz_name)
    db.session.add(store)
    db.session.commit()
    click.echo(f"PASS Created store: {store.name} (ID: {store.id}, Code: {store.code})")


@click.group('inventory')
def inventory_group():
    """Inventory ledger inspection."""


@inventory_group.command('verify')
@click.option('--store-id', type=int, help='Only check one store')
@with_appcontext
def verify_inventory(store_id):
    """
    Verify the movement ledger.

    Exits with status 1 if any product's movements do not add up to
    stock - initial_stock.
    """
    results = inventory_service.verify_ledger(store_id)
    if not results:
        click.echo("No products found.")
        return

    unbalanced = [r for r in results if not r["balanced"]]
    for r in unbalanced:
        click.echo(
            f"FAIL Product {r['product_id']}: initial {r['initial_stock']} + movements "
            f"{r['movements_total']} != stock {r['current_stock']}"
        )

    if unbalanced:
        click.echo(f"\nFAIL {len(unbalanced)} of {len(results)} products unbalanced")
        sys.exit(1)

    click.echo(f"PASS {len(results)} products balanced")


@click.group('sessions')
def sessions_group():
    """Work session inspection."""


@sessions_group.command('list')
@click.option('--store-id', type=int, required=True, help='Store ID')
@click.option('--kind', type=click.Choice(SESSION_KINDS), help='Session kind')
@click.option('--active', is_flag=True, help='Only sessions still in progress')
@click.option('--limit', type=int, default=20, help='Max sessions per kind')
@with_appcontext
def list_sessions_cli(store_id, kind, active, limit):
    """
    List recent work sessions.

    Example:
        flask sessions list --store-id 1 --kind dispatch --active
    """
    kinds = [kind] if kind else list(SESSION_KINDS)
    sessions: list[WorkSession] = []
    for k in kinds:
        sessions.extend(
            session_service.list_sessions(store_id, k, active=True if active else None, limit=limit)
        )

    if not sessions:
        click.echo("No sessions found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<6} {'Kind':<10} {'Code':<22} {'Status':<12} {'Orders':<8} {'Created'}")
    click.echo("="*80)

    for s in sessions:
        created = s.created_at.strftime('%Y-%m-%d %H:%M') if s.created_at else '-'
        click.echo(f"{s.id:<6} {s.kind:<10} {s.code:<22} {s.status:<12} {len(s.members):<8} {created}")

    click.echo("="*80 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stores_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(sessions_group)
