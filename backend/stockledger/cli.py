# Overview: Flask CLI command groups for bootstrap, ledger inspection, and reprocessing.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init --store-code MAIN --store-name "Main Store"
#   Create tables (if missing) and a default store.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Ledger inspection/repair:
# - python -m flask ledger history --store-id 1 --product-id 7 [--since 2026-01-01]
#   Print the ledger of one (store, product) in replay order.
# - python -m flask ledger verify [--store-id 1] [--product-id 7]
#   Compare stored stock rows with a fresh fold of the ledger (exit code 1 on drift).
# - python -m flask ledger reprocess --store-id 1 --product-id 7 [--from 2026-01-01]
#   Replay and heal the ledger of one key (defaults to the first entry's date).

import click
from flask.cli import with_appcontext

from .errors import InventoryError
from .extensions import db
from .models import LedgerEntry, Store
from .services.inventory_service import list_stocks
from .services.reprocessing_service import (
    canonical_order,
    reprocess_product_history,
    verify_stock,
)
from .time_utils import parse_iso_datetime, to_utc_z, utcnow


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--store-code', default='MAIN', help='Default store code')
@click.option('--store-name', default='Main Store', help='Default store name')
@with_appcontext
def init_system(store_code, store_name):
    """Create missing tables and a default store (idempotent)."""
    db.create_all()
    store = db.session.query(Store).filter_by(code=store_code).first()
    if store is None:
        store = Store(code=store_code, name=store_name)
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created store: {store.name} (ID: {store.id}, Code: {store.code})")
    else:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, ledger included!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("DONE Database reset complete")


@click.group('ledger')
def ledger_group():
    """Stock ledger inspection and reprocessing."""


@ledger_group.command('history')
@click.option('--store-id', type=int, required=True)
@click.option('--product-id', type=int, required=True)
@click.option('--since', default=None, help='ISO-8601 date; only entries on or after it')
@with_appcontext
def ledger_history(store_id, product_id, since):
    """Print the ledger of one (store, product) in replay order."""
    q = db.session.query(LedgerEntry).filter_by(store_id=store_id, product_id=product_id)
    since_dt = parse_iso_datetime(since)
    if since_dt is not None:
        q = q.filter(LedgerEntry.date >= since_dt)
    entries = canonical_order(q.all())
    if not entries:
        click.echo("No ledger entries.")
        return
    for entry in entries:
        document = entry.causing_document
        parent = f" parent={entry.parent_entry_id}" if entry.parent_entry_id else ""
        click.echo(
            f"{entry.id:>6}  {to_utc_z(entry.date)}  {entry.movement_type:<12} {entry.reason:<10} "
            f"{entry.quantity_delta:>12} qty {entry.quantity_before} -> {entry.quantity_after}  "
            f"cost {entry.cost_before} -> {entry.cost_after}  "
            f"{document.ref if document is not None else '-'}{parent}"
        )


@ledger_group.command('verify')
@click.option('--store-id', type=int, default=None)
@click.option('--product-id', type=int, default=None)
@with_appcontext
def ledger_verify(store_id, product_id):
    """Compare stock rows against a fresh fold of the ledger."""
    stocks = list_stocks(store_id=store_id, product_id=product_id)
    drifted = 0
    for stock in stocks:
        check = verify_stock(stock.store_id, stock.product_id)
        if check.consistent:
            continue
        drifted += 1
        click.echo(
            f"FAIL store={check.store_id} product={check.product_id} "
            f"stored={tuple(map(str, check.stored))} ledger={tuple(map(str, check.folded))}"
        )
    click.echo(f"Checked {len(stocks)} stock rows, {drifted} drifted")
    if drifted:
        raise SystemExit(1)


@ledger_group.command('reprocess')
@click.option('--store-id', type=int, required=True)
@click.option('--product-id', type=int, required=True)
@click.option('--from', 'from_date', default=None, help='ISO-8601 date; defaults to the first entry')
@click.option('--causation-id', default=None, help='Recorded on healing entries')
@with_appcontext
def ledger_reprocess(store_id, product_id, from_date, causation_id):
    """Replay and heal the ledger of one (store, product)."""
    start = parse_iso_datetime(from_date)
    if start is None:
        start = (
            db.session.query(db.func.min(LedgerEntry.date))
            .filter(LedgerEntry.store_id == store_id, LedgerEntry.product_id == product_id)
            .scalar()
        )
        # Nothing can be stale without entries; ends the read transaction too.
        db.session.commit()
        if start is None:
            click.echo("No ledger entries; nothing to reprocess.")
            return
    causation_id = causation_id or f"cli:{to_utc_z(utcnow())}"

    try:
        outcome = reprocess_product_history(store_id, product_id, start, causation_id)
    except InventoryError as exc:
        raise click.ClickException(str(exc))

    click.echo(
        f"PASS run={outcome.run_id} passes={outcome.passes} repairs={outcome.repairs} "
        f"quantity {outcome.old_position.quantity} -> {outcome.new_position.quantity}, "
        f"cost {outcome.old_position.cost} -> {outcome.new_position.cost}"
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
