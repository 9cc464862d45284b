# Overview: Flask CLI command groups for numbering, outbox processing and ledger checks.

# backend/erpcore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "erpcore:create_app".
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system seed-demo
#   Idempotent: one warehouse, one client, two products with list prices.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Numbering:
# - python -m flask documents next-number invoice
#   Show the number the next allocation would hand out (no side effects).
# - python -m flask documents counters
#   List sequence counters.
#
# Approval outbox:
# - python -m flask outbox process --limit 50
#   Dispatch pending submissions to the approval service.
# - python -m flask outbox reconcile
#   Return expired IN_FLIGHT claims to PENDING.
# - python -m flask outbox list --status FAILED
#
# Ledger:
# - python -m flask ledger verify [--product-id 1] [--warehouse-id 1]
#   Replay the kardex and compare with cached balances; exits 1 on drift.

import click
from decimal import Decimal
from flask.cli import with_appcontext

from .extensions import db
from .models import Client, PriceListEntry, Product, SequenceCounter, Warehouse
from .services import inventory_service, sequence_service, submission_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('seed-demo')
@with_appcontext
def seed_demo_command():
    """Create demo master data if missing."""
    warehouse = Warehouse.query.filter_by(code="01").first()
    if warehouse is None:
        warehouse = Warehouse(code="01", name="Main warehouse")
        db.session.add(warehouse)
        click.echo("Created warehouse 01")

    client = Client.query.filter_by(code="CF").first()
    if client is None:
        client = Client(code="CF", name="Final consumer", tax_id="222222222222")
        db.session.add(client)
        click.echo("Created client CF")

    for sku, name, price, cost in (("P-001", "Widget", "119.00", "60.00"), ("P-002", "Gadget", "238.00", "120.00")):
        product = Product.query.filter_by(sku=sku).first()
        if product is None:
            product = Product(sku=sku, name=name, tax_rate=Decimal("19"), last_cost=Decimal(cost))
            db.session.add(product)
            db.session.flush()
            db.session.add(PriceListEntry(product_id=product.id, price_list="07", price=Decimal(price)))
            click.echo(f"Created product {sku}")

    db.session.commit()
    click.echo("PASS Demo data ready")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db_command(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('documents')
def documents_group():
    """Document numbering inspection."""


@documents_group.command('next-number')
@click.argument('family')
@click.option('--warehouse-id', type=int, default=None)
@with_appcontext
def next_number_command(family, warehouse_id):
    peek = sequence_service.peek_next(family, warehouse_id=warehouse_id)
    suffix = " (reclaimed)" if peek["reused"] else ""
    click.echo(f"{peek['family']}: {peek['number']} {peek['document_number']}{suffix}")


@documents_group.command('counters')
@with_appcontext
def counters_command():
    counters = SequenceCounter.query.order_by(SequenceCounter.family, SequenceCounter.scope_key).all()
    if not counters:
        click.echo("No counters yet")
        return
    for counter in counters:
        click.echo(f"{counter.family:16} scope={counter.scope_key:<4} last={counter.last_number}")


@click.group('outbox')
def outbox_group():
    """Approval submission outbox."""


@outbox_group.command('process')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def process_outbox_command(limit):
    outcomes = submission_service.process_outbox(limit=limit)
    approved = sum(1 for o in outcomes if o.approved)
    for outcome in outcomes:
        mark = "APPROVED" if outcome.approved else f"{outcome.status} ({outcome.error_kind}: {outcome.error})"
        click.echo(f"{outcome.document_number}: {mark}")
    click.echo(f"Processed {len(outcomes)} submission(s), {approved} approved")


@outbox_group.command('reconcile')
@with_appcontext
def reconcile_outbox_command():
    count = submission_service.reconcile_stale_submissions()
    click.echo(f"Re-queued {count} stale submission(s)")


@outbox_group.command('list')
@click.option('--status', type=click.Choice(["PENDING", "IN_FLIGHT", "DONE", "FAILED"]), default=None)
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def list_outbox_command(status, limit):
    for entry in submission_service.list_outbox(status=status, limit=limit):
        click.echo(
            f"#{entry.id} doc={entry.document_id} {entry.status} attempts={entry.attempts}"
            + (f" error={entry.last_error}" if entry.last_error else "")
        )


@click.group('ledger')
def ledger_group():
    """Kardex consistency checks."""


@ledger_group.command('verify')
@click.option('--product-id', type=int, default=None)
@click.option('--warehouse-id', type=int, default=None)
@with_appcontext
def verify_ledger_command(product_id, warehouse_id):
    checks = inventory_service.verify_balances(product_id=product_id, warehouse_id=warehouse_id)
    failures = [c for c in checks if not c.ok]
    for check in failures:
        click.echo(
            f"FAIL product={check.product_id} warehouse={check.warehouse_id} "
            f"replayed={check.replayed} cached={check.cached} "
            f"value={check.replayed_value}/{check.cached_value} drifted={list(check.drifted_entry_ids)}"
        )
    if failures:
        raise SystemExit(1)
    click.echo(f"PASS {len(checks)} balance(s) match the ledger")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(documents_group)
    app.cli.add_command(outbox_group)
    app.cli.add_command(ledger_group)
