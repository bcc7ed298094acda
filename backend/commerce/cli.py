# Overview: Flask CLI command groups for bootstrap, ledger checks, and back-office stock work.

# backend/commerce/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a small demo catalog with stock so checkout can be exercised locally.
#
# Inventory ledger:
# - python -m flask inventory verify-ledger
#   Replay every movement and compare against cached counters (exit code 1 on drift).
# - python -m flask inventory receive 12 24 --notes "PO-1189"
#   Book a purchase receipt of 24 units for variant 12.
# - python -m flask inventory low-stock --limit 20
#   List variants at or below their low stock threshold.
#
# Orders:
# - python -m flask orders transition 42 shipped --notes "Courier pickup"
#   Move an order along the state machine as a back-office action.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Product, ProductVariant
from .models.catalog import PRODUCT_STATUS_ACTIVE
from .services import inventory_service, order_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


_DEMO_CATALOG = [
    ("Classic Tee", "classic-tee", [("TEE-BLK-M", "Black / M", 2500, 20), ("TEE-WHT-M", "White / M", 2500, 3)]),
    ("Canvas Tote", "canvas-tote", [("TOTE-NAT", "Natural", 1800, 12)]),
    ("Ceramic Mug", "ceramic-mug", [("MUG-350", "350 ml", 1200, 0)]),
]


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create demo products and variants, then receive their opening stock."""
    created = 0
    for name, slug, variants in _DEMO_CATALOG:
        product = db.session.query(Product).filter_by(slug=slug).first()
        if product is None:
            product = Product(name=name, slug=slug, status=PRODUCT_STATUS_ACTIVE)
            db.session.add(product)
            db.session.flush()

        for sku, variant_name, price_cents, opening_stock in variants:
            if db.session.query(ProductVariant).filter_by(sku=sku).first() is not None:
                click.echo(f"SKIP  {sku} already exists")
                continue
            variant = ProductVariant(
                product_id=product.id,
                sku=sku,
                name=variant_name,
                price_cents=price_cents,
                is_active=True,
            )
            db.session.add(variant)
            db.session.commit()
            created += 1

            if opening_stock > 0:
                result = inventory_service.receive_stock(variant.id, opening_stock, notes="Opening stock")
                if not result["success"]:
                    raise click.ClickException(result["error"])
            else:
                inventory_service.ensure_inventory_item(variant.id)
                db.session.commit()
            click.echo(f"ADD   {sku} ({variant_name}) stock={opening_stock}")

    db.session.commit()
    click.echo(f"PASS Seeded {created} variant(s).")


@click.group('inventory')
def inventory_group():
    """Stock ledger inspection and receiving."""


@inventory_group.command('verify-ledger')
@with_appcontext
def verify_ledger_cmd():
    """Replay movements and report items whose counters have drifted."""
    drifted = inventory_service.verify_ledger()
    if not drifted:
        click.echo("PASS Ledger matches cached counters for all items.")
        return

    for row in drifted:
        click.echo(
            f"FAIL variant={row['variant_id']} "
            f"quantity={row['quantity']} (ledger {row['replayed_quantity']}) "
            f"reserved={row['reserved_quantity']} (ledger {row['replayed_reserved_quantity']})"
        )
    raise SystemExit(1)


@inventory_group.command('receive')
@click.argument('variant_id', type=int)
@click.argument('quantity', type=int)
@click.option('--notes', default=None, help='Receipt reference, e.g. purchase order number')
@with_appcontext
def receive_cmd(variant_id, quantity, notes):
    result = inventory_service.receive_stock(variant_id, quantity, notes=notes)
    if not result["success"]:
        raise click.ClickException(result["error"])
    item = result["inventory"]
    click.echo(f"PASS variant={variant_id} quantity={item['quantity']} available={item['available_quantity']}")


@inventory_group.command('low-stock')
@click.option('--limit', default=50, type=int)
@with_appcontext
def low_stock_cmd(limit):
    items = inventory_service.get_low_stock_items(limit=limit)
    if not items:
        click.echo("No items at or below threshold.")
        return
    for item in items:
        click.echo(
            f"variant={item.variant_id} available={item.available_quantity} "
            f"threshold={item.low_stock_threshold}"
        )


@click.group('orders')
def orders_group():
    """Back-office order actions."""


@orders_group.command('transition')
@click.argument('order_id', type=int)
@click.argument('status')
@click.option('--notes', default=None)
@with_appcontext
def transition_cmd(order_id, status, notes):
    result = order_service.transition_order(order_id, status, notes=notes)
    if not result["success"]:
        raise click.ClickException(result["error"])
    if result["changed"]:
        click.echo(f"PASS order {order_id}: {result['from_status']} -> {result['status']}")
    else:
        click.echo(f"SKIP order {order_id} already {result['status']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(orders_group)
