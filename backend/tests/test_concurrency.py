"""
Concurrent checkout tests against a file-backed SQLite database.

Many shoppers race for the same few units; the ledger must never oversell and
must stay consistent with the cached counters.
"""

import threading

import pytest

from commerce import create_app
from commerce.extensions import db
from commerce.models import Cart, CartItem, InventoryItem, Order, Product, ProductVariant
from commerce.models.catalog import PRODUCT_STATUS_ACTIVE
from commerce.services import checkout_service, inventory_service, payment_service
from conftest import checkout_payload


SHOPPERS = 8
STOCK = 3


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'race.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {"connect_args": {"timeout": 30, "check_same_thread": False}},
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def _seed(app, stock):
    with app.app_context():
        product = Product(name="Limited Print", slug="limited-print", status=PRODUCT_STATUS_ACTIVE)
        db.session.add(product)
        db.session.flush()
        variant = ProductVariant(product_id=product.id, sku="PRINT-01", name="A3", price_cents=4000)
        db.session.add(variant)
        db.session.commit()
        assert inventory_service.receive_stock(variant.id, stock)["success"]

        cart_ids = []
        for _ in range(SHOPPERS):
            cart = Cart()
            db.session.add(cart)
            db.session.flush()
            db.session.add(CartItem(cart_id=cart.id, variant_id=variant.id, quantity=1, price_at_add_cents=4000))
            cart_ids.append(cart.id)
        db.session.commit()
        return variant.id, cart_ids


def _race(app, targets, work):
    barrier = threading.Barrier(len(targets))
    results = []
    lock = threading.Lock()

    def run(target):
        with app.app_context():
            barrier.wait()
            outcome = work(target)
            db.session.remove()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=run, args=(t,)) for t in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results


def test_concurrent_checkouts_never_oversell(file_app):
    variant_id, cart_ids = _seed(file_app, STOCK)

    results = _race(
        file_app,
        cart_ids,
        lambda cart_id: checkout_service.create_order(cart_id, checkout_payload("bank_transfer")),
    )

    winners = [r for r in results if r["success"]]
    losers = [r for r in results if not r["success"]]
    assert len(results) == SHOPPERS
    assert len(winners) == STOCK
    assert all(r["code"] == "insufficient_stock" for r in losers)

    with file_app.app_context():
        item = db.session.query(InventoryItem).filter_by(variant_id=variant_id).one()
        assert (item.quantity, item.reserved_quantity) == (STOCK, STOCK)
        assert db.session.query(Order).count() == STOCK
        assert inventory_service.verify_ledger() == []


def test_concurrent_duplicate_approvals_apply_once(file_app):
    variant_id, cart_ids = _seed(file_app, STOCK)
    with file_app.app_context():
        order_id = checkout_service.create_order(cart_ids[0], checkout_payload("bank_transfer"))["order_id"]
        payment_id = payment_service.initiate_payment(order_id, "bank_transfer")["payment_id"]

    results = _race(
        file_app,
        [payment_id] * 4,
        lambda pid: payment_service.verify_bank_transfer(pid, approved=True, staff_user_id=900),
    )

    assert all(r["success"] for r in results)
    assert sum(1 for r in results if not r["already_processed"]) == 1

    with file_app.app_context():
        item = db.session.query(InventoryItem).filter_by(variant_id=variant_id).one()
        assert (item.quantity, item.reserved_quantity) == (STOCK - 1, 0)
        assert inventory_service.verify_ledger() == []
