"""
Pytest fixtures for order engine backend tests.

Provides test database setup, a fake payment gateway, a recording notifier,
catalog/cart factories and a test client.
"""

import itertools

import pytest

from commerce import create_app
from commerce.extensions import db
from commerce.models import Cart, CartItem, InventoryItem, Order, Product, ProductVariant
from commerce.models.catalog import PRODUCT_STATUS_ACTIVE
from commerce.services import checkout_service, inventory_service
from commerce.services.notification_service import Notifier
from commerce.services.payment_gateway import (
    GATEWAY_COMPLETED,
    GatewaySession,
    GatewayVerification,
    PaymentGatewayError,
)


WEBHOOK_SECRET = "whsec-test"

STAFF_HEADERS = {"X-User-Id": "900", "X-User-Role": "staff"}


def customer_headers(user_id: int) -> dict:
    return {"X-User-Id": str(user_id), "X-User-Role": "customer"}


class FakeGateway:
    """In-process stand-in for the hosted card gateway."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.fail_initiate = False
        self.fail_verify = False
        self.statuses = {}
        self.initiated = []
        self.verified = []
        self._ids = itertools.count(1)

    def initiate(self, **kwargs):
        if self.fail_initiate:
            raise PaymentGatewayError("Payment gateway unreachable: connection refused")
        session_id = f"sess_{next(self._ids)}"
        self.initiated.append(dict(kwargs, session_id=session_id))
        return GatewaySession(session_id=session_id, payment_url=f"https://pay.test/checkout/{session_id}")

    def verify(self, session_id):
        if self.fail_verify:
            raise PaymentGatewayError("Payment gateway returned HTTP 503")
        self.verified.append(session_id)
        return GatewayVerification(
            status=self.statuses.get(session_id, GATEWAY_COMPLETED),
            transaction_id=f"txn_{session_id}",
            card_last4="4242",
            card_brand="VISA",
        )


class RecordingNotifier(Notifier):
    def __init__(self):
        self.reset()

    def reset(self):
        self.events = []
        self.fail = False

    def send(self, event, order_id, payload):
        if self.fail:
            raise RuntimeError("SMTP connection refused")
        self.events.append((event, order_id, payload))


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'PAYMENT_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'SITE_URL': 'https://shop.test',
    })
    app.extensions['payment_gateway'] = FakeGateway()
    app.extensions['notifier'] = RecordingNotifier()

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    app.extensions['payment_gateway'].reset()
    app.extensions['notifier'].reset()
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture
def gateway(app):
    return app.extensions['payment_gateway']


@pytest.fixture
def notifier(app):
    return app.extensions['notifier']


# =============================================================================
# FACTORIES
# =============================================================================

_sequence = itertools.count(1)


@pytest.fixture
def make_variant(db_session):
    """Create an active product + variant, receiving `stock` units through the ledger."""
    def _make(price_cents=2500, stock=10, product_name=None, variant_name="Default",
              product_status=PRODUCT_STATUS_ACTIVE, is_active=True):
        n = next(_sequence)
        product = Product(
            name=product_name or f"Product {n}",
            slug=f"product-{n}",
            status=product_status,
        )
        db_session.add(product)
        db_session.flush()
        variant = ProductVariant(
            product_id=product.id,
            sku=f"SKU-{n:04d}",
            name=variant_name,
            price_cents=price_cents,
            is_active=is_active,
        )
        db_session.add(variant)
        db_session.commit()

        if stock > 0:
            assert inventory_service.receive_stock(variant.id, stock, notes="Opening stock")["success"]
        else:
            inventory_service.ensure_inventory_item(variant.id)
            db_session.commit()
        return variant

    return _make


@pytest.fixture
def make_cart(db_session):
    """make_cart([(variant, qty), ...], user_id=None)"""
    def _make(lines, user_id=None, session_id=None):
        cart = Cart(user_id=user_id, session_id=session_id)
        db_session.add(cart)
        db_session.flush()
        for variant, quantity in lines:
            db_session.add(CartItem(
                cart_id=cart.id,
                variant_id=variant.id,
                quantity=quantity,
                price_at_add_cents=variant.price_cents,
            ))
        db_session.commit()
        return cart

    return _make


def checkout_payload(payment_method="card", shipping_method="standard", **overrides):
    payload = {
        "contact": {"email": "buyer@example.com", "phone": "0771234567"},
        "shipping": {
            "recipient_name": "Amaya Perera",
            "phone": "0771234567",
            "address_line1": "12 Galle Road",
            "city": "Colombo",
            "postal_code": "00300",
            "country": "LK",
        },
        "shipping_method": shipping_method,
        "payment_method": payment_method,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def place_order(make_cart):
    """Check out a fresh cart and return the created Order."""
    def _place(lines, payment_method="card", user_id=None, **overrides):
        cart = make_cart(lines, user_id=user_id)
        result = checkout_service.create_order(
            cart.id, checkout_payload(payment_method, **overrides), user_id=user_id
        )
        assert result["success"], result
        return db.session.get(Order, result["order_id"])

    return _place


def stock_of(variant_id):
    """(quantity, reserved_quantity) as currently stored."""
    db.session.expire_all()
    item = db.session.query(InventoryItem).filter_by(variant_id=variant_id).one()
    return item.quantity, item.reserved_quantity
