# Overview: Checkout orchestration; cart -> order, line items, reservations, history, in one transaction.

"""
Checkout Orchestrator

All-or-nothing: the order row, its items, every stock reservation, the first
history row, the cart clean-up and the optional address-book entry commit
together or not at all. A failed reservation for line k rolls back lines 1..k-1.

The cart is re-validated inside the write transaction, so prices and stock are
those current at commit time, not those the shopper saw on the cart page.
"""

from __future__ import annotations

import secrets
import string

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Cart, CustomerAddress, Order, OrderItem, OrderStatusHistory
from ..time_utils import epoch_millis_base36
from ..validation import CheckoutData, ValidationError, validate_checkout_data
from .cart_service import clear_cart, validate_cart
from .concurrency import begin_write, run_with_retry
from .inventory_service import InsufficientStockError, reserve_stock
from .notification_service import EVENT_ORDER_CONFIRMED, notify_order_event
from .order_service import INVENTORY_RESERVED, STATUS_DRAFT
from .payment_service import METHOD_COD, start_cod_payment
from .pricing_service import calculate_totals


GENERIC_FAILURE = "Failed to create order. Please try again."

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


class CheckoutError(Exception):
    """Cart or form problems that block order creation."""

    def __init__(self, errors: list[str], code: str = "validation"):
        self.errors = list(errors)
        self.code = code
        super().__init__(self.errors[0] if self.errors else "Checkout failed")


class OrderNumberCollision(Exception):
    pass


def generate_order_number() -> str:
    """ORD-<base36 millis>-<4 random chars>. Unique constraint is the real guarantee."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
    return f"ORD-{epoch_millis_base36()}-{suffix}"


def _stock_message(line: dict, exc: InsufficientStockError) -> str:
    label = f"{line['product_name']} ({line['variant_name']})"
    if exc.available <= 0:
        return f"{label} is out of stock"
    return f"{label}: only {exc.available} available"


def _save_address(user_id: int, data: CheckoutData) -> CustomerAddress:
    has_default = (
        db.session.query(CustomerAddress).filter_by(user_id=user_id, is_default=True).first() is not None
    )
    shipping = data.shipping
    address = CustomerAddress(
        user_id=user_id,
        recipient_name=shipping.recipient_name,
        phone=shipping.phone,
        address_line1=shipping.address_line1,
        address_line2=shipping.address_line2,
        city=shipping.city,
        state=shipping.state,
        postal_code=shipping.postal_code,
        country=shipping.country,
        instructions=shipping.instructions,
        is_default=not has_default,
    )
    db.session.add(address)
    return address


def _place_order(cart_id: int, data: CheckoutData, user_id: int | None, order_number: str) -> Order:
    begin_write()

    cart = db.session.get(Cart, cart_id)
    if cart is None:
        raise CheckoutError(["Cart not found"], code="not_found")
    # Customer carts belong to their owner; guests only reach guest carts
    if cart.user_id is not None and cart.user_id != user_id:
        raise CheckoutError(["Cart not found"], code="not_found")

    validation = validate_cart(cart_id)
    if not validation["success"]:
        code = "insufficient_stock" if any(
            issue["code"] != "discontinued" for issue in validation["issues"]
        ) else "validation"
        raise CheckoutError(validation["errors"], code=code)

    totals = calculate_totals(validation["subtotal_cents"], data.shipping_method)
    snapshot = data.shipping.snapshot()

    order = Order(
        order_number=order_number,
        user_id=user_id,
        status=STATUS_DRAFT,
        inventory_status=INVENTORY_RESERVED,
        email=data.email,
        phone=data.phone or data.shipping.phone,
        customer_name=data.shipping.recipient_name,
        shipping_address=snapshot,
        billing_address=dict(snapshot),
        shipping_method=data.shipping_method,
        payment_method=data.payment_method,
        currency=current_app.config["STORE_CURRENCY"],
        subtotal_cents=totals["subtotal_cents"],
        shipping_cents=totals["shipping_cents"],
        tax_cents=totals["tax_cents"],
        discount_cents=totals["discount_cents"],
        total_cents=totals["total_cents"],
        notes=data.notes,
    )
    db.session.add(order)
    try:
        db.session.flush()
    except IntegrityError as e:
        raise OrderNumberCollision(order_number) from e

    for line in validation["items"]:
        db.session.add(OrderItem(
            order_id=order.id,
            variant_id=line["variant_id"],
            product_name=line["product_name"],
            variant_name=line["variant_name"],
            sku=line["sku"],
            unit_price_cents=line["unit_price_cents"],
            quantity=line["quantity"],
            subtotal_cents=line["subtotal_cents"],
        ))
    db.session.flush()

    # Ascending variant order keeps lock acquisition consistent across checkouts
    for line in sorted(validation["items"], key=lambda l: (l["variant_id"], l["cart_item_id"])):
        try:
            reserve_stock(
                line["variant_id"],
                line["quantity"],
                reference_id=order.id,
                notes=f"Reserved for order {order_number}",
                actor_user_id=user_id,
            )
        except InsufficientStockError as e:
            raise CheckoutError([_stock_message(line, e)], code="insufficient_stock") from e

    db.session.add(OrderStatusHistory(
        order_id=order.id,
        from_status=None,
        to_status=STATUS_DRAFT,
        notes="Order placed",
        changed_by=user_id,
    ))

    clear_cart(cart_id)

    if user_id is not None and data.save_address and data.address_id is None:
        _save_address(user_id, data)

    if data.payment_method == METHOD_COD:
        start_cod_payment(order, actor_user_id=user_id)

    db.session.commit()
    return order


def create_order(cart_id: int, checkout_data, *, user_id: int | None = None) -> dict:
    """
    Turn a cart into a draft order (processing for cash on delivery).

    checkout_data is a CheckoutData or the raw form dict.

    Returns:
        {"success": True, "order_id", "order_number", "status", "total_cents"}
        or {"success": False, "error", "errors", "code"}
    """
    try:
        data = checkout_data if isinstance(checkout_data, CheckoutData) else validate_checkout_data(checkout_data)
    except ValidationError as e:
        return {"success": False, "error": str(e), "errors": e.errors, "code": "validation"}

    attempts = current_app.config.get("ORDER_NUMBER_ATTEMPTS", 5)
    order = None
    try:
        for _ in range(attempts):
            order_number = generate_order_number()
            try:
                order = run_with_retry(lambda: _place_order(cart_id, data, user_id, order_number))
                break
            except OrderNumberCollision:
                db.session.rollback()
                current_app.logger.warning("Order number collision on %s, retrying", order_number)
        if order is None:
            raise RuntimeError("Could not allocate a unique order number")
    except CheckoutError as e:
        db.session.rollback()
        return {"success": False, "error": str(e), "errors": e.errors, "code": e.code}
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create order for cart %s", cart_id)
        return {"success": False, "error": GENERIC_FAILURE, "errors": [GENERIC_FAILURE], "code": "checkout_failed"}

    notify_order_event(EVENT_ORDER_CONFIRMED, order)

    return {
        "success": True,
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "total_cents": order.total_cents,
        "payment_method": order.payment_method,
    }
