# Overview: Cart validation against the live catalog and current stock, ahead of checkout.

from __future__ import annotations

from ..extensions import db
from ..models import Cart, CartItem, InventoryItem, Product, ProductVariant
from ..models.catalog import PRODUCT_STATUS_ACTIVE


ISSUE_DISCONTINUED = "discontinued"
ISSUE_OUT_OF_STOCK = "out_of_stock"
ISSUE_INSUFFICIENT_STOCK = "insufficient_stock"

EMPTY_CART_ERROR = "Cart is empty"


def find_cart(*, user_id: int | None = None, session_id: str | None = None) -> Cart | None:
    """Locate the active cart for a signed-in user, falling back to the anonymous session."""
    if user_id is not None:
        cart = db.session.query(Cart).filter_by(user_id=user_id).order_by(Cart.id.desc()).first()
        if cart is not None:
            return cart
    if session_id:
        return db.session.query(Cart).filter_by(session_id=session_id).order_by(Cart.id.desc()).first()
    return None


def clear_cart(cart_id: int) -> int:
    """Delete a cart's line items (the cart row stays). Flushes, no commit."""
    deleted = db.session.query(CartItem).filter_by(cart_id=cart_id).delete(synchronize_session="fetch")
    db.session.flush()
    return deleted


def _load_cart_lines(cart_id: int):
    return (
        db.session.query(CartItem, ProductVariant, Product, InventoryItem)
        .outerjoin(ProductVariant, CartItem.variant_id == ProductVariant.id)
        .outerjoin(Product, ProductVariant.product_id == Product.id)
        .outerjoin(InventoryItem, InventoryItem.variant_id == ProductVariant.id)
        .filter(CartItem.cart_id == cart_id)
        .order_by(CartItem.id.asc())
        .all()
    )


def validate_cart(cart_id: int) -> dict:
    """
    Check every cart line against catalog status and available stock.

    All problems are collected rather than failing on the first, so the shopper sees
    them together. Discontinued lines are left out of "items"; stock problems keep
    the line (with its available quantity) so the caller can offer a smaller amount.
    Prices come from the live catalog, not from price_at_add_cents.

    Returns:
        {
            "success": bool,
            "cart_id": int,
            "items": [...],
            "subtotal_cents": int,
            "item_count": int,
            "errors": [str],
            "issues": [{"cart_item_id", "variant_id", "code", "message"}],
        }
    """
    result = {
        "success": False,
        "cart_id": cart_id,
        "items": [],
        "subtotal_cents": 0,
        "item_count": 0,
        "errors": [],
        "issues": [],
    }

    rows = _load_cart_lines(cart_id)
    if not rows:
        result["errors"].append(EMPTY_CART_ERROR)
        return result

    def _issue(cart_item, code, message):
        result["errors"].append(message)
        result["issues"].append({
            "cart_item_id": cart_item.id,
            "variant_id": cart_item.variant_id,
            "code": code,
            "message": message,
        })

    # Units already claimed by earlier lines of the same variant
    claimed: dict[int, int] = {}

    for cart_item, variant, product, inventory in rows:
        if variant is None or product is None:
            _issue(cart_item, ISSUE_DISCONTINUED, "Item is no longer available")
            continue
        if product.status != PRODUCT_STATUS_ACTIVE:
            _issue(cart_item, ISSUE_DISCONTINUED, f"{product.name} is no longer available")
            continue
        if not variant.is_active:
            _issue(cart_item, ISSUE_DISCONTINUED, f"{variant.name} is no longer available")
            continue

        on_hand_available = inventory.available_quantity if inventory is not None else 0
        available = max(on_hand_available - claimed.get(variant.id, 0), 0)
        claimed[variant.id] = claimed.get(variant.id, 0) + cart_item.quantity

        if available == 0:
            _issue(cart_item, ISSUE_OUT_OF_STOCK, f"{product.name} ({variant.name}) is out of stock")
        elif available < cart_item.quantity:
            _issue(
                cart_item,
                ISSUE_INSUFFICIENT_STOCK,
                f"{product.name} ({variant.name}): only {available} available",
            )

        line_subtotal = variant.price_cents * cart_item.quantity
        result["items"].append({
            "cart_item_id": cart_item.id,
            "variant_id": variant.id,
            "product_id": product.id,
            "product_name": product.name,
            "variant_name": variant.name,
            "sku": variant.sku,
            "quantity": cart_item.quantity,
            "unit_price_cents": variant.price_cents,
            "price_at_add_cents": cart_item.price_at_add_cents,
            "subtotal_cents": line_subtotal,
            "available_quantity": available,
        })
        result["subtotal_cents"] += line_subtotal
        result["item_count"] += cart_item.quantity

    result["success"] = not result["errors"]
    return result
