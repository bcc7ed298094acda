# Overview: Flask API routes for checkout; cart validation and order placement.

"""
Checkout API Routes

Guests may check out; a signed-in user (X-User-Id) gets the order linked to
their account and may save the shipping address to their address book.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import load_identity
from ..services import cart_service, checkout_service
from .responses import result_response


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.get("/carts/<int:cart_id>/validate")
@load_identity
def validate_cart_route(cart_id: int):
    """
    Validate a cart against the live catalog and stock.

    Returns 200 with {"success": false, "errors": [...]} when the cart has
    problems; the shopper fixes them and retries.
    """
    try:
        result = cart_service.validate_cart(cart_id)
        return jsonify(result), 200
    except Exception:
        current_app.logger.exception("Failed to validate cart")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/orders")
@load_identity
def create_order_route():
    """
    Place an order from a cart.

    Request body:
    {
        "cart_id": 12,
        "contact": {"email": "buyer@example.com", "phone": "0771234567"},
        "shipping": {
            "recipient_name": "A. Perera",
            "phone": "0771234567",
            "address_line1": "12 Galle Road",
            "city": "Colombo",
            "postal_code": "00300",
            "country": "LK",
            "save_address": true
        },
        "shipping_method": "standard",
        "payment_method": "card",
        "notes": "Leave at the gate"
    }

    Returns:
        201: {"success": true, "order_id", "order_number", "status", ...}
        400: validation errors
        409: insufficient stock
    """
    try:
        data = request.get_json(silent=True) or {}
        cart_id = data.get("cart_id")
        if not isinstance(cart_id, int) or isinstance(cart_id, bool):
            return jsonify({"success": False, "error": "cart_id is required", "code": "validation"}), 400

        result = checkout_service.create_order(cart_id, data, user_id=g.current_user_id)
        return result_response(result, success_status=201)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500
