# Overview: Flask API routes for orders; detail, timeline, status transitions and cancellation.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_staff, require_user, is_staff
from ..services import order_service
from ..services.order_service import OrderError
from ..validation import ValidationError, parse_int
from .responses import result_response


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("/")
@require_staff
def list_orders_route():
    """List orders (newest first). Query: status, search, page, per_page."""
    try:
        page = parse_int(request.args.get("page", "1"), "page", minimum=1)
        per_page = parse_int(request.args.get("per_page", "20"), "per_page", minimum=1)
        result = order_service.list_orders(
            status=request.args.get("status") or None,
            search=request.args.get("search") or None,
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except (ValidationError, OrderError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_user
def get_order_route(order_id: int):
    """Order with items, payments and history. Customers only see their own orders."""
    try:
        owner = None if is_staff() else g.current_user_id
        order = order_service.get_order_detail(order_id, user_id=owner)
        if order is None:
            return jsonify({"error": "Order not found"}), 404
        return jsonify({"order": order}), 200
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/timeline")
@require_user
def get_order_timeline_route(order_id: int):
    try:
        owner = None if is_staff() else g.current_user_id
        timeline = order_service.get_order_timeline(order_id, user_id=owner)
        if timeline is None:
            return jsonify({"error": "Order not found"}), 404
        return jsonify({"order_id": order_id, "timeline": timeline}), 200
    except Exception:
        current_app.logger.exception("Failed to load order timeline")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/transition")
@require_staff
def transition_order_route(order_id: int):
    """
    Move an order to a new status.

    Request body:
    {
        "status": "processing",
        "notes": "Picked by warehouse"  (optional)
    }

    Returns:
        200: {"success": true, "status", "changed"}
        409: transition not allowed from the current status
    """
    try:
        data = request.get_json(silent=True) or {}
        to_status = data.get("status")
        if not to_status:
            return jsonify({"success": False, "error": "status is required", "code": "validation"}), 400
        result = order_service.transition_order(
            order_id,
            to_status,
            actor_user_id=g.current_user_id,
            notes=data.get("notes"),
        )
        return result_response(result)
    except Exception:
        current_app.logger.exception("Failed to transition order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_user
def cancel_order_route(order_id: int):
    """Customer cancels their own order. Body: {"reason": "..."} (optional)."""
    try:
        data = request.get_json(silent=True) or {}
        result = order_service.cancel_customer_order(
            order_id,
            user_id=g.current_user_id,
            reason=data.get("reason"),
        )
        return result_response(result)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/notes")
@require_staff
def update_admin_notes_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        result = order_service.update_admin_notes(order_id, data.get("admin_notes"))
        return result_response(result)
    except Exception:
        current_app.logger.exception("Failed to update order notes")
        return jsonify({"error": "Internal server error"}), 500
