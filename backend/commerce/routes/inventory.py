# backend/commerce/routes/inventory.py
"""
Inventory back-office routes.

SECURITY: All routes require a staff role.

Stock only changes through ledger operations (receive, adjust); there is no
endpoint that writes quantity or reserved_quantity directly.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_staff
from ..services import inventory_service
from ..validation import ValidationError, parse_int
from .responses import result_response


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/<int:variant_id>")
@require_staff
def get_inventory_route(variant_id: int):
    item = inventory_service.get_inventory_item(variant_id)
    if item is None:
        return jsonify({"error": "No inventory record for this variant"}), 404
    return jsonify({"inventory": item.to_dict()}), 200


@inventory_bp.post("/<int:variant_id>/adjust")
@require_staff
def adjust_stock_route(variant_id: int):
    """
    Manual stock correction.

    Request body (one of delta / new_quantity):
    {
        "delta": -2,
        "new_quantity": 10,
        "reason": "Damaged in storage"
    }

    Returns:
        200: {"success": true, "previous_quantity", "new_quantity"}
        400: missing reason, below zero, below reserved
        404: unknown variant
    """
    try:
        data = request.get_json(silent=True) or {}
        delta = data.get("delta")
        new_quantity = data.get("new_quantity")
        if delta is not None:
            delta = parse_int(delta, "delta")
        if new_quantity is not None:
            new_quantity = parse_int(new_quantity, "new_quantity")
        result = inventory_service.adjust_stock(
            variant_id,
            delta=delta,
            new_quantity=new_quantity,
            reason=data.get("reason"),
            actor_user_id=g.current_user_id,
        )
        return result_response(result)
    except ValidationError as e:
        return jsonify({"success": False, "error": str(e), "code": "validation"}), 400
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:variant_id>/receive")
@require_staff
def receive_stock_route(variant_id: int):
    """Book a purchase receipt. Body: {"quantity": 24, "notes": "PO-1189"}."""
    try:
        data = request.get_json(silent=True) or {}
        quantity = parse_int(data.get("quantity"), "quantity", minimum=1)
        result = inventory_service.receive_stock(
            variant_id,
            quantity,
            notes=data.get("notes"),
            actor_user_id=g.current_user_id,
        )
        return result_response(result, success_status=201)
    except ValidationError as e:
        return jsonify({"success": False, "error": str(e), "code": "validation"}), 400
    except Exception:
        current_app.logger.exception("Failed to receive stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/movements")
@require_staff
def list_movements_route():
    """Ledger entries, newest first. Query: variant_id, type, reference_type, reference_id, limit, offset."""
    try:
        variant_id = request.args.get("variant_id")
        movements = inventory_service.list_movements(
            variant_id=parse_int(variant_id, "variant_id") if variant_id else None,
            movement_type=request.args.get("type") or None,
            reference_type=request.args.get("reference_type") or None,
            reference_id=request.args.get("reference_id") or None,
            limit=min(parse_int(request.args.get("limit", "50"), "limit", minimum=1), 500),
            offset=parse_int(request.args.get("offset", "0"), "offset", minimum=0),
        )
        return jsonify({"movements": [m.to_dict() for m in movements]}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list inventory movements")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/low-stock")
@require_staff
def low_stock_route():
    try:
        limit = min(parse_int(request.args.get("limit", "50"), "limit", minimum=1), 500)
        items = inventory_service.get_low_stock_items(limit=limit)
        return jsonify({"items": [item.to_dict() for item in items]}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400


@inventory_bp.get("/stats")
@require_staff
def inventory_stats_route():
    return jsonify(inventory_service.get_inventory_stats()), 200


@inventory_bp.patch("/<int:variant_id>/threshold")
@require_staff
def update_threshold_route(variant_id: int):
    """Body: {"low_stock_threshold": 3}."""
    try:
        data = request.get_json(silent=True) or {}
        threshold = parse_int(data.get("low_stock_threshold"), "low_stock_threshold", minimum=0)
        result = inventory_service.update_low_stock_threshold(variant_id, threshold)
        return result_response(result)
    except ValidationError as e:
        return jsonify({"success": False, "error": str(e), "code": "validation"}), 400
    except Exception:
        current_app.logger.exception("Failed to update low stock threshold")
        return jsonify({"error": "Internal server error"}), 500
