# Overview: Flask API routes for payments; initiation, gateway callbacks, bank transfer and COD.

"""
Payment API Routes

DESIGN:
- POST /api/payments starts an attempt for card, bank_transfer or cod
- Card outcomes arrive twice by design: the customer's return URL (/verify) and the
  gateway webhook (/webhook); both paths are idempotent
- Bank transfers are decided by staff after reviewing uploaded proofs
- COD payments are marked collected by staff at or after delivery

SECURITY:
- Webhooks are authenticated by HMAC signature, not by user identity
- Staff-only: bank transfer decisions, COD collection, listings and stats
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import load_identity, require_staff, require_user, is_staff
from ..models import Order
from ..extensions import db
from ..services import payment_service
from ..validation import ValidationError, parse_int
from .responses import result_response


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# INITIATION & CARD CALLBACKS
# =============================================================================

@payments_bp.post("/")
@load_identity
def initiate_payment_route():
    """
    Start a payment attempt.

    Request body:
    {
        "order_id": 42,
        "method": "card",
        "return_url": "https://shop.example/checkout/return",  (optional, card only)
        "cancel_url": "https://shop.example/checkout/cancel"   (optional, card only)
    }

    Returns:
        201: {"success": true, "payment_ref", "payment_url"?, ...}
        400: order not payable / invalid method
        502: gateway unavailable (payment recorded as failed)
    """
    try:
        data = request.get_json(silent=True) or {}
        order_id = parse_int(data.get("order_id"), "order_id", minimum=1)
        method = data.get("method")
        if not method:
            return jsonify({"success": False, "error": "method is required", "code": "validation"}), 400

        result = payment_service.initiate_payment(
            order_id,
            method,
            user_id=g.current_user_id,
            return_url=data.get("return_url"),
            cancel_url=data.get("cancel_url"),
        )
        return result_response(result, success_status=201)
    except ValidationError as e:
        return jsonify({"success": False, "error": str(e), "code": "validation"}), 400
    except Exception:
        current_app.logger.exception("Failed to initiate payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/verify")
@load_identity
def verify_card_payment_route():
    """Return-URL check for a card session. Body: {"session_id": "..."}."""
    try:
        data = request.get_json(silent=True) or {}
        session_id = data.get("session_id")
        if not session_id:
            return jsonify({"success": False, "error": "session_id is required", "code": "validation"}), 400
        result = payment_service.verify_card_payment(session_id, actor_user_id=g.current_user_id)
        return result_response(result)
    except Exception:
        current_app.logger.exception("Failed to verify payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/webhook")
def gateway_webhook_route():
    """
    Gateway notification (at-least-once delivery).

    The raw body is signed with HMAC-SHA256 in the X-Webhook-Signature header.
    Duplicates answer 200 with already_processed so the gateway stops retrying.
    """
    try:
        body = request.get_data(cache=False)
        result = payment_service.handle_gateway_webhook(body, request.headers.get("X-Webhook-Signature"))
        if not result.get("success"):
            current_app.logger.warning("Rejected payment webhook: %s", result.get("error"))
        return result_response(result)
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# BANK TRANSFER
# =============================================================================

@payments_bp.post("/<int:payment_id>/proofs")
@require_user
def upload_proof_route(payment_id: int):
    """
    Attach proof of a bank transfer (file already stored by the upload service).

    Request body:
    {
        "file_url": "https://files.example/receipts/abc.pdf",
        "file_name": "receipt.pdf",
        "file_size": 48213,        (optional)
        "mime_type": "application/pdf",  (optional)
        "notes": "Paid from BOC"   (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        file_size = data.get("file_size")
        if file_size is not None:
            file_size = parse_int(file_size, "file_size", minimum=0)
        result = payment_service.upload_bank_transfer_proof(
            payment_id,
            file_url=data.get("file_url"),
            file_name=data.get("file_name"),
            file_size=file_size,
            mime_type=data.get("mime_type"),
            notes=data.get("notes"),
            user_id=None if is_staff() else g.current_user_id,
        )
        return result_response(result, success_status=201)
    except ValidationError as e:
        return jsonify({"success": False, "error": str(e), "code": "validation"}), 400
    except Exception:
        current_app.logger.exception("Failed to upload bank transfer proof")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/bank-transfer/verify")
@require_staff
def verify_bank_transfer_route(payment_id: int):
    """
    Approve or reject a bank transfer.

    Request body:
    {
        "approved": false,
        "notes": "Amount does not match"  (required when rejecting)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        approved = data.get("approved")
        if not isinstance(approved, bool):
            return jsonify({"success": False, "error": "approved must be true or false", "code": "validation"}), 400
        result = payment_service.verify_bank_transfer(
            payment_id,
            approved=approved,
            staff_user_id=g.current_user_id,
            notes=data.get("notes"),
        )
        return result_response(result)
    except Exception:
        current_app.logger.exception("Failed to verify bank transfer")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/bank-transfers/pending")
@require_staff
def pending_bank_transfers_route():
    try:
        return jsonify({"payments": payment_service.get_pending_bank_transfers()}), 200
    except Exception:
        current_app.logger.exception("Failed to list pending bank transfers")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# CASH ON DELIVERY
# =============================================================================

@payments_bp.post("/orders/<int:order_id>/cod-collected")
@require_staff
def mark_cod_collected_route(order_id: int):
    try:
        result = payment_service.mark_cod_collected(order_id, staff_user_id=g.current_user_id)
        return result_response(result)
    except Exception:
        current_app.logger.exception("Failed to record COD collection")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

@payments_bp.get("/orders/<int:order_id>")
@require_user
def get_order_payments_route(order_id: int):
    try:
        order = db.session.get(Order, order_id)
        if order is None or (not is_staff() and order.user_id != g.current_user_id):
            return jsonify({"error": "Order not found"}), 404
        return jsonify({"order_id": order_id, "payments": payment_service.get_order_payments(order_id)}), 200
    except Exception:
        current_app.logger.exception("Failed to load order payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/stats")
@require_staff
def payment_stats_route():
    try:
        return jsonify(payment_service.get_payment_stats()), 200
    except Exception:
        current_app.logger.exception("Failed to load payment stats")
        return jsonify({"error": "Internal server error"}), 500
