# Overview: Payment reconciliation for card, bank transfer and cash on delivery orders.

"""
Payment Reconciliation Service

WHY: Turn payment outcomes into order and inventory changes exactly once, whatever
route the outcome arrives by (return URL, gateway webhook, staff action).

DESIGN PRINCIPLES:
- One Payment row per attempt; retries add rows, never overwrite.
- idempotency_key is unique per attempt and is the public payment reference.
- All methods converge on _apply_success_locked / _apply_failure_locked.
- Success is applied once: a completed payment short-circuits, and the order and
  inventory guards (status, inventory_status) refuse to commit stock twice.
- Gateway calls happen outside database transactions.
- Lock order is always Order row first, then Payment row.

FLOWS:
- card:          pending -> (gateway session) order pending_payment -> verify/webhook
- bank_transfer: pending, order pending_payment -> proofs -> staff approve/reject
- cod:           pending, order processing at checkout -> staff marks collected
"""

from __future__ import annotations

import json
import secrets
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import BankTransferProof, Order, Payment
from ..time_utils import parse_iso_datetime, utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from . import order_service
from .order_service import (
    OrderError,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_PENDING_PAYMENT,
    STATUS_PAID,
    STATUS_PROCESSING,
    STATUS_REFUNDED,
)
from .inventory_service import InventoryError
from .payment_gateway import (
    GATEWAY_CANCELLED,
    GATEWAY_COMPLETED,
    GATEWAY_FAILED,
    GATEWAY_PENDING,
    GATEWAY_STATUSES,
    PaymentGatewayError,
    get_payment_gateway,
    verify_webhook_signature,
)


class PaymentError(Exception):
    """Raised for payment operation errors."""
    code = "payment_error"


class PaymentNotFoundError(PaymentError):
    code = "not_found"


# =============================================================================
# PAYMENT METHODS & STATUS (CONSTANTS)
# =============================================================================

METHOD_CARD = "card"
METHOD_BANK_TRANSFER = "bank_transfer"
METHOD_COD = "cod"

VALID_METHODS = [METHOD_CARD, METHOD_BANK_TRANSFER, METHOD_COD]

PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"
PAYMENT_CANCELLED = "cancelled"

OPEN_PAYMENT_STATUSES = {PAYMENT_PENDING, PAYMENT_PROCESSING, PAYMENT_CANCELLED}

_KEY_PREFIX = {
    METHOD_CARD: "pay",
    METHOD_BANK_TRANSFER: "bt",
    METHOD_COD: "cod",
}

# Orders still waiting for money
PAYABLE_ORDER_STATUSES = {STATUS_DRAFT, STATUS_PENDING_PAYMENT}

WEBHOOK_EVENTS = {
    "payment.completed": GATEWAY_COMPLETED,
    "payment.failed": GATEWAY_FAILED,
    "payment.cancelled": GATEWAY_CANCELLED,
}

FAILURE_REASONS = {
    GATEWAY_FAILED: "Payment declined",
    GATEWAY_CANCELLED: "Payment cancelled by user",
}


def _error_result(exc: Exception) -> dict:
    return {"success": False, "error": str(exc), "code": getattr(exc, "code", "payment_error")}


def _new_idempotency_key(method: str, order_id: int) -> str:
    return f"{_KEY_PREFIX[method]}_{order_id}_{secrets.token_hex(8)}"


def _lock_payment(payment_id: int) -> Payment | None:
    return lock_for_update(
        db.session.query(Payment).filter_by(id=payment_id).populate_existing()
    ).first()


def _find_payment(payment_ref: str) -> Payment | None:
    """Resolve a public reference: idempotency key first, then gateway session id."""
    payment = db.session.query(Payment).filter_by(idempotency_key=payment_ref).first()
    if payment is None:
        payment = (
            db.session.query(Payment)
            .filter_by(external_id=payment_ref)
            .order_by(Payment.id.desc())
            .first()
        )
    return payment


def _lock_order_then_payment(payment_id: int, order_id: int) -> tuple[Order, Payment]:
    order = order_service.lock_order(order_id)
    payment = _lock_payment(payment_id)
    if order is None or payment is None:
        raise PaymentNotFoundError("Payment not found")
    return order, payment


def _merge_metadata(payment: Payment, extra: dict | None) -> None:
    if not extra:
        return
    merged = dict(payment.metadata_json or {})
    merged.update({k: v for k, v in extra.items() if v is not None})
    # Reassign so the JSON column is flagged dirty
    payment.metadata_json = merged


def _create_payment(order: Order, method: str) -> Payment:
    payment = Payment(
        order_id=order.id,
        method=method,
        status=PAYMENT_PENDING,
        amount_cents=order.total_cents,
        currency=order.currency,
        idempotency_key=_new_idempotency_key(method, order.id),
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def _check_payable(order: Order | None, *, user_id: int | None) -> Order:
    # Guests may only pay for guest orders
    if order is None or (order.user_id is not None and order.user_id != user_id):
        raise PaymentNotFoundError("Order not found")
    if order.status not in PAYABLE_ORDER_STATUSES:
        raise PaymentError(f"Order cannot be paid while {order.status}")
    if any(p.status == PAYMENT_COMPLETED for p in order.payments):
        raise PaymentError("Order is already paid")
    return order


# =============================================================================
# SHARED SUCCESS / FAILURE CORE (caller holds Order + Payment locks)
# =============================================================================

def _apply_success_locked(
    payment: Payment,
    order: Order,
    *,
    actor_user_id: int | None = None,
    notes: str | None = None,
    transaction_id: str | None = None,
    paid_at=None,
    external_status: str | None = None,
) -> dict:
    """
    Record a confirmed payment and move the order/inventory forward once.

    Returns flags for the caller's result: already_processed, requires_refund.
    """
    if payment.status not in OPEN_PAYMENT_STATUSES:
        return {"already_processed": True}

    payment.status = PAYMENT_COMPLETED
    payment.processed_at = paid_at or utcnow()
    payment.failure_reason = None
    if transaction_id:
        payment.transaction_id = transaction_id
    if external_status:
        payment.external_status = external_status

    if order.status in (STATUS_CANCELLED, STATUS_REFUNDED):
        order_service.record_status_note(
            order,
            f"Payment {payment.idempotency_key} received for {order.status} order - refund required",
            actor_user_id=actor_user_id,
        )
        current_app.logger.warning(
            "Payment %s completed for %s order %s", payment.id, order.status, order.order_number
        )
        return {"requires_refund": True}

    if payment.method == METHOD_COD:
        order_service.commit_order_inventory(
            order,
            actor_user_id=actor_user_id,
            notes=f"Cash on delivery collected for order {order.order_number}",
        )
        order_service.record_status_note(
            order, notes or "Cash on delivery payment collected", actor_user_id=actor_user_id
        )
        return {}

    if order.status in PAYABLE_ORDER_STATUSES:
        order_service.apply_transition(
            order, STATUS_PAID, actor_user_id=actor_user_id, notes=notes or "Payment completed"
        )
        return {}

    # Order was already paid through another attempt
    order_service.record_status_note(
        order,
        f"Duplicate payment {payment.idempotency_key} received - refund required",
        actor_user_id=actor_user_id,
    )
    current_app.logger.warning("Duplicate payment %s for order %s", payment.id, order.order_number)
    return {"requires_refund": True}


def _apply_failure_locked(
    payment: Payment,
    order: Order,
    reason: str,
    *,
    actor_user_id: int | None = None,
    external_status: str | None = None,
) -> dict:
    """Mark an open attempt failed. The order is left as-is so the customer can retry."""
    if payment.status not in (PAYMENT_PENDING, PAYMENT_PROCESSING):
        return {"already_processed": True}

    payment.status = PAYMENT_FAILED
    payment.failure_reason = reason
    if external_status:
        payment.external_status = external_status
    order_service.record_status_note(order, f"Payment failed: {reason}", actor_user_id=actor_user_id)
    return {}


def apply_payment_result(
    payment_ref: str,
    outcome: str,
    *,
    transaction_id: str | None = None,
    paid_at=None,
    amount_cents: int | None = None,
    actor_user_id: int | None = None,
    notes: str | None = None,
    extra_metadata: dict | None = None,
) -> dict:
    """
    Apply a payment outcome (completed | failed | cancelled | pending). Idempotent.

    payment_ref is the payment's idempotency key or its gateway session id.
    Re-applying an outcome that already took effect returns success with
    already_processed=True and changes nothing.

    Returns:
        {"success": True, "payment_ref", "payment_status", "order_id", "order_status",
         "already_processed", "requires_refund"}
        or {"success": False, "error", "code"}
    """
    if outcome not in GATEWAY_STATUSES:
        return {"success": False, "error": f"Unknown payment outcome: {outcome}", "code": "validation"}

    def _op():
        begin_write()
        found = _find_payment(payment_ref)
        if found is None:
            raise PaymentNotFoundError("Payment not found")
        order, payment = _lock_order_then_payment(found.id, found.order_id)

        if (
            outcome == GATEWAY_COMPLETED
            and amount_cents is not None
            and amount_cents != payment.amount_cents
            and payment.status in OPEN_PAYMENT_STATUSES
        ):
            raise PaymentError("Payment amount does not match the amount due")

        _merge_metadata(payment, extra_metadata)

        if outcome == GATEWAY_COMPLETED:
            info = _apply_success_locked(
                payment,
                order,
                actor_user_id=actor_user_id,
                notes=notes,
                transaction_id=transaction_id,
                paid_at=paid_at,
                external_status=outcome,
            )
        elif outcome in FAILURE_REASONS:
            info = _apply_failure_locked(
                payment,
                order,
                FAILURE_REASONS[outcome],
                actor_user_id=actor_user_id,
                external_status=outcome,
            )
        else:
            if payment.status in (PAYMENT_PENDING, PAYMENT_PROCESSING):
                payment.external_status = GATEWAY_PENDING
            info = {}

        db.session.commit()
        return order, payment, info

    try:
        order, payment, info = run_with_retry(_op)
    except (PaymentError, OrderError, InventoryError) as e:
        db.session.rollback()
        return _error_result(e)

    return {
        "success": True,
        "payment_ref": payment.idempotency_key,
        "payment_status": payment.status,
        "order_id": order.id,
        "order_status": order.status,
        "already_processed": bool(info.get("already_processed")),
        "requires_refund": bool(info.get("requires_refund")),
    }


# =============================================================================
# INITIATION
# =============================================================================

def initiate_payment(
    order_id: int,
    method: str,
    *,
    user_id: int | None = None,
    return_url: str | None = None,
    cancel_url: str | None = None,
) -> dict:
    """Start a payment attempt for an order with the chosen method."""
    if method == METHOD_CARD:
        return initiate_card_payment(order_id, user_id=user_id, return_url=return_url, cancel_url=cancel_url)
    if method == METHOD_BANK_TRANSFER:
        return record_bank_transfer_payment(order_id, user_id=user_id)
    if method == METHOD_COD:
        return record_cod_payment(order_id, user_id=user_id)
    return {
        "success": False,
        "error": f"Invalid payment method: {method}. Must be one of {VALID_METHODS}",
        "code": "validation",
    }


def _mark_gateway_failure(payment_id: int, order_id: int, reason: str) -> None:
    def _op():
        begin_write()
        order, payment = _lock_order_then_payment(payment_id, order_id)
        if payment.status == PAYMENT_PENDING:
            payment.status = PAYMENT_FAILED
            payment.failure_reason = reason
        db.session.commit()

    run_with_retry(_op)


def initiate_card_payment(
    order_id: int,
    *,
    user_id: int | None = None,
    return_url: str | None = None,
    cancel_url: str | None = None,
) -> dict:
    """
    Open a hosted card payment session.

    The pending Payment is committed before the gateway call so a crash mid-call
    still leaves an auditable attempt. Gateway failure marks the attempt failed and
    leaves the order where it was.
    """
    def _create():
        begin_write()
        order = _check_payable(order_service.lock_order(order_id), user_id=user_id)
        payment = _create_payment(order, METHOD_CARD)
        order.payment_method = METHOD_CARD
        db.session.commit()
        return order, payment

    try:
        order, payment = run_with_retry(_create)
    except (PaymentError, OrderError) as e:
        db.session.rollback()
        return _error_result(e)

    payment_id = payment.id
    payment_ref = payment.idempotency_key

    site = current_app.config["SITE_URL"].rstrip("/")
    try:
        session = get_payment_gateway().initiate(
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            order_ref=order.order_number,
            return_url=return_url or f"{site}/checkout/payment/return",
            cancel_url=cancel_url or f"{site}/checkout/payment/cancel",
            notify_url=f"{site}/api/payments/webhook",
            customer={"email": order.email, "phone": order.phone, "name": order.customer_name},
        )
    except PaymentGatewayError as e:
        current_app.logger.warning("Card payment initiation failed for order %s: %s", order_id, e)
        _mark_gateway_failure(payment_id, order_id, str(e))
        return {
            "success": False,
            "error": "Failed to initiate payment",
            "detail": str(e),
            "payment_ref": payment_ref,
            "code": "gateway_error",
        }

    def _attach():
        begin_write()
        locked_order, locked_payment = _lock_order_then_payment(payment_id, order_id)
        locked_payment.external_id = session.session_id
        _merge_metadata(locked_payment, {"payment_url": session.payment_url})
        if locked_order.status == STATUS_DRAFT:
            order_service.apply_transition(
                locked_order,
                STATUS_PENDING_PAYMENT,
                actor_user_id=user_id,
                notes="Card payment initiated",
            )
        db.session.commit()
        return locked_order

    try:
        order = run_with_retry(_attach)
    except (PaymentError, OrderError) as e:
        db.session.rollback()
        return _error_result(e)

    return {
        "success": True,
        "payment_ref": payment_ref,
        "payment_id": payment_id,
        "session_id": session.session_id,
        "payment_url": session.payment_url,
        "status": PAYMENT_PENDING,
        "order_status": order.status,
    }


def record_bank_transfer_payment(order_id: int, *, user_id: int | None = None) -> dict:
    """Open a bank transfer attempt; the order waits in pending_payment for proof."""
    def _op():
        begin_write()
        order = _check_payable(order_service.lock_order(order_id), user_id=user_id)
        payment = _create_payment(order, METHOD_BANK_TRANSFER)
        order.payment_method = METHOD_BANK_TRANSFER
        note = "Bank transfer initiated - awaiting proof of payment"
        if order.status == STATUS_DRAFT:
            order_service.apply_transition(order, STATUS_PENDING_PAYMENT, actor_user_id=user_id, notes=note)
        else:
            order_service.record_status_note(order, note, actor_user_id=user_id)
        db.session.commit()
        return order, payment

    try:
        order, payment = run_with_retry(_op)
    except (PaymentError, OrderError) as e:
        db.session.rollback()
        return _error_result(e)

    return {
        "success": True,
        "payment_ref": payment.idempotency_key,
        "payment_id": payment.id,
        "status": payment.status,
        "order_status": order.status,
    }


def start_cod_payment(order: Order, *, actor_user_id: int | None = None) -> Payment:
    """
    Open a cash on delivery attempt inside the caller's transaction.

    The order goes straight to processing; its stock stays reserved until the
    payment is collected.
    """
    if order.status != STATUS_DRAFT:
        raise PaymentError("Cash on delivery must be chosen before payment starts")
    payment = _create_payment(order, METHOD_COD)
    order.payment_method = METHOD_COD
    order_service.apply_transition(
        order,
        STATUS_PROCESSING,
        actor_user_id=actor_user_id,
        notes="Cash on Delivery order - payment to be collected on delivery",
    )
    return payment


def record_cod_payment(order_id: int, *, user_id: int | None = None) -> dict:
    def _op():
        begin_write()
        order = _check_payable(order_service.lock_order(order_id), user_id=user_id)
        payment = start_cod_payment(order, actor_user_id=user_id)
        db.session.commit()
        return order, payment

    try:
        order, payment = run_with_retry(_op)
    except (PaymentError, OrderError, InventoryError) as e:
        db.session.rollback()
        return _error_result(e)

    return {
        "success": True,
        "payment_ref": payment.idempotency_key,
        "payment_id": payment.id,
        "status": payment.status,
        "order_status": order.status,
    }


# =============================================================================
# CARD VERIFICATION & WEBHOOKS
# =============================================================================

def verify_card_payment(session_id: str, *, actor_user_id: int | None = None) -> dict:
    """Ask the gateway for a session's status (return-URL flow) and apply it."""
    payment = (
        db.session.query(Payment)
        .filter_by(external_id=session_id, method=METHOD_CARD)
        .order_by(Payment.id.desc())
        .first()
    )
    if payment is None:
        return {"success": False, "error": "Payment not found", "code": "not_found"}

    if payment.status in (PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_REFUNDED):
        return {
            "success": True,
            "payment_ref": payment.idempotency_key,
            "payment_status": payment.status,
            "order_id": payment.order_id,
            "order_status": payment.order.status,
            "already_processed": True,
            "requires_refund": False,
        }

    try:
        verification = get_payment_gateway().verify(session_id)
    except PaymentGatewayError as e:
        current_app.logger.warning("Card payment verification failed for session %s: %s", session_id, e)
        return {"success": False, "error": str(e), "code": "gateway_error"}

    return apply_payment_result(
        session_id,
        verification.status,
        transaction_id=verification.transaction_id,
        paid_at=verification.paid_at,
        actor_user_id=actor_user_id,
        extra_metadata={
            "transaction_id": verification.transaction_id,
            "card_last4": verification.card_last4,
            "card_brand": verification.card_brand,
        },
    )


def _amount_to_cents(value) -> int | None:
    if value is None:
        return None
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        raise PaymentError("Invalid amount in webhook payload")


def handle_gateway_webhook(body: bytes, signature: str | None) -> dict:
    """
    Process an at-least-once gateway notification.

    Duplicate deliveries resolve to already_processed instead of re-applying.
    """
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
    if secret and not verify_webhook_signature(body, signature, secret):
        return {"success": False, "error": "Invalid signature", "code": "invalid_signature"}

    try:
        data = json.loads(body)
    except ValueError:
        return {"success": False, "error": "Invalid webhook payload", "code": "validation"}
    if not isinstance(data, dict):
        return {"success": False, "error": "Invalid webhook payload", "code": "validation"}

    outcome = WEBHOOK_EVENTS.get(data.get("event"))
    session_id = data.get("sessionId")
    if outcome is None or not session_id:
        return {"success": False, "error": f"Unsupported webhook event: {data.get('event')}", "code": "validation"}

    try:
        amount_cents = _amount_to_cents(data.get("amount"))
    except PaymentError as e:
        return _error_result(e)
    try:
        paid_at = parse_iso_datetime(data.get("timestamp"))
    except ValueError:
        paid_at = None

    return apply_payment_result(
        session_id,
        outcome,
        transaction_id=data.get("transactionId"),
        paid_at=paid_at if outcome == GATEWAY_COMPLETED else None,
        amount_cents=amount_cents,
        extra_metadata={
            "transaction_id": data.get("transactionId"),
            "card_last4": data.get("cardLast4"),
            "card_brand": data.get("cardBrand"),
        },
    )


# =============================================================================
# BANK TRANSFER PROOFS & VERIFICATION
# =============================================================================

def upload_bank_transfer_proof(
    payment_id: int,
    *,
    file_url: str,
    file_name: str,
    file_size: int | None = None,
    mime_type: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> dict:
    """Attach transfer evidence to a pending bank transfer. No status change."""
    if not file_url or not file_name:
        return {"success": False, "error": "file_url and file_name are required", "code": "validation"}

    def _op():
        begin_write()
        payment = _lock_payment(payment_id)
        if payment is None or payment.method != METHOD_BANK_TRANSFER:
            raise PaymentNotFoundError("Bank transfer payment not found")
        if user_id is not None and payment.order.user_id is not None and payment.order.user_id != user_id:
            raise PaymentNotFoundError("Bank transfer payment not found")
        if payment.status != PAYMENT_PENDING:
            raise PaymentError("Payment already processed")
        proof = BankTransferProof(
            payment_id=payment.id,
            file_url=file_url,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            notes=notes,
        )
        db.session.add(proof)
        db.session.commit()
        return proof

    try:
        proof = run_with_retry(_op)
    except PaymentError as e:
        db.session.rollback()
        return _error_result(e)

    return {"success": True, "proof": proof.to_dict()}


def verify_bank_transfer(
    payment_id: int,
    *,
    approved: bool,
    staff_user_id: int | None = None,
    notes: str | None = None,
) -> dict:
    """
    Staff decision on a bank transfer.

    Approval applies payment success. Rejection needs a reason, fails the payment,
    cancels the order and releases its reservation. Proofs are stamped once.
    """
    notes = notes.strip() if isinstance(notes, str) else notes
    if not approved and not notes:
        return {"success": False, "error": "A reason is required to reject a bank transfer", "code": "validation"}

    def _op():
        begin_write()
        found = db.session.get(Payment, payment_id)
        if found is None or found.method != METHOD_BANK_TRANSFER:
            raise PaymentNotFoundError("Bank transfer payment not found")
        order, payment = _lock_order_then_payment(found.id, found.order_id)

        if payment.status != PAYMENT_PENDING:
            repeated = (approved and payment.status == PAYMENT_COMPLETED) or (
                not approved and payment.status == PAYMENT_FAILED
            )
            if not repeated:
                raise PaymentError("Payment already processed")
            db.session.commit()
            return order, payment, {"already_processed": True}

        now = utcnow()
        for proof in payment.proofs:
            if proof.verified_at is None:
                proof.verified_at = now
                proof.verified_by = staff_user_id
                proof.verification_notes = notes
                proof.is_approved = approved

        if approved:
            info = _apply_success_locked(
                payment,
                order,
                actor_user_id=staff_user_id,
                notes="Bank transfer verified",
            )
        else:
            payment.status = PAYMENT_FAILED
            payment.failure_reason = notes
            info = {}
            if order.status in PAYABLE_ORDER_STATUSES:
                order_service.apply_transition(
                    order,
                    STATUS_CANCELLED,
                    actor_user_id=staff_user_id,
                    notes=f"Bank transfer rejected: {notes}",
                )
            else:
                order_service.record_status_note(
                    order, f"Bank transfer rejected: {notes}", actor_user_id=staff_user_id
                )

        db.session.commit()
        return order, payment, info

    try:
        order, payment, info = run_with_retry(_op)
    except (PaymentError, OrderError, InventoryError) as e:
        db.session.rollback()
        return _error_result(e)

    return {
        "success": True,
        "payment_ref": payment.idempotency_key,
        "payment_status": payment.status,
        "order_id": order.id,
        "order_status": order.status,
        "already_processed": bool(info.get("already_processed")),
        "requires_refund": bool(info.get("requires_refund")),
    }


# =============================================================================
# CASH ON DELIVERY
# =============================================================================

def mark_cod_collected(order_id: int, *, staff_user_id: int | None = None) -> dict:
    """Record cash collected for a COD order; this is where its stock is committed."""
    def _op():
        begin_write()
        order = order_service.lock_order(order_id)
        if order is None:
            raise PaymentNotFoundError("Order not found")
        latest = (
            db.session.query(Payment)
            .filter_by(order_id=order_id, method=METHOD_COD)
            .order_by(Payment.id.desc())
            .first()
        )
        if latest is None:
            raise PaymentError("No cash on delivery payment for this order")
        payment = _lock_payment(latest.id)

        if payment.status == PAYMENT_COMPLETED:
            db.session.commit()
            return order, payment, {"already_processed": True}
        if payment.status != PAYMENT_PENDING:
            raise PaymentError(f"Cash on delivery payment is {payment.status}")
        if order.status in (STATUS_CANCELLED, STATUS_REFUNDED):
            raise PaymentError(f"Cannot collect payment for a {order.status} order")

        _merge_metadata(payment, {"collected_by": staff_user_id})
        info = _apply_success_locked(
            payment,
            order,
            actor_user_id=staff_user_id,
            notes="Cash on delivery payment collected",
        )
        db.session.commit()
        return order, payment, info

    try:
        order, payment, info = run_with_retry(_op)
    except (PaymentError, OrderError, InventoryError) as e:
        db.session.rollback()
        return _error_result(e)

    return {
        "success": True,
        "payment_ref": payment.idempotency_key,
        "payment_status": payment.status,
        "order_id": order.id,
        "order_status": order.status,
        "inventory_status": order.inventory_status,
        "already_processed": bool(info.get("already_processed")),
    }


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

def get_order_payments(order_id: int) -> list[dict]:
    payments = db.session.query(Payment).filter_by(order_id=order_id).order_by(Payment.id.asc()).all()
    result = []
    for payment in payments:
        data = payment.to_dict()
        if payment.method == METHOD_BANK_TRANSFER:
            data["proofs"] = [proof.to_dict() for proof in payment.proofs]
        result.append(data)
    return result


def get_pending_bank_transfers(limit: int = 50) -> list[dict]:
    rows = (
        db.session.query(Payment, Order)
        .join(Order, Payment.order_id == Order.id)
        .filter(Payment.method == METHOD_BANK_TRANSFER, Payment.status == PAYMENT_PENDING)
        .order_by(Payment.created_at.asc(), Payment.id.asc())
        .limit(limit)
        .all()
    )
    result = []
    for payment, order in rows:
        data = payment.to_dict()
        data["order_number"] = order.order_number
        data["customer_name"] = order.customer_name
        data["proofs"] = [proof.to_dict() for proof in payment.proofs]
        result.append(data)
    return result


def get_payment_stats() -> dict:
    rows = (
        db.session.query(
            Payment.method,
            Payment.status,
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount_cents), 0),
        )
        .group_by(Payment.method, Payment.status)
        .all()
    )
    by_method: dict[str, dict] = {}
    completed_total = 0
    pending_count = 0
    for method, status, count, amount in rows:
        bucket = by_method.setdefault(method, {})
        bucket[status] = {"count": int(count), "amount_cents": int(amount)}
        if status == PAYMENT_COMPLETED:
            completed_total += int(amount)
        if status == PAYMENT_PENDING:
            pending_count += int(count)
    return {
        "by_method": by_method,
        "completed_amount_cents": completed_total,
        "pending_count": pending_count,
    }
