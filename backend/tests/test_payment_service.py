"""
Payment reconciliation tests.

Covers the three payment methods, idempotent re-delivery of outcomes, and the
inventory effects each outcome has on its order.
"""

import json

import pytest

from commerce.extensions import db
from commerce.models import InventoryMovement, Order, OrderStatusHistory, Payment
from commerce.services import order_service, payment_service
from commerce.services.payment_gateway import sign_payload
from conftest import WEBHOOK_SECRET, stock_of


def _webhook(session_id, event="payment.completed", amount=None, secret=WEBHOOK_SECRET, **extra):
    payload = {"event": event, "sessionId": session_id, "transactionId": f"txn_{session_id}"}
    if amount is not None:
        payload["amount"] = amount
    payload.update(extra)
    body = json.dumps(payload).encode("utf-8")
    return payment_service.handle_gateway_webhook(body, sign_payload(body, secret))


def _notes(order_id):
    return [
        h.notes for h in db.session.query(OrderStatusHistory)
        .filter_by(order_id=order_id)
        .order_by(OrderStatusHistory.id.asc())
    ]


def _payment(payment_ref):
    db.session.expire_all()
    return db.session.query(Payment).filter_by(idempotency_key=payment_ref).one()


@pytest.fixture
def card_order(make_variant, place_order):
    """Scenario A order: 2 units reserved out of 2, card payment session opened."""
    variant = make_variant(price_cents=2500, stock=2)
    order = place_order([(variant, 2)], user_id=31)
    started = payment_service.initiate_payment(order.id, "card", user_id=31)
    assert started["success"], started
    return order, variant, started


# =============================================================================
# CARD
# =============================================================================

class TestCardInitiation:
    def test_opens_gateway_session(self, card_order, gateway):
        order, variant, started = card_order

        assert started["session_id"] == "sess_1"
        assert started["payment_url"] == "https://pay.test/checkout/sess_1"
        assert started["order_status"] == "pending_payment"
        assert started["payment_ref"].startswith(f"pay_{order.id}_")

        call = gateway.initiated[0]
        assert call["amount_cents"] == 6399
        assert call["currency"] == "LKR"
        assert call["order_ref"] == order.order_number
        assert call["notify_url"] == "https://shop.test/api/payments/webhook"
        assert call["return_url"] == "https://shop.test/checkout/payment/return"

        payment = _payment(started["payment_ref"])
        assert payment.external_id == "sess_1"
        assert payment.metadata_json == {"payment_url": "https://pay.test/checkout/sess_1"}
        assert "Card payment initiated" in _notes(order.id)
        assert stock_of(variant.id) == (2, 2)

    def test_gateway_failure_marks_attempt_failed(self, make_variant, place_order, gateway):
        variant = make_variant(stock=3)
        order = place_order([(variant, 1)])
        gateway.fail_initiate = True

        result = payment_service.initiate_payment(order.id, "card")

        assert not result["success"]
        assert result["code"] == "gateway_error"
        assert result["error"] == "Failed to initiate payment"
        payment = _payment(result["payment_ref"])
        assert payment.status == "failed"
        assert "unreachable" in payment.failure_reason
        assert db.session.get(Order, order.id).status == "draft"
        assert stock_of(variant.id) == (3, 1)

        # The customer can retry with a fresh attempt
        gateway.fail_initiate = False
        retry = payment_service.initiate_payment(order.id, "card")
        assert retry["success"]
        assert retry["payment_ref"] != result["payment_ref"]

    def test_rejects_unpayable_orders(self, make_variant, place_order):
        order = place_order([(make_variant(stock=3), 1)])
        order_service.transition_order(order.id, "cancelled")

        result = payment_service.initiate_payment(order.id, "card")

        assert result == {"success": False, "error": "Order cannot be paid while cancelled", "code": "payment_error"}

    def test_rejects_other_customers_order(self, card_order):
        order, _, _ = card_order
        result = payment_service.initiate_payment(order.id, "bank_transfer", user_id=99)
        assert result["code"] == "not_found"

    def test_guest_cannot_pay_for_customer_order(self, card_order):
        order, variant, _ = card_order

        result = payment_service.initiate_payment(order.id, "cod")

        assert result["code"] == "not_found"
        order = db.session.get(Order, order.id)
        assert order.status == "pending_payment"
        assert order.payment_method == "card"
        assert [p.method for p in order.payments] == ["card"]

    def test_invalid_method(self, card_order):
        order, _, _ = card_order
        result = payment_service.initiate_payment(order.id, "barter")
        assert result["code"] == "validation"


class TestCardVerification:
    def test_scenario_c_success_commits_stock(self, card_order, notifier):
        order, variant, started = card_order

        result = payment_service.verify_card_payment("sess_1")

        assert result["success"], result
        assert result["payment_status"] == "completed"
        assert result["order_status"] == "paid"
        assert result["already_processed"] is False
        assert stock_of(variant.id) == (0, 0)

        payment = _payment(started["payment_ref"])
        assert payment.transaction_id == "txn_sess_1"
        assert payment.metadata_json["card_last4"] == "4242"
        assert payment.processed_at is not None
        refreshed = db.session.get(Order, order.id)
        assert refreshed.inventory_status == "committed"
        assert refreshed.paid_at is not None

    def test_second_verify_is_a_no_op(self, card_order, gateway):
        order, variant, _ = card_order
        payment_service.verify_card_payment("sess_1")
        movements = db.session.query(InventoryMovement).count()

        again = payment_service.verify_card_payment("sess_1")

        assert again["success"]
        assert again["already_processed"] is True
        assert gateway.verified == ["sess_1"]
        assert db.session.query(InventoryMovement).count() == movements
        assert stock_of(variant.id) == (0, 0)

    def test_declined_leaves_order_for_retry(self, card_order, gateway):
        order, variant, started = card_order
        gateway.statuses["sess_1"] = "failed"

        result = payment_service.verify_card_payment("sess_1")

        assert result["success"]
        assert result["payment_status"] == "failed"
        assert result["order_status"] == "pending_payment"
        assert _payment(started["payment_ref"]).failure_reason == "Payment declined"
        assert "Payment failed: Payment declined" in _notes(order.id)
        assert stock_of(variant.id) == (2, 2)

    def test_gateway_pending_changes_nothing(self, card_order, gateway):
        _, variant, started = card_order
        gateway.statuses["sess_1"] = "pending"

        result = payment_service.verify_card_payment("sess_1")

        assert result["payment_status"] == "pending"
        assert _payment(started["payment_ref"]).external_status == "pending"
        assert stock_of(variant.id) == (2, 2)

    def test_gateway_error_is_reported(self, card_order, gateway):
        gateway.fail_verify = True
        result = payment_service.verify_card_payment("sess_1")
        assert result["code"] == "gateway_error"

    def test_unknown_session(self, db_session):
        assert payment_service.verify_card_payment("sess_missing")["code"] == "not_found"


class TestWebhook:
    def test_completed_then_duplicate_delivery(self, card_order):
        order, variant, _ = card_order

        first = _webhook("sess_1", amount="63.99", timestamp="2026-10-19T08:30:00Z")
        second = _webhook("sess_1", amount="63.99", timestamp="2026-10-19T08:30:00Z")

        assert first["success"] and first["already_processed"] is False
        assert first["order_status"] == "paid"
        assert second["success"] and second["already_processed"] is True
        assert stock_of(variant.id) == (0, 0)
        sales = db.session.query(InventoryMovement).filter_by(type="sale").count()
        assert sales == 1
        paid_rows = [n for n in _notes(order.id) if n == "Payment completed"]
        assert len(paid_rows) == 1

    def test_return_url_after_webhook_is_a_no_op(self, card_order, gateway):
        _webhook("sess_1")
        result = payment_service.verify_card_payment("sess_1")
        assert result["already_processed"] is True
        assert gateway.verified == []

    def test_bad_signature_is_rejected(self, card_order):
        _, variant, started = card_order

        result = _webhook("sess_1", secret="not-the-secret")

        assert result == {"success": False, "error": "Invalid signature", "code": "invalid_signature"}
        assert _payment(started["payment_ref"]).status == "pending"
        assert stock_of(variant.id) == (2, 2)

    def test_missing_signature_is_rejected(self, card_order):
        body = json.dumps({"event": "payment.completed", "sessionId": "sess_1"}).encode()
        result = payment_service.handle_gateway_webhook(body, None)
        assert result["code"] == "invalid_signature"

    def test_amount_mismatch_is_rejected(self, card_order):
        _, variant, started = card_order

        result = _webhook("sess_1", amount="10.00")

        assert result["error"] == "Payment amount does not match the amount due"
        assert _payment(started["payment_ref"]).status == "pending"
        assert stock_of(variant.id) == (2, 2)

    def test_failed_event(self, card_order):
        _, variant, started = card_order
        result = _webhook("sess_1", event="payment.failed")
        assert result["payment_status"] == "failed"
        assert stock_of(variant.id) == (2, 2)

    def test_cancelled_event(self, card_order):
        _, _, started = card_order
        _webhook("sess_1", event="payment.cancelled")
        assert _payment(started["payment_ref"]).failure_reason == "Payment cancelled by user"

    def test_unsupported_event_and_bad_json(self, card_order):
        assert _webhook("sess_1", event="payment.disputed")["code"] == "validation"
        body = b"not json"
        result = payment_service.handle_gateway_webhook(body, sign_payload(body, WEBHOOK_SECRET))
        assert result == {"success": False, "error": "Invalid webhook payload", "code": "validation"}

    def test_late_success_on_cancelled_order_requires_refund(self, card_order):
        order, variant, started = card_order
        order_service.transition_order(order.id, "cancelled", notes="Customer called")
        assert _payment(started["payment_ref"]).status == "cancelled"
        assert stock_of(variant.id) == (2, 0)

        result = _webhook("sess_1")

        assert result["success"]
        assert result["requires_refund"] is True
        assert result["order_status"] == "cancelled"
        assert result["payment_status"] == "completed"
        # Released stock is not taken again
        assert stock_of(variant.id) == (2, 0)
        assert db.session.query(InventoryMovement).filter_by(type="sale").count() == 0


def test_duplicate_payment_flags_refund(card_order):
    order, variant, first = card_order
    second = payment_service.initiate_payment(order.id, "card", user_id=31)
    assert second["success"]

    payment_service.apply_payment_result(first["payment_ref"], "completed")
    result = payment_service.apply_payment_result(second["payment_ref"], "completed")

    assert result["requires_refund"] is True
    assert result["order_status"] == "paid"
    assert stock_of(variant.id) == (0, 0)


def test_apply_payment_result_validates_input(card_order):
    assert payment_service.apply_payment_result("nope", "completed")["code"] == "not_found"
    assert payment_service.apply_payment_result("sess_1", "exploded")["code"] == "validation"


def test_refund_after_card_payment(card_order):
    order, variant, started = card_order
    payment_service.verify_card_payment("sess_1")

    result = order_service.transition_order(order.id, "refunded", notes="Damaged in transit")

    assert result["success"]
    assert _payment(started["payment_ref"]).status == "refunded"
    # Refunds never restock; returned goods come back through the ledger separately
    assert stock_of(variant.id) == (0, 0)


def test_initiating_after_payment_is_rejected(card_order):
    order, _, _ = card_order
    payment_service.verify_card_payment("sess_1")
    result = payment_service.initiate_payment(order.id, "card", user_id=31)
    assert result["error"] == "Order cannot be paid while paid"


# =============================================================================
# BANK TRANSFER
# =============================================================================

@pytest.fixture
def transfer_order(make_variant, place_order):
    variant = make_variant(price_cents=2500, stock=2)
    order = place_order([(variant, 2)], payment_method="bank_transfer", user_id=41)
    started = payment_service.initiate_payment(order.id, "bank_transfer", user_id=41)
    assert started["success"], started
    return order, variant, started


class TestBankTransfer:
    def test_initiation_waits_for_proof(self, transfer_order):
        order, variant, started = transfer_order
        assert started["order_status"] == "pending_payment"
        assert started["payment_ref"].startswith("bt_")
        assert "Bank transfer initiated - awaiting proof of payment" in _notes(order.id)
        assert stock_of(variant.id) == (2, 2)

    def test_upload_proof(self, transfer_order):
        _, _, started = transfer_order
        result = payment_service.upload_bank_transfer_proof(
            started["payment_id"],
            file_url="https://files.test/r.pdf",
            file_name="r.pdf",
            file_size=1200,
            user_id=41,
        )
        assert result["success"]
        assert result["proof"]["is_approved"] is None

        pending = payment_service.get_pending_bank_transfers()
        assert len(pending) == 1
        assert pending[0]["proofs"][0]["file_name"] == "r.pdf"

    def test_upload_proof_checks_owner_and_fields(self, transfer_order):
        _, _, started = transfer_order
        other = payment_service.upload_bank_transfer_proof(
            started["payment_id"], file_url="https://files.test/r.pdf", file_name="r.pdf", user_id=42
        )
        assert other["code"] == "not_found"
        missing = payment_service.upload_bank_transfer_proof(started["payment_id"], file_url="", file_name="r.pdf")
        assert missing["code"] == "validation"

    def test_approval_commits_stock(self, transfer_order):
        order, variant, started = transfer_order
        payment_service.upload_bank_transfer_proof(
            started["payment_id"], file_url="https://files.test/r.pdf", file_name="r.pdf"
        )

        result = payment_service.verify_bank_transfer(started["payment_id"], approved=True, staff_user_id=900)

        assert result["order_status"] == "paid"
        assert result["payment_status"] == "completed"
        assert stock_of(variant.id) == (0, 0)
        proof = _payment(started["payment_ref"]).proofs[0]
        assert proof.is_approved is True
        assert proof.verified_by == 900
        assert "Bank transfer verified" in _notes(order.id)

    def test_scenario_d_rejection_cancels_and_releases(self, transfer_order):
        order, variant, started = transfer_order
        payment_service.upload_bank_transfer_proof(
            started["payment_id"], file_url="https://files.test/r.pdf", file_name="r.pdf"
        )

        result = payment_service.verify_bank_transfer(
            started["payment_id"], approved=False, staff_user_id=900, notes="Amount mismatch"
        )

        assert result["success"]
        assert result["order_status"] == "cancelled"
        assert result["payment_status"] == "failed"
        assert stock_of(variant.id) == (2, 0)
        assert "Bank transfer rejected: Amount mismatch" in _notes(order.id)
        proof = _payment(started["payment_ref"]).proofs[0]
        assert proof.is_approved is False
        assert proof.verification_notes == "Amount mismatch"

    def test_rejection_requires_reason(self, transfer_order):
        _, _, started = transfer_order
        result = payment_service.verify_bank_transfer(started["payment_id"], approved=False, notes="  ")
        assert result["code"] == "validation"

    def test_repeat_and_conflicting_decisions(self, transfer_order):
        _, variant, started = transfer_order
        payment_service.verify_bank_transfer(started["payment_id"], approved=True)

        repeat = payment_service.verify_bank_transfer(started["payment_id"], approved=True)
        conflict = payment_service.verify_bank_transfer(started["payment_id"], approved=False, notes="Oops")

        assert repeat["success"] and repeat["already_processed"] is True
        assert conflict == {"success": False, "error": "Payment already processed", "code": "payment_error"}
        assert stock_of(variant.id) == (0, 0)

    def test_unknown_payment(self, db_session):
        result = payment_service.verify_bank_transfer(555, approved=True)
        assert result["code"] == "not_found"


# =============================================================================
# CASH ON DELIVERY
# =============================================================================

class TestCashOnDelivery:
    def test_scenario_e_processing_until_collected(self, make_variant, place_order):
        variant = make_variant(stock=4)
        order = place_order([(variant, 2)], payment_method="cod")

        assert order.status == "processing"
        assert order.inventory_status == "reserved"
        assert stock_of(variant.id) == (4, 2)
        assert "Cash on Delivery order - payment to be collected on delivery" in _notes(order.id)
        payment = db.session.query(Payment).filter_by(order_id=order.id).one()
        assert (payment.method, payment.status) == ("cod", "pending")

        result = payment_service.mark_cod_collected(order.id, staff_user_id=900)

        assert result["success"]
        assert result["payment_status"] == "completed"
        assert result["order_status"] == "processing"
        assert result["inventory_status"] == "committed"
        assert stock_of(variant.id) == (2, 0)

        again = payment_service.mark_cod_collected(order.id, staff_user_id=900)
        assert again["already_processed"] is True
        assert stock_of(variant.id) == (2, 0)

    def test_fulfillment_keeps_reservation_until_collection(self, make_variant, place_order):
        variant = make_variant(stock=4)
        order = place_order([(variant, 1)], payment_method="cod")
        for status in ("packing", "shipped", "delivered"):
            assert order_service.transition_order(order.id, status)["success"]
        assert stock_of(variant.id) == (4, 1)

        payment_service.mark_cod_collected(order.id)

        assert stock_of(variant.id) == (3, 0)

    def test_cancel_before_collection_releases(self, make_variant, place_order):
        variant = make_variant(stock=4)
        order = place_order([(variant, 2)], payment_method="cod")

        order_service.transition_order(order.id, "cancelled", notes="Refused at door")
        result = payment_service.mark_cod_collected(order.id)

        assert stock_of(variant.id) == (4, 0)
        assert result["error"] == "Cash on delivery payment is cancelled"

    def test_refund_needs_collection(self, make_variant, place_order):
        order = place_order([(make_variant(stock=4), 1)], payment_method="cod")
        assert order_service.transition_order(order.id, "refunded")["code"] == "order_error"

        payment_service.mark_cod_collected(order.id)
        assert order_service.transition_order(order.id, "refunded")["status"] == "refunded"

    def test_collect_without_cod_payment(self, card_order):
        order, _, _ = card_order
        result = payment_service.mark_cod_collected(order.id)
        assert result["error"] == "No cash on delivery payment for this order"


def test_payment_queries(card_order, transfer_order):
    card, _, _ = card_order
    payments = payment_service.get_order_payments(card.id)
    assert [p["method"] for p in payments] == ["card"]

    stats = payment_service.get_payment_stats()
    assert stats["pending_count"] == 2
    assert stats["by_method"]["card"]["pending"]["amount_cents"] == 6399
