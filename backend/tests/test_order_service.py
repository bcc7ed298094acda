"""
Order state machine tests: allowed pairs, side effects, audit trail.
"""

from commerce.extensions import db
from commerce.models import InventoryMovement, Order, OrderStatusHistory
from commerce.services import order_service
from commerce.services.inventory_service import MOVEMENT_RETURN
from commerce.services.notification_service import (
    EVENT_ORDER_CONFIRMED,
    EVENT_ORDER_DELIVERED,
    EVENT_ORDER_SHIPPED,
)
from conftest import stock_of


def _history(order_id):
    return (
        db.session.query(OrderStatusHistory)
        .filter_by(order_id=order_id)
        .order_by(OrderStatusHistory.id.asc())
        .all()
    )


def test_transition_table():
    assert order_service.get_valid_transitions("draft") == ["pending_payment", "paid", "processing", "cancelled"]
    assert order_service.get_valid_transitions("shipped") == ["delivered", "refunded"]
    for terminal in ("cancelled", "refunded"):
        assert order_service.get_valid_transitions(terminal) == []
    assert order_service.get_valid_transitions("delivered") == ["refunded"]
    assert not order_service.can_transition("draft", "shipped")
    assert len(order_service.ALLOWED_TRANSITIONS) == 18
    assert order_service.can_transition("draft", "processing", "cod")
    assert not order_service.can_transition("draft", "processing", "card")
    assert order_service.get_valid_transitions("draft", "bank_transfer") == ["pending_payment", "paid", "cancelled"]


def test_paid_commits_reservation(make_variant, place_order):
    variant = make_variant(stock=5)
    order = place_order([(variant, 2)])
    assert stock_of(variant.id) == (5, 2)

    result = order_service.transition_order(order.id, "paid", actor_user_id=900, notes="Manual capture")

    assert result == {
        "success": True,
        "order_id": order.id,
        "from_status": "draft",
        "status": "paid",
        "changed": True,
    }
    assert stock_of(variant.id) == (3, 0)
    order = db.session.get(Order, order.id)
    assert order.inventory_status == "committed"
    assert order.paid_at is not None
    last = _history(order.id)[-1]
    assert (last.from_status, last.to_status, last.notes, last.changed_by) == ("draft", "paid", "Manual capture", 900)


def test_invalid_transition_changes_nothing(make_variant, place_order):
    variant = make_variant(stock=5)
    order = place_order([(variant, 1)])
    history_before = len(_history(order.id))

    result = order_service.transition_order(order.id, "shipped")

    assert result == {
        "success": False,
        "error": "Invalid status transition: draft -> shipped",
        "code": "invalid_transition",
    }
    assert db.session.get(Order, order.id).status == "draft"
    assert len(_history(order.id)) == history_before
    assert stock_of(variant.id) == (5, 1)


def test_unknown_status_is_rejected(make_variant, place_order):
    order = place_order([(make_variant(stock=5), 1)])
    result = order_service.transition_order(order.id, "teleported")
    assert not result["success"]
    assert result["code"] == "order_error"
    assert "Invalid status 'teleported'" in result["error"]


def test_missing_order(db_session):
    result = order_service.transition_order(4242, "paid")
    assert result["code"] == "not_found"


def test_repeated_request_only_writes_history(make_variant, place_order):
    variant = make_variant(stock=5)
    order = place_order([(variant, 2)])
    order_service.transition_order(order.id, "paid")
    movements_before = db.session.query(InventoryMovement).count()

    result = order_service.transition_order(order.id, "paid")

    assert result["success"]
    assert result["changed"] is False
    assert db.session.query(InventoryMovement).count() == movements_before
    assert stock_of(variant.id) == (3, 0)
    last = _history(order.id)[-1]
    assert last.from_status == last.to_status == "paid"
    assert last.notes == "Repeated request for status paid; no change applied"


def test_cancel_unpaid_releases_reservation(make_variant, place_order):
    variant = make_variant(stock=5)
    order = place_order([(variant, 2)])

    result = order_service.transition_order(order.id, "cancelled", notes="Out of delivery zone")

    assert result["success"]
    assert stock_of(variant.id) == (5, 0)
    order = db.session.get(Order, order.id)
    assert order.inventory_status == "released"
    assert order.cancelled_at is not None
    assert order.cancellation_reason == "Out of delivery zone"


def test_cancel_after_payment_restocks(make_variant, place_order):
    variant = make_variant(stock=5)
    order = place_order([(variant, 2)])
    order_service.transition_order(order.id, "paid")
    order_service.transition_order(order.id, "processing")

    result = order_service.transition_order(order.id, "cancelled")

    assert result["success"]
    assert stock_of(variant.id) == (5, 0)
    assert db.session.get(Order, order.id).inventory_status == "restocked"
    returns = db.session.query(InventoryMovement).filter_by(type=MOVEMENT_RETURN).all()
    assert [(m.quantity, m.reference_id) for m in returns] == [(2, str(order.id))]


def test_unpaid_card_order_cannot_skip_to_fulfillment(make_variant, place_order):
    variant = make_variant(stock=2)
    order = place_order([(variant, 2)], payment_method="card")

    result = order_service.transition_order(order.id, "processing")

    assert result == {
        "success": False,
        "error": "Invalid status transition: draft -> processing",
        "code": "invalid_transition",
    }
    order = db.session.get(Order, order.id)
    assert order.status == "draft"
    assert order.inventory_status == "reserved"
    assert stock_of(variant.id) == (2, 2)
    assert [(h.from_status, h.to_status) for h in _history(order.id)] == [(None, "draft")]


def test_cancelled_is_terminal(make_variant, place_order):
    variant = make_variant(stock=5)
    order = place_order([(variant, 1)])
    order_service.transition_order(order.id, "cancelled")

    result = order_service.transition_order(order.id, "paid")

    assert result["code"] == "invalid_transition"
    assert stock_of(variant.id) == (5, 0)


def test_refund_requires_completed_payment(make_variant, place_order):
    order = place_order([(make_variant(stock=5), 1)])
    order_service.transition_order(order.id, "paid")

    result = order_service.transition_order(order.id, "refunded")

    assert result == {
        "success": False,
        "error": "Cannot refund an order without a completed payment",
        "code": "order_error",
    }
    assert db.session.get(Order, order.id).status == "paid"


def test_fulfillment_path_and_notifications(make_variant, place_order, notifier):
    variant = make_variant(stock=5)
    order = place_order([(variant, 1)])
    for status in ("paid", "processing", "packing", "shipped", "delivered"):
        assert order_service.transition_order(order.id, status)["changed"]

    order = db.session.get(Order, order.id)
    assert order.shipped_at is not None
    assert order.delivered_at is not None
    # Fulfillment never touches stock after the sale
    assert stock_of(variant.id) == (4, 0)
    assert [event for event, _, _ in notifier.events] == [
        EVENT_ORDER_CONFIRMED,
        EVENT_ORDER_SHIPPED,
        EVENT_ORDER_DELIVERED,
    ]
    timeline = order_service.get_order_timeline(order.id)
    assert [(h["from_status"], h["to_status"]) for h in timeline] == [
        (None, "draft"),
        ("draft", "paid"),
        ("paid", "processing"),
        ("processing", "packing"),
        ("packing", "shipped"),
        ("shipped", "delivered"),
    ]


def test_notification_failure_does_not_undo_transition(make_variant, place_order, notifier):
    order = place_order([(make_variant(stock=5), 1)])
    for status in ("paid", "processing", "packing"):
        order_service.transition_order(order.id, status)
    notifier.fail = True

    result = order_service.transition_order(order.id, "shipped")

    assert result["success"]
    assert db.session.get(Order, order.id).status == "shipped"


class TestCustomerCancellation:
    def test_owner_can_cancel_before_fulfillment(self, make_variant, place_order):
        variant = make_variant(stock=5)
        order = place_order([(variant, 2)], user_id=11)

        result = order_service.cancel_customer_order(order.id, user_id=11, reason="Changed my mind")

        assert result == {"success": True, "order_id": order.id, "status": "cancelled"}
        assert _history(order.id)[-1].notes == "Cancelled by customer: Changed my mind"
        assert stock_of(variant.id) == (5, 0)

    def test_other_customer_gets_not_found(self, make_variant, place_order):
        order = place_order([(make_variant(stock=5), 1)], user_id=11)
        result = order_service.cancel_customer_order(order.id, user_id=12)
        assert result["code"] == "not_found"

    def test_too_late_once_processing(self, make_variant, place_order):
        order = place_order([(make_variant(stock=5), 1)], user_id=11)
        order_service.transition_order(order.id, "paid")
        order_service.transition_order(order.id, "processing")

        result = order_service.cancel_customer_order(order.id, user_id=11)

        assert result["error"] == "Order can no longer be cancelled"
        assert db.session.get(Order, order.id).status == "processing"


def test_order_detail_respects_owner(make_variant, place_order):
    order = place_order([(make_variant(stock=5), 1)], user_id=11)

    assert order_service.get_order_detail(order.id, user_id=12) is None
    detail = order_service.get_order_detail(order.id, user_id=11)
    assert detail["order_number"] == order.order_number
    assert len(detail["items"]) == 1
    assert detail["valid_transitions"] == ["pending_payment", "paid", "cancelled"]


def test_list_orders_filters(make_variant, place_order):
    variant = make_variant(stock=10)
    first = place_order([(variant, 1)])
    place_order([(variant, 1)])
    order_service.transition_order(first.id, "cancelled")

    assert order_service.list_orders()["total"] == 2
    cancelled = order_service.list_orders(status="cancelled")
    assert [o["id"] for o in cancelled["orders"]] == [first.id]
    assert order_service.list_orders(search=first.order_number)["total"] == 1


def test_update_admin_notes(make_variant, place_order):
    order = place_order([(make_variant(stock=5), 1)])
    result = order_service.update_admin_notes(order.id, "Call before delivery")
    assert result["admin_notes"] == "Call before delivery"
