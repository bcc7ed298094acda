# Overview: Order state machine; validates transitions and applies their inventory side effects.

"""
Order Lifecycle Service

================================================================================
STATE MACHINE
================================================================================

    draft -> pending_payment -> paid -> processing -> packing -> shipped -> delivered
      |            |             |          |            |          |          |
      +------------+-------------+----------+------------+--> cancelled        |
                                 +----------+------------+----------+----------+--> refunded

    draft -> paid        payment confirmed without a redirect step
    draft -> processing  cash on delivery (no payment gate before fulfillment)

    delivered, cancelled, refunded are terminal.

RULES:
1. ALLOWED_TRANSITIONS is the only source of truth; anything else raises
   InvalidTransitionError and changes nothing. Pairs in COD_ONLY_TRANSITIONS
   additionally require a cash on delivery order.
2. Side effect + Order update + OrderStatusHistory insert happen in one transaction.
3. Re-requesting the current status applies no side effect; it still writes a
   history row so repeated attempts are visible in the audit trail.

INVENTORY SIDE EFFECTS (driven by Order.inventory_status):
- -> paid:       reserved  -> committed  (commit-sale per line)
- -> cancelled:  reserved  -> released   (release per line)
                 committed -> restocked  (return movement per line)
- -> refunded:   reserved  -> released   (unpaid hold, e.g. cash on delivery)
Fulfillment steps never touch inventory.
================================================================================
"""

from __future__ import annotations

from sqlalchemy import or_

from ..extensions import db
from ..models import Order, OrderStatusHistory
from ..time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from . import inventory_service
from .inventory_service import InventoryError
from .notification_service import (
    EVENT_ORDER_DELIVERED,
    EVENT_ORDER_SHIPPED,
    notify_order_event,
)


class OrderError(Exception):
    """Raised for order operation errors."""
    code = "order_error"


class OrderNotFoundError(OrderError):
    code = "not_found"


class InvalidTransitionError(OrderError):
    """Raised when the state machine does not allow (from_status, to_status)."""
    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition: {from_status} -> {to_status}")


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

STATUS_DRAFT = "draft"
STATUS_PENDING_PAYMENT = "pending_payment"
STATUS_PAID = "paid"
STATUS_PROCESSING = "processing"
STATUS_PACKING = "packing"
STATUS_SHIPPED = "shipped"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"
STATUS_REFUNDED = "refunded"

VALID_STATUSES = [
    STATUS_DRAFT,
    STATUS_PENDING_PAYMENT,
    STATUS_PAID,
    STATUS_PROCESSING,
    STATUS_PACKING,
    STATUS_SHIPPED,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
    STATUS_REFUNDED,
]

TERMINAL_STATUSES = {STATUS_DELIVERED, STATUS_CANCELLED, STATUS_REFUNDED}

ALLOWED_TRANSITIONS = {
    (STATUS_DRAFT, STATUS_PENDING_PAYMENT),
    (STATUS_DRAFT, STATUS_PAID),
    (STATUS_DRAFT, STATUS_PROCESSING),
    (STATUS_DRAFT, STATUS_CANCELLED),
    (STATUS_PENDING_PAYMENT, STATUS_PAID),
    (STATUS_PENDING_PAYMENT, STATUS_CANCELLED),
    (STATUS_PAID, STATUS_PROCESSING),
    (STATUS_PAID, STATUS_CANCELLED),
    (STATUS_PAID, STATUS_REFUNDED),
    (STATUS_PROCESSING, STATUS_PACKING),
    (STATUS_PROCESSING, STATUS_CANCELLED),
    (STATUS_PROCESSING, STATUS_REFUNDED),
    (STATUS_PACKING, STATUS_SHIPPED),
    (STATUS_PACKING, STATUS_CANCELLED),
    (STATUS_PACKING, STATUS_REFUNDED),
    (STATUS_SHIPPED, STATUS_DELIVERED),
    (STATUS_SHIPPED, STATUS_REFUNDED),
    (STATUS_DELIVERED, STATUS_REFUNDED),
}

# Skips the payment gate, so only cash on delivery orders may take it
COD_ONLY_TRANSITIONS = {(STATUS_DRAFT, STATUS_PROCESSING)}

PAYMENT_METHOD_COD = "cod"

# Statuses a customer may cancel from themselves
CUSTOMER_CANCELLABLE_STATUSES = {STATUS_DRAFT, STATUS_PENDING_PAYMENT, STATUS_PAID}

INVENTORY_RESERVED = "reserved"
INVENTORY_COMMITTED = "committed"
INVENTORY_RELEASED = "released"
INVENTORY_RESTOCKED = "restocked"


def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise OrderError(f"Invalid status '{status}'. Must be one of: {', '.join(VALID_STATUSES)}")


def can_transition(from_status: str, to_status: str, payment_method: str | None = None) -> bool:
    """
    Check a pair against the state machine.

    Without a payment_method only the table is consulted; with one, COD-only
    pairs are refused for every other method.
    """
    if (from_status, to_status) not in ALLOWED_TRANSITIONS:
        return False
    if payment_method is not None and (from_status, to_status) in COD_ONLY_TRANSITIONS:
        return payment_method == PAYMENT_METHOD_COD
    return True


def get_valid_transitions(from_status: str, payment_method: str | None = None) -> list[str]:
    return [to for to in VALID_STATUSES if can_transition(from_status, to, payment_method)]


def lock_order(order_id: int) -> Order | None:
    return lock_for_update(
        db.session.query(Order).filter_by(id=order_id).populate_existing()
    ).first()


def _append_history(order: Order, from_status, to_status: str, notes, actor_user_id) -> OrderStatusHistory:
    entry = OrderStatusHistory(
        order_id=order.id,
        from_status=from_status,
        to_status=to_status,
        notes=notes,
        changed_by=actor_user_id,
    )
    db.session.add(entry)
    return entry


def record_status_note(order: Order, notes: str, *, actor_user_id: int | None = None) -> OrderStatusHistory:
    """Audit an event that does not change status (e.g. a failed payment attempt)."""
    entry = _append_history(order, order.status, order.status, notes, actor_user_id)
    db.session.flush()
    return entry


# =============================================================================
# INVENTORY SIDE EFFECTS
# =============================================================================

def _lines_by_variant(order: Order) -> list[tuple[int, int]]:
    """(variant_id, quantity) per variant, ascending, so locks are taken in a stable order."""
    totals: dict[int, int] = {}
    for item in order.items:
        if item.variant_id is None:
            continue
        totals[item.variant_id] = totals.get(item.variant_id, 0) + item.quantity
    return sorted(totals.items())


def commit_order_inventory(order: Order, *, actor_user_id: int | None = None, notes: str | None = None) -> bool:
    """Commit-sale every held line. No-op unless the order still holds a reservation."""
    if order.inventory_status != INVENTORY_RESERVED:
        return False
    for variant_id, quantity in _lines_by_variant(order):
        inventory_service.commit_sale(
            variant_id,
            quantity,
            reference_id=order.id,
            notes=notes or f"Sale for order {order.order_number}",
            actor_user_id=actor_user_id,
        )
    order.inventory_status = INVENTORY_COMMITTED
    return True


def release_order_inventory(order: Order, *, actor_user_id: int | None = None, notes: str | None = None) -> bool:
    """Give back whatever the order holds: release a hold, or restock committed units."""
    if order.inventory_status == INVENTORY_RESERVED:
        for variant_id, quantity in _lines_by_variant(order):
            inventory_service.release_reservation(
                variant_id,
                quantity,
                reference_id=order.id,
                notes=notes or f"Released for order {order.order_number}",
                actor_user_id=actor_user_id,
            )
        order.inventory_status = INVENTORY_RELEASED
        return True
    if order.inventory_status == INVENTORY_COMMITTED:
        for variant_id, quantity in _lines_by_variant(order):
            inventory_service.restock_return(
                variant_id,
                quantity,
                reference_id=order.id,
                notes=notes or f"Restocked from order {order.order_number}",
                actor_user_id=actor_user_id,
            )
        order.inventory_status = INVENTORY_RESTOCKED
        return True
    return False


def _apply_side_effects(order: Order, to_status: str, *, actor_user_id, notes) -> None:
    now = utcnow()
    if to_status == STATUS_PAID:
        commit_order_inventory(order, actor_user_id=actor_user_id)
        order.paid_at = order.paid_at or now
    elif to_status == STATUS_CANCELLED:
        release_order_inventory(order, actor_user_id=actor_user_id)
        for payment in order.payments:
            if payment.status == "pending":
                payment.status = "cancelled"
                payment.failure_reason = payment.failure_reason or "Order cancelled"
        order.cancelled_at = now
        order.cancellation_reason = notes
    elif to_status == STATUS_REFUNDED:
        completed = [p for p in order.payments if p.status == "completed"]
        if not completed:
            raise OrderError("Cannot refund an order without a completed payment")
        for payment in completed:
            payment.status = "refunded"
        if order.inventory_status == INVENTORY_RESERVED:
            release_order_inventory(order, actor_user_id=actor_user_id)
    elif to_status == STATUS_SHIPPED:
        order.shipped_at = now
    elif to_status == STATUS_DELIVERED:
        order.delivered_at = now


# =============================================================================
# TRANSITIONS
# =============================================================================

def apply_transition(
    order: Order,
    to_status: str,
    *,
    actor_user_id: int | None = None,
    notes: str | None = None,
) -> bool:
    """
    Move a row-locked order to to_status inside the caller's transaction.

    Returns True if the status changed, False for a repeated request (history row
    only). Flushes, never commits.

    Raises:
        InvalidTransitionError: pair not in ALLOWED_TRANSITIONS
        OrderError / InventoryError: side effect could not be applied
    """
    validate_status(to_status)
    from_status = order.status

    if from_status == to_status:
        _append_history(
            order,
            from_status,
            to_status,
            notes or f"Repeated request for status {to_status}; no change applied",
            actor_user_id,
        )
        db.session.flush()
        return False

    if not can_transition(from_status, to_status, order.payment_method or ""):
        raise InvalidTransitionError(from_status, to_status)

    _apply_side_effects(order, to_status, actor_user_id=actor_user_id, notes=notes)
    order.status = to_status
    _append_history(order, from_status, to_status, notes, actor_user_id)
    db.session.flush()
    return True


def notify_status_change(order: Order) -> None:
    if order.status == STATUS_SHIPPED:
        notify_order_event(EVENT_ORDER_SHIPPED, order)
    elif order.status == STATUS_DELIVERED:
        notify_order_event(EVENT_ORDER_DELIVERED, order)


def _error_result(exc: OrderError | InventoryError) -> dict:
    return {"success": False, "error": str(exc), "code": exc.code}


def transition_order(
    order_id: int,
    to_status: str,
    *,
    actor_user_id: int | None = None,
    notes: str | None = None,
) -> dict:
    """
    Staff-facing status change.

    Returns:
        {"success": True, "order_id", "from_status", "status", "changed"}
        or {"success": False, "error", "code"}
    """
    def _op():
        begin_write()
        order = lock_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        from_status = order.status
        changed = apply_transition(order, to_status, actor_user_id=actor_user_id, notes=notes)
        db.session.commit()
        return order, from_status, changed

    try:
        order, from_status, changed = run_with_retry(_op)
    except (OrderError, InventoryError) as e:
        db.session.rollback()
        return _error_result(e)

    if changed:
        notify_status_change(order)

    return {
        "success": True,
        "order_id": order.id,
        "from_status": from_status,
        "status": order.status,
        "changed": changed,
    }


def cancel_customer_order(order_id: int, *, user_id: int, reason: str | None = None) -> dict:
    """
    Customer-initiated cancellation of their own order.

    Only possible before fulfillment starts; whatever stock the order holds goes back.
    """
    def _op():
        begin_write()
        order = lock_order(order_id)
        if order is None or order.user_id is None or order.user_id != user_id:
            raise OrderNotFoundError("Order not found")
        if order.status not in CUSTOMER_CANCELLABLE_STATUSES:
            raise OrderError("Order can no longer be cancelled")
        note = f"Cancelled by customer: {reason}" if reason else "Cancelled by customer"
        apply_transition(order, STATUS_CANCELLED, actor_user_id=user_id, notes=note)
        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except (OrderError, InventoryError) as e:
        db.session.rollback()
        return _error_result(e)

    return {"success": True, "order_id": order.id, "status": order.status}


# =============================================================================
# QUERIES
# =============================================================================

def get_order_detail(order_id: int, *, user_id: int | None = None) -> dict | None:
    """Order with items, payments and history; user_id restricts to the owner."""
    order = db.session.get(Order, order_id)
    if order is None:
        return None
    if user_id is not None and order.user_id != user_id:
        return None
    data = order.to_dict(include_items=True)
    data["payments"] = [p.to_dict() for p in order.payments]
    data["status_history"] = [h.to_dict() for h in order.status_history]
    data["valid_transitions"] = get_valid_transitions(order.status, order.payment_method or "")
    return data


def list_orders(
    *,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)

    q = db.session.query(Order)
    if status:
        validate_status(status)
        q = q.filter(Order.status == status)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(
            Order.order_number.ilike(pattern),
            Order.email.ilike(pattern),
            Order.customer_name.ilike(pattern),
        ))

    total = q.count()
    orders = (
        q.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "orders": [o.to_dict() for o in orders],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


def get_order_timeline(order_id: int, *, user_id: int | None = None) -> list[dict] | None:
    order = db.session.get(Order, order_id)
    if order is None or (user_id is not None and order.user_id != user_id):
        return None
    return [h.to_dict() for h in order.status_history]


def update_admin_notes(order_id: int, admin_notes: str | None) -> dict:
    def _op():
        begin_write()
        order = lock_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        order.admin_notes = admin_notes
        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except OrderError as e:
        db.session.rollback()
        return _error_result(e)
    return {"success": True, "order_id": order.id, "admin_notes": order.admin_notes}

