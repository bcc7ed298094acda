# Overview: Inventory ledger; every stock change is a movement row plus a cached counter update.

"""
Inventory Ledger Invariants (authoritative)

Model:
- InventoryItem holds the fast-path counters (quantity, reserved_quantity) per variant.
- InventoryMovement is the system of record; replaying an item's movements from zero
  reproduces its counters exactly (see replay_movements / verify_ledger).
- Counters are written ONLY by record_movement, in the same transaction as the movement.

Counters per movement type:
- purchase / adjustment / return / transfer / damaged -> quantity
- reserved / released -> reserved_quantity
- sale -> quantity AND reserved_quantity (a sale always consumes an equal hold)

Business invariants:
- 0 <= reserved_quantity <= quantity, so available = quantity - reserved_quantity >= 0.
- Reserve lowers available immediately; commit-sale lowers quantity and hold together
  (available unchanged); release lowers only the hold.

Locking:
- Every read-modify-write locks the item row first (lock_for_update). On SQLite the
  public entry points open the write transaction with begin_write().
- Wrappers used inside checkout/payment transactions (reserve_stock, commit_sale,
  release_reservation, restock_return) flush but never commit.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import InventoryItem, InventoryMovement, ProductVariant
from .concurrency import begin_write, lock_for_update, run_with_retry


class InventoryError(Exception):
    """Raised for ledger operations that cannot be applied."""
    code = "inventory_error"


class InventoryNotFoundError(InventoryError):
    code = "not_found"


class InsufficientStockError(InventoryError):
    """Raised when a movement would drive available stock negative."""
    code = "insufficient_stock"

    def __init__(self, variant_id: int, requested: int, available: int, message: str | None = None):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        super().__init__(
            message
            or f"Insufficient stock for variant {variant_id}: requested {requested}, available {available}"
        )


# =============================================================================
# MOVEMENT TYPES (CONSTANTS)
# =============================================================================

MOVEMENT_PURCHASE = "purchase"
MOVEMENT_SALE = "sale"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_RETURN = "return"
MOVEMENT_TRANSFER = "transfer"
MOVEMENT_DAMAGED = "damaged"
MOVEMENT_RESERVED = "reserved"
MOVEMENT_RELEASED = "released"

VALID_MOVEMENT_TYPES = [
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_RETURN,
    MOVEMENT_TRANSFER,
    MOVEMENT_DAMAGED,
    MOVEMENT_RESERVED,
    MOVEMENT_RELEASED,
]

RESERVATION_MOVEMENTS = {MOVEMENT_RESERVED, MOVEMENT_RELEASED}

# Required sign of the delta; adjustment/transfer may go either way
_MOVEMENT_SIGN = {
    MOVEMENT_PURCHASE: 1,
    MOVEMENT_RETURN: 1,
    MOVEMENT_RESERVED: 1,
    MOVEMENT_SALE: -1,
    MOVEMENT_DAMAGED: -1,
    MOVEMENT_RELEASED: -1,
}

REFERENCE_ORDER = "order"
REFERENCE_MANUAL_ADJUSTMENT = "manual_adjustment"
REFERENCE_PURCHASE = "purchase"


# =============================================================================
# LEDGER CORE
# =============================================================================

def get_inventory_item(variant_id: int) -> InventoryItem | None:
    return db.session.query(InventoryItem).filter_by(variant_id=variant_id).first()


def _lock_item(variant_id: int) -> InventoryItem | None:
    # populate_existing: counters read before the lock must not be trusted
    return lock_for_update(
        db.session.query(InventoryItem).filter_by(variant_id=variant_id).populate_existing()
    ).first()


def ensure_inventory_item(variant_id: int, *, low_stock_threshold: int | None = None) -> InventoryItem:
    """Get or create the (zero-stock) inventory row for a variant. Flushes, no commit."""
    item = get_inventory_item(variant_id)
    if item is not None:
        return item

    if db.session.get(ProductVariant, variant_id) is None:
        raise InventoryNotFoundError(f"Variant {variant_id} not found")

    if low_stock_threshold is None:
        low_stock_threshold = current_app.config.get("DEFAULT_LOW_STOCK_THRESHOLD", 5)

    item = InventoryItem(
        variant_id=variant_id,
        quantity=0,
        reserved_quantity=0,
        low_stock_threshold=low_stock_threshold,
    )
    db.session.add(item)
    db.session.flush()
    return item


def record_movement(
    item: InventoryItem,
    movement_type: str,
    delta: int,
    *,
    reference_type: str | None = None,
    reference_id: str | int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> InventoryMovement:
    """
    Apply one movement to a row-locked InventoryItem and append it to the ledger.

    Caller must hold the row lock and owns the transaction (flush only).

    Raises:
        InventoryError: unknown type, zero delta, wrong sign, or a hold that does not exist
        InsufficientStockError: the movement would make available stock negative
    """
    if movement_type not in VALID_MOVEMENT_TYPES:
        raise InventoryError(f"Invalid movement type: {movement_type}. Must be one of {VALID_MOVEMENT_TYPES}")
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise InventoryError("Movement quantity must be a non-zero integer")
    sign = _MOVEMENT_SIGN.get(movement_type)
    if sign is not None and delta * sign < 0:
        raise InventoryError(f"Movement type {movement_type} cannot have quantity {delta}")

    quantity = item.quantity
    reserved = item.reserved_quantity

    if movement_type in RESERVATION_MOVEMENTS:
        previous = reserved
        reserved += delta
        new = reserved
    elif movement_type == MOVEMENT_SALE:
        previous = quantity
        quantity += delta
        reserved += delta
        new = quantity
    else:
        previous = quantity
        quantity += delta
        new = quantity

    if reserved < 0:
        raise InventoryError(
            f"Variant {item.variant_id} has only {item.reserved_quantity} reserved; "
            f"cannot {movement_type} {abs(delta)}"
        )
    if quantity < 0 or reserved > quantity:
        raise InsufficientStockError(
            variant_id=item.variant_id,
            requested=abs(delta),
            available=item.available_quantity,
        )

    movement = InventoryMovement(
        inventory_item_id=item.id,
        type=movement_type,
        quantity=delta,
        previous_quantity=previous,
        new_quantity=new,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        notes=notes,
        performed_by=actor_user_id,
    )
    db.session.add(movement)

    item.quantity = quantity
    item.reserved_quantity = reserved
    db.session.flush()
    return movement


# =============================================================================
# ORDER-FACING OPERATIONS (no commit; caller owns the transaction)
# =============================================================================

def reserve_stock(
    variant_id: int,
    quantity: int,
    *,
    reference_type: str = REFERENCE_ORDER,
    reference_id: str | int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> InventoryMovement:
    """Hold units for an unpaid order. Physical quantity is untouched."""
    item = _lock_item(variant_id)
    if item is None:
        raise InsufficientStockError(variant_id=variant_id, requested=quantity, available=0)
    if item.available_quantity < quantity:
        raise InsufficientStockError(
            variant_id=variant_id,
            requested=quantity,
            available=item.available_quantity,
        )
    return record_movement(
        item,
        MOVEMENT_RESERVED,
        quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        actor_user_id=actor_user_id,
    )


def commit_sale(
    variant_id: int,
    quantity: int,
    *,
    reference_type: str = REFERENCE_ORDER,
    reference_id: str | int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> InventoryMovement:
    """Convert a hold into a permanent deduction (quantity and hold drop together)."""
    item = _lock_item(variant_id)
    if item is None:
        raise InventoryNotFoundError(f"No inventory record for variant {variant_id}")
    return record_movement(
        item,
        MOVEMENT_SALE,
        -quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        actor_user_id=actor_user_id,
    )


def release_reservation(
    variant_id: int,
    quantity: int,
    *,
    reference_type: str = REFERENCE_ORDER,
    reference_id: str | int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> InventoryMovement:
    """Drop a hold, restoring availability without touching physical stock."""
    item = _lock_item(variant_id)
    if item is None:
        raise InventoryNotFoundError(f"No inventory record for variant {variant_id}")
    return record_movement(
        item,
        MOVEMENT_RELEASED,
        -quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        actor_user_id=actor_user_id,
    )


def restock_return(
    variant_id: int,
    quantity: int,
    *,
    reference_type: str = REFERENCE_ORDER,
    reference_id: str | int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> InventoryMovement:
    """Put previously sold units back on the shelf."""
    item = _lock_item(variant_id)
    if item is None:
        raise InventoryNotFoundError(f"No inventory record for variant {variant_id}")
    return record_movement(
        item,
        MOVEMENT_RETURN,
        quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        actor_user_id=actor_user_id,
    )


# =============================================================================
# BACK-OFFICE OPERATIONS (own transaction)
# =============================================================================
#
# All three return {"success": True, ...} or {"success": False, "error", "code"}
# and roll back on failure.

def _error_result(exc: InventoryError) -> dict:
    return {"success": False, "error": str(exc), "code": exc.code}


def _validation_error(message: str) -> dict:
    return {"success": False, "error": message, "code": "validation"}


def adjust_stock(
    variant_id: int,
    *,
    delta: int | None = None,
    new_quantity: int | None = None,
    reason: str | None = None,
    actor_user_id: int | None = None,
) -> dict:
    """
    Manually correct physical stock for a variant.

    Exactly one of delta / new_quantity is given. The reason is stored on the
    movement. Stock can never go below zero or below what is currently reserved.

    Returns:
        {"success": True, "previous_quantity": int, "new_quantity": int, ...}
        or {"success": False, "error": str, "code": str}
    """
    if not reason or not str(reason).strip():
        return _validation_error("Reason is required for stock adjustments")
    if (delta is None) == (new_quantity is None):
        return _validation_error("Provide exactly one of delta or new_quantity")

    def _op():
        begin_write()
        if db.session.get(ProductVariant, variant_id) is None:
            raise InventoryNotFoundError(f"Variant {variant_id} not found")

        ensure_inventory_item(variant_id)
        item = _lock_item(variant_id)

        target = new_quantity if new_quantity is not None else item.quantity + delta
        if target < 0:
            raise InventoryError("Cannot adjust stock below zero")
        if target < item.reserved_quantity:
            raise InventoryError(
                f"Cannot adjust stock below reserved quantity ({item.reserved_quantity})"
            )

        change = target - item.quantity
        if change == 0:
            raise InventoryError("No change in stock quantity")

        previous = item.quantity
        movement = record_movement(
            item,
            MOVEMENT_ADJUSTMENT,
            change,
            reference_type=REFERENCE_MANUAL_ADJUSTMENT,
            notes=str(reason).strip(),
            actor_user_id=actor_user_id,
        )
        db.session.commit()
        return {
            "success": True,
            "variant_id": variant_id,
            "movement_id": movement.id,
            "previous_quantity": previous,
            "new_quantity": target,
        }

    try:
        return run_with_retry(_op)
    except InventoryError as e:
        db.session.rollback()
        return _error_result(e)


def receive_stock(
    variant_id: int,
    quantity: int,
    *,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> dict:
    """
    Book a purchase receipt (physical stock in).

    Returns:
        {"success": True, "variant_id", "movement_id", "inventory": {...}}
        or {"success": False, "error", "code"} for a non-positive quantity
        or an unknown variant
    """
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        return _validation_error("quantity must be a positive integer")

    def _op():
        begin_write()
        ensure_inventory_item(variant_id)
        item = _lock_item(variant_id)
        movement = record_movement(
            item,
            MOVEMENT_PURCHASE,
            quantity,
            reference_type=REFERENCE_PURCHASE,
            notes=notes,
            actor_user_id=actor_user_id,
        )
        db.session.commit()
        return {
            "success": True,
            "variant_id": variant_id,
            "movement_id": movement.id,
            "inventory": item.to_dict(),
        }

    try:
        return run_with_retry(_op)
    except InventoryError as e:
        db.session.rollback()
        return _error_result(e)


def update_low_stock_threshold(variant_id: int, threshold: int) -> dict:
    if not isinstance(threshold, int) or isinstance(threshold, bool) or threshold < 0:
        return _validation_error("Threshold must be a non-negative integer")

    def _op():
        begin_write()
        item = _lock_item(variant_id)
        if item is None:
            raise InventoryNotFoundError(f"No inventory record for variant {variant_id}")
        item.low_stock_threshold = threshold
        db.session.commit()
        return {"success": True, "variant_id": variant_id, "inventory": item.to_dict()}

    try:
        return run_with_retry(_op)
    except InventoryError as e:
        db.session.rollback()
        return _error_result(e)


# =============================================================================
# QUERIES & RECONCILIATION
# =============================================================================

def get_available_quantity(variant_id: int) -> int:
    item = get_inventory_item(variant_id)
    if item is None:
        return 0
    return item.available_quantity


def replay_movements(inventory_item_id: int) -> tuple[int, int]:
    """Rebuild (quantity, reserved_quantity) for an item from its movements alone."""
    quantity = 0
    reserved = 0
    movements = (
        db.session.query(InventoryMovement)
        .filter_by(inventory_item_id=inventory_item_id)
        .order_by(InventoryMovement.id.asc())
        .all()
    )
    for movement in movements:
        if movement.type in RESERVATION_MOVEMENTS:
            reserved += movement.quantity
        elif movement.type == MOVEMENT_SALE:
            quantity += movement.quantity
            reserved += movement.quantity
        else:
            quantity += movement.quantity
    return quantity, reserved


def verify_ledger() -> list[dict]:
    """Return every item whose cached counters disagree with its replayed ledger."""
    drifted = []
    for item in db.session.query(InventoryItem).order_by(InventoryItem.id.asc()).all():
        quantity, reserved = replay_movements(item.id)
        if quantity != item.quantity or reserved != item.reserved_quantity:
            drifted.append({
                "inventory_item_id": item.id,
                "variant_id": item.variant_id,
                "quantity": item.quantity,
                "reserved_quantity": item.reserved_quantity,
                "replayed_quantity": quantity,
                "replayed_reserved_quantity": reserved,
            })
    return drifted


def list_movements(
    *,
    variant_id: int | None = None,
    movement_type: str | None = None,
    reference_type: str | None = None,
    reference_id: str | int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[InventoryMovement]:
    q = db.session.query(InventoryMovement)
    if variant_id is not None:
        q = q.join(InventoryItem, InventoryMovement.inventory_item_id == InventoryItem.id).filter(
            InventoryItem.variant_id == variant_id
        )
    if movement_type:
        q = q.filter(InventoryMovement.type == movement_type)
    if reference_type:
        q = q.filter(InventoryMovement.reference_type == reference_type)
    if reference_id is not None:
        q = q.filter(InventoryMovement.reference_id == str(reference_id))
    return q.order_by(InventoryMovement.id.desc()).offset(offset).limit(limit).all()


def get_low_stock_items(limit: int = 50) -> list[InventoryItem]:
    available = InventoryItem.quantity - InventoryItem.reserved_quantity
    return (
        db.session.query(InventoryItem)
        .filter(available <= InventoryItem.low_stock_threshold)
        .order_by(available.asc(), InventoryItem.id.asc())
        .limit(limit)
        .all()
    )


def get_inventory_stats() -> dict:
    available = InventoryItem.quantity - InventoryItem.reserved_quantity
    item_count, total_quantity, total_reserved = db.session.query(
        func.count(InventoryItem.id),
        func.coalesce(func.sum(InventoryItem.quantity), 0),
        func.coalesce(func.sum(InventoryItem.reserved_quantity), 0),
    ).one()
    low_stock = (
        db.session.query(func.count(InventoryItem.id))
        .filter(available <= InventoryItem.low_stock_threshold, available > 0)
        .scalar()
    )
    out_of_stock = db.session.query(func.count(InventoryItem.id)).filter(available <= 0).scalar()
    return {
        "item_count": int(item_count),
        "total_quantity": int(total_quantity),
        "total_reserved": int(total_reserved),
        "total_available": int(total_quantity) - int(total_reserved),
        "low_stock_count": int(low_stock or 0),
        "out_of_stock_count": int(out_of_stock or 0),
    }
