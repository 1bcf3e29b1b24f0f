# Overview: Service-layer operations for the inventory ledger; the only writer of Product.stock.

# backend/fulfillment/services/inventory_service.py

from __future__ import annotations

from collections import OrderedDict

from sqlalchemy import func

from ..extensions import db
from ..errors import InsufficientStock, NotFound, ValidationError
from ..models import Product, InventoryMovement, Order
from ..models.inventory import (
    MOVEMENT_ORDER_DECREMENT,
    MOVEMENT_ORDER_RESTORE_CANCEL,
    MOVEMENT_RETURN_RESTORE_PARTIAL,
    MOVEMENT_TYPES,
)
from .concurrency import lock_for_update, run_with_retry
"""
Inventory Ledger Invariants (authoritative)

Stock model:
- Product.stock is a stored counter, mutated ONLY here.
- Every mutation writes exactly one InventoryMovement in the same DB transaction
  (quantity_delta = the change actually applied, resulting_stock = stock after).
- Conservation: for every product, SUM(quantity_delta) == stock - initial_stock.

Serialization:
- Writers take a row lock on the product (SELECT ... FOR UPDATE) and the
  Product.version_id optimistic lock rejects a concurrent lost update with
  StaleDataError; the whole unit of work is then retried by run_with_retry.
- Multi-product operations lock products in ascending id order.

Stock policy (what a decrement below zero does):
- STRICT: reject with InsufficientStock; nothing is written
- CLAMP: floor at 0; the movement records the delta actually applied
- ALLOW_NEGATIVE: stock may go below zero

Order-level idempotency (answered from the movement log, not from flags):
- decrement_for_order: no-op if an order_decrement movement exists for the order
- restore_for_order: no-op unless a decrement exists and no order_restore_cancel does
"""


STRICT = "STRICT"
CLAMP = "CLAMP"
ALLOW_NEGATIVE = "ALLOW_NEGATIVE"
STOCK_POLICIES = (STRICT, CLAMP, ALLOW_NEGATIVE)


def normalize_policy(policy: str | None) -> str:
    if policy is None:
        return STRICT
    value = str(policy).strip().upper()
    if value not in STOCK_POLICIES:
        raise ValidationError(
            f"Unknown stock policy: {policy}. Must be one of {', '.join(STOCK_POLICIES)}",
            policy=policy,
        )
    return value


def _ensure_product_in_store(store_id: int, product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None or product.store_id != store_id:
        raise NotFound("Product not found", product_id=product_id)
    return product


def _apply_delta(
    product: Product,
    requested_delta: int,
    *,
    movement_type: str,
    policy: str,
    order_id: int | None = None,
    return_item_id: int | None = None,
    note: str | None = None,
) -> InventoryMovement:
    """Core stock write without locking, retry, or commit. Caller holds the row lock."""
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type: {movement_type}", movement_type=movement_type)

    current = product.stock
    applied = requested_delta
    if current + requested_delta < 0:
        if policy == STRICT:
            raise InsufficientStock(
                "Insufficient stock",
                product_ids=[product.id],
                requested=-requested_delta,
                available=current,
            )
        if policy == CLAMP:
            applied = -max(current, 0)

    product.stock = current + applied
    movement = InventoryMovement(
        store_id=product.store_id,
        product_id=product.id,
        order_id=order_id,
        return_item_id=return_item_id,
        movement_type=movement_type,
        quantity_delta=applied,
        resulting_stock=product.stock,
        note=note,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _require_positive(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer", quantity=quantity)
    return quantity


def decrement(
    *,
    store_id: int,
    product_id: int,
    quantity: int,
    movement_type: str = MOVEMENT_ORDER_DECREMENT,
    order_id: int | None = None,
    note: str | None = None,
    policy: str = STRICT,
    commit: bool = True,
) -> InventoryMovement:
    """
    Remove quantity units from a product's stock and record one movement.

    commit=False leaves the change in the caller's unit of work (no retry).
    """
    quantity = _require_positive(quantity)
    policy = normalize_policy(policy)

    def _op():
        product = _ensure_product_in_store(store_id, product_id, lock=True)
        movement = _apply_delta(
            product,
            -quantity,
            movement_type=movement_type,
            policy=policy,
            order_id=order_id,
            note=note,
        )
        if commit:
            db.session.commit()
        return movement

    if not commit:
        return _op()
    return run_with_retry(_op)


def increment(
    *,
    store_id: int,
    product_id: int,
    quantity: int,
    movement_type: str,
    order_id: int | None = None,
    return_item_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> InventoryMovement:
    """Add quantity units to a product's stock and record one movement."""
    quantity = _require_positive(quantity)

    def _op():
        product = _ensure_product_in_store(store_id, product_id, lock=True)
        movement = _apply_delta(
            product,
            quantity,
            movement_type=movement_type,
            policy=ALLOW_NEGATIVE,
            order_id=order_id,
            return_item_id=return_item_id,
            note=note,
        )
        if commit:
            db.session.commit()
        return movement

    if not commit:
        return _op()
    return run_with_retry(_op)


def _order_movements(order_id: int, movement_type: str) -> list[InventoryMovement]:
    return (
        db.session.query(InventoryMovement)
        .filter_by(order_id=order_id, movement_type=movement_type)
        .order_by(InventoryMovement.id.asc())
        .all()
    )


def has_order_decrement(order_id: int) -> bool:
    return db.session.query(
        db.session.query(InventoryMovement.id)
        .filter_by(order_id=order_id, movement_type=MOVEMENT_ORDER_DECREMENT)
        .exists()
    ).scalar()


def has_order_restore(order_id: int) -> bool:
    return db.session.query(
        db.session.query(InventoryMovement.id)
        .filter_by(order_id=order_id, movement_type=MOVEMENT_ORDER_RESTORE_CANCEL)
        .exists()
    ).scalar()


def order_has_movements(order_id: int) -> bool:
    return db.session.query(
        db.session.query(InventoryMovement.id).filter_by(order_id=order_id).exists()
    ).scalar()


def _lock_products(store_id: int, product_ids) -> dict[int, Product]:
    """Lock products in ascending id order so concurrent orders cannot deadlock."""
    locked = {}
    for product_id in sorted(set(product_ids)):
        locked[product_id] = _ensure_product_in_store(store_id, product_id, lock=True)
    return locked


def decrement_for_order(order: Order, *, policy: str = STRICT) -> list[InventoryMovement]:
    """
    Decrement stock for every line item of an order, at most once per order.

    No commit: runs inside the caller's status-transition unit of work.

    Under STRICT the check covers every line item before anything is written
    (a product appearing on two lines is checked against its summed quantity),
    so either all lines are decremented or InsufficientStock is raised and
    nothing changes.
    """
    policy = normalize_policy(policy)
    if has_order_decrement(order.id):
        return []

    lines = list(order.line_items)
    products = _lock_products(order.store_id, [li.product_id for li in lines])

    if policy == STRICT:
        needed: "OrderedDict[int, int]" = OrderedDict()
        for li in lines:
            needed[li.product_id] = needed.get(li.product_id, 0) + li.quantity
        short = [pid for pid, qty in needed.items() if products[pid].stock < qty]
        if short:
            raise InsufficientStock(
                "Insufficient stock for order",
                order_id=order.id,
                product_ids=short,
                shortages=[
                    {"product_id": pid, "requested": needed[pid], "available": products[pid].stock}
                    for pid in short
                ],
            )

    return [
        _apply_delta(
            products[li.product_id],
            -li.quantity,
            movement_type=MOVEMENT_ORDER_DECREMENT,
            policy=policy,
            order_id=order.id,
            note=f"Order {order.order_number}",
        )
        for li in lines
    ]


def restore_for_order(order: Order) -> list[InventoryMovement]:
    """
    Put back exactly what the order's decrement movements removed, at most once.

    No commit: runs inside the caller's status-transition unit of work.
    Replaying the recorded deltas (rather than the line items) keeps CLAMP
    decrements balanced.
    """
    if has_order_restore(order.id):
        return []
    decrements = _order_movements(order.id, MOVEMENT_ORDER_DECREMENT)
    if not decrements:
        return []

    products = _lock_products(order.store_id, [m.product_id for m in decrements])
    return [
        _apply_delta(
            products[m.product_id],
            -m.quantity_delta,
            movement_type=MOVEMENT_ORDER_RESTORE_CANCEL,
            policy=ALLOW_NEGATIVE,
            order_id=order.id,
            note=f"Order {order.order_number} cancelled",
        )
        for m in decrements
    ]


def restore_partial(
    *,
    store_id: int,
    product_id: int,
    accepted_quantity: int,
    order_id: int | None = None,
    return_item_id: int | None = None,
    note: str | None = None,
) -> InventoryMovement | None:
    """
    Return accepted units of a returned item to stock.

    No commit: runs inside the return session's completion unit of work.
    Zero accepted units write nothing.
    """
    if isinstance(accepted_quantity, bool) or not isinstance(accepted_quantity, int) or accepted_quantity < 0:
        raise ValidationError("accepted_quantity must be a non-negative integer", accepted_quantity=accepted_quantity)
    if accepted_quantity == 0:
        return None
    product = _ensure_product_in_store(store_id, product_id, lock=True)
    return _apply_delta(
        product,
        accepted_quantity,
        movement_type=MOVEMENT_RETURN_RESTORE_PARTIAL,
        policy=ALLOW_NEGATIVE,
        order_id=order_id,
        return_item_id=return_item_id,
        note=note,
    )


def list_movements(
    *,
    store_id: int,
    product_id: int,
    order_id: int | None = None,
    limit: int = 200,
) -> list[InventoryMovement]:
    _ensure_product_in_store(store_id, product_id)
    query = db.session.query(InventoryMovement).filter_by(store_id=store_id, product_id=product_id)
    if order_id is not None:
        query = query.filter_by(order_id=order_id)
    return query.order_by(InventoryMovement.id.desc()).limit(limit).all()


def ledger_balance(*, store_id: int, product_id: int) -> dict:
    """Conservation check for one product: SUM(deltas) == stock - initial_stock."""
    product = _ensure_product_in_store(store_id, product_id)
    total, count = db.session.query(
        func.coalesce(func.sum(InventoryMovement.quantity_delta), 0),
        func.count(InventoryMovement.id),
    ).filter(InventoryMovement.product_id == product_id).one()
    total = int(total or 0)
    return {
        "product_id": product.id,
        "initial_stock": product.initial_stock,
        "current_stock": product.stock,
        "movements_total": total,
        "movement_count": int(count or 0),
        "balanced": total == product.stock - product.initial_stock,
    }


def verify_ledger(store_id: int | None = None) -> list[dict]:
    """Balance of every product (optionally one store), unbalanced ones first."""
    query = db.session.query(Product)
    if store_id is not None:
        query = query.filter_by(store_id=store_id)
    results = [ledger_balance(store_id=p.store_id, product_id=p.id) for p in query.order_by(Product.id).all()]
    results.sort(key=lambda r: r["balanced"])
    return results
