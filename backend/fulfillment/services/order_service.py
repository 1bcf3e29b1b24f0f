# Overview: Service-layer operations for the order lifecycle; owns the status graph and its stock side effects.

"""
Order Lifecycle Service

================================================================================
STATE MACHINE
================================================================================

    PENDING -> CONFIRMED -> IN_PREPARATION -> READY_TO_SHIP -> SHIPPED -> DELIVERED

    CANCELLED: from PENDING, CONFIRMED, IN_PREPARATION, READY_TO_SHIP, SHIPPED, DELIVERED
    RETURNED:  from SHIPPED, DELIVERED, only through a completed return session

SYSTEM EDGES (never accepted from a direct status request):
    SHIPPED -> READY_TO_SHIP         dispatch session cancelled after dispatch
    IN_PREPARATION -> CONFIRMED      picking session abandoned
    SHIPPED/DELIVERED -> RETURNED    return session completed

STOCK SIDE EFFECTS (same DB transaction as the status change):
    IN_PREPARATION -> READY_TO_SHIP   inventory_service.decrement_for_order
    * -> CANCELLED                    inventory_service.restore_for_order
                                      (no-op when nothing was decremented)

RULES:
1. Unknown target status -> InvalidStatus
2. Target equal to current status -> no-op success, no side effects
3. Edge not in the graph -> InvalidTransition, nothing changes
4. Insufficient stock (STRICT) -> InsufficientStock, nothing changes
5. Order held by an active session -> OrderAlreadyInSession (direct requests
   only). Cancelling a picking member that is not packed yet is allowed: it
   leaves the batch and the pick list shrinks.
================================================================================
"""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    InvalidStatus,
    InvalidTransition,
    NotFound,
    OrderAlreadyInSession,
    OrderNotDeletable,
    ValidationError,
)
from ..models import Carrier, Order, OrderLineItem, OrderStatus, Product, SessionOrder, SessionReservation, WorkSession
from ..models.sessions import KIND_PICKING
from fulfillment.time_utils import utcnow
from . import inventory_service
from .concurrency import lock_for_update, run_with_retry
from .sequence_service import next_sequence_number


S = OrderStatus

ORDER_GRAPH: dict[OrderStatus, frozenset] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.IN_PREPARATION, S.CANCELLED}),
    S.IN_PREPARATION: frozenset({S.READY_TO_SHIP, S.CANCELLED}),
    S.READY_TO_SHIP: frozenset({S.SHIPPED, S.CANCELLED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset({S.CANCELLED}),
    S.CANCELLED: frozenset(),
    S.RETURNED: frozenset(),
}

SYSTEM_EDGES = frozenset({
    (S.SHIPPED, S.READY_TO_SHIP),
    (S.IN_PREPARATION, S.CONFIRMED),
    (S.SHIPPED, S.RETURNED),
    (S.DELIVERED, S.RETURNED),
})

# Lifecycle timestamp stamped when an order enters a status
_STATUS_TIMESTAMPS = {
    S.CONFIRMED: "confirmed_at",
    S.SHIPPED: "shipped_at",
    S.DELIVERED: "delivered_at",
    S.CANCELLED: "cancelled_at",
    S.RETURNED: "returned_at",
}


def parse_status(value) -> OrderStatus:
    status = OrderStatus.parse(value)
    if status is None:
        raise InvalidStatus(
            f"Invalid status '{value}'. Must be one of: {', '.join(s.value for s in OrderStatus)}",
            status=value if isinstance(value, str) else None,
        )
    return status


def can_transition(from_status, to_status, *, system: bool = False) -> bool:
    """True when to_status is an outgoing edge of from_status (system edges only if system=True)."""
    current = parse_status(from_status)
    target = parse_status(to_status)
    if current == target:
        return True
    if target in ORDER_GRAPH[current]:
        return True
    return system and (current, target) in SYSTEM_EDGES


def get_order(store_id: int, order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None or order.store_id != store_id:
        raise NotFound("Order not found", order_id=order_id)
    return order


def list_orders(store_id: int, *, status: str | None = None, limit: int = 200) -> list[Order]:
    query = db.session.query(Order).filter_by(store_id=store_id)
    if status:
        query = query.filter_by(status=parse_status(status).value)
    return query.order_by(Order.id.desc()).limit(limit).all()


def apply_transition(
    order: Order,
    target: OrderStatus,
    *,
    policy: str = inventory_service.STRICT,
    system: bool = False,
) -> bool:
    """
    Core transition without locking, retry, or commit.

    Used by transition_order() and by the session services, which move many
    orders inside one unit of work. Returns False for the same-status no-op.
    """
    current = parse_status(order.status)
    target = parse_status(target)

    if current == target:
        return False

    allowed = target in ORDER_GRAPH[current] or (system and (current, target) in SYSTEM_EDGES)
    if not allowed:
        if target == S.RETURNED:
            message = "Orders can only be marked RETURNED by completing a return session"
        else:
            message = f"Cannot transition order from {current.value} to {target.value}"
        raise InvalidTransition(
            message,
            order_id=order.id,
            from_status=current.value,
            to_status=target.value,
        )

    if current == S.IN_PREPARATION and target == S.READY_TO_SHIP:
        inventory_service.decrement_for_order(order, policy=policy)
    elif target == S.CANCELLED:
        inventory_service.restore_for_order(order)

    order.status = target.value
    stamp = _STATUS_TIMESTAMPS.get(target)
    if stamp:
        setattr(order, stamp, utcnow())
    if current == S.SHIPPED and target == S.READY_TO_SHIP:
        order.shipped_at = None

    db.session.flush()
    return True


def _check_session_holds(order: Order, target: OrderStatus) -> None:
    """
    Refuse a direct transition of an order an active session still controls.

    A picking member that is not packed yet may be cancelled: it is dropped
    from the batch here, before the cancel is applied. Packed picking members
    are no longer controlled by their session.
    """
    holds = (
        db.session.query(SessionReservation)
        .filter_by(order_id=order.id)
        .order_by(SessionReservation.id.asc())
        .all()
    )
    for hold in holds:
        session = db.session.get(WorkSession, hold.session_id)
        if hold.kind == KIND_PICKING:
            m = db.session.query(SessionOrder).filter_by(session_id=session.id, order_id=order.id).first()
            if m is not None and m.completed_at is not None:
                continue
            if target == S.CANCELLED:
                from . import picking_service
                picking_service.drop_member(session, order)
                continue
        raise OrderAlreadyInSession(
            f"Order is held by {hold.kind} session {session.code}; change it through the session",
            order_id=order.id,
            kind=hold.kind,
            session_id=session.id,
        )


def transition_order(
    *,
    store_id: int,
    order_id: int,
    status,
    policy: str = inventory_service.STRICT,
) -> Order:
    """
    Direct status change requested by a caller (PATCH /orders/{id}/status).

    System edges are refused here, and so are orders held by an active
    session (see _check_session_holds). The status change and its stock
    effect commit together or not at all.
    """
    target = parse_status(status)
    policy = inventory_service.normalize_policy(policy)

    def _op():
        order = get_order(store_id, order_id, lock=True)
        if parse_status(order.status) != target:
            _check_session_holds(order, target)
        apply_transition(order, target, policy=policy)
        db.session.commit()
        return order

    return run_with_retry(_op)


def create_order(*, store_id: int, patch: dict, items: list[dict]) -> Order:
    """
    Create a PENDING order from a validated patch and normalized line items.

    - every product must exist in the store
    - unit_price_cents defaults to the product price
    - total_price_cents defaults to sum(qty * unit price) + shipping_cost_cents
    - order_number defaults to the store's next ORD-NNNNN
    """
    product_ids = sorted({it["product_id"] for it in items})

    def _op():
        products = {
            p.id: p
            for p in db.session.query(Product)
            .filter(Product.store_id == store_id, Product.id.in_(product_ids))
            .all()
        }
        missing = [pid for pid in product_ids if pid not in products]
        if missing:
            raise NotFound("Products not found", product_ids=missing)

        carrier_id = patch.get("carrier_id")
        if carrier_id is not None:
            carrier = db.session.get(Carrier, carrier_id)
            if carrier is None or carrier.store_id != store_id:
                raise NotFound("Carrier not found", carrier_id=carrier_id)

        order_number = patch.get("order_number")
        if order_number:
            exists = db.session.query(Order.id).filter_by(store_id=store_id, order_number=order_number).first()
            if exists:
                raise ValidationError("order_number already exists", field="order_number", order_number=order_number)
        else:
            order_number = f"ORD-{next_sequence_number(store_id=store_id, prefix='ORD'):05d}"

        order = Order(store_id=store_id, order_number=order_number, status=S.PENDING.value)
        for key, value in patch.items():
            if key in ("order_number", "line_items", "total_price_cents"):
                continue
            setattr(order, key, value)
        order.shipping_cost_cents = patch.get("shipping_cost_cents") or 0

        subtotal = 0
        for position, it in enumerate(items):
            unit_price = it["unit_price_cents"]
            if unit_price is None:
                unit_price = products[it["product_id"]].price_cents or 0
            subtotal += unit_price * it["quantity"]
            order.line_items.append(
                OrderLineItem(
                    product_id=it["product_id"],
                    quantity=it["quantity"],
                    unit_price_cents=unit_price,
                    position=position,
                )
            )

        total = patch.get("total_price_cents")
        order.total_price_cents = total if total is not None else subtotal + order.shipping_cost_cents

        db.session.add(order)
        db.session.commit()
        return order

    return run_with_retry(_op, retry_on=(IntegrityError,))


def delete_order(*, store_id: int, order_id: int) -> None:
    """
    Hard delete. Only orders that were never processed: no inventory movement
    references them and they never joined a session.
    """
    def _op():
        order = get_order(store_id, order_id, lock=True)
        if inventory_service.order_has_movements(order.id):
            raise OrderNotDeletable("Order has stock movements and cannot be deleted", order_id=order.id)
        in_session = db.session.query(SessionOrder.id).filter_by(order_id=order.id).first()
        if in_session:
            raise OrderNotDeletable("Order has been part of a session and cannot be deleted", order_id=order.id)
        db.session.delete(order)
        db.session.commit()

    run_with_retry(_op)
