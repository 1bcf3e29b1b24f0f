# Overview: Service-layer operations for picking sessions (pick list, packing, completion).

"""
Picking sessions.

    PICKING -> PACKING -> COMPLETED
    PICKING/PACKING -> CANCELLED (abandon)

- Creation moves every member CONFIRMED -> IN_PREPARATION and builds the pick
  list: one PickingItem per product, total_quantity_needed summed over members.
- complete_picking requires quantity_picked == total_quantity_needed for every
  product, then seeds PackingProgress per (order, product).
- Packing never takes more units of a product than were picked.
- complete_packing moves the order IN_PREPARATION -> READY_TO_SHIP. That
  transition is where stock is decremented.
- Abandoning returns members still IN_PREPARATION to CONFIRMED.
- A member cancelled before it is packed leaves the batch (drop_member): its
  units come off the pick list and its packing counters are dropped.
"""

from __future__ import annotations

from collections import OrderedDict

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import InvalidSessionState, NotFound, ValidationError
from ..models import OrderStatus, PackingProgress, PickingItem, SessionReservation, WorkSession
from ..models.sessions import CANCELLED, COMPLETED, KIND_PICKING, PACKING, PICKING
from fulfillment.time_utils import utcnow
from . import inventory_service, order_service, session_service
from .concurrency import run_with_retry


def _order_quantities(order) -> "OrderedDict[int, int]":
    per_product: "OrderedDict[int, int]" = OrderedDict()
    for li in order.line_items:
        per_product[li.product_id] = per_product.get(li.product_id, 0) + li.quantity
    return per_product


def _build_pick_list(session: WorkSession, orders) -> None:
    for order in orders:
        order_service.apply_transition(order, OrderStatus.IN_PREPARATION)

    needed: "OrderedDict[int, int]" = OrderedDict()
    for order in orders:
        for li in order.line_items:
            needed[li.product_id] = needed.get(li.product_id, 0) + li.quantity

    for product_id, quantity in needed.items():
        db.session.add(
            PickingItem(
                session_id=session.id,
                product_id=product_id,
                total_quantity_needed=quantity,
                quantity_picked=0,
            )
        )
    db.session.flush()


def create_picking_session(*, store_id: int, order_ids, notes: str | None = None) -> WorkSession:
    return session_service.create_session(
        store_id=store_id,
        kind=KIND_PICKING,
        order_ids=order_ids,
        notes=notes,
        setup=_build_pick_list,
    )


def get_picking_session(store_id: int, session_id: int, *, lock: bool = False) -> WorkSession:
    return session_service.get_session(store_id, session_id, KIND_PICKING, lock=lock)


def picking_items(session: WorkSession) -> list[PickingItem]:
    return (
        db.session.query(PickingItem)
        .filter_by(session_id=session.id)
        .order_by(PickingItem.id.asc())
        .all()
    )


def packing_progress(session: WorkSession) -> list[PackingProgress]:
    return (
        db.session.query(PackingProgress)
        .filter_by(session_id=session.id)
        .order_by(PackingProgress.order_id.asc(), PackingProgress.product_id.asc())
        .all()
    )


def session_detail(session: WorkSession) -> dict:
    data = session.to_dict()
    data["picking_items"] = [pi.to_dict() for pi in picking_items(session)]
    data["packing_progress"] = [pp.to_dict() for pp in packing_progress(session)]
    return data


def record_pick(*, store_id: int, session_id: int, product_id: int, picked_quantity: int) -> PickingItem:
    """Set (not add) the picked count of one product, within 0..total_quantity_needed."""
    def _op():
        session = get_picking_session(store_id, session_id, lock=True)
        session_service.require_status(session, PICKING)

        item = db.session.query(PickingItem).filter_by(session_id=session.id, product_id=product_id).first()
        if item is None:
            raise NotFound("Product is not on this pick list", session_id=session.id, product_id=product_id)
        if picked_quantity < 0 or picked_quantity > item.total_quantity_needed:
            raise ValidationError(
                f"picked_quantity must be between 0 and {item.total_quantity_needed}",
                field="picked_quantity",
                product_id=product_id,
            )
        item.quantity_picked = picked_quantity
        db.session.commit()
        return item

    return run_with_retry(_op)


def complete_picking(*, store_id: int, session_id: int) -> WorkSession:
    def _op():
        session = get_picking_session(store_id, session_id, lock=True)
        session_service.require_status(session, PICKING)

        items = picking_items(session)
        short = [pi.product_id for pi in items if pi.quantity_picked != pi.total_quantity_needed]
        if short:
            raise InvalidSessionState(
                "Every product must be fully picked before packing",
                session_id=session.id,
                product_ids=short,
            )

        for m in session.members:
            if m.order.status != OrderStatus.IN_PREPARATION.value:
                continue
            for product_id, quantity in _order_quantities(m.order).items():
                db.session.add(
                    PackingProgress(
                        session_id=session.id,
                        order_id=m.order_id,
                        product_id=product_id,
                        quantity_needed=quantity,
                        quantity_packed=0,
                    )
                )

        session.status = PACKING
        session.picking_completed_at = utcnow()
        db.session.commit()
        return session

    return run_with_retry(_op)


def _packed_total(session_id: int, product_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(PackingProgress.quantity_packed), 0))
        .filter_by(session_id=session_id, product_id=product_id)
        .scalar()
    )
    return int(total or 0)


def pack_unit(*, store_id: int, session_id: int, order_id: int, product_id: int) -> PackingProgress:
    """Put one picked unit into an order's box."""
    def _op():
        session = get_picking_session(store_id, session_id, lock=True)
        session_service.require_status(session, PACKING)

        progress = (
            db.session.query(PackingProgress)
            .filter_by(session_id=session.id, order_id=order_id, product_id=product_id)
            .first()
        )
        if progress is None:
            raise NotFound(
                "Nothing to pack for this order and product",
                session_id=session.id,
                order_id=order_id,
                product_id=product_id,
            )
        if progress.quantity_packed >= progress.quantity_needed:
            raise ValidationError("Product is already fully packed for this order", order_id=order_id, product_id=product_id)

        picked = db.session.query(PickingItem.quantity_picked).filter_by(
            session_id=session.id, product_id=product_id
        ).scalar() or 0
        if _packed_total(session.id, product_id) >= picked:
            raise ValidationError("No picked units of this product left to pack", product_id=product_id)

        progress.quantity_packed += 1
        db.session.commit()
        return progress

    return run_with_retry(_op)


def _all_members_done(session: WorkSession) -> bool:
    for m in session.members:
        if m.completed_at is None and m.order.status == OrderStatus.IN_PREPARATION.value:
            return False
    return True


def complete_packing(
    *,
    store_id: int,
    session_id: int,
    order_id: int,
    policy: str = inventory_service.STRICT,
) -> WorkSession:
    """
    Finish packing one order: fill its remaining packing counters and move it
    IN_PREPARATION -> READY_TO_SHIP (stock decrement). When no member is left
    in preparation the session completes and releases its orders.
    """
    policy = inventory_service.normalize_policy(policy)

    def _op():
        session = get_picking_session(store_id, session_id, lock=True)
        session_service.require_status(session, PACKING)
        m = session_service.member(session, order_id)

        if m.completed_at is not None:
            raise InvalidSessionState("Order is already packed", session_id=session.id, order_id=order_id)

        for progress in db.session.query(PackingProgress).filter_by(session_id=session.id, order_id=order_id):
            progress.quantity_packed = progress.quantity_needed

        order = order_service.get_order(store_id, order_id, lock=True)
        order_service.apply_transition(order, OrderStatus.READY_TO_SHIP, policy=policy)
        m.completed_at = utcnow()
        db.session.flush()

        if _all_members_done(session):
            session_service.finish_session(session, COMPLETED, "completed_at")
        db.session.commit()
        return session

    session = run_with_retry(_op)
    if session.status == COMPLETED:
        current_app.logger.info("Picking session %s completed", session.code)
    return session


def abandon_picking(*, store_id: int, session_id: int) -> WorkSession:
    def _op():
        session = get_picking_session(store_id, session_id, lock=True)
        session_service.require_status(session, PICKING, PACKING)

        for m in session.members:
            if m.order.status == OrderStatus.IN_PREPARATION.value:
                order_service.apply_transition(m.order, OrderStatus.CONFIRMED, system=True)

        session_service.finish_session(session, CANCELLED, "cancelled_at")
        db.session.commit()
        return session

    session = run_with_retry(_op)
    current_app.logger.info("Picking session %s abandoned", session.code)
    return session


def drop_member(session: WorkSession, order) -> None:
    """
    Take an unpacked order out of an active picking session. No commit.

    Called by order_service when the order is cancelled directly. While
    PICKING the pick list shrinks by the order's units (picked counts are
    capped at the new need); while PACKING its packing counters are dropped.
    A session left with nothing in preparation is closed: COMPLETED when some
    member was packed, CANCELLED otherwise.
    """
    session_service.require_status(session, PICKING, PACKING)

    if session.status == PICKING:
        quantities = _order_quantities(order)
        items = (
            db.session.query(PickingItem)
            .filter(PickingItem.session_id == session.id, PickingItem.product_id.in_(list(quantities)))
            .all()
        )
        for item in items:
            item.total_quantity_needed -= quantities[item.product_id]
            if item.total_quantity_needed <= 0:
                db.session.delete(item)
            elif item.quantity_picked > item.total_quantity_needed:
                item.quantity_picked = item.total_quantity_needed
    else:
        db.session.query(PackingProgress).filter_by(
            session_id=session.id, order_id=order.id
        ).delete(synchronize_session=False)

    db.session.query(SessionReservation).filter_by(
        session_id=session.id, order_id=order.id
    ).delete(synchronize_session=False)

    remaining = [
        m for m in session.members
        if m.order_id != order.id
        and m.completed_at is None
        and m.order.status == OrderStatus.IN_PREPARATION.value
    ]
    if not remaining:
        if any(m.completed_at is not None for m in session.members):
            session_service.finish_session(session, COMPLETED, "completed_at")
        else:
            session_service.finish_session(session, CANCELLED, "cancelled_at")
    db.session.flush()

    current_app.logger.info("Order %s left picking session %s", order.order_number, session.code)
