# Overview: Service-layer operations for return sessions; resolves returned items and restocks accepted units.

"""
Return Processor

    IN_PROGRESS -> COMPLETED
    IN_PROGRESS -> CANCELLED

LIFECYCLE:
1. create: members must be DELIVERED or SHIPPED; one pending ReturnItem per
   order line item (ordered_quantity = line quantity)
2. update_item: resolve an item as accepted, rejected or partial
3. complete: accepted units go back to stock (return_restore_partial),
   rejected units never do, pending items restore nothing; every member
   becomes RETURNED
4. cancel: no stock effect, orders released

RULES:
- accepted_quantity + rejected_quantity <= ordered_quantity (QuantityExceedsOrdered)
- quantities are non-negative integers (ValidationError)
- items are editable only while the session is IN_PROGRESS
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import NotFound, QuantityExceedsOrdered, ValidationError
from ..models import OrderStatus, ReturnItem, WorkSession
from ..models.sessions import (
    CANCELLED,
    COMPLETED,
    IN_PROGRESS,
    ITEM_ACCEPTED,
    ITEM_PARTIAL,
    ITEM_REJECTED,
    KIND_RETURN,
)
from fulfillment.time_utils import utcnow
from . import inventory_service, order_service, session_service
from .concurrency import run_with_retry


RESOLVED_STATUSES = (ITEM_ACCEPTED, ITEM_REJECTED, ITEM_PARTIAL)

REJECTION_REASONS = ("damaged", "defective", "incomplete", "wrong_item", "other")


def _seed_items(session: WorkSession, orders) -> None:
    for order in orders:
        for li in order.line_items:
            db.session.add(
                ReturnItem(
                    return_session_id=session.id,
                    order_id=order.id,
                    product_id=li.product_id,
                    ordered_quantity=li.quantity,
                    accepted_quantity=0,
                    rejected_quantity=0,
                )
            )
    db.session.flush()


def create_return_session(*, store_id: int, order_ids, notes: str | None = None) -> WorkSession:
    return session_service.create_session(
        store_id=store_id,
        kind=KIND_RETURN,
        order_ids=order_ids,
        notes=notes,
        setup=_seed_items,
    )


def get_return_session(store_id: int, session_id: int, *, lock: bool = False) -> WorkSession:
    return session_service.get_session(store_id, session_id, KIND_RETURN, lock=lock)


def session_detail(session: WorkSession) -> dict:
    data = session.to_dict()
    data["items"] = [item.to_dict() for item in session.return_items]
    return data


def _quantity(value, field: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field)
    if value < 0:
        raise ValidationError(f"{field} cannot be negative", field=field)
    return value


def resolve_quantities(status: str, ordered: int, accepted, rejected) -> tuple[int, int]:
    """
    Fill in the quantities a status implies.

    - accepted without accepted_quantity -> everything accepted
    - rejected without rejected_quantity -> everything rejected
    - partial: a missing side is the remainder of the other

    The status must agree with the quantities: accepted and rejected account
    for every unit on one side, partial puts at least one unit somewhere and
    never every unit on a single side.
    """
    accepted = _quantity(accepted, "accepted_quantity")
    rejected = _quantity(rejected, "rejected_quantity")

    if status == ITEM_ACCEPTED:
        if accepted is None:
            accepted = ordered
    elif status == ITEM_REJECTED:
        if rejected is None:
            rejected = ordered
    elif status == ITEM_PARTIAL:
        if accepted is None and rejected is None:
            raise ValidationError("partial requires accepted_quantity or rejected_quantity")
        if accepted is None:
            accepted = max(ordered - rejected, 0)
        elif rejected is None:
            rejected = max(ordered - accepted, 0)
    else:
        raise ValidationError(
            f"status must be one of: {', '.join(RESOLVED_STATUSES)}",
            field="status",
            status=status,
        )

    accepted = accepted or 0
    rejected = rejected or 0
    if accepted + rejected > ordered:
        raise QuantityExceedsOrdered(
            "accepted_quantity + rejected_quantity exceeds the ordered quantity",
            ordered_quantity=ordered,
            accepted_quantity=accepted,
            rejected_quantity=rejected,
        )
    _check_consistent(status, ordered, accepted, rejected)
    return accepted, rejected


def _check_consistent(status: str, ordered: int, accepted: int, rejected: int) -> None:
    details = {
        "status": status,
        "ordered_quantity": ordered,
        "accepted_quantity": accepted,
        "rejected_quantity": rejected,
    }
    if status == ITEM_ACCEPTED and (accepted != ordered or rejected):
        raise ValidationError("accepted requires every unit accepted; use partial", field="status", **details)
    if status == ITEM_REJECTED and (rejected != ordered or accepted):
        raise ValidationError("rejected requires every unit rejected; use partial", field="status", **details)
    if status == ITEM_PARTIAL:
        if accepted + rejected == 0:
            raise ValidationError("partial requires at least one accepted or rejected unit", field="status", **details)
        if accepted == ordered or rejected == ordered:
            raise ValidationError(
                "partial cannot put every unit on one side; use accepted or rejected",
                field="status",
                **details,
            )


def update_item(
    *,
    store_id: int,
    session_id: int,
    item_id: int,
    status: str,
    accepted_quantity=None,
    rejected_quantity=None,
    rejection_reason: str | None = None,
    rejection_notes: str | None = None,
) -> ReturnItem:
    if rejection_reason is not None and rejection_reason not in REJECTION_REASONS:
        raise ValidationError(
            f"rejection_reason must be one of: {', '.join(REJECTION_REASONS)}",
            field="rejection_reason",
        )

    def _op():
        session = get_return_session(store_id, session_id, lock=True)
        session_service.require_status(session, IN_PROGRESS)

        item = db.session.get(ReturnItem, item_id)
        if item is None or item.return_session_id != session.id:
            raise NotFound("Return item not found", session_id=session.id, item_id=item_id)

        accepted, rejected = resolve_quantities(
            status, item.ordered_quantity, accepted_quantity, rejected_quantity
        )
        item.status = status
        item.accepted_quantity = accepted
        item.rejected_quantity = rejected
        item.rejection_reason = rejection_reason if rejected else None
        item.rejection_notes = rejection_notes if rejected else None
        item.processed_at = utcnow()
        db.session.commit()
        return item

    return run_with_retry(_op)


def complete_return_session(*, store_id: int, session_id: int) -> dict:
    """
    Restock accepted units, mark every member RETURNED, close the session.
    Returns a summary: accepted/rejected unit counts and the movements written.
    """
    def _op():
        session = get_return_session(store_id, session_id, lock=True)
        session_service.require_status(session, IN_PROGRESS)

        accepted_units = 0
        rejected_units = 0
        movements = []
        for item in session.return_items:
            rejected_units += item.rejected_quantity
            if item.status not in (ITEM_ACCEPTED, ITEM_PARTIAL):
                continue
            movement = inventory_service.restore_partial(
                store_id=store_id,
                product_id=item.product_id,
                accepted_quantity=item.accepted_quantity,
                order_id=item.order_id,
                return_item_id=item.id,
                note=f"Return {session.code}",
            )
            if movement is not None:
                movements.append(movement)
                accepted_units += item.accepted_quantity

        for m in session.members:
            order = order_service.get_order(store_id, m.order_id, lock=True)
            order_service.apply_transition(order, OrderStatus.RETURNED, system=True)

        session_service.finish_session(session, COMPLETED, "completed_at")
        db.session.commit()
        return {
            "session": session_detail(session),
            "accepted_units": accepted_units,
            "rejected_units": rejected_units,
            "movements": [mv.to_dict() for mv in movements],
        }

    summary = run_with_retry(_op)
    current_app.logger.info(
        "Return session %s completed: %d units restocked, %d rejected",
        summary["session"]["code"],
        summary["accepted_units"],
        summary["rejected_units"],
    )
    return summary


def cancel_return_session(*, store_id: int, session_id: int) -> WorkSession:
    def _op():
        session = get_return_session(store_id, session_id, lock=True)
        session_service.require_status(session, IN_PROGRESS)
        session_service.finish_session(session, CANCELLED, "cancelled_at")
        db.session.commit()
        return session

    session = run_with_retry(_op)
    current_app.logger.info("Return session %s cancelled", session.code)
    return session
