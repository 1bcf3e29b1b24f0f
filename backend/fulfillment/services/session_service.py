# Overview: Service-layer machinery shared by picking, dispatch and return sessions.

"""
Session Coordinator

================================================================================
RESERVATION MODEL
================================================================================

An order is a member of at most one ACTIVE session per kind. The hold is a
SessionReservation row with UNIQUE (kind, order_id):

    create session  -> insert one reservation per member (same transaction)
    terminal status -> delete the session's reservations (same transaction)

Two callers racing for the same order both pass the read check, but only one
reservation insert can commit. The loser gets IntegrityError (or, on SQLite,
a lock/stale-version error), run_with_retry replays its unit of work, and the
replay sees the winner's reservation and raises OrderAlreadyInSession.

CHECK ORDER (create):
1. ids present, no duplicates            -> ValidationError
2. every order exists in the store       -> NotFound
3. no order held by this kind already    -> OrderAlreadyInSession
4. every order in the kind's source      -> OrdersNotEligible
   status                                   (OrderNotEligibleForReturn for returns)

CODES:
    {PREFIX}-{DDMMYYYY}-{NN}, date in the store's timezone, sequence per store
    per prefix per day.
================================================================================
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    InvalidSessionState,
    NotFound,
    OrderAlreadyInSession,
    OrderNotEligibleForReturn,
    OrdersNotEligible,
    ValidationError,
)
from ..models import Order, OrderStatus, SessionOrder, SessionReservation, Store, WorkSession
from ..models.sessions import (
    CREATED,
    DISPATCHED,
    IN_PROGRESS,
    KIND_DISPATCH,
    KIND_PICKING,
    KIND_RETURN,
    PACKING,
    PICKING,
    PROCESSING,
    SESSION_KINDS,
    SESSION_PREFIXES,
)
from fulfillment.time_utils import local_today, utcnow
from .concurrency import lock_for_update, run_with_retry
from .sequence_service import format_session_code, next_sequence_number


SOURCE_STATUSES = {
    KIND_PICKING: (OrderStatus.CONFIRMED,),
    KIND_DISPATCH: (OrderStatus.READY_TO_SHIP,),
    KIND_RETURN: (OrderStatus.DELIVERED, OrderStatus.SHIPPED),
}

INITIAL_STATUS = {
    KIND_PICKING: PICKING,
    KIND_DISPATCH: CREATED,
    KIND_RETURN: IN_PROGRESS,
}

ACTIVE_STATUSES = {
    KIND_PICKING: (PICKING, PACKING),
    KIND_DISPATCH: (CREATED, DISPATCHED, PROCESSING),
    KIND_RETURN: (IN_PROGRESS,),
}

_NOT_ELIGIBLE = {
    KIND_PICKING: OrdersNotEligible,
    KIND_DISPATCH: OrdersNotEligible,
    KIND_RETURN: OrderNotEligibleForReturn,
}


def get_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if store is None:
        raise NotFound("Store not found", store_id=store_id)
    return store


def _check_ids(order_ids) -> list[int]:
    if not order_ids:
        raise ValidationError("order_ids must be a non-empty list", field="order_ids")
    ids = list(order_ids)
    if len(set(ids)) != len(ids):
        raise ValidationError("order_ids contains duplicates", field="order_ids")
    return ids


def allocate_code(store: Store, kind: str) -> str:
    prefix = SESSION_PREFIXES[kind]
    date_part = local_today(store.timezone).strftime("%d%m%Y")
    number = next_sequence_number(store_id=store.id, prefix=prefix, date_part=date_part)
    return format_session_code(prefix, date_part, number)


def open_session(
    *,
    store_id: int,
    kind: str,
    order_ids,
    carrier_id: int | None = None,
    notes: str | None = None,
) -> tuple[WorkSession, list[Order]]:
    """
    Validate, reserve and number a new session. No commit.

    Returns the flushed session and its member orders (locked, in request order).
    """
    if kind not in SESSION_KINDS:
        raise ValidationError(f"Unknown session kind: {kind}", kind=kind)
    ids = _check_ids(order_ids)
    store = get_store(store_id)

    rows = (
        lock_for_update(db.session.query(Order).filter(Order.store_id == store_id, Order.id.in_(ids)))
        .order_by(Order.id.asc())
        .all()
    )
    by_id = {o.id: o for o in rows}
    missing = [oid for oid in ids if oid not in by_id]
    if missing:
        raise NotFound("Orders not found", order_ids=missing)
    orders = [by_id[oid] for oid in ids]

    held = (
        db.session.query(SessionReservation)
        .filter(SessionReservation.kind == kind, SessionReservation.order_id.in_(ids))
        .order_by(SessionReservation.order_id.asc())
        .all()
    )
    if held:
        raise OrderAlreadyInSession(
            f"Orders already belong to an active {kind} session",
            kind=kind,
            order_ids=[r.order_id for r in held],
            session_ids=sorted({r.session_id for r in held}),
        )

    allowed = SOURCE_STATUSES[kind]
    ineligible = [o.id for o in orders if OrderStatus.parse(o.status) not in allowed]
    if ineligible:
        raise _NOT_ELIGIBLE[kind](
            f"Orders are not eligible for a {kind} session",
            kind=kind,
            order_ids=ineligible,
            required_statuses=[s.value for s in allowed],
        )

    session = WorkSession(
        store_id=store_id,
        kind=kind,
        code=allocate_code(store, kind),
        status=INITIAL_STATUS[kind],
        carrier_id=carrier_id,
        notes=notes,
    )
    db.session.add(session)
    db.session.flush()

    for order in orders:
        session.members.append(SessionOrder(order_id=order.id, original_status=order.status))
        db.session.add(SessionReservation(kind=kind, order_id=order.id, session_id=session.id))
    db.session.flush()
    return session, orders


def create_session(
    *,
    store_id: int,
    kind: str,
    order_ids,
    carrier_id: int | None = None,
    notes: str | None = None,
    setup=None,
) -> WorkSession:
    """
    Create and commit a session. setup(session, orders) runs inside the same
    unit of work for kind-specific rows (pick lists, fees, return items).
    """
    def _op():
        session, orders = open_session(
            store_id=store_id,
            kind=kind,
            order_ids=order_ids,
            carrier_id=carrier_id,
            notes=notes,
        )
        if setup is not None:
            setup(session, orders)
        db.session.commit()
        return session

    session = run_with_retry(_op, retry_on=(IntegrityError,))
    current_app.logger.info(
        "Created %s session %s with %d orders", kind, session.code, len(session.members)
    )
    return session


def release_reservations(session: WorkSession) -> int:
    """Drop every reservation held by the session. No commit."""
    return (
        db.session.query(SessionReservation)
        .filter(SessionReservation.session_id == session.id)
        .delete(synchronize_session=False)
    )


def finish_session(session: WorkSession, status: str, stamp_field: str) -> None:
    """Move a session to a terminal status and release its orders. No commit."""
    session.status = status
    setattr(session, stamp_field, utcnow())
    release_reservations(session)
    db.session.flush()


def require_status(session: WorkSession, *allowed: str) -> None:
    if session.status not in allowed:
        raise InvalidSessionState(
            f"Session {session.code} is {session.status}; expected {' or '.join(allowed)}",
            session_id=session.id,
            status=session.status,
            expected=list(allowed),
        )


def get_session(store_id: int, session_id: int, kind: str, *, lock: bool = False) -> WorkSession:
    query = db.session.query(WorkSession).filter_by(id=session_id)
    if lock:
        query = lock_for_update(query)
    session = query.first()
    if session is None or session.store_id != store_id or session.kind != kind:
        raise NotFound("Session not found", session_id=session_id, kind=kind)
    return session


def list_sessions(store_id: int, kind: str, *, active: bool | None = None, limit: int = 100) -> list[WorkSession]:
    query = db.session.query(WorkSession).filter_by(store_id=store_id, kind=kind)
    if active is True:
        query = query.filter(WorkSession.status.in_(ACTIVE_STATUSES[kind]))
    elif active is False:
        query = query.filter(~WorkSession.status.in_(ACTIVE_STATUSES[kind]))
    return query.order_by(WorkSession.id.desc()).limit(limit).all()


def member(session: WorkSession, order_id: int) -> SessionOrder:
    for m in session.members:
        if m.order_id == order_id:
            return m
    raise NotFound("Order is not part of this session", session_id=session.id, order_id=order_id)
