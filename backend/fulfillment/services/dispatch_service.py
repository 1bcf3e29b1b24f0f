# Overview: Service-layer operations for dispatch sessions and courier delivery-result imports.

"""
Dispatch sessions.

    CREATED -> DISPATCHED -> PROCESSING -> SETTLED
    CREATED/DISPATCHED -> CANCELLED

- Creation snapshots, per member, whether the courier collects cash (is_cod)
  and the carrier's zone fee, so later rate-table edits do not change an
  open session.
- dispatch moves every member READY_TO_SHIP -> SHIPPED.
- cancel releases the orders; members already SHIPPED go back to READY_TO_SHIP
  (stock stays decremented, the goods are still out of the shelf).
- import_delivery_results records the courier's report one row at a time.
  Each row commits on its own: a bad row is reported in "errors" and never
  blocks the rows around it.
- settlement lives in settlement_service.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from flask import current_app

from ..extensions import db
from ..errors import FulfillmentError, InvalidTransition, NotFound, ValidationError
from ..models import OrderStatus, WorkSession
from ..models.sessions import (
    CANCELLED,
    CREATED,
    DELIVERY_RESULTS,
    DISPATCHED,
    KIND_DISPATCH,
    PROCESSING,
    RESULT_DELIVERED,
    RESULT_FAILED,
)
from fulfillment.time_utils import utcnow
from . import carrier_service, order_service, session_service
from .concurrency import run_with_retry


# Courier spreadsheets are often filled in Spanish
_RESULT_ALIASES = {
    "delivered": RESULT_DELIVERED,
    "entregado": RESULT_DELIVERED,
    "failed": RESULT_FAILED,
    "not delivered": RESULT_FAILED,
    "no entregado": RESULT_FAILED,
    "rechazado": RESULT_FAILED,
}


def create_dispatch_session(
    *,
    store_id: int,
    order_ids,
    carrier_id: int,
    notes: str | None = None,
) -> WorkSession:
    carrier = carrier_service.get_carrier(store_id, carrier_id)
    if not carrier.is_active:
        raise ValidationError("Carrier is inactive", carrier_id=carrier_id)

    def _snapshot_fees(session: WorkSession, orders) -> None:
        rates = carrier_service.zone_rate_map(carrier)
        by_id = {o.id: o for o in orders}
        for m in session.members:
            order = by_id[m.order_id]
            m.is_cod = carrier_service.is_cod_payment(order.payment_method)
            m.carrier_fee_cents = carrier_service.lookup_zone_rate(rates, order.delivery_zone)
            order.carrier_id = carrier.id
        db.session.flush()

    return session_service.create_session(
        store_id=store_id,
        kind=KIND_DISPATCH,
        order_ids=order_ids,
        carrier_id=carrier.id,
        notes=notes,
        setup=_snapshot_fees,
    )


def get_dispatch_session(store_id: int, session_id: int, *, lock: bool = False) -> WorkSession:
    return session_service.get_session(store_id, session_id, KIND_DISPATCH, lock=lock)


def dispatch(*, store_id: int, session_id: int) -> WorkSession:
    """Hand the batch to the courier: every READY_TO_SHIP member becomes SHIPPED."""
    def _op():
        session = get_dispatch_session(store_id, session_id, lock=True)
        session_service.require_status(session, CREATED)

        for m in session.members:
            if m.order.status == OrderStatus.CANCELLED.value:
                continue
            order_service.apply_transition(m.order, OrderStatus.SHIPPED)

        session.status = DISPATCHED
        session.dispatched_at = utcnow()
        db.session.commit()
        return session

    session = run_with_retry(_op)
    current_app.logger.info("Dispatch session %s dispatched", session.code)
    return session


def cancel_dispatch(*, store_id: int, session_id: int) -> WorkSession:
    def _op():
        session = get_dispatch_session(store_id, session_id, lock=True)
        session_service.require_status(session, CREATED, DISPATCHED)

        for m in session.members:
            if m.order.status == OrderStatus.SHIPPED.value:
                order_service.apply_transition(m.order, OrderStatus.READY_TO_SHIP, system=True)

        session_service.finish_session(session, CANCELLED, "cancelled_at")
        db.session.commit()
        return session

    session = run_with_retry(_op)
    current_app.logger.info("Dispatch session %s cancelled", session.code)
    return session


def _parse_result(raw) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError(f"result must be one of: {', '.join(DELIVERY_RESULTS)}", field="result")
    value = _RESULT_ALIASES.get(" ".join(raw.lower().split()))
    if value is None:
        raise ValidationError(f"result must be one of: {', '.join(DELIVERY_RESULTS)}", field="result", result=raw)
    return value


def _parse_amount(raw) -> int | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValidationError("cod_collected_cents must be a non-negative integer", field="cod_collected_cents")
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw.isdigit():
            raise ValidationError("cod_collected_cents must be a non-negative integer", field="cod_collected_cents")
        return int(raw)
    if not isinstance(raw, int) or raw < 0:
        raise ValidationError("cod_collected_cents must be a non-negative integer", field="cod_collected_cents")
    return raw


def _parse_display_amount(raw) -> int | None:
    """Amount as printed on the courier sheet ("35.00", 35, 35.5) -> cents."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValidationError("amount must be a non-negative number", field="amount")
    try:
        cents = Decimal(str(raw).strip()) * 100
    except InvalidOperation:
        raise ValidationError("amount must be a non-negative number", field="amount")
    if not cents.is_finite() or cents < 0 or cents != cents.to_integral_value():
        raise ValidationError("amount must be a non-negative number with at most two decimals", field="amount")
    return int(cents)


def _text(row: dict, key: str, max_len: int | None = None) -> str | None:
    value = row.get(key)
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    return value[:max_len] if max_len else value


def _resolve_order_id(session: WorkSession, row: dict) -> int:
    """Rows may carry order_id or the order_number printed on the export."""
    raw_id = row.get("order_id")
    if raw_id not in (None, ""):
        try:
            return int(raw_id)
        except (TypeError, ValueError):
            raise ValidationError("order_id must be an integer", field="order_id")
    number = str(row.get("order_number") or "").strip()
    if number:
        for m in session.members:
            if m.order.order_number == number:
                return m.order_id
        raise NotFound("Order is not part of this session", session_id=session.id, order_number=number)
    raise ValidationError("order_id or order_number is required", field="order_id")


def _import_row(store_id: int, session_id: int, row) -> tuple[int, list[str]]:
    """Apply one courier result and commit it. Returns (order_id, warnings)."""
    if not isinstance(row, dict):
        raise ValidationError("Each result must be an object")

    def _op():
        warnings: list[str] = []
        session = get_dispatch_session(store_id, session_id, lock=True)
        session_service.require_status(session, DISPATCHED, PROCESSING)

        order_id = _resolve_order_id(session, row)
        m = session_service.member(session, order_id)
        order = order_service.get_order(store_id, order_id, lock=True)
        result = _parse_result(row.get("result"))
        reported = _parse_amount(row.get("cod_collected_cents"))
        if reported is None:
            reported = _parse_display_amount(row.get("amount"))

        if result == RESULT_DELIVERED:
            order_service.apply_transition(order, OrderStatus.DELIVERED)
            if m.is_cod:
                collected = order.total_price_cents if reported is None else reported
                if collected != order.total_price_cents:
                    warnings.append(
                        f"Order {order.order_number}: collected {collected} but expected {order.total_price_cents}"
                    )
            else:
                collected = 0
                if reported:
                    warnings.append(
                        f"Order {order.order_number} is prepaid but the courier reported {reported} collected; recorded 0"
                    )
        else:
            if order.status != OrderStatus.SHIPPED.value:
                raise InvalidTransition(
                    f"Cannot record a failed delivery for an order in {order.status}",
                    order_id=order.id,
                    from_status=order.status,
                )
            collected = 0
            if reported:
                warnings.append(
                    f"Order {order.order_number}: delivery failed but the courier reported {reported} collected; recorded 0"
                )

        m.delivery_result = result
        m.cod_collected_cents = collected
        m.failure_reason = _text(row, "failure_reason", 255)
        m.courier_notes = _text(row, "notes")
        m.processed_at = utcnow()
        order.delivery_result = result
        order.cod_collected_cents = collected

        db.session.commit()
        return order_id, warnings

    return run_with_retry(_op)


def import_delivery_results(*, store_id: int, session_id: int, results) -> dict:
    """
    Record courier results for a dispatched session.

    Each row: {order_id | order_number, result: delivered|failed,
               cod_collected_cents?, failure_reason?, notes?}
    "amount" (the courier sheet column, e.g. "35.00") is read when
    cod_collected_cents is absent.

    - delivered: order -> DELIVERED; a COD order without an amount is assumed
      paid in full; a prepaid order always records 0 collected
    - failed: order stays SHIPPED, 0 collected
    Once at least one row is recorded the session moves to PROCESSING.
    """
    if not isinstance(results, list) or not results:
        raise ValidationError("results must be a non-empty list", field="results")

    session = get_dispatch_session(store_id, session_id)
    session_service.require_status(session, DISPATCHED, PROCESSING)

    processed: list[int] = []
    errors: list[dict] = []
    warnings: list[str] = []

    for index, row in enumerate(results):
        try:
            order_id, row_warnings = _import_row(store_id, session_id, row)
        except FulfillmentError as exc:
            errors.append({
                "index": index,
                "order_id": row.get("order_id") if isinstance(row, dict) else None,
                "error": exc.code,
                "message": exc.message,
            })
            continue
        processed.append(order_id)
        warnings.extend(row_warnings)

    def _mark_processing():
        s = get_dispatch_session(store_id, session_id, lock=True)
        if processed and s.status == DISPATCHED:
            s.status = PROCESSING
        if processed:
            s.imported_at = utcnow()
        db.session.commit()
        return s

    session = run_with_retry(_mark_processing)

    if errors:
        current_app.logger.warning(
            "Import for dispatch session %s: %d processed, %d errors", session.code, len(processed), len(errors)
        )
    else:
        current_app.logger.info("Import for dispatch session %s: %d processed", session.code, len(processed))

    return {
        "session": session.to_dict(),
        "processed": len(processed),
        "order_ids": processed,
        "errors": errors,
        "warnings": warnings,
    }
