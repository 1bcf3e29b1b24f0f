# Overview: Service-layer operations for settling a processed dispatch session.

"""
Settlement / Reconciliation

For a dispatch session in PROCESSING (all amounts in cents):

    total_cod_expected   = SUM(order.total_price)      COD members delivered
    total_cod_collected  = SUM(member.cod_collected)   all members
    discrepancy          = collected - expected
    carrier_fees         = SUM(member.carrier_fee)     delivered members
    failed_attempt_fee   = SUM(carrier_fee * pct/100)  failed members
    net_receivable       = collected - carrier_fees - failed_attempt_fee

A non-zero discrepancy must be confirmed explicitly (discrepancy_confirmed=True);
otherwise UnconfirmedDiscrepancy is raised and nothing is written. On success
the Settlement row is written, the session becomes SETTLED and its orders are
released, all in one transaction.

PAYMENT (record_payment):
The carrier pays the net receivable in one or more instalments. Each payment
adds to amount_paid; the settlement is partial until amount_paid reaches
net_receivable, then paid. A paid settlement takes no further payments.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import NotFound, SettlementAlreadyPaid, UnconfirmedDiscrepancy, ValidationError
from ..models import Settlement, WorkSession
from ..models.sessions import PROCESSING, RESULT_DELIVERED, RESULT_FAILED, SETTLED
from ..models.settlements import PAYMENT_PAID, PAYMENT_PARTIAL, PAYMENT_PENDING
from fulfillment.time_utils import utcnow
from . import carrier_service, dispatch_service, session_service
from .concurrency import lock_for_update, run_with_retry


def compute_totals(session: WorkSession) -> dict:
    """Pure reconciliation figures for a dispatch session; writes nothing."""
    delivered = [m for m in session.members if m.delivery_result == RESULT_DELIVERED]
    failed = [m for m in session.members if m.delivery_result == RESULT_FAILED]

    expected = sum(m.order.total_price_cents for m in delivered if m.is_cod)
    collected = sum(m.cod_collected_cents or 0 for m in session.members)
    carrier_fees = sum(m.carrier_fee_cents for m in delivered)

    percent = carrier_service.failed_attempt_percent(session.carrier)
    failed_fee = sum(carrier_service.failed_attempt_fee(m.carrier_fee_cents, percent) for m in failed)

    return {
        "total_dispatched": len(session.members),
        "total_delivered": len(delivered),
        "total_failed": len(failed),
        "total_cod_expected_cents": expected,
        "total_cod_collected_cents": collected,
        "carrier_fees_cents": carrier_fees,
        "failed_attempt_fee_cents": failed_fee,
        "discrepancy_cents": collected - expected,
        "net_receivable_cents": collected - carrier_fees - failed_fee,
    }


def process(
    *,
    store_id: int,
    session_id: int,
    discrepancy_confirmed: bool | None = None,
    notes: str | None = None,
) -> Settlement:
    def _op():
        session = dispatch_service.get_dispatch_session(store_id, session_id, lock=True)
        session_service.require_status(session, PROCESSING)

        totals = compute_totals(session)
        if totals["discrepancy_cents"] != 0 and discrepancy_confirmed is not True:
            raise UnconfirmedDiscrepancy(
                "COD collected does not match the expected amount; confirm the discrepancy to settle",
                session_id=session.id,
                total_cod_expected_cents=totals["total_cod_expected_cents"],
                total_cod_collected_cents=totals["total_cod_collected_cents"],
                discrepancy_cents=totals["discrepancy_cents"],
            )

        settlement = Settlement(
            store_id=store_id,
            dispatch_session_id=session.id,
            carrier_id=session.carrier_id,
            discrepancy_confirmed=bool(discrepancy_confirmed),
            notes=notes,
            **totals,
        )
        owed = totals["net_receivable_cents"]
        settlement.amount_paid_cents = 0
        settlement.balance_due_cents = max(owed, 0)
        settlement.payment_status = PAYMENT_PENDING if owed > 0 else PAYMENT_PAID
        db.session.add(settlement)
        session_service.finish_session(session, SETTLED, "settled_at")
        db.session.commit()
        return settlement

    settlement = run_with_retry(_op)
    current_app.logger.info(
        "Settled dispatch session %s: expected=%s collected=%s net=%s",
        settlement.dispatch_session.code,
        settlement.total_cod_expected_cents,
        settlement.total_cod_collected_cents,
        settlement.net_receivable_cents,
    )
    return settlement


def get_settlement(store_id: int, settlement_id: int, *, lock: bool = False) -> Settlement:
    query = db.session.query(Settlement).filter_by(id=settlement_id)
    if lock:
        query = lock_for_update(query)
    settlement = query.first()
    if settlement is None or settlement.store_id != store_id:
        raise NotFound("Settlement not found", settlement_id=settlement_id)
    return settlement


def list_settlements(store_id: int, *, limit: int = 100) -> list[Settlement]:
    return (
        db.session.query(Settlement)
        .filter_by(store_id=store_id)
        .order_by(Settlement.id.desc())
        .limit(limit)
        .all()
    )


def _clean_text(value, field: str, max_len: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)
    value = value.strip()
    if max_len:
        value = value[:max_len]
    return value or None


def record_payment(
    *,
    store_id: int,
    settlement_id: int,
    amount_cents: int,
    method: str | None = None,
    reference: str | None = None,
    notes: str | None = None,
) -> Settlement:
    """
    Record a carrier payment against a settlement.

    Overpayment is accepted and leaves balance_due at 0. Method and reference
    keep their previous values when not given.
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer", field="amount_cents")

    method = _clean_text(method, "method", 50)
    reference = _clean_text(reference, "reference", 255)
    notes = _clean_text(notes, "notes")

    def _op():
        settlement = get_settlement(store_id, settlement_id, lock=True)
        if settlement.payment_status == PAYMENT_PAID:
            raise SettlementAlreadyPaid(
                "Settlement is already fully paid",
                settlement_id=settlement.id,
                amount_paid_cents=settlement.amount_paid_cents,
                net_receivable_cents=settlement.net_receivable_cents,
            )

        settlement.amount_paid_cents += amount_cents
        settlement.balance_due_cents = max(settlement.net_receivable_cents - settlement.amount_paid_cents, 0)
        if settlement.amount_paid_cents >= settlement.net_receivable_cents:
            settlement.payment_status = PAYMENT_PAID
        else:
            settlement.payment_status = PAYMENT_PARTIAL
        settlement.paid_at = utcnow()
        if method is not None:
            settlement.payment_method = method
        if reference is not None:
            settlement.payment_reference = reference
        if notes is not None:
            settlement.notes = notes
        db.session.commit()
        return settlement

    settlement = run_with_retry(_op)
    current_app.logger.info(
        "Payment of %s recorded for settlement %s: paid=%s balance=%s status=%s",
        amount_cents,
        settlement.id,
        settlement.amount_paid_cents,
        settlement.balance_due_cents,
        settlement.payment_status,
    )
    return settlement
