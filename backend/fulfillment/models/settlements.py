from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


PAYMENT_PENDING = "pending"
PAYMENT_PARTIAL = "partial"
PAYMENT_PAID = "paid"


class Settlement(db.Model):
    """
    Financial reconciliation of one dispatch session.

    All amounts are cents:
    - discrepancy = total_cod_collected - total_cod_expected
    - net_receivable = total_cod_collected - carrier_fees - failed_attempt_fee

    The reconciliation figures are written once, when the session is
    processed, and never edited afterwards. Only the payment fields move:

    PAYMENT STATUS:
    - pending: nothing paid yet
    - partial: 0 < amount_paid < net_receivable
    - paid:    amount_paid >= net_receivable (final; a settlement whose
               net_receivable is <= 0 starts paid, the carrier owes nothing)
    balance_due = max(net_receivable - amount_paid, 0)
    """
    __tablename__ = "settlements"
    __table_args__ = (
        db.UniqueConstraint("dispatch_session_id", name="uq_settlements_dispatch_session"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    dispatch_session_id = db.Column(db.Integer, db.ForeignKey("work_sessions.id"), nullable=False)
    carrier_id = db.Column(db.Integer, db.ForeignKey("carriers.id"), nullable=True, index=True)

    total_dispatched = db.Column(db.Integer, nullable=False, default=0)
    total_delivered = db.Column(db.Integer, nullable=False, default=0)
    total_failed = db.Column(db.Integer, nullable=False, default=0)

    total_cod_expected_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cod_collected_cents = db.Column(db.Integer, nullable=False, default=0)
    carrier_fees_cents = db.Column(db.Integer, nullable=False, default=0)
    failed_attempt_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    discrepancy_cents = db.Column(db.Integer, nullable=False, default=0)
    net_receivable_cents = db.Column(db.Integer, nullable=False, default=0)

    discrepancy_confirmed = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)

    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_due_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_method = db.Column(db.String(50), nullable=True)
    payment_reference = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)

    dispatch_session = db.relationship(
        "WorkSession",
        backref=db.backref("settlement", uselist=False),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "dispatch_session_id": self.dispatch_session_id,
            "session_code": self.dispatch_session.code if self.dispatch_session else None,
            "carrier_id": self.carrier_id,
            "total_dispatched": self.total_dispatched,
            "total_delivered": self.total_delivered,
            "total_failed": self.total_failed,
            "total_cod_expected_cents": self.total_cod_expected_cents,
            "total_cod_collected_cents": self.total_cod_collected_cents,
            "carrier_fees_cents": self.carrier_fees_cents,
            "failed_attempt_fee_cents": self.failed_attempt_fee_cents,
            "discrepancy_cents": self.discrepancy_cents,
            "net_receivable_cents": self.net_receivable_cents,
            "discrepancy_confirmed": self.discrepancy_confirmed,
            "payment_status": self.payment_status,
            "amount_paid_cents": self.amount_paid_cents,
            "balance_due_cents": self.balance_due_cents,
            "paid_at": to_utc_z(self.paid_at),
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
