from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


# Session kinds
KIND_PICKING = "picking"
KIND_DISPATCH = "dispatch"
KIND_RETURN = "return"
SESSION_KINDS = (KIND_PICKING, KIND_DISPATCH, KIND_RETURN)

# Code prefixes per kind
SESSION_PREFIXES = {
    KIND_PICKING: "PREP",
    KIND_DISPATCH: "DISP",
    KIND_RETURN: "RET",
}

# Session statuses (kind-specific machines share the terminal names)
PICKING = "PICKING"
PACKING = "PACKING"
CREATED = "CREATED"
DISPATCHED = "DISPATCHED"
PROCESSING = "PROCESSING"
IN_PROGRESS = "IN_PROGRESS"
SETTLED = "SETTLED"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"

TERMINAL_SESSION_STATUSES = (SETTLED, COMPLETED, CANCELLED)

# Delivery results reported by the courier
RESULT_DELIVERED = "delivered"
RESULT_FAILED = "failed"
DELIVERY_RESULTS = (RESULT_DELIVERED, RESULT_FAILED)

# Return item resolution
ITEM_PENDING = "pending"
ITEM_ACCEPTED = "accepted"
ITEM_REJECTED = "rejected"
ITEM_PARTIAL = "partial"
RETURN_ITEM_STATUSES = (ITEM_PENDING, ITEM_ACCEPTED, ITEM_REJECTED, ITEM_PARTIAL)


class WorkSession(db.Model):
    """
    A batch of orders reserved for one coordinated warehouse operation.

    KINDS AND MACHINES:
    - picking:  PICKING -> PACKING -> COMPLETED, PICKING/PACKING -> CANCELLED
    - dispatch: CREATED -> DISPATCHED -> PROCESSING -> SETTLED,
                CREATED/DISPATCHED -> CANCELLED
    - return:   IN_PROGRESS -> COMPLETED, IN_PROGRESS -> CANCELLED

    Terminal sessions (SETTLED, COMPLETED, CANCELLED) are immutable and hold
    no reservations.

    CODE FORMAT:
    {PREFIX}-{DDMMYYYY}-{NN}, sequence per store per day (3+ digits from 100).
    """
    __tablename__ = "work_sessions"
    __table_args__ = (
        db.UniqueConstraint("store_id", "code", name="uq_work_sessions_store_code"),
        db.Index("ix_work_sessions_store_kind_status", "store_id", "kind", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    kind = db.Column(db.String(16), nullable=False, index=True)
    code = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, index=True)

    # Dispatch only
    carrier_id = db.Column(db.Integer, db.ForeignKey("carriers.id"), nullable=True, index=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    picking_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    imported_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("work_sessions", lazy=True))
    carrier = db.relationship("Carrier")
    members = db.relationship(
        "SessionOrder",
        backref="session",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="SessionOrder.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_SESSION_STATUSES

    @property
    def order_ids(self) -> list[int]:
        return [m.order_id for m in self.members]

    def __repr__(self) -> str:
        return f"<WorkSession id={self.id} kind={self.kind} code={self.code!r} status={self.status}>"

    def to_dict(self, include_members: bool = True) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "kind": self.kind,
            "code": self.code,
            "status": self.status,
            "carrier_id": self.carrier_id,
            "notes": self.notes,
            "order_ids": self.order_ids,
            "created_at": to_utc_z(self.created_at),
            "picking_completed_at": to_utc_z(self.picking_completed_at),
            "dispatched_at": to_utc_z(self.dispatched_at),
            "imported_at": to_utc_z(self.imported_at),
            "settled_at": to_utc_z(self.settled_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
        }
        if include_members:
            data["orders"] = [m.to_dict() for m in self.members]
        return data


class SessionOrder(db.Model):
    """
    Membership of an order in a session.

    Rows are kept after the session is terminal (history); the active hold
    is SessionReservation.
    """
    __tablename__ = "session_orders"
    __table_args__ = (
        db.UniqueConstraint("session_id", "order_id", name="uq_session_orders_session_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("work_sessions.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # Order status when it joined (returns need it for reporting)
    original_status = db.Column(db.String(32), nullable=True)

    # Dispatch: snapshot at creation time
    is_cod = db.Column(db.Boolean, nullable=False, default=False)
    carrier_fee_cents = db.Column(db.Integer, nullable=False, default=0)

    # Dispatch: courier report
    delivery_result = db.Column(db.String(16), nullable=True)
    cod_collected_cents = db.Column(db.Integer, nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    courier_notes = db.Column(db.Text, nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Picking: set when the order finished packing
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    order = db.relationship("Order")

    def to_dict(self) -> dict:
        order = self.order
        return {
            "order_id": self.order_id,
            "order_number": order.order_number if order else None,
            "order_status": order.status if order else None,
            "original_status": self.original_status,
            "is_cod": self.is_cod,
            "carrier_fee_cents": self.carrier_fee_cents,
            "delivery_result": self.delivery_result,
            "cod_collected_cents": self.cod_collected_cents,
            "failure_reason": self.failure_reason,
            "courier_notes": self.courier_notes,
            "processed_at": to_utc_z(self.processed_at),
            "completed_at": to_utc_z(self.completed_at),
        }


class SessionReservation(db.Model):
    """
    Exclusive hold of an order by an active session of one kind.

    The UNIQUE (kind, order_id) constraint is the disjointness check: two
    transactions racing to reserve the same order cannot both insert.
    Rows are deleted when the holding session reaches a terminal status.
    """
    __tablename__ = "session_reservations"
    __table_args__ = (
        db.UniqueConstraint("kind", "order_id", name="uq_session_reservations_kind_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(16), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("work_sessions.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())


class SessionSequence(db.Model):
    """Atomic per-store, per-prefix, per-day session code counter."""
    __tablename__ = "session_sequences"
    __table_args__ = (
        db.UniqueConstraint("store_id", "prefix", "date_part", name="uq_session_sequences_store_prefix_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    prefix = db.Column(db.String(8), nullable=False)
    date_part = db.Column(db.String(8), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)


class PickingItem(db.Model):
    """Per-product pick list of a picking session, aggregated over member orders."""
    __tablename__ = "picking_items"
    __table_args__ = (
        db.UniqueConstraint("session_id", "product_id", name="uq_picking_items_session_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("work_sessions.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    total_quantity_needed = db.Column(db.Integer, nullable=False)
    quantity_picked = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "sku": self.product.sku if self.product else None,
            "total_quantity_needed": self.total_quantity_needed,
            "quantity_picked": self.quantity_picked,
        }


class PackingProgress(db.Model):
    """Per-order, per-product packing counter of a picking session."""
    __tablename__ = "packing_progress"
    __table_args__ = (
        db.UniqueConstraint("session_id", "order_id", "product_id", name="uq_packing_progress_session_order_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("work_sessions.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity_needed = db.Column(db.Integer, nullable=False)
    quantity_packed = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity_needed": self.quantity_needed,
            "quantity_packed": self.quantity_packed,
        }


class ReturnItem(db.Model):
    """
    Resolution of one returned line item.

    accepted_quantity goes back to stock when the session completes;
    rejected_quantity never does. accepted + rejected <= ordered.
    """
    __tablename__ = "return_items"
    __table_args__ = (
        db.CheckConstraint(
            "accepted_quantity + rejected_quantity <= ordered_quantity",
            name="ck_return_items_quantities",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_session_id = db.Column(db.Integer, db.ForeignKey("work_sessions.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    ordered_quantity = db.Column(db.Integer, nullable=False)
    accepted_quantity = db.Column(db.Integer, nullable=False, default=0)
    rejected_quantity = db.Column(db.Integer, nullable=False, default=0)

    rejection_reason = db.Column(db.String(64), nullable=True)
    rejection_notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=ITEM_PENDING)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    session = db.relationship("WorkSession", backref=db.backref("return_items", lazy=True, order_by="ReturnItem.id"))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_session_id": self.return_session_id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "ordered_quantity": self.ordered_quantity,
            "accepted_quantity": self.accepted_quantity,
            "rejected_quantity": self.rejected_quantity,
            "rejection_reason": self.rejection_reason,
            "rejection_notes": self.rejection_notes,
            "status": self.status,
            "processed_at": to_utc_z(self.processed_at),
        }
