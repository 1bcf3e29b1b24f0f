from __future__ import annotations

from enum import Enum

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class OrderStatus(str, Enum):
    """Closed set of order lifecycle states. Stored as the plain string value."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PREPARATION = "IN_PREPARATION"
    READY_TO_SHIP = "READY_TO_SHIP"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"

    @classmethod
    def parse(cls, value) -> "OrderStatus | None":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class Order(db.Model):
    """
    Customer order.

    LIFECYCLE:
    status moves only through services.order_service; see ORDER_GRAPH there.
    Line items are fixed when the order is created.

    Stock effects are NOT tracked with a flag on the order. Whether the order
    has been decremented or restored is answered by the movement log itself
    (InventoryMovement rows with this order_id), which keeps the guard and
    the ledger from ever disagreeing.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("store_id", "order_number", name="uq_orders_store_number"),
        db.Index("ix_orders_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    order_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(32), nullable=False, default=OrderStatus.PENDING.value, index=True)

    customer_id = db.Column(db.Integer, nullable=True, index=True)
    carrier_id = db.Column(db.Integer, db.ForeignKey("carriers.id"), nullable=True, index=True)

    # "cash", "cod", "efectivo", "contra entrega" (or empty) mean cash-on-delivery
    payment_method = db.Column(db.String(32), nullable=True)

    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_price_cents = db.Column(db.Integer, nullable=False, default=0)

    # Recipient details used by the courier hand-off
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(64), nullable=True)
    shipping_address = db.Column(db.String(500), nullable=True)
    delivery_zone = db.Column(db.String(120), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    delivery_notes = db.Column(db.Text, nullable=True)

    # Last courier report
    delivery_result = db.Column(db.String(16), nullable=True)
    cod_collected_cents = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    returned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("orders", lazy=True))
    carrier = db.relationship("Carrier", backref=db.backref("orders", lazy=True))
    line_items = db.relationship(
        "OrderLineItem",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderLineItem.position",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "order_number": self.order_number,
            "status": self.status,
            "customer_id": self.customer_id,
            "carrier_id": self.carrier_id,
            "payment_method": self.payment_method,
            "shipping_cost_cents": self.shipping_cost_cents,
            "total_price_cents": self.total_price_cents,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "shipping_address": self.shipping_address,
            "delivery_zone": self.delivery_zone,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "delivery_notes": self.delivery_notes,
            "delivery_result": self.delivery_result,
            "cod_collected_cents": self.cod_collected_cents,
            "line_items": [li.to_dict() for li in self.line_items],
            "created_at": to_utc_z(self.created_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "returned_at": to_utc_z(self.returned_at),
            "version_id": self.version_id,
        }


class OrderLineItem(db.Model):
    __tablename__ = "order_line_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_line_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    position = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.quantity * self.unit_price_cents,
        }
