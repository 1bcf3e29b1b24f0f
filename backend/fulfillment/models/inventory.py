from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..errors import ImmutableRecord
from fulfillment.time_utils import to_utc_z


MOVEMENT_ORDER_DECREMENT = "order_decrement"
MOVEMENT_ORDER_RESTORE_CANCEL = "order_restore_cancel"
MOVEMENT_RETURN_RESTORE_PARTIAL = "return_restore_partial"

MOVEMENT_TYPES = (
    MOVEMENT_ORDER_DECREMENT,
    MOVEMENT_ORDER_RESTORE_CANCEL,
    MOVEMENT_RETURN_RESTORE_PARTIAL,
)


class InventoryMovement(db.Model):
    """
    Append-only stock audit trail.

    One row per stock change, written in the same transaction as the
    Product.stock update. resulting_stock is the product's stock right after
    the change was applied.

    IMMUTABILITY:
    Rows are never updated or deleted. The ORM listeners below reject both
    at flush time; corrections are made with new compensating movements.

    IDEMPOTENCY:
    Order-level stock effects are guarded by the presence of rows here:
    - decrement_for_order runs only if no order_decrement row exists for the order
    - restore_for_order runs only if an order_decrement row exists and no
      order_restore_cancel row does
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_movements_product_created", "product_id", "id"),
        db.Index("ix_movements_order_type", "order_id", "movement_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # NULL for adjustments that are not tied to an order
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    return_item_id = db.Column(db.Integer, db.ForeignKey("return_items.id"), nullable=True, index=True)

    movement_type = db.Column(db.String(32), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    resulting_stock = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))

    def __repr__(self) -> str:
        return (
            f"<InventoryMovement id={self.id} product_id={self.product_id} "
            f"type={self.movement_type} delta={self.quantity_delta}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "order_id": self.order_id,
            "return_item_id": self.return_item_id,
            "movement_type": self.movement_type,
            "quantity_delta": self.quantity_delta,
            "resulting_stock": self.resulting_stock,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(InventoryMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise ImmutableRecord(
        "Inventory movements are append-only and cannot be modified",
        movement_id=target.id,
    )


@event.listens_for(InventoryMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise ImmutableRecord(
        "Inventory movements are append-only and cannot be deleted",
        movement_id=target.id,
    )
