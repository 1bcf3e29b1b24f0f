from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data plus its on-hand stock.

    STOCK OWNERSHIP:
    Product.stock is written ONLY by services.inventory_service. Every change
    is paired with exactly one InventoryMovement row in the same transaction,
    so for every product:

        sum(movement.quantity_delta) == stock - initial_stock

    initial_stock is fixed at creation and never changes afterwards.

    version_id is the optimistic lock; two writers that both read the same
    version cannot both commit a stock change.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        db.Index("ix_products_store_name", "store_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_cents = db.Column(db.Integer, nullable=False, default=0)

    stock = db.Column(db.Integer, nullable=False, default=0)
    initial_stock = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock} store_id={self.store_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "stock": self.stock,
            "initial_stock": self.initial_stock,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class Carrier(db.Model):
    """
    Courier company that takes dispatched orders out for delivery.

    failed_attempt_fee_percent: share of the zone rate charged when a
    delivery attempt fails. NULL means "use DEFAULT_FAILED_ATTEMPT_FEE_PERCENT".
    """
    __tablename__ = "carriers"
    __table_args__ = (
        db.UniqueConstraint("store_id", "name", name="uq_carriers_store_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(64), nullable=True)
    failed_attempt_fee_percent = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("carriers", lazy=True))
    zones = db.relationship(
        "CarrierZone",
        backref="carrier",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="CarrierZone.id",
    )

    def __repr__(self) -> str:
        return f"<Carrier id={self.id} name={self.name!r}>"

    def to_dict(self, include_zones: bool = False) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "phone": self.phone,
            "failed_attempt_fee_percent": self.failed_attempt_fee_percent,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
        if include_zones:
            data["zones"] = [z.to_dict() for z in self.zones]
        return data


class CarrierZone(db.Model):
    """Per-zone delivery rate. zone_key is the normalized zone name used for lookups."""
    __tablename__ = "carrier_zones"
    __table_args__ = (
        db.UniqueConstraint("carrier_id", "zone_key", name="uq_carrier_zones_carrier_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    carrier_id = db.Column(db.Integer, db.ForeignKey("carriers.id"), nullable=False, index=True)
    zone_name = db.Column(db.String(120), nullable=False)
    zone_key = db.Column(db.String(120), nullable=False)
    rate_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "carrier_id": self.carrier_id,
            "zone_name": self.zone_name,
            "zone_key": self.zone_key,
            "rate_cents": self.rate_cents,
            "is_active": self.is_active,
        }
