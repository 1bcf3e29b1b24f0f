# backend/fulfillment/services/products_service.py
"""
Products Service

All product operations are store-scoped. Stock is set once at creation
(initial_stock == stock); every later change goes through inventory_service.
"""
from __future__ import annotations

from ..extensions import db
from ..errors import NotFound, ValidationError
from ..models import Product
from .concurrency import run_with_retry


def list_products(store_id: int, *, include_inactive: bool = False) -> list[Product]:
    query = db.session.query(Product).filter_by(store_id=store_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(Product.name.asc(), Product.id.asc()).all()


def get_product(store_id: int, product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or product.store_id != store_id:
        raise NotFound("Product not found", product_id=product_id)
    return product


def create_product(*, store_id: int, patch: dict) -> Product:
    """Create product using a validated patch dict; 'stock' becomes the opening stock."""
    def _op():
        exists = db.session.query(Product.id).filter_by(store_id=store_id, sku=patch["sku"]).first()
        if exists:
            raise ValidationError("SKU already exists in this store", field="sku", sku=patch["sku"])

        opening = patch.get("stock") or 0
        fields = {k: v for k, v in patch.items() if k != "stock"}
        product = Product(store_id=store_id, stock=opening, initial_stock=opening, **fields)
        db.session.add(product)
        db.session.commit()
        return product

    return run_with_retry(_op)
