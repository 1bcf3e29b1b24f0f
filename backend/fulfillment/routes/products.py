# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/fulfillment/routes/products.py
"""
Product routes.

All routes are scoped to the store named by the X-Store-Id header.
Stock is read-only here: it is set once at creation and afterwards changed
only by order transitions and return sessions.
"""
from flask import Blueprint, request, g, jsonify

from ..models import Product
from ..services import inventory_service, products_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_product,
)
from ..decorators import require_store

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={"sku", "name", "price_cents", "cost_cents", "stock", "is_active"},
    required_on_create={"sku", "name"},
)

products_bp = Blueprint("products", __name__, url_prefix="/products")


@products_bp.get("")
@require_store
def list_products():
    """
    List products of the store.

    Query params:
    - include_inactive: 1 to include inactive products
    """
    include_inactive = request.args.get("include_inactive") in ("1", "true")
    products = products_service.list_products(g.store_id, include_inactive=include_inactive)
    return jsonify({"items": [p.to_dict() for p in products], "count": len(products)})


@products_bp.post("")
@require_store
def create_product():
    """
    Create a product.

    Request body:
    {
        "sku": "MUG-01",
        "name": "Mug",
        "price_cents": 1500,   (optional)
        "cost_cents": 600,     (optional)
        "stock": 100           (optional opening stock, default 0)
    }
    """
    patch = validate_payload(
        model=Product,
        payload=request.get_json(silent=True),
        policy=PRODUCT_POLICY,
        partial=False,
    )
    enforce_rules_product(patch)
    product = products_service.create_product(store_id=g.store_id, patch=patch)
    return jsonify({"product": product.to_dict()}), 201


@products_bp.get("/<int:product_id>")
@require_store
def get_product(product_id: int):
    product = products_service.get_product(g.store_id, product_id)
    return jsonify({"product": product.to_dict()})


@products_bp.get("/<int:product_id>/movements")
@require_store
def list_product_movements(product_id: int):
    """
    Inventory movement audit trail of a product, newest first, with the
    ledger balance (conservation check).

    Query params:
    - order_id: only movements of one order
    - limit: max rows (default 200, max 1000)
    """
    order_id = request.args.get("order_id", type=int)
    limit = min(request.args.get("limit", default=200, type=int) or 200, 1000)
    movements = inventory_service.list_movements(
        store_id=g.store_id,
        product_id=product_id,
        order_id=order_id,
        limit=limit,
    )
    balance = inventory_service.ledger_balance(store_id=g.store_id, product_id=product_id)
    return jsonify({
        "product_id": product_id,
        "movements": [m.to_dict() for m in movements],
        "balance": balance,
    })
