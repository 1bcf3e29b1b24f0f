# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/fulfillment/routes/orders.py
"""
Order routes.

Orders are created PENDING with fixed line items. Status changes go through
PATCH /orders/<id>/status, which applies the stock effect of the transition
(decrement on READY_TO_SHIP, restore on CANCELLED) atomically.
"""
from flask import Blueprint, request, g, jsonify, current_app

from ..models import Order
from ..services import order_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_order,
)
from ..errors import ValidationError
from ..decorators import require_store

ORDER_POLICY = ModelValidationPolicy(
    writable_fields={
        "order_number",
        "customer_id",
        "carrier_id",
        "payment_method",
        "shipping_cost_cents",
        "total_price_cents",
        "customer_name",
        "customer_phone",
        "shipping_address",
        "delivery_zone",
        "latitude",
        "longitude",
        "delivery_notes",
        "line_items",
    },
    required_on_create={"line_items"},
)

orders_bp = Blueprint("orders", __name__, url_prefix="/orders")


@orders_bp.get("")
@require_store
def list_orders():
    """
    List orders of the store, newest first.

    Query params:
    - status: filter by status (e.g. CONFIRMED)
    - limit: max rows (default 200, max 1000)
    """
    status = request.args.get("status")
    limit = min(request.args.get("limit", default=200, type=int) or 200, 1000)
    orders = order_service.list_orders(g.store_id, status=status, limit=limit)
    return jsonify({"items": [o.to_dict() for o in orders], "count": len(orders)})


@orders_bp.post("")
@require_store
def create_order():
    """
    Create a PENDING order.

    Request body:
    {
        "order_number": "WEB-1001",        (optional, default ORD-NNNNN)
        "payment_method": "cod",           (optional; empty means COD)
        "shipping_cost_cents": 500,        (optional)
        "customer_name": "...", "customer_phone": "...",
        "shipping_address": "...", "delivery_zone": "North",
        "line_items": [
            {"product_id": 1, "quantity": 2, "unit_price_cents": 1500}
        ]
    }
    """
    patch = validate_payload(
        model=Order,
        payload=request.get_json(silent=True),
        policy=ORDER_POLICY,
        partial=False,
    )
    items = enforce_rules_order(patch)
    order = order_service.create_order(store_id=g.store_id, patch=patch, items=items)
    return jsonify({"order": order.to_dict()}), 201


@orders_bp.get("/<int:order_id>")
@require_store
def get_order(order_id: int):
    order = order_service.get_order(g.store_id, order_id)
    return jsonify({"order": order.to_dict()})


@orders_bp.patch("/<int:order_id>/status")
@require_store
def update_order_status(order_id: int):
    """
    Move an order to a new status.

    Request body:
    {
        "status": "READY_TO_SHIP"
    }

    Returns 409 INVALID_TRANSITION for an edge outside the lifecycle graph,
    409 INSUFFICIENT_STOCK when the decrement cannot be applied.
    Requesting the current status is a no-op.
    """
    payload = request.get_json(silent=True) or {}
    status = payload.get("status")
    if not status:
        raise ValidationError("status is required", field="status")

    order = order_service.transition_order(
        store_id=g.store_id,
        order_id=order_id,
        status=status,
        policy=current_app.config["STOCK_POLICY"],
    )
    return jsonify({"order": order.to_dict()})


@orders_bp.delete("/<int:order_id>")
@require_store
def delete_order(order_id: int):
    """Delete an order that never touched stock or a session."""
    order_service.delete_order(store_id=g.store_id, order_id=order_id)
    return jsonify({"deleted": True, "order_id": order_id})
