# Overview: Flask API routes for warehouse picking/packing sessions; parses input and returns JSON responses.

# backend/fulfillment/routes/warehouse.py
"""
Warehouse (picking) session routes.

Flow:
1. POST /warehouse/sessions with CONFIRMED orders -> PICKING
2. POST .../pick per product until every product is fully picked
3. POST .../complete-picking -> PACKING
4. POST .../pack per unit, POST .../complete-packing per order
   (the order becomes READY_TO_SHIP and its stock is decremented)
5. Session completes when every order is packed, or POST .../abandon
"""
from flask import Blueprint, request, g, jsonify, current_app

from ..models.sessions import KIND_PICKING
from ..services import picking_service, session_service
from ..validation import parse_id_list, require_int
from ..decorators import require_store

warehouse_bp = Blueprint("warehouse", __name__, url_prefix="/warehouse")


def _active_filter():
    raw = request.args.get("active")
    if raw is None:
        return None
    return raw.lower() in ("1", "true", "yes")


@warehouse_bp.get("/sessions")
@require_store
def list_picking_sessions():
    """
    Query params:
    - active: 1 for PICKING/PACKING sessions, 0 for finished ones
    """
    sessions = session_service.list_sessions(g.store_id, KIND_PICKING, active=_active_filter())
    return jsonify({"items": [s.to_dict(include_members=False) for s in sessions], "count": len(sessions)})


@warehouse_bp.post("/sessions")
@require_store
def create_picking_session():
    """
    Request body:
    {
        "order_ids": [1, 2, 3],
        "notes": "morning batch"     (optional)
    }

    Every order must be CONFIRMED and not already in an active picking session.
    """
    payload = request.get_json(silent=True) or {}
    session = picking_service.create_picking_session(
        store_id=g.store_id,
        order_ids=parse_id_list(payload),
        notes=payload.get("notes"),
    )
    return jsonify({"session": picking_service.session_detail(session)}), 201


@warehouse_bp.get("/sessions/<int:session_id>")
@require_store
def get_picking_session(session_id: int):
    session = picking_service.get_picking_session(g.store_id, session_id)
    return jsonify({"session": picking_service.session_detail(session)})


@warehouse_bp.post("/sessions/<int:session_id>/pick")
@require_store
def record_pick(session_id: int):
    """
    Set the picked count of one product.

    Request body:
    {
        "product_id": 7,
        "picked_quantity": 3
    }
    """
    payload = request.get_json(silent=True) or {}
    item = picking_service.record_pick(
        store_id=g.store_id,
        session_id=session_id,
        product_id=require_int(payload, "product_id"),
        picked_quantity=require_int(payload, "picked_quantity", minimum=0),
    )
    return jsonify({"picking_item": item.to_dict()})


@warehouse_bp.post("/sessions/<int:session_id>/complete-picking")
@require_store
def complete_picking(session_id: int):
    session = picking_service.complete_picking(store_id=g.store_id, session_id=session_id)
    return jsonify({"session": picking_service.session_detail(session)})


@warehouse_bp.post("/sessions/<int:session_id>/pack")
@require_store
def pack_unit(session_id: int):
    """
    Pack one unit of a product into an order.

    Request body:
    {
        "order_id": 1,
        "product_id": 7
    }
    """
    payload = request.get_json(silent=True) or {}
    progress = picking_service.pack_unit(
        store_id=g.store_id,
        session_id=session_id,
        order_id=require_int(payload, "order_id"),
        product_id=require_int(payload, "product_id"),
    )
    return jsonify({"packing_progress": progress.to_dict()})


@warehouse_bp.post("/sessions/<int:session_id>/complete-packing")
@require_store
def complete_packing(session_id: int):
    """
    Finish packing one order; it becomes READY_TO_SHIP.

    Request body:
    {
        "order_id": 1
    }

    Returns 409 INSUFFICIENT_STOCK under the STRICT policy when the
    decrement cannot be applied; nothing is changed in that case.
    """
    payload = request.get_json(silent=True) or {}
    session = picking_service.complete_packing(
        store_id=g.store_id,
        session_id=session_id,
        order_id=require_int(payload, "order_id"),
        policy=current_app.config["STOCK_POLICY"],
    )
    return jsonify({"session": picking_service.session_detail(session)})


@warehouse_bp.post("/sessions/<int:session_id>/abandon")
@require_store
def abandon_picking(session_id: int):
    """Cancel the session; orders still in preparation go back to CONFIRMED."""
    session = picking_service.abandon_picking(store_id=g.store_id, session_id=session_id)
    return jsonify({"session": picking_service.session_detail(session)})
