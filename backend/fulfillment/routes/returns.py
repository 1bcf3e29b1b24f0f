# Overview: Flask API routes for return sessions; parses input and returns JSON responses.

# backend/fulfillment/routes/returns.py
"""
Return session routes.

A return session takes SHIPPED (failed delivery) or DELIVERED orders back.
Each line item is inspected: accepted units go back to stock, rejected units
do not. Completing the session marks every order RETURNED.
"""
from flask import Blueprint, request, g, jsonify

from ..models.sessions import KIND_RETURN
from ..services import return_service, session_service
from ..validation import parse_id_list
from ..errors import ValidationError
from ..decorators import require_store

returns_bp = Blueprint("returns", __name__, url_prefix="/returns")


@returns_bp.get("/sessions")
@require_store
def list_return_sessions():
    raw = request.args.get("active")
    active = None if raw is None else raw.lower() in ("1", "true", "yes")
    sessions = session_service.list_sessions(g.store_id, KIND_RETURN, active=active)
    return jsonify({"items": [s.to_dict(include_members=False) for s in sessions], "count": len(sessions)})


@returns_bp.post("/sessions")
@require_store
def create_return_session():
    """
    Request body:
    {
        "order_ids": [10, 11],
        "notes": "..."          (optional)
    }

    Orders must be SHIPPED or DELIVERED and not in another active return session.
    """
    payload = request.get_json(silent=True) or {}
    session = return_service.create_return_session(
        store_id=g.store_id,
        order_ids=parse_id_list(payload),
        notes=payload.get("notes"),
    )
    return jsonify({"session": return_service.session_detail(session)}), 201


@returns_bp.get("/sessions/<int:session_id>")
@require_store
def get_return_session(session_id: int):
    session = return_service.get_return_session(g.store_id, session_id)
    return jsonify({"session": return_service.session_detail(session)})


@returns_bp.patch("/sessions/<int:session_id>/items/<int:item_id>")
@require_store
def update_return_item(session_id: int, item_id: int):
    """
    Record the inspection of one return item.

    Request body:
    {
        "status": "partial",               (accepted | rejected | partial)
        "accepted_quantity": 6,            (partial: at least one of the two)
        "rejected_quantity": 4,
        "rejection_reason": "damaged",     (optional)
        "rejection_notes": "box crushed"   (optional)
    }

    accepted_quantity + rejected_quantity may not exceed the ordered quantity.
    """
    payload = request.get_json(silent=True) or {}
    status = payload.get("status")
    if not status:
        raise ValidationError("status is required", field="status")

    item = return_service.update_item(
        store_id=g.store_id,
        session_id=session_id,
        item_id=item_id,
        status=str(status).strip().lower(),
        accepted_quantity=payload.get("accepted_quantity"),
        rejected_quantity=payload.get("rejected_quantity"),
        rejection_reason=payload.get("rejection_reason"),
        rejection_notes=payload.get("rejection_notes"),
    )
    return jsonify({"item": item.to_dict()})


@returns_bp.post("/sessions/<int:session_id>/complete")
@require_store
def complete_return_session(session_id: int):
    summary = return_service.complete_return_session(store_id=g.store_id, session_id=session_id)
    return jsonify(summary)


@returns_bp.post("/sessions/<int:session_id>/cancel")
@require_store
def cancel_return_session(session_id: int):
    session = return_service.cancel_return_session(store_id=g.store_id, session_id=session_id)
    return jsonify({"session": return_service.session_detail(session)})
