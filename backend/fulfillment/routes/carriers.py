# Overview: Flask API routes for carriers and their zone rates; parses input and returns JSON responses.

# backend/fulfillment/routes/carriers.py
"""
Carrier routes.

Zone rates are snapshotted onto dispatch sessions when the session is
created, so replacing a carrier's rate table never changes the fees of
sessions that already exist.
"""
from flask import Blueprint, request, g, jsonify

from ..models import Carrier
from ..services import carrier_service
from ..validation import ModelValidationPolicy, validate_payload
from ..errors import ValidationError
from ..decorators import require_store

CARRIER_POLICY = ModelValidationPolicy(
    writable_fields={"name", "phone", "failed_attempt_fee_percent", "is_active", "zones"},
    required_on_create={"name"},
)

carriers_bp = Blueprint("carriers", __name__, url_prefix="/carriers")


@carriers_bp.get("")
@require_store
def list_carriers():
    include_inactive = request.args.get("include_inactive") in ("1", "true")
    carriers = carrier_service.list_carriers(g.store_id, include_inactive=include_inactive)
    return jsonify({"items": [c.to_dict(include_zones=True) for c in carriers], "count": len(carriers)})


@carriers_bp.post("")
@require_store
def create_carrier():
    """
    Create a carrier, optionally with its rate table.

    Request body:
    {
        "name": "FastBike",
        "phone": "...",                        (optional)
        "failed_attempt_fee_percent": 50,      (optional, 0..100)
        "zones": [                             (optional)
            {"zone_name": "North", "rate_cents": 800},
            {"zone_name": "Default", "rate_cents": 1000}
        ]
    }
    """
    patch = validate_payload(
        model=Carrier,
        payload=request.get_json(silent=True),
        policy=CARRIER_POLICY,
        partial=False,
    )
    zones = patch.pop("zones", None)
    carrier = carrier_service.create_carrier(store_id=g.store_id, patch=patch)
    if zones:
        carrier = carrier_service.replace_zones(store_id=g.store_id, carrier_id=carrier.id, zones=zones)
    return jsonify({"carrier": carrier.to_dict(include_zones=True)}), 201


@carriers_bp.get("/<int:carrier_id>")
@require_store
def get_carrier(carrier_id: int):
    carrier = carrier_service.get_carrier(g.store_id, carrier_id)
    return jsonify({"carrier": carrier.to_dict(include_zones=True)})


@carriers_bp.put("/<int:carrier_id>/zones")
@require_store
def replace_carrier_zones(carrier_id: int):
    """
    Replace the whole rate table of a carrier.

    Request body:
    {
        "zones": [{"zone_name": "North", "rate_cents": 800, "is_active": true}]
    }

    Zone names are matched case- and accent-insensitively. Orders whose zone
    is not listed fall back to a zone named "default", "otros" or "general".
    """
    payload = request.get_json(silent=True) or {}
    if "zones" not in payload:
        raise ValidationError("zones is required", field="zones")
    carrier = carrier_service.replace_zones(
        store_id=g.store_id,
        carrier_id=carrier_id,
        zones=payload["zones"],
    )
    return jsonify({"carrier": carrier.to_dict(include_zones=True)})
