# Overview: Flask API routes for dispatch sessions and courier settlements; parses input and returns JSON responses.

# backend/fulfillment/routes/settlements.py
"""
Dispatch + settlement routes.

Flow:
1. POST /settlements/dispatch-sessions with READY_TO_SHIP orders and a carrier
2. GET  .../export?format=csv|xlsx   courier hand-off file
3. POST .../dispatch                 orders become SHIPPED
4. POST .../import                   courier results (JSON, CSV or XLSX)
5. POST .../process                  reconcile money -> Settlement
6. POST /settlements/<id>/pay       carrier payments until the settlement is paid
"""
import csv
import io
import json
import zipfile

from flask import Blueprint, request, g, jsonify, Response

from ..models.sessions import KIND_DISPATCH
from ..services import dispatch_service, export_service, session_service, settlement_service
from ..validation import parse_id_list, require_int
from ..errors import ValidationError
from ..decorators import require_store

settlements_bp = Blueprint("settlements", __name__, url_prefix="/settlements")

# Column headers accepted in uploaded result files, beyond the JSON keys.
# "code" is the order number column of the export file; "amount" is read as
# a display amount (35.00), like the export writes it.
_HEADER_ALIASES = {
    "code": "order_number",
    "order": "order_number",
    "collected": "amount",
    "reason": "failure_reason",
}


def _normalize_header(header) -> str:
    key = "_".join(str(header or "").strip().lower().split())
    return _HEADER_ALIASES.get(key, key)


def _normalize_cell(value):
    # openpyxl returns whole numbers typed as floats
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _rows_from_upload(file) -> list[dict]:
    filename = file.filename or ""
    ext = filename.split(".")[-1].lower()

    if ext == "csv":
        try:
            stream = io.StringIO(file.stream.read().decode("utf-8-sig"))
            rows = [row for row in csv.DictReader(stream)]
        except (UnicodeDecodeError, csv.Error):
            raise ValidationError("File is not a readable UTF-8 CSV", field="file")
    elif ext == "json":
        try:
            rows = json.loads(file.stream.read())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("File is not valid JSON", field="file")
        if isinstance(rows, dict):
            rows = rows.get("results", [])
    elif ext in {"xlsx", "xlsm"}:
        from openpyxl import load_workbook
        from openpyxl.utils.exceptions import InvalidFileException
        try:
            wb = load_workbook(io.BytesIO(file.stream.read()), data_only=True, read_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError):
            raise ValidationError("File is not a readable Excel workbook", field="file")
        sheet = wb.active
        data = list(sheet.values)
        if not data:
            rows = []
        else:
            headers = [str(h) if h is not None else "" for h in data[0]]
            rows = [
                {headers[i]: row[i] for i in range(len(headers)) if i < len(row)}
                for row in data[1:]
                if any(cell not in (None, "") for cell in row)
            ]
    else:
        raise ValidationError("Unsupported file type; use csv, json or xlsx", field="file")

    if not isinstance(rows, list):
        raise ValidationError("results must be a non-empty list", field="results")
    return [
        {_normalize_header(k): _normalize_cell(v) for k, v in row.items() if k}
        if isinstance(row, dict) else row
        for row in rows
    ]


def _active_filter():
    raw = request.args.get("active")
    if raw is None:
        return None
    return raw.lower() in ("1", "true", "yes")


# =============================================================================
# DISPATCH SESSIONS
# =============================================================================

@settlements_bp.get("/dispatch-sessions")
@require_store
def list_dispatch_sessions():
    """
    Query params:
    - active: 1 for CREATED/DISPATCHED/PROCESSING sessions, 0 for finished ones
    """
    sessions = session_service.list_sessions(g.store_id, KIND_DISPATCH, active=_active_filter())
    return jsonify({"items": [s.to_dict(include_members=False) for s in sessions], "count": len(sessions)})


@settlements_bp.post("/dispatch-sessions")
@require_store
def create_dispatch_session():
    """
    Request body:
    {
        "carrier_id": 2,
        "order_ids": [10, 11],
        "notes": "afternoon run"     (optional)
    }

    Orders must be READY_TO_SHIP and not in another active dispatch session.
    The carrier fee of each order is fixed here from the carrier's zone rates.
    """
    payload = request.get_json(silent=True) or {}
    session = dispatch_service.create_dispatch_session(
        store_id=g.store_id,
        order_ids=parse_id_list(payload),
        carrier_id=require_int(payload, "carrier_id"),
        notes=payload.get("notes"),
    )
    return jsonify({"session": session.to_dict()}), 201


@settlements_bp.get("/dispatch-sessions/<int:session_id>")
@require_store
def get_dispatch_session(session_id: int):
    session = dispatch_service.get_dispatch_session(g.store_id, session_id)
    data = session.to_dict()
    if session.settlement is not None:
        data["settlement"] = session.settlement.to_dict()
    return jsonify({"session": data})


@settlements_bp.post("/dispatch-sessions/<int:session_id>/dispatch")
@require_store
def dispatch_session(session_id: int):
    session = dispatch_service.dispatch(store_id=g.store_id, session_id=session_id)
    return jsonify({"session": session.to_dict()})


@settlements_bp.post("/dispatch-sessions/<int:session_id>/cancel")
@require_store
def cancel_dispatch_session(session_id: int):
    """Cancel before results are imported; shipped orders go back to READY_TO_SHIP."""
    session = dispatch_service.cancel_dispatch(store_id=g.store_id, session_id=session_id)
    return jsonify({"session": session.to_dict()})


@settlements_bp.get("/dispatch-sessions/<int:session_id>/export")
@require_store
def export_dispatch_session(session_id: int):
    """
    Courier hand-off file.

    Query params:
    - format: csv (default) or xlsx
    """
    fmt = (request.args.get("format") or "csv").lower()
    if fmt not in ("csv", "xlsx"):
        raise ValidationError("format must be csv or xlsx", field="format")

    session = dispatch_service.get_dispatch_session(g.store_id, session_id)
    rows = export_service.build_rows(session)

    if fmt == "xlsx":
        body = export_service.to_xlsx(rows, title=session.code)
        mimetype = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    else:
        body = export_service.to_csv(rows)
        mimetype = "text/csv"

    return Response(
        body,
        mimetype=mimetype,
        headers={"Content-Disposition": f'attachment; filename="{session.code}.{fmt}"'},
    )


@settlements_bp.post("/dispatch-sessions/<int:session_id>/import")
@require_store
def import_delivery_results(session_id: int):
    """
    Record courier results.

    JSON body:
    {
        "results": [
            {"order_id": 10, "result": "delivered", "cod_collected_cents": 2500},
            {"order_number": "ORD-00011", "result": "failed", "failure_reason": "not home"}
        ]
    }

    Or multipart upload with "file" (csv, json or xlsx) holding the same columns.
    A sheet may give the collected amount as "amount" in display units
    ("20.00") instead of cod_collected_cents. Unreadable files are a 400.
    Each row is recorded on its own; rows that fail are listed in "errors"
    and do not affect the others.
    """
    if "file" in request.files:
        results = _rows_from_upload(request.files["file"])
    else:
        payload = request.get_json(silent=True) or {}
        results = payload.get("results")

    report = dispatch_service.import_delivery_results(
        store_id=g.store_id,
        session_id=session_id,
        results=results,
    )
    return jsonify(report)


@settlements_bp.post("/dispatch-sessions/<int:session_id>/process")
@require_store
def process_settlement(session_id: int):
    """
    Reconcile the session and write its Settlement.

    Request body:
    {
        "discrepancy_confirmed": true,   (required when collected != expected)
        "notes": "..."                   (optional)
    }
    """
    payload = request.get_json(silent=True) or {}
    confirmed = payload.get("discrepancy_confirmed")
    if confirmed is not None and not isinstance(confirmed, bool):
        raise ValidationError("discrepancy_confirmed must be a boolean", field="discrepancy_confirmed")

    settlement = settlement_service.process(
        store_id=g.store_id,
        session_id=session_id,
        discrepancy_confirmed=confirmed,
        notes=payload.get("notes"),
    )
    return jsonify({"settlement": settlement.to_dict()}), 201


# =============================================================================
# SETTLEMENTS
# =============================================================================

@settlements_bp.get("")
@require_store
def list_settlements():
    settlements = settlement_service.list_settlements(g.store_id)
    return jsonify({"items": [s.to_dict() for s in settlements], "count": len(settlements)})


@settlements_bp.get("/<int:settlement_id>")
@require_store
def get_settlement(settlement_id: int):
    settlement = settlement_service.get_settlement(g.store_id, settlement_id)
    return jsonify({"settlement": settlement.to_dict()})


@settlements_bp.post("/<int:settlement_id>/pay")
@require_store
def pay_settlement(settlement_id: int):
    """
    Record a carrier payment.

    Request body:
    {
        "amount_cents": 50000,
        "method": "bank_transfer",      (optional)
        "reference": "TRX-88121",       (optional)
        "notes": "..."                  (optional)
    }

    Returns 409 SETTLEMENT_ALREADY_PAID once the net receivable is covered.
    """
    payload = request.get_json(silent=True) or {}
    settlement = settlement_service.record_payment(
        store_id=g.store_id,
        settlement_id=settlement_id,
        amount_cents=require_int(payload, "amount_cents", minimum=1),
        method=payload.get("method"),
        reference=payload.get("reference"),
        notes=payload.get("notes"),
    )
    return jsonify({"settlement": settlement.to_dict()})
