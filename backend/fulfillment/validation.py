from __future__ import annotations
from datetime import datetime
from fulfillment.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Float, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError


# Maximum money amount accepted on any *_cents field.
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

# Maximum units on a single line item
MAX_LINE_QUANTITY = 100_000


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_int(key: str, value: Any) -> int:
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer", field=key)
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)", field=key)
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)", field=key)
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer", field=key)
    # Reject floats explicitly
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal", field=key)
    raise ValidationError(f"{key} must be an integer", field=key)


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return _coerce_int(col.key, value)

    if isinstance(coltype, Float):
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValidationError(f"{col.key} must be a number", field=col.key)
        try:
            return float(value)
        except ValueError:
            raise ValidationError(f"{col.key} must be a number", field=col.key)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime", field=col.key)
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime", field=col.key)
            return dt
        raise ValidationError(f"{col.key} must be a datetime", field=col.key)

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    Keys present in writable_fields but not mapped as columns (e.g. nested
    "line_items") are passed through untouched for the caller to validate.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}", field=k)

    patch: dict = {}

    for k, raw in payload.items():
        col = cols.get(k)
        if col is None:
            patch[k] = raw
            continue

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null", field=k)
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank", field=k)

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}", field=k)

        patch[k] = val

    return patch


def _enforce_cents(patch: dict, key: str) -> None:
    if key in patch and patch[key] is not None:
        amount = patch[key]
        if amount < 0:
            raise ValidationError(f"{key} must be >= 0", field=key)
        if amount > MAX_PRICE_CENTS:
            raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS}", field=key)


def enforce_rules_product(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    _enforce_cents(patch, "price_cents")
    _enforce_cents(patch, "cost_cents")
    if "stock" in patch and patch["stock"] is not None and patch["stock"] < 0:
        raise ValidationError("stock must be >= 0", field="stock")


def enforce_rules_order(patch: dict) -> list[dict]:
    """
    Validate order money fields and normalize line_items.

    Returns the cleaned line items: [{"product_id", "quantity", "unit_price_cents"}].
    unit_price_cents may be None (filled from the product price by the service).
    """
    _enforce_cents(patch, "shipping_cost_cents")
    _enforce_cents(patch, "total_price_cents")

    raw_items = patch.get("line_items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("line_items must be a non-empty list", field="line_items")

    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"line_items[{idx}] must be an object", field="line_items")
        unknown = set(raw) - {"product_id", "quantity", "unit_price_cents"}
        if unknown:
            raise ValidationError(f"line_items[{idx}] has unknown fields: {', '.join(sorted(unknown))}")
        if "product_id" not in raw or "quantity" not in raw:
            raise ValidationError(f"line_items[{idx}] requires product_id and quantity", field="line_items")

        quantity = _coerce_int(f"line_items[{idx}].quantity", raw["quantity"])
        if quantity <= 0:
            raise ValidationError(f"line_items[{idx}].quantity must be > 0", field="line_items")
        if quantity > MAX_LINE_QUANTITY:
            raise ValidationError(f"line_items[{idx}].quantity cannot exceed {MAX_LINE_QUANTITY}", field="line_items")

        unit_price = raw.get("unit_price_cents")
        if unit_price is not None:
            unit_price = _coerce_int(f"line_items[{idx}].unit_price_cents", unit_price)
            _enforce_cents({"unit_price_cents": unit_price}, "unit_price_cents")

        items.append({
            "product_id": _coerce_int(f"line_items[{idx}].product_id", raw["product_id"]),
            "quantity": quantity,
            "unit_price_cents": unit_price,
        })
    return items


def parse_id_list(payload: dict, key: str = "order_ids") -> list[int]:
    """Non-empty list of distinct integer ids, order preserved."""
    raw = (payload or {}).get(key)
    if not isinstance(raw, list) or not raw:
        raise ValidationError(f"{key} must be a non-empty list", field=key)
    ids = [_coerce_int(key, v) for v in raw]
    if len(set(ids)) != len(ids):
        raise ValidationError(f"{key} contains duplicates", field=key)
    return ids


def require_int(payload: dict, key: str, *, minimum: int | None = None) -> int:
    if not isinstance(payload, dict) or payload.get(key) is None:
        raise ValidationError(f"{key} is required", field=key)
    value = _coerce_int(key, payload[key])
    if minimum is not None and value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}", field=key)
    return value


def optional_int(payload: dict, key: str, *, minimum: int | None = None) -> int | None:
    if not isinstance(payload, dict) or payload.get(key) is None:
        return None
    return require_int(payload, key, minimum=minimum)
