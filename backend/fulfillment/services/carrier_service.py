# Overview: Service-layer operations for carriers, zone rate tables and payment-method classification.

"""
Carrier rate tables.

Zone lookup:
- zone names are compared after normalization (accents stripped, lower-cased,
  whitespace collapsed), so "Asunción" and "asuncion " are the same zone
- an order's delivery_zone that has no exact zone falls back to the first of
  FALLBACK_ZONES the carrier defines
- no match at all -> fee 0

Payment classification:
- COD (courier collects cash): cash, cod, efectivo, contra entrega, or no method at all
- everything else (card, transfer, qr, ...) is prepaid
"""

from __future__ import annotations

import unicodedata

from flask import current_app

from ..extensions import db
from ..errors import NotFound, ValidationError
from ..models import Carrier, CarrierZone
from .concurrency import run_with_retry


FALLBACK_ZONES = ("default", "otros", "interior", "general")

COD_PAYMENT_METHODS = frozenset({"cash", "cod", "efectivo", "contra entrega", ""})


def normalize_zone_name(text: str | None) -> str:
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return " ".join(stripped.lower().split())


def is_cod_payment(payment_method: str | None) -> bool:
    if payment_method is None:
        return True
    return " ".join(payment_method.lower().split()) in COD_PAYMENT_METHODS


def get_carrier(store_id: int, carrier_id: int) -> Carrier:
    carrier = db.session.get(Carrier, carrier_id)
    if carrier is None or carrier.store_id != store_id:
        raise NotFound("Carrier not found", carrier_id=carrier_id)
    return carrier


def list_carriers(store_id: int, *, include_inactive: bool = False) -> list[Carrier]:
    query = db.session.query(Carrier).filter_by(store_id=store_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(Carrier.name.asc(), Carrier.id.asc()).all()


def create_carrier(*, store_id: int, patch: dict) -> Carrier:
    percent = patch.get("failed_attempt_fee_percent")
    if percent is not None and not 0 <= percent <= 100:
        raise ValidationError("failed_attempt_fee_percent must be between 0 and 100", field="failed_attempt_fee_percent")

    def _op():
        exists = db.session.query(Carrier.id).filter_by(store_id=store_id, name=patch["name"]).first()
        if exists:
            raise ValidationError("Carrier name already exists", field="name")
        carrier = Carrier(store_id=store_id, **patch)
        db.session.add(carrier)
        db.session.commit()
        return carrier

    return run_with_retry(_op)


def _clean_zones(zones) -> list[dict]:
    if not isinstance(zones, list):
        raise ValidationError("zones must be a list", field="zones")
    cleaned = []
    seen = set()
    for idx, raw in enumerate(zones):
        if not isinstance(raw, dict):
            raise ValidationError(f"zones[{idx}] must be an object", field="zones")
        name = str(raw.get("zone_name") or "").strip()
        key = normalize_zone_name(name)
        if not key:
            raise ValidationError(f"zones[{idx}].zone_name is required", field="zones")
        if key in seen:
            raise ValidationError(f"Duplicate zone: {name}", field="zones")
        seen.add(key)
        rate = raw.get("rate_cents")
        if isinstance(rate, bool) or not isinstance(rate, int) or rate < 0:
            raise ValidationError(f"zones[{idx}].rate_cents must be a non-negative integer", field="zones")
        cleaned.append({
            "zone_name": name,
            "zone_key": key,
            "rate_cents": rate,
            "is_active": bool(raw.get("is_active", True)),
        })
    return cleaned


def replace_zones(*, store_id: int, carrier_id: int, zones) -> Carrier:
    """Replace the carrier's whole rate table. Existing sessions keep their snapshotted fees."""
    cleaned = _clean_zones(zones)

    def _op():
        carrier = get_carrier(store_id, carrier_id)
        carrier.zones.clear()
        db.session.flush()
        for z in cleaned:
            carrier.zones.append(CarrierZone(**z))
        db.session.commit()
        return carrier

    carrier = run_with_retry(_op)
    keys = {z["zone_key"] for z in cleaned}
    if cleaned and not keys.intersection(FALLBACK_ZONES):
        current_app.logger.warning(
            "Carrier %s has no fallback zone (%s); unmatched zones will have 0 fees",
            carrier_id,
            "/".join(FALLBACK_ZONES),
        )
    return carrier


def zone_rate_map(carrier: Carrier) -> dict[str, int]:
    return {z.zone_key: z.rate_cents for z in carrier.zones if z.is_active}


def lookup_zone_rate(rates: dict[str, int], zone_name: str | None) -> int:
    key = normalize_zone_name(zone_name)
    if key and key in rates:
        return rates[key]
    for fallback in FALLBACK_ZONES:
        if fallback in rates:
            return rates[fallback]
    return 0


def failed_attempt_percent(carrier: Carrier | None) -> int:
    if carrier is not None and carrier.failed_attempt_fee_percent is not None:
        return carrier.failed_attempt_fee_percent
    return int(current_app.config.get("DEFAULT_FAILED_ATTEMPT_FEE_PERCENT", 50))


def failed_attempt_fee(rate_cents: int, percent: int) -> int:
    """Share of a zone rate, rounded half-up to the cent."""
    return (rate_cents * percent + 50) // 100
