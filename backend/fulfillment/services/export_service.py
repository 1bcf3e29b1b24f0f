# Overview: Service-layer operations for the courier hand-off file of a dispatch session.

"""
Courier export.

One row per member order:

    code       order number
    recipient  customer name
    phone      customer phone
    address    shipping address
    quantity   total units in the order
    product    "2x Mug, 1x Plate"
    amount     cash the courier must collect, in currency units with two
               decimals (3500 cents -> 35.00; 0.00 for prepaid orders)
    date       order date in the store's timezone, DD/MM/YYYY
    map link   Google Maps URL from coordinates, else from the address
    notes      delivery notes

CSV via the csv module, XLSX via openpyxl.
"""

from __future__ import annotations

import csv
import io
from datetime import timezone
from decimal import Decimal
from urllib.parse import quote_plus
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from ..models import WorkSession


EXPORT_COLUMNS = ["code", "recipient", "phone", "address", "quantity", "product", "amount", "date", "map link", "notes"]


def display_amount(cents: int) -> Decimal:
    return Decimal(cents).scaleb(-2)


def map_link(order) -> str:
    if order.latitude is not None and order.longitude is not None:
        return f"https://www.google.com/maps?q={order.latitude},{order.longitude}"
    if order.shipping_address:
        return f"https://www.google.com/maps/search/?api=1&query={quote_plus(order.shipping_address)}"
    return ""


def _local_date(dt, tz_name: str | None) -> str:
    if dt is None:
        return ""
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        tz = timezone.utc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz).strftime("%d/%m/%Y")


def build_rows(session: WorkSession) -> list[dict]:
    tz_name = session.store.timezone if session.store else None
    rows = []
    for m in session.members:
        order = m.order
        lines = list(order.line_items)
        rows.append({
            "code": order.order_number,
            "recipient": order.customer_name or "",
            "phone": order.customer_phone or "",
            "address": order.shipping_address or "",
            "quantity": sum(li.quantity for li in lines),
            "product": ", ".join(f"{li.quantity}x {li.product.name}" for li in lines),
            "amount": display_amount(order.total_price_cents if m.is_cod else 0),
            "date": _local_date(order.created_at, tz_name),
            "map link": map_link(order),
            "notes": order.delivery_notes or "",
        })
    return rows


def to_csv(rows: list[dict]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS, quoting=csv.QUOTE_MINIMAL)
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


def to_xlsx(rows: list[dict], *, title: str = "Dispatch") -> bytes:
    wb = Workbook()
    sheet = wb.active
    # Excel limits sheet titles to 31 characters
    sheet.title = title[:31]

    sheet.append(EXPORT_COLUMNS)
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append([row[col] for col in EXPORT_COLUMNS])

    amount_column = get_column_letter(EXPORT_COLUMNS.index("amount") + 1)
    for cell in sheet[amount_column][1:]:
        cell.number_format = "0.00"

    for idx, col in enumerate(EXPORT_COLUMNS, start=1):
        width = max([len(col)] + [len(str(row[col])) for row in rows])
        sheet.column_dimensions[get_column_letter(idx)].width = min(width + 2, 60)
    sheet.freeze_panes = "A2"

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()
