# rentledger/utils/bill_pdf.py

from __future__ import annotations

import io
from datetime import datetime, date

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib import colors
from reportlab.pdfgen import canvas
from reportlab.platypus import Table, TableStyle


def _fmt_date(d):
    if not d:
        return "-"
    if isinstance(d, (datetime, date)):
        return d.strftime("%Y-%m-%d")
    return str(d)


def _money(v, currency="VND"):
    if v is None:
        return "-"
    return f"{currency} {float(v):,.2f}"


def _safe_enum_value(v):
    return getattr(v, "value", v)


def render_bill_pdf(bill, *, issuer: str = "RentLedger", currency: str = "VND") -> bytes:
    """
    Render a Bill PDF (NO DB writes).
    Returns PDF bytes.
    """
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    width, height = A4

    ACCENT = colors.HexColor("#1f4e79")
    GRAY = colors.HexColor("#6b7280")
    DARK = colors.HexColor("#111827")
    LINE = colors.HexColor("#e5e7eb")

    # --- Header bar ---
    c.setFillColor(ACCENT)
    c.rect(0, height - 28 * mm, width, 28 * mm, stroke=0, fill=1)

    c.setFillColor(colors.white)
    c.setFont("Helvetica-Bold", 16)
    c.drawString(18 * mm, height - 16 * mm, issuer)

    # Bill number is printed verbatim; its shape is part of the contract.
    c.setFont("Helvetica-Bold", 12)
    c.drawRightString(width - 18 * mm, height - 14 * mm, f"BILL {bill.bill_number}")

    c.setFont("Helvetica", 9)
    status = _safe_enum_value(bill.status)
    c.drawRightString(
        width - 18 * mm,
        height - 20 * mm,
        f"Status: {status} • Due: {_fmt_date(bill.due_date)}",
    )

    # --- Period + recipient ---
    y = height - 38 * mm
    c.setFillColor(DARK)
    c.setFont("Helvetica-Bold", 11)
    c.drawString(18 * mm, y, "Billed To")
    c.drawString(width / 2 + 2 * mm, y, "Billing Period")

    c.setFont("Helvetica", 9)
    c.drawString(18 * mm, y - 6 * mm, f"Room representative #{bill.representative_id}")
    c.drawString(18 * mm, y - 11 * mm, f"Room #{bill.room_id} • Accommodation #{bill.accommodation_id}")
    c.drawString(
        width / 2 + 2 * mm,
        y - 6 * mm,
        f"{_fmt_date(bill.period_from)} to {_fmt_date(bill.period_to)}",
    )

    y -= 20 * mm

    # --- Items table ---
    data = [["Item", "Type", "Qty", "Unit Price", "Amount"]]
    for it in bill.items:
        label = it.name
        if it.consumption is not None:
            label = f"{label} ({it.previous_reading or 0:g} - {it.current_reading or 0:g})"
        data.append([
            label[:60],
            _safe_enum_value(it.item_type),
            f"{it.quantity:g}",
            _money(it.unit_price, currency) if it.unit_price is not None else "-",
            _money(it.amount, currency),
        ])

    table = Table(data, colWidths=[70 * mm, 26 * mm, 14 * mm, 32 * mm, 32 * mm], hAlign="LEFT")
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f3f4f6")),
        ("TEXTCOLOR", (0, 0), (-1, 0), DARK),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("GRID", (0, 0), (-1, -1), 0.5, LINE),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("PADDING", (0, 0), (-1, -1), 6),
    ]))
    _tw, th = table.wrapOn(c, width - 36 * mm, height)
    table.drawOn(c, 18 * mm, y - th)
    y = y - th - 10 * mm

    # --- Tenant shares (frozen at billing time) ---
    shares = list(bill.tenants_at_time_of_billing)
    if shares:
        c.setFont("Helvetica-Bold", 10)
        c.setFillColor(DARK)
        c.drawString(18 * mm, y, "Tenants this period")
        c.setFont("Helvetica", 9)
        c.setFillColor(GRAY)
        for i, s in enumerate(shares):
            c.drawString(22 * mm, y - (6 + 5 * i) * mm, f"Tenant #{s.tenant_id}: {s.days_in_period} day(s)")
        y -= (10 + 5 * len(shares)) * mm

    # --- Totals ---
    block_x = width - 18 * mm
    rows = [
        ("Subtotal", bill.subtotal),
        ("Tax", bill.tax),
        ("Late fee", bill.late_fee_amount),
        ("Total", bill.total_amount),
        ("Paid", bill.paid_amount),
        ("Balance", bill.remaining_balance),
    ]
    for i, (label, value) in enumerate(rows):
        bold = label in ("Total", "Balance")
        c.setFont("Helvetica-Bold" if bold else "Helvetica", 10 if bold else 9)
        c.setFillColor(DARK if bold else GRAY)
        c.drawRightString(block_x, y - 6 * i * mm, label)
        c.setFillColor(DARK)
        c.drawRightString(block_x - 40 * mm, y - 6 * i * mm, _money(value, currency))

    if bill.notes:
        c.setFont("Helvetica-Bold", 10)
        c.setFillColor(DARK)
        c.drawString(18 * mm, y, "Notes")
        c.setFont("Helvetica", 9)
        c.setFillColor(GRAY)
        c.drawString(18 * mm, y - 6 * mm, bill.notes[:90])

    # --- Footer ---
    c.setFillColor(LINE)
    c.rect(0, 0, width, 12 * mm, stroke=0, fill=1)
    c.setFillColor(GRAY)
    c.setFont("Helvetica", 8)
    c.drawRightString(width - 18 * mm, 4 * mm, f"Generated: {_fmt_date(date.today())}")

    c.showPage()
    c.save()

    pdf = buf.getvalue()
    buf.close()
    return pdf
