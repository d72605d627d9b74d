import io
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import requests
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from . import config
from .utils import parse_iso, safe_float

logger = logging.getLogger(__name__)

INK = (12 / 255.0, 29 / 255.0, 73 / 255.0)

# Distances from the top edge, in mm.
ROWS_BOTTOM = 260
TOTALS_BOTTOM = 200
CONTINUATION_TOP = 30


@dataclass(frozen=True)
class InvoiceFile:
    url: str
    filename: str


def load_letterhead(source=None):
    """Letterhead image for the page background; None if it cannot be loaded."""
    source = config.letterhead_source() if source is None else source
    if not source:
        return None
    try:
        if source.startswith(("http://", "https://")):
            res = requests.get(source, timeout=10)
            res.raise_for_status()
            return ImageReader(io.BytesIO(res.content))
        if not os.path.exists(source):
            logger.info("Letterhead %s not found, continuing without it", source)
            return None
        return ImageReader(source)
    except (requests.RequestException, OSError, ValueError) as exc:
        logger.warning("Error fetching letterhead %s: %s", source, exc)
        return None


def invoice_table_rows(sale):
    rows = []
    for index, prod in enumerate(sale.get("products", []), start=1):
        rows.append((
            f"{index}. {prod.get('name', '')}",
            str(prod.get("quantity", 0)),
            f"{safe_float(prod.get('lineTotal')):.2f}",
        ))
    return rows


def invoice_totals(sale):
    subtotal = sum(safe_float(p.get("lineTotal")) for p in sale.get("products", []))
    discount = safe_float(sale.get("discount"))
    return {"subtotal": subtotal, "discount": discount, "total": subtotal - discount}


def _invoice_date(sale):
    parsed = parse_iso(sale.get("timestamp"))
    if parsed is None:
        return str(sale.get("timestamp") or "")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(config.report_timezone())
    return parsed.strftime("%d-%m-%Y")


def render_invoice_pdf(sale, letterhead=None):
    buf = io.BytesIO()
    # invariant=1 keeps output byte-stable for identical input.
    c = canvas.Canvas(buf, pagesize=A4, invariant=1)
    width, height = A4

    def y_at(top_mm):
        return height - top_mm * mm

    # ================= LETTERHEAD =================
    if letterhead is not None:
        c.drawImage(letterhead, 0, 0, width=width, height=height)
    else:
        c.setFont("Helvetica-Bold", 20)
        c.drawCentredString(width / 2, y_at(25), config.COMPANY["name"])

    left = 20
    right = 190
    top = 50
    c.setFillColorRGB(*INK)
    c.setStrokeColorRGB(*INK)

    # ================= CUSTOMER =================
    c.setFont("Helvetica", 14)
    c.drawString(left * mm, y_at(top), f"Name: {sale.get('customerName', '')}")
    c.drawString(left * mm, y_at(top + 10), f"Phone: {sale.get('customerPhone', '')}")
    c.drawString((right - 60) * mm, y_at(top), f"Date: {_invoice_date(sale)}")
    c.drawString((right - 60) * mm, y_at(top + 10), f"Payment: {sale.get('paymentMethod', '')}")

    # ================= TABLE HEADER =================
    y = top + 30
    c.setFont("Helvetica-Bold", 13)
    c.drawString(25 * mm, y_at(y), "Product")
    c.drawRightString(130 * mm, y_at(y), "Qty")
    c.drawRightString(160 * mm, y_at(y), "Price (Rs)")

    y += 5
    c.setLineWidth(0.3 * mm)
    c.line(left * mm, y_at(y), right * mm, y_at(y))
    y += 10

    def next_page():
        c.showPage()
        c.setFillColorRGB(*INK)
        c.setStrokeColorRGB(*INK)
        c.setLineWidth(0.3 * mm)
        c.setFont("Helvetica", 13)
        return CONTINUATION_TOP

    # ================= ITEMS =================
    c.setFont("Helvetica", 13)
    pages = 1
    for label, qty, amount in invoice_table_rows(sale):
        if y > ROWS_BOTTOM:
            y = next_page()
            pages += 1
        c.drawString(25 * mm, y_at(y), label)
        c.drawRightString(130 * mm, y_at(y), qty)
        c.drawRightString(160 * mm, y_at(y), amount)
        y += 10

    # ================= TOTALS =================
    if y > TOTALS_BOTTOM:
        y = next_page()
        pages += 1
    if pages > 1:
        logger.info("Invoice for %s runs to %s pages", sale.get("customerName", ""), pages)
    totals = invoice_totals(sale)
    y += 5
    c.line(left * mm, y_at(y), right * mm, y_at(y))
    y += 10

    c.drawRightString(130 * mm, y_at(y), "Subtotal:")
    c.drawRightString(160 * mm, y_at(y), f"{totals['subtotal']:.2f}")
    y += 10

    if totals["discount"] > 0:
        c.drawRightString(130 * mm, y_at(y), "Discount:")
        c.drawRightString(160 * mm, y_at(y), f"{totals['discount']:.2f}")
        y += 10

    c.setFont("Helvetica-Bold", 13)
    c.drawRightString(130 * mm, y_at(y), "Total:")
    c.drawRightString(160 * mm, y_at(y), f"{totals['total']:.2f}")

    # ================= FOOTER =================
    y += 20
    c.setFont("Helvetica", 11)
    c.drawCentredString(105 * mm, y_at(y + 20), config.COMPANY["footer"])
    c.drawCentredString(
        105 * mm,
        y_at(y + 30),
        f"We appreciate your trust in us, {sale.get('customerName', '')}. Have a wonderful day!",
    )

    c.showPage()
    c.save()
    return buf.getvalue()


def invoice_filename(moment=None):
    moment = moment or datetime.now(timezone.utc)
    stamp = moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
    return f"Invoice_{stamp}_{uuid.uuid4().hex[:8]}.pdf"


def create_and_upload_invoice(sale, blobs, letterhead_source=None):
    pdf = render_invoice_pdf(sale, letterhead=load_letterhead(letterhead_source))
    filename = invoice_filename()
    url = blobs.put_bytes(key=filename, data=pdf, content_type="application/pdf")
    return InvoiceFile(url=url, filename=filename)
