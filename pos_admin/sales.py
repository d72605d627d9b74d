import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from . import config
from .audit_log import write_audit_log
from .inventory import ERROR, InventoryAdjustment, adjust_inventory, load_products
from .invoice_pdf import create_and_upload_invoice
from .store import with_ids
from .utils import now_iso, safe_float
from .whatsapp import WhatsAppError

logger = logging.getLogger(__name__)

SALES_PATH = "sales"
PAYMENT_METHODS = ("Online", "Cash")

REJECTED = "rejected"
FAILED = "failed"
RECORDED = "recorded"

OK = "ok"
SKIPPED = "skipped"


@dataclass
class StepResult:
    status: str = SKIPPED
    message: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == OK


@dataclass
class SaleOutcome:
    """What happened to each side effect of one sale submission."""

    status: str
    message: str
    sale: Optional[Dict[str, Any]] = None
    sale_id: Optional[str] = None
    inventory: List[InventoryAdjustment] = field(default_factory=list)
    persist: StepResult = field(default_factory=StepResult)
    invoice: StepResult = field(default_factory=StepResult)
    notification: StepResult = field(default_factory=StepResult)

    @property
    def inventory_ok(self) -> bool:
        return all(a.ok for a in self.inventory)

    @property
    def warnings(self) -> List[str]:
        out = [a.message for a in self.inventory if not a.ok]
        for step in (self.persist, self.invoice, self.notification):
            if step.status == FAILED and step.message:
                out.append(step.message)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "sale_id": self.sale_id,
            "sale": self.sale,
            "inventory": [a.to_dict() for a in self.inventory],
            "persist": asdict(self.persist),
            "invoice": asdict(self.invoice),
            "notification": asdict(self.notification),
            "warnings": self.warnings,
        }


# -------------------------------
# Form helpers
# -------------------------------
def new_line():
    return {"name": "", "price": 0, "quantity": 1}


def rename_line(line, name):
    # Typing a new name drops any price picked from the catalog.
    return {**line, "name": name, "price": 0}


def apply_suggestion(line, product):
    return {**line, "name": product.get("name", ""), "price": product.get("price", 0)}


def subtotal_of(lines):
    return round(sum(safe_float(line.get("price")) * safe_float(line.get("quantity")) for line in lines), 2)


def validate_sale_form(form) -> Optional[str]:
    """Returns a message for the first problem found, or None when the form is valid."""
    if not str(form.get("customer_name") or "").strip():
        return "Please fill in all customer details."
    phone = str(form.get("customer_phone") or "").strip()
    if len(phone) != 10 or not phone.isdigit():
        return "Please enter a valid 10-digit phone number."

    lines = form.get("products") or []
    if not lines:
        return "Please add at least one product."
    for index, line in enumerate(lines, start=1):
        if not str(line.get("name") or "").strip():
            return f"Please enter the name for product {index}."
        price = safe_float(line.get("price"))
        if not math.isfinite(price) or price <= 0:
            return f"Please enter a valid price for product {index}."
        qty = safe_float(line.get("quantity"))
        if not math.isfinite(qty):
            return f"Please enter a valid quantity for product {index}."
        if qty <= 0:
            return f"Quantity for product {index} cannot be 0."
        if not qty.is_integer():
            return f"Quantity for product {index} must be a whole number."

    discount = safe_float(form.get("discount"))
    if not math.isfinite(discount):
        return "Please enter a valid discount."
    if discount < 0:
        return "Discount cannot be negative."
    subtotal = subtotal_of(lines)
    if not math.isfinite(subtotal):
        return "Sale total is out of range."
    if discount > subtotal:
        return "Discount cannot exceed the subtotal."

    if form.get("payment_method") not in PAYMENT_METHODS:
        return "Please select a payment method (Online or Cash)."
    return None


def compose_sale(form, timestamp=None):
    products = []
    for line in form.get("products") or []:
        price = safe_float(line.get("price"))
        qty = int(safe_float(line.get("quantity")))
        products.append({
            "name": str(line.get("name") or "").strip(),
            "price": price,
            "quantity": qty,
            "lineTotal": round(price * qty, 2),
        })
    discount = safe_float(form.get("discount"))
    subtotal = round(sum(p["lineTotal"] for p in products), 2)
    return {
        "customerName": str(form.get("customer_name") or "").strip(),
        "customerPhone": str(form.get("customer_phone") or "").strip(),
        "products": products,
        "discount": discount,
        "total": round(subtotal - discount, 2),
        "paymentMethod": form.get("payment_method"),
        "timestamp": timestamp or now_iso(),
    }


# -------------------------------
# Sales log reads
# -------------------------------
def load_sales(store):
    return with_ids(store.get(SALES_PATH) or {})


def last_customer_name(store, phone):
    phone = str(phone or "").strip()
    if len(phone) != 10:
        return None
    rows = store.query(SALES_PATH, order_by="customerPhone", equal_to=phone)
    if not rows:
        return None
    return rows[-1].get("customerName")


# -------------------------------
# Core sales workflow
# -------------------------------
def notify_customer(store, gateway, sale, invoice) -> StepResult:
    if gateway is None:
        return StepResult(SKIPPED, "WhatsApp gateway not configured.")
    try:
        token = store.get(config.whatsapp_token_path())
    except PyMongoError as exc:
        logger.error("Could not read WhatsApp token: %s", exc)
        return StepResult(FAILED, "WhatsApp token not loaded. Cannot send message.")
    if not token:
        return StepResult(FAILED, "WhatsApp token not loaded. Cannot send message.")

    caption = f"Hello {sale['customerName']}, here is your invoice: {invoice.filename}"
    try:
        gateway.send_image_url(sale["customerPhone"], invoice.url, caption, str(token))
    except WhatsAppError as exc:
        logger.error("Error sending WhatsApp message: %s", exc)
        return StepResult(FAILED, f"Failed to send WhatsApp message. {exc}".strip())
    return StepResult(OK, "Invoice PDF sent via WhatsApp!")


def record_sale(store, form, blobs=None, gateway=None, products=None, letterhead_source=None, user="admin", now=None):
    """
    Validate, decrement stock, append the sale, then deliver the invoice.

    Only the append is authoritative. Stock, invoice and notification problems
    are reported on the returned outcome and never undo the sale.
    """
    error = validate_sale_form(form)
    if error:
        return SaleOutcome(status=REJECTED, message=error)

    sale = compose_sale(form, timestamp=now_iso(now) if now else None)
    outcome = SaleOutcome(status=RECORDED, message="", sale=sale)

    # ---------------- STOCK REDUCE ----------------
    try:
        catalog = load_products(store) if products is None else products
    except PyMongoError as exc:
        logger.error("Could not load catalog: %s", exc)
        outcome.inventory = [
            InventoryAdjustment(name=p["name"], status=ERROR,
                                message=f"Error updating quantity for product {p['name']}.")
            for p in sale["products"]
        ]
    else:
        outcome.inventory = adjust_inventory(store, sale["products"], catalog)

    # ---------------- RECORD ----------------
    try:
        sale_id = store.push(SALES_PATH, sale)
    except PyMongoError as exc:
        logger.error("Error recording sale: %s", exc)
        outcome.status = FAILED
        outcome.message = "Failed to record sale. Please try again."
        outcome.persist = StepResult(FAILED, outcome.message)
        return outcome

    outcome.sale_id = sale_id
    outcome.persist = StepResult(OK, "Sale recorded successfully!", {"id": sale_id})
    outcome.message = "Sale recorded successfully!"

    write_audit_log(
        store,
        user=user,
        module="sales",
        action="create",
        reference=sale_id,
        after={
            "customer": sale["customerName"],
            "phone": sale["customerPhone"],
            "total": sale["total"],
            "payment_mode": sale["paymentMethod"],
            "items_count": len(sale["products"]),
        },
    )

    # ---------------- INVOICE ----------------
    if blobs is None:
        outcome.invoice = StepResult(SKIPPED, "Invoice storage not configured.")
        return outcome
    try:
        invoice = create_and_upload_invoice(sale, blobs, letterhead_source=letterhead_source)
    except Exception as exc:
        logger.exception("Error generating/uploading PDF for sale %s", sale_id)
        outcome.invoice = StepResult(FAILED, "Failed to generate or upload PDF.", {"error": str(exc)})
        return outcome
    outcome.invoice = StepResult(OK, "Invoice generated.", {"url": invoice.url, "filename": invoice.filename})

    # ---------------- NOTIFY ----------------
    outcome.notification = notify_customer(store, gateway, sale, invoice)
    return outcome
