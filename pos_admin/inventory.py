import logging
import math
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from . import config
from .audit_log import write_audit_log
from .store import with_ids
from .utils import normalize_name, now_iso, safe_float

logger = logging.getLogger(__name__)

PRODUCTS_PATH = "products"

ADJUSTED = "adjusted"
NOT_FOUND = "not_found"
ABORTED = "aborted"
ERROR = "error"


@dataclass
class InventoryAdjustment:
    name: str
    status: str
    product_id: Optional[str] = None
    quantity: Any = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == ADJUSTED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _valid_price(value) -> bool:
    number = safe_float(value)
    return math.isfinite(number) and number > 0


def _is_whole(value) -> bool:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return number.is_integer()


# -------------------------
# Catalog entry & maintenance
# -------------------------
def add_product(store, name, price, quantity, average_quantity, user="admin"):
    name = str(name or "").strip()
    if not name or price in (None, "") or quantity in (None, "") or average_quantity in (None, ""):
        raise ValueError("Please fill in all required fields.")
    if not _valid_price(price):
        raise ValueError("Please enter a valid price.")
    if not _is_whole(quantity) or float(quantity) < 0:
        raise ValueError("Please enter a valid quantity (non-negative integer).")
    if not _is_whole(average_quantity) or float(average_quantity) < 0:
        raise ValueError("Please enter a valid average quantity (non-negative integer).")

    record = {
        "name": name,
        "price": safe_float(price),
        "quantity": int(float(quantity)),
        "averageQuantity": int(float(average_quantity)),
        "createdAt": now_iso(),
    }
    product_id = store.push(PRODUCTS_PATH, record)
    write_audit_log(store, user=user, module="inventory", action="add_product", reference=product_id, after=record)
    return {"id": product_id, **record}


def load_products(store) -> List[Dict[str, Any]]:
    return with_ids(store.get(PRODUCTS_PATH) or {})


def search_products(products, term):
    term = normalize_name(term)
    if not term:
        return list(products)
    return [p for p in products if term in normalize_name(p.get("name"))]


def update_product(store, product_id, changes, user="admin"):
    """Manual edits: rename, reprice, restock or retarget the average level."""
    fields = {}
    if "name" in changes and changes["name"] is not None:
        name = str(changes["name"]).strip()
        if not name:
            raise ValueError("Product name cannot be empty.")
        fields["name"] = name
    if "price" in changes and changes["price"] is not None:
        if not _valid_price(changes["price"]):
            raise ValueError("Please enter a valid price.")
        fields["price"] = safe_float(changes["price"])
    for key in ("quantity", "averageQuantity"):
        if key in changes and changes[key] is not None:
            if not _is_whole(changes[key]) or float(changes[key]) < 0:
                raise ValueError(f"Please enter a valid {key} (non-negative integer).")
            fields[key] = int(float(changes[key]))

    before = store.get(f"{PRODUCTS_PATH}/{product_id}")
    if before is None:
        raise KeyError(product_id)
    store.update(f"{PRODUCTS_PATH}/{product_id}", fields)
    after = {**before, **fields}
    write_audit_log(store, user=user, module="inventory", action="update_product",
                    reference=product_id, before=before, after=after)
    return {"id": product_id, **after}


def delete_product(store, product_id, user="admin"):
    before = store.get(f"{PRODUCTS_PATH}/{product_id}")
    if before is None:
        raise KeyError(product_id)
    store.remove(f"{PRODUCTS_PATH}/{product_id}")
    write_audit_log(store, user=user, module="inventory", action="delete_product",
                    reference=product_id, before=before)
    return True


# -------------------------
# Suggestions
# -------------------------
def suggest_products(products, prefix):
    prefix = normalize_name(prefix)
    if not prefix:
        return []
    return [p for p in products if normalize_name(p.get("name")).startswith(prefix)]


def find_product(products, name):
    key = normalize_name(name)
    for p in products:
        if normalize_name(p.get("name")) == key:
            return p
    return None


# -------------------------
# Stock decrement
# -------------------------
def adjust_inventory(store, lines, products) -> List[InventoryAdjustment]:
    """
    Decrement stock for each sold line. Matching is by case-insensitive name
    against ``products``; the decrement itself runs against the stored value.
    """
    results = []
    for line in lines:
        name = line.get("name", "")
        qty = line.get("quantity", 0)
        matched = find_product(products, name)
        if matched is None:
            logger.warning("Product %s not found in catalog", name)
            results.append(InventoryAdjustment(
                name=name,
                status=NOT_FOUND,
                message=f"Product {name} not found. Quantity not updated.",
            ))
            continue

        product_id = matched["id"]

        def decrement(current, qty=qty):
            if current is None:
                return 0
            return current - qty

        try:
            outcome = store.transaction(f"{PRODUCTS_PATH}/{product_id}/quantity", decrement)
        except PyMongoError as exc:
            logger.error("Transaction failed for product %s: %s", matched.get("name"), exc)
            results.append(InventoryAdjustment(
                name=name,
                status=ERROR,
                product_id=product_id,
                message=f"Error updating quantity for product {matched.get('name')}.",
            ))
            continue

        if not outcome.committed:
            logger.warning("Transaction aborted for product %s", matched.get("name"))
            results.append(InventoryAdjustment(
                name=name,
                status=ABORTED,
                product_id=product_id,
                quantity=outcome.value,
                message=f"Failed to update quantity for product {matched.get('name')}.",
            ))
            continue

        results.append(InventoryAdjustment(name=name, status=ADJUSTED, product_id=product_id, quantity=outcome.value))
    return results


# -------------------------
# Stock status & purchase list
# -------------------------
def stock_status(products, threshold=None):
    threshold = config.low_stock_threshold() if threshold is None else threshold
    rows = []
    for p in products:
        qty = p.get("quantity", 0) or 0
        rows.append({
            "id": p.get("id"),
            "name": p.get("name", ""),
            "price": round(safe_float(p.get("price")), 2),
            "quantity": qty,
            "status": "Low Stock" if qty <= threshold else "In Stock",
        })
    return rows


def purchase_list(products):
    rows = []
    for p in products:
        qty = p.get("quantity", 0) or 0
        average = p.get("averageQuantity", 0) or 0
        difference = qty - average
        if difference < 0:
            status = f"Need more by {abs(difference)}"
        elif difference > 0:
            status = f"You have extra by {difference}"
        else:
            status = "Perfectly balanced"
        rows.append({
            "id": p.get("id"),
            "name": p.get("name", ""),
            "averageQuantity": average,
            "quantity": qty,
            "difference": difference,
            "status": status,
        })
    return rows


class CatalogWatcher:
    """Keeps a live copy of the catalog for typeahead lookups."""

    def __init__(self, store):
        self._store = store
        self._lock = threading.Lock()
        self._products = None
        self._listener = None

    def start(self):
        if self._listener is None:
            self._listener = self._store.listen(PRODUCTS_PATH, self._on_change, on_error=self._on_error)
        return self

    def stop(self):
        if self._listener is not None:
            self._listener.unsubscribe()
            self._listener = None

    def _on_change(self, value):
        with self._lock:
            self._products = with_ids(value or {})

    def _on_error(self, exc):
        with self._lock:
            self._products = None

    def snapshot(self):
        """Latest catalog from the listener, or None before the first delivery or after an error."""
        with self._lock:
            cached = self._products
        return None if cached is None else list(cached)

    def products(self):
        with self._lock:
            cached = self._products
        if cached is None:
            return load_products(self._store)
        return list(cached)
