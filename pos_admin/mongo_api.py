from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from . import __version__, config
from .audit_log import load_audit_log
from .blob_store import BlobStore
from .inventory import (
    CatalogWatcher,
    add_product,
    delete_product,
    load_products,
    purchase_list,
    search_products,
    stock_status,
    suggest_products,
    update_product,
)
from .reports import (
    filter_sales,
    heat_color,
    hourly_report,
    payment_summary,
    product_sales,
    sales_chart,
    sales_comparison,
    search_sales,
    totals,
    valid_sales,
)
from .sales import FAILED, REJECTED, last_customer_name, load_sales, record_sale
from .store import DocumentStore, get_client, get_store
from .whatsapp import WhatsAppClient, WhatsAppError


APP_TITLE = "Retail POS Admin API (MongoDB)"

logger = logging.getLogger(__name__)

CHART_PERIODS = {"weekly": "week", "monthly": "month", "yearly": "year", "customDate": "customDate"}


class ProductCreateRequest(BaseModel):
    name: str
    price: float
    quantity: float
    average_quantity: float


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[float] = None
    average_quantity: Optional[float] = None


class SaleLine(BaseModel):
    name: str = ""
    price: float = 0.0
    quantity: float = 1


class SaleCreateRequest(BaseModel):
    customer_name: str
    customer_phone: str
    products: List[SaleLine]
    discount: float = 0.0
    payment_method: str = "Cash"


def create_app(
    store: Optional[DocumentStore] = None,
    blobs: Optional[BlobStore] = None,
    gateway: Optional[WhatsAppClient] = None,
) -> FastAPI:
    app = FastAPI(title=APP_TITLE, version=__version__)
    app.state.store = store
    app.state.blobs = blobs
    app.state.gateway = gateway
    app.state.catalog = None

    def _store() -> DocumentStore:
        if app.state.store is None:
            try:
                app.state.store = get_store()
            except RuntimeError as exc:
                raise HTTPException(status_code=500, detail=str(exc)) from exc
        return app.state.store

    def _blobs() -> BlobStore:
        if app.state.blobs is None:
            try:
                app.state.blobs = BlobStore.for_database(get_client()[config.db_name()])
            except RuntimeError as exc:
                raise HTTPException(status_code=500, detail=str(exc)) from exc
        return app.state.blobs

    def _gateway() -> WhatsAppClient:
        if app.state.gateway is None:
            app.state.gateway = WhatsAppClient()
        return app.state.gateway

    def _products() -> List[Dict[str, Any]]:
        if app.state.catalog is not None:
            return app.state.catalog.products()
        return load_products(_store())

    def _catalog_snapshot() -> Optional[List[Dict[str, Any]]]:
        # No reads here: record_sale loads the catalog itself after validation.
        if app.state.catalog is None:
            return None
        return app.state.catalog.snapshot()

    def _sales(
        period: str = "all",
        start: Optional[date] = None,
        end: Optional[date] = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
        search: str = "",
    ) -> List[Dict[str, Any]]:
        rows = valid_sales(load_sales(_store()))
        try:
            rows = filter_sales(rows, period=period, start=start, end=end, month=month, year=year)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return search_sales(rows, search)

    @app.on_event("startup")
    def startup() -> None:
        db = _store()
        try:
            db.collection("products").create_index([("name", ASCENDING)])
            db.collection("sales").create_index([("customerPhone", ASCENDING)])
            db.collection("sales").create_index([("timestamp", ASCENDING)])
            db.collection("audit_log").create_index([("timestamp", ASCENDING)])
        except PyMongoError as exc:
            logger.warning("Index creation failed: %s", exc)
        app.state.catalog = CatalogWatcher(db).start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        if app.state.catalog is not None:
            app.state.catalog.stop()
            app.state.catalog = None

    @app.get("/")
    def root() -> Dict[str, str]:
        return {"service": "pos-admin-api-mongo", "status": "ok", "docs": "/docs"}

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "healthy"}

    # ================= CATALOG =================
    @app.get("/products")
    def products(search: str = "") -> Dict[str, Any]:
        rows = search_products(_products(), search)
        return {"count": len(rows), "products": rows}

    @app.get("/products/suggest")
    def products_suggest(prefix: str = "") -> Dict[str, Any]:
        rows = suggest_products(_products(), prefix)
        return {"count": len(rows), "suggestions": rows}

    @app.post("/products")
    def products_create(payload: ProductCreateRequest, x_user_name: Optional[str] = Header(default=None)) -> Dict[str, Any]:
        try:
            row = add_product(
                _store(),
                name=payload.name,
                price=payload.price,
                quantity=payload.quantity,
                average_quantity=payload.average_quantity,
                user=x_user_name or "admin",
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, "product": row}

    @app.patch("/products/{product_id}")
    def products_update(
        product_id: str,
        payload: ProductUpdateRequest,
        x_user_name: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        changes = {
            "name": payload.name,
            "price": payload.price,
            "quantity": payload.quantity,
            "averageQuantity": payload.average_quantity,
        }
        try:
            row = update_product(_store(), product_id, changes, user=x_user_name or "admin")
        except KeyError:
            raise HTTPException(status_code=404, detail="Product not found.")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, "product": row}

    @app.delete("/products/{product_id}")
    def products_delete(product_id: str, x_user_name: Optional[str] = Header(default=None)) -> Dict[str, Any]:
        try:
            delete_product(_store(), product_id, user=x_user_name or "admin")
        except KeyError:
            raise HTTPException(status_code=404, detail="Product not found.")
        return {"ok": True}

    @app.get("/inventory/status")
    def inventory_status(search: str = "") -> Dict[str, Any]:
        rows = stock_status(search_products(_products(), search))
        return {"count": len(rows), "items": rows}

    @app.get("/inventory/purchase-list")
    def inventory_purchase_list(search: str = "") -> Dict[str, Any]:
        rows = purchase_list(search_products(_products(), search))
        return {"count": len(rows), "items": rows}

    # ================= SALES =================
    @app.post("/sales")
    def sales_create(payload: SaleCreateRequest, x_user_name: Optional[str] = Header(default=None)):
        form = {
            "customer_name": payload.customer_name,
            "customer_phone": payload.customer_phone,
            "products": [line.model_dump() for line in payload.products],
            "discount": payload.discount,
            "payment_method": payload.payment_method,
        }
        outcome = record_sale(
            _store(),
            form,
            blobs=_blobs(),
            gateway=_gateway(),
            products=_catalog_snapshot(),
            user=x_user_name or "admin",
        )
        if outcome.status == REJECTED:
            raise HTTPException(status_code=400, detail=outcome.message)
        if outcome.status == FAILED:
            return JSONResponse(status_code=502, content=outcome.to_dict())
        return outcome.to_dict()

    @app.get("/sales")
    def sales(
        period: str = "all",
        start: Optional[date] = None,
        end: Optional[date] = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
        search: str = "",
        limit: int = 1000,
    ) -> Dict[str, Any]:
        rows = _sales(period, start, end, month, year, search)
        return {"count": len(rows), **totals(rows), "rows": rows[: max(1, min(limit, 5000))]}

    @app.get("/sales/customer")
    def sales_customer(phone: str) -> Dict[str, Any]:
        return {"phone": phone, "customer_name": last_customer_name(_store(), phone)}

    # ================= REPORTS =================
    @app.get("/reports/summary")
    def reports_summary() -> Dict[str, Any]:
        rows = valid_sales(load_sales(_store()))
        return {**totals(rows), **payment_summary(rows)}

    @app.get("/reports/products")
    def reports_products(
        period: str = "all",
        start: Optional[date] = None,
        end: Optional[date] = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
        search: str = "",
    ) -> Dict[str, Any]:
        return product_sales(_sales(period, start, end, month, year, search))

    @app.get("/reports/chart")
    def reports_chart(mode: str = "weekly", start: Optional[date] = None, end: Optional[date] = None) -> Dict[str, Any]:
        if mode not in CHART_PERIODS:
            raise HTTPException(status_code=400, detail=f"Unknown chart mode: {mode}")
        rows = _sales(CHART_PERIODS[mode], start, end)
        return {**totals(rows), "points": sales_chart(rows, mode)}

    @app.get("/reports/comparison")
    def reports_comparison(period: str = "month") -> Dict[str, Any]:
        try:
            rows = sales_comparison(valid_sales(load_sales(_store())), period)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"period": period, "rows": rows}

    @app.get("/reports/hourly")
    def reports_hourly(mode: str = "day", selected: str = "") -> Dict[str, Any]:
        try:
            rows = hourly_report(valid_sales(load_sales(_store())), mode=mode, selected=selected or None)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"rows": [{**r, "color": heat_color(r["totalSales"])} for r in rows]}

    # ================= INVOICES & WHATSAPP =================
    @app.get("/invoices/{filename}")
    def invoice_download(filename: str) -> Response:
        found = _blobs().get_bytes(filename)
        if found is None:
            raise HTTPException(status_code=404, detail="Invoice not found.")
        data, content_type = found
        return Response(
            content=data,
            media_type=content_type,
            headers={"Content-Disposition": f'inline; filename="{filename}"'},
        )

    @app.get("/whatsapp/status")
    def whatsapp_status() -> Dict[str, Any]:
        token = _store().get(config.whatsapp_token_path())
        if not token:
            raise HTTPException(status_code=404, detail="Token not found in the database.")
        try:
            return _gateway().session_state(str(token))
        except WhatsAppError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.get("/audit-log")
    def audit_log(limit: int = 200) -> Dict[str, Any]:
        rows = load_audit_log(_store(), limit=max(1, min(limit, 1000)))
        return {"count": len(rows), "rows": rows}

    return app


app = create_app()
