from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Literal, Optional
from uuid import uuid4

import structlog
from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from orderflow import orders
from orderflow.config import settings
from orderflow.db import SessionLocal
from orderflow.errors import Conflict, InvalidInput, OrderingError, ServiceUnavailable
from orderflow.inventory import adjust_stock, list_low_stock
from orderflow.logging import add_context, clear_context, configure_logging, get_logger
from orderflow.models import Order, OrderStatus, PaymentStatus
from orderflow.schemas import (
    OrderCreate,
    OrderQuery,
    OrderStatusUpdate,
    OrderUpdate,
    PaymentStatusUpdate,
    StockAdjust,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield


app = FastAPI(title="Orderflow", lifespan=lifespan)


def _meta(warnings: Optional[list[str]] = None) -> dict:
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _page_meta(page: int, limit: int, total: int) -> dict:
    meta = _meta()
    meta["page"] = {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": orders.total_pages(total, limit),
    }
    return meta


def _error_body(code: str, message: str, details: Optional[dict] = None) -> dict:
    return {
        "error": {"code": code, "message": message, "details": details or {}},
        "meta": _meta(),
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or f"req_{uuid4().hex}"
    clear_context()
    add_context(request_id=request_id)
    try:
        response = await call_next(request)
    finally:
        clear_context()
    response.headers["x-request-id"] = request_id
    return response


@app.exception_handler(OrderingError)
def handle_ordering_error(request: Request, exc: OrderingError) -> JSONResponse:
    logger.info(
        "request rejected",
        path=request.url.path,
        code=exc.code,
        message=exc.message,
        **exc.details,
    )
    return JSONResponse(
        status_code=exc.http_status,
        content=_error_body(exc.code, exc.message, exc.details),
    )


@app.exception_handler(RequestValidationError)
def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = InvalidInput("request validation failed")
    return JSONResponse(
        status_code=error.http_status,
        content=_error_body(error.code, error.message, {"errors": jsonable_encoder(exc.errors())}),
    )


@app.exception_handler(IntegrityError)
def handle_integrity_error(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("integrity violation", path=request.url.path, error=str(exc.orig))
    error = Conflict("request conflicts with stored data")
    return JSONResponse(
        status_code=error.http_status,
        content=_error_body(error.code, error.message),
    )


@app.exception_handler(DataError)
def handle_data_error(request: Request, exc: DataError) -> JSONResponse:
    logger.warning("value rejected by storage", path=request.url.path, error=str(exc.orig))
    error = InvalidInput("a value is out of range for storage")
    return JSONResponse(
        status_code=error.http_status,
        content=_error_body(error.code, error.message),
    )


@app.exception_handler(DBAPIError)
def handle_storage_error(request: Request, exc: DBAPIError) -> JSONResponse:
    logger.error("storage unavailable", path=request.url.path, error=str(exc.orig))
    error = ServiceUnavailable("storage is unavailable, try again later")
    return JSONResponse(
        status_code=error.http_status,
        content=_error_body(error.code, error.message),
    )


def _item_data(item) -> dict:
    return {
        "order_item_id": item.id,
        "product_id": item.product_id,
        "name": item.name,
        "price": item.price,
        "qty": item.qty,
        "subtotal": item.subtotal,
        "notes": item.notes,
    }


def _order_data(order: Order, include_items: bool = True) -> dict:
    data: dict[str, Any] = {
        "order_id": order.id,
        "tenant_id": order.tenant_id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "subtotal": order.subtotal,
        "discount": order.discount,
        "tax": order.tax,
        "total": order.total,
        "payment_method": order.payment_method,
        "status": order.status,
        "payment_status": order.payment_status,
        "paid_amount": order.paid_amount,
        "notes": order.notes,
        "metadata": order.metadata_json or {},
        "completed_at": order.completed_at.isoformat() if order.completed_at else None,
        "created_at": order.created_at.isoformat(),
        "item_count": len(order.items),
    }
    if include_items:
        data["items"] = [_item_data(item) for item in order.items]
    return data


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check(db: Session = Depends(get_db)) -> dict:
    db.execute(text("SELECT 1"))
    return {"status": "healthy"}


@app.post("/api/v1/tenants/{tenant_id}/orders", tags=["Orders"])
def create_order(tenant_id: int, payload: OrderCreate, db: Session = Depends(get_db)) -> dict:
    order = orders.create_order(db, tenant_id, payload)
    return {"data": _order_data(order), "meta": _meta()}


@app.get("/api/v1/tenants/{tenant_id}/orders", tags=["Orders"])
def list_orders(
    tenant_id: int,
    search: Optional[str] = Query(default=None),
    status: Optional[OrderStatus] = Query(default=None),
    payment_status: Optional[PaymentStatus] = Query(default=None),
    customer_id: Optional[int] = Query(default=None),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    sort_by: Literal["order_number", "total", "created_at"] = Query(default="created_at"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
    db: Session = Depends(get_db),
) -> dict:
    query = OrderQuery(
        search=search,
        status=status,
        payment_status=payment_status,
        customer_id=customer_id,
        date_from=date_from,
        date_to=date_to,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    rows, total = orders.list_orders(db, tenant_id, query)
    data = [_order_data(order, include_items=False) for order in rows]
    return {"data": data, "meta": _page_meta(page, limit, total)}


@app.get("/api/v1/tenants/{tenant_id}/orders/{order_id}", tags=["Orders"])
def get_order(tenant_id: int, order_id: int, db: Session = Depends(get_db)) -> dict:
    order = orders.get_order(db, tenant_id, order_id)
    return {"data": _order_data(order), "meta": _meta()}


@app.patch("/api/v1/tenants/{tenant_id}/orders/{order_id}", tags=["Orders"])
def update_order(
    tenant_id: int, order_id: int, payload: OrderUpdate, db: Session = Depends(get_db)
) -> dict:
    order = orders.update_order(db, tenant_id, order_id, payload)
    return {"data": _order_data(order), "meta": _meta()}


@app.patch("/api/v1/tenants/{tenant_id}/orders/{order_id}/status", tags=["Orders"])
def update_order_status(
    tenant_id: int, order_id: int, payload: OrderStatusUpdate, db: Session = Depends(get_db)
) -> dict:
    order = orders.transition_status(db, tenant_id, order_id, payload.status)
    return {"data": _order_data(order), "meta": _meta()}


@app.patch("/api/v1/tenants/{tenant_id}/orders/{order_id}/payment", tags=["Orders"])
def update_payment_status(
    tenant_id: int, order_id: int, payload: PaymentStatusUpdate, db: Session = Depends(get_db)
) -> dict:
    order = orders.transition_payment(
        db, tenant_id, order_id, payload.payment_status, payload.paid_amount
    )
    return {"data": _order_data(order), "meta": _meta()}


@app.delete("/api/v1/tenants/{tenant_id}/orders/{order_id}", tags=["Orders"])
def delete_order(tenant_id: int, order_id: int, db: Session = Depends(get_db)) -> dict:
    orders.delete_order(db, tenant_id, order_id)
    return {"data": {"order_id": order_id, "deleted": True}, "meta": _meta()}


@app.post("/api/v1/tenants/{tenant_id}/products/{product_id}/stock:adjust", tags=["Inventory"])
def adjust_product_stock(
    tenant_id: int, product_id: int, payload: StockAdjust, db: Session = Depends(get_db)
) -> dict:
    try:
        adjustment = adjust_stock(db, tenant_id, product_id, payload.quantity, payload.reason)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return {
        "data": {
            "product_id": adjustment.product_id,
            "previous_stock": adjustment.previous_stock,
            "adjustment": adjustment.delta,
            "stock": adjustment.new_stock,
            "reason": adjustment.reason,
        },
        "meta": _meta(),
    }


@app.get("/api/v1/tenants/{tenant_id}/products:lowStock", tags=["Inventory"])
def low_stock_products(tenant_id: int, db: Session = Depends(get_db)) -> dict:
    products = list_low_stock(db, tenant_id)
    data = [
        {
            "product_id": product.id,
            "name": product.name,
            "sku": product.sku,
            "stock": product.stock,
            "min_stock": product.min_stock,
        }
        for product in products
    ]
    return {"data": data, "meta": _meta()}
