from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field

from orderflow.config import settings
from orderflow.models import BIGINT_MAX, OrderStatus, PaymentStatus


class OrderItemCreate(BaseModel):
    product_id: Optional[int] = None
    name: str
    price: int = Field(le=BIGINT_MAX)
    qty: int = Field(le=BIGINT_MAX)
    notes: Optional[str] = None


class OrderCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "customer_id": 7,
                "items": [
                    {"product_id": 11, "name": "Kemeja Batik", "price": 3500, "qty": 5},
                    {"name": "Express ironing", "price": 28000, "qty": 1},
                ],
                "discount": 0,
                "tax": 0,
                "payment_method": "cash",
                "metadata": {"pickup_date": "2026-01-15"},
            }
        }
    }
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    items: list[OrderItemCreate]
    discount: int = Field(default=0, le=BIGINT_MAX)
    tax: int = Field(default=0, le=BIGINT_MAX)
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[dict] = None


class OrderUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"discount": 500, "notes": "gift wrap"}}}
    discount: Optional[int] = Field(default=None, le=BIGINT_MAX)
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[dict] = None


class OrderStatusUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"status": "COMPLETED"}}}
    status: OrderStatus


class PaymentStatusUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"payment_status": "PAID", "paid_amount": 45500}}}
    payment_status: PaymentStatus
    paid_amount: Optional[int] = Field(default=None, le=BIGINT_MAX)


class StockAdjust(BaseModel):
    model_config = {"json_schema_extra": {"example": {"quantity": -2, "reason": "damaged"}}}
    quantity: int = Field(ge=-BIGINT_MAX, le=BIGINT_MAX)
    reason: Optional[str] = None


class OrderQuery(BaseModel):
    search: Optional[str] = None
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    customer_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    sort_by: Literal["order_number", "total", "created_at"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=settings.default_page_size, ge=1, le=settings.max_page_size)
