"""Request bodies, nested order read models and the notification event."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import OrderStatus, PaymentMethod

# --- Request Models ---


class OrderLineIn(BaseModel):
    product_id: int = Field(ge=1)
    quantity: int = Field(ge=1)


class OrderCreate(BaseModel):
    """Cart submitted by a customer."""

    model_config = ConfigDict(str_strip_whitespace=True)

    items: List[OrderLineIn] = Field(min_length=1, max_length=100)
    shipping_address: str = Field(min_length=10, max_length=500)
    phone: str = Field(min_length=10, max_length=20)
    payment_method: PaymentMethod
    notes: Optional[str] = Field(default=None, max_length=500)


class StatusUpdate(BaseModel):
    status: OrderStatus


class AdminNotesUpdate(BaseModel):
    # Required key; null clears the notes.
    admin_notes: Optional[str] = Field(max_length=2000)


# --- Order aggregate (read side) ---


class ProductSnapshot(BaseModel):
    id: int
    name: Optional[str] = None
    sku: Optional[str] = None
    image_path: Optional[str] = None


class OrderLine(BaseModel):
    id: int
    product_id: int
    quantity: int
    price: Decimal
    product: Optional[ProductSnapshot] = None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class OrderDetail(BaseModel):
    id: int
    user_id: int
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    status: OrderStatus
    total_amount: Decimal
    shipping_address: str
    phone: str
    payment_method: PaymentMethod
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    items: List[OrderLine] = []


class ItemPreview(BaseModel):
    product_id: int
    name: str


class OrderSummary(BaseModel):
    id: int
    user_id: int
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    status: OrderStatus
    total_amount: Decimal
    shipping_address: str
    phone: str
    payment_method: PaymentMethod
    notes: Optional[str] = None
    created_at: datetime
    items_preview: List[ItemPreview] = []
    items_count: int = 0


class ReceiptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    file_path: str
    original_filename: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    uploaded_by: int
    created_at: datetime


# --- Response Models ---


class OrderPlaced(BaseModel):
    order_id: int
    total_amount: Decimal
    status: OrderStatus


class OrderEnvelope(BaseModel):
    message: Optional[str] = None
    order: OrderDetail


class OrderList(BaseModel):
    orders: List[OrderSummary]


class ExpandedOrderList(BaseModel):
    orders: List[OrderDetail]


class ReceiptEnvelope(BaseModel):
    message: Optional[str] = None
    receipt: ReceiptOut


class ReceiptList(BaseModel):
    receipts: List[ReceiptOut]


class OrderCounts(BaseModel):
    current: int
    previous: int


class Message(BaseModel):
    message: str


class Pagination(BaseModel):
    page: int
    limit: int
    total: int


class OrderPage(BaseModel):
    orders: List[OrderSummary]
    pagination: Pagination


class MonthlyFigure(BaseModel):
    current: Decimal
    previous: Decimal


# --- Notifications ---


class NotificationEvent(BaseModel):
    """Order snapshot handed to the notification channels.

    ``milestone`` is set on the status change that first lands an order on
    ``confirmed``.
    """

    kind: Literal["created", "status_changed"]
    order: OrderDetail
    old_status: Optional[OrderStatus] = None
    new_status: Optional[OrderStatus] = None
    milestone: bool = False

    @property
    def routing_key(self) -> str:
        return f"order.{self.kind}"
