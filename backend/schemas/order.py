from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime

from models.order import OrderStatus, PaymentMethod, PaymentStatus


# Output schema for an individual order line item (snapshot values)
class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    variant_id: Optional[int] = None
    product_name: str
    variant_label: Optional[str] = None
    qty: int
    unit_price: int
    line_total: int


# Destination used to quote shipping when no fee is given
class ShippingQuoteRequest(BaseModel):
    province: str
    district: str
    ward: Optional[str] = None
    weight: int = Field(500, gt=0)


# Input schema for placing an order from the caller's open cart
class OrderCreatePayload(BaseModel):
    shipping_address: str
    payment_method: PaymentMethod = PaymentMethod.COD
    shipping_fee: Optional[int] = None
    notes: Optional[str] = None
    shipping_quote: Optional[ShippingQuoteRequest] = None


# Output schema representing the full order details
class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    status: OrderStatus
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    subtotal: int
    shipping_fee: int
    total: int
    shipping_address: str
    notes: Optional[str] = None
    payment_url: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut]


# Response for POST /orders
class OrderPlacedResponse(BaseModel):
    order: OrderResponse
    payment_url: Optional[str] = None
    warnings: List[str] = []
    replayed: bool = False


# Schema for paginated order lists
class OrdersPage(BaseModel):
    items: List[OrderResponse]
    total: int
    page: int
    page_size: int


# Schema for updating order status (admin)
class OrderStatusPatch(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class OrderCancelPayload(BaseModel):
    reason: Optional[str] = None


class OrderAdvancePayload(BaseModel):
    notes: Optional[str] = None


class OrderStatusLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    old_status: Optional[str] = None
    new_status: str
    actor_id: Optional[int] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None
