from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from models.order import PaymentMethod, PaymentStatus


class PaymentCreateRequest(BaseModel):
    order_id: int


# Response schema for payment initiation result
class PaymentInitiationResponse(BaseModel):
    order_id: int
    redirect_url: Optional[str] = None
    warning: Optional[str] = None


class PaymentStatusOut(BaseModel):
    order_id: int
    order_number: str
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None


# VNPay expects exactly this shape back from the IPN endpoint
class IPNResponse(BaseModel):
    RspCode: str
    Message: str
