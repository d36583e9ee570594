# backend/schemas/stock.py
from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import List, Optional

from models.stock import MovementType


# Schema for returning a stock movement (ledger row)
class StockMovementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    variant_id: Optional[int] = None
    type: MovementType
    quantity: int
    previous_stock: int
    new_stock: int
    reason: Optional[str] = None
    actor_id: Optional[int] = None
    order_id: Optional[int] = None
    created_at: Optional[datetime] = None


# Paginated response for stock movement history
class StockMovementPage(BaseModel):
    items: List[StockMovementResponse]
    total: int
    page: int
    page_size: int


# Goods received: adds `quantity` to current stock
class StockInCreate(BaseModel):
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    quantity: int = Field(gt=0)
    reason: Optional[str] = None


# Stock count correction: sets stock to an absolute value
class StockAdjustmentCreate(BaseModel):
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    new_quantity: int = Field(ge=0)
    reason: str = Field(min_length=1)


# Adjustment result; movement is None when nothing changed
class StockAdjustmentResponse(BaseModel):
    movement: Optional[StockMovementResponse] = None
    stock_quantity: int


class StockAlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    variant_id: Optional[int] = None
    threshold: int
    current_stock: int
    is_notified: bool
    notified_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
