from pydantic import BaseModel, Field
from typing import Optional


# Destination and parcel data for a fee quote
class ShippingCalculateRequest(BaseModel):
    province: str
    district: str
    ward: Optional[str] = None
    weight: int = Field(500, gt=0)
    declared_value: int = Field(0, ge=0)


class ShippingQuoteOut(BaseModel):
    fee: int
    estimated_days: int
    provider: str
    fallback: bool = False
    warning: Optional[str] = None
