# backend/schemas/product.py
from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Dict, List, Optional


# Base configuration for ORM compatibility
class ORMBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Schema for creating a new product (prices in minor units)
class ProductCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: int = Field(ge=0)
    stock_quantity: int = Field(0, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    is_active: bool = True


class ProductOut(ORMBase):
    id: int
    name: str
    description: Optional[str] = None
    price: int
    stock_quantity: Optional[int] = None
    low_stock_threshold: Optional[int] = None
    is_active: bool


class VariantCreate(BaseModel):
    attributes: Dict[str, str]
    price_adjustment: int = 0
    stock_quantity: int = Field(0, ge=0)
    sku: Optional[str] = None
    is_active: bool = True


# Partial update; stock is changed through the inventory endpoints only
class VariantUpdate(BaseModel):
    attributes: Optional[Dict[str, str]] = None
    price_adjustment: Optional[int] = None
    sku: Optional[str] = None
    is_active: Optional[bool] = None

    # Omit a field to keep it; only sku may be cleared with null
    @field_validator("attributes", "price_adjustment", "is_active")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class VariantOut(ORMBase):
    id: int
    product_id: int
    sku: Optional[str] = None
    attributes: Dict[str, str]
    price_adjustment: int
    stock_quantity: Optional[int] = None
    is_active: bool


# Variants of a product plus the option values a shopper can pick from
class VariantListOut(BaseModel):
    product_id: int
    options: Dict[str, List[str]]
    items: List[VariantOut]
