from pydantic import BaseModel, Field
from typing import Dict, List, Optional

# Request schema for adding an item to the cart; `attributes` selects the variant
class CartAddItem(BaseModel):
    product_id: int
    qty: int = Field(gt=0)
    attributes: Dict[str, str] = {}

# Response schema for a single cart line item, priced from the live catalogue
class CartItemOut(BaseModel):
    id: int
    product_id: int
    variant_id: Optional[int] = None
    name: str
    variant_label: Optional[str] = None
    qty: int
    unit_price: int
    line_total: int

# Response schema for the entire cart summary
class CartOut(BaseModel):
    items: List[CartItemOut]
    subtotal: int
    warnings: List[str] = []
