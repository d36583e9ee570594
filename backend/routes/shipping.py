# backend/routes/shipping.py
from fastapi import APIRouter, Depends

from models.users import User
from services.shipping import ShippingAddress, ShippingFeeAdapter
from routes.deps import get_shipping_adapter
from utils.tokenJWT import get_current_user
from schemas.shipping import ShippingCalculateRequest, ShippingQuoteOut

router = APIRouter(prefix="/shipping", tags=["Shipping"])


# Always answers: provider trouble comes back as a fallback quote with a warning
@router.post("/calculate", response_model=ShippingQuoteOut)
async def calculate_shipping(
    payload: ShippingCalculateRequest,
    current_user: User = Depends(get_current_user),
    adapter: ShippingFeeAdapter = Depends(get_shipping_adapter),
):
    quote = await adapter.quote(
        ShippingAddress(payload.province, payload.district, payload.ward),
        weight=payload.weight,
        declared_value=payload.declared_value,
    )
    return ShippingQuoteOut(
        fee=quote.fee,
        estimated_days=quote.estimated_days,
        provider=quote.provider,
        fallback=quote.fallback,
        warning=quote.warning,
    )
