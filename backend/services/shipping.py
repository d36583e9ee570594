# backend/services/shipping.py
import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from config import settings
from services.errors import GatewayError
from utils.retry import acall_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShippingAddress:
    province: Union[str, int]
    district: Union[str, int]
    ward: Optional[Union[str, int]] = None


@dataclass(frozen=True)
class ShippingQuote:
    fee: int
    estimated_days: int
    provider: str
    fallback: bool = False
    warning: Optional[str] = None


class ShippingFeeAdapter:
    """Fee quotes from the shipping provider, with a fixed fallback.

    A quote never fails: provider errors, timeouts, bad addresses and a missing
    configuration all produce the default fee and estimate, flagged with
    ``fallback=True`` and a warning for the caller to show.
    """

    def __init__(
        self,
        client,
        *,
        default_fee: Optional[int] = None,
        default_days: Optional[int] = None,
        attempts: int = 2,
    ):
        self.client = client
        self.default_fee = settings.SHIPPING_DEFAULT_FEE if default_fee is None else default_fee
        self.default_days = settings.SHIPPING_DEFAULT_DAYS if default_days is None else default_days
        self.attempts = attempts

    def fallback(self, reason: str) -> ShippingQuote:
        return ShippingQuote(
            fee=self.default_fee,
            estimated_days=self.default_days,
            provider="default",
            fallback=True,
            warning=f"Shipping fee estimated at the standard rate ({reason})",
        )

    async def quote(self, address: ShippingAddress, weight: int = 500, declared_value: int = 0) -> ShippingQuote:
        if not getattr(self.client, "configured", True):
            return self.fallback("shipping provider not configured")
        try:
            district_id = int(address.district)
        except (TypeError, ValueError):
            return self.fallback("address could not be matched to a delivery district")
        ward_code = "" if address.ward is None else str(address.ward)
        weight = max(int(weight or 0), 1)

        try:
            fee = await acall_with_retry(
                lambda: self.client.calculate_fee(district_id, ward_code, weight, max(int(declared_value or 0), 0)),
                attempts=self.attempts,
                retry_on=(GatewayError, httpx.HTTPError),
                label="shipping fee quote",
            )
        except (GatewayError, httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning("Shipping quote failed, using default fee: %s", e)
            return self.fallback("shipping provider unavailable")

        if fee < 0:
            logger.warning("Shipping provider returned negative fee %s", fee)
            return self.fallback("shipping provider returned an invalid fee")

        try:
            days = await self.client.estimate_days(district_id, ward_code)
        except (GatewayError, httpx.HTTPError, KeyError, ValueError) as e:
            logger.info("Lead time lookup failed, using default estimate: %s", e)
            days = self.default_days

        return ShippingQuote(fee=fee, estimated_days=days, provider="ghn")
