# backend/utils/ghn_client.py
import httpx
import logging
from datetime import datetime, timezone
from typing import Optional

from config import settings
from services.errors import GatewayError, GatewayNotConfigured

logger = logging.getLogger(__name__)

# GHN "standard" delivery service type
STANDARD_SERVICE_TYPE = 2


class GHNClient:
    def __init__(
        self,
        api_url: Optional[str] = None,
        token: Optional[str] = None,
        shop_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or settings.GHN_API_URL).rstrip("/")
        self.token = settings.GHN_TOKEN if token is None else token
        self.shop_id = settings.GHN_SHOP_ID if shop_id is None else shop_id
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self.from_district_id = settings.GHN_FROM_DISTRICT_ID
        self.from_ward_code = settings.GHN_FROM_WARD_CODE
        # Tests hand in an httpx.MockTransport
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.token and self.shop_id)

    async def _post(self, path: str, body: dict) -> dict:
        if not self.configured:
            raise GatewayNotConfigured("GHN token/shop id are not set")
        headers = {"Token": self.token, "ShopId": str(self.shop_id), "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(f"{self.api_url}{path}", json=body, headers=headers)
                response.raise_for_status()
            except (httpx.RequestError, httpx.HTTPStatusError) as e:
                logger.error(f"GHN request {path} failed: {e}")
                raise
        payload = response.json()
        if payload.get("code") != 200 or "data" not in payload:
            raise GatewayError(f"GHN {path} returned {payload.get('code')}: {payload.get('message')}")
        return payload["data"]

    async def calculate_fee(self, to_district_id: int, to_ward_code: str, weight: int, insurance_value: int) -> int:
        data = await self._post("/v2/shipping-order/fee", {
            "service_type_id": STANDARD_SERVICE_TYPE,
            "from_district_id": self.from_district_id,
            "from_ward_code": self.from_ward_code,
            "to_district_id": to_district_id,
            "to_ward_code": to_ward_code,
            "weight": weight,
            "insurance_value": insurance_value,
        })
        return int(data["total"])

    async def estimate_days(self, to_district_id: int, to_ward_code: str) -> int:
        data = await self._post("/v2/shipping-order/leadtime", {
            "service_type_id": STANDARD_SERVICE_TYPE,
            "from_district_id": self.from_district_id,
            "from_ward_code": self.from_ward_code,
            "to_district_id": to_district_id,
            "to_ward_code": to_ward_code,
        })
        # `leadtime` is the expected delivery moment as a unix timestamp
        delivered_at = datetime.fromtimestamp(int(data["leadtime"]), tz=timezone.utc)
        days = (delivered_at - datetime.now(timezone.utc)).days + 1
        return max(days, 1)


ghn_client = GHNClient()
