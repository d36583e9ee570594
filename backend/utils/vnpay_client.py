# backend/utils/vnpay_client.py
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional
from urllib.parse import quote_plus, urlencode

from config import settings
from services.errors import GatewayNotConfigured

logger = logging.getLogger(__name__)

# VNPay timestamps are Vietnam local time
VN_TZ = timezone(timedelta(hours=7))

SUCCESS_CODE = "00"


class VNPayClient:
    def __init__(
        self,
        tmn_code: Optional[str] = None,
        hash_secret: Optional[str] = None,
        payment_url: Optional[str] = None,
        return_url: Optional[str] = None,
    ):
        self.tmn_code = settings.VNPAY_TMN_CODE if tmn_code is None else tmn_code
        self.hash_secret = settings.VNPAY_HASH_SECRET if hash_secret is None else hash_secret
        self.payment_url = payment_url or settings.VNPAY_PAYMENT_URL
        self.return_url = return_url or settings.VNPAY_RETURN_URL

    @property
    def configured(self) -> bool:
        return bool(self.tmn_code and self.hash_secret and self.payment_url)

    def _sign(self, params: Mapping[str, str]) -> str:
        # VNPay signs the sorted, form-encoded query string with HMAC-SHA512
        query = urlencode(sorted(params.items()), quote_via=quote_plus)
        return hmac.new(self.hash_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha512).hexdigest()

    def build_payment_url(
        self,
        txn_ref: str,
        amount: int,
        order_info: str,
        client_ip: str,
        now: Optional[datetime] = None,
    ) -> str:
        if not self.configured:
            raise GatewayNotConfigured("VNPay credentials are not set")
        now = (now or datetime.now(VN_TZ)).astimezone(VN_TZ)
        params: Dict[str, str] = {
            "vnp_Version": "2.1.0",
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            # Amount is sent in hundredths of a dong
            "vnp_Amount": str(amount * 100),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": self.return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": now.strftime("%Y%m%d%H%M%S"),
            "vnp_ExpireDate": (now + timedelta(minutes=15)).strftime("%Y%m%d%H%M%S"),
        }
        signature = self._sign(params)
        query = urlencode(sorted(params.items()), quote_via=quote_plus)
        return f"{self.payment_url}?{query}&vnp_SecureHash={signature}"

    def verify(self, params: Mapping[str, str]) -> bool:
        """Check the signature VNPay attaches to return/IPN callbacks."""
        if not self.configured:
            return False
        received = params.get("vnp_SecureHash")
        if not received:
            return False
        signed = {
            k: v for k, v in params.items()
            if k.startswith("vnp_") and k not in ("vnp_SecureHash", "vnp_SecureHashType")
        }
        expected = self._sign(signed)
        ok = hmac.compare_digest(expected.lower(), received.lower())
        if not ok:
            logger.warning("VNPay signature mismatch for txn %s", params.get("vnp_TxnRef"))
        return ok


vnpay_client = VNPayClient()
