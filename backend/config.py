# backend/config.py
from pydantic_settings import BaseSettings
from typing import ClassVar, Optional
from pathlib import Path

# Resolve absolute path to the .env file for reliable loading
env_path = Path(__file__).parent.parent / ".env"

class Settings(BaseSettings):
    SECRET_KEY: str = "dev-secret-change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    DATABASE_URL: str = "sqlite:///./storefront.db"
    LOG_LEVEL: str = "INFO"

    FRONTEND_URL: str = "http://localhost:5173"

    # GHN shipping fee API. An empty token means the provider is not configured
    # and every quote falls back to the defaults below.
    GHN_API_URL: str = "https://online-gateway.ghn.vn/shiip/public-api"
    GHN_TOKEN: str = ""
    GHN_SHOP_ID: str = ""
    GHN_FROM_DISTRICT_ID: int = 1442
    GHN_FROM_WARD_CODE: str = "20308"
    SHIPPING_DEFAULT_FEE: int = 30000
    SHIPPING_DEFAULT_DAYS: int = 3

    # VNPay redirect gateway
    VNPAY_PAYMENT_URL: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    VNPAY_TMN_CODE: str = ""
    VNPAY_HASH_SECRET: str = ""
    VNPAY_RETURN_URL: str = "http://localhost:5173/payment/return"

    # Timeout applied to each shipping/payment gateway attempt (one retry)
    GATEWAY_TIMEOUT_SECONDS: float = 5.0

    LOW_STOCK_THRESHOLD: int = 10
    STOCK_CAS_MAX_ATTEMPTS: int = 5

    # Optional HTTP endpoint receiving order/stock events as JSON
    NOTIFY_WEBHOOK_URL: Optional[str] = None

    class Config:
        env_file: ClassVar[str] = str(env_path)
        extra: ClassVar[str] = "ignore"

settings = Settings()
