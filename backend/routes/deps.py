# backend/routes/deps.py
"""Providers for collaborators the routes need; tests swap them via dependency_overrides."""
from services.notifications import NotificationEmitter, default_emitter
from services.payment import PaymentDispatcher, VNPayGateway
from services.shipping import ShippingFeeAdapter
from utils.ghn_client import ghn_client
from utils.vnpay_client import VNPayClient, vnpay_client

_emitter = default_emitter()


def get_emitter() -> NotificationEmitter:
    return _emitter


def get_vnpay_client() -> VNPayClient:
    return vnpay_client


def get_payment_dispatcher() -> PaymentDispatcher:
    gateway = VNPayGateway(vnpay_client) if vnpay_client.configured else None
    return PaymentDispatcher(gateway)


def get_shipping_adapter() -> ShippingFeeAdapter:
    return ShippingFeeAdapter(ghn_client)
