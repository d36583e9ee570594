# backend/services/payment.py
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol

import httpx
from sqlalchemy import update
from sqlalchemy.orm import Session

from models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from services.errors import GatewayError, OrderNotFound
from services.notifications import NotificationEmitter, PaymentConfirmed
from utils.retry import call_with_retry

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def create_payment_url(self, order: Order, client_ip: str) -> Optional[str]:
        ...


class VNPayGateway:
    """Adapts :class:`utils.vnpay_client.VNPayClient` to the dispatcher."""

    def __init__(self, client):
        self.client = client

    def create_payment_url(self, order: Order, client_ip: str) -> Optional[str]:
        return self.client.build_payment_url(
            txn_ref=order.order_number,
            amount=order.total,
            order_info=f"Thanh toan don hang {order.order_number}",
            client_ip=client_ip,
        )


@dataclass
class DispatchResult:
    payment_url: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class PaymentDispatcher:
    """Chooses the COD or online flow for a freshly committed order.

    The order already exists when this runs. Nothing here can undo it: an
    unreachable or unconfigured gateway downgrades the order to COD-equivalent
    (payment still pending) and reports a warning.
    """

    def __init__(self, gateway: Optional[PaymentGateway], attempts: int = 2):
        self.gateway = gateway
        self.attempts = attempts

    def dispatch(self, db: Session, order: Order, client_ip: str = "") -> DispatchResult:
        if order.payment_method == PaymentMethod.COD:
            return DispatchResult()

        if self.gateway is None:
            return self._degraded(order, "Online payment is not available; the order will be paid on delivery")

        try:
            url = call_with_retry(
                lambda: self.gateway.create_payment_url(order, client_ip),
                attempts=self.attempts,
                retry_on=(GatewayError, httpx.HTTPError),
                label=f"payment url for {order.order_number}",
            )
        except (GatewayError, httpx.HTTPError) as e:
            logger.warning("Payment gateway unavailable for order %s: %s", order.order_number, e)
            return self._degraded(order, "Online payment is temporarily unavailable; the order will be paid on delivery")

        if not url:
            return self._degraded(order, "Payment gateway returned no redirect URL; the order will be paid on delivery")

        order.payment_url = url
        db.commit()
        return DispatchResult(payment_url=url)

    def _degraded(self, order: Order, message: str) -> DispatchResult:
        logger.info("Order %s continues as COD-equivalent: %s", order.order_number, message)
        return DispatchResult(warnings=[message])


@dataclass
class ConfirmationResult:
    order: Order
    applied: bool
    # paid | failed | duplicate | order_cancelled
    outcome: str = "paid"


def _find(db: Session, order_id: Optional[int], order_number: Optional[str]) -> Order:
    q = db.query(Order)
    if order_id is not None:
        order = q.filter(Order.id == order_id).first()
    else:
        order = q.filter(Order.order_number == order_number).first()
    if order is None:
        raise OrderNotFound(order_id=order_id, order_number=order_number)
    return order


def confirm_payment(
    db: Session,
    *,
    order_id: Optional[int] = None,
    order_number: Optional[str] = None,
    reference: Optional[str] = None,
    emitter: Optional[NotificationEmitter] = None,
) -> ConfirmationResult:
    """Mark an order paid exactly once.

    The flip is a conditional UPDATE, so duplicate or concurrent confirmations
    for the same order apply their side effects a single time; later calls
    return ``applied=False`` and change nothing. A cancelled order is never
    marked paid: its stock is already back on the shelf, so the money has to
    be refunded by hand (``outcome == "order_cancelled"``).
    """
    order = _find(db, order_id, order_number)
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status != OrderStatus.CANCELLED,
            Order.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.FAILED]),
        )
        .values(payment_status=PaymentStatus.PAID, paid_at=now, payment_reference=reference, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    applied = result.rowcount == 1
    db.commit()
    db.refresh(order)

    if not applied:
        if order.status == OrderStatus.CANCELLED and order.payment_status != PaymentStatus.PAID:
            logger.warning("Payment %s arrived for cancelled order %s; refund it manually",
                           reference, order.order_number)
            return ConfirmationResult(order, False, "order_cancelled")
        logger.info("Duplicate payment confirmation for %s ignored (status=%s)",
                    order.order_number, PaymentStatus(order.payment_status).value)
        return ConfirmationResult(order, False, "duplicate")

    logger.info("Order %s paid (ref=%s)", order.order_number, reference)
    (emitter or NotificationEmitter()).emit(PaymentConfirmed(
        order_id=order.id, order_number=order.order_number, user_id=order.user_id, reference=reference,
    ))
    return ConfirmationResult(order, True)


def mark_payment_failed(
    db: Session, *, order_id: Optional[int] = None, order_number: Optional[str] = None
) -> ConfirmationResult:
    order = _find(db, order_id, order_number)
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING)
        .values(payment_status=PaymentStatus.FAILED, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    applied = result.rowcount == 1
    db.commit()
    db.refresh(order)
    return ConfirmationResult(order, applied, "failed" if applied else "duplicate")
