# backend/services/order_state.py
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from models.order import Order, OrderStatus, OrderStatusLog, PaymentMethod, PaymentStatus
from services.errors import InvalidTransition, OrderNotFound, PaymentAlreadyCaptured
from services.inventory import InventoryLedger
from services.notifications import NotificationEmitter, OrderStatusChanged

logger = logging.getLogger(__name__)

# Happy path: each status has at most one successor
NEXT_STATUS = {
    OrderStatus.PENDING: OrderStatus.CONFIRMED,
    OrderStatus.CONFIRMED: OrderStatus.PROCESSING,
    OrderStatus.PROCESSING: OrderStatus.SHIPPING,
    OrderStatus.SHIPPING: OrderStatus.DELIVERED,
}

CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})


def next_status(status: OrderStatus) -> Optional[OrderStatus]:
    return NEXT_STATUS.get(OrderStatus(status))


def allowed_targets(status: OrderStatus) -> List[OrderStatus]:
    status = OrderStatus(status)
    targets = []
    if status in NEXT_STATUS:
        targets.append(NEXT_STATUS[status])
    if status in CANCELLABLE:
        targets.append(OrderStatus.CANCELLED)
    return targets


def check_transition(current: OrderStatus, payment_status: PaymentStatus, target: OrderStatus) -> None:
    """Raise if ``current -> target`` is not an edge of the lifecycle graph."""
    current, target = OrderStatus(current), OrderStatus(target)
    allowed = allowed_targets(current)
    if target not in allowed:
        raise InvalidTransition(
            f"Cannot change order status from {current.value} to {target.value}",
            current=current.value, requested=target.value, allowed=[s.value for s in allowed],
        )
    if target == OrderStatus.CANCELLED and PaymentStatus(payment_status) == PaymentStatus.PAID:
        raise PaymentAlreadyCaptured(current=current.value)


def is_valid_walk(statuses: Iterable[OrderStatus]) -> bool:
    seq = [OrderStatus(s) for s in statuses]
    if not seq or seq[0] != OrderStatus.PENDING:
        return False
    return all(b in allowed_targets(a) for a, b in zip(seq, seq[1:]))


class OrderStateMachine:
    """Owns order status changes.

    ``advance`` moves to the single next status; ``set_status`` applies an
    explicit target (admin override). Both use :func:`check_transition`. A
    cancellation also restores stock with one ``in`` movement per order line,
    in the same transaction as the status change.
    """

    def __init__(
        self,
        db: Session,
        *,
        ledger: Optional[InventoryLedger] = None,
        emitter: Optional[NotificationEmitter] = None,
    ):
        self.db = db
        self.ledger = ledger or InventoryLedger(db)
        self.emitter = emitter or NotificationEmitter()

    def _load(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise OrderNotFound(order_id=order_id)
        return order

    def advance(self, order_id: int, *, actor_id: Optional[int] = None, note: Optional[str] = None) -> Order:
        order = self._load(order_id)
        target = next_status(order.status)
        if target is None:
            raise InvalidTransition(
                f"Order in status {OrderStatus(order.status).value} has no next status",
                current=OrderStatus(order.status).value, allowed=[],
            )
        return self._transition(order, target, actor_id=actor_id, note=note)

    def set_status(
        self, order_id: int, target: OrderStatus, *, actor_id: Optional[int] = None, note: Optional[str] = None
    ) -> Order:
        order = self._load(order_id)
        return self._transition(order, OrderStatus(target), actor_id=actor_id, note=note)

    def cancel(self, order_id: int, *, reason: Optional[str] = None, actor_id: Optional[int] = None) -> Order:
        order = self._load(order_id)
        return self._transition(order, OrderStatus.CANCELLED, actor_id=actor_id, note=reason)

    def _transition(self, order: Order, target: OrderStatus, *, actor_id: Optional[int], note: Optional[str]) -> Order:
        current = OrderStatus(order.status)
        check_transition(current, order.payment_status, target)

        now = datetime.now(timezone.utc)
        values = {"status": target, "updated_at": now}
        guard = [Order.id == order.id, Order.status == current]
        if target == OrderStatus.CANCELLED:
            values.update(cancelled_at=now, cancel_reason=note)
            # A payment confirmed after our read must still block the cancel
            guard.append(Order.payment_status != PaymentStatus.PAID)
        if (
            target == OrderStatus.DELIVERED
            and (order.payment_method == PaymentMethod.COD or not order.payment_url)
            and order.payment_status == PaymentStatus.PENDING
        ):
            # Cash was collected on delivery; an online order that never got a
            # payment link was handed over as COD
            values.update(payment_status=PaymentStatus.PAID, paid_at=now)

        try:
            result = self.db.execute(
                update(Order).where(*guard).values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                fresh = self._load(order.id)
                logger.info("Order %s changed concurrently (now %s)", order.id, fresh.status)
                check_transition(fresh.status, fresh.payment_status, target)
                raise InvalidTransition(
                    "Order was modified concurrently, please retry",
                    current=OrderStatus(fresh.status).value, requested=target.value,
                )

            self.db.add(OrderStatusLog(
                order_id=order.id, old_status=current.value, new_status=target.value, actor_id=actor_id, note=note,
            ))

            if target == OrderStatus.CANCELLED:
                for item in order.items:
                    self.ledger.credit(
                        item.product_id, item.variant_id, item.qty,
                        reason=f"Cancelled order {order.order_number}",
                        actor_id=actor_id, order_id=order.id,
                    )
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.ledger.pending_events.clear()
            raise

        self.db.refresh(order)
        logger.info("Order %s: %s -> %s (actor=%s)", order.order_number, current.value, target.value, actor_id)

        self.emitter.emit(OrderStatusChanged(
            order_id=order.id, order_number=order.order_number, user_id=order.user_id,
            old_status=current.value, new_status=target.value, actor_id=actor_id, note=note,
        ))
        self.emitter.emit_all(self.ledger.pending_events)
        self.ledger.pending_events.clear()
        return order
