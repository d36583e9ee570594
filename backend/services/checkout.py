# backend/services/checkout.py
"""
Order placement.

Ordering of steps is fixed:

1. validate the request (nothing written on failure),
2. replay an earlier order if the Idempotency-Key was seen before,
3. price the caller's open cart from live catalogue data,
4. in ONE transaction: insert the order and its items, debit stock for every
   line, consume the cart, record the key, commit,
5. after commit: emit events, then run the payment dispatcher.

Step 4 either lands completely or not at all. Step 5 can only add warnings.
"""
import hashlib
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.cart import Cart, CartItem
from models.idempotency import IdempotencyKey
from models.order import Order, OrderItem, OrderStatus, OrderStatusLog, PaymentMethod, PaymentStatus
from models.product import Product, ProductVariant
from services.errors import (
    EmptyCart, IdempotencyKeyReused, IncompleteSelection, MissingAddress, ProductInactiveOrMissing,
    ValidationFailed, VariantInactiveOrMissing,
)
from services.inventory import InventoryLedger
from services.notifications import NotificationEmitter, OrderStatusChanged
from services.payment import PaymentDispatcher
from services.pricing import OrderTotals, PricedLine, order_totals, price_line
from services.reservation import ReservationLine, StockReservation
from services.variants import AttributeSet, VariantResolver

logger = logging.getLogger(__name__)


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def request_fingerprint(**fields) -> str:
    raw = json.dumps(fields, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class PlacedOrder:
    order: Order
    warnings: List[str] = field(default_factory=list)
    payment_url: Optional[str] = None
    replayed: bool = False


class CheckoutService:
    def __init__(
        self,
        db: Session,
        *,
        ledger: Optional[InventoryLedger] = None,
        dispatcher: Optional[PaymentDispatcher] = None,
        emitter: Optional[NotificationEmitter] = None,
    ):
        self.db = db
        self.ledger = ledger or InventoryLedger(db)
        self.dispatcher = dispatcher or PaymentDispatcher(None)
        self.emitter = emitter or NotificationEmitter()

    # ---- cart ----

    def open_cart(self, user_id: int) -> Optional[Cart]:
        return self.db.query(Cart).filter(Cart.user_id == user_id, Cart.status == "open").first()

    def price_item(self, item: CartItem) -> PricedLine:
        product = self.db.query(Product).filter(Product.id == item.product_id).first()
        if product is None or not product.is_active:
            raise ProductInactiveOrMissing(product_id=item.product_id)

        variants = self.db.query(ProductVariant).filter(ProductVariant.product_id == product.id).all()
        adjustment, label = 0, None
        if item.variant_id is None:
            resolver = VariantResolver(product, variants)
            if resolver.requires_selection:
                raise IncompleteSelection(product_id=product.id, missing=resolver.declared_names)
        else:
            variant = next((v for v in variants if v.id == item.variant_id), None)
            if variant is None or not variant.is_active:
                raise VariantInactiveOrMissing(product_id=product.id, variant_id=item.variant_id)
            adjustment = variant.price_adjustment or 0
            label = AttributeSet.of(variant.attributes).label

        return price_line(
            product.id, item.qty, product.price, adjustment,
            variant_id=item.variant_id, product_name=product.name, variant_label=label,
        )

    def preview(self, user_id: int, shipping_fee: int = 0) -> OrderTotals:
        cart = self.open_cart(user_id)
        if cart is None or not cart.items:
            raise EmptyCart()
        return order_totals([self.price_item(it) for it in cart.items], shipping_fee)

    # ---- placement ----

    def _replay(self, user_id: int, key: str, fingerprint: str) -> Optional[PlacedOrder]:
        record = self.db.query(IdempotencyKey).filter(
            IdempotencyKey.user_id == user_id, IdempotencyKey.key == key
        ).first()
        if record is None:
            return None
        if record.request_hash != fingerprint:
            raise IdempotencyKeyReused(key=key)
        order = self.db.query(Order).filter(Order.id == record.order_id).first()
        logger.info("Idempotency-Key %s replayed order %s", key, order.order_number)
        return PlacedOrder(order=order, payment_url=order.payment_url, replayed=True)

    def place_order(
        self,
        user_id: int,
        *,
        shipping_address: str,
        payment_method: PaymentMethod,
        shipping_fee: int = 0,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        client_ip: str = "",
        warnings: Sequence[str] = (),
        fingerprint: Optional[str] = None,
    ) -> PlacedOrder:
        """Turn the open cart into a pending order.

        ``fingerprint`` identifies the request for Idempotency-Key checks; the
        API passes a hash of the raw request body so a re-quoted shipping fee
        does not make a retry look like a different request.
        """
        address = (shipping_address or "").strip()
        if not address:
            raise MissingAddress()
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationFailed("Unknown payment method", payment_method=payment_method)

        fingerprint = fingerprint or request_fingerprint(
            shipping_address=address, payment_method=method.value, shipping_fee=shipping_fee, notes=notes,
        )
        if idempotency_key:
            replay = self._replay(user_id, idempotency_key, fingerprint)
            if replay:
                return replay

        cart = self.open_cart(user_id)
        if cart is None or not cart.items:
            raise EmptyCart()
        totals = order_totals([self.price_item(it) for it in cart.items], shipping_fee)

        try:
            order, movements = self._persist(user_id, cart, totals, address, method, notes, idempotency_key, fingerprint)
        except IntegrityError:
            self.db.rollback()
            if idempotency_key:
                # A concurrent request with the same key won the insert
                replay = self._replay(user_id, idempotency_key, fingerprint)
                if replay:
                    return replay
            raise

        logger.info(
            "Order %s placed by user %s: %d line(s), total=%d, method=%s",
            order.order_number, user_id, len(movements), order.total, method.value,
        )

        self.emitter.emit(OrderStatusChanged(
            order_id=order.id, order_number=order.order_number, user_id=user_id,
            old_status="", new_status=OrderStatus.PENDING.value, actor_id=user_id,
        ))
        self.emitter.emit_all(self.ledger.pending_events)
        self.ledger.pending_events.clear()

        placed = PlacedOrder(order=order, warnings=list(warnings) + list(totals.warnings))
        try:
            dispatched = self.dispatcher.dispatch(self.db, order, client_ip)
        except Exception:
            # The order is committed; payment setup trouble must not hide it
            logger.exception("Payment dispatch crashed for order %s", order.order_number)
            self.db.rollback()
            placed.warnings.append("Online payment could not be started; the order will be paid on delivery")
        else:
            placed.payment_url = dispatched.payment_url
            placed.warnings.extend(dispatched.warnings)
        return placed

    def _persist(
        self,
        user_id: int,
        cart: Cart,
        totals: OrderTotals,
        address: str,
        method: PaymentMethod,
        notes: Optional[str],
        idempotency_key: Optional[str],
        fingerprint: str,
    ) -> Tuple[Order, list]:
        try:
            order = Order(
                order_number=generate_order_number(),
                user_id=user_id,
                status=OrderStatus.PENDING,
                payment_method=method,
                payment_status=PaymentStatus.PENDING,
                subtotal=totals.subtotal,
                shipping_fee=totals.shipping_fee,
                total=totals.total,
                shipping_address=address,
                notes=notes,
            )
            order.items = [
                OrderItem(
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    qty=line.quantity,
                    unit_price=line.unit_price,
                    product_name=line.product_name,
                    variant_label=line.variant_label,
                )
                for line in totals.lines
            ]
            self.db.add(order)
            self.db.flush()

            # Rolls the whole transaction back itself on failure
            movements = StockReservation(self.ledger).reserve(
                [ReservationLine(l.product_id, l.variant_id, l.quantity) for l in totals.lines],
                order_id=order.id,
                actor_id=user_id,
                reason=f"Order {order.order_number}",
            )

            self.db.add(OrderStatusLog(
                order_id=order.id, old_status=None, new_status=OrderStatus.PENDING.value, actor_id=user_id,
            ))
            cart.status = "ordered"
            if idempotency_key:
                self.db.add(IdempotencyKey(
                    key=idempotency_key, user_id=user_id, request_hash=fingerprint, order_id=order.id,
                ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.ledger.pending_events.clear()
            raise
        self.db.refresh(order)
        return order, movements
