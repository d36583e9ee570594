# backend/services/inventory.py
"""
Inventory ledger: the only code that changes stock quantities.

Every mutation goes through :meth:`InventoryLedger._apply`, which

* serialises work on one (product, variant) key inside this process with a
  per-key lock (different keys never wait on each other),
* changes the counter with a compare-and-swap ``UPDATE ... WHERE stock = :seen``
  and re-reads immediately when another writer got there first,
* appends exactly one :class:`StockMovement` whose previous/new values are the
  ones the swap used,
* refreshes the (product, variant) :class:`StockAlert`.

Nothing here commits. The caller owns the transaction, so a failure anywhere
in an order attempt rolls back every movement written for it.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from config import settings
from models.product import Product, ProductVariant
from models.stock import MovementType, StockAlert, StockMovement
from services.errors import (
    AlertNotFound, InsufficientStock, InvalidQuantity, ProductInactiveOrMissing, StockConflict,
    StockNotAvailable, ValidationFailed, VariantInactiveOrMissing,
)

logger = logging.getLogger(__name__)

StockKey = Tuple[int, Optional[int]]


class KeyedLocks:
    """Hands out one lock per stock key.

    Locks are created on first use and kept for the life of the process; the
    key space is bounded by the number of sellable SKUs.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[StockKey, threading.Lock] = {}

    def lock_for(self, key: StockKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: StockKey) -> Iterator[None]:
        with self.lock_for(key):
            yield


stock_locks = KeyedLocks()


@dataclass(frozen=True)
class LowStockEvent:
    product_id: int
    variant_id: Optional[int]
    current_stock: int
    threshold: int
    alert_id: int


class InventoryLedger:
    def __init__(
        self,
        db: Session,
        *,
        locks: KeyedLocks = stock_locks,
        default_threshold: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.db = db
        self.locks = locks
        self.default_threshold = settings.LOW_STOCK_THRESHOLD if default_threshold is None else default_threshold
        self.max_attempts = max_attempts or settings.STOCK_CAS_MAX_ATTEMPTS
        # Low-stock events raised by this unit of work, emitted after commit
        self.pending_events: List[LowStockEvent] = []

    # ---- lookup ----

    def _product(self, product_id: int, require_active: bool) -> Product:
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if product is None or (require_active and not product.is_active):
            raise ProductInactiveOrMissing(product_id=product_id)
        return product

    def _variant(self, product_id: int, variant_id: int, require_active: bool) -> ProductVariant:
        variant = self.db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()
        if variant is None or variant.product_id != product_id or (require_active and not variant.is_active):
            raise VariantInactiveOrMissing(product_id=product_id, variant_id=variant_id)
        return variant

    def resolve_key(self, product_id: Optional[int], variant_id: Optional[int]) -> StockKey:
        """Accepts either id (or both) and returns a consistent stock key."""
        if variant_id is not None:
            variant = self.db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()
            if variant is None or (product_id is not None and variant.product_id != product_id):
                raise VariantInactiveOrMissing(product_id=product_id, variant_id=variant_id)
            return variant.product_id, variant.id
        if product_id is None:
            raise ValidationFailed("product_id or variant_id is required")
        self._product(product_id, require_active=False)
        return product_id, None

    def _target(self, key: StockKey, require_active: bool):
        product_id, variant_id = key
        product = self._product(product_id, require_active)
        if variant_id is None:
            return Product, product_id, product
        self._variant(product_id, variant_id, require_active)
        return ProductVariant, variant_id, product

    def _threshold_for(self, product: Product) -> int:
        if product.low_stock_threshold is not None:
            return product.low_stock_threshold
        return self.default_threshold

    def _read_raw(self, model, row_id: int, key: StockKey) -> Optional[int]:
        row = self.db.execute(select(model.stock_quantity).where(model.id == row_id)).first()
        if row is None:
            raise (ProductInactiveOrMissing if model is Product else VariantInactiveOrMissing)(
                product_id=key[0], variant_id=key[1]
            )
        return row[0]

    def _read_stock(self, model, row_id: int, key: StockKey) -> int:
        stock = self._read_raw(model, row_id, key)
        if stock is None or stock < 0:
            logger.error("Corrupt stock record for %s: %r", key, stock)
            raise StockNotAvailable(product_id=key[0], variant_id=key[1])
        return stock

    def check_sellable(self, product_id: int, variant_id: Optional[int] = None) -> Product:
        """Raise unless the product (and variant) exist and are active."""
        _, _, product = self._target((product_id, variant_id), require_active=True)
        return product

    def stock_level(self, product_id: int, variant_id: Optional[int] = None) -> int:
        key = (product_id, variant_id)
        model, row_id, _ = self._target(key, require_active=False)
        return self._read_stock(model, row_id, key)

    # ---- mutation ----

    def _swap(self, model, row_id: int, expected: Optional[int], new: int) -> bool:
        if expected is None:
            seen = model.stock_quantity.is_(None)
        else:
            seen = model.stock_quantity == expected
        result = self.db.execute(
            update(model)
            .where(model.id == row_id, seen)
            .values(stock_quantity=new)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        # Keep any already-loaded ORM instance from serving the old value
        instance = self.db.identity_map.get(identity_key(model, row_id))
        if instance is not None:
            self.db.expire(instance, ["stock_quantity"])
        return True

    def _apply(
        self,
        key: StockKey,
        movement_type: MovementType,
        compute: Callable[[int], int],
        *,
        reason: Optional[str],
        actor_id: Optional[int],
        order_id: Optional[int] = None,
        require_active: bool = False,
        repair: bool = False,
    ) -> StockMovement:
        # With ``repair`` an unreadable stock value counts as 0 and is overwritten
        model, row_id, product = self._target(key, require_active)
        with self.locks.hold(key):
            for attempt in range(1, self.max_attempts + 1):
                if repair:
                    seen = self._read_raw(model, row_id, key)
                    corrupt = seen is None or seen < 0
                    previous = 0 if corrupt else seen
                else:
                    seen = previous = self._read_stock(model, row_id, key)
                    corrupt = False
                new = compute(previous)
                if self._swap(model, row_id, seen, new):
                    break
                logger.info("Stock swap conflict on %s (attempt %d), re-reading", key, attempt)
            else:
                raise StockConflict(product_id=key[0], variant_id=key[1], attempts=self.max_attempts)

            if corrupt:
                logger.warning("Repaired corrupt stock record for %s: %r -> %d", key, seen, new)
                reason = f"{reason} (replaced corrupt stock value {seen!r})"

            movement = StockMovement(
                product_id=key[0],
                variant_id=key[1],
                type=movement_type,
                quantity=new - previous,
                previous_stock=previous,
                new_stock=new,
                reason=reason,
                actor_id=actor_id,
                order_id=order_id,
            )
            self.db.add(movement)
            self.db.flush()
            self._refresh_alert(key, new, self._threshold_for(product))

        logger.debug("Stock %s %s: %d -> %d", key, movement_type.value, previous, new)
        return movement

    def debit(
        self,
        product_id: int,
        variant_id: Optional[int],
        quantity: int,
        *,
        reason: Optional[str] = None,
        actor_id: Optional[int] = None,
        order_id: Optional[int] = None,
    ) -> StockMovement:
        _check_quantity(quantity, product_id, variant_id)
        key = (product_id, variant_id)

        def take(current: int) -> int:
            if current < quantity:
                raise InsufficientStock(
                    product_id=product_id, variant_id=variant_id, requested=quantity, available=current
                )
            return current - quantity

        return self._apply(
            key, MovementType.OUT, take,
            reason=reason, actor_id=actor_id, order_id=order_id, require_active=True,
        )

    def credit(
        self,
        product_id: int,
        variant_id: Optional[int],
        quantity: int,
        *,
        reason: Optional[str] = None,
        actor_id: Optional[int] = None,
        order_id: Optional[int] = None,
    ) -> StockMovement:
        # Restocks and cancellation restores are accepted for inactive items too
        _check_quantity(quantity, product_id, variant_id)
        return self._apply(
            (product_id, variant_id), MovementType.IN, lambda current: current + quantity,
            reason=reason, actor_id=actor_id, order_id=order_id,
        )

    def stock_in(
        self,
        quantity: int,
        *,
        product_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        reason: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> StockMovement:
        product_id, variant_id = self.resolve_key(product_id, variant_id)
        return self.credit(product_id, variant_id, quantity, reason=reason or "Stock in", actor_id=actor_id)

    def adjust_to(
        self,
        new_quantity: int,
        *,
        product_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        reason: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> Optional[StockMovement]:
        """Set stock to an absolute count; the delta is computed at swap time.

        Returns None when the stock already equals ``new_quantity``. This is
        also the way to repair a NULL or negative stock record: the movement
        is recorded from 0 and the reason names the value that was replaced.
        """
        if isinstance(new_quantity, bool) or not isinstance(new_quantity, int) or new_quantity < 0:
            raise ValidationFailed("new_quantity must be a non-negative integer", new_quantity=new_quantity)
        key = self.resolve_key(product_id, variant_id)
        model, row_id, _ = self._target(key, require_active=False)
        if self._read_raw(model, row_id, key) == new_quantity:
            logger.info("Adjustment of %s to %d is a no-op", key, new_quantity)
            return None
        return self._apply(
            key, MovementType.ADJUSTMENT, lambda current: new_quantity,
            reason=reason or "Stock adjustment", actor_id=actor_id, repair=True,
        )

    # ---- alerts ----

    def _alert_for(self, key: StockKey) -> Optional[StockAlert]:
        q = self.db.query(StockAlert).filter(StockAlert.product_id == key[0])
        if key[1] is None:
            q = q.filter(StockAlert.variant_id.is_(None))
        else:
            q = q.filter(StockAlert.variant_id == key[1])
        return q.first()

    def _refresh_alert(self, key: StockKey, new_stock: int, threshold: int) -> Optional[StockAlert]:
        alert = self._alert_for(key)
        if alert is None:
            if new_stock > threshold:
                return None
            alert = StockAlert(
                product_id=key[0], variant_id=key[1],
                threshold=threshold, current_stock=new_stock, is_notified=False,
            )
            self.db.add(alert)
            self.db.flush()
            self._queue_low_stock(alert)
            return alert

        was_low = alert.current_stock <= alert.threshold
        alert.current_stock = new_stock
        alert.threshold = threshold
        if new_stock > threshold:
            # Back above threshold: re-arm so the next dip notifies again
            if alert.is_notified:
                alert.is_notified = False
                alert.notified_at = None
        elif not was_low:
            self._queue_low_stock(alert)
        self.db.flush()
        return alert

    def _queue_low_stock(self, alert: StockAlert) -> None:
        logger.warning(
            "Low stock: product=%s variant=%s stock=%s threshold=%s",
            alert.product_id, alert.variant_id, alert.current_stock, alert.threshold,
        )
        self.pending_events.append(LowStockEvent(
            product_id=alert.product_id, variant_id=alert.variant_id,
            current_stock=alert.current_stock, threshold=alert.threshold, alert_id=alert.id,
        ))

    def alerts(self, *, only_low: bool = True, notified: Optional[bool] = None) -> List[StockAlert]:
        q = self.db.query(StockAlert)
        if only_low:
            q = q.filter(StockAlert.current_stock <= StockAlert.threshold)
        if notified is not None:
            q = q.filter(StockAlert.is_notified.is_(notified))
        return q.order_by(StockAlert.current_stock.asc(), StockAlert.id.asc()).all()

    def mark_notified(self, alert_id: int) -> StockAlert:
        alert = self.db.query(StockAlert).filter(StockAlert.id == alert_id).first()
        if alert is None:
            raise AlertNotFound(alert_id=alert_id)
        if not alert.is_notified:
            alert.is_notified = True
            alert.notified_at = datetime.now(timezone.utc)
            self.db.flush()
        return alert

    # ---- history ----

    def history(
        self,
        *,
        product_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        movement_type: Optional[MovementType] = None,
        order_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[StockMovement], int]:
        q = self.db.query(StockMovement)
        if product_id is not None:
            q = q.filter(StockMovement.product_id == product_id)
        if variant_id is not None:
            q = q.filter(StockMovement.variant_id == variant_id)
        if movement_type is not None:
            q = q.filter(StockMovement.type == movement_type)
        if order_id is not None:
            q = q.filter(StockMovement.order_id == order_id)
        total = q.count()
        rows = (
            q.order_by(StockMovement.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return rows, total


def _check_quantity(quantity: int, product_id: int, variant_id: Optional[int]) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity(product_id=product_id, variant_id=variant_id, quantity=quantity)
