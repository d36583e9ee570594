# backend/services/reservation.py
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, List, Optional

from models.stock import StockMovement
from services.errors import DomainError
from services.inventory import InventoryLedger, StockKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationLine:
    product_id: int
    variant_id: Optional[int]
    quantity: int

    @property
    def key(self) -> StockKey:
        return self.product_id, self.variant_id


def merge_lines(lines: Iterable[ReservationLine]) -> List[ReservationLine]:
    """Collapse lines on the same stock key and put them in lock order."""
    totals: "OrderedDict[StockKey, int]" = OrderedDict()
    for line in lines:
        totals[line.key] = totals.get(line.key, 0) + line.quantity
    ordered = sorted(totals, key=lambda k: (k[0], -1 if k[1] is None else k[1]))
    return [ReservationLine(k[0], k[1], totals[k]) for k in ordered]


class StockReservation:
    """Checks and debits stock for a whole order, all or nothing.

    Runs inside the caller's transaction. If any line fails, the transaction is
    rolled back before the error propagates, which discards every decrement and
    movement already written for earlier lines (and anything else the caller
    flushed in the same attempt, such as the order row).
    """

    def __init__(self, ledger: InventoryLedger):
        self.ledger = ledger

    def reserve(
        self,
        lines: Iterable[ReservationLine],
        *,
        order_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> List[StockMovement]:
        merged = merge_lines(lines)
        movements: List[StockMovement] = []
        try:
            # Cheap re-validation pass first, so a retired item fails before
            # anything is debited
            for line in merged:
                self.ledger.check_sellable(line.product_id, line.variant_id)
            for line in merged:
                movements.append(self.ledger.debit(
                    line.product_id, line.variant_id, line.quantity,
                    reason=reason or (f"Order {order_id}" if order_id else "Order"),
                    actor_id=actor_id,
                    order_id=order_id,
                ))
        except DomainError as exc:
            self._abort(movements, exc)
            raise
        except Exception:
            logger.exception("Unexpected failure reserving stock for order %s", order_id)
            self._abort(movements, None)
            raise
        return movements

    def _abort(self, applied: List[StockMovement], exc: Optional[DomainError]) -> None:
        if applied:
            logger.info(
                "Reservation for order failed after %d debit(s); rolling back (%s)",
                len(applied), exc.code if exc else "unexpected error",
            )
        self.ledger.db.rollback()
        self.ledger.pending_events.clear()
