import pytest

from models.product import Product
from models.stock import MovementType, StockAlert, StockMovement
from services.errors import (
    AlertNotFound, InsufficientStock, InvalidQuantity, LedgerImmutable, ProductInactiveOrMissing,
    StockNotAvailable, ValidationFailed, VariantInactiveOrMissing,
)
from services.inventory import InventoryLedger, KeyedLocks


@pytest.fixture
def ledger(db, locks):
    return InventoryLedger(db, locks=locks, default_threshold=5)


def _stock(db, product_id):
    db.expire_all()
    return db.query(Product).filter(Product.id == product_id).one().stock_quantity


class TestDebitCredit:
    def test_debit_records_previous_and_new_stock(self, db, ledger, make_product):
        product = make_product(stock=10)
        movement = ledger.debit(product.id, None, 3, reason="Order 1", actor_id=None, order_id=None)
        db.commit()

        assert movement.type == MovementType.OUT
        assert (movement.quantity, movement.previous_stock, movement.new_stock) == (-3, 10, 7)
        assert _stock(db, product.id) == 7

    def test_insufficient_stock_reports_available(self, db, ledger, make_product):
        product = make_product(stock=2)
        with pytest.raises(InsufficientStock) as exc:
            ledger.debit(product.id, None, 3)
        assert exc.value.details["available"] == 2
        assert exc.value.details["requested"] == 3
        assert db.query(StockMovement).count() == 0

    def test_debit_of_variant_leaves_base_stock_alone(self, db, ledger, make_product, make_variant):
        product = make_product(stock=50)
        variant = make_variant(product, {"Size": "M"}, stock=4)
        ledger.debit(product.id, variant.id, 4)
        db.commit()
        db.expire_all()
        assert variant.stock_quantity == 0
        assert _stock(db, product.id) == 50

    def test_inactive_product_cannot_be_debited(self, ledger, make_product):
        product = make_product(active=False)
        with pytest.raises(ProductInactiveOrMissing):
            ledger.debit(product.id, None, 1)

    def test_inactive_variant_cannot_be_debited(self, ledger, make_product, make_variant):
        product = make_product()
        variant = make_variant(product, {"Size": "M"}, active=False)
        with pytest.raises(VariantInactiveOrMissing):
            ledger.debit(product.id, variant.id, 1)

    def test_variant_of_another_product_is_rejected(self, ledger, make_product, make_variant):
        first, second = make_product(name="A"), make_product(name="B")
        variant = make_variant(first, {"Size": "M"})
        with pytest.raises(VariantInactiveOrMissing):
            ledger.debit(second.id, variant.id, 1)

    @pytest.mark.parametrize("stock", [None, -4])
    def test_corrupt_stock_is_not_available(self, ledger, make_product, stock):
        product = make_product(stock=stock)
        with pytest.raises(StockNotAvailable) as exc:
            ledger.debit(product.id, None, 1)
        assert exc.value.code == "STOCK_NOT_AVAILABLE"

    @pytest.mark.parametrize("stock", [None, -4])
    def test_adjustment_repairs_corrupt_stock(self, db, ledger, make_product, stock):
        product = make_product(stock=stock)

        movement = ledger.adjust_to(7, product_id=product.id, reason="Cycle count")
        db.commit()

        assert movement.type == MovementType.ADJUSTMENT
        assert (movement.quantity, movement.previous_stock, movement.new_stock) == (7, 0, 7)
        assert movement.reason == f"Cycle count (replaced corrupt stock value {stock!r})"
        assert _stock(db, product.id) == 7
        ledger.debit(product.id, None, 2)
        assert _stock(db, product.id) == 5

    def test_quantity_must_be_positive(self, ledger, make_product):
        product = make_product()
        with pytest.raises(InvalidQuantity):
            ledger.debit(product.id, None, 0)
        with pytest.raises(InvalidQuantity):
            ledger.credit(product.id, None, -2)

    def test_restock_of_inactive_product_is_accepted(self, db, ledger, make_product):
        product = make_product(stock=0, active=False)
        ledger.credit(product.id, None, 5, reason="Return")
        db.commit()
        assert _stock(db, product.id) == 5


class TestStockInAndAdjustment:
    def test_stock_in_by_variant_id_only(self, db, ledger, make_product, make_variant):
        product = make_product()
        variant = make_variant(product, {"Size": "L"}, stock=1)
        movement = ledger.stock_in(9, variant_id=variant.id, reason="Delivery", actor_id=None)
        db.commit()
        assert movement.product_id == product.id
        assert (movement.type, movement.quantity, movement.new_stock) == (MovementType.IN, 9, 10)

    def test_stock_in_needs_a_target(self, ledger):
        with pytest.raises(ValidationFailed):
            ledger.stock_in(1)

    def test_adjustment_sets_absolute_value(self, db, ledger, make_product):
        product = make_product(stock=12)
        movement = ledger.adjust_to(7, product_id=product.id, reason="Count", actor_id=None)
        db.commit()
        assert movement.type == MovementType.ADJUSTMENT
        assert (movement.quantity, movement.previous_stock, movement.new_stock) == (-5, 12, 7)

    def test_adjustment_to_same_value_writes_nothing(self, db, ledger, make_product):
        product = make_product(stock=12)
        assert ledger.adjust_to(12, product_id=product.id, reason="Count") is None
        assert db.query(StockMovement).count() == 0

    def test_adjustment_rejects_negative_target(self, ledger, make_product):
        product = make_product()
        with pytest.raises(ValidationFailed):
            ledger.adjust_to(-1, product_id=product.id, reason="Count")

    def test_adjustment_runs_the_alert_check(self, db, ledger, make_product):
        product = make_product(stock=40)
        ledger.adjust_to(2, product_id=product.id, reason="Shrinkage")
        db.commit()
        alert = db.query(StockAlert).one()
        assert (alert.current_stock, alert.threshold, alert.is_notified) == (2, 5, False)
        assert len(ledger.pending_events) == 1


class TestAlerts:
    def test_alert_created_when_stock_reaches_threshold(self, db, ledger, make_product):
        product = make_product(stock=8)
        ledger.debit(product.id, None, 3)
        db.commit()
        alert = db.query(StockAlert).one()
        assert alert.current_stock == 5
        assert alert.is_below_threshold
        event = ledger.pending_events[0]
        assert (event.product_id, event.current_stock, event.threshold) == (product.id, 5, 5)

    def test_no_alert_above_threshold(self, db, ledger, make_product):
        product = make_product(stock=20)
        ledger.debit(product.id, None, 3)
        db.commit()
        assert db.query(StockAlert).count() == 0
        assert ledger.pending_events == []

    def test_product_threshold_overrides_default(self, db, ledger, make_product):
        product = make_product(stock=20, threshold=18)
        ledger.debit(product.id, None, 2)
        db.commit()
        assert db.query(StockAlert).one().threshold == 18

    def test_stock_in_refreshes_unnotified_alert(self, db, ledger, make_product):
        # Product at 3 with an open alert; 20 units arrive
        product = make_product(stock=4)
        ledger.debit(product.id, None, 1)
        db.commit()
        alert = db.query(StockAlert).one()
        assert (alert.current_stock, alert.is_notified) == (3, False)

        ledger.stock_in(20, product_id=product.id, reason="Delivery")
        db.commit()
        db.expire_all()
        alert = db.query(StockAlert).one()
        assert alert.current_stock == 23
        assert alert.is_notified is False
        assert not alert.is_below_threshold

    def test_rising_above_threshold_rearms_notified_alert(self, db, ledger, make_product):
        product = make_product(stock=3)
        ledger.debit(product.id, None, 1)
        db.commit()
        alert = ledger.mark_notified(db.query(StockAlert).one().id)
        db.commit()
        assert alert.is_notified and alert.notified_at is not None

        ledger.stock_in(10, product_id=product.id)
        db.commit()
        db.expire_all()
        alert = db.query(StockAlert).one()
        assert alert.is_notified is False
        assert alert.notified_at is None

    def test_notified_flag_survives_further_drops(self, db, ledger, make_product):
        product = make_product(stock=5)
        ledger.debit(product.id, None, 1)
        db.commit()
        ledger.mark_notified(db.query(StockAlert).one().id)
        db.commit()
        ledger.pending_events.clear()

        ledger.debit(product.id, None, 1)
        db.commit()
        db.expire_all()
        alert = db.query(StockAlert).one()
        assert (alert.current_stock, alert.is_notified) == (3, True)
        # Already low: no second low-stock event
        assert ledger.pending_events == []

    def test_dip_after_recovery_raises_new_event(self, db, ledger, make_product):
        product = make_product(stock=5)
        ledger.debit(product.id, None, 1)
        ledger.credit(product.id, None, 10)
        ledger.pending_events.clear()
        ledger.debit(product.id, None, 12)
        db.commit()
        assert len(ledger.pending_events) == 1
        assert db.query(StockAlert).count() == 1

    def test_alert_listing_filters(self, db, ledger, make_product):
        low, recovered = make_product(name="Low", stock=2), make_product(name="Recovered", stock=2)
        ledger.credit(low.id, None, 1)
        ledger.credit(recovered.id, None, 1)
        ledger.credit(recovered.id, None, 30)
        db.commit()

        assert [a.product_id for a in ledger.alerts()] == [low.id]
        assert len(ledger.alerts(only_low=False)) == 2
        assert ledger.alerts(notified=True) == []

    def test_mark_unknown_alert(self, ledger):
        with pytest.raises(AlertNotFound):
            ledger.mark_notified(999)


class TestLedger:
    def test_movements_are_append_only(self, db, ledger, make_product):
        product = make_product(stock=10)
        movement = ledger.debit(product.id, None, 1)
        db.commit()

        movement.reason = "edited"
        with pytest.raises(LedgerImmutable):
            db.flush()
        db.rollback()

        db.delete(db.get(StockMovement, movement.id))
        with pytest.raises(LedgerImmutable):
            db.flush()
        db.rollback()
        assert db.query(StockMovement).count() == 1

    def test_movement_sum_matches_counter(self, db, ledger, make_product):
        product = make_product(stock=30)
        ledger.debit(product.id, None, 4)
        ledger.stock_in(10, product_id=product.id)
        ledger.adjust_to(25, product_id=product.id, reason="Count")
        ledger.debit(product.id, None, 6)
        db.commit()

        delta = sum(m.quantity for m in db.query(StockMovement).all())
        assert _stock(db, product.id) == 30 + delta == 19

    def test_history_filters_and_pages(self, db, ledger, make_product):
        product, other = make_product(name="A", stock=50), make_product(name="B", stock=50)
        for _ in range(3):
            ledger.debit(product.id, None, 1)
        ledger.stock_in(5, product_id=product.id)
        ledger.debit(other.id, None, 1)
        db.commit()

        rows, total = ledger.history(product_id=product.id, page=1, page_size=2)
        assert total == 4
        assert len(rows) == 2
        assert rows[0].id > rows[1].id

        rows, total = ledger.history(product_id=product.id, movement_type=MovementType.IN)
        assert total == 1 and rows[0].quantity == 5

    def test_locks_are_per_key(self):
        locks = KeyedLocks()
        assert locks.lock_for((1, None)) is locks.lock_for((1, None))
        assert locks.lock_for((1, None)) is not locks.lock_for((1, 2))
        assert locks.lock_for((1, 2)) is not locks.lock_for((2, 2))
