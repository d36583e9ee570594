import pytest

from models.cart import Cart
from models.idempotency import IdempotencyKey
from models.order import Order, OrderStatus, OrderStatusLog, PaymentMethod, PaymentStatus
from models.product import Product, ProductVariant
from models.stock import MovementType, StockMovement
from services.checkout import CheckoutService, generate_order_number
from services.errors import (
    EmptyCart, GatewayError, IdempotencyKeyReused, IncompleteSelection, InsufficientStock,
    InvalidShippingFee, MissingAddress, ProductInactiveOrMissing, VariantInactiveOrMissing,
)
from services.inventory import InventoryLedger
from services.notifications import OrderStatusChanged
from services.payment import PaymentDispatcher
from services.reservation import ReservationLine, StockReservation, merge_lines

from conftest import StubGateway


@pytest.fixture
def checkout(db, locks, emitter):
    def _make(gateway=None) -> CheckoutService:
        return CheckoutService(
            db,
            ledger=InventoryLedger(db, locks=locks, default_threshold=5),
            dispatcher=PaymentDispatcher(gateway),
            emitter=emitter,
        )
    return _make


def _place(service, user, **overrides):
    kwargs = dict(shipping_address="12 Nguyen Hue, District 1, HCMC", payment_method=PaymentMethod.COD,
                  shipping_fee=30_000)
    kwargs.update(overrides)
    return service.place_order(user.id, **kwargs)


class TestPlaceOrder:
    def test_order_is_priced_and_stock_debited(self, db, checkout, make_user, make_product, make_variant, fill_cart):
        user = make_user()
        mug = make_product(name="Mug", price=120_000, stock=0)
        large = make_variant(mug, {"Capacity": "450ml"}, stock=6, adjustment=20_000)
        bag = make_product(name="Bag", price=90_000, stock=10)
        fill_cart(user, (mug, large, 2), (bag, 1))

        placed = _place(checkout(), user)
        order = placed.order

        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.order_number.startswith("ORD-")
        assert order.subtotal == 2 * 140_000 + 90_000
        assert order.total == order.subtotal + order.shipping_fee == 400_000
        assert [(i.product_name, i.variant_label, i.qty, i.unit_price) for i in order.items] == [
            ("Mug", "Capacity: 450ml", 2, 140_000),
            ("Bag", None, 1, 90_000),
        ]
        db.expire_all()
        assert db.get(ProductVariant, large.id).stock_quantity == 4
        assert db.get(Product, bag.id).stock_quantity == 9
        movements = db.query(StockMovement).filter(StockMovement.order_id == order.id).all()
        assert sorted(m.quantity for m in movements) == [-2, -1]
        assert all(m.type == MovementType.OUT for m in movements)

    def test_cart_is_consumed_and_history_started(self, db, checkout, make_user, make_product, fill_cart, events):
        user = make_user()
        product = make_product(stock=10)
        cart = fill_cart(user, (product, 1))

        placed = _place(checkout(), user)

        db.expire_all()
        assert db.get(Cart, cart.id).status == "ordered"
        log = db.query(OrderStatusLog).filter(OrderStatusLog.order_id == placed.order.id).all()
        assert [(r.old_status, r.new_status) for r in log] == [(None, "pending")]
        created = [e for e in events if isinstance(e, OrderStatusChanged)]
        assert created[0].new_status == "pending"

    def test_prices_come_from_the_live_catalogue(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        product = make_product(price=100_000, stock=10)
        fill_cart(user, (product, 1))
        product.price = 80_000
        db.commit()

        placed = _place(checkout(), user, shipping_fee=0)
        assert placed.order.total == 80_000

    def test_low_stock_event_after_commit(self, checkout, make_user, make_product, fill_cart, events):
        user = make_user()
        product = make_product(stock=6)
        fill_cart(user, (product, 2))

        _place(checkout(), user)
        low = [e for e in events if type(e).__name__ == "LowStockEvent"]
        assert len(low) == 1 and low[0].current_stock == 4


class TestValidation:
    def test_missing_address(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        fill_cart(user, (make_product(), 1))
        with pytest.raises(MissingAddress):
            _place(checkout(), user, shipping_address="   ")
        assert db.query(Order).count() == 0

    def test_empty_cart(self, checkout, make_user):
        with pytest.raises(EmptyCart):
            _place(checkout(), make_user())

    def test_negative_shipping_fee(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        fill_cart(user, (make_product(), 1))
        with pytest.raises(InvalidShippingFee):
            _place(checkout(), user, shipping_fee=-1)
        assert db.query(Order).count() == 0

    def test_cart_line_without_required_variant(self, checkout, make_user, make_product, make_variant, fill_cart):
        user = make_user()
        product = make_product()
        make_variant(product, {"Size": "M"})
        fill_cart(user, (product, 1))
        with pytest.raises(IncompleteSelection):
            _place(checkout(), user)

    def test_product_retired_after_adding_to_cart(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        product = make_product()
        fill_cart(user, (product, 1))
        product.is_active = False
        db.commit()

        with pytest.raises(ProductInactiveOrMissing):
            _place(checkout(), user)
        assert db.query(StockMovement).count() == 0

    def test_variant_retired_after_adding_to_cart(self, db, checkout, make_user, make_product, make_variant, fill_cart):
        user = make_user()
        product = make_product()
        variant = make_variant(product, {"Size": "M"})
        fill_cart(user, (product, variant, 1))
        variant.is_active = False
        db.commit()

        with pytest.raises(VariantInactiveOrMissing):
            _place(checkout(), user)


class TestAtomicity:
    def test_size_m_out_of_stock_size_l_available(self, db, checkout, make_user, make_product, make_variant, fill_cart):
        product = make_product(name="Tee", stock=0)
        size_m = make_variant(product, {"Size": "M"}, stock=0)
        size_l = make_variant(product, {"Size": "L"}, stock=10)

        first = make_user()
        fill_cart(first, (product, size_m, 1))
        with pytest.raises(InsufficientStock) as exc:
            _place(checkout(), first)
        assert exc.value.details["available"] == 0

        second = make_user()
        fill_cart(second, (product, size_l, 1))
        _place(checkout(), second)
        db.expire_all()
        assert db.get(ProductVariant, size_l.id).stock_quantity == 9

    def test_failure_on_later_line_undoes_earlier_lines(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        plenty = make_product(name="Plenty", stock=10)
        scarce = make_product(name="Scarce", stock=1)
        cart = fill_cart(user, (plenty, 3), (scarce, 2))

        with pytest.raises(InsufficientStock):
            _place(checkout(), user)

        db.expire_all()
        assert db.get(Product, plenty.id).stock_quantity == 10
        assert db.get(Product, scarce.id).stock_quantity == 1
        assert db.query(StockMovement).count() == 0
        assert db.query(Order).count() == 0
        assert db.get(Cart, cart.id).status == "open"

    def test_reservation_alone_rolls_back(self, db, locks, make_product):
        first, second = make_product(name="A", stock=5), make_product(name="B", stock=0)
        ledger = InventoryLedger(db, locks=locks)
        with pytest.raises(InsufficientStock):
            StockReservation(ledger).reserve([ReservationLine(first.id, None, 2), ReservationLine(second.id, None, 1)])
        db.expire_all()
        assert db.get(Product, first.id).stock_quantity == 5
        assert db.query(StockMovement).count() == 0
        assert ledger.pending_events == []

    def test_lines_on_same_key_are_merged_in_lock_order(self):
        merged = merge_lines([
            ReservationLine(2, None, 1), ReservationLine(1, 5, 2), ReservationLine(2, None, 3), ReservationLine(1, None, 1),
        ])
        assert merged == [ReservationLine(1, None, 1), ReservationLine(1, 5, 2), ReservationLine(2, None, 4)]


class TestPayment:
    def test_cod_needs_no_gateway(self, checkout, make_user, make_product, fill_cart):
        user = make_user()
        fill_cart(user, (make_product(), 1))
        gateway = StubGateway(url="https://pay.example.com/x")
        placed = _place(checkout(gateway), user)
        assert gateway.calls == 0
        assert placed.payment_url is None
        assert placed.warnings == []

    def test_online_order_gets_payment_url(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        fill_cart(user, (make_product(), 1))
        placed = _place(checkout(StubGateway(url="https://pay.example.com/x")), user,
                        payment_method=PaymentMethod.ONLINE)
        assert placed.payment_url == "https://pay.example.com/x"
        db.expire_all()
        assert db.get(Order, placed.order.id).payment_url == "https://pay.example.com/x"

    def test_gateway_without_url_degrades_to_cod(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        fill_cart(user, (make_product(), 1))
        placed = _place(checkout(StubGateway(url=None)), user, payment_method=PaymentMethod.ONLINE)

        db.expire_all()
        order = db.get(Order, placed.order.id)
        assert order.payment_status == PaymentStatus.PENDING
        assert order.status == OrderStatus.PENDING
        assert placed.payment_url is None
        assert len(placed.warnings) == 1

    def test_unreachable_gateway_is_retried_once_then_degrades(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        fill_cart(user, (make_product(), 1))
        gateway = StubGateway(error=GatewayError("timeout"))
        placed = _place(checkout(gateway), user, payment_method=PaymentMethod.ONLINE)
        assert gateway.calls == 2
        assert placed.warnings
        assert db.query(Order).count() == 1

    def test_unexpected_gateway_crash_keeps_the_order(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        fill_cart(user, (make_product(), 1))
        placed = _place(checkout(StubGateway(error=RuntimeError("boom"))), user, payment_method=PaymentMethod.ONLINE)
        assert placed.warnings
        assert db.query(Order).count() == 1


class TestIdempotency:
    def test_retry_with_same_key_returns_same_order(self, db, checkout, make_user, make_product, fill_cart):
        user = make_user()
        product = make_product(stock=10)
        fill_cart(user, (product, 2))

        first = _place(checkout(), user, idempotency_key="abc-123")
        again = _place(checkout(), user, idempotency_key="abc-123")

        assert again.replayed
        assert again.order.id == first.order.id
        assert db.query(Order).count() == 1
        db.expire_all()
        assert db.get(Product, product.id).stock_quantity == 8
        assert db.query(IdempotencyKey).count() == 1

    def test_same_key_with_different_body_is_rejected(self, checkout, make_user, make_product, fill_cart):
        user = make_user()
        fill_cart(user, (make_product(), 1))
        _place(checkout(), user, idempotency_key="abc-123")
        with pytest.raises(IdempotencyKeyReused):
            _place(checkout(), user, idempotency_key="abc-123", shipping_address="Somewhere else")

    def test_keys_are_scoped_per_user(self, db, checkout, make_user, make_product, fill_cart):
        product = make_product(stock=10)
        alice, bob = make_user(), make_user()
        fill_cart(alice, (product, 1))
        fill_cart(bob, (product, 1))
        _place(checkout(), alice, idempotency_key="same")
        placed = _place(checkout(), bob, idempotency_key="same")
        assert not placed.replayed
        assert db.query(Order).count() == 2


def test_order_numbers_are_unique():
    numbers = {generate_order_number() for _ in range(200)}
    assert len(numbers) == 200
