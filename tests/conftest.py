"""
Pytest fixtures for the storefront backend.

Provides:
- a fresh file-backed SQLite database per test (threads need real connections)
- builders for users, products, variants and carts
- a FastAPI TestClient with the database, the caller and the gateways overridden
"""
import os
import tempfile

# Settings are read on first import; point them at a scratch database and keep
# the real gateways unconfigured before any application module loads
_SCRATCH = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_SCRATCH}/app.db"
os.environ["GHN_TOKEN"] = ""
os.environ["VNPAY_TMN_CODE"] = ""
os.environ["VNPAY_HASH_SECRET"] = ""
os.environ["NOTIFY_WEBHOOK_URL"] = ""

from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

import models  # noqa: F401
from database import Base, get_db, make_engine
from models.cart import Cart, CartItem
from models.product import Product, ProductVariant
from models.users import User
from services.inventory import KeyedLocks
from services.notifications import NotificationEmitter
from services.payment import PaymentDispatcher
from services.shipping import ShippingFeeAdapter
from services.variants import AttributeSet


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def events() -> List[object]:
    return []


@pytest.fixture
def emitter(events) -> NotificationEmitter:
    return NotificationEmitter([events.append])


# ---- builders ----

def _null_stock(db, model, row_id):
    # The ORM drops an explicit None in favour of the column default
    db.execute(update(model).where(model.id == row_id).values(stock_quantity=None))
    db.commit()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role: str = "CUSTOMER", email: Optional[str] = None) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            password_hash="not-a-real-hash",
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_product(db):
    def _make(
        name: str = "Widget",
        price: int = 100_000,
        stock: Optional[int] = 10,
        threshold: Optional[int] = None,
        active: bool = True,
    ) -> Product:
        product = Product(
            name=name, price=price, stock_quantity=stock, low_stock_threshold=threshold, is_active=active,
        )
        db.add(product)
        db.commit()
        if stock is None:
            _null_stock(db, Product, product.id)
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def make_variant(db):
    def _make(
        product: Product,
        attributes: Dict[str, str],
        stock: Optional[int] = 10,
        adjustment: int = 0,
        active: bool = True,
    ) -> ProductVariant:
        attrs = AttributeSet.of(attributes)
        variant = ProductVariant(
            product_id=product.id,
            attributes=attrs.as_dict(),
            attribute_key=attrs.key,
            price_adjustment=adjustment,
            stock_quantity=stock,
            is_active=active,
        )
        db.add(variant)
        db.commit()
        if stock is None:
            _null_stock(db, ProductVariant, variant.id)
        db.refresh(variant)
        return variant

    return _make


@pytest.fixture
def fill_cart(db):
    def _fill(user: User, *lines) -> Cart:
        """lines: (product, qty) or (product, variant, qty)."""
        cart = db.query(Cart).filter(Cart.user_id == user.id, Cart.status == "open").first()
        if cart is None:
            cart = Cart(user_id=user.id, status="open")
            db.add(cart)
            db.flush()
        for line in lines:
            product, variant, qty = line if len(line) == 3 else (line[0], None, line[1])
            db.add(CartItem(
                cart_id=cart.id, product_id=product.id, variant_id=variant.id if variant else None, qty=qty,
            ))
        db.commit()
        db.refresh(cart)
        return cart

    return _fill


# ---- gateway doubles ----

class StubGateway:
    """Payment gateway double: returns ``url`` or raises ``error``."""

    def __init__(self, url: Optional[str] = None, error: Optional[Exception] = None):
        self.url = url
        self.error = error
        self.calls = 0

    def create_payment_url(self, order, client_ip):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.url


class UnconfiguredShippingClient:
    configured = False


@pytest.fixture
def stub_gateway():
    return StubGateway(url="https://pay.example.com/redirect?ref=1")


# ---- API ----

@pytest.fixture
def api(session_factory, emitter, stub_gateway):
    from fastapi.testclient import TestClient

    from main import app
    from routes.deps import get_emitter, get_payment_dispatcher, get_shipping_adapter
    from utils.tokenJWT import get_current_user

    caller = {"user": None}

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def _current_user():
        if caller["user"] is None:
            raise AssertionError("call api.login(user) first")
        return caller["user"]

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = _current_user
    app.dependency_overrides[get_emitter] = lambda: emitter
    app.dependency_overrides[get_payment_dispatcher] = lambda: PaymentDispatcher(stub_gateway)
    app.dependency_overrides[get_shipping_adapter] = lambda: ShippingFeeAdapter(
        UnconfiguredShippingClient(), default_fee=30_000, default_days=3,
    )

    client = TestClient(app)

    def login(user: User):
        # Detached copy: the route must not depend on the test's session
        caller["user"] = SimpleNamespace(id=user.id, email=user.email, role=user.role, full_name=None)
        return client

    client.login = login
    yield client
    app.dependency_overrides.clear()
