"""Seed a development database with accounts and a small variant catalogue.

    python populate_db.py

Stock is booked through the inventory ledger, so the seeded movements already
sum to the seeded counters.
"""
import os
import sys
import logging

# Add 'backend' folder to Python path
sys.path.append(os.path.abspath(os.path.dirname(__file__)))

from sqlalchemy.orm import Session

from database import SessionLocal, init_db
from models.product import Product, ProductVariant
from models.users import User
from services.inventory import InventoryLedger
from services.variants import AttributeSet
from utils.hashing import get_password_hash

logger = logging.getLogger(__name__)

# (email, password, role)
ACCOUNTS = [
    ("admin@example.com", "admin123", "ADMIN"),
    ("staff@example.com", "staff123", "STAFF"),
    ("customer@example.com", "customer123", "CUSTOMER"),
]

# name, price, base stock, variants as (attributes, price adjustment, stock)
CATALOGUE = [
    ("Cotton T-Shirt", 150000, 0, [
        ({"Size": "S", "Color": "White"}, 0, 25),
        ({"Size": "M", "Color": "White"}, 0, 40),
        ({"Size": "L", "Color": "White"}, 10000, 15),
        ({"Size": "M", "Color": "Black"}, 5000, 8),
    ]),
    ("Canvas Tote Bag", 90000, 60, []),
    ("Ceramic Mug", 120000, 0, [
        ({"Capacity": "300ml"}, 0, 30),
        ({"Capacity": "450ml"}, 20000, 5),
    ]),
]


def populate(session: Session) -> dict:
    created = {"users": 0, "products": 0, "variants": 0}

    admin = None
    for email, password, role in ACCOUNTS:
        user = session.query(User).filter(User.email == email).first()
        if not user:
            user = User(email=email, password_hash=get_password_hash(password), role=role)
            session.add(user)
            created["users"] += 1
        if role == "ADMIN":
            admin = user
    session.flush()

    ledger = InventoryLedger(session)
    for name, price, base_stock, variants in CATALOGUE:
        if session.query(Product).filter(Product.name == name).first():
            continue
        product = Product(name=name, price=price, stock_quantity=0, is_active=True)
        session.add(product)
        session.flush()
        created["products"] += 1

        if base_stock:
            ledger.stock_in(base_stock, product_id=product.id, reason="Seed", actor_id=admin.id)
        for attributes, adjustment, stock in variants:
            attrs = AttributeSet.of(attributes)
            variant = ProductVariant(
                product_id=product.id, attributes=attrs.as_dict(), attribute_key=attrs.key,
                price_adjustment=adjustment, stock_quantity=0, is_active=True,
            )
            session.add(variant)
            session.flush()
            created["variants"] += 1
            ledger.stock_in(stock, product_id=product.id, variant_id=variant.id, reason="Seed", actor_id=admin.id)

    session.commit()
    return created


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
    session = SessionLocal()
    try:
        logger.info("Seeded: %s", populate(session))
    finally:
        session.close()
