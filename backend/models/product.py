# backend/models/product.py
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, CheckConstraint, JSON, DateTime, func
from sqlalchemy.orm import relationship
from database import Base

# Model Product
# A sellable catalogue entry. Prices are integer minor units.
# stock_quantity is the base stock, used only when the product has no variants.
class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    description = Column(String)

    price = Column(Integer, CheckConstraint("price >= 0"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Nullable so a broken stock record can be told apart from zero stock
    stock_quantity = Column(Integer, nullable=True, default=0)
    low_stock_threshold = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    variants = relationship("ProductVariant", back_populates="product", order_by="ProductVariant.id")


# Model ProductVariant
# A concrete configuration of a product (e.g. Size=M, Color=Red) with its own
# stock and a signed price adjustment added to Product.price.
class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    sku = Column(String, nullable=True, unique=True)

    # Raw {"Size": "M", "Color": "Red"} mapping as submitted
    attributes = Column(JSON, nullable=False, default=dict)
    # Canonical form of `attributes`, see services.variants.AttributeSet.key
    attribute_key = Column(String, nullable=False, index=True)

    price_adjustment = Column(Integer, nullable=False, default=0)
    stock_quantity = Column(Integer, nullable=True, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    product = relationship("Product", back_populates="variants")
