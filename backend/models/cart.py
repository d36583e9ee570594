from sqlalchemy import Column, Integer, ForeignKey, String, DateTime, CheckConstraint, UniqueConstraint, func
from sqlalchemy.orm import relationship
from database import Base

# Represents the user's shopping cart
class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    status = Column(String, default="open", index=True)  # open | ordered
    created_at = Column(DateTime, server_default=func.now())

    items = relationship("CartItem", back_populates="cart", cascade="all, delete-orphan", order_by="CartItem.id")


# A single (product, variant) line within a cart. No price is stored here:
# prices are resolved when the order is placed.
class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), index=True, nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), index=True, nullable=True)
    qty = Column(Integer, CheckConstraint("qty >= 1"), nullable=False, default=1)

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")
    variant = relationship("ProductVariant")

    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", "variant_id", name="uq_cartitem_cart_product_variant"),
    )
