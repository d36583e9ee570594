import enum

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, CheckConstraint, func
from sqlalchemy.orm import relationship
from database import Base


def _enum_column(enum_cls):
    # Persist the lowercase values, not the member names
    return Enum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20)


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPING = "shipping"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    COD = "cod"
    ONLINE = "online"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    status = Column(_enum_column(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    payment_method = Column(_enum_column(PaymentMethod), nullable=False)
    payment_status = Column(_enum_column(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)

    # Integer minor units
    subtotal = Column(Integer, nullable=False)
    shipping_fee = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False)

    shipping_address = Column(String, nullable=False)
    notes = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    cancel_reason = Column(String, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Shipping provider details
    shipping_provider = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)

    # Payment gateway details
    payment_url = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id")
    status_log = relationship("OrderStatusLog", back_populates="order", order_by="OrderStatusLog.id")

    __table_args__ = (
        CheckConstraint("total = subtotal + shipping_fee", name="ck_order_total"),
        CheckConstraint("shipping_fee >= 0", name="ck_order_shipping_fee"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=True)
    qty = Column(Integer, CheckConstraint("qty >= 1"), nullable=False)

    # Snapshot taken when the order is placed; never follows live prices
    unit_price = Column(Integer, nullable=False)
    product_name = Column(String, nullable=False)
    variant_label = Column(String, nullable=True)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
    variant = relationship("ProductVariant")

    @property
    def line_total(self) -> int:
        return self.unit_price * self.qty


# Append-only history of accepted status transitions
class OrderStatusLog(Base):
    __tablename__ = "order_status_log"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    note = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="status_log")
