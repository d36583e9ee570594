# backend/models/stock.py
import enum

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Enum, UniqueConstraint, event, func
from sqlalchemy.orm import relationship
from database import Base
from services.errors import LedgerImmutable


class MovementType(str, enum.Enum):
    IN = "in"
    OUT = "out"
    ADJUSTMENT = "adjustment"


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=True, index=True)

    type = Column(
        Enum(MovementType, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        nullable=False,
        index=True,
    )

    # Signed delta: negative for `out`, positive for `in`, either for `adjustment`
    quantity = Column(Integer, nullable=False)
    previous_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)

    reason = Column(String, nullable=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    product = relationship("Product")
    variant = relationship("ProductVariant")


# Movements are history: corrections are new rows, never edits
@event.listens_for(StockMovement, "before_update")
def _movement_is_immutable(mapper, connection, target):
    raise LedgerImmutable(f"StockMovement {target.id} cannot be updated")


@event.listens_for(StockMovement, "before_delete")
def _movement_is_undeletable(mapper, connection, target):
    raise LedgerImmutable(f"StockMovement {target.id} cannot be deleted")


# One standing low-stock record per (product, variant)
class StockAlert(Base):
    __tablename__ = "stock_alerts"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=True, index=True)

    threshold = Column(Integer, nullable=False)
    current_stock = Column(Integer, nullable=False)
    is_notified = Column(Boolean, nullable=False, default=False)
    notified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    product = relationship("Product")
    variant = relationship("ProductVariant")

    __table_args__ = (
        UniqueConstraint("product_id", "variant_id", name="uq_stock_alert_product_variant"),
    )

    @property
    def is_below_threshold(self) -> bool:
        return self.current_stock <= self.threshold
