# backend/models/idempotency.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint, func
from database import Base

# Remembers which order a client-supplied Idempotency-Key produced, so a
# retried checkout request returns the same order instead of placing another.
class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    id = Column(Integer, primary_key=True)
    key = Column(String(128), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    request_hash = Column(String(64), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "key", name="uq_idempotency_user_key"),
    )
