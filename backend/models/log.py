from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, func
from database import Base

# Audit trail of customer and staff actions (who did what to which resource)
class Log(Base):
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, index=True)

    ts = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String(50), index=True)
    resource = Column(String(50), index=True)
    # SUCCESS | FAIL
    status = Column(String(20), index=True)
    ip = Column(String(64), nullable=True)

    # e.g. {"order_id": 7, "from": "pending", "to": "confirmed"}
    meta = Column(JSON, nullable=True)
