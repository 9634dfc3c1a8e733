from sqlalchemy import Column, BigInteger, Integer, String, DateTime, ForeignKey, func
from app.core.database import Base, JSONType


class UserLifecycleEvent(Base):
    __tablename__ = "user_lifecycle_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(40), nullable=False)  # ACCOUNT_BIND, ACCOUNT_UNBIND, REGISTER
    occurred_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    source = Column(String(50), nullable=True)
    event_metadata = Column("metadata", JSONType, nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
