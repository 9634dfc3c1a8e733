from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Text, ForeignKey, func
from sqlalchemy.orm import relationship
from app.core.database import Base, JSONType


class AuthAuditLog(Base):
    __tablename__ = "auth_audit_log"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)  # actor
    event_type = Column(String(50), nullable=False, index=True)  # login_success, login_failed, register, unbind_authme, ...
    target_type = Column(String(40), nullable=True)  # authme_binding, user, role
    target_id = Column(String(64), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    event_metadata = Column("metadata", JSONType, nullable=True)  # Map to 'metadata' column in DB
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)

    # Relationship
    user = relationship("User", foreign_keys=[user_id])
