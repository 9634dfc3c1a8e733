# app/models/authme_binding.py
from __future__ import annotations
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Integer, String, DateTime, Text, ForeignKey, UniqueConstraint, Index, Enum as SAEnum
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.core.database import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthmeBindingAction(str, enum.Enum):
    BIND = "BIND"
    UPDATE = "UPDATE"
    MANUAL_ENTRY = "MANUAL_ENTRY"
    PRIMARY_SET = "PRIMARY_SET"
    PRIMARY_UNSET = "PRIMARY_UNSET"
    TRANSFER = "TRANSFER"
    UNBIND = "UNBIND"


# Link between a site user and one AuthMe account
class UserAuthmeBinding(Base):
    __tablename__ = "user_authme_bindings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    authme_username: Mapped[str] = mapped_column(String(64), nullable=False)
    authme_username_lower: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    authme_realname: Mapped[str | None] = mapped_column(String(64), nullable=True)
    authme_uuid: Mapped[str | None] = mapped_column(String(36), nullable=True)  # filled lazily from LuckPerms
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    binding_metadata: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    bound_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    bound_by_user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    bound_by_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="authme_bindings", foreign_keys=[user_id])

    __table_args__ = (
        UniqueConstraint("user_id", "authme_username_lower", name="uq_authme_binding_user_username"),
        # never hand out the id of a deleted binding again
        {"sqlite_autoincrement": True},
    )


# Append-only audit trail; rows are never updated or deleted.
# binding_id / user_id / operator_id are plain columns so a row survives the binding and keeps its values.
class AuthmeBindingHistory(Base):
    __tablename__ = "authme_binding_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    binding_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    operator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    authme_username: Mapped[str] = mapped_column(String(64), nullable=False)
    authme_username_lower: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    authme_realname: Mapped[str | None] = mapped_column(String(64), nullable=True)
    authme_uuid: Mapped[str | None] = mapped_column(String(36), nullable=True)
    action: Mapped[AuthmeBindingAction] = mapped_column(
        SAEnum(AuthmeBindingAction, name="authme_binding_action", native_enum=False, length=20), nullable=False
    )
    reason: Mapped[str | None] = mapped_column(String(120), nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    binding = relationship(
        "UserAuthmeBinding",
        primaryjoin=(
            "and_(foreign(AuthmeBindingHistory.binding_id) == UserAuthmeBinding.id, "
            "foreign(AuthmeBindingHistory.authme_username_lower) == UserAuthmeBinding.authme_username_lower)"
        ),
        viewonly=True,
    )
    operator = relationship(
        "User",
        primaryjoin="foreign(AuthmeBindingHistory.operator_id) == User.id",
        viewonly=True,
    )

    __table_args__ = (
        Index("ix_authme_binding_history_user_created", "user_id", "created_at"),
    )
