# app/models/minecraft_profile.py
from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.core.database import Base, JSONType


# Nickname / alias record; may point at an AuthMe binding but never owns it
class UserMinecraftProfile(Base):
    __tablename__ = "user_minecraft_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    authme_binding_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("user_authme_bindings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    authme_uuid: Mapped[str | None] = mapped_column(String(36), nullable=True)
    nickname: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="MANUAL")  # MANUAL, AUTHME, IMPORT
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_note: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_metadata: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    user = relationship("User", back_populates="minecraft_profiles")
