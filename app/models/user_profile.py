# app/models/user_profile.py
from sqlalchemy import Column, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base

class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    # Weak pointers: the profile records which binding / nickname is primary, it does not own them
    primary_authme_binding_id = Column(
        Integer, ForeignKey("user_authme_bindings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    primary_minecraft_profile_id = Column(
        Integer, ForeignKey("user_minecraft_profiles.id", ondelete="SET NULL"), nullable=True
    )
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="profile")
