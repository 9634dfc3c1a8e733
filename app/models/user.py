from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Table, func
from sqlalchemy.orm import relationship
from app.core.database import Base


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

user_permission_labels = Table(
    "user_permission_labels",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("label_id", Integer, ForeignKey("permission_labels.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)  # stored lowercased
    display_name = Column(String(80), nullable=True)
    hashed_password = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_login_ip = Column(String(45), nullable=True)

    # Relationships
    roles = relationship("Role", secondary=user_roles, back_populates="users", lazy="joined")
    permission_labels = relationship("PermissionLabel", secondary=user_permission_labels, back_populates="users", lazy="selectin")
    profile = relationship("UserProfile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    authme_bindings = relationship(
        "UserAuthmeBinding",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="UserAuthmeBinding.bound_at",
        foreign_keys="UserAuthmeBinding.user_id",
    )
    minecraft_profiles = relationship(
        "UserMinecraftProfile",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="UserMinecraftProfile.created_at",
    )
