# app/models/__init__.py
from app.core.database import Base  # re-export for convenience

# Import all model modules so their tables attach to Base.metadata
from app.models.user import User
from app.models.role import Role, Permission, PermissionLabel
from app.models.user_profile import UserProfile
from app.models.authme_binding import UserAuthmeBinding, AuthmeBindingHistory, AuthmeBindingAction
from app.models.minecraft_profile import UserMinecraftProfile
from app.models.lifecycle_event import UserLifecycleEvent
from app.models.auth_audit_log import AuthAuditLog

__all__ = [
    "Base",
    "User",
    "Role",
    "Permission",
    "PermissionLabel",
    "UserProfile",
    "UserAuthmeBinding",
    "AuthmeBindingHistory",
    "AuthmeBindingAction",
    "UserMinecraftProfile",
    "UserLifecycleEvent",
    "AuthAuditLog",
]
