# app/services/permissions.py
from typing import Iterable

from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.models.user import User
from app.models.role import Permission


DEFAULT_PERMISSIONS = {
    "MANAGE_USERS": "auth.manage.users",
    "MANAGE_CONTACT_CHANNELS": "auth.manage.contact-channels",
    "MANAGE_ROLES": "auth.manage.roles",
}

PERMISSION_DESCRIPTIONS = {
    "auth.manage.users": "Manage users, AuthMe bindings and Minecraft profiles",
    "auth.manage.contact-channels": "Manage contact channels",
    "auth.manage.roles": "Manage roles, permissions and permission labels",
}

MANAGE_USERS = DEFAULT_PERMISSIONS["MANAGE_USERS"]
MANAGE_ROLES = DEFAULT_PERMISSIONS["MANAGE_ROLES"]


def permission_keys(user: User) -> set[str]:
    """Union of permission keys reachable from the user's roles and permission labels."""
    granted: set[str] = set()
    for role in (user.roles or []):
        for p in (role.permissions or []):
            granted.add(p.key)
    for label in (user.permission_labels or []):
        for p in (label.permissions or []):
            granted.add(p.key)
    return granted


def has_permission(user: User, key: str) -> bool:
    return key in permission_keys(user)


def resolve_permissions(db: Session, keys: Iterable[str]) -> list[Permission]:
    """Load Permission rows for the given keys; unknown keys are a validation error."""
    wanted = sorted(set(keys))
    if not wanted:
        return []
    rows = db.query(Permission).filter(Permission.key.in_(wanted)).all()
    missing = set(wanted) - {p.key for p in rows}
    if missing:
        raise ValidationError(f"Unknown permission keys: {', '.join(sorted(missing))}", code="UNKNOWN_PERMISSION")
    return rows
