# app/services/seed.py
import logging

from sqlalchemy.orm import Session

from app.core import config
from app.core.security import hash_password
from app.models.role import Permission, Role
from app.models.user import User
from app.models.user_profile import UserProfile
from app.services.permissions import DEFAULT_PERMISSIONS, PERMISSION_DESCRIPTIONS

logger = logging.getLogger("portal.seed")
logger.setLevel(logging.INFO)

SYSTEM_ROLES = {
    "admin": ("Administrator", list(DEFAULT_PERMISSIONS.values())),
    "user": ("User", []),
}


def seed_rbac_defaults(db: Session) -> None:
    """
    Ensure default permissions and the system roles exist.
    Safe to run on every startup.
    """
    # 1. Permissions
    existing = {p.key: p for p in db.query(Permission).all()}
    for key in DEFAULT_PERMISSIONS.values():
        if key not in existing:
            perm = Permission(key=key, description=PERMISSION_DESCRIPTIONS.get(key))
            db.add(perm)
            existing[key] = perm
            logger.info(f"Created permission {key}")
    db.flush()

    # 2. System roles
    for role_key, (name, perm_keys) in SYSTEM_ROLES.items():
        role = db.query(Role).filter(Role.key == role_key).first()
        if not role:
            role = Role(key=role_key, name=name, is_system=True)
            db.add(role)
            logger.info(f"Created system role {role_key}")
        # admin always holds every default permission
        current = {p.key for p in role.permissions}
        for key in perm_keys:
            if key not in current:
                role.permissions.append(existing[key])

    db.commit()

    # 3. Initial admin (optional)
    if config.INITIAL_ADMIN_EMAIL and config.INITIAL_ADMIN_PASSWORD:
        seed_initial_admin(db, config.INITIAL_ADMIN_EMAIL, config.INITIAL_ADMIN_PASSWORD)


def seed_initial_admin(db: Session, email: str, password: str) -> User:
    email = email.strip().lower()
    user = db.query(User).filter(User.email == email).first()
    if user:
        return user
    admin_role = db.query(Role).filter(Role.key == "admin").first()
    user = User(email=email, display_name="Administrator", hashed_password=hash_password(password))
    if admin_role:
        user.roles = [admin_role]
    db.add(user)
    db.flush()
    db.add(UserProfile(user_id=user.id))
    db.commit()
    logger.info(f"Created initial admin {email}")
    return user
