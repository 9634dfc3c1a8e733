import logging
from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session, joinedload
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from app.core import config
from app.core.database import SessionLocal
from app.core.errors import PermissionDenied, ValidationError
from app.core.security import decode_jwt_token
from app.models.user import User
from app.services.account_directory import AccountDirectory
from app.services.authme_bridge import AuthmeBridge
from app.services.binding_ledger import BindingLedger
from app.services.luckperms_bridge import LuckpermsBridge
from app.services.permissions import has_permission

logger = logging.getLogger("portal.deps")
logger.setLevel(logging.INFO)

oauth2_scheme = HTTPBearer()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_current_user(
    token: HTTPAuthorizationCredentials = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> User:
    token_str = token.credentials
    try:
        payload = decode_jwt_token(token_str)
        sub = payload.get("sub")
        if sub is None:
            raise HTTPException(401, "Invalid token")
        user_id = int(sub)
    except (JWTError, ValueError):
        raise HTTPException(401, "Invalid token")

    # Eager-load roles for permission checks
    user = (
        db.query(User)
        .options(joinedload(User.roles))
        .filter(User.id == user_id)
        .first()
    )
    if not user:
        raise HTTPException(401, "User no longer exists")
    return user

def has_perm(user: User, perm: str) -> bool:
    return has_permission(user, perm)

def require_perm(perm: str):
    def _inner(user: User = Depends(get_current_user)):
        if not has_perm(user, perm):
            logger.info(f"User {user.id} denied: missing {perm}")
            raise PermissionDenied("Not allowed")
        return user
    return _inner

def require_binding_enabled():
    if not config.AUTHME_BINDING_ENABLED:
        raise ValidationError("AuthMe binding is not enabled", code="AUTHME_BINDING_DISABLED")

def get_authme_bridge() -> AuthmeBridge:
    return AuthmeBridge.get_instance()

def get_luckperms_bridge() -> LuckpermsBridge:
    return LuckpermsBridge.get_instance()

def get_directory(db: Session = Depends(get_db)) -> AccountDirectory:
    return AccountDirectory(db)

def get_ledger(
    directory: AccountDirectory = Depends(get_directory),
    authme: AuthmeBridge = Depends(get_authme_bridge),
    luckperms: LuckpermsBridge = Depends(get_luckperms_bridge),
) -> BindingLedger:
    return BindingLedger(directory, authme, luckperms)
