# app/routes/auth.py
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from datetime import datetime, timezone

from app.services.deps import get_db, get_current_user, get_directory, get_ledger
from app.services.account_directory import AccountDirectory
from app.services.binding_ledger import BindingLedger
from app.services.permissions import permission_keys
from app.models.user import User
from app.models.user_profile import UserProfile
from app.models.role import Role
from app.schemas.auth import (
    RegisterRequest,
    LoginRequest,
    LoginResponse,
    UserInfo,
    SessionUserOut,
)
from app.core.security import (
    verify_password,
    hash_password,
    create_jwt_token,
    validate_password_strength
)
from app.services.audit import log_auth_event, client_ip

router = APIRouter(prefix="/api/auth", tags=["auth"])


def build_user_info(user: User) -> UserInfo:
    """Helper to build UserInfo from User model."""
    return UserInfo(
        userId=user.id,
        email=user.email,
        displayName=user.display_name,
        roles=[r.key for r in user.roles] if user.roles else [],
        permissions=sorted(permission_keys(user)),
        lastLoginAt=user.last_login_at,
    )


def build_jwt_for_user(user: User) -> str:
    """Helper to build JWT token for user."""
    return create_jwt_token({
        "sub": str(user.id),
        "email": user.email,
        "roleKeys": [r.key for r in user.roles] if user.roles else [],
    })


@router.post("/register", response_model=LoginResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
    directory: AccountDirectory = Depends(get_directory),
):
    """
    Create a site account with the default `user` role and return a JWT.
    """
    is_valid, error_msg = validate_password_strength(payload.password)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_msg)

    email = payload.email.strip().lower()
    if directory.find_user_by_email(email):
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        email=email,
        display_name=payload.displayName or email.split("@")[0],
        hashed_password=hash_password(payload.password),
        last_login_at=datetime.now(timezone.utc),
        last_login_ip=client_ip(request),
    )
    default_role = db.query(Role).filter(Role.key == "user").first()
    if default_role:
        user.roles = [default_role]
    db.add(user)
    db.flush()
    db.add(UserProfile(user_id=user.id))

    log_auth_event(db=db, event_type="register", user_id=user.id, request=request)
    db.commit()
    db.refresh(user)

    return LoginResponse(
        access_token=build_jwt_for_user(user),
        token_type="bearer",
        user=build_user_info(user)
    )


@router.post("/login", response_model=LoginResponse)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    directory: AccountDirectory = Depends(get_directory),
):
    """
    Email + password login.
    """
    email = payload.email.strip().lower()
    user = directory.find_user_by_email(email)

    if not user or not user.hashed_password or not verify_password(payload.password, user.hashed_password):
        log_auth_event(
            db=db,
            event_type="login_failed",
            user_id=user.id if user else None,
            request=request,
            metadata={"email": email, "reason": "invalid_credentials"}
        )
        db.commit()
        raise HTTPException(status_code=401, detail="Invalid email or password")

    user.last_login_at = datetime.now(timezone.utc)
    user.last_login_ip = client_ip(request)

    log_auth_event(db=db, event_type="login_success", user_id=user.id, request=request)
    db.commit()
    db.refresh(user)

    return LoginResponse(
        access_token=build_jwt_for_user(user),
        token_type="bearer",
        user=build_user_info(user)
    )


def build_session_user(user: User, ledger: BindingLedger) -> SessionUserOut:
    """Current user with AuthMe bindings merged with live AuthMe / LuckPerms data."""
    snapshots = ledger.user_snapshots(user.id)
    return SessionUserOut(
        user=build_user_info(user),
        primaryAuthmeBindingId=ledger.directory.primary_binding_id(user.id),
        authmeBindings=snapshots["bindings"],
        luckperms=snapshots["permissionsSnapshots"],
        sourceStatus=snapshots["sourceStatus"],
    )


@router.get("/me", response_model=SessionUserOut)
def get_me(
    current_user: User = Depends(get_current_user),
    ledger: BindingLedger = Depends(get_ledger),
):
    return build_session_user(current_user, ledger)
