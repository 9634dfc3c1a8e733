# app/routes/users.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.services.deps import get_db, get_directory, get_ledger, require_perm
from app.services.account_directory import AccountDirectory
from app.services.audit import log_auth_event, client_ip
from app.services.binding_ledger import BindingLedger
from app.services.permissions import MANAGE_USERS
from app.models.user import User
from app.models.role import Role, PermissionLabel
from app.models.minecraft_profile import UserMinecraftProfile
from app.schemas.user import UserOut, UserListOut, UserDetailOut, UserUpdateRoles, UserUpdateLabels
from app.schemas.authme import (
    AuthmeBindingOut,
    BindingSnapshotsOut,
    CreateBindingAdminRequest,
    HistoryPageOut,
    UnbindResponse,
    UpdateBindingAdminRequest,
)
from app.schemas.minecraft_profile import MinecraftProfileIn, MinecraftProfileOut

router = APIRouter(prefix="/api/auth/users", tags=["users"])
admin_guard = require_perm(MANAGE_USERS)


def _to_user_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        email=u.email,
        displayName=u.display_name,
        createdAt=u.created_at,
        lastLoginAt=u.last_login_at,
        lastLoginIp=u.last_login_ip,
        role_ids=[r.id for r in u.roles],
        role_keys=[r.key for r in u.roles],
        role_names=[r.name for r in u.roles],
        label_keys=[lbl.key for lbl in u.permission_labels],
    )


def _to_minecraft_profile_out(p: UserMinecraftProfile) -> MinecraftProfileOut:
    return MinecraftProfileOut(
        id=p.id,
        userId=p.user_id,
        nickname=p.nickname,
        authmeBindingId=p.authme_binding_id,
        authmeUuid=p.authme_uuid,
        isPrimary=p.is_primary,
        source=p.source,
        verifiedAt=p.verified_at,
        verificationNote=p.verification_note,
        metadata=p.profile_metadata,
        createdAt=p.created_at,
    )


@router.get("", response_model=UserListOut)
def list_users(
    keyword: Optional[str] = None,
    page: int = Query(1, ge=1),
    pageSize: int = Query(20, ge=1, le=100),
    directory: AccountDirectory = Depends(get_directory),
    _: User = Depends(admin_guard),
):
    rows, pagination = directory.list_users(keyword, page, pageSize)
    return UserListOut(items=[_to_user_out(u) for u in rows], pagination=pagination)


@router.get("/{user_id}", response_model=UserDetailOut)
def get_user(
    user_id: int,
    ledger: BindingLedger = Depends(get_ledger),
    _: User = Depends(admin_guard),
):
    u = ledger.directory.ensure_user(user_id)
    profile = ledger.directory.get_profile(user_id)
    snapshots = ledger.user_snapshots(user_id)
    return UserDetailOut(
        **_to_user_out(u).model_dump(),
        primaryAuthmeBindingId=profile.primary_authme_binding_id if profile else None,
        primaryMinecraftProfileId=profile.primary_minecraft_profile_id if profile else None,
        authmeBindings=snapshots["bindings"],
        luckperms=snapshots["permissionsSnapshots"],
        sourceStatus=snapshots["sourceStatus"],
        minecraftProfiles=[_to_minecraft_profile_out(p) for p in u.minecraft_profiles],
    )


@router.patch("/{user_id}/roles", response_model=UserOut)
def replace_user_roles(user_id: int, payload: UserUpdateRoles,
                       db: Session = Depends(get_db),
                       current_user: User = Depends(require_perm("auth.manage.roles"))):
    u = db.query(User).filter_by(id=user_id).first()
    if not u:
        raise HTTPException(404, "User not found")
    roles = db.query(Role).filter(Role.id.in_(payload.role_ids)).all() if payload.role_ids else []
    if len(roles) != len(set(payload.role_ids)):
        raise HTTPException(400, "One or more role_ids invalid")
    u.roles = roles
    log_auth_event(db=db, event_type="update_user_roles", user_id=current_user.id,
                   target_type="user", target_id=u.id, metadata={"roleIds": sorted(r.id for r in roles)})
    db.commit()
    db.refresh(u)
    return _to_user_out(u)


@router.patch("/{user_id}/labels", response_model=UserOut)
def replace_user_labels(user_id: int, payload: UserUpdateLabels,
                        db: Session = Depends(get_db),
                        current_user: User = Depends(require_perm("auth.manage.roles"))):
    u = db.query(User).filter_by(id=user_id).first()
    if not u:
        raise HTTPException(404, "User not found")
    labels = (
        db.query(PermissionLabel).filter(PermissionLabel.id.in_(payload.label_ids)).all()
        if payload.label_ids else []
    )
    if len(labels) != len(set(payload.label_ids)):
        raise HTTPException(400, "One or more label_ids invalid")
    u.permission_labels = labels
    log_auth_event(db=db, event_type="update_user_labels", user_id=current_user.id,
                   target_type="user", target_id=u.id, metadata={"labelIds": sorted(lbl.id for lbl in labels)})
    db.commit()
    db.refresh(u)
    return _to_user_out(u)


# ---- AuthMe bindings ----

@router.get("/{user_id}/bindings", response_model=BindingSnapshotsOut)
def list_user_bindings(
    user_id: int,
    ledger: BindingLedger = Depends(get_ledger),
    _: User = Depends(admin_guard),
):
    ledger.directory.ensure_user(user_id)
    return ledger.user_snapshots(user_id)


@router.get("/{user_id}/bindings/history", response_model=HistoryPageOut)
def list_user_binding_history(
    user_id: int,
    page: int = Query(1, ge=1),
    pageSize: int = Query(20, ge=1, le=100),
    ledger: BindingLedger = Depends(get_ledger),
    _: User = Depends(admin_guard),
):
    return ledger.list_history_by_user(user_id, page, pageSize)


@router.post("/{user_id}/bindings", response_model=AuthmeBindingOut, status_code=status.HTTP_201_CREATED)
def create_user_binding(
    user_id: int,
    payload: CreateBindingAdminRequest,
    request: Request,
    ledger: BindingLedger = Depends(get_ledger),
    current_user: User = Depends(admin_guard),
):
    binding = ledger.bind_user(
        user_id,
        payload.identifier,
        operator_id=current_user.id,
        source_ip=client_ip(request),
        set_primary=payload.setPrimary,
    )
    log_auth_event(db=ledger.db, event_type="create_authme_binding", user_id=current_user.id, request=request,
                   target_type="authme_binding", target_id=binding.id,
                   metadata={"userId": user_id, "authmeUsername": binding.authme_username})
    ledger.db.commit()
    return ledger.binding_out(binding)


@router.patch("/{user_id}/bindings/{binding_id}", response_model=AuthmeBindingOut)
def update_user_binding(
    user_id: int,
    binding_id: int,
    payload: UpdateBindingAdminRequest,
    request: Request,
    ledger: BindingLedger = Depends(get_ledger),
    current_user: User = Depends(admin_guard),
):
    # only fields present in the body are applied
    changes = payload.model_dump(include=payload.model_fields_set)
    binding = ledger.update_binding(user_id, binding_id, changes, operator_id=current_user.id)
    log_auth_event(db=ledger.db, event_type="update_authme_binding", user_id=current_user.id, request=request,
                   target_type="authme_binding", target_id=binding_id,
                   metadata={"userId": user_id, "fields": sorted(changes)})
    ledger.db.commit()
    return ledger.binding_out(binding)


@router.patch("/{user_id}/bindings/{binding_id}/primary", response_model=AuthmeBindingOut)
def set_user_primary_binding(
    user_id: int,
    binding_id: int,
    request: Request,
    ledger: BindingLedger = Depends(get_ledger),
    current_user: User = Depends(admin_guard),
):
    binding = ledger.set_primary(user_id, binding_id, operator_id=current_user.id)
    log_auth_event(db=ledger.db, event_type="set_primary_authme_binding", user_id=current_user.id,
                   request=request, target_type="authme_binding", target_id=binding_id,
                   metadata={"userId": user_id})
    ledger.db.commit()
    return ledger.binding_out(binding)


@router.delete("/{user_id}/bindings/{binding_id}", response_model=UnbindResponse)
def delete_user_binding(
    user_id: int,
    binding_id: int,
    request: Request,
    ledger: BindingLedger = Depends(get_ledger),
    current_user: User = Depends(admin_guard),
):
    result = ledger.unbind(user_id, binding_id, operator_id=current_user.id)
    log_auth_event(db=ledger.db, event_type="unbind_authme", user_id=current_user.id, request=request,
                   target_type="authme_binding", target_id=binding_id, metadata={"userId": user_id})
    ledger.db.commit()
    return result


# ---- Minecraft profiles ----

@router.get("/{user_id}/minecraft-profiles", response_model=list[MinecraftProfileOut])
def list_minecraft_profiles(
    user_id: int,
    directory: AccountDirectory = Depends(get_directory),
    _: User = Depends(admin_guard),
):
    u = directory.ensure_user(user_id)
    return [_to_minecraft_profile_out(p) for p in u.minecraft_profiles]


@router.post("/{user_id}/minecraft-profiles", response_model=MinecraftProfileOut,
             status_code=status.HTTP_201_CREATED)
def add_minecraft_profile(
    user_id: int,
    payload: MinecraftProfileIn,
    directory: AccountDirectory = Depends(get_directory),
    _: User = Depends(admin_guard),
):
    row = directory.add_minecraft_profile(user_id, payload.model_dump(exclude_unset=True))
    return _to_minecraft_profile_out(row)


@router.patch("/{user_id}/minecraft-profiles/{profile_id}", response_model=MinecraftProfileOut)
def update_minecraft_profile(
    user_id: int,
    profile_id: int,
    payload: MinecraftProfileIn,
    directory: AccountDirectory = Depends(get_directory),
    _: User = Depends(admin_guard),
):
    row = directory.update_minecraft_profile(user_id, profile_id, payload.model_dump(exclude_unset=True))
    return _to_minecraft_profile_out(row)


@router.delete("/{user_id}/minecraft-profiles/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_minecraft_profile(
    user_id: int,
    profile_id: int,
    directory: AccountDirectory = Depends(get_directory),
    _: User = Depends(admin_guard),
):
    directory.remove_minecraft_profile(user_id, profile_id)
    return None
