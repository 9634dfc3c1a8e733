# app/routes/roles.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import func

import sqlalchemy as sa

from app.core.errors import ConflictError
from app.services.deps import get_db, require_perm
from app.services.audit import log_auth_event
from app.services.permissions import MANAGE_ROLES, resolve_permissions
from app.models.role import Permission, PermissionLabel, Role
from app.models.user import User
from app.schemas.role import PermissionOut, RoleCreate, RoleUpdate, RoleOut, LabelCreate, LabelOut

router = APIRouter(prefix="/api/auth", tags=["roles"])

# Only users with auth.manage.roles may manage roles and labels
admin_guard = require_perm(MANAGE_ROLES)


def _to_role_out(r: Role) -> RoleOut:
    return RoleOut(
        id=r.id,
        key=r.key,
        name=r.name,
        description=r.description,
        isSystem=bool(r.is_system),
        permissionKeys=[p.key for p in r.permissions],
    )


def _to_label_out(lbl: PermissionLabel) -> LabelOut:
    return LabelOut(
        id=lbl.id,
        key=lbl.key,
        name=lbl.name,
        color=lbl.color,
        permissionKeys=[p.key for p in lbl.permissions],
    )


@router.get("/permissions", response_model=list[PermissionOut])
def list_permissions(
    db: Session = Depends(get_db),
    _: User = Depends(admin_guard),
):
    return db.query(Permission).order_by(Permission.key.asc()).all()


@router.get("/roles", response_model=list[RoleOut])
def list_roles(
    db: Session = Depends(get_db),
    _: User = Depends(admin_guard),
):
    rows = db.query(Role).order_by(Role.name.asc()).all()
    return [_to_role_out(r) for r in rows]

@router.post("/roles", response_model=RoleOut, status_code=status.HTTP_201_CREATED)
def create_role(
    payload: RoleCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(admin_guard),
):
    # Enforce uniqueness on key (case-insensitive)
    if db.query(Role).filter(func.lower(Role.key) == func.lower(payload.key)).first():
        raise ConflictError("Role with same key already exists", code="ROLE_KEY_CONFLICT")

    row = Role(
        key=payload.key,
        name=payload.name,
        description=payload.description,
        is_system=False,
    )
    row.permissions = resolve_permissions(db, payload.permissionKeys)
    db.add(row)
    db.flush()
    log_auth_event(db=db, event_type="create_role", user_id=current_user.id, target_type="role", target_id=row.id)
    db.commit()
    db.refresh(row)
    return _to_role_out(row)

@router.get("/roles/{role_id}", response_model=RoleOut)
def get_role(
    role_id: int,
    db: Session = Depends(get_db),
    _: User = Depends(admin_guard),
):
    row = db.query(Role).filter_by(id=role_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Role not found")
    return _to_role_out(row)

@router.patch("/roles/{role_id}", response_model=RoleOut)
def update_role(
    role_id: int,
    payload: RoleUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(admin_guard),
):
    row = db.query(Role).filter_by(id=role_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Role not found")

    if payload.name is not None:
        row.name = payload.name
    if payload.description is not None:
        row.description = payload.description
    if payload.permissionKeys is not None:
        row.permissions = resolve_permissions(db, payload.permissionKeys)

    log_auth_event(db=db, event_type="update_role", user_id=current_user.id, target_type="role", target_id=row.id,
                   metadata={"permissionKeys": payload.permissionKeys})
    db.commit(); db.refresh(row)
    return _to_role_out(row)

@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(admin_guard),
):
    row = db.query(Role).filter_by(id=role_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Role not found")
    if row.is_system:
        raise ConflictError("Cannot delete a system role", code="ROLE_IS_SYSTEM")

    # guard: role assigned to any user via user_roles?
    assigned = db.execute(
        sa.text("SELECT 1 FROM user_roles WHERE role_id = :rid LIMIT 1"),
        {"rid": row.id},
    ).first()
    if assigned:
        raise ConflictError("Cannot delete a role that is assigned to users", code="ROLE_IN_USE")

    db.delete(row)
    log_auth_event(db=db, event_type="delete_role", user_id=current_user.id, target_type="role", target_id=role_id)
    db.commit()
    return


# ---- permission labels ----

@router.get("/permission-labels", response_model=list[LabelOut])
def list_labels(
    db: Session = Depends(get_db),
    _: User = Depends(admin_guard),
):
    rows = db.query(PermissionLabel).order_by(PermissionLabel.name.asc()).all()
    return [_to_label_out(lbl) for lbl in rows]

@router.post("/permission-labels", response_model=LabelOut, status_code=status.HTTP_201_CREATED)
def create_label(
    payload: LabelCreate,
    db: Session = Depends(get_db),
    _: User = Depends(admin_guard),
):
    if db.query(PermissionLabel).filter(func.lower(PermissionLabel.key) == func.lower(payload.key)).first():
        raise ConflictError("Permission label with same key already exists", code="LABEL_KEY_CONFLICT")
    row = PermissionLabel(key=payload.key, name=payload.name, color=payload.color)
    row.permissions = resolve_permissions(db, payload.permissionKeys)
    db.add(row)
    db.commit()
    db.refresh(row)
    return _to_label_out(row)

@router.delete("/permission-labels/{label_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_label(
    label_id: int,
    db: Session = Depends(get_db),
    _: User = Depends(admin_guard),
):
    row = db.query(PermissionLabel).filter_by(id=label_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Permission label not found")
    assigned = db.execute(
        sa.text("SELECT 1 FROM user_permission_labels WHERE label_id = :lid LIMIT 1"),
        {"lid": row.id},
    ).first()
    if assigned:
        raise ConflictError("Cannot delete a permission label that is assigned to users", code="LABEL_IN_USE")
    db.delete(row)
    db.commit()
    return
