# app/routes/rbac.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import select

from app.services.deps import get_db, get_current_user, require_perm
from app.services.permissions import MANAGE_ROLES, permission_keys
from app.models.user import User
from app.models.role import Role, PermissionLabel
from app.schemas.role import SelfPermissionsOut

router = APIRouter(prefix="/api/rbac", tags=["RBAC"])
view_guard = require_perm(MANAGE_ROLES)


@router.get("/self", response_model=SelfPermissionsOut)
def get_self_permissions(current_user: User = Depends(get_current_user)):
    return SelfPermissionsOut(
        userId=current_user.id,
        roles=sorted(r.key for r in current_user.roles),
        labels=sorted(lbl.key for lbl in current_user.permission_labels),
        permissions=sorted(permission_keys(current_user)),
    )


@router.get("/graph")
def get_rbac_graph(
    include_roles: bool = True,
    include_users: bool = True,
    include_labels: bool = True,
    db: Session = Depends(get_db),
    _: User = Depends(view_guard),
):
    nodes: list[dict] = []
    edges: list[dict] = []

    # Keep track to avoid duplicates
    seen_node_ids: set[str] = set()

    def add_node(kind: str, raw_id, label: str):
        nid = f"{kind}:{raw_id}"
        if nid in seen_node_ids:
            return
        nodes.append({"data": {"id": nid, "label": label, "category": kind}})
        seen_node_ids.add(nid)

    def add_edge(source: str, target: str, etype: str):
        edges.append({"data": {"source": source, "target": target, "type": etype}})

    # Roles (+ the permissions they grant)
    if include_roles:
        roles = db.execute(select(Role).order_by(Role.name.asc())).scalars().all()
        for r in roles:
            add_node("role", r.id, r.name)
            for p in r.permissions:
                add_node("permission", p.key, p.key)
                add_edge(f"role:{r.id}", f"permission:{p.key}", "grants")

    # Labels
    if include_labels:
        labels = db.execute(select(PermissionLabel).order_by(PermissionLabel.name.asc())).scalars().all()
        for lbl in labels:
            add_node("label", lbl.id, lbl.name)
            for p in lbl.permissions:
                add_node("permission", p.key, p.key)
                add_edge(f"label:{lbl.id}", f"permission:{p.key}", "grants")

    # Users (+ roles eager-loaded)
    if include_users:
        users = (
            db.query(User)
              .options(joinedload(User.roles))
              .order_by(User.email.asc())
              .all()
        )
        for u in users:
            add_node("user", u.id, u.display_name or u.email)
            for r in u.roles:
                # role nodes may have been skipped; edges still need a source
                add_node("role", r.id, r.name)
                add_edge(f"role:{r.id}", f"user:{u.id}", "assigned")
            if include_labels:
                for lbl in u.permission_labels:
                    add_edge(f"label:{lbl.id}", f"user:{u.id}", "labelled")

    return {"nodes": nodes, "edges": edges}
