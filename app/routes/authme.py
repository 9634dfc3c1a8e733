# app/routes/authme.py
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request

from app.models.user import User
from app.schemas.auth import SessionUserOut
from app.schemas.authme import (
    AuthmeBindRequest,
    AuthmeUnbindRequest,
    SetPrimaryBindingRequest,
    BindingSnapshotsOut,
    UnbindResponse,
)
from app.services.audit import log_auth_event, client_ip
from app.services.binding_ledger import BindingLedger
from app.services.deps import get_current_user, get_ledger, require_binding_enabled
from app.routes.auth import build_session_user

router = APIRouter(prefix="/api/authme", tags=["authme"])


@router.post("/bind", response_model=SessionUserOut, dependencies=[Depends(require_binding_enabled)])
def bind_authme(
    payload: AuthmeBindRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    ledger: BindingLedger = Depends(get_ledger),
):
    """
    Bind an AuthMe account to the current user after checking its password.
    """
    account = ledger.authme.verify_credentials(payload.authmeId.strip(), payload.password)
    binding = ledger.bind_account(
        current_user.id,
        account,
        operator_id=current_user.id,
        source_ip=client_ip(request),
        set_primary=payload.setPrimary,
        source="self-bind",
    )
    log_auth_event(
        db=ledger.db,
        event_type="bind_authme",
        user_id=current_user.id,
        request=request,
        target_type="authme_binding",
        target_id=binding.id,
        metadata={"authmeUsername": binding.authme_username},
    )
    ledger.db.commit()
    return build_session_user(current_user, ledger)


@router.delete("/bind", response_model=UnbindResponse, dependencies=[Depends(require_binding_enabled)])
def unbind_authme(
    request: Request,
    payload: Optional[AuthmeUnbindRequest] = Body(None),
    current_user: User = Depends(get_current_user),
    ledger: BindingLedger = Depends(get_ledger),
):
    """
    Unbind one AuthMe account by username, or every bound account when no username is given.
    """
    username = payload.username if payload else None
    result = ledger.unbind_by_username(current_user.id, username, operator_id=current_user.id)
    log_auth_event(
        db=ledger.db,
        event_type="unbind_authme",
        user_id=current_user.id,
        request=request,
        target_type="user",
        target_id=current_user.id,
        metadata={"authmeUsername": username, "all": username is None},
    )
    ledger.db.commit()
    return result


@router.patch("/bind/primary", response_model=SessionUserOut)
def set_primary_binding(
    payload: SetPrimaryBindingRequest,
    current_user: User = Depends(get_current_user),
    ledger: BindingLedger = Depends(get_ledger),
):
    ledger.set_primary(current_user.id, payload.bindingId, operator_id=current_user.id)
    return build_session_user(current_user, ledger)


@router.get("/bindings", response_model=BindingSnapshotsOut)
def list_my_bindings(
    current_user: User = Depends(get_current_user),
    ledger: BindingLedger = Depends(get_ledger),
):
    return ledger.user_snapshots(current_user.id)
