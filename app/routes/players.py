# app/routes/players.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from app.services.deps import get_authme_bridge, get_ledger, require_perm
from app.services.account_directory import pagination
from app.services.audit import log_auth_event, client_ip
from app.services.authme_bridge import AuthmeBridge
from app.services.binding_ledger import BindingLedger
from app.services.permissions import MANAGE_USERS
from app.models.authme_binding import UserAuthmeBinding
from app.models.user import User
from app.schemas.authme import (
    AuthmeBindingOut,
    AuthmeHealthOut,
    AuthmePlayerOut,
    AuthmePlayersPageOut,
    BindPlayerRequest,
    CreateHistoryEntryRequest,
    HistoryEntryOut,
    HistoryPageOut,
)

logger = logging.getLogger("portal.players")
logger.setLevel(logging.INFO)

router = APIRouter(prefix="/api/admin/authme", tags=["players"])
admin_guard = require_perm(MANAGE_USERS)


@router.get("/health", response_model=AuthmeHealthOut)
def authme_health(
    authme: AuthmeBridge = Depends(get_authme_bridge),
    _: User = Depends(admin_guard),
):
    return authme.health()


@router.get("/players", response_model=AuthmePlayersPageOut)
def list_players(
    keyword: Optional[str] = None,
    page: int = Query(1, ge=1),
    pageSize: int = Query(50, ge=1, le=500),
    sortField: Optional[str] = None,
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    ledger: BindingLedger = Depends(get_ledger),
    _: User = Depends(admin_guard),
):
    """
    Paged AuthMe accounts, each annotated with the site user it is bound to (if any).
    """
    accounts, total = ledger.authme.list_players(
        keyword=keyword,
        offset=(page - 1) * pageSize,
        limit=pageSize,
        sort_field=sortField,
        sort_order=sortOrder,
    )
    lowered = [a.username.lower() for a in accounts]
    owners: dict[str, int] = {}
    if lowered:
        rows = (
            ledger.db.query(UserAuthmeBinding.authme_username_lower, UserAuthmeBinding.user_id)
            .filter(UserAuthmeBinding.authme_username_lower.in_(lowered))
            .all()
        )
        owners = {name: user_id for name, user_id in rows}

    items = [
        AuthmePlayerOut(
            id=a.id,
            username=a.username,
            realname=a.realname,
            ip=a.ip,
            regip=a.regip,
            lastlogin=a.lastlogin,
            regdate=a.regdate,
            email=a.email,
            isLogged=a.is_logged,
            boundUserId=owners.get(a.username.lower()),
        )
        for a in accounts
    ]
    return AuthmePlayersPageOut(items=items, pagination=pagination(total, page, pageSize))


@router.get("/players/{username}/history", response_model=HistoryPageOut)
def player_history(
    username: str,
    page: int = Query(1, ge=1),
    pageSize: int = Query(20, ge=1, le=100),
    ledger: BindingLedger = Depends(get_ledger),
    _: User = Depends(admin_guard),
):
    return ledger.list_history_by_username(username, page, pageSize)


@router.post("/players/{username}/history", response_model=HistoryEntryOut, status_code=201)
def add_player_history_entry(
    username: str,
    payload: CreateHistoryEntryRequest,
    ledger: BindingLedger = Depends(get_ledger),
    current_user: User = Depends(admin_guard),
):
    return ledger.create_history_entry(
        username,
        operator_id=current_user.id,
        action=payload.action,
        reason=payload.reason,
        payload=payload.payload,
        binding_id=payload.bindingId,
        user_id=payload.userId,
    )


@router.post("/players/{username}/bind", response_model=AuthmeBindingOut, status_code=201)
def bind_player(
    username: str,
    payload: BindPlayerRequest,
    request: Request,
    ledger: BindingLedger = Depends(get_ledger),
    current_user: User = Depends(admin_guard),
):
    binding = ledger.bind_player_to_user(
        username, payload.userId, operator_id=current_user.id, source_ip=client_ip(request)
    )
    log_auth_event(db=ledger.db, event_type="create_authme_binding", user_id=current_user.id, request=request,
                   target_type="authme_binding", target_id=binding.id,
                   metadata={"userId": payload.userId, "authmeUsername": binding.authme_username,
                             "via": "player-directory"})
    ledger.db.commit()
    logger.info(f"Player {username} bound to user {payload.userId} by {current_user.id}")
    return ledger.binding_out(binding)
