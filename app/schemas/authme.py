# app/schemas/authme.py
from pydantic import BaseModel, Field, constr
from typing import Optional, List, Dict, Any
from datetime import datetime


# ---- self-service ----

class AuthmeBindRequest(BaseModel):
    authmeId: constr(min_length=1, max_length=64) = Field(..., description="AuthMe username or realname")
    password: constr(min_length=1, max_length=128) = Field(..., description="AuthMe password")
    setPrimary: bool = False


class AuthmeUnbindRequest(BaseModel):
    username: Optional[constr(min_length=1, max_length=64)] = Field(
        None, description="AuthMe username to unbind; omit to unbind every account"
    )


class SetPrimaryBindingRequest(BaseModel):
    bindingId: int


# ---- admin ----

class CreateBindingAdminRequest(BaseModel):
    identifier: str = Field(..., max_length=64, description="AuthMe username or realname")
    setPrimary: bool = False


class UpdateBindingAdminRequest(BaseModel):
    """Partial update. Only fields present in the request body are applied."""
    authmeRealname: Optional[str] = Field(None, max_length=64)
    status: Optional[constr(min_length=1, max_length=20)] = None
    notes: Optional[str] = Field(None, max_length=2000)
    metadata: Optional[Dict[str, Any]] = None
    targetUserId: Optional[int] = None
    primary: Optional[bool] = None


class BindPlayerRequest(BaseModel):
    userId: int


class CreateHistoryEntryRequest(BaseModel):
    bindingId: Optional[int] = None
    userId: Optional[int] = None
    action: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=120)
    payload: Optional[Dict[str, Any]] = None


# ---- outputs ----

class AuthmeBindingOut(BaseModel):
    id: int
    userId: int
    authmeUsername: str
    authmeRealname: Optional[str] = None
    authmeUuid: Optional[str] = None
    status: str
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    boundAt: datetime
    isPrimary: bool = False


class AuthmeBindingSnapshotOut(BaseModel):
    id: Optional[int] = None
    authmeUsername: str
    authmeRealname: Optional[str] = None
    authmeUuid: Optional[str] = None
    boundAt: Optional[datetime] = None
    ip: Optional[str] = None
    regip: Optional[str] = None
    lastlogin: Optional[int] = None
    regdate: Optional[int] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    isPrimary: bool = False


class LuckpermsGroupOut(BaseModel):
    group: str
    server: Optional[str] = None
    world: Optional[str] = None
    expiry: Optional[int] = None
    contexts: Optional[Dict[str, str]] = None
    displayName: Optional[str] = None


class LuckpermsSnapshotOut(BaseModel):
    authmeUsername: str
    username: Optional[str] = None
    uuid: Optional[str] = None
    primaryGroup: Optional[str] = None
    primaryGroupDisplayName: Optional[str] = None
    groups: List[LuckpermsGroupOut] = []
    synced: bool = False


class BindingSnapshotsOut(BaseModel):
    bindings: List[AuthmeBindingSnapshotOut]
    permissionsSnapshots: List[LuckpermsSnapshotOut]
    sourceStatus: str = "ok"  # ok | degraded


class UnbindResponse(BaseModel):
    success: bool


class HistoryOperatorOut(BaseModel):
    id: int
    email: str
    displayName: Optional[str] = None


class HistoryBindingOut(BaseModel):
    id: int
    authmeUsername: str
    authmeRealname: Optional[str] = None
    authmeUuid: Optional[str] = None
    status: str


class HistoryEntryOut(BaseModel):
    id: int
    bindingId: Optional[int] = None
    userId: Optional[int] = None
    operatorId: Optional[int] = None
    authmeUsername: str
    authmeRealname: Optional[str] = None
    authmeUuid: Optional[str] = None
    action: str
    reason: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    createdAt: datetime
    binding: Optional[HistoryBindingOut] = None
    operator: Optional[HistoryOperatorOut] = None


class PaginationOut(BaseModel):
    total: int
    page: int
    pageSize: int
    pageCount: int


class HistoryPageOut(BaseModel):
    items: List[HistoryEntryOut]
    pagination: PaginationOut


class AuthmePlayerOut(BaseModel):
    """AuthMe account row as exposed to admins (no password hash)"""
    id: int
    username: str
    realname: Optional[str] = None
    ip: Optional[str] = None
    regip: Optional[str] = None
    lastlogin: Optional[int] = None
    regdate: Optional[int] = None
    email: Optional[str] = None
    isLogged: int = 0
    boundUserId: Optional[int] = None


class AuthmePlayersPageOut(BaseModel):
    items: List[AuthmePlayerOut]
    pagination: PaginationOut


class AuthmeHealthOut(BaseModel):
    ok: bool
    latencyMs: Optional[int] = None
    stage: Optional[str] = None
    message: Optional[str] = None
