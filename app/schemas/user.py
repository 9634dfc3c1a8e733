# app/schemas/user.py
from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime

from app.schemas.authme import AuthmeBindingSnapshotOut, LuckpermsSnapshotOut, PaginationOut
from app.schemas.minecraft_profile import MinecraftProfileOut


class UserUpdateRoles(BaseModel):
    role_ids: List[int]

class UserUpdateLabels(BaseModel):
    label_ids: List[int]

class UserOut(BaseModel):
    id: int
    email: str
    displayName: Optional[str] = None
    createdAt: Optional[datetime] = None
    lastLoginAt: Optional[datetime] = None
    lastLoginIp: Optional[str] = None
    role_ids: List[int]
    role_keys: List[Optional[str]] = []
    role_names: List[Optional[str]] = []
    label_keys: List[str] = []


class UserListOut(BaseModel):
    items: List[UserOut]
    pagination: PaginationOut


class UserDetailOut(UserOut):
    primaryAuthmeBindingId: Optional[int] = None
    primaryMinecraftProfileId: Optional[int] = None
    authmeBindings: List[AuthmeBindingSnapshotOut] = []
    luckperms: List[LuckpermsSnapshotOut] = []
    sourceStatus: str = "ok"
    minecraftProfiles: List[MinecraftProfileOut] = []
