# app/schemas/auth.py
from pydantic import BaseModel, Field, EmailStr, constr
from typing import Optional, List
from datetime import datetime

from app.schemas.authme import AuthmeBindingSnapshotOut, LuckpermsSnapshotOut


class RegisterRequest(BaseModel):
    email: EmailStr
    password: constr(min_length=8, max_length=128) = Field(..., description="Password (min 8 chars)")
    displayName: Optional[constr(min_length=1, max_length=80)] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., description="Password")


class UserInfo(BaseModel):
    userId: int
    email: str
    displayName: Optional[str] = None
    roles: List[str] = []
    permissions: List[str] = []
    lastLoginAt: Optional[datetime] = None

    class Config:
        from_attributes = True


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserInfo


class SessionUserOut(BaseModel):
    """Current user with composed AuthMe bindings"""
    user: UserInfo
    primaryAuthmeBindingId: Optional[int] = None
    authmeBindings: List[AuthmeBindingSnapshotOut] = []
    luckperms: List[LuckpermsSnapshotOut] = []
    sourceStatus: str = "ok"
