from typing import Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field

class MinecraftProfileIn(BaseModel):
    nickname: Optional[str] = Field(None, min_length=1, max_length=64)
    authmeBindingId: Optional[int] = None
    authmeUuid: Optional[str] = Field(None, max_length=36)
    isPrimary: Optional[bool] = None
    source: Optional[str] = Field(None, pattern="^(MANUAL|AUTHME|IMPORT)$")
    verifiedAt: Optional[datetime] = None
    verificationNote: Optional[str] = Field(None, max_length=255)
    metadata: Optional[Dict[str, Any]] = None

class MinecraftProfileOut(BaseModel):
    id: int
    userId: int
    nickname: Optional[str] = None
    authmeBindingId: Optional[int] = None
    authmeUuid: Optional[str] = None
    isPrimary: bool
    source: str
    verifiedAt: Optional[datetime] = None
    verificationNote: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    createdAt: datetime
