from pydantic import BaseModel, constr
from typing import Optional, List

class PermissionOut(BaseModel):
    id: int
    key: str
    description: Optional[str] = None

    class Config:
        from_attributes = True

class RoleCreate(BaseModel):
    key: constr(min_length=2, max_length=80)
    name: constr(min_length=2, max_length=80)
    description: Optional[str] = None
    permissionKeys: List[str] = []

class RoleUpdate(BaseModel):
    name: Optional[constr(min_length=2, max_length=80)] = None
    description: Optional[str] = None
    permissionKeys: Optional[List[str]] = None

class RoleOut(BaseModel):
    id: int
    key: str
    name: str
    description: Optional[str] = None
    isSystem: bool
    permissionKeys: List[str]

class LabelCreate(BaseModel):
    key: constr(min_length=2, max_length=80)
    name: constr(min_length=1, max_length=80)
    color: Optional[constr(max_length=20)] = None
    permissionKeys: List[str] = []

class LabelOut(BaseModel):
    id: int
    key: str
    name: str
    color: Optional[str] = None
    permissionKeys: List[str]

class SelfPermissionsOut(BaseModel):
    userId: int
    roles: List[str]
    labels: List[str]
    permissions: List[str]
