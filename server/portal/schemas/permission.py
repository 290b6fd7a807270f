from __future__ import annotations

from pydantic import BaseModel


class PermissionModuleOut(BaseModel):
    id: int
    name: str
    label: str
    description: str | None = None
    is_active: bool
    show_in_sidebar: bool
    sort_order: int

    class Config:
        from_attributes = True


class PermissionActionOut(BaseModel):
    id: int
    name: str
    label: str
    description: str | None = None
    is_active: bool

    class Config:
        from_attributes = True


class PermissionMatrixResponse(BaseModel):
    role: str | None = None
    permissions: dict[str, dict[str, bool]]


class PermissionToggleRequest(BaseModel):
    enabled: bool


class PermissionResetResponse(BaseModel):
    role: str
    restored: int
