from __future__ import annotations

from pydantic import BaseModel, Field


class RoleOut(BaseModel):
    id: int
    name: str
    label: str
    admin_only: bool
    is_active: bool
    sort_order: int

    class Config:
        from_attributes = True


class RoleCreateRequest(BaseModel):
    role_name: str = Field(min_length=1, max_length=64)
    role_label: str | None = Field(default=None, max_length=120)
    admin_only: bool = False


class RoleUpdateRequest(BaseModel):
    label: str | None = Field(default=None, min_length=1, max_length=120)
    admin_only: bool | None = None
    is_active: bool | None = None
    sort_order: int | None = None


class RoleOrder(BaseModel):
    name: str
    sort_order: int


class RoleReorderRequest(BaseModel):
    roles: list[RoleOrder]
