from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field


class TaskBase(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    status: str = "not_started"
    priority: str = "medium"
    due_date: date | None = None
    assigned_to_id: int | None = None


class TaskCreate(TaskBase):
    pass


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    due_date: date | None = None
    assigned_to_id: int | None = None


class TaskOut(TaskBase):
    id: int
    assigned_by_id: int | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
