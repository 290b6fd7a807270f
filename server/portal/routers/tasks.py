from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from portal.auth.deps import require_permission
from portal.core.db import get_db
from portal.models.task import Task
from portal.models.user import User
from portal.schemas.task import TaskCreate, TaskOut, TaskUpdate

router = APIRouter(prefix="/tasks", tags=["tasks"])


def _get_task_or_404(db: Session, task_id: int) -> Task:
    task = db.get(Task, task_id)
    if not task:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task


def _ensure_assignee(db: Session, user_id: int | None) -> None:
    if user_id is None:
        return
    assignee = db.get(User, user_id)
    if assignee is None or not assignee.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Assignee not found")


@router.get("", response_model=list[TaskOut], status_code=status.HTTP_200_OK)
def list_tasks(
    *,
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("tasks", "read")),
) -> list[TaskOut]:
    query = db.query(Task)
    if status_filter:
        query = query.filter(Task.status == status_filter)
    if assigned_to_id is not None:
        query = query.filter(Task.assigned_to_id == assigned_to_id)
    items = query.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.id.asc()).limit(limit).all()
    return [TaskOut.model_validate(item) for item in items]


@router.post("", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
def create_task(
    payload: TaskCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permission("tasks", "create")),
) -> TaskOut:
    _ensure_assignee(db, payload.assigned_to_id)
    task = Task(
        title=payload.title.strip(),
        description=payload.description,
        status=payload.status,
        priority=payload.priority,
        due_date=payload.due_date,
        assigned_to_id=payload.assigned_to_id,
        assigned_by_id=user.id if payload.assigned_to_id else None,
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    return TaskOut.model_validate(task)


@router.get("/{task_id}", response_model=TaskOut, status_code=status.HTTP_200_OK)
def get_task(
    task_id: int,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("tasks", "view")),
) -> TaskOut:
    return TaskOut.model_validate(_get_task_or_404(db, task_id))


@router.patch("/{task_id}", response_model=TaskOut, status_code=status.HTTP_200_OK)
def update_task(
    task_id: int,
    payload: TaskUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permission("tasks", "update")),
) -> TaskOut:
    task = _get_task_or_404(db, task_id)
    changes = payload.model_dump(exclude_unset=True)

    if "assigned_to_id" in changes and changes["assigned_to_id"] != task.assigned_to_id:
        _ensure_assignee(db, changes["assigned_to_id"])
        task.assigned_by_id = user.id if changes["assigned_to_id"] else None
    if changes.get("title"):
        changes["title"] = changes["title"].strip()
    for field_name in ("title", "status", "priority"):
        if field_name in changes and changes[field_name] is None:
            changes.pop(field_name)
    for field_name, value in changes.items():
        setattr(task, field_name, value)

    db.commit()
    db.refresh(task)
    return TaskOut.model_validate(task)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    task_id: int,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("tasks", "delete")),
) -> None:
    task = _get_task_or_404(db, task_id)
    db.delete(task)
    db.commit()
