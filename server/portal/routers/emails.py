from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from portal.auth.deps import require_permission
from portal.core.db import get_db
from portal.models.email import EmailQueueItem
from portal.models.user import User
from portal.schemas.email import EmailQueueItemOut, QueueRunResponse
from portal.services.email_queue import process_email_queue
from portal.services.email_sender import EmailSender, get_email_sender

router = APIRouter(prefix="/emails", tags=["email"])


@router.get("/queue", response_model=list[EmailQueueItemOut], status_code=status.HTTP_200_OK)
def list_queue(
    *,
    status_filter: str | None = Query(default=None, alias="status", pattern="^(pending|processing|sent|failed|rate_limited)$"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "read")),
) -> list[EmailQueueItemOut]:
    query = db.query(EmailQueueItem)
    if status_filter:
        query = query.filter(EmailQueueItem.status == status_filter)
    items = query.order_by(EmailQueueItem.created_at.desc(), EmailQueueItem.id.desc()).limit(limit).all()
    return [EmailQueueItemOut.model_validate(item) for item in items]


@router.post("/queue/process", response_model=QueueRunResponse)
def process_queue(
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
    _: User = Depends(require_permission("email", "update")),
) -> QueueRunResponse:
    result = process_email_queue(db, sender, limit=limit)
    return QueueRunResponse(
        processed=result.processed,
        failed=result.failed,
        retrying=result.retrying,
        rate_limited=result.rate_limited,
        skipped=result.skipped,
    )
