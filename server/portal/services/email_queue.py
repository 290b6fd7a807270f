"""Email queue: enqueue rendered templates and deliver due items.

A run first claims due rows by moving them to ``processing`` in their own
commit, so a second runner (the scheduler job and a manual trigger, or another
worker) never picks the same row. Failed attempts are retried with exponential
backoff until ``max_retries`` is reached; throttled sends wait a fixed delay.
Rows left in ``processing`` by a crashed run become claimable again after
``EMAIL_QUEUE_STUCK_AFTER_SECONDS``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from portal.core.config import settings
from portal.models.email import EmailLog, EmailQueueItem, EmailTemplate
from portal.services.email_sender import EmailRateLimitedError, EmailSender, single_line
from portal.services.email_templates import brand_message, render_stored_template
from portal.services.records import fetch_record

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = ("pending", "rate_limited")

queue_run_lock = threading.Lock()


@dataclass
class QueueRunResult:
    processed: int = 0
    failed: int = 0
    retrying: int = 0
    rate_limited: int = 0
    skipped: bool = False


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay(retry_count: int) -> timedelta:
    return timedelta(minutes=(2**retry_count) * settings.EMAIL_QUEUE_RETRY_BASE_MINUTES)


def _log_event(db: Session, item: EmailQueueItem, event_type: str, event_data: dict[str, Any], at: datetime) -> None:
    db.add(EmailLog(queue_id=item.id, event_type=event_type, event_data=event_data, created_at=at))


def queue_email(
    db: Session,
    *,
    template: EmailTemplate,
    recipient_email: str,
    record_id: Any,
    scheduled_at: datetime | None = None,
    rule_id: int | None = None,
) -> EmailQueueItem:
    """Render ``template`` against its source record and enqueue the result."""

    record = fetch_record(db, template.source_table, record_id)
    rendered = render_stored_template(template, record)
    timestamp = now_utc()
    item = EmailQueueItem(
        template_id=template.id,
        rule_id=rule_id,
        recipient_email=recipient_email,
        subject=single_line(rendered.subject),
        body=rendered.body,
        source_table=template.source_table,
        record_id=record_id,
        status="pending",
        retry_count=0,
        max_retries=settings.EMAIL_QUEUE_MAX_RETRIES,
        scheduled_at=scheduled_at or timestamp,
    )
    db.add(item)
    db.flush()
    _log_event(
        db,
        item,
        "queued",
        {"recipient": recipient_email, "missing_variables": rendered.missing_variables, "rule_id": rule_id},
        timestamp,
    )
    db.commit()
    db.refresh(item)
    logger.info(
        "email_queued",
        extra={"queue_id": item.id, "template_id": template.id, "source_table": template.source_table},
    )
    return item


def _due(now: datetime):
    stuck_before = now - timedelta(seconds=settings.EMAIL_QUEUE_STUCK_AFTER_SECONDS)
    return or_(
        and_(
            EmailQueueItem.status.in_(CLAIMABLE_STATUSES),
            EmailQueueItem.scheduled_at <= now,
            or_(EmailQueueItem.next_retry_at.is_(None), EmailQueueItem.next_retry_at <= now),
        ),
        and_(EmailQueueItem.status == "processing", EmailQueueItem.last_attempt_at <= stuck_before),
    )


def claim_items(db: Session, *, now: datetime | None = None, limit: int | None = None) -> list[EmailQueueItem]:
    """Move due rows to ``processing`` and return the ones this call won."""

    cutoff = now or now_utc()
    candidates = (
        db.query(EmailQueueItem.id)
        .filter(_due(cutoff))
        .order_by(EmailQueueItem.created_at.asc(), EmailQueueItem.id.asc())
        .limit(limit or settings.EMAIL_QUEUE_BATCH_SIZE)
        .with_for_update(skip_locked=True)
        .all()
    )
    claimed: list[int] = []
    for (item_id,) in candidates:
        # Conditional update: a row another runner claimed first no longer matches.
        outcome = db.execute(
            update(EmailQueueItem)
            .where(EmailQueueItem.id == item_id, _due(cutoff))
            .values(status="processing", last_attempt_at=cutoff, updated_at=cutoff)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount == 1:
            claimed.append(item_id)
    db.commit()
    if not claimed:
        return []
    return (
        db.query(EmailQueueItem)
        .filter(EmailQueueItem.id.in_(claimed))
        .order_by(EmailQueueItem.created_at.asc(), EmailQueueItem.id.asc())
        .populate_existing()
        .all()
    )


def _mark_sent(db: Session, item: EmailQueueItem, at: datetime) -> None:
    item.status = "sent"
    item.sent_at = at
    item.error_message = None
    item.next_retry_at = None
    _log_event(db, item, "sent", {"recipient": item.recipient_email, "sent_at": at.isoformat()}, at)


def _mark_rate_limited(db: Session, item: EmailQueueItem, message: str, at: datetime) -> None:
    item.status = "rate_limited"
    item.retry_count = (item.retry_count or 0) + 1
    item.error_message = message
    item.next_retry_at = at + timedelta(seconds=settings.EMAIL_QUEUE_RATE_LIMIT_RETRY_SECONDS)
    _log_event(db, item, "rate_limited", {"recipient": item.recipient_email, "retry_count": item.retry_count}, at)


def _mark_attempt_failed(
    db: Session,
    item: EmailQueueItem,
    message: str,
    at: datetime,
    refused: list[str] | None = None,
) -> bool:
    """Record a failed attempt; returns True when another attempt is scheduled."""

    item.retry_count = (item.retry_count or 0) + 1
    item.error_message = message
    event_data: dict[str, Any] = {
        "recipient": item.recipient_email,
        "refused": refused or [],
        "retry_count": item.retry_count,
        "error": message,
    }
    if item.retry_count < (item.max_retries or settings.EMAIL_QUEUE_MAX_RETRIES):
        item.status = "pending"
        item.next_retry_at = at + retry_delay(item.retry_count)
        event_data["next_retry_at"] = item.next_retry_at.isoformat()
        _log_event(db, item, "retry_scheduled", event_data, at)
        return True
    item.status = "failed"
    item.next_retry_at = None
    _log_event(db, item, "failed", event_data, at)
    return False


def _deliver(db: Session, sender: EmailSender, item: EmailQueueItem, at: datetime, result: QueueRunResult) -> None:
    try:
        html_body, text_body = brand_message(item.subject, item.body)
        sent, refused = sender.send(
            subject=item.subject,
            html_body=html_body,
            text_body=text_body,
            to=[item.recipient_email],
        )
    except EmailRateLimitedError as exc:
        _mark_rate_limited(db, item, str(exc) or "Rate limited", at)
        result.rate_limited += 1
        return
    except Exception as exc:
        logger.exception("email_queue_item_error", extra={"queue_id": item.id})
        sent, refused = False, []
        message = f"{type(exc).__name__}: {exc}"
    else:
        message = "Recipient refused" if refused else "Delivery failed"

    if sent:
        _mark_sent(db, item, at)
        result.processed += 1
    elif _mark_attempt_failed(db, item, message, at, refused):
        result.retrying += 1
    else:
        result.failed += 1


def process_email_queue(
    db: Session,
    sender: EmailSender,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> QueueRunResult:
    if not queue_run_lock.acquire(blocking=False):
        logger.info("email_queue_busy")
        return QueueRunResult(skipped=True)
    try:
        cutoff = now or now_utc()
        result = QueueRunResult()
        for item in claim_items(db, now=cutoff, limit=limit):
            _deliver(db, sender, item, cutoff, result)
            item.updated_at = cutoff
            db.commit()
    finally:
        queue_run_lock.release()
    if result.processed or result.failed or result.retrying or result.rate_limited:
        logger.info(
            "email_queue_processed",
            extra={
                "processed": result.processed,
                "failed": result.failed,
                "retrying": result.retrying,
                "rate_limited": result.rate_limited,
            },
        )
    return result
