"""Queue templated emails when records in a template source table change.

Each active rule names a source table, a trigger event (``insert`` or
``update``), equality conditions on record paths and where the recipient
address comes from. Rules run after the change commits, off the realtime hub.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from portal.core.config import settings
from portal.models.email import EmailQueueItem, EmailRule
from portal.services.email_queue import queue_email
from portal.services.records import RecordNotFoundError, fetch_record
from portal.services.realtime import ChangeEvent, RealtimeHub
from portal.services.template_engine import UNRESOLVED, resolve_path

logger = logging.getLogger(__name__)

RULE_TRIGGER_EVENTS = ("insert", "update")
CHANNEL_PREFIX = "email-rules:"


def conditions_match(conditions: Mapping[str, Any] | None, record: Mapping[str, Any]) -> bool:
    """Every ``path -> expected`` pair must equal the record's value at ``path``."""

    for path, expected in (conditions or {}).items():
        value = resolve_path(record, path)
        if value is UNRESOLVED or value != expected:
            return False
    return True


def resolve_recipient(config: Mapping[str, Any] | None, record: Mapping[str, Any]) -> str | None:
    config = config or {}
    if config.get("recipient_type") == "static":
        address = config.get("static_email")
    else:
        field_path = (config.get("recipient_field") or "").strip()
        address = resolve_path(record, field_path) if field_path else None
    if not isinstance(address, str) or "@" not in address:
        return None
    return address.strip()


def matching_rules(db: Session, source_table: str, trigger_event: str) -> list[EmailRule]:
    return (
        db.query(EmailRule)
        .filter(
            EmailRule.source_table == source_table,
            EmailRule.trigger_event == trigger_event,
            EmailRule.is_active.is_(True),
        )
        .order_by(EmailRule.id.asc())
        .all()
    )


def apply_rules(db: Session, source_table: str, trigger_event: str, record_id: Any) -> list[EmailQueueItem]:
    """Queue one email per active rule whose conditions the record meets."""

    if trigger_event not in RULE_TRIGGER_EVENTS:
        return []
    rules = matching_rules(db, source_table, trigger_event)
    if not rules:
        return []
    try:
        record = fetch_record(db, source_table, record_id)
    except RecordNotFoundError:
        logger.info("email_rule_record_missing", extra={"source_table": source_table, "record_id": record_id})
        return []

    queued: list[EmailQueueItem] = []
    for rule in rules:
        if not conditions_match(rule.trigger_conditions, record):
            continue
        template = rule.template
        if template is None or not template.is_active:
            logger.info("email_rule_template_inactive", extra={"rule_id": rule.id})
            continue
        recipient = resolve_recipient(rule.recipient_config, record)
        if recipient is None:
            logger.warning(
                "email_rule_recipient_missing",
                extra={"rule_id": rule.id, "source_table": source_table, "record_id": record_id},
            )
            continue
        queued.append(
            queue_email(db, template=template, recipient_email=recipient, record_id=record_id, rule_id=rule.id)
        )
    if queued:
        logger.info(
            "email_rules_applied",
            extra={"source_table": source_table, "event": trigger_event, "record_id": record_id, "queued": len(queued)},
        )
    return queued


def subscribe_email_rules(session_factory: sessionmaker, hub: RealtimeHub) -> None:
    """Run matching rules for every committed change to a template source table."""

    def _on_change(change: ChangeEvent) -> None:
        if change.kind not in RULE_TRIGGER_EVENTS or change.record_id is None:
            return
        with session_factory() as session:
            apply_rules(session, change.table, change.kind, change.record_id)

    for source_table in settings.EMAIL_SOURCE_TABLES:
        hub.subscribe(f"{CHANNEL_PREFIX}{source_table}", source_table, _on_change)


def unsubscribe_email_rules(hub: RealtimeHub) -> None:
    for source_table in settings.EMAIL_SOURCE_TABLES:
        hub.unsubscribe(f"{CHANNEL_PREFIX}{source_table}")
