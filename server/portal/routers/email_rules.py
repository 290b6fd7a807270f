from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from portal.auth.deps import require_permission
from portal.core.db import get_db
from portal.models.email import EmailRule
from portal.models.user import User
from portal.schemas.email import (
    EmailRuleBulkDeleteRequest,
    EmailRuleBulkResponse,
    EmailRuleBulkStatusRequest,
    EmailRuleCreate,
    EmailRuleOut,
    EmailRuleUpdate,
)
from portal.services.email_templates import TemplateNotFoundError, get_template
from portal.services.records import UnknownSourceTableError, list_source_variables

router = APIRouter(prefix="/email-rules", tags=["email"])


def _get_rule_or_404(db: Session, rule_id: int) -> EmailRule:
    rule = db.get(EmailRule, rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email rule not found")
    return rule


def _check_rule_target(db: Session, source_table: str, template_id: int) -> None:
    try:
        list_source_variables(source_table)
        template = get_template(db, template_id)
    except UnknownSourceTableError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except TemplateNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if template.source_table != source_table:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Template {template_id} renders '{template.source_table}' records, not '{source_table}'",
        )


@router.get("", response_model=list[EmailRuleOut])
def list_rules(
    *,
    source_table: str | None = Query(default=None, min_length=1),
    include_inactive: bool = True,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "read")),
) -> list[EmailRuleOut]:
    query = db.query(EmailRule)
    if source_table:
        query = query.filter(EmailRule.source_table == source_table)
    if not include_inactive:
        query = query.filter(EmailRule.is_active.is_(True))
    rules = query.order_by(EmailRule.name.asc(), EmailRule.id.asc()).all()
    return [EmailRuleOut.model_validate(rule) for rule in rules]


@router.post("", response_model=EmailRuleOut, status_code=status.HTTP_201_CREATED)
def create_rule(
    payload: EmailRuleCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permission("email", "create")),
) -> EmailRuleOut:
    _check_rule_target(db, payload.source_table, payload.template_id)
    rule = EmailRule(
        name=payload.name.strip(),
        template_id=payload.template_id,
        source_table=payload.source_table,
        trigger_event=payload.trigger_event,
        trigger_conditions=payload.trigger_conditions,
        recipient_config=payload.recipient_config.model_dump(mode="json"),
        is_active=payload.is_active,
        created_by_id=user.id,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return EmailRuleOut.model_validate(rule)


@router.post("/bulk/status", response_model=EmailRuleBulkResponse)
def bulk_set_status(
    payload: EmailRuleBulkStatusRequest,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "update")),
) -> EmailRuleBulkResponse:
    rules = db.query(EmailRule).filter(EmailRule.id.in_(payload.rule_ids)).all()
    for rule in rules:
        rule.is_active = payload.is_active
    db.commit()
    return EmailRuleBulkResponse(updated=len(rules))


@router.post("/bulk/delete", response_model=EmailRuleBulkResponse)
def bulk_delete(
    payload: EmailRuleBulkDeleteRequest,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "delete")),
) -> EmailRuleBulkResponse:
    rules = db.query(EmailRule).filter(EmailRule.id.in_(payload.rule_ids)).all()
    for rule in rules:
        db.delete(rule)
    db.commit()
    return EmailRuleBulkResponse(updated=len(rules))


@router.get("/{rule_id}", response_model=EmailRuleOut)
def get_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "view")),
) -> EmailRuleOut:
    return EmailRuleOut.model_validate(_get_rule_or_404(db, rule_id))


@router.patch("/{rule_id}", response_model=EmailRuleOut)
def update_rule(
    rule_id: int,
    payload: EmailRuleUpdate,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "update")),
) -> EmailRuleOut:
    rule = _get_rule_or_404(db, rule_id)
    changes = payload.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    if "source_table" in changes or "template_id" in changes:
        _check_rule_target(
            db,
            changes.get("source_table", rule.source_table),
            changes.get("template_id", rule.template_id),
        )
    if "name" in changes:
        changes["name"] = changes["name"].strip()
    for field_name, value in changes.items():
        setattr(rule, field_name, value)
    db.commit()
    db.refresh(rule)
    return EmailRuleOut.model_validate(rule)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "delete")),
) -> None:
    rule = _get_rule_or_404(db, rule_id)
    db.delete(rule)
    db.commit()
