from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from portal.auth.deps import require_permission
from portal.core.db import get_db
from portal.models.email import EmailTemplate
from portal.models.user import User
from portal.schemas.email import (
    EmailQueueItemOut,
    EmailTemplateCreate,
    EmailTemplateOut,
    EmailTemplateUpdate,
    QueueEmailRequest,
    SourceVariablesResponse,
    StoredTemplatePreviewRequest,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
)
from portal.services.email_queue import queue_email
from portal.services.email_templates import (
    RenderedEmail,
    TemplateNotFoundError,
    get_template,
    render_email,
    render_stored_template,
    template_variables,
)
from portal.services.permission_store import BackendError
from portal.services.records import (
    RecordNotFoundError,
    UnknownSourceTableError,
    fetch_record,
    list_source_variables,
)

router = APIRouter(prefix="/email-templates", tags=["email"])


def _get_template_or_404(db: Session, template_id: int) -> EmailTemplate:
    try:
        return get_template(db, template_id)
    except TemplateNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def _check_source_table(source_table: str) -> None:
    try:
        list_source_variables(source_table)
    except UnknownSourceTableError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _load_record(db: Session, source_table: str, record_id: int) -> dict:
    try:
        return fetch_record(db, source_table, record_id)
    except UnknownSourceTableError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BackendError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(exc), "code": "backend_unavailable"},
        ) from exc


def _preview_response(subject: str, body: str, rendered: RenderedEmail) -> TemplatePreviewResponse:
    return TemplatePreviewResponse(
        subject=rendered.subject,
        body=rendered.body,
        html=rendered.html,
        text=rendered.text,
        variables=template_variables(subject, body),
        missing_variables=rendered.missing_variables,
    )


@router.get("", response_model=list[EmailTemplateOut])
def list_templates(
    *,
    source_table: str | None = Query(default=None, min_length=1),
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "read")),
) -> list[EmailTemplateOut]:
    query = db.query(EmailTemplate)
    if source_table:
        query = query.filter(EmailTemplate.source_table == source_table)
    if not include_inactive:
        query = query.filter(EmailTemplate.is_active.is_(True))
    items = query.order_by(EmailTemplate.name.asc(), EmailTemplate.id.asc()).all()
    return [EmailTemplateOut.model_validate(item) for item in items]


@router.post("", response_model=EmailTemplateOut, status_code=status.HTTP_201_CREATED)
def create_template(
    payload: EmailTemplateCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permission("email", "create")),
) -> EmailTemplateOut:
    _check_source_table(payload.source_table)
    template = EmailTemplate(
        name=payload.name.strip(),
        subject=payload.subject,
        body=payload.body,
        source_table=payload.source_table,
        variables_used=template_variables(payload.subject, payload.body),
        is_active=payload.is_active,
        created_by_id=user.id,
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return EmailTemplateOut.model_validate(template)


@router.post("/preview", response_model=TemplatePreviewResponse)
def preview_template(
    payload: TemplatePreviewRequest,
    _: User = Depends(require_permission("email", "read")),
) -> TemplatePreviewResponse:
    rendered = render_email(payload.subject, payload.body, payload.record)
    return _preview_response(payload.subject, payload.body, rendered)


@router.get("/variables/{source_table}", response_model=SourceVariablesResponse)
def source_variables(
    source_table: str,
    _: User = Depends(require_permission("email", "read")),
) -> SourceVariablesResponse:
    try:
        variables = list_source_variables(source_table)
    except UnknownSourceTableError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SourceVariablesResponse(source_table=source_table, variables=variables)


@router.get("/{template_id}", response_model=EmailTemplateOut)
def get_email_template(
    template_id: int,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "view")),
) -> EmailTemplateOut:
    return EmailTemplateOut.model_validate(_get_template_or_404(db, template_id))


@router.patch("/{template_id}", response_model=EmailTemplateOut)
def update_template(
    template_id: int,
    payload: EmailTemplateUpdate,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "update")),
) -> EmailTemplateOut:
    template = _get_template_or_404(db, template_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "source_table" in changes:
        _check_source_table(changes["source_table"])
    if "name" in changes:
        changes["name"] = changes["name"].strip()
    for field_name, value in changes.items():
        setattr(template, field_name, value)
    template.variables_used = template_variables(template.subject, template.body)
    db.commit()
    db.refresh(template)
    return EmailTemplateOut.model_validate(template)


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template(
    template_id: int,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "delete")),
) -> None:
    template = _get_template_or_404(db, template_id)
    db.delete(template)
    db.commit()


@router.post("/{template_id}/preview", response_model=TemplatePreviewResponse)
def preview_stored_template(
    template_id: int,
    payload: StoredTemplatePreviewRequest,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "view")),
) -> TemplatePreviewResponse:
    template = _get_template_or_404(db, template_id)
    record = _load_record(db, template.source_table, payload.record_id)
    rendered = render_stored_template(template, record)
    return _preview_response(template.subject, template.body, rendered)


@router.post("/{template_id}/queue", response_model=EmailQueueItemOut, status_code=status.HTTP_201_CREATED)
def queue_template_email(
    template_id: int,
    payload: QueueEmailRequest,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("email", "create")),
) -> EmailQueueItemOut:
    template = _get_template_or_404(db, template_id)
    if not template.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Template is inactive")
    _load_record(db, template.source_table, payload.record_id)
    try:
        item = queue_email(
            db,
            template=template,
            recipient_email=payload.recipient_email,
            record_id=payload.record_id,
            scheduled_at=payload.scheduled_at,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BackendError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(exc), "code": "backend_unavailable"},
        ) from exc
    return EmailQueueItemOut.model_validate(item)
