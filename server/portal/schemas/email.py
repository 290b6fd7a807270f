from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field, model_validator


class EmailTemplateBase(BaseModel):
    name: str = Field(min_length=1, max_length=150)
    subject: str = Field(min_length=1, max_length=500)
    body: str = Field(min_length=1)
    source_table: str = Field(min_length=1, max_length=64)
    is_active: bool = True


class EmailTemplateCreate(EmailTemplateBase):
    pass


class EmailTemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=150)
    subject: str | None = Field(default=None, min_length=1, max_length=500)
    body: str | None = Field(default=None, min_length=1)
    source_table: str | None = Field(default=None, min_length=1, max_length=64)
    is_active: bool | None = None


class EmailTemplateOut(EmailTemplateBase):
    id: int
    variables_used: list[str]
    created_by_id: int | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TemplatePreviewRequest(BaseModel):
    subject: str = ""
    body: str = ""
    record: dict[str, Any] = Field(default_factory=dict)


class StoredTemplatePreviewRequest(BaseModel):
    record_id: int


class TemplatePreviewResponse(BaseModel):
    subject: str
    body: str
    html: str
    text: str
    variables: list[str]
    missing_variables: list[str]


class SourceVariablesResponse(BaseModel):
    source_table: str
    variables: list[str]


class QueueEmailRequest(BaseModel):
    recipient_email: EmailStr
    record_id: int
    scheduled_at: datetime | None = None


EmailQueueStatus = Literal["pending", "processing", "sent", "failed", "rate_limited"]


class EmailQueueItemOut(BaseModel):
    id: int
    template_id: int | None = None
    rule_id: int | None = None
    recipient_email: str
    subject: str
    body: str
    source_table: str | None = None
    record_id: int | None = None
    status: EmailQueueStatus
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    scheduled_at: datetime
    sent_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class QueueRunResponse(BaseModel):
    processed: int
    failed: int
    retrying: int = 0
    rate_limited: int = 0
    skipped: bool = False


class RecipientConfig(BaseModel):
    recipient_type: Literal["field", "static"] = "field"
    recipient_field: str | None = Field(default=None, max_length=150)
    static_email: EmailStr | None = None

    @model_validator(mode="after")
    def ensure_target(self: "RecipientConfig") -> "RecipientConfig":
        if self.recipient_type == "field" and not (self.recipient_field or "").strip():
            raise ValueError("recipient_field is required when recipients come from a record field")
        if self.recipient_type == "static" and not self.static_email:
            raise ValueError("static_email is required for a static recipient")
        return self


class EmailRuleBase(BaseModel):
    name: str = Field(min_length=1, max_length=150)
    template_id: int
    source_table: str = Field(min_length=1, max_length=64)
    trigger_event: Literal["insert", "update"] = "insert"
    trigger_conditions: dict[str, Any] = Field(default_factory=dict)
    recipient_config: RecipientConfig
    is_active: bool = True


class EmailRuleCreate(EmailRuleBase):
    pass


class EmailRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=150)
    template_id: int | None = None
    source_table: str | None = Field(default=None, min_length=1, max_length=64)
    trigger_event: Literal["insert", "update"] | None = None
    trigger_conditions: dict[str, Any] | None = None
    recipient_config: RecipientConfig | None = None
    is_active: bool | None = None


class EmailRuleOut(EmailRuleBase):
    id: int
    created_by_id: int | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class EmailRuleBulkStatusRequest(BaseModel):
    rule_ids: list[int] = Field(min_length=1)
    is_active: bool


class EmailRuleBulkDeleteRequest(BaseModel):
    rule_ids: list[int] = Field(min_length=1)


class EmailRuleBulkResponse(BaseModel):
    updated: int
