from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from portal.core.db import Base

EmailQueueStatus = Enum(
    "pending",
    "processing",
    "sent",
    "failed",
    "rate_limited",
    name="email_queue_status",
)
EmailRuleTrigger = Enum("insert", "update", name="email_rule_trigger")


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id = Column(Integer, primary_key=True)
    name = Column(String(150), nullable=False)
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)
    source_table = Column(String(64), nullable=False)
    variables_used = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    created_by = relationship("User")


class EmailRule(Base):
    __tablename__ = "email_rules"

    id = Column(Integer, primary_key=True)
    name = Column(String(150), nullable=False)
    template_id = Column(Integer, ForeignKey("email_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    source_table = Column(String(64), nullable=False, index=True)
    trigger_event = Column(EmailRuleTrigger, nullable=False, default="insert")
    trigger_conditions = Column(JSON, nullable=False, default=dict)
    recipient_config = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    template = relationship("EmailTemplate")


class EmailQueueItem(Base):
    __tablename__ = "email_queue"

    id = Column(Integer, primary_key=True)
    template_id = Column(Integer, ForeignKey("email_templates.id", ondelete="SET NULL"), nullable=True)
    rule_id = Column(Integer, ForeignKey("email_rules.id", ondelete="SET NULL"), nullable=True)
    recipient_email = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)
    source_table = Column(String(64), nullable=True)
    record_id = Column(Integer, nullable=True)
    status = Column(EmailQueueStatus, nullable=False, default="pending", index=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    template = relationship("EmailTemplate")
    rule = relationship("EmailRule")
    logs = relationship("EmailLog", back_populates="queue_item", cascade="all, delete-orphan")


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True)
    queue_id = Column(Integer, ForeignKey("email_queue.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    event_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    queue_item = relationship("EmailQueueItem", back_populates="logs")
