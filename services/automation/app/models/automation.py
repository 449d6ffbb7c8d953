"""Automation rules and their execution log."""

import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.sql import func

from app.core.clock import utcnow
from app.core.database import Base, JSONType


class AutomationTrigger(str, Enum):
    CONTACT_CREATED = "contact_created"
    BOOKING_CREATED = "booking_created"
    BOOKING_REMINDER_24H = "booking_reminder_24h"
    FORM_PENDING_48H = "form_pending_48h"
    INVENTORY_LOW = "inventory_low"
    INVENTORY_CRITICAL = "inventory_critical"
    STAFF_REPLY = "staff_reply"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_COMPLETED = "booking_completed"

    @classmethod
    def parse(cls, value) -> Optional["AutomationTrigger"]:
        """Return the member for ``value`` or None when it is not a known trigger."""
        try:
            return cls(value)
        except ValueError:
            return None


class AutomationAction(str, Enum):
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CREATE_ALERT = "create_alert"
    PAUSE_AUTOMATION = "pause_automation"


class TemplateChannel:
    EMAIL = "email"
    SMS = "sms"
    BOTH = "both"

    ALL = {EMAIL, SMS, BOTH}


class ExecutionStatus:
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    ALL = {SUCCESS, FAILED, SKIPPED}


class AutomationRule(Base):
    __tablename__ = "automation_rules"
    __table_args__ = (
        Index("ix_automation_rules_lookup", "tenant_id", "trigger", "is_active"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    trigger = Column(String, nullable=False)
    action = Column(String, nullable=False)

    template_subject = Column(String, nullable=True)
    template_body = Column(Text, nullable=False)
    template_channel = Column(String, nullable=False, default=TemplateChannel.EMAIL)

    # Opaque to the engine
    conditions = Column(JSONType, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    execution_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AutomationExecutionLog(Base):
    """Append-only: one row per attempted rule execution."""

    __tablename__ = "automation_execution_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    rule_id = Column(Uuid(as_uuid=True), nullable=False, index=True)

    trigger = Column(String, nullable=False)
    action = Column(String, nullable=False)

    contact_id = Column(Uuid(as_uuid=True), nullable=True)
    booking_id = Column(Uuid(as_uuid=True), nullable=True)
    conversation_id = Column(Uuid(as_uuid=True), nullable=True)

    status = Column(String, nullable=False)
    error_message = Column(Text, nullable=True)

    executed_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
