"""Schemas for automation rules, execution logs and emitted events."""

from datetime import datetime
from uuid import UUID
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.models.automation import AutomationAction, AutomationTrigger, TemplateChannel


class RuleTemplate(BaseModel):
    subject: Optional[str] = Field(None, examples=["Booking Confirmed - {{serviceType}}"])
    body: str = Field(..., min_length=1, examples=["Hi {{firstName}}, see you on {{dateTime}}!"])
    channel: str = Field(default=TemplateChannel.EMAIL, examples=["email"])

    @field_validator("channel")
    @classmethod
    def validate_channel(cls, value: str) -> str:
        if value not in TemplateChannel.ALL:
            raise ValueError(f"channel must be one of {sorted(TemplateChannel.ALL)}")
        return value


class AutomationRuleCreate(BaseModel):
    name: str = Field(..., min_length=1, examples=["Welcome New Contacts"])
    description: Optional[str] = None
    trigger: AutomationTrigger
    action: AutomationAction
    template: RuleTemplate
    conditions: Optional[Dict[str, Any]] = None
    is_active: bool = True


class AutomationRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    template: Optional[RuleTemplate] = None
    conditions: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class AutomationRuleOut(BaseModel):
    id: UUID
    tenant_id: UUID
    name: str
    description: Optional[str] = None
    trigger: str
    action: str
    template_subject: Optional[str] = None
    template_body: str
    template_channel: str
    conditions: Optional[Dict[str, Any]] = None
    is_active: bool
    execution_count: int
    last_executed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ExecutionLogOut(BaseModel):
    id: UUID
    rule_id: UUID
    trigger: str
    action: str
    contact_id: Optional[UUID] = None
    booking_id: Optional[UUID] = None
    conversation_id: Optional[UUID] = None
    status: str
    error_message: Optional[str] = None
    executed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AutomationEventIn(BaseModel):
    """An event emitted by another flow (booking created, staff replied...)."""

    trigger: str = Field(..., examples=["contact_created"])
    context: Dict[str, Any] = Field(
        default_factory=dict,
        examples=[{"contact": {"first_name": "Mo", "email": "mo@example.com"}}],
    )
