"""Schemas for webhook subscriptions."""

from datetime import datetime
from uuid import UUID
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict
from shared import validate_webhook_url

from app.models.webhook import WebhookEvent


def _check_url(value: str) -> str:
    if not validate_webhook_url(value):
        raise ValueError("Invalid URL. Use HTTPS, or HTTP only for localhost/127.0.0.1")
    return value


def _check_events(value: List[str]) -> List[str]:
    if not value:
        raise ValueError("At least one event must be specified")
    invalid_events = set(value) - WebhookEvent.ALL
    if invalid_events:
        raise ValueError(
            f"Invalid events: {sorted(invalid_events)}. "
            f"Supported events: {sorted(WebhookEvent.ALL)}"
        )
    # keep order, drop duplicates
    return list(dict.fromkeys(value))


class WebhookCreate(BaseModel):
    name: str = Field(..., min_length=1, examples=["CRM sync"])
    url: str = Field(..., examples=["https://example.com/webhook"])
    events: List[str] = Field(..., examples=[["booking.created", "booking.cancelled"]])
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay_ms: int = Field(default=1000, ge=0, le=60_000)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        return _check_url(value)

    @field_validator("events")
    @classmethod
    def validate_events(cls, value: List[str]) -> List[str]:
        return _check_events(value)


class WebhookOut(BaseModel):
    """Listing view: never carries the secret."""

    id: UUID
    tenant_id: UUID
    name: str
    url: str
    events: List[str]
    is_active: bool
    retry_attempts: int
    retry_delay_ms: int
    total_calls: int
    successful_calls: int
    failed_calls: int
    last_triggered_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WebhookCreated(BaseModel):
    """Returned once at creation; the only time the secret is shown."""

    id: UUID
    name: str
    url: str
    events: List[str]
    secret: str

    model_config = ConfigDict(from_attributes=True)


class WebhookDeliveryOut(BaseModel):
    id: UUID
    webhook_id: UUID
    event: str
    payload: Optional[Dict[str, Any]] = None
    status: str
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WebhookTestResult(BaseModel):
    success: bool
    message: Optional[str] = None
    status_code: Optional[int] = None
    attempts: Optional[int] = None
    error: Optional[str] = None


class WebhookTriggerRequest(BaseModel):
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("event")
    @classmethod
    def validate_event(cls, value: str) -> str:
        if value not in WebhookEvent.ALL:
            raise ValueError(f"Unsupported event: {value}")
        return value
