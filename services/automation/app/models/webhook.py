"""Webhook subscriptions and delivery log."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.clock import utcnow
from app.core.database import Base, JSONType


class WebhookEvent:
    BOOKING_CREATED = "booking.created"
    BOOKING_UPDATED = "booking.updated"
    BOOKING_CANCELLED = "booking.cancelled"
    CONTACT_CREATED = "contact.created"
    FORM_SUBMITTED = "form.submitted"
    INVENTORY_LOW = "inventory.low"
    MESSAGE_RECEIVED = "message.received"

    # Only used by operator-initiated connectivity checks
    TEST = "webhook.test"

    ALL = {
        BOOKING_CREATED,
        BOOKING_UPDATED,
        BOOKING_CANCELLED,
        CONTACT_CREATED,
        FORM_SUBMITTED,
        INVENTORY_LOW,
        MESSAGE_RECEIVED,
    }


class DeliveryStatus:
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    secret = Column(String, nullable=False)
    events = Column(JSONType, nullable=False, default=list)  # ["booking.created", ...]
    is_active = Column(Boolean, nullable=False, default=True)

    retry_attempts = Column(Integer, nullable=False, default=3)
    retry_delay_ms = Column(Integer, nullable=False, default=1000)

    total_calls = Column(Integer, nullable=False, default=0)
    successful_calls = Column(Integer, nullable=False, default=0)
    failed_calls = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    deliveries = relationship(
        "WebhookDeliveryLog",
        back_populates="webhook",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def listens_to(self, event: str) -> bool:
        return event in (self.events or [])


class WebhookDeliveryLog(Base):
    """One row per delivery sequence, updated in place across retries."""

    __tablename__ = "webhook_delivery_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    webhook_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("webhook_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event = Column(String, nullable=False)
    payload = Column(JSONType, nullable=True)

    status = Column(String, nullable=False, default=DeliveryStatus.PENDING)
    status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    webhook = relationship("WebhookSubscription", back_populates="deliveries")
