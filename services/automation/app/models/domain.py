"""Domain records owned by the booking/inbox/forms flows.

The automation engine only reads them and flips a handful of flags
(reminders, automation pause); everything else about their lifecycle lives
in the services that own them.
"""

import uuid
from typing import Any, Dict

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, Uuid, event
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.clock import as_utc, utcnow
from app.core.database import Base


class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"

    ALL = {PENDING, CONFIRMED, COMPLETED, NO_SHOW, CANCELLED}
    REMINDABLE = {PENDING, CONFIRMED}


class FormSubmissionStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    OVERDUE = "overdue"

    ALL = {PENDING, COMPLETED, OVERDUE}


def _id(value) -> str | None:
    return str(value) if value is not None else None


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def to_context(self) -> Dict[str, Any]:
        return {
            "id": _id(self.id),
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
        }


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    contact_id = Column(Uuid(as_uuid=True), ForeignKey("contacts.id"), nullable=True)
    service_type = Column(String, nullable=True)
    service_name = Column(String, nullable=False)
    duration = Column(Integer, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False, default=BookingStatus.PENDING)

    reminder_sent = Column(Boolean, nullable=False, default=False)
    reminder_sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    contact = relationship("Contact")

    def to_context(self) -> Dict[str, Any]:
        return {
            "id": _id(self.id),
            "service_type": self.service_type,
            "service_name": self.service_name,
            "duration": self.duration,
            "start_time": as_utc(self.start_time),
            "status": self.status,
            "contact_id": _id(self.contact_id),
        }


class FormSubmission(Base):
    __tablename__ = "form_submissions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    contact_id = Column(Uuid(as_uuid=True), ForeignKey("contacts.id"), nullable=True)
    booking_id = Column(Uuid(as_uuid=True), nullable=True)
    form_name = Column(String, nullable=False)

    status = Column(String, nullable=False, default=FormSubmissionStatus.PENDING)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    reminder_sent = Column(Boolean, nullable=False, default=False)
    reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    reminder_count = Column(Integer, nullable=False, default=0)

    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    due_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    contact = relationship("Contact")

    def refresh_status(self) -> None:
        """A pending submission past its due date becomes overdue."""
        due = as_utc(self.due_date)
        if due is not None and due < utcnow() and self.status == FormSubmissionStatus.PENDING:
            self.status = FormSubmissionStatus.OVERDUE

    def to_context(self) -> Dict[str, Any]:
        return {
            "id": _id(self.id),
            "form_name": self.form_name,
            "status": self.status,
            "booking_id": _id(self.booking_id),
            "sent_at": as_utc(self.sent_at),
            "due_date": as_utc(self.due_date),
        }


@event.listens_for(FormSubmission, "before_insert")
@event.listens_for(FormSubmission, "before_update")
def _form_submission_lifecycle(_mapper, _connection, target: FormSubmission) -> None:
    target.refresh_status()


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    contact_id = Column(Uuid(as_uuid=True), ForeignKey("contacts.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="open")

    automation_paused = Column(Boolean, nullable=False, default=False)
    paused_at = Column(DateTime(timezone=True), nullable=True)

    last_message = Column(String, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    messages = relationship(
        "ConversationMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationMessage.sent_at",
    )

    def to_context(self) -> Dict[str, Any]:
        return {
            "id": _id(self.id),
            "contact_id": _id(self.contact_id),
            "automation_paused": self.automation_paused,
        }


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sender = Column(String, nullable=False)  # contact | staff | system
    content = Column(Text, nullable=False)
    channel = Column(String, nullable=False, default="internal")  # email | sms | internal
    delivery_status = Column(String, nullable=False, default="sent")
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")
