from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.models.automation import AutomationExecutionLog, AutomationRule, AutomationTrigger
from app.models.domain import (
    Booking,
    BookingStatus,
    Conversation,
    ConversationMessage,
    FormSubmission,
    FormSubmissionStatus,
)
from app.models.webhook import DeliveryStatus, WebhookDeliveryLog, WebhookSubscription
from app.schemas.automation_schema import AutomationRuleCreate, AutomationRuleUpdate
from app.schemas.webhook_schema import WebhookCreate

PREVIEW_LENGTH = 100


# ---------------------------------------------------------------------------
# Automation rules
# ---------------------------------------------------------------------------

def create_rule(db: Session, tenant_id: UUID, data: AutomationRuleCreate) -> AutomationRule:
    rule = AutomationRule(
        tenant_id=tenant_id,
        name=data.name,
        description=data.description,
        trigger=data.trigger.value,
        action=data.action.value,
        template_subject=data.template.subject,
        template_body=data.template.body,
        template_channel=data.template.channel,
        conditions=data.conditions,
        is_active=data.is_active,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def list_rules(db: Session, tenant_id: UUID) -> List[AutomationRule]:
    return (
        db.query(AutomationRule)
        .filter(AutomationRule.tenant_id == tenant_id)
        .order_by(AutomationRule.created_at, AutomationRule.id)
        .all()
    )


def get_rule(db: Session, tenant_id: UUID, rule_id: UUID) -> Optional[AutomationRule]:
    return (
        db.query(AutomationRule)
        .filter(AutomationRule.tenant_id == tenant_id, AutomationRule.id == rule_id)
        .first()
    )


def update_rule(db: Session, tenant_id: UUID, rule_id: UUID, data: AutomationRuleUpdate):
    rule = get_rule(db, tenant_id, rule_id)
    if not rule:
        return None

    update_data = data.model_dump(exclude_unset=True)
    template = update_data.pop("template", None)
    if template is not None:
        rule.template_subject = template.get("subject")
        rule.template_body = template["body"]
        rule.template_channel = template.get("channel") or rule.template_channel

    for field, value in update_data.items():
        setattr(rule, field, value)

    db.commit()
    db.refresh(rule)
    return rule


def active_rules_for_trigger(db: Session, tenant_id: UUID, trigger: str) -> List[AutomationRule]:
    """Active rules of a tenant for an exact trigger, in creation order.

    Unknown trigger names match nothing.
    """
    if AutomationTrigger.parse(trigger) is None:
        return []
    return (
        db.query(AutomationRule)
        .filter(
            AutomationRule.tenant_id == tenant_id,
            AutomationRule.trigger == trigger,
            AutomationRule.is_active.is_(True),
        )
        .order_by(AutomationRule.created_at, AutomationRule.id)
        .all()
    )


def mark_rule_executed(db: Session, rule_id: UUID, executed_at: Optional[datetime] = None) -> None:
    # single UPDATE so concurrent executions never lose an increment
    db.query(AutomationRule).filter(AutomationRule.id == rule_id).update(
        {
            AutomationRule.execution_count: AutomationRule.execution_count + 1,
            AutomationRule.last_executed_at: executed_at or utcnow(),
        },
        synchronize_session=False,
    )
    db.commit()


# ---------------------------------------------------------------------------
# Execution log
# ---------------------------------------------------------------------------

def record_execution(
    db: Session,
    *,
    tenant_id: UUID,
    rule_id: UUID,
    trigger: str,
    action: str,
    status: str,
    error_message: Optional[str] = None,
    contact_id: Optional[UUID] = None,
    booking_id: Optional[UUID] = None,
    conversation_id: Optional[UUID] = None,
) -> AutomationExecutionLog:
    log = AutomationExecutionLog(
        tenant_id=tenant_id,
        rule_id=rule_id,
        trigger=trigger,
        action=action,
        status=status,
        error_message=error_message,
        contact_id=contact_id,
        booking_id=booking_id,
        conversation_id=conversation_id,
        executed_at=utcnow(),
    )
    db.add(log)
    db.commit()
    return log


def list_execution_logs(
    db: Session,
    tenant_id: UUID,
    rule_id: Optional[UUID] = None,
    limit: int = 100,
) -> List[AutomationExecutionLog]:
    query = db.query(AutomationExecutionLog).filter(AutomationExecutionLog.tenant_id == tenant_id)
    if rule_id is not None:
        query = query.filter(AutomationExecutionLog.rule_id == rule_id)
    return query.order_by(AutomationExecutionLog.executed_at.desc()).limit(limit).all()


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def create_webhook(db: Session, tenant_id: UUID, data: WebhookCreate, secret: str) -> WebhookSubscription:
    webhook = WebhookSubscription(
        tenant_id=tenant_id,
        name=data.name,
        url=data.url,
        secret=secret,
        events=list(data.events),
        retry_attempts=data.retry_attempts,
        retry_delay_ms=data.retry_delay_ms,
    )
    db.add(webhook)
    db.commit()
    db.refresh(webhook)
    return webhook


def list_webhooks(db: Session, tenant_id: UUID) -> List[WebhookSubscription]:
    return (
        db.query(WebhookSubscription)
        .filter(WebhookSubscription.tenant_id == tenant_id)
        .order_by(WebhookSubscription.created_at, WebhookSubscription.id)
        .all()
    )


def get_webhook(db: Session, tenant_id: UUID, webhook_id: UUID) -> Optional[WebhookSubscription]:
    return (
        db.query(WebhookSubscription)
        .filter(WebhookSubscription.tenant_id == tenant_id, WebhookSubscription.id == webhook_id)
        .first()
    )


def delete_webhook(db: Session, tenant_id: UUID, webhook_id: UUID):
    webhook = get_webhook(db, tenant_id, webhook_id)
    if not webhook:
        return None
    db.delete(webhook)
    db.commit()
    return webhook


def active_webhooks_for_event(db: Session, tenant_id: UUID, event: str) -> List[WebhookSubscription]:
    # events is a JSON list; filtered here to stay portable across backends
    webhooks = (
        db.query(WebhookSubscription)
        .filter(
            WebhookSubscription.tenant_id == tenant_id,
            WebhookSubscription.is_active.is_(True),
        )
        .order_by(WebhookSubscription.created_at, WebhookSubscription.id)
        .all()
    )
    return [webhook for webhook in webhooks if webhook.listens_to(event)]


def list_deliveries(db: Session, tenant_id: UUID, webhook_id: UUID, limit: int = 50) -> List[WebhookDeliveryLog]:
    return (
        db.query(WebhookDeliveryLog)
        .filter(
            WebhookDeliveryLog.tenant_id == tenant_id,
            WebhookDeliveryLog.webhook_id == webhook_id,
        )
        .order_by(WebhookDeliveryLog.created_at.desc())
        .limit(limit)
        .all()
    )


def start_delivery(db: Session, webhook: WebhookSubscription, event: str, payload: dict) -> WebhookDeliveryLog:
    delivery = WebhookDeliveryLog(
        tenant_id=webhook.tenant_id,
        webhook_id=webhook.id,
        event=event,
        payload=payload,
        status=DeliveryStatus.PENDING,
        attempts=0,
    )
    db.add(delivery)
    db.commit()
    return delivery


def record_attempt(
    db: Session,
    delivery_id: UUID,
    attempt: int,
    status_code: Optional[int],
    response_body: Optional[str],
    error_message: Optional[str],
    now: Optional[datetime] = None,
) -> None:
    """Update the delivery row after one HTTP attempt; the status stays pending."""
    db.query(WebhookDeliveryLog).filter(WebhookDeliveryLog.id == delivery_id).update(
        {
            WebhookDeliveryLog.attempts: attempt,
            WebhookDeliveryLog.status_code: status_code,
            WebhookDeliveryLog.response_body: response_body,
            WebhookDeliveryLog.error_message: error_message,
            WebhookDeliveryLog.updated_at: now or utcnow(),
        },
        synchronize_session=False,
    )
    db.commit()


def finish_delivery(
    db: Session,
    delivery_id: UUID,
    webhook_id: UUID,
    *,
    success: bool,
    attempts: int,
    status_code: Optional[int],
    response_body: Optional[str],
    error_message: Optional[str],
    now: datetime,
) -> None:
    """Close a delivery sequence and count it once on the subscription."""
    db.query(WebhookDeliveryLog).filter(WebhookDeliveryLog.id == delivery_id).update(
        {
            WebhookDeliveryLog.status: DeliveryStatus.SUCCESS if success else DeliveryStatus.FAILED,
            WebhookDeliveryLog.status_code: status_code,
            WebhookDeliveryLog.response_body: response_body,
            WebhookDeliveryLog.error_message: error_message,
            WebhookDeliveryLog.attempts: attempts,
            WebhookDeliveryLog.updated_at: now,
        },
        synchronize_session=False,
    )

    counters = {
        WebhookSubscription.total_calls: WebhookSubscription.total_calls + 1,
        WebhookSubscription.last_triggered_at: now,
    }
    if success:
        counters[WebhookSubscription.successful_calls] = WebhookSubscription.successful_calls + 1
    else:
        counters[WebhookSubscription.failed_calls] = WebhookSubscription.failed_calls + 1
        counters[WebhookSubscription.last_error] = error_message
    db.query(WebhookSubscription).filter(WebhookSubscription.id == webhook_id).update(
        counters, synchronize_session=False
    )
    db.commit()


# ---------------------------------------------------------------------------
# Scheduled scans
# ---------------------------------------------------------------------------

def bookings_needing_reminder(db: Session, now: datetime, window: timedelta = timedelta(hours=24)) -> List[Booking]:
    return (
        db.query(Booking)
        .filter(
            Booking.start_time >= now,
            Booking.start_time <= now + window,
            Booking.status.in_(BookingStatus.REMINDABLE),
            Booking.reminder_sent.is_(False),
        )
        .order_by(Booking.start_time)
        .all()
    )


def claim_booking_reminder(db: Session, booking_id: UUID, now: datetime) -> bool:
    """Flip ``reminder_sent`` only if nobody did it first."""
    updated = (
        db.query(Booking)
        .filter(Booking.id == booking_id, Booking.reminder_sent.is_(False))
        .update(
            {Booking.reminder_sent: True, Booking.reminder_sent_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def release_booking_reminder(db: Session, booking_id: UUID) -> None:
    db.query(Booking).filter(Booking.id == booking_id).update(
        {Booking.reminder_sent: False, Booking.reminder_sent_at: None},
        synchronize_session=False,
    )
    db.commit()


def forms_needing_reminder(db: Session, now: datetime, age: timedelta = timedelta(hours=48)) -> List[FormSubmission]:
    return (
        db.query(FormSubmission)
        .filter(
            FormSubmission.status == FormSubmissionStatus.PENDING,
            FormSubmission.sent_at <= now - age,
            FormSubmission.reminder_sent.is_(False),
        )
        .order_by(FormSubmission.sent_at)
        .all()
    )


def claim_form_reminder(db: Session, submission_id: UUID, now: datetime) -> bool:
    updated = (
        db.query(FormSubmission)
        .filter(FormSubmission.id == submission_id, FormSubmission.reminder_sent.is_(False))
        .update(
            {
                FormSubmission.reminder_sent: True,
                FormSubmission.reminder_sent_at: now,
                FormSubmission.reminder_count: FormSubmission.reminder_count + 1,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def release_form_reminder(db: Session, submission_id: UUID) -> None:
    db.query(FormSubmission).filter(FormSubmission.id == submission_id).update(
        {
            FormSubmission.reminder_sent: False,
            FormSubmission.reminder_sent_at: None,
            FormSubmission.reminder_count: FormSubmission.reminder_count - 1,
        },
        synchronize_session=False,
    )
    db.commit()


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def pause_conversation(db: Session, conversation_id: UUID, now: Optional[datetime] = None) -> bool:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        return False
    conversation.automation_paused = True
    conversation.paused_at = now or utcnow()
    db.commit()
    return True


def append_system_message(
    db: Session,
    tenant_id: UUID,
    contact_id: UUID,
    content: str,
    channel: str = "internal",
) -> Conversation:
    """Record an automated message on the contact's conversation, creating it if needed."""
    now = utcnow()
    conversation = (
        db.query(Conversation)
        .filter(Conversation.tenant_id == tenant_id, Conversation.contact_id == contact_id)
        .first()
    )
    if conversation is None:
        conversation = Conversation(tenant_id=tenant_id, contact_id=contact_id, status="open")
        db.add(conversation)

    conversation.messages.append(
        ConversationMessage(
            sender="system",
            content=content,
            channel=channel or "internal",
            delivery_status="sent",
            sent_at=now,
        )
    )
    conversation.last_message = content[:PREVIEW_LENGTH]
    conversation.last_message_at = now
    db.commit()
    return conversation
