import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from shared import EventBus

from app.core.clock import utcnow
from app.core.database import SessionLocal
from app.models.automation import AutomationExecutionLog, AutomationRule, ExecutionStatus
from app.models.domain import (
    Booking,
    BookingStatus,
    Contact,
    Conversation,
    ConversationMessage,
    FormSubmission,
)
from app.routers import crud
from app.schemas.automation_schema import AutomationRuleCreate
from app.services.automation_engine import AutomationEngine
from app.services.context import AutomationContext
from app.services.notifications import NotificationResult

BASE_URL = "https://app.example.com"


@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def automation_engine(gateway):
    return AutomationEngine(EventBus(), SessionLocal, gateway, base_url=BASE_URL, scan_interval=0.01)


def add_rule(db, tenant_id, trigger, action="send_email", body="Hi {{firstName}}", subject=None, **extra):
    return crud.create_rule(
        db,
        tenant_id,
        AutomationRuleCreate(
            name=extra.pop("name", f"{trigger} rule"),
            trigger=trigger,
            action=action,
            template={"subject": subject, "body": body},
            **extra,
        ),
    )


def add_contact(db, tenant_id, **fields):
    contact = Contact(
        tenant_id=tenant_id,
        first_name=fields.pop("first_name", "Ana"),
        email=fields.pop("email", "ana@example.com"),
        phone=fields.pop("phone", "+15550001111"),
        **fields,
    )
    db.add(contact)
    db.commit()
    return contact


def add_booking(db, tenant_id, contact, start_in, status=BookingStatus.CONFIRMED):
    booking = Booking(
        tenant_id=tenant_id,
        contact_id=contact.id,
        service_name="Haircut",
        start_time=utcnow() + start_in,
        status=status,
    )
    db.add(booking)
    db.commit()
    return booking


def logs_for(db, tenant_id):
    db.expire_all()
    return (
        db.query(AutomationExecutionLog)
        .filter(AutomationExecutionLog.tenant_id == tenant_id)
        .order_by(AutomationExecutionLog.executed_at)
        .all()
    )


class TestOnEvent:
    @pytest.mark.asyncio
    async def test_matching_rule_sends_rendered_email_and_logs_once(self, db, gateway, automation_engine, tenant_id):
        rule = add_rule(db, tenant_id, "contact_created", subject="Welcome {{firstName}}", body="Hello {{firstName}}")
        contact = add_contact(db, tenant_id)

        statuses = await automation_engine.on_event(
            "contact_created", AutomationContext(tenant_id=tenant_id, contact=contact.to_context())
        )

        assert statuses == [ExecutionStatus.SUCCESS]
        assert gateway.emails == [
            {"tenant_id": tenant_id, "to": "ana@example.com", "subject": "Welcome Ana", "html": "Hello Ana"}
        ]

        logs = logs_for(db, tenant_id)
        assert len(logs) == 1
        assert logs[0].rule_id == rule.id
        assert logs[0].status == ExecutionStatus.SUCCESS
        assert logs[0].contact_id == contact.id

        db.refresh(rule)
        assert rule.execution_count == 1
        assert rule.last_executed_at is not None

    @pytest.mark.asyncio
    async def test_successful_email_is_recorded_on_the_conversation(self, db, automation_engine, tenant_id):
        add_rule(db, tenant_id, "contact_created", body="Welcome aboard")
        contact = add_contact(db, tenant_id)

        await automation_engine.on_event("contact_created", {"tenant_id": str(tenant_id), "contact": contact.to_context()})

        conversation = db.query(Conversation).filter(Conversation.contact_id == contact.id).one()
        messages = db.query(ConversationMessage).filter(ConversationMessage.conversation_id == conversation.id).all()
        assert [(m.sender, m.channel, m.content) for m in messages] == [("system", "email", "Welcome aboard")]
        assert conversation.last_message == "Welcome aboard"

    @pytest.mark.asyncio
    async def test_rules_run_in_creation_order_and_failures_are_isolated(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "booking_created", action="send_sms", body="first", name="sms")
        add_rule(db, tenant_id, "booking_created", action="create_alert", body="second", name="alert")
        gateway.sms_result = NotificationResult.failed("SMS not configured")
        contact = add_contact(db, tenant_id)

        statuses = await automation_engine.on_event(
            "booking_created", AutomationContext(tenant_id=tenant_id, contact=contact.to_context())
        )

        assert statuses == [ExecutionStatus.FAILED, ExecutionStatus.SUCCESS]
        assert [a["message"] for a in gateway.alerts] == ["second"]
        logs = logs_for(db, tenant_id)
        assert [(log.action, log.status, log.error_message) for log in logs] == [
            ("send_sms", "failed", "SMS not configured"),
            ("create_alert", "success", None),
        ]

    @pytest.mark.asyncio
    async def test_raising_action_is_logged_as_failed_and_still_counted(self, db, gateway, automation_engine, tenant_id):
        rule = add_rule(db, tenant_id, "contact_created")
        gateway.email_error = RuntimeError("provider exploded")
        contact = add_contact(db, tenant_id)

        statuses = await automation_engine.on_event(
            "contact_created", AutomationContext(tenant_id=tenant_id, contact=contact.to_context())
        )

        assert statuses == [ExecutionStatus.FAILED]
        [log] = logs_for(db, tenant_id)
        assert log.error_message == "provider exploded"
        db.refresh(rule)
        assert rule.execution_count == 1

    @pytest.mark.asyncio
    async def test_unknown_trigger_matches_nothing(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "contact_created")

        statuses = await automation_engine.on_event("not_a_trigger", {"tenant_id": str(tenant_id)})

        assert statuses == []
        assert logs_for(db, tenant_id) == []
        assert gateway.emails == []

    @pytest.mark.asyncio
    async def test_inactive_and_foreign_rules_are_ignored(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "contact_created", is_active=False)
        add_rule(db, uuid4(), "contact_created")
        contact = add_contact(db, tenant_id)

        statuses = await automation_engine.on_event(
            "contact_created", AutomationContext(tenant_id=tenant_id, contact=contact.to_context())
        )

        assert statuses == []
        assert gateway.emails == []

    @pytest.mark.asyncio
    async def test_email_without_address_is_a_successful_noop(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "contact_created")
        contact = add_contact(db, tenant_id, email=None)

        statuses = await automation_engine.on_event(
            "contact_created", AutomationContext(tenant_id=tenant_id, contact=contact.to_context())
        )

        assert statuses == [ExecutionStatus.SUCCESS]
        assert gateway.emails == []

    @pytest.mark.asyncio
    async def test_alert_carries_record_references(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "booking_created", action="create_alert", body="New booking for {{firstName}}")
        contact = add_contact(db, tenant_id)
        booking = add_booking(db, tenant_id, contact, timedelta(days=3))

        await automation_engine.on_event(
            "booking_created",
            AutomationContext(tenant_id=tenant_id, contact=contact.to_context(), booking=booking.to_context()),
        )

        [alert] = gateway.alerts
        assert alert["kind"] == "booking_created"
        assert alert["message"] == "New booking for Ana"
        assert alert["reference"] == {"contact_id": str(contact.id), "booking_id": str(booking.id)}


class TestConversationPause:
    @pytest.mark.asyncio
    async def test_staff_reply_pauses_conversation_without_rules(self, db, automation_engine, tenant_id):
        contact = add_contact(db, tenant_id)
        conversation = Conversation(tenant_id=tenant_id, contact_id=contact.id)
        db.add(conversation)
        db.commit()

        await automation_engine.on_event(
            "staff_reply", AutomationContext(tenant_id=tenant_id, conversation=conversation.to_context())
        )

        db.refresh(conversation)
        assert conversation.automation_paused is True
        assert conversation.paused_at is not None

    @pytest.mark.asyncio
    async def test_pause_automation_action(self, db, automation_engine, tenant_id):
        add_rule(db, tenant_id, "staff_reply", action="pause_automation", body="-")
        contact = add_contact(db, tenant_id)
        conversation = Conversation(tenant_id=tenant_id, contact_id=contact.id)
        db.add(conversation)
        db.commit()

        statuses = await automation_engine.on_event(
            "staff_reply", AutomationContext(tenant_id=tenant_id, conversation=conversation.to_context())
        )

        assert statuses == [ExecutionStatus.SUCCESS]
        db.refresh(conversation)
        assert conversation.automation_paused is True
        [log] = logs_for(db, tenant_id)
        assert log.conversation_id == conversation.id


class TestFallbacks:
    @pytest.mark.asyncio
    async def test_booking_confirmed_without_rules_sends_default_email(self, db, gateway, automation_engine, tenant_id):
        contact = add_contact(db, tenant_id)
        booking = add_booking(db, tenant_id, contact, timedelta(days=2))

        await automation_engine.on_event(
            "booking_confirmed",
            AutomationContext(tenant_id=tenant_id, contact=contact.to_context(), booking=booking.to_context()),
        )

        [email] = gateway.emails
        assert email["subject"] == "Booking Confirmed: Haircut"
        assert "Hi Ana" in email["html"]
        assert logs_for(db, tenant_id) == []

    @pytest.mark.asyncio
    async def test_booking_confirmed_with_rules_skips_default_email(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "booking_confirmed", subject="Custom", body="Custom body")
        contact = add_contact(db, tenant_id)

        await automation_engine.on_event(
            "booking_confirmed",
            AutomationContext(tenant_id=tenant_id, contact=contact.to_context(), booking={"service_name": "Haircut"}),
        )

        assert [e["subject"] for e in gateway.emails] == ["Custom"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "trigger, expected",
        [
            ("inventory_low", "Low stock: Shampoo (3 bottles)"),
            ("inventory_critical", "CRITICAL: Shampoo (3 bottles)"),
        ],
    )
    async def test_inventory_events_without_rules_raise_alerts(self, gateway, automation_engine, tenant_id, trigger, expected):
        item = {"id": str(uuid4()), "name": "Shampoo", "current_quantity": 3, "unit": "bottles"}

        await automation_engine.on_event(trigger, AutomationContext(tenant_id=tenant_id, inventory=item))

        [alert] = gateway.alerts
        assert alert["message"] == expected
        assert alert["reference"] == {"inventory_id": item["id"]}


class TestEmit:
    @pytest.mark.asyncio
    async def test_emit_is_fire_and_forget(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "contact_created")
        contact = add_contact(db, tenant_id)
        bus = automation_engine._bus
        bus.bind()
        automation_engine.register()

        task = automation_engine.emit(
            "contact_created", AutomationContext(tenant_id=tenant_id, contact=contact.to_context())
        )

        assert task is not None
        assert gateway.emails == []
        await bus.drain()
        assert len(gateway.emails) == 1
        assert len(logs_for(db, tenant_id)) == 1

    @pytest.mark.asyncio
    async def test_camel_case_contact_from_a_producer_renders_and_counts(self, db, gateway, automation_engine, tenant_id):
        rule = add_rule(db, tenant_id, "contact_created", body="Hi {{firstName}}")
        bus = automation_engine._bus
        bus.bind()
        automation_engine.register()

        automation_engine.emit(
            "contact_created",
            {"tenant_id": str(tenant_id), "contact": {"firstName": "Mo", "email": "mo@x.com"}},
        )
        await bus.drain()

        assert [(e["to"], e["html"]) for e in gateway.emails] == [("mo@x.com", "Hi Mo")]
        [log] = logs_for(db, tenant_id)
        assert log.status == ExecutionStatus.SUCCESS
        db.refresh(rule)
        assert rule.execution_count == 1

    @pytest.mark.asyncio
    async def test_emit_unknown_trigger_is_dropped(self, automation_engine, tenant_id):
        automation_engine._bus.bind()
        automation_engine.register()

        assert automation_engine.emit("not_a_trigger", {"tenant_id": str(tenant_id)}) is None

    @pytest.mark.asyncio
    async def test_event_without_tenant_is_dropped(self, gateway, automation_engine):
        bus = automation_engine._bus
        bus.bind()
        automation_engine.register()

        automation_engine.emit("inventory_low", {"inventory": {"name": "Gel"}})
        await bus.drain()

        assert gateway.alerts == []


class TestScheduledScan:
    @pytest.mark.asyncio
    async def test_booking_reminder_fires_once(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "booking_reminder_24h", subject="Reminder", body="See you {{dateTime}}")
        contact = add_contact(db, tenant_id)
        due = add_booking(db, tenant_id, contact, timedelta(hours=10))
        add_booking(db, tenant_id, contact, timedelta(hours=30))
        add_booking(db, tenant_id, contact, timedelta(hours=5), status=BookingStatus.CANCELLED)
        add_booking(db, tenant_id, contact, -timedelta(hours=1))

        first = await automation_engine.scan_scheduled()
        second = await automation_engine.scan_scheduled()

        assert first["booking_reminders"] == 1
        assert second["booking_reminders"] == 0
        assert len(gateway.emails) == 1
        db.refresh(due)
        assert due.reminder_sent is True
        assert due.reminder_sent_at is not None
        [log] = logs_for(db, tenant_id)
        assert log.booking_id == due.id

    @pytest.mark.asyncio
    async def test_pending_form_reminder_after_48_hours(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "form_pending_48h", body="Please fill in your form, {{firstName}}")
        contact = add_contact(db, tenant_id)
        stale = FormSubmission(
            tenant_id=tenant_id, contact_id=contact.id, form_name="Intake", sent_at=utcnow() - timedelta(hours=50)
        )
        fresh = FormSubmission(
            tenant_id=tenant_id, contact_id=contact.id, form_name="Intake", sent_at=utcnow() - timedelta(hours=10)
        )
        db.add_all([stale, fresh])
        db.commit()

        result = await automation_engine.scan_scheduled()
        again = await automation_engine.scan_scheduled()

        assert result["form_reminders"] == 1
        assert again["form_reminders"] == 0
        assert [e["html"] for e in gateway.emails] == ["Please fill in your form, Ana"]
        db.refresh(stale)
        db.refresh(fresh)
        assert stale.reminder_sent is True
        assert stale.reminder_count == 1
        assert fresh.reminder_sent is False

    @pytest.mark.asyncio
    async def test_one_failing_scan_does_not_stop_the_other(self, db, gateway, automation_engine, tenant_id, monkeypatch):
        add_rule(db, tenant_id, "form_pending_48h", body="Reminder")
        contact = add_contact(db, tenant_id)
        db.add(FormSubmission(tenant_id=tenant_id, contact_id=contact.id, form_name="Intake",
                              sent_at=utcnow() - timedelta(hours=72)))
        db.commit()

        def broken(*args, **kwargs):
            raise RuntimeError("database hiccup")

        monkeypatch.setattr(crud, "bookings_needing_reminder", broken)

        result = await automation_engine.scan_scheduled()

        assert result["booking_reminders"] == 0
        assert result["form_reminders"] == 1

    @pytest.mark.asyncio
    async def test_failed_dispatch_releases_the_reminder_claim(self, db, automation_engine, tenant_id, monkeypatch):
        contact = add_contact(db, tenant_id)
        booking = add_booking(db, tenant_id, contact, timedelta(hours=3))

        async def broken(trigger, context):
            raise RuntimeError("rules unavailable")

        monkeypatch.setattr(automation_engine, "on_event", broken)

        result = await automation_engine.scan_scheduled()

        assert result["booking_reminders"] == 0
        db.refresh(booking)
        assert booking.reminder_sent is False

    @pytest.mark.asyncio
    async def test_overlapping_scan_is_skipped(self, automation_engine):
        async with automation_engine._scan_lock:
            result = await automation_engine.scan_scheduled()

        assert result["skipped"] is True

    @pytest.mark.asyncio
    async def test_periodic_runner_start_and_stop(self, db, gateway, automation_engine, tenant_id):
        add_rule(db, tenant_id, "booking_reminder_24h", body="Reminder")
        contact = add_contact(db, tenant_id)
        add_booking(db, tenant_id, contact, timedelta(hours=2))

        automation_engine.start()
        assert automation_engine.running is True
        for _ in range(100):
            if gateway.emails:
                break
            await asyncio.sleep(0.01)
        await automation_engine.stop()

        assert automation_engine.running is False
        assert len(gateway.emails) == 1
