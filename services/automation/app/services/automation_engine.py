"""Event-driven automation engine.

Reacts to business events published on the in-process :class:`EventBus`,
runs the tenant's matching rules one after the other and records one
execution log row per rule. A periodic scan covers the time-based triggers
(24h booking reminders, forms pending for 48h).

Built once per process in the FastAPI lifespan and kept on ``app.state``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union
from uuid import UUID

import structlog
from sqlalchemy.orm import Session

from shared import EventBus

from app.core.clock import utcnow
from app.models.automation import AutomationRule, AutomationTrigger, ExecutionStatus
from app.routers import crud
from app.services.actions import ActionExecutor, ActionRequest, RenderedMessage, pause_conversation_now
from app.services.context import AutomationContext
from app.services.notifications import NotificationGateway
from app.services.templates import format_date_time, render_template

logger = structlog.get_logger(__name__)

REMINDER_WINDOW = timedelta(hours=24)
PENDING_FORM_AGE = timedelta(hours=48)

ContextLike = Union[AutomationContext, Mapping[str, Any]]


class AutomationEngine:
    def __init__(
        self,
        bus: EventBus,
        session_factory: Callable[[], Session],
        gateway: NotificationGateway,
        *,
        base_url: str,
        scan_interval: float = 60.0,
        action_timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._bus = bus
        self._session_factory = session_factory
        self._gateway = gateway
        self._executor = ActionExecutor(gateway, session_factory)
        self._base_url = base_url.rstrip("/")
        self._scan_interval = scan_interval
        self._action_timeout = action_timeout
        self._clock = clock
        self._registered = False
        self._scan_lock = asyncio.Lock()
        self._scheduler_task: Optional[asyncio.Task] = None
        self._current_scan: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Event side
    # ------------------------------------------------------------------

    def register(self) -> None:
        """Subscribe to every known trigger on the bus (idempotent)."""
        if self._registered:
            return
        for trigger in AutomationTrigger:
            self._bus.subscribe(trigger.value, self._handle_bus_event)
        self._registered = True

    def emit(self, trigger: str, context: ContextLike):
        """Fire-and-forget publish of an automation event.

        Callers never wait for rule execution. Returns whatever the bus
        scheduled (or None when the event was dropped).
        """
        payload = context.to_payload() if isinstance(context, AutomationContext) else dict(context)
        return self._bus.publish(trigger, payload)

    async def _handle_bus_event(self, trigger: str, payload: Dict[str, Any]) -> None:
        try:
            context = AutomationContext.from_payload(payload)
        except ValueError as exc:
            logger.warning("automation_event_dropped", trigger=trigger, reason=str(exc))
            return
        await self.on_event(trigger, context)

    async def on_event(self, trigger: str, context: ContextLike) -> List[str]:
        """Run every active rule of the tenant matching ``trigger``, in order.

        Returns the execution status of each rule run.
        """
        if not isinstance(context, AutomationContext):
            context = AutomationContext.from_payload(context)

        if trigger == AutomationTrigger.STAFF_REPLY.value:
            await self._pause_for_staff_reply(context)

        rules = await self._in_session(crud.active_rules_for_trigger, context.tenant_id, trigger)

        log = logger.bind(trigger=trigger, tenant_id=str(context.tenant_id))
        if not rules:
            log.debug("no_matching_rules")
            await self._run_fallback(trigger, context)
            return []

        statuses = []
        for rule in rules:
            statuses.append(await self.execute_rule(rule, context))
        log.info("automation_event_processed", rules=len(rules), statuses=statuses)
        return statuses

    async def execute_rule(self, rule: AutomationRule, context: AutomationContext) -> str:
        """Render, dispatch, log once and bump the rule statistics.

        Never raises.
        """
        log = logger.bind(rule_id=str(rule.id), trigger=rule.trigger, action=rule.action)
        status = ExecutionStatus.SUCCESS
        error: Optional[str] = None

        try:
            message = RenderedMessage(
                subject=render_template(rule.template_subject, context, self._base_url),
                body=render_template(rule.template_body, context, self._base_url),
            )
            request = ActionRequest(
                tenant_id=rule.tenant_id,
                trigger=rule.trigger,
                message=message,
                context=context,
            )
            result = await asyncio.wait_for(
                self._executor.execute(rule.action, request),
                timeout=self._action_timeout,
            )
            if not result.success:
                status = ExecutionStatus.FAILED
                error = result.error
        except asyncio.TimeoutError:
            status = ExecutionStatus.FAILED
            error = f"Action timed out after {self._action_timeout}s"
            log.warning("automation_action_timeout")
        except Exception as exc:
            status = ExecutionStatus.FAILED
            error = str(exc) or exc.__class__.__name__
            log.exception("automation_execution_error")

        try:
            await asyncio.to_thread(self._record_execution, rule, context, status, error)
        except Exception:
            log.exception("automation_log_write_failed")

        if status == ExecutionStatus.SUCCESS:
            log.info("automation_executed", name=rule.name)
        else:
            log.warning("automation_failed", name=rule.name, error=error)
        return status

    def _record_execution(self, rule: AutomationRule, context: AutomationContext, status: str, error: Optional[str]) -> None:
        db = self._session_factory()
        try:
            crud.record_execution(
                db,
                tenant_id=rule.tenant_id,
                rule_id=rule.id,
                trigger=rule.trigger,
                action=rule.action,
                status=status,
                error_message=error,
                contact_id=context.record_id("contact"),
                booking_id=context.record_id("booking"),
                conversation_id=context.record_id("conversation"),
            )
            crud.mark_rule_executed(db, rule.id, self._clock())
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _pause_for_staff_reply(self, context: AutomationContext) -> None:
        conversation_id = context.record_id("conversation")
        if conversation_id is None:
            return
        try:
            await asyncio.to_thread(pause_conversation_now, self._session_factory, conversation_id)
        except Exception:
            logger.exception("staff_reply_pause_failed", conversation_id=str(conversation_id))

    # ------------------------------------------------------------------
    # Built-in behaviour for tenants without rules
    # ------------------------------------------------------------------

    async def _run_fallback(self, trigger: str, context: AutomationContext) -> None:
        try:
            if trigger == AutomationTrigger.BOOKING_CONFIRMED.value:
                await self._default_booking_email(context, confirmed=True)
            elif trigger == AutomationTrigger.BOOKING_COMPLETED.value:
                await self._default_booking_email(context, confirmed=False)
            elif trigger in (AutomationTrigger.INVENTORY_LOW.value, AutomationTrigger.INVENTORY_CRITICAL.value):
                await self._default_inventory_alert(trigger, context)
        except Exception:
            logger.exception("automation_fallback_failed", trigger=trigger, tenant_id=str(context.tenant_id))

    async def _default_booking_email(self, context: AutomationContext, *, confirmed: bool) -> None:
        contact = context.contact or {}
        booking = context.booking or {}
        if not contact.get("email") or not booking:
            return

        service = booking.get("service_name") or booking.get("service_type") or ""
        first_name = contact.get("first_name") or ""
        if confirmed:
            when = format_date_time(booking.get("start_time"))
            subject = f"Booking Confirmed: {service}"
            html = (
                "<h2>Your booking is confirmed!</h2>"
                f"<p>Hi {first_name},</p>"
                f"<p>We've confirmed your booking for <strong>{service}</strong>.</p>"
                f"<p><strong>Date &amp; Time:</strong> {when}</p>"
            )
            if booking.get("duration"):
                html += f"<p><strong>Duration:</strong> {booking['duration']} minutes</p>"
            summary = f"Booking Confirmed: {service} for {when}"
        else:
            subject = f"Booking Completed: {service}"
            html = (
                "<h2>Thank you!</h2>"
                f"<p>Hi {first_name},</p>"
                f"<p>Your booking for <strong>{service}</strong> has been marked as completed.</p>"
                "<p>We hope you had a great experience!</p>"
            )
            summary = f"Booking Completed: {service}"

        result = await asyncio.wait_for(
            self._gateway.send_email(context.tenant_id, contact["email"], subject, html),
            timeout=self._action_timeout,
        )
        contact_id = context.record_id("contact")
        if result.success and contact_id is not None:
            await self._in_session(crud.append_system_message, context.tenant_id, contact_id, summary, "email")

    async def _default_inventory_alert(self, trigger: str, context: AutomationContext) -> None:
        item = context.inventory or {}
        label = f"{item.get('name', 'item')} ({item.get('current_quantity', '?')} {item.get('unit', '')})".replace(" )", ")")
        if trigger == AutomationTrigger.INVENTORY_CRITICAL.value:
            message = f"CRITICAL: {label}"
        else:
            message = f"Low stock: {label}"
        await self._gateway.create_alert(context.tenant_id, trigger, message, context.references())

    # ------------------------------------------------------------------
    # Time-based triggers
    # ------------------------------------------------------------------

    async def scan_scheduled(self) -> Dict[str, Any]:
        """Run both scans once. A call made while a scan is running is skipped."""
        if self._scan_lock.locked():
            logger.info("scheduled_scan_skipped", reason="previous scan still running")
            return {"skipped": True, "booking_reminders": 0, "form_reminders": 0}

        async with self._scan_lock:
            now = self._clock()
            reminders = await self._scan_booking_reminders(now)
            forms = await self._scan_pending_forms(now)
        return {"skipped": False, "booking_reminders": reminders, "form_reminders": forms}

    async def _scan_booking_reminders(self, now: datetime) -> int:
        fired = 0
        try:
            candidates = await asyncio.to_thread(self._booking_candidates, now)
            for booking_id, context in candidates:
                if not await self._in_session(crud.claim_booking_reminder, booking_id, now):
                    continue
                try:
                    await self.on_event(AutomationTrigger.BOOKING_REMINDER_24H.value, context)
                except Exception:
                    await self._in_session(crud.release_booking_reminder, booking_id)
                    raise
                fired += 1
        except Exception:
            logger.exception("booking_reminder_scan_failed", fired=fired)
        return fired

    async def _scan_pending_forms(self, now: datetime) -> int:
        fired = 0
        try:
            candidates = await asyncio.to_thread(self._form_candidates, now)
            for submission_id, context in candidates:
                if not await self._in_session(crud.claim_form_reminder, submission_id, now):
                    continue
                try:
                    await self.on_event(AutomationTrigger.FORM_PENDING_48H.value, context)
                except Exception:
                    await self._in_session(crud.release_form_reminder, submission_id)
                    raise
                fired += 1
        except Exception:
            logger.exception("form_reminder_scan_failed", fired=fired)
        return fired

    def _booking_candidates(self, now: datetime) -> List[Tuple[UUID, AutomationContext]]:
        db = self._session_factory()
        try:
            return [
                (
                    booking.id,
                    AutomationContext(
                        tenant_id=booking.tenant_id,
                        booking=booking.to_context(),
                        contact=booking.contact.to_context() if booking.contact else None,
                    ),
                )
                for booking in crud.bookings_needing_reminder(db, now, REMINDER_WINDOW)
            ]
        finally:
            db.close()

    def _form_candidates(self, now: datetime) -> List[Tuple[UUID, AutomationContext]]:
        db = self._session_factory()
        try:
            return [
                (
                    submission.id,
                    AutomationContext(
                        tenant_id=submission.tenant_id,
                        form_submission=submission.to_context(),
                        contact=submission.contact.to_context() if submission.contact else None,
                    ),
                )
                for submission in crud.forms_needing_reminder(db, now, PENDING_FORM_AGE)
            ]
        finally:
            db.close()

    def _with_session(self, fn, *args):
        db = self._session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()

    async def _in_session(self, fn, *args):
        """Run a blocking ``crud`` call in a worker thread with its own session."""
        return await asyncio.to_thread(self._with_session, fn, *args)

    # ------------------------------------------------------------------
    # Periodic runner
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic scan on the running loop."""
        if self._scheduler_task is not None and not self._scheduler_task.done():
            return
        self._scheduler_task = asyncio.create_task(self._run_scheduler())
        logger.info("automation_scheduler_started", interval_seconds=self._scan_interval)

    async def _run_scheduler(self) -> None:
        while True:
            await asyncio.sleep(self._scan_interval)
            if self._current_scan is not None and not self._current_scan.done():
                logger.warning("scheduled_scan_overrun")
                continue
            self._current_scan = asyncio.create_task(self.scan_scheduled())

    async def stop(self) -> None:
        for task in (self._scheduler_task, self._current_scan):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._scheduler_task = None
        self._current_scan = None
        logger.info("automation_scheduler_stopped")

    @property
    def running(self) -> bool:
        return self._scheduler_task is not None and not self._scheduler_task.done()

