"""One handler per automation action.

:class:`ActionExecutor` maps every :class:`AutomationAction` member to a
handler; construction fails if a member has none.

| action           | precondition                | effect                                 |
|------------------|-----------------------------|----------------------------------------|
| send_email       | contact has an email        | gateway email with rendered subject    |
| send_sms         | contact has a phone number  | gateway SMS with rendered body         |
| create_alert     | none                        | gateway in-app alert                   |
| pause_automation | a conversation is present   | conversation.automation_paused = True  |

An unmet precondition is a no-op reported as success.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict
from uuid import UUID

import structlog
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.models.automation import AutomationAction
from app.routers import crud
from app.services.context import AutomationContext
from app.services.notifications import NotificationGateway, NotificationResult

logger = structlog.get_logger(__name__)

DEFAULT_SUBJECT = "Notification"


@dataclass
class RenderedMessage:
    subject: str
    body: str


@dataclass
class ActionRequest:
    tenant_id: UUID
    trigger: str
    message: RenderedMessage
    context: AutomationContext


ActionHandler = Callable[[ActionRequest], Awaitable[NotificationResult]]


class ActionExecutor:
    def __init__(self, gateway: NotificationGateway, session_factory: Callable[[], Session]) -> None:
        self._gateway = gateway
        self._session_factory = session_factory
        self._handlers: Dict[AutomationAction, ActionHandler] = {
            AutomationAction.SEND_EMAIL: self._send_email,
            AutomationAction.SEND_SMS: self._send_sms,
            AutomationAction.CREATE_ALERT: self._create_alert,
            AutomationAction.PAUSE_AUTOMATION: self._pause_automation,
        }
        missing = set(AutomationAction) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for actions: {sorted(a.value for a in missing)}")

    async def execute(self, action: str, request: ActionRequest) -> NotificationResult:
        """Run ``action``.

        Raises:
            ValueError: if ``action`` is not a known action
        """
        handler = self._handlers[AutomationAction(action)]
        return await handler(request)

    async def _send_email(self, request: ActionRequest) -> NotificationResult:
        contact = request.context.contact or {}
        email = contact.get("email")
        if not email:
            logger.debug("send_email_skipped_no_address", tenant_id=str(request.tenant_id))
            return NotificationResult.ok()

        result = await self._gateway.send_email(
            request.tenant_id,
            email,
            request.message.subject or DEFAULT_SUBJECT,
            request.message.body,
            request.message.body,
        )
        if result.success:
            await asyncio.to_thread(self._log_to_conversation, request, "email")
        return result

    async def _send_sms(self, request: ActionRequest) -> NotificationResult:
        contact = request.context.contact or {}
        phone = contact.get("phone")
        if not phone:
            logger.debug("send_sms_skipped_no_phone", tenant_id=str(request.tenant_id))
            return NotificationResult.ok()

        result = await self._gateway.send_sms(request.tenant_id, phone, request.message.body)
        if result.success:
            await asyncio.to_thread(self._log_to_conversation, request, "sms")
        return result

    async def _create_alert(self, request: ActionRequest) -> NotificationResult:
        return await self._gateway.create_alert(
            request.tenant_id,
            request.trigger,
            request.message.body,
            request.context.references(),
        )

    async def _pause_automation(self, request: ActionRequest) -> NotificationResult:
        conversation_id = request.context.record_id("conversation")
        if conversation_id is None:
            return NotificationResult.ok()
        await asyncio.to_thread(pause_conversation_now, self._session_factory, conversation_id)
        return NotificationResult.ok()

    def _log_to_conversation(self, request: ActionRequest, channel: str) -> None:
        contact_id = request.context.record_id("contact")
        if contact_id is None:
            return
        db = self._session_factory()
        try:
            crud.append_system_message(db, request.tenant_id, contact_id, request.message.body, channel)
        except Exception:
            db.rollback()
            logger.exception("conversation_log_failed", contact_id=str(contact_id))
        finally:
            db.close()


def pause_conversation_now(session_factory: Callable[[], Session], conversation_id: UUID) -> bool:
    db = session_factory()
    try:
        paused = crud.pause_conversation(db, conversation_id, utcnow())
        if paused:
            logger.info("automation_paused", conversation_id=str(conversation_id))
        else:
            logger.warning("conversation_not_found", conversation_id=str(conversation_id))
        return paused
    finally:
        db.close()
