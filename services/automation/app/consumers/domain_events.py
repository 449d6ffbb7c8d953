"""Bridge from the Redis event stream to automations and outbound webhooks.

Other services publish domain events (``booking.created``,
``message.staff_reply``...) on the shared stream. Each stream event maps to
at most one automation trigger and at most one webhook event.
"""

from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

import structlog

from app.models.automation import AutomationTrigger
from app.models.webhook import WebhookEvent
from app.services.automation_engine import AutomationEngine
from app.services.context import parse_uuid
from app.services.webhook_service import WebhookService

logger = structlog.get_logger(__name__)

StreamHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class Route(NamedTuple):
    trigger: Optional[AutomationTrigger]
    webhook_event: Optional[str]


ROUTES: Dict[str, Route] = {
    "contact.created": Route(AutomationTrigger.CONTACT_CREATED, WebhookEvent.CONTACT_CREATED),
    "booking.created": Route(AutomationTrigger.BOOKING_CREATED, WebhookEvent.BOOKING_CREATED),
    "booking.confirmed": Route(AutomationTrigger.BOOKING_CONFIRMED, WebhookEvent.BOOKING_UPDATED),
    "booking.completed": Route(AutomationTrigger.BOOKING_COMPLETED, WebhookEvent.BOOKING_UPDATED),
    "booking.cancelled": Route(None, WebhookEvent.BOOKING_CANCELLED),
    "form.submitted": Route(None, WebhookEvent.FORM_SUBMITTED),
    "message.staff_reply": Route(AutomationTrigger.STAFF_REPLY, None),
    "message.received": Route(None, WebhookEvent.MESSAGE_RECEIVED),
    "inventory.low": Route(AutomationTrigger.INVENTORY_LOW, WebhookEvent.INVENTORY_LOW),
    "inventory.critical": Route(AutomationTrigger.INVENTORY_CRITICAL, WebhookEvent.INVENTORY_LOW),
}


def build_stream_handlers(engine: AutomationEngine, webhooks: WebhookService) -> Dict[str, StreamHandler]:
    """One handler per routed stream event, ready for ``EventConsumer.register_handlers``."""

    async def handle(event_type: str, payload: Dict[str, Any]) -> None:
        route = ROUTES.get(event_type)
        if route is None:
            return

        tenant_id = parse_uuid(payload.get("tenant_id", payload.get("workspace_id")))
        if tenant_id is None:
            logger.warning("stream_event_without_tenant", event_type=event_type)
            return

        if route.trigger is not None:
            engine.emit(route.trigger.value, {**payload, "tenant_id": str(tenant_id)})

        if route.webhook_event is not None:
            summary = await webhooks.trigger(tenant_id, route.webhook_event, payload)
            if not summary.get("success"):
                logger.warning(
                    "stream_webhook_fanout_failed",
                    event_type=event_type,
                    tenant_id=str(tenant_id),
                    error=summary.get("error"),
                )

    return {event_type: handle for event_type in ROUTES}
