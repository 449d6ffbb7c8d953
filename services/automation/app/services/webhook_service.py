"""Outbound webhook fan-out with signed, retried deliveries."""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import UUID

import httpx
import structlog
from sqlalchemy.orm import Session

from shared import WebhookAttempt, send_webhook

from app.core.clock import utcnow
from app.models.webhook import WebhookDeliveryLog, WebhookEvent, WebhookSubscription
from app.routers import crud
from app.schemas.webhook_schema import WebhookCreate

logger = structlog.get_logger(__name__)

SECRET_BYTES = 32
TEST_MESSAGE = "This is a test webhook"


@dataclass
class DeliveryResult:
    webhook_id: UUID
    success: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "webhook_id": str(self.webhook_id),
            "success": self.success,
            "status_code": self.status_code,
            "attempts": self.attempts,
            "error": self.error,
        }


def retry_delay_seconds(retry_delay_ms: int, attempt: int) -> float:
    """Backoff before the attempt following ``attempt`` (1-based)."""
    return retry_delay_ms * (2 ** (attempt - 1)) / 1000.0


class WebhookService:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: httpx.AsyncClient,
        *,
        timeout: float = 10.0,
        max_concurrency: int = 10,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._timeout = timeout
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._sleep = sleep

    async def trigger(self, tenant_id: UUID, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Deliver ``event`` to every active subscription of the tenant listening to it.

        Never raises: internal failures come back as a graceful failure summary.
        """
        log = logger.bind(tenant_id=str(tenant_id), webhook_event=event)
        try:
            webhooks = await self._in_session(crud.active_webhooks_for_event, tenant_id, event)

            if not webhooks:
                log.debug("no_webhook_subscribers")
                return {"success": True, "triggered": 0, "results": []}

            outcomes = await asyncio.gather(
                *(self._bounded_deliver(webhook, event, payload) for webhook in webhooks),
                return_exceptions=True,
            )

            results: List[Dict[str, Any]] = []
            for webhook, outcome in zip(webhooks, outcomes):
                if isinstance(outcome, BaseException):
                    log.error("webhook_delivery_crashed", webhook_id=str(webhook.id), error=str(outcome))
                    outcome = DeliveryResult(webhook_id=webhook.id, success=False, attempts=0, error=str(outcome))
                results.append(outcome.as_dict())

            log.info(
                "webhooks_triggered",
                triggered=len(webhooks),
                succeeded=sum(1 for r in results if r["success"]),
            )
            return {"success": True, "triggered": len(webhooks), "results": results}
        except Exception as exc:
            log.exception("webhook_trigger_failed")
            return {"success": False, "error": str(exc) or exc.__class__.__name__, "graceful_fail": True}

    async def _bounded_deliver(self, webhook: WebhookSubscription, event: str, payload: Dict[str, Any]) -> DeliveryResult:
        async with self._semaphore:
            return await self.deliver(webhook, event, payload)

    async def deliver(self, webhook: WebhookSubscription, event: str, payload: Dict[str, Any]) -> DeliveryResult:
        """Run one delivery sequence: up to ``retry_attempts`` signed POSTs.

        One delivery log row is written per sequence and updated after every
        attempt; the subscription counters move once, at the end.
        """
        log = logger.bind(webhook_id=str(webhook.id), webhook_event=event)

        delivery = await self._in_session(crud.start_delivery, webhook, event, payload)
        delivery_id = delivery.id

        max_attempts = max(1, webhook.retry_attempts or 1)
        attempt = 0
        outcome = WebhookAttempt(success=False, error="No attempt made")
        while attempt < max_attempts:
            attempt += 1
            outcome = await send_webhook(
                self._client,
                webhook.url,
                event,
                payload,
                webhook.secret,
                timeout=self._timeout,
            )
            await self._in_session(
                crud.record_attempt,
                delivery_id,
                attempt,
                outcome.status_code,
                outcome.response_body or None,
                outcome.error,
            )
            if outcome.success:
                break
            if attempt < max_attempts:
                delay = retry_delay_seconds(webhook.retry_delay_ms or 0, attempt)
                log.warning("webhook_retry_scheduled", attempt=attempt, delay_seconds=delay, error=outcome.error)
                await self._sleep(delay)

        await asyncio.to_thread(
            self._finish,
            delivery_id,
            webhook.id,
            success=outcome.success,
            attempts=attempt,
            status_code=outcome.status_code,
            response_body=outcome.response_body or None,
            error_message=outcome.error,
        )

        if outcome.success:
            log.info("webhook_delivered", attempts=attempt, status_code=outcome.status_code)
        else:
            log.warning("webhook_delivery_failed", attempts=attempt, error=outcome.error)

        return DeliveryResult(
            webhook_id=webhook.id,
            success=outcome.success,
            attempts=attempt,
            status_code=outcome.status_code,
            error=outcome.error,
        )

    def _finish(self, delivery_id: UUID, webhook_id: UUID, **outcome: Any) -> None:
        db = self._session_factory()
        try:
            crud.finish_delivery(db, delivery_id, webhook_id, now=utcnow(), **outcome)
        finally:
            db.close()

    def _with_session(self, fn, *args):
        db = self._session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()

    async def _in_session(self, fn, *args):
        return await asyncio.to_thread(self._with_session, fn, *args)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def create(self, tenant_id: UUID, data: WebhookCreate) -> WebhookSubscription:
        db = self._session_factory()
        try:
            webhook = crud.create_webhook(db, tenant_id, data, secrets.token_hex(SECRET_BYTES))
        finally:
            db.close()
        logger.info("webhook_created", tenant_id=str(tenant_id), webhook_id=str(webhook.id), events=webhook.events)
        return webhook

    async def test(self, tenant_id: UUID, webhook_id: UUID) -> Dict[str, Any]:
        webhook = await asyncio.to_thread(self.get, tenant_id, webhook_id)
        if webhook is None:
            return {"success": False, "error": "Webhook not found"}

        payload = {
            "event": WebhookEvent.TEST,
            "timestamp": utcnow().isoformat(),
            "data": {"message": TEST_MESSAGE},
        }
        result = await self.deliver(webhook, WebhookEvent.TEST, payload)
        return {
            "success": result.success,
            "message": "Webhook test successful" if result.success else "Webhook test failed",
            "status_code": result.status_code,
            "attempts": result.attempts,
            "error": result.error,
        }

    def list(self, tenant_id: UUID) -> List[WebhookSubscription]:
        db = self._session_factory()
        try:
            return crud.list_webhooks(db, tenant_id)
        finally:
            db.close()

    def get(self, tenant_id: UUID, webhook_id: UUID) -> Optional[WebhookSubscription]:
        db = self._session_factory()
        try:
            return crud.get_webhook(db, tenant_id, webhook_id)
        finally:
            db.close()

    def delete(self, tenant_id: UUID, webhook_id: UUID) -> bool:
        db = self._session_factory()
        try:
            deleted = crud.delete_webhook(db, tenant_id, webhook_id) is not None
        finally:
            db.close()
        if deleted:
            logger.info("webhook_deleted", tenant_id=str(tenant_id), webhook_id=str(webhook_id))
        return deleted

    def list_deliveries(self, tenant_id: UUID, webhook_id: UUID, limit: int = 50) -> List[WebhookDeliveryLog]:
        db = self._session_factory()
        try:
            return crud.list_deliveries(db, tenant_id, webhook_id, limit)
        finally:
            db.close()
