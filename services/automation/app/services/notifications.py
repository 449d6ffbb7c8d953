"""Notification gateway used by the automation engine.

The engine only knows the :class:`NotificationGateway` protocol. The default
implementation posts to the provider endpoint each tenant configured in
``tenant_integrations``; concrete provider SDKs stay outside this service.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol
from uuid import UUID

import httpx
import structlog
from sqlalchemy.orm import Session

from app.models.integration import TenantIntegration

logger = structlog.get_logger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")


@dataclass
class NotificationResult:
    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "NotificationResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "NotificationResult":
        return cls(success=False, error=error)


class NotificationGateway(Protocol):
    """Outbound communication capabilities.

    Implementations must not raise for configuration problems; they return a
    failed :class:`NotificationResult` instead.
    """

    async def send_email(
        self, tenant_id: UUID, to: str, subject: str, html: str, text: Optional[str] = None
    ) -> NotificationResult: ...

    async def send_sms(self, tenant_id: UUID, to: str, body: str) -> NotificationResult: ...

    async def create_alert(
        self, tenant_id: UUID, kind: str, message: str, reference: Optional[Dict[str, Any]] = None
    ) -> NotificationResult: ...


def strip_html(html: str) -> str:
    return _TAG_RE.sub("", html or "")


class HttpNotificationGateway:
    """Deliver email/SMS through the provider endpoint configured per tenant."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: httpx.AsyncClient,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._timeout = timeout

    def _load_integration(self, tenant_id: UUID) -> Optional[TenantIntegration]:
        db = self._session_factory()
        try:
            return (
                db.query(TenantIntegration)
                .filter(TenantIntegration.tenant_id == tenant_id)
                .first()
            )
        finally:
            db.close()

    async def _post(self, channel: str, url: str, api_key: Optional[str], body: Dict[str, Any]) -> NotificationResult:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        try:
            response = await self._client.post(url, json=body, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException:
            return NotificationResult.failed(f"{channel} provider timed out after {self._timeout}s")
        except httpx.HTTPError as exc:
            return NotificationResult.failed(f"{channel} provider error: {exc}")

        if not response.is_success:
            return NotificationResult.failed(
                f"{channel} provider error: {response.status_code} {response.text[:200]}"
            )
        return NotificationResult.ok()

    async def send_email(
        self, tenant_id: UUID, to: str, subject: str, html: str, text: Optional[str] = None
    ) -> NotificationResult:
        integration = await asyncio.to_thread(self._load_integration, tenant_id)
        if integration is None or not integration.email_enabled:
            logger.warning("email_not_configured", tenant_id=str(tenant_id))
            return NotificationResult.failed("Email not configured")

        result = await self._post(
            "Email",
            integration.email_provider_url,
            integration.email_api_key,
            {
                "from": integration.email_from,
                "to": to,
                "subject": subject,
                "html": html,
                "text": text if text is not None else strip_html(html),
            },
        )
        if result.success:
            logger.info("email_sent", tenant_id=str(tenant_id), to=to)
        else:
            logger.warning("email_failed", tenant_id=str(tenant_id), to=to, error=result.error)
        return result

    async def send_sms(self, tenant_id: UUID, to: str, body: str) -> NotificationResult:
        integration = await asyncio.to_thread(self._load_integration, tenant_id)
        if integration is None or not integration.sms_enabled:
            logger.warning("sms_not_configured", tenant_id=str(tenant_id))
            return NotificationResult.failed("SMS not configured")

        result = await self._post(
            "SMS",
            integration.sms_provider_url,
            integration.sms_api_key,
            {"from": integration.sms_from_number, "to": to, "body": body},
        )
        if result.success:
            logger.info("sms_sent", tenant_id=str(tenant_id), to=to)
        else:
            logger.warning("sms_failed", tenant_id=str(tenant_id), to=to, error=result.error)
        return result

    async def create_alert(
        self, tenant_id: UUID, kind: str, message: str, reference: Optional[Dict[str, Any]] = None
    ) -> NotificationResult:
        # In-app alerts are only logged for now
        logger.info(
            "system_alert",
            tenant_id=str(tenant_id),
            kind=kind,
            message=message,
            reference=reference or {},
        )
        return NotificationResult.ok()
