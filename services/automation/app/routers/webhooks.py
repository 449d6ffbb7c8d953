"""Webhook subscription management and manual fan-out."""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.core.auth_dependencies import TokenPayload, ensure_owner, ensure_same_tenant, get_current_token
from app.schemas.webhook_schema import (
    WebhookCreate,
    WebhookCreated,
    WebhookDeliveryOut,
    WebhookOut,
    WebhookTestResult,
    WebhookTriggerRequest,
)
from app.services.webhook_service import WebhookService

router = APIRouter(tags=["Webhooks"])


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.webhook_service


@router.post(
    "/tenants/{tenant_id}/webhooks",
    response_model=WebhookCreated,
    status_code=status.HTTP_201_CREATED,
)
def create_webhook(
    tenant_id: UUID,
    webhook: WebhookCreate,
    service: WebhookService = Depends(get_webhook_service),
    current_token: TokenPayload = Depends(get_current_token),
):
    """Create a subscription. The signing secret is returned only here."""
    ensure_owner(current_token, tenant_id)
    return service.create(tenant_id, webhook)


@router.get("/tenants/{tenant_id}/webhooks", response_model=List[WebhookOut])
def list_webhooks(
    tenant_id: UUID,
    service: WebhookService = Depends(get_webhook_service),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_same_tenant(current_token, tenant_id)
    return service.list(tenant_id)


@router.post("/tenants/{tenant_id}/webhooks/trigger")
async def trigger_webhooks(
    tenant_id: UUID,
    body: WebhookTriggerRequest,
    service: WebhookService = Depends(get_webhook_service),
    current_token: TokenPayload = Depends(get_current_token),
):
    # delivery failures are reported in the summary, never as an HTTP error
    ensure_same_tenant(current_token, tenant_id)
    return await service.trigger(tenant_id, body.event, body.payload)


@router.get("/tenants/{tenant_id}/webhooks/{webhook_id}", response_model=WebhookOut)
def get_webhook(
    tenant_id: UUID,
    webhook_id: UUID,
    service: WebhookService = Depends(get_webhook_service),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_same_tenant(current_token, tenant_id)
    webhook = service.get(tenant_id, webhook_id)
    if not webhook:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return webhook


@router.post("/tenants/{tenant_id}/webhooks/{webhook_id}/test", response_model=WebhookTestResult)
async def test_webhook(
    tenant_id: UUID,
    webhook_id: UUID,
    service: WebhookService = Depends(get_webhook_service),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_owner(current_token, tenant_id)
    result = await service.test(tenant_id, webhook_id)
    if result.get("error") == "Webhook not found":
        raise HTTPException(status_code=404, detail="Webhook not found")
    return result


@router.get("/tenants/{tenant_id}/webhooks/{webhook_id}/deliveries", response_model=List[WebhookDeliveryOut])
def list_webhook_deliveries(
    tenant_id: UUID,
    webhook_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    service: WebhookService = Depends(get_webhook_service),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_same_tenant(current_token, tenant_id)
    if service.get(tenant_id, webhook_id) is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return service.list_deliveries(tenant_id, webhook_id, limit)


@router.delete("/tenants/{tenant_id}/webhooks/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_webhook(
    tenant_id: UUID,
    webhook_id: UUID,
    service: WebhookService = Depends(get_webhook_service),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_owner(current_token, tenant_id)
    if not service.delete(tenant_id, webhook_id):
        raise HTTPException(status_code=404, detail="Webhook not found")
    return None
