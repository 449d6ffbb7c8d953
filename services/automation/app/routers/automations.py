"""Automation rules, execution logs and event intake."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.core.auth_dependencies import TokenPayload, ensure_owner, ensure_same_tenant, get_current_token
from app.core.database import get_db
from app.schemas.automation_schema import (
    AutomationEventIn,
    AutomationRuleCreate,
    AutomationRuleOut,
    AutomationRuleUpdate,
    ExecutionLogOut,
)
from . import crud

router = APIRouter(tags=["Automations"])


@router.get("/tenants/{tenant_id}/automations", response_model=List[AutomationRuleOut])
def list_automations(
    tenant_id: UUID,
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_same_tenant(current_token, tenant_id)
    return crud.list_rules(db, tenant_id)


@router.post(
    "/tenants/{tenant_id}/automations",
    response_model=AutomationRuleOut,
    status_code=status.HTTP_201_CREATED,
)
def create_automation(
    tenant_id: UUID,
    rule: AutomationRuleCreate,
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_owner(current_token, tenant_id)
    return crud.create_rule(db, tenant_id, rule)


@router.get("/tenants/{tenant_id}/automations/logs", response_model=List[ExecutionLogOut])
def list_automation_logs(
    tenant_id: UUID,
    rule_id: Optional[UUID] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_same_tenant(current_token, tenant_id)
    return crud.list_execution_logs(db, tenant_id, rule_id, limit)


@router.get("/tenants/{tenant_id}/automations/{rule_id}", response_model=AutomationRuleOut)
def get_automation(
    tenant_id: UUID,
    rule_id: UUID,
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_same_tenant(current_token, tenant_id)
    rule = crud.get_rule(db, tenant_id, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Automation rule not found")
    return rule


@router.patch("/tenants/{tenant_id}/automations/{rule_id}", response_model=AutomationRuleOut)
def update_automation(
    tenant_id: UUID,
    rule_id: UUID,
    rule_update: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    current_token: TokenPayload = Depends(get_current_token),
):
    ensure_owner(current_token, tenant_id)
    rule = crud.update_rule(db, tenant_id, rule_id, rule_update)
    if not rule:
        raise HTTPException(status_code=404, detail="Automation rule not found")
    return rule


@router.post("/tenants/{tenant_id}/events", status_code=status.HTTP_202_ACCEPTED)
async def emit_event(
    tenant_id: UUID,
    event: AutomationEventIn,
    request: Request,
    current_token: TokenPayload = Depends(get_current_token),
):
    """Queue an automation event; rules run after the response is sent."""
    ensure_same_tenant(current_token, tenant_id)
    context = {**event.context, "tenant_id": str(tenant_id)}
    scheduled = request.app.state.automation_engine.emit(event.trigger, context)
    return {"accepted": True, "trigger": event.trigger, "dispatched": scheduled is not None}
