"""API routes for alerts — triggered alerts, status changes, and alert rules."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from logward.api.deps import get_tenant_id
from logward.db import get_db
from logward.db.repositories.alerts import (
    AlertRepository,
    AlertRuleRepository,
    AlertStatus,
    InvalidStatusTransition,
    alert_to_dict,
    rule_to_dict,
)
from logward.services.alerting import RuleType, create_default_rules

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/alerts", tags=["alerts"])

RULE_TYPE_PATTERN = "^(" + "|".join(RuleType.ALL) + ")$"


# ── Pydantic models ──────────────────────────────────────────────────


class RuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = None
    enabled: bool = True
    rule_type: str = Field(RuleType.THRESHOLD, pattern=RULE_TYPE_PATTERN)
    conditions: dict[str, Any] | list[dict[str, Any]]
    threshold_count: int = Field(1, ge=1)
    threshold_window_seconds: int = Field(300, ge=60)
    group_by: Optional[list[str]] = None
    alert_severity: int = Field(5, ge=0, le=10)
    cooldown_seconds: int = Field(300, ge=0)
    notify_discord: bool = False
    discord_webhook_url: Optional[str] = None


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=256)
    description: Optional[str] = None
    enabled: Optional[bool] = None
    rule_type: Optional[str] = Field(None, pattern=RULE_TYPE_PATTERN)
    conditions: Optional[dict[str, Any] | list[dict[str, Any]]] = None
    threshold_count: Optional[int] = Field(None, ge=1)
    threshold_window_seconds: Optional[int] = Field(None, ge=60)
    group_by: Optional[list[str]] = None
    alert_severity: Optional[int] = Field(None, ge=0, le=10)
    cooldown_seconds: Optional[int] = Field(None, ge=0)
    notify_discord: Optional[bool] = None
    discord_webhook_url: Optional[str] = None


class DefaultRulesRequest(BaseModel):
    discord_webhook_url: Optional[str] = None


class StatusUpdate(BaseModel):
    status: AlertStatus
    resolved_by: Optional[str] = None
    notes: Optional[str] = None


# ── Alert rules ───────────────────────────────────────────────────────


@router.get("/rules", summary="List alert rules")
async def list_rules(
    enabled: bool | None = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    rules = await AlertRuleRepository(db).list_rules(tenant_id, enabled=enabled)
    return {"rules": [rule_to_dict(r) for r in rules]}


@router.post("/rules", summary="Create an alert rule", status_code=201)
async def create_rule(
    body: RuleCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    rule = await AlertRuleRepository(db).create_rule(tenant_id, **body.model_dump())
    await db.commit()
    logger.info(f"Created alert rule {rule.id} ({rule.name}) for tenant {tenant_id}")
    return rule_to_dict(rule)


@router.post("/rules/defaults", summary="Provision the default rule set")
async def create_defaults(
    body: DefaultRulesRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    webhook = body.discord_webhook_url if body else None
    created = await create_default_rules(db, tenant_id, webhook)
    await db.commit()
    return {"created": len(created), "rules": [rule_to_dict(r) for r in created]}


@router.get("/rules/{rule_id}", summary="Get an alert rule")
async def get_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    rule = await AlertRuleRepository(db).get_rule(tenant_id, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule_to_dict(rule)


@router.put("/rules/{rule_id}", summary="Update an alert rule")
async def update_rule(
    rule_id: str,
    body: RuleUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    repo = AlertRuleRepository(db)
    rule = await repo.get_rule(tenant_id, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    rule = await repo.update_rule(rule, **body.model_dump(exclude_unset=True))
    await db.commit()
    await db.refresh(rule)
    return rule_to_dict(rule)


@router.delete("/rules/{rule_id}", summary="Delete an alert rule")
async def delete_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    if not await AlertRuleRepository(db).delete_rule(tenant_id, rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    await db.commit()
    return {"ok": True}


# ── Alerts ────────────────────────────────────────────────────────────


@router.get("", summary="List alerts")
async def list_alerts(
    status: AlertStatus | None = Query(None),
    rule_id: str | None = Query(None),
    severity_min: int | None = Query(None, ge=0, le=10),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    repo = AlertRepository(db)
    status_value = status.value if status else None
    alerts = await repo.list_alerts(
        tenant_id, status=status_value, rule_id=rule_id, severity_min=severity_min,
        limit=limit, offset=offset,
    )
    total = await repo.count_alerts(
        tenant_id, status=status_value, rule_id=rule_id, severity_min=severity_min
    )
    return {"alerts": [alert_to_dict(a) for a in alerts], "total": total}


@router.get("/{alert_id}", summary="Get alert detail")
async def get_alert(
    alert_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    alert = await AlertRepository(db).get_alert(tenant_id, alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert_to_dict(alert)


@router.put("/{alert_id}/status", summary="Move an alert forward in its lifecycle")
async def update_status(
    alert_id: str,
    body: StatusUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    repo = AlertRepository(db)
    alert = await repo.get_alert(tenant_id, alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    try:
        alert = await repo.update_status(
            alert, body.status.value, resolved_by=body.resolved_by, notes=body.notes
        )
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    await db.commit()
    await db.refresh(alert)
    return alert_to_dict(alert)
