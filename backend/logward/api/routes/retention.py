"""API routes for per-tenant data retention."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from logward.api.deps import get_retention_service, get_tenant_id
from logward.db import get_db
from logward.db.repositories.retention import RetentionPolicyRepository
from logward.services.retention import (
    MIN_RETENTION_DAYS,
    RetentionService,
    clamp_policy_values,
    policy_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/retention", tags=["retention"])


class PolicyUpdate(BaseModel):
    enabled: Optional[bool] = None
    retention_days: Optional[int] = Field(None, ge=0)
    source_overrides: Optional[dict[str, int]] = None
    severity_overrides: Optional[dict[str, int]] = None
    archive_destination: Optional[str] = None


@router.get("/policy", summary="Get the tenant's retention policy")
async def get_policy(
    tenant_id: str = Depends(get_tenant_id),
    service: RetentionService = Depends(get_retention_service),
    db: AsyncSession = Depends(get_db),
):
    policy = await RetentionPolicyRepository(db).get_policy(tenant_id)
    if not policy:
        return {
            "tenant_id": tenant_id,
            "enabled": True,
            "retention_days": service.default_days,
            "source_overrides": {},
            "severity_overrides": {},
            "is_default": True,
        }
    return {**policy_to_dict(policy), "is_default": False}


@router.put("/policy", summary="Create or update the tenant's retention policy")
async def put_policy(
    body: PolicyUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    values = clamp_policy_values(body.model_dump(exclude_unset=True))
    for key in ("source_overrides", "severity_overrides"):
        if key in values and values[key] is None:
            values[key] = {}
    if "enabled" in values and values["enabled"] is None:
        values.pop("enabled")
    if "retention_days" in values and values["retention_days"] is None:
        values.pop("retention_days")

    policy = await RetentionPolicyRepository(db).upsert_policy(tenant_id, **values)
    await db.commit()
    await db.refresh(policy)
    logger.info(
        f"Retention policy for tenant {tenant_id} set to {policy.retention_days} days "
        f"(floor {MIN_RETENTION_DAYS})"
    )
    return policy_to_dict(policy)


@router.delete("/policy", summary="Delete the tenant's policy (reverts to default)")
async def delete_policy(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    if not await RetentionPolicyRepository(db).delete_policy(tenant_id):
        raise HTTPException(status_code=404, detail="Retention policy not found")
    await db.commit()
    return {"ok": True}


@router.post("/cleanup", summary="Run retention cleanup for the tenant now")
async def run_cleanup(
    tenant_id: str = Depends(get_tenant_id),
    service: RetentionService = Depends(get_retention_service),
    db: AsyncSession = Depends(get_db),
):
    deleted = await service.cleanup_for_tenant(db, tenant_id)
    await db.commit()
    return {"deleted": deleted}


@router.get("/stats", summary="Event age distribution for the tenant")
async def retention_stats(
    tenant_id: str = Depends(get_tenant_id),
    service: RetentionService = Depends(get_retention_service),
    db: AsyncSession = Depends(get_db),
):
    return await service.retention_stats(db, tenant_id)
