"""Shared FastAPI dependencies."""

from typing import Optional

from fastapi import Header, HTTPException

from logward.services.ingest import IngestService, ingest_service
from logward.services.retention import RetentionService, retention_service


async def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    """Tenant scope for every tenant-owned resource."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return x_tenant_id.strip()


async def get_optional_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> Optional[str]:
    if x_tenant_id and x_tenant_id.strip():
        return x_tenant_id.strip()
    return None


def get_ingest_service() -> IngestService:
    return ingest_service


def get_retention_service() -> RetentionService:
    return retention_service
