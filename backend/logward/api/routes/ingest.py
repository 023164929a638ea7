"""API routes for event ingestion — single, batch, raw syslog, and file upload."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from logward.api.deps import get_ingest_service, get_optional_tenant_id
from logward.config import settings
from logward.db import get_db
from logward.services.ingest import IngestService, parse_upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ingest", tags=["ingest"])


@router.post("/event", summary="Ingest a single event")
async def ingest_event(
    payload: dict[str, Any] = Body(...),
    tenant_id: Optional[str] = Depends(get_optional_tenant_id),
    service: IngestService = Depends(get_ingest_service),
    db: AsyncSession = Depends(get_db),
):
    try:
        row = await service.ingest_event(db, payload, tenant_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"accepted": 1, "id": row.id, "source": row.source}


@router.post("/batch", summary="Ingest a batch of events")
async def ingest_batch(
    payload: Any = Body(...),
    tenant_id: Optional[str] = Depends(get_optional_tenant_id),
    service: IngestService = Depends(get_ingest_service),
    db: AsyncSession = Depends(get_db),
):
    """Accepts a JSON array of events or ``{"events": [...]}``."""
    events = payload.get("events") if isinstance(payload, dict) else payload
    if not isinstance(events, list) or not events:
        raise HTTPException(status_code=400, detail="Expected a non-empty list of events")
    if not all(isinstance(e, dict) for e in events):
        raise HTTPException(status_code=400, detail="Every event must be a JSON object")
    if len(events) > service.max_batch:
        raise HTTPException(
            status_code=400,
            detail=f"Batch of {len(events)} events exceeds the limit of {service.max_batch}",
        )

    try:
        rows = await service.ingest_batch(db, events, tenant_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"accepted": len(rows)}


@router.post("/syslog", summary="Ingest raw syslog lines (text body, one per line)")
async def ingest_syslog(
    request: Request,
    tenant_id: Optional[str] = Depends(get_optional_tenant_id),
    service: IngestService = Depends(get_ingest_service),
    db: AsyncSession = Depends(get_db),
):
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    body = (await request.body()).decode("utf-8", errors="replace")
    lines = [line for line in body.splitlines() if line.strip()]
    if not lines:
        raise HTTPException(status_code=400, detail="No syslog lines in request body")

    peer = request.client.host if request.client else None
    try:
        rows = await service.ingest_syslog(db, lines, tenant_id, peer_address=peer)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"accepted": len(rows)}


@router.post("/file", summary="Ingest an uploaded log file")
async def ingest_file(
    file: UploadFile = File(...),
    tenant_id: Optional[str] = Depends(get_optional_tenant_id),
    service: IngestService = Depends(get_ingest_service),
    db: AsyncSession = Depends(get_db),
):
    """Accepts a JSON array of events, NDJSON, or raw syslog lines."""
    raw_bytes = await file.read()
    if not raw_bytes.strip():
        raise HTTPException(status_code=400, detail="File is empty")
    if len(raw_bytes) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Max size: {settings.MAX_UPLOAD_SIZE_MB} MB",
        )

    try:
        payloads = parse_upload(raw_bytes.decode("utf-8", errors="replace"))
        rows = await service.ingest_batch(db, payloads, tenant_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Ingested {len(rows)} events from upload {file.filename}")
    return {"accepted": len(rows), "filename": file.filename}
