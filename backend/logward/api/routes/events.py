"""API routes for querying stored events."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from logward.api.deps import get_tenant_id
from logward.db import get_db
from logward.db.repositories.events import EventFilter, EventRepository, event_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("", summary="List events for the tenant")
async def list_events(
    source: str | None = Query(None),
    severity_min: int | None = Query(None, ge=0, le=10),
    severity_max: int | None = Query(None, ge=0, le=10),
    action: str | None = Query(None),
    event_type: str | None = Query(None),
    src_ip: str | None = Query(None),
    dst_ip: str | None = Query(None),
    user: str | None = Query(None),
    host: str | None = Query(None),
    tag: str | None = Query(None),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    filters = EventFilter(
        source=source,
        severity_min=severity_min,
        severity_max=severity_max,
        action=action,
        event_type=event_type,
        src_ip=src_ip,
        dst_ip=dst_ip,
        user=user,
        host=host,
        tag=tag,
        start=start,
        end=end,
    )
    repo = EventRepository(db)
    rows = await repo.list_events(tenant_id, filters, limit=limit, offset=offset)
    total = await repo.count_events(tenant_id, filters)
    return {"events": [event_to_dict(e) for e in rows], "total": total}


@router.get("/sources", summary="Distinct sources seen for the tenant")
async def list_sources(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    sources = await EventRepository(db).distinct_sources(tenant_id)
    return {"sources": sources}


@router.get("/stats", summary="Event totals by source, severity and action")
async def event_stats(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await EventRepository(db).stats(tenant_id, start=start, end=end)


@router.delete("", summary="Bulk-delete events by age and/or source")
async def delete_events(
    before: datetime | None = Query(None, description="Delete events older than this time"),
    source: str | None = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    if before is None and source is None:
        raise HTTPException(status_code=400, detail="Provide 'before' and/or 'source'")
    deleted = await EventRepository(db).delete_events(tenant_id, before=before, source=source)
    await db.commit()
    logger.info(f"Deleted {deleted} events for tenant {tenant_id} (before={before}, source={source})")
    return {"deleted": deleted}


@router.get("/{event_id}", summary="Get a single event")
async def get_event(
    event_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    event = await EventRepository(db).get_event(tenant_id, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event_to_dict(event)


@router.delete("/{event_id}", summary="Delete a single event")
async def delete_event(
    event_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    if not await EventRepository(db).delete_event(tenant_id, event_id):
        raise HTTPException(status_code=404, detail="Event not found")
    await db.commit()
    return {"ok": True}
