"""Event repository — persistence and queries for canonical events."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import String, cast, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from logward.db.models import Event
from logward.services.normalizers.base import CanonicalEvent

logger = logging.getLogger(__name__)

EVENT_COLUMNS = [c.key for c in Event.__mapper__.column_attrs]


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored time is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def event_to_dict(e: Event) -> dict[str, Any]:
    """Plain snapshot of an event row; tags are exposed under ``_tags``."""
    data: dict[str, Any] = {}
    for key in EVENT_COLUMNS:
        if key == "tags":
            data["_tags"] = list(e.tags or [])
        else:
            data[key] = getattr(e, key)
    data["event_time"] = as_utc(e.event_time)
    data["received_at"] = as_utc(e.received_at)
    return data


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class EventFilter:
    source: str | None = None
    severity_min: int | None = None
    severity_max: int | None = None
    action: str | None = None
    event_type: str | None = None
    src_ip: str | None = None
    dst_ip: str | None = None
    user: str | None = None
    host: str | None = None
    tag: str | None = None
    start: datetime | None = None
    end: datetime | None = None


class EventRepository:
    """Tenant-scoped CRUD for Event rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Writes ────────────────────────────────────────────────────────

    async def create_event(self, event: CanonicalEvent) -> Event:
        row = Event(**event.to_record())
        self.session.add(row)
        await self.session.flush()
        return row

    async def bulk_create(self, events: list[CanonicalEvent], batch_size: int = 500) -> list[Event]:
        """Insert events in batches, returning rows in input order."""
        rows: list[Event] = []
        for i in range(0, len(events), batch_size):
            batch = [Event(**e.to_record()) for e in events[i : i + batch_size]]
            self.session.add_all(batch)
            await self.session.flush()
            rows.extend(batch)
        return rows

    async def delete_older_than(
        self,
        tenant_id: str,
        cutoff: datetime,
        source: str | None = None,
        severity: int | None = None,
        exclude_severities: Sequence[int] = (),
    ) -> int:
        """Delete events older than ``cutoff``; rows with a null severity
        never match an explicit ``severity``."""
        stmt = delete(Event).where(Event.tenant_id == tenant_id, Event.event_time < cutoff)
        if source is not None:
            stmt = stmt.where(Event.source == source)
        if severity is not None:
            stmt = stmt.where(Event.severity == severity)
        elif exclude_severities:
            stmt = stmt.where(
                Event.severity.is_(None) | Event.severity.notin_(list(exclude_severities))
            )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def delete_event(self, tenant_id: str, event_id: str) -> bool:
        result = await self.session.execute(
            delete(Event).where(Event.id == event_id, Event.tenant_id == tenant_id)
        )
        return bool(result.rowcount)

    async def delete_events(
        self, tenant_id: str, before: datetime | None = None, source: str | None = None
    ) -> int:
        stmt = delete(Event).where(Event.tenant_id == tenant_id)
        if before is not None:
            stmt = stmt.where(Event.event_time < before)
        if source is not None:
            stmt = stmt.where(Event.source == source)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_event(self, tenant_id: str, event_id: str) -> Event | None:
        result = await self.session.execute(
            select(Event).where(Event.id == event_id, Event.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    def _apply_filter(self, stmt, tenant_id: str, f: EventFilter):
        stmt = stmt.where(Event.tenant_id == tenant_id)
        if f.source:
            stmt = stmt.where(Event.source == f.source)
        if f.severity_min is not None:
            stmt = stmt.where(Event.severity >= f.severity_min)
        if f.severity_max is not None:
            stmt = stmt.where(Event.severity <= f.severity_max)
        if f.action:
            stmt = stmt.where(Event.action == f.action)
        if f.event_type:
            stmt = stmt.where(Event.event_type == f.event_type)
        if f.src_ip:
            stmt = stmt.where(Event.src_ip == f.src_ip)
        if f.dst_ip:
            stmt = stmt.where(Event.dst_ip == f.dst_ip)
        if f.user:
            stmt = stmt.where(Event.user == f.user)
        if f.host:
            stmt = stmt.where(Event.host == f.host)
        if f.tag:
            # JSON array text contains the quoted tag
            pattern = f'%"{_escape_like(f.tag)}"%'
            stmt = stmt.where(cast(Event.tags, String).like(pattern, escape="\\"))
        if f.start:
            stmt = stmt.where(Event.event_time >= f.start)
        if f.end:
            stmt = stmt.where(Event.event_time <= f.end)
        return stmt

    async def list_events(
        self,
        tenant_id: str,
        filters: EventFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[Event]:
        stmt = self._apply_filter(select(Event), tenant_id, filters or EventFilter())
        stmt = stmt.order_by(Event.event_time.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def count_events(self, tenant_id: str, filters: EventFilter | None = None) -> int:
        stmt = self._apply_filter(select(func.count(Event.id)), tenant_id, filters or EventFilter())
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def stats(
        self, tenant_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> dict[str, Any]:
        """Event totals broken down by source, severity and action."""
        filters = EventFilter(start=start, end=end)
        breakdowns: dict[str, dict[str, int]] = {}
        for name, column in (
            ("by_source", Event.source),
            ("by_severity", Event.severity),
            ("by_action", Event.action),
        ):
            stmt = self._apply_filter(select(column, func.count(Event.id)), tenant_id, filters)
            rows = (await self.session.execute(stmt.group_by(column))).all()
            # Null severity or action is reported as "unknown"
            breakdowns[name] = {
                ("unknown" if key is None else str(key)): count for key, count in rows
            }
        return {"total": sum(breakdowns["by_source"].values()), **breakdowns}

    async def distinct_sources(self, tenant_id: str) -> list[str]:
        result = await self.session.execute(
            select(Event.source).where(Event.tenant_id == tenant_id).distinct()
        )
        return sorted(s for s in result.scalars().all() if s)

    async def distinct_tenants(self) -> list[str]:
        result = await self.session.execute(select(Event.tenant_id).distinct())
        return [t for t in result.scalars().all() if t]
