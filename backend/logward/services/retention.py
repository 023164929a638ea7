"""Data retention — per-tenant event expiry and alert cleanup.

Retention for an event is resolved as severity override, else source
override, else the policy's ``retention_days``; a 7-day floor always applies,
both when a policy is stored and when it is enforced. Tenants without a
policy fall back to ``LW_RETENTION_DEFAULT_DAYS``; tenants whose policy is
disabled are left alone.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from logward.config import settings
from logward.db import async_session_factory
from logward.db.models import Event, RetentionPolicy
from logward.db.repositories.alerts import AlertRepository
from logward.db.repositories.events import EventRepository, as_utc
from logward.db.repositories.retention import RetentionPolicyRepository

logger = logging.getLogger(__name__)

MIN_RETENTION_DAYS = 7
SEVERITY_LEVELS = range(0, 11)


def _floor(days: Any) -> int:
    try:
        value = int(days)
    except (TypeError, ValueError):
        return MIN_RETENTION_DAYS
    return max(value, MIN_RETENTION_DAYS)


def effective_retention_days(policy: Any, source: Optional[str], severity: Optional[int]) -> int:
    """Days to keep an event of ``source``/``severity`` under ``policy``."""
    get = policy.get if isinstance(policy, Mapping) else lambda k: getattr(policy, k, None)
    severity_overrides = get("severity_overrides") or {}
    source_overrides = get("source_overrides") or {}

    if severity is not None and str(severity) in severity_overrides:
        return _floor(severity_overrides[str(severity)])
    if source is not None and source in source_overrides:
        return _floor(source_overrides[source])
    return _floor(get("retention_days") or settings.RETENTION_DEFAULT_DAYS)


def clamp_policy_values(values: dict) -> dict:
    """Apply the retention floor to every day count in a policy update."""
    clamped = dict(values)
    if clamped.get("retention_days") is not None:
        clamped["retention_days"] = _floor(clamped["retention_days"])
    for key in ("source_overrides", "severity_overrides"):
        if clamped.get(key):
            clamped[key] = {str(k): _floor(v) for k, v in clamped[key].items()}
    return clamped


def policy_to_dict(p: RetentionPolicy) -> dict:
    return {
        "id": p.id,
        "tenant_id": p.tenant_id,
        "enabled": p.enabled,
        "retention_days": p.retention_days,
        "source_overrides": p.source_overrides or {},
        "severity_overrides": p.severity_overrides or {},
        "archive_destination": p.archive_destination,
        "last_cleanup_at": p.last_cleanup_at.isoformat() if p.last_cleanup_at else None,
        "last_cleanup_count": p.last_cleanup_count,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "updated_at": p.updated_at.isoformat() if p.updated_at else None,
    }


class RetentionService:
    """Runs retention sweeps against the event and alert stores."""

    def __init__(
        self,
        session_factory=None,
        default_days: int | None = None,
        alert_days: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.default_days = settings.RETENTION_DEFAULT_DAYS if default_days is None else default_days
        self.alert_days = settings.RETENTION_ALERT_DAYS if alert_days is None else alert_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _cutoff(self, days: int) -> datetime:
        return self._clock() - timedelta(days=_floor(days))

    # ── Events ────────────────────────────────────────────────────────

    async def cleanup_tenant(self, session: AsyncSession, policy: RetentionPolicy) -> int:
        repo = EventRepository(session)
        overridden = sorted(
            int(k) for k in (policy.severity_overrides or {})
            if str(k).isdigit() and int(k) in SEVERITY_LEVELS
        )
        deleted = 0
        for source in await repo.distinct_sources(policy.tenant_id):
            for severity in overridden:
                days = effective_retention_days(policy, source, severity)
                deleted += await repo.delete_older_than(
                    policy.tenant_id, self._cutoff(days), source=source, severity=severity
                )
            # Remaining severities, including null, follow the source value
            days = effective_retention_days(policy, source, None)
            deleted += await repo.delete_older_than(
                policy.tenant_id, self._cutoff(days), source=source, exclude_severities=overridden
            )

        await RetentionPolicyRepository(session).record_cleanup(policy, self._clock(), deleted)
        logger.info(f"Cleaned up {deleted} events for tenant {policy.tenant_id}")
        return deleted

    async def cleanup_default_tenants(self, session: AsyncSession, exclude: set[str]) -> int:
        repo = EventRepository(session)
        cutoff = self._cutoff(self.default_days)
        deleted = 0
        for tenant_id in await repo.distinct_tenants():
            if tenant_id in exclude:
                continue
            deleted += await repo.delete_older_than(tenant_id, cutoff)
        if deleted:
            logger.info(f"Cleaned up {deleted} events from tenants using default retention")
        return deleted

    async def cleanup_for_tenant(self, session: AsyncSession, tenant_id: str) -> int:
        """One tenant's sweep, used by the manual cleanup endpoint."""
        policy = await RetentionPolicyRepository(session).get_policy(tenant_id)
        if policy is None:
            deleted = await EventRepository(session).delete_older_than(
                tenant_id, self._cutoff(self.default_days)
            )
            logger.info(f"Cleaned up {deleted} events for tenant {tenant_id} (default retention)")
            return deleted
        if not policy.enabled:
            return 0
        return await self.cleanup_tenant(session, policy)

    async def run_cleanup(self) -> int:
        """Expire events for every tenant; returns the number deleted."""
        logger.info("Starting retention cleanup")
        total = 0
        async with self.session_factory() as session:
            policies = await RetentionPolicyRepository(session).list_policies()
            tenants_with_policy = {p.tenant_id for p in policies}
            policy_ids = [p.id for p in policies if p.enabled]

        for policy_id in policy_ids:
            try:
                async with self.session_factory() as session:
                    policy = await session.get(RetentionPolicy, policy_id)
                    if policy is None:
                        continue
                    total += await self.cleanup_tenant(session, policy)
                    await session.commit()
            except Exception as e:
                logger.error(f"Cleanup failed for policy {policy_id}: {e}", exc_info=True)

        try:
            async with self.session_factory() as session:
                total += await self.cleanup_default_tenants(session, tenants_with_policy)
                await session.commit()
        except Exception as e:
            logger.error(f"Default-retention cleanup failed: {e}", exc_info=True)

        logger.info(f"Retention cleanup completed. Total events deleted: {total}")
        return total

    # ── Alerts ────────────────────────────────────────────────────────

    async def cleanup_alerts(self, days: int | None = None) -> int:
        """Delete resolved/closed alerts older than ``days`` (no floor)."""
        days = self.alert_days if days is None else days
        cutoff = self._clock() - timedelta(days=days)
        async with self.session_factory() as session:
            deleted = await AlertRepository(session).delete_final_before(cutoff)
            await session.commit()
        if deleted:
            logger.info(f"Cleaned up {deleted} old alerts")
        return deleted

    async def run_all(self) -> dict:
        started = self._clock()
        events = await self.run_cleanup()
        alerts = await self.cleanup_alerts()
        elapsed = (self._clock() - started).total_seconds()
        logger.info(f"Retention sweep finished in {elapsed:.2f}s: {events} events, {alerts} alerts deleted")
        return {"events_deleted": events, "alerts_deleted": alerts}

    # ── Stats ─────────────────────────────────────────────────────────

    async def retention_stats(self, session: AsyncSession, tenant_id: str) -> dict:
        policy = await RetentionPolicyRepository(session).get_policy(tenant_id)
        now = self._clock()
        stats: dict[str, Any] = {
            "policy": policy_to_dict(policy) if policy else None,
            "default_retention_days": self.default_days,
            "min_retention_days": MIN_RETENTION_DAYS,
            "event_counts_by_age": {},
        }
        for days in (1, 7, 14, 30, 60, 90):
            count = await session.execute(
                select(func.count(Event.id)).where(
                    Event.tenant_id == tenant_id,
                    Event.event_time >= now - timedelta(days=days),
                )
            )
            stats["event_counts_by_age"][f"last_{days}_days"] = count.scalar_one()

        total = await session.execute(
            select(func.count(Event.id)).where(Event.tenant_id == tenant_id)
        )
        stats["total_events"] = total.scalar_one()

        oldest = (await session.execute(
            select(func.min(Event.event_time)).where(Event.tenant_id == tenant_id)
        )).scalar_one_or_none()
        if oldest is not None:
            oldest = as_utc(oldest)
            stats["oldest_event"] = oldest.isoformat()
            stats["data_age_days"] = (now - oldest).days
        return stats


class RetentionScheduler:
    """Background loop that runs retention sweeps on a fixed interval."""

    def __init__(
        self,
        service: RetentionService | None = None,
        interval_hours: float | None = None,
        run_on_startup: bool | None = None,
        startup_delay: float | None = None,
    ):
        self.service = service or retention_service
        self.interval_hours = settings.RETENTION_INTERVAL_HOURS if interval_hours is None else interval_hours
        self.run_on_startup = settings.RETENTION_RUN_ON_STARTUP if run_on_startup is None else run_on_startup
        self.startup_delay = (
            settings.RETENTION_STARTUP_DELAY_SECONDS if startup_delay is None else startup_delay
        )
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Retention scheduler started (interval: {self.interval_hours} hours)")

    async def stop(self):
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
            logger.info("Retention scheduler stopped")

    async def _run_once(self):
        try:
            await self.service.run_all()
        except Exception as e:
            logger.error(f"Scheduled retention cleanup failed: {e}", exc_info=True)

    async def _loop(self):
        if self.run_on_startup:
            await asyncio.sleep(self.startup_delay)
            logger.info("Running startup retention cleanup")
            await self._run_once()
        interval = max(1.0, float(self.interval_hours) * 3600)
        while True:
            await asyncio.sleep(interval)
            await self._run_once()


# Singletons
retention_service = RetentionService()
retention_scheduler = RetentionScheduler()
