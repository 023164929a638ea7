"""Alert and alert-rule repositories, including alert status transitions."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from logward.db.models import Alert, AlertRule

logger = logging.getLogger(__name__)


class AlertStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    CLOSED = "closed"


# Forward-only lifecycle; closed is terminal
ALLOWED_TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.OPEN: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.CLOSED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED, AlertStatus.CLOSED}),
    AlertStatus.RESOLVED: frozenset({AlertStatus.CLOSED}),
    AlertStatus.CLOSED: frozenset(),
}

FINAL_STATUSES = (AlertStatus.RESOLVED.value, AlertStatus.CLOSED.value)


class InvalidStatusTransition(ValueError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move alert from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


def can_transition(current: str, requested: str) -> bool:
    try:
        return AlertStatus(requested) in ALLOWED_TRANSITIONS[AlertStatus(current)]
    except ValueError:
        return False


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def rule_to_dict(r: AlertRule) -> dict:
    return {
        "id": r.id,
        "tenant_id": r.tenant_id,
        "name": r.name,
        "description": r.description,
        "enabled": r.enabled,
        "rule_type": r.rule_type,
        "conditions": r.conditions,
        "threshold_count": r.threshold_count,
        "threshold_window_seconds": r.threshold_window_seconds,
        "group_by": r.group_by or [],
        "alert_severity": r.alert_severity,
        "cooldown_seconds": r.cooldown_seconds,
        "notify_discord": r.notify_discord,
        "discord_webhook_url": r.discord_webhook_url,
        "last_triggered_at": _iso(r.last_triggered_at),
        "created_at": _iso(r.created_at),
        "updated_at": _iso(r.updated_at),
    }


def alert_to_dict(a: Alert) -> dict:
    return {
        "id": a.id,
        "tenant_id": a.tenant_id,
        "rule_id": a.rule_id,
        "rule_name": a.rule_name,
        "severity": a.severity,
        "status": a.status,
        "title": a.title,
        "description": a.description,
        "event_count": a.event_count,
        "event_ids": a.event_ids or [],
        "group_key": a.group_key,
        "context": a.context or {},
        "notified": a.notified,
        "notified_at": _iso(a.notified_at),
        "resolved_at": _iso(a.resolved_at),
        "resolved_by": a.resolved_by,
        "resolution_notes": a.resolution_notes,
        "triggered_at": _iso(a.triggered_at),
        "created_at": _iso(a.created_at),
        "updated_at": _iso(a.updated_at),
    }


# ── Alert rules ───────────────────────────────────────────────────────


class AlertRuleRepository:
    """Tenant-scoped CRUD for AlertRule."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_rule(self, tenant_id: str, **kwargs) -> AlertRule:
        rule = AlertRule(tenant_id=tenant_id, **kwargs)
        self.session.add(rule)
        await self.session.flush()
        return rule

    async def get_rule(self, tenant_id: str, rule_id: str) -> AlertRule | None:
        result = await self.session.execute(
            select(AlertRule).where(AlertRule.id == rule_id, AlertRule.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def get_rule_by_name(self, tenant_id: str, name: str) -> AlertRule | None:
        result = await self.session.execute(
            select(AlertRule).where(AlertRule.tenant_id == tenant_id, AlertRule.name == name)
        )
        return result.scalars().first()

    async def list_rules(self, tenant_id: str, enabled: bool | None = None) -> Sequence[AlertRule]:
        stmt = select(AlertRule).where(AlertRule.tenant_id == tenant_id)
        if enabled is not None:
            stmt = stmt.where(AlertRule.enabled == enabled)
        result = await self.session.execute(stmt.order_by(AlertRule.created_at))
        return result.scalars().all()

    async def enabled_rules(self, tenant_id: str) -> Sequence[AlertRule]:
        return await self.list_rules(tenant_id, enabled=True)

    async def update_rule(self, rule: AlertRule, **changes) -> AlertRule:
        for key, value in changes.items():
            setattr(rule, key, value)
        await self.session.flush()
        return rule

    async def delete_rule(self, tenant_id: str, rule_id: str) -> bool:
        rule = await self.get_rule(tenant_id, rule_id)
        if not rule:
            return False
        await self.session.execute(delete(Alert).where(Alert.rule_id == rule_id))
        await self.session.delete(rule)
        await self.session.flush()
        return True

    async def mark_triggered(self, rule_id: str, when: datetime) -> None:
        await self.session.execute(
            update(AlertRule).where(AlertRule.id == rule_id).values(last_triggered_at=when)
        )


# ── Alerts ────────────────────────────────────────────────────────────


class AlertRepository:
    """Tenant-scoped access to triggered alerts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_alert(self, **kwargs) -> Alert:
        alert = Alert(**kwargs)
        self.session.add(alert)
        await self.session.flush()
        return alert

    async def get_alert(self, tenant_id: str, alert_id: str) -> Alert | None:
        result = await self.session.execute(
            select(Alert).where(Alert.id == alert_id, Alert.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    def _filtered(self, stmt, tenant_id: str, status: str | None, rule_id: str | None,
                  severity_min: int | None):
        stmt = stmt.where(Alert.tenant_id == tenant_id)
        if status:
            stmt = stmt.where(Alert.status == status)
        if rule_id:
            stmt = stmt.where(Alert.rule_id == rule_id)
        if severity_min is not None:
            stmt = stmt.where(Alert.severity >= severity_min)
        return stmt

    async def list_alerts(
        self,
        tenant_id: str,
        status: str | None = None,
        rule_id: str | None = None,
        severity_min: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[Alert]:
        stmt = self._filtered(select(Alert), tenant_id, status, rule_id, severity_min)
        stmt = stmt.order_by(Alert.triggered_at.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def count_alerts(
        self,
        tenant_id: str,
        status: str | None = None,
        rule_id: str | None = None,
        severity_min: int | None = None,
    ) -> int:
        stmt = self._filtered(select(func.count(Alert.id)), tenant_id, status, rule_id, severity_min)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def update_status(
        self,
        alert: Alert,
        status: str,
        resolved_by: str | None = None,
        notes: str | None = None,
    ) -> Alert:
        """Move an alert forward in its lifecycle.

        Raises InvalidStatusTransition for backwards or unknown moves.
        Resolving or closing stamps resolution metadata once.
        """
        if not can_transition(alert.status, status):
            raise InvalidStatusTransition(alert.status, status)
        alert.status = status
        if status in FINAL_STATUSES:
            if alert.resolved_at is None:
                alert.resolved_at = datetime.now(timezone.utc)
            if resolved_by:
                alert.resolved_by = resolved_by
            if notes:
                alert.resolution_notes = notes
        await self.session.flush()
        return alert

    async def mark_notified(self, alert_id: str, when: datetime) -> None:
        await self.session.execute(
            update(Alert).where(Alert.id == alert_id).values(notified=True, notified_at=when)
        )

    async def delete_final_before(self, cutoff: datetime) -> int:
        """Delete resolved/closed alerts triggered before ``cutoff``."""
        result = await self.session.execute(
            delete(Alert).where(Alert.status.in_(FINAL_STATUSES), Alert.triggered_at < cutoff)
        )
        return result.rowcount or 0
