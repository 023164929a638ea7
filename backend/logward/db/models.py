"""SQLAlchemy ORM models for logward.

All persistent entities: canonical events, alert rules, triggered alerts,
and per-tenant retention policies.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    JSON,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .engine import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ── Events ─────────────────────────────────────────────────────────────


class Event(Base):
    """Canonical security event produced by a normalizer."""
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)  # firewall|network|api|edr|cloud|productivity|directory
    vendor: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    product: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    event_type: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    event_subtype: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    severity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 0-10
    action: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # allow|deny|create|delete|login|logout|alert

    src_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    src_port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    dst_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    dst_port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    protocol: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    user: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    host: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    process: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    http_method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    rule_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    rule_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    cloud_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cloud_region: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cloud_service: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # enrichment: reverse DNS
    src_hostname: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    dst_hostname: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    # enrichment: GeoIP
    src_geo_country: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    src_geo_city: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    src_geo_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    src_geo_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dst_geo_country: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    dst_geo_city: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    dst_geo_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dst_geo_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    raw: Mapped[str] = mapped_column(Text, nullable=False)
    tags: Mapped[list] = mapped_column("_tags", JSON, default=list)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_events_tenant", "tenant_id"),
        Index("ix_events_time", "event_time"),
        Index("ix_events_tenant_time", "tenant_id", "event_time"),
        Index("ix_events_source", "source"),
        Index("ix_events_severity", "severity"),
        Index("ix_events_src_ip", "src_ip"),
        Index("ix_events_dst_ip", "dst_ip"),
    )


# ── Alert rules ────────────────────────────────────────────────────────


class AlertRule(Base):
    """Tenant-owned rule evaluated against every stored event."""
    __tablename__ = "alert_rules"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    rule_type: Mapped[str] = mapped_column(String(16), default="threshold")  # threshold | pattern | sequence
    conditions: Mapped[dict | list] = mapped_column(JSON, nullable=False)  # {field, operator, value} or a list of them
    threshold_count: Mapped[int] = mapped_column(Integer, default=1)
    threshold_window_seconds: Mapped[int] = mapped_column(Integer, default=300)
    group_by: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    alert_severity: Mapped[int] = mapped_column(Integer, default=5)
    cooldown_seconds: Mapped[int] = mapped_column(Integer, default=300)
    notify_discord: Mapped[bool] = mapped_column(Boolean, default=False)
    discord_webhook_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    alerts: Mapped[list["Alert"]] = relationship(
        back_populates="rule", lazy="raise", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_alert_rules_tenant", "tenant_id"),
        Index("ix_alert_rules_tenant_enabled", "tenant_id", "enabled"),
    )


# ── Alerts ─────────────────────────────────────────────────────────────


class Alert(Base):
    """Alert emitted when a rule fires."""
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    rule_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=False
    )
    rule_name: Mapped[str] = mapped_column(String(256), nullable=False)
    severity: Mapped[int] = mapped_column(Integer, default=5)
    status: Mapped[str] = mapped_column(String(16), default="open")  # open|acknowledged|resolved|closed
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    event_count: Mapped[int] = mapped_column(Integer, default=1)
    event_ids: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    group_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    notified: Mapped[bool] = mapped_column(Boolean, default=False)
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    rule: Mapped[Optional["AlertRule"]] = relationship(back_populates="alerts", lazy="raise")

    __table_args__ = (
        Index("ix_alerts_tenant", "tenant_id"),
        Index("ix_alerts_status", "status"),
        Index("ix_alerts_rule", "rule_id"),
        Index("ix_alerts_triggered", "triggered_at"),
    )


# ── Retention ──────────────────────────────────────────────────────────


class RetentionPolicy(Base):
    """Per-tenant event retention with source and severity overrides."""
    __tablename__ = "retention_policies"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    retention_days: Mapped[int] = mapped_column(Integer, default=30)
    source_overrides: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # {source: days}
    severity_overrides: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # {"0".."10": days}
    archive_destination: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    last_cleanup_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_cleanup_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
