"""initial events, alert rules, alerts and retention policies

Revision ID: c1d2e3f4a5b6
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "c1d2e3f4a5b6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("vendor", sa.String(128), nullable=True),
        sa.Column("product", sa.String(128), nullable=True),
        sa.Column("event_type", sa.String(256), nullable=True),
        sa.Column("event_subtype", sa.String(256), nullable=True),
        sa.Column("severity", sa.Integer, nullable=True),
        sa.Column("action", sa.String(16), nullable=True),
        sa.Column("src_ip", sa.String(64), nullable=True),
        sa.Column("src_port", sa.Integer, nullable=True),
        sa.Column("dst_ip", sa.String(64), nullable=True),
        sa.Column("dst_port", sa.Integer, nullable=True),
        sa.Column("protocol", sa.String(32), nullable=True),
        sa.Column("user", sa.String(256), nullable=True),
        sa.Column("host", sa.String(256), nullable=True),
        sa.Column("process", sa.String(512), nullable=True),
        sa.Column("url", sa.Text, nullable=True),
        sa.Column("http_method", sa.String(16), nullable=True),
        sa.Column("status_code", sa.Integer, nullable=True),
        sa.Column("rule_name", sa.String(256), nullable=True),
        sa.Column("rule_id", sa.String(128), nullable=True),
        sa.Column("cloud_account_id", sa.String(64), nullable=True),
        sa.Column("cloud_region", sa.String(64), nullable=True),
        sa.Column("cloud_service", sa.String(64), nullable=True),
        sa.Column("src_hostname", sa.String(256), nullable=True),
        sa.Column("dst_hostname", sa.String(256), nullable=True),
        sa.Column("src_geo_country", sa.String(8), nullable=True),
        sa.Column("src_geo_city", sa.String(128), nullable=True),
        sa.Column("src_geo_latitude", sa.Float, nullable=True),
        sa.Column("src_geo_longitude", sa.Float, nullable=True),
        sa.Column("dst_geo_country", sa.String(8), nullable=True),
        sa.Column("dst_geo_city", sa.String(128), nullable=True),
        sa.Column("dst_geo_latitude", sa.Float, nullable=True),
        sa.Column("dst_geo_longitude", sa.Float, nullable=True),
        sa.Column("raw", sa.Text, nullable=False),
        sa.Column("_tags", sa.JSON, nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_tenant", "events", ["tenant_id"])
    op.create_index("ix_events_time", "events", ["event_time"])
    op.create_index("ix_events_tenant_time", "events", ["tenant_id", "event_time"])
    op.create_index("ix_events_source", "events", ["source"])
    op.create_index("ix_events_severity", "events", ["severity"])
    op.create_index("ix_events_src_ip", "events", ["src_ip"])
    op.create_index("ix_events_dst_ip", "events", ["dst_ip"])

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("enabled", sa.Boolean, server_default=sa.text("1")),
        sa.Column("rule_type", sa.String(16), server_default="threshold"),
        sa.Column("conditions", sa.JSON, nullable=False),
        sa.Column("threshold_count", sa.Integer, server_default="1"),
        sa.Column("threshold_window_seconds", sa.Integer, server_default="300"),
        sa.Column("group_by", sa.JSON, nullable=True),
        sa.Column("alert_severity", sa.Integer, server_default="5"),
        sa.Column("cooldown_seconds", sa.Integer, server_default="300"),
        sa.Column("notify_discord", sa.Boolean, server_default=sa.text("0")),
        sa.Column("discord_webhook_url", sa.String(512), nullable=True),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_alert_rules_tenant", "alert_rules", ["tenant_id"])
    op.create_index("ix_alert_rules_tenant_enabled", "alert_rules", ["tenant_id", "enabled"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column(
            "rule_id", sa.String(32),
            sa.ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("rule_name", sa.String(256), nullable=False),
        sa.Column("severity", sa.Integer, server_default="5"),
        sa.Column("status", sa.String(16), server_default="open"),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("event_count", sa.Integer, server_default="1"),
        sa.Column("event_ids", sa.JSON, nullable=True),
        sa.Column("group_key", sa.String(512), nullable=True),
        sa.Column("context", sa.JSON, nullable=True),
        sa.Column("notified", sa.Boolean, server_default=sa.text("0")),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(128), nullable=True),
        sa.Column("resolution_notes", sa.Text, nullable=True),
        sa.Column("triggered_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_alerts_tenant", "alerts", ["tenant_id"])
    op.create_index("ix_alerts_status", "alerts", ["status"])
    op.create_index("ix_alerts_rule", "alerts", ["rule_id"])
    op.create_index("ix_alerts_triggered", "alerts", ["triggered_at"])

    op.create_table(
        "retention_policies",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("tenant_id", sa.String(128), nullable=False, unique=True),
        sa.Column("enabled", sa.Boolean, server_default=sa.text("1")),
        sa.Column("retention_days", sa.Integer, server_default="30"),
        sa.Column("source_overrides", sa.JSON, nullable=True),
        sa.Column("severity_overrides", sa.JSON, nullable=True),
        sa.Column("archive_destination", sa.String(512), nullable=True),
        sa.Column("last_cleanup_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_cleanup_count", sa.Integer, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_retention_policies_tenant_id", "retention_policies", ["tenant_id"])


def downgrade() -> None:
    op.drop_table("retention_policies")
    op.drop_table("alerts")
    op.drop_table("alert_rules")
    op.drop_table("events")
