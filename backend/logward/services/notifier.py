"""Discord webhook notifications for triggered alerts.

Delivery is a single POST; failures are logged and reported as ``False`` so
the alert simply stays un-notified.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx

from logward.config import settings

logger = logging.getLogger(__name__)

DEFAULT_COLOR = 0xFF0000


def severity_color(severity: Any) -> int:
    """Embed colour for a 0-10 severity."""
    try:
        level = int(severity)
    except (TypeError, ValueError):
        return DEFAULT_COLOR
    if level < 0 or level > 10:
        return DEFAULT_COLOR
    if level <= 2:
        return 0x00FF00  # green
    if level <= 4:
        return 0xFFFF00  # yellow
    if level <= 6:
        return 0xFFA500  # orange
    if level <= 8:
        return 0xFF0000  # red
    return 0x8B0000  # dark red


def build_embed(alert: Mapping[str, Any]) -> dict:
    context = alert.get("context") or {}
    fields = [
        {"name": "Severity", "value": f"{alert.get('severity')}/10", "inline": True},
        {"name": "Rule", "value": str(alert.get("rule_name") or "-"), "inline": True},
        {"name": "Event Count", "value": str(alert.get("event_count", 1)), "inline": True},
    ]
    if alert.get("group_key"):
        fields.append({"name": "Group", "value": str(alert["group_key"]), "inline": True})
    for key, label in (("src_ip", "Source IP"), ("user", "User"), ("host", "Host")):
        if context.get(key):
            fields.append({"name": label, "value": str(context[key]), "inline": True})

    timestamp = alert.get("triggered_at") or datetime.now(timezone.utc).isoformat()
    return {
        "title": f"🚨 {alert.get('title', 'Alert')}",
        "description": alert.get("description") or "Alert triggered",
        "color": severity_color(alert.get("severity")),
        "fields": fields,
        "timestamp": timestamp,
        "footer": {"text": f"Tenant: {alert.get('tenant_id')} | Alert ID: {alert.get('id')}"},
    }


class DiscordNotifier:
    """Posts alert embeds to Discord-compatible webhooks."""

    name = "discord"

    def __init__(self, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = settings.NOTIFY_TIMEOUT_SECONDS if timeout is None else timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def send(self, webhook_url: str | None, alert: Mapping[str, Any]) -> bool:
        if not webhook_url:
            logger.warning(f"No webhook URL configured for alert {alert.get('id')}")
            return False

        payload = {"embeds": [build_embed(alert)]}
        try:
            resp = await self._get_client().post(webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Discord webhook request failed for alert {alert.get('id')}: {e}")
            return False

        if not resp.is_success:
            logger.error(f"Discord webhook failed: {resp.status_code} - {resp.text[:200]}")
            return False

        logger.info(f"Discord alert sent for alert {alert.get('id')}")
        return True

    async def cleanup(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()


# Singleton
discord_notifier = DiscordNotifier()
