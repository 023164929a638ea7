"""Alert evaluation — rule matching, sliding threshold windows, cooldowns.

Every stored event is checked against the tenant's enabled rules:

* conditions (one object or a list, ANDed) must all match;
* a rule inside its cooldown is skipped before any window bookkeeping;
* threshold rules count matching events per (rule, group key) inside a
  window measured in *event time*, so replayed history behaves like live
  traffic;
* pattern rules fire on the first matching event;
* sequence rules are accepted in storage but not evaluated yet.

Window state lives in an injectable :class:`WindowStateStore` owned by the
evaluator instance.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Protocol

from logward.config import settings
from logward.db import async_session_factory
from logward.db.repositories.alerts import (
    AlertRepository,
    AlertRuleRepository,
    alert_to_dict,
    rule_to_dict,
)
from logward.services.notifier import discord_notifier

logger = logging.getLogger(__name__)

MAX_STORED_EVENT_IDS = 100
CONTEXT_FIELDS = ("src_ip", "dst_ip", "user", "host", "source", "action", "event_type")
GLOBAL_GROUP = "global"


class RuleType:
    THRESHOLD = "threshold"
    PATTERN = "pattern"
    SEQUENCE = "sequence"

    ALL = (THRESHOLD, PATTERN, SEQUENCE)


class Notifier(Protocol):
    async def send(self, webhook_url: str | None, alert: Mapping[str, Any]) -> bool: ...


# ── Conditions ────────────────────────────────────────────────────────


def get_field(event: Mapping[str, Any], name: str) -> Any:
    if name in ("tags", "_tags"):
        return event.get("_tags")
    return event.get(name)


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("booleans are not ordered values")
    return float(value)


def _compare(event_value: Any, value: Any, op: Callable[[Any, Any], bool]) -> bool:
    if event_value is None or value is None:
        return False
    try:
        return op(_as_number(event_value), _as_number(value))
    except (TypeError, ValueError):
        pass
    if isinstance(event_value, datetime) and isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return op(event_value, value)


def _contains(event_value: Any, value: Any) -> bool:
    if event_value is None or value is None:
        return False
    needle = str(value).lower()
    if isinstance(event_value, (list, tuple)):
        return any(needle == str(v).lower() for v in event_value)
    return needle in str(event_value).lower()


def _in(event_value: Any, value: Any) -> bool:
    return isinstance(value, (list, tuple)) and event_value in value


def _regex(event_value: Any, value: Any) -> bool:
    if event_value is None or not isinstance(value, str):
        return False
    return re.search(value, str(event_value), re.IGNORECASE) is not None


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda ev, v: ev == v,
    "neq": lambda ev, v: ev != v,
    "gt": lambda ev, v: _compare(ev, v, lambda a, b: a > b),
    "gte": lambda ev, v: _compare(ev, v, lambda a, b: a >= b),
    "lt": lambda ev, v: _compare(ev, v, lambda a, b: a < b),
    "lte": lambda ev, v: _compare(ev, v, lambda a, b: a <= b),
    "contains": _contains,
    "in": _in,
    "regex": _regex,
    "exists": lambda ev, v: ev is not None,
    "not_exists": lambda ev, v: ev is None,
}


def condition_matches(condition: Any, event: Mapping[str, Any]) -> bool:
    """Evaluate one ``{field, operator, value}`` condition; errors never match."""
    if not isinstance(condition, Mapping):
        return False
    op = OPERATORS.get(str(condition.get("operator", "")))
    name = condition.get("field")
    if op is None or not name:
        return False
    try:
        return bool(op(get_field(event, str(name)), condition.get("value")))
    except Exception as e:
        logger.debug(f"Condition {condition!r} failed closed: {e}")
        return False


def conditions_match(conditions: Any, event: Mapping[str, Any]) -> bool:
    if not conditions:
        return False
    if isinstance(conditions, list):
        return all(condition_matches(c, event) for c in conditions)
    return condition_matches(conditions, event)


def build_group_key(group_by: Optional[list[str]], event: Mapping[str, Any]) -> str:
    if not group_by:
        return GLOBAL_GROUP
    parts = []
    for name in group_by:
        value = get_field(event, name)
        parts.append(f"{name}:{value if value not in (None, '') else 'unknown'}")
    return "|".join(parts)


def build_title(rule: Mapping[str, Any], event: Mapping[str, Any], count: int) -> str:
    if count > 1:
        return f"{rule['name']}: {count} events detected"
    what = event.get("event_type") or event.get("action") or "Event"
    return f"{rule['name']}: {what} detected"


def build_description(
    rule: Mapping[str, Any], event: Mapping[str, Any], count: int, group_key: Optional[str]
) -> str:
    parts = []
    if rule.get("description"):
        parts.append(rule["description"])
    if count > 1:
        parts.append(
            f"Detected {count} matching events within {rule['threshold_window_seconds']} seconds."
        )
    if group_key and group_key != GLOBAL_GROUP:
        parts.append(f"Grouped by: {group_key}")
    if event.get("src_ip"):
        parts.append(f"Source IP: {event['src_ip']}")
    if event.get("user"):
        parts.append(f"User: {event['user']}")
    return "\n".join(parts)


def build_context(event: Mapping[str, Any]) -> dict:
    return {k: event.get(k) for k in CONTEXT_FIELDS}


def _utc(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Window state ──────────────────────────────────────────────────────


@dataclass
class WindowEntry:
    event_id: str
    event_time: datetime


@dataclass
class WindowState:
    entries: list[WindowEntry] = field(default_factory=list)
    last_update: float = 0.0


class WindowStateStore:
    """Per (rule, group key) sliding windows, serialised by per-key locks."""

    def __init__(
        self,
        idle_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_seconds = settings.ALERT_STATE_IDLE_SECONDS if idle_seconds is None else idle_seconds
        self._clock = clock
        self._states: dict[str, WindowState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def key(rule_id: str, group_key: str) -> str:
        return f"{rule_id}:{group_key}"

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def record(
        self,
        key: str,
        event_id: str,
        event_time: datetime,
        window_seconds: int,
        threshold: int,
    ) -> Optional[list[WindowEntry]]:
        """Add an event and return the window contents if the threshold is met.

        Entries older than ``event_time - window`` are evicted first; later
        entries stay, so membership depends on event time and not arrival order.
        A met threshold clears the window.
        """
        async with self._lock(key):
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = WindowState()
            state.entries.append(WindowEntry(event_id, event_time))
            state.last_update = self._clock()

            window_start = event_time - timedelta(seconds=window_seconds)
            state.entries = [
                e for e in state.entries if e.event_time >= window_start
            ]
            if len(state.entries) >= max(1, threshold):
                entries = state.entries
                del self._states[key]
                return entries
            return None

    def sweep(self) -> int:
        """Drop windows idle for longer than ``idle_seconds``."""
        now = self._clock()
        stale = [
            k for k, s in self._states.items()
            if now - s.last_update > self.idle_seconds
        ]
        for k in stale:
            lock = self._locks.get(k)
            if lock is not None and lock.locked():
                continue
            self._states.pop(k, None)
            self._locks.pop(k, None)
        # Locks whose state already fired and was removed
        for k in [k for k, lock in self._locks.items() if k not in self._states and not lock.locked()]:
            self._locks.pop(k, None)
        if stale:
            logger.debug(f"Swept {len(stale)} idle alert windows")
        return len(stale)

    def window_size(self, key: str) -> int:
        state = self._states.get(key)
        return len(state.entries) if state else 0

    def clear(self) -> None:
        self._states.clear()
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._states)


# ── Evaluator ─────────────────────────────────────────────────────────


class AlertEvaluator:
    """Matches stored events against tenant rules and persists alerts."""

    def __init__(
        self,
        session_factory=None,
        state_store: WindowStateStore | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.state_store = state_store or WindowStateStore()
        self.notifier = notifier or discord_notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(self, event: Mapping[str, Any]) -> list[dict]:
        """Evaluate one stored event; returns the alerts it produced.

        Never raises: rule errors are logged per rule, and a failure to load
        rules is logged and swallowed.
        """
        tenant_id = event.get("tenant_id")
        if not tenant_id:
            return []
        try:
            async with self.session_factory() as session:
                rules = [rule_to_dict(r) for r in await AlertRuleRepository(session).enabled_rules(tenant_id)]
        except Exception as e:
            logger.error(f"Failed to load alert rules for tenant {tenant_id}: {e}", exc_info=True)
            return []

        fired: list[dict] = []
        for rule in rules:
            try:
                alert = await self.evaluate_rule(rule, event)
                if alert is not None:
                    fired.append(alert)
            except Exception as e:
                logger.error(f"Error evaluating rule {rule.get('id')} ({rule.get('name')}): {e}", exc_info=True)
        return fired

    def in_cooldown(self, rule: Mapping[str, Any], now: datetime) -> bool:
        last = _utc(rule.get("last_triggered_at"))
        if last is None:
            return False
        return now < last + timedelta(seconds=rule.get("cooldown_seconds") or 0)

    async def evaluate_rule(self, rule: Mapping[str, Any], event: Mapping[str, Any]) -> Optional[dict]:
        if not conditions_match(rule.get("conditions"), event):
            return None
        if self.in_cooldown(rule, self._clock()):
            return None

        rule_type = rule.get("rule_type") or RuleType.THRESHOLD
        if rule_type == RuleType.THRESHOLD:
            group_key = build_group_key(rule.get("group_by"), event)
            event_time = _utc(event.get("event_time")) or self._clock()
            entries = await self.state_store.record(
                WindowStateStore.key(rule["id"], group_key),
                event["id"],
                event_time,
                rule.get("threshold_window_seconds") or 300,
                rule.get("threshold_count") or 1,
            )
            if entries is None:
                return None
            return await self.trigger(rule, event, len(entries), group_key, [e.event_id for e in entries])

        if rule_type == RuleType.PATTERN:
            return await self.trigger(rule, event, 1, None, [event["id"]])

        logger.debug(f"Rule {rule['id']} has type {rule_type!r}, which is not evaluated")
        return None

    async def trigger(
        self,
        rule: Mapping[str, Any],
        event: Mapping[str, Any],
        count: int,
        group_key: Optional[str],
        event_ids: list[str],
    ) -> dict:
        """Persist an alert, stamp the rule, then notify if configured."""
        now = self._clock()
        async with self.session_factory() as session:
            alert = await AlertRepository(session).create_alert(
                tenant_id=event["tenant_id"],
                rule_id=rule["id"],
                rule_name=rule["name"],
                severity=rule.get("alert_severity", 5),
                title=build_title(rule, event, count),
                description=build_description(rule, event, count, group_key),
                event_count=count,
                event_ids=event_ids[:MAX_STORED_EVENT_IDS],
                group_key=group_key,
                context=build_context(event),
                triggered_at=now,
            )
            await AlertRuleRepository(session).mark_triggered(rule["id"], now)
            await session.commit()
            snapshot = alert_to_dict(alert)

        logger.info(f"Alert triggered: {snapshot['id']} - {snapshot['title']}")

        if rule.get("notify_discord") and rule.get("discord_webhook_url"):
            if await self.notifier.send(rule["discord_webhook_url"], snapshot):
                notified_at = self._clock()
                async with self.session_factory() as session:
                    await AlertRepository(session).mark_notified(snapshot["id"], notified_at)
                    await session.commit()
                snapshot["notified"] = True
                snapshot["notified_at"] = notified_at.isoformat()
        return snapshot


# ── Default rules ─────────────────────────────────────────────────────


DEFAULT_RULES: list[dict] = [
    {
        "name": "Repeated Failed Logins",
        "description": "Detect 5+ failed login attempts from the same IP within 5 minutes",
        "rule_type": RuleType.THRESHOLD,
        "conditions": {"field": "event_type", "operator": "contains", "value": "fail"},
        "threshold_count": 5,
        "threshold_window_seconds": 300,
        "group_by": ["src_ip"],
        "alert_severity": 5,
        "cooldown_seconds": 300,
    },
]


async def create_default_rules(session, tenant_id: str, webhook_url: str | None = None) -> list:
    """Provision the default rule set for a tenant; existing names are skipped."""
    repo = AlertRuleRepository(session)
    created = []
    for template in DEFAULT_RULES:
        if await repo.get_rule_by_name(tenant_id, template["name"]):
            continue
        rule = await repo.create_rule(
            tenant_id,
            notify_discord=bool(webhook_url),
            discord_webhook_url=webhook_url or None,
            **template,
        )
        created.append(rule)
    if created:
        logger.info(f"Created {len(created)} default alert rules for tenant {tenant_id}")
    return created


# Singleton
alert_evaluator = AlertEvaluator()
