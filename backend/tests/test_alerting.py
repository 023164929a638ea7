"""Tests for alert rule evaluation — conditions, threshold windows, cooldown, notify."""

from datetime import datetime, timedelta, timezone

import pytest

from logward.db.repositories.alerts import AlertRepository, AlertRuleRepository, rule_to_dict
from logward.services.alerting import (
    AlertEvaluator,
    WindowStateStore,
    build_group_key,
    condition_matches,
    conditions_match,
    create_default_rules,
)

BASE_TIME = datetime(2025, 1, 15, 11, 50, tzinfo=timezone.utc)

FAILED_LOGIN_RULE = {
    "name": "Repeated Failed Logins",
    "rule_type": "threshold",
    "conditions": {"field": "event_type", "operator": "contains", "value": "fail"},
    "threshold_count": 5,
    "threshold_window_seconds": 300,
    "group_by": ["src_ip"],
    "alert_severity": 6,
    "cooldown_seconds": 300,
}


def failed_login(n: int, offset_seconds: float, src_ip: str = "203.0.113.7") -> dict:
    return {
        "id": f"evt-{n}",
        "tenant_id": "acme",
        "source": "api",
        "event_type": "login_failed",
        "action": "deny",
        "src_ip": src_ip,
        "user": "alice",
        "event_time": BASE_TIME + timedelta(seconds=offset_seconds),
        "_tags": ["auth-failure"],
    }


async def add_rule(session_factory, tenant_id="acme", **overrides) -> dict:
    async with session_factory() as session:
        rule = await AlertRuleRepository(session).create_rule(
            tenant_id, **{**FAILED_LOGIN_RULE, **overrides}
        )
        await session.commit()
        return rule_to_dict(rule)


async def stored_alerts(session_factory, tenant_id="acme"):
    async with session_factory() as session:
        return await AlertRepository(session).list_alerts(tenant_id)


@pytest.fixture
def evaluator(session_factory, recording_notifier, fake_clock):
    return AlertEvaluator(
        session_factory=session_factory,
        state_store=WindowStateStore(idle_seconds=600),
        notifier=recording_notifier,
        clock=fake_clock,
    )


# ── Conditions ────────────────────────────────────────────────────────


class TestConditions:
    event = {
        "event_type": "UserLoginFailed",
        "severity": 7,
        "src_ip": "10.0.0.5",
        "user": None,
        "event_time": datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc),
        "_tags": ["auth-failure", "aad"],
    }

    @pytest.mark.parametrize("condition,expected", [
        ({"field": "severity", "operator": "eq", "value": 7}, True),
        ({"field": "severity", "operator": "neq", "value": 7}, False),
        ({"field": "severity", "operator": "gt", "value": 6}, True),
        ({"field": "severity", "operator": "gte", "value": "7"}, True),
        ({"field": "severity", "operator": "lt", "value": 7}, False),
        ({"field": "severity", "operator": "lte", "value": 7}, True),
        ({"field": "event_type", "operator": "contains", "value": "FAIL"}, True),
        ({"field": "_tags", "operator": "contains", "value": "aad"}, True),
        ({"field": "tags", "operator": "contains", "value": "auth"}, False),
        ({"field": "src_ip", "operator": "in", "value": ["10.0.0.5", "10.0.0.6"]}, True),
        ({"field": "src_ip", "operator": "in", "value": "10.0.0.5"}, False),
        ({"field": "event_type", "operator": "regex", "value": r"^user.*failed$"}, True),
        ({"field": "user", "operator": "exists"}, False),
        ({"field": "user", "operator": "not_exists"}, True),
        ({"field": "event_time", "operator": "gt", "value": "2025-01-15T11:00:00Z"}, True),
    ])
    def test_operators(self, condition, expected):
        assert condition_matches(condition, self.event) is expected

    def test_conditions_fail_closed(self):
        assert condition_matches({"field": "event_type", "operator": "regex", "value": "(["}, self.event) is False
        assert condition_matches({"field": "severity", "operator": "gt", "value": "high"}, self.event) is False
        assert condition_matches({"field": "severity", "operator": "between", "value": 1}, self.event) is False
        assert condition_matches("severity > 5", self.event) is False

    def test_condition_lists_are_conjunctive(self):
        both = [
            {"field": "severity", "operator": "gte", "value": 5},
            {"field": "event_type", "operator": "contains", "value": "login"},
        ]
        assert conditions_match(both, self.event) is True
        both[1]["value"] = "logout"
        assert conditions_match(both, self.event) is False
        assert conditions_match([], self.event) is False
        assert conditions_match(None, self.event) is False

    def test_group_key(self):
        assert build_group_key(None, self.event) == "global"
        assert build_group_key(["src_ip", "user"], self.event) == "src_ip:10.0.0.5|user:unknown"


# ── Window state ──────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestWindowStateStore:
    async def test_fires_at_threshold_and_resets(self):
        store = WindowStateStore(idle_seconds=600)
        for i in range(2):
            assert await store.record("k", f"e{i}", BASE_TIME + timedelta(seconds=i), 60, 3) is None
        entries = await store.record("k", "e2", BASE_TIME + timedelta(seconds=2), 60, 3)
        assert [e.event_id for e in entries] == ["e0", "e1", "e2"]
        assert store.window_size("k") == 0

    async def test_evicts_by_event_time(self):
        store = WindowStateStore(idle_seconds=600)
        await store.record("k", "old", BASE_TIME, 60, 5)
        await store.record("k", "new", BASE_TIME + timedelta(seconds=120), 60, 5)
        assert store.window_size("k") == 1

    async def test_newer_entries_survive_an_older_arrival(self):
        store = WindowStateStore(idle_seconds=600)
        for offset in (250, 200, 150, 100):
            assert await store.record("k", f"e{offset}", BASE_TIME + timedelta(seconds=offset), 300, 5) is None
        assert store.window_size("k") == 4
        entries = await store.record("k", "e0", BASE_TIME, 300, 5)
        assert [e.event_id for e in entries] == ["e250", "e200", "e150", "e100", "e0"]

    async def test_sweep_drops_idle_windows(self):
        now = [0.0]
        store = WindowStateStore(idle_seconds=600, clock=lambda: now[0])
        await store.record("a", "e1", BASE_TIME, 60, 5)
        now[0] = 300.0
        await store.record("b", "e2", BASE_TIME, 60, 5)
        now[0] = 700.0
        assert store.sweep() == 1
        assert len(store) == 1
        assert store.window_size("b") == 1


# ── Evaluator ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestThresholdRules:
    async def test_fires_once_after_fifth_event(self, evaluator, session_factory):
        await add_rule(session_factory, cooldown_seconds=0)
        fired = []
        for n, offset in enumerate([0, 60, 120, 190, 250]):
            fired.append(await evaluator.evaluate(failed_login(n, offset)))

        assert fired[:4] == [[], [], [], []]
        assert len(fired[4]) == 1
        alert = fired[4][0]
        assert alert["event_count"] == 5
        assert alert["event_ids"] == ["evt-0", "evt-1", "evt-2", "evt-3", "evt-4"]
        assert alert["group_key"] == "src_ip:203.0.113.7"
        assert alert["severity"] == 6
        assert alert["status"] == "open"
        assert alert["title"] == "Repeated Failed Logins: 5 events detected"

        # A sixth event opens a fresh window instead of firing again
        assert await evaluator.evaluate(failed_login(5, 260)) == []
        rule_id = alert["rule_id"]
        key = WindowStateStore.key(rule_id, "src_ip:203.0.113.7")
        assert evaluator.state_store.window_size(key) == 1
        assert len(await stored_alerts(session_factory)) == 1

    async def test_out_of_order_replay_does_not_fire(self, evaluator, session_factory):
        await add_rule(session_factory, threshold_count=3, cooldown_seconds=0)
        for n, offset in enumerate([800, 0, 1600, 400, 1200]):
            assert await evaluator.evaluate(failed_login(n, offset)) == []
        assert await stored_alerts(session_factory) == []

    async def test_reverse_ordered_burst_fires(self, evaluator, session_factory):
        await add_rule(session_factory, cooldown_seconds=0)
        fired = []
        for n, offset in enumerate([250, 200, 150, 100, 0]):
            fired.append(await evaluator.evaluate(failed_login(n, offset)))

        assert fired[:4] == [[], [], [], []]
        assert len(fired[4]) == 1
        assert fired[4][0]["event_count"] == 5
        assert len(await stored_alerts(session_factory)) == 1

    async def test_groups_are_counted_separately(self, evaluator, session_factory):
        await add_rule(session_factory, threshold_count=2, cooldown_seconds=0)
        assert await evaluator.evaluate(failed_login(0, 0, "198.51.100.1")) == []
        assert await evaluator.evaluate(failed_login(1, 10, "198.51.100.2")) == []
        fired = await evaluator.evaluate(failed_login(2, 20, "198.51.100.1"))
        assert len(fired) == 1
        assert fired[0]["group_key"] == "src_ip:198.51.100.1"

    async def test_non_matching_events_are_ignored(self, evaluator, session_factory):
        await add_rule(session_factory, threshold_count=1)
        event = failed_login(0, 0)
        event["event_type"] = "login_success"
        assert await evaluator.evaluate(event) == []

    async def test_other_tenants_rules_do_not_apply(self, evaluator, session_factory):
        await add_rule(session_factory, tenant_id="globex", threshold_count=1)
        assert await evaluator.evaluate(failed_login(0, 0)) == []


@pytest.mark.asyncio
class TestCooldownAndPatterns:
    async def test_cooldown_suppresses_second_alert(self, evaluator, session_factory, fake_clock):
        await add_rule(session_factory, rule_type="pattern", cooldown_seconds=300)
        assert len(await evaluator.evaluate(failed_login(0, 0))) == 1

        fake_clock.now += timedelta(seconds=100)
        assert await evaluator.evaluate(failed_login(1, 100)) == []

        fake_clock.now += timedelta(seconds=201)
        fired = await evaluator.evaluate(failed_login(2, 301))
        assert len(fired) == 1
        assert len(await stored_alerts(session_factory)) == 2

    async def test_pattern_rule_fires_per_event(self, evaluator, session_factory):
        await add_rule(session_factory, rule_type="pattern", cooldown_seconds=0, group_by=None)
        fired = await evaluator.evaluate(failed_login(0, 0))
        assert len(fired) == 1
        assert fired[0]["event_count"] == 1
        assert fired[0]["event_ids"] == ["evt-0"]
        assert fired[0]["group_key"] is None
        assert fired[0]["title"] == "Repeated Failed Logins: login_failed detected"
        assert fired[0]["context"]["src_ip"] == "203.0.113.7"

    async def test_sequence_rules_are_stored_but_not_evaluated(self, evaluator, session_factory):
        await add_rule(session_factory, rule_type="sequence", threshold_count=1)
        assert await evaluator.evaluate(failed_login(0, 0)) == []

    async def test_disabled_rules_are_skipped(self, evaluator, session_factory):
        await add_rule(session_factory, rule_type="pattern", enabled=False)
        assert await evaluator.evaluate(failed_login(0, 0)) == []

    async def test_broken_rule_does_not_stop_others(self, evaluator, session_factory):
        await add_rule(session_factory, name="Broken", rule_type="pattern",
                       conditions={"field": "event_type", "operator": "regex", "value": "(["})
        await add_rule(session_factory, name="Working", rule_type="pattern")
        fired = await evaluator.evaluate(failed_login(0, 0))
        assert [a["rule_name"] for a in fired] == ["Working"]


@pytest.mark.asyncio
class TestNotification:
    async def test_notifies_and_marks_alert(self, evaluator, session_factory, recording_notifier):
        await add_rule(
            session_factory, rule_type="pattern", notify_discord=True,
            discord_webhook_url="https://discord.example/webhook",
        )
        fired = await evaluator.evaluate(failed_login(0, 0))
        assert len(recording_notifier.sent) == 1
        url, payload = recording_notifier.sent[0]
        assert url == "https://discord.example/webhook"
        assert payload["id"] == fired[0]["id"]
        assert fired[0]["notified"] is True

        alerts = await stored_alerts(session_factory)
        assert alerts[0].notified is True
        assert alerts[0].notified_at is not None

    async def test_failed_notification_leaves_alert_unnotified(
        self, evaluator, session_factory, recording_notifier
    ):
        recording_notifier.result = False
        await add_rule(
            session_factory, rule_type="pattern", notify_discord=True,
            discord_webhook_url="https://discord.example/webhook",
        )
        fired = await evaluator.evaluate(failed_login(0, 0))
        assert fired[0]["notified"] is False
        alerts = await stored_alerts(session_factory)
        assert alerts[0].notified is False

    async def test_no_webhook_no_notification(self, evaluator, session_factory, recording_notifier):
        await add_rule(session_factory, rule_type="pattern", notify_discord=True)
        await evaluator.evaluate(failed_login(0, 0))
        assert recording_notifier.sent == []


@pytest.mark.asyncio
async def test_default_rules_are_created_once(session_factory):
    async with session_factory() as session:
        created = await create_default_rules(session, "acme", "https://discord.example/hook")
        await session.commit()
        assert [r.name for r in created] == ["Repeated Failed Logins"]
        assert created[0].notify_discord is True

        again = await create_default_rules(session, "acme")
        assert again == []
