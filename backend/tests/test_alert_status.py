"""Tests for forward-only alert status transitions."""

import pytest
from sqlalchemy.exc import InvalidRequestError

from logward.db.repositories.alerts import (
    AlertRepository,
    AlertRuleRepository,
    InvalidStatusTransition,
    can_transition,
)


@pytest.mark.parametrize("current,requested,allowed", [
    ("open", "acknowledged", True),
    ("open", "resolved", True),
    ("open", "closed", True),
    ("acknowledged", "resolved", True),
    ("acknowledged", "open", False),
    ("resolved", "closed", True),
    ("resolved", "acknowledged", False),
    ("closed", "open", False),
    ("closed", "closed", False),
    ("open", "open", False),
    ("open", "snoozed", False),
])
def test_can_transition(current, requested, allowed):
    assert can_transition(current, requested) is allowed


@pytest.mark.asyncio
async def test_lifecycle_stamps_resolution_once(db_session):
    rule = await AlertRuleRepository(db_session).create_rule(
        "acme", name="r", conditions={"field": "severity", "operator": "gte", "value": 5}
    )
    repo = AlertRepository(db_session)
    alert = await repo.create_alert(
        tenant_id="acme", rule_id=rule.id, rule_name=rule.name, title="t"
    )
    assert alert.status == "open"

    await repo.update_status(alert, "acknowledged")
    assert alert.resolved_at is None

    await repo.update_status(alert, "resolved", resolved_by="analyst", notes="false positive")
    resolved_at = alert.resolved_at
    assert resolved_at is not None
    assert alert.resolved_by == "analyst"
    assert alert.resolution_notes == "false positive"

    await repo.update_status(alert, "closed")
    assert alert.resolved_at == resolved_at
    assert alert.resolved_by == "analyst"

    with pytest.raises(InvalidStatusTransition) as exc:
        await repo.update_status(alert, "open")
    assert exc.value.current == "closed"
    assert exc.value.requested == "open"


@pytest.mark.asyncio
async def test_deleting_rule_removes_its_alerts(db_session):
    rules = AlertRuleRepository(db_session)
    rule = await rules.create_rule("acme", name="r", conditions={"field": "x", "operator": "exists"})
    alerts = AlertRepository(db_session)
    await alerts.create_alert(tenant_id="acme", rule_id=rule.id, rule_name="r", title="t")

    assert await rules.delete_rule("globex", rule.id) is False
    assert await rules.delete_rule("acme", rule.id) is True
    assert await alerts.count_alerts("acme") == 0


@pytest.mark.asyncio
async def test_rule_alerts_are_never_loaded_implicitly(session_factory):
    async with session_factory() as session:
        rule = await AlertRuleRepository(session).create_rule(
            "acme", name="r", conditions={"field": "x", "operator": "exists"}
        )
        await AlertRepository(session).create_alert(
            tenant_id="acme", rule_id=rule.id, rule_name="r", title="t"
        )
        await session.commit()
        rule_id = rule.id

    async with session_factory() as session:
        rules = AlertRuleRepository(session)
        loaded = await rules.get_rule("acme", rule_id)
        with pytest.raises(InvalidRequestError):
            loaded.alerts
        assert await rules.delete_rule("acme", rule_id) is True
        await session.commit()
        assert await AlertRepository(session).count_alerts("acme") == 0
