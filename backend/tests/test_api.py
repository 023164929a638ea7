"""Tests for API endpoints — ingest, events, alerts, retention."""

import io
import json

import pytest

from logward.db.repositories.alerts import AlertRepository, AlertRuleRepository

FIREWALL_LINE = (
    "<134>Aug 20 12:44:56 fw01 vendor=demo product=ngfw action=deny "
    "src=10.0.1.10 dst=8.8.8.8 spt=5353 dpt=53 proto=udp"
)

RULE_BODY = {
    "name": "Repeated Failed Logins",
    "rule_type": "threshold",
    "conditions": {"field": "event_type", "operator": "contains", "value": "fail"},
    "threshold_count": 5,
    "threshold_window_seconds": 300,
    "group_by": ["src_ip"],
}


@pytest.mark.asyncio
class TestHealthEndpoints:
    async def test_root(self, client):
        resp = await client.get("/")
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"] == "Logward API"
        assert data["status"] == "running"

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    async def test_openapi_paths(self, client):
        paths = (await client.get("/openapi.json")).json()["paths"]
        for path in (
            "/api/ingest/event", "/api/ingest/batch", "/api/ingest/syslog", "/api/ingest/file",
            "/api/events", "/api/events/{event_id}", "/api/events/sources", "/api/events/stats",
            "/api/alerts", "/api/alerts/{alert_id}/status", "/api/alerts/rules",
            "/api/alerts/rules/{rule_id}",
            "/api/alerts/rules/defaults", "/api/retention/policy", "/api/retention/cleanup",
        ):
            assert path in paths


@pytest.mark.asyncio
class TestIngestEndpoints:
    async def test_single_event(self, client, recording_queue):
        resp = await client.post("/api/ingest/event", json={
            "source": "edr", "event_type": "malware_detected", "host": "ws-01",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["accepted"] == 1
        assert data["source"] == "edr"
        assert len(recording_queue.events) == 1

    async def test_tenant_from_payload(self, client):
        resp = await client.post(
            "/api/ingest/event",
            json={"event_type": "login", "tenant_id": "globex"},
            headers={"X-Tenant-ID": ""},
        )
        assert resp.status_code == 200
        events = await client.get("/api/events", headers={"X-Tenant-ID": "globex"})
        assert events.json()["total"] == 1

    async def test_missing_tenant(self, client, recording_queue):
        resp = await client.post(
            "/api/ingest/event", json={"event_type": "login"}, headers={"X-Tenant-ID": ""}
        )
        assert resp.status_code == 400
        assert recording_queue.events == []

    async def test_batch(self, client):
        resp = await client.post("/api/ingest/batch", json=[
            {"event_type": "login_failed", "ip": "203.0.113.7"},
            {"source": "ad", "event_id": 4740, "user": "bob"},
        ])
        assert resp.status_code == 200
        assert resp.json() == {"accepted": 2}

    async def test_batch_wrapped_in_object(self, client):
        resp = await client.post("/api/ingest/batch", json={"events": [{"event_type": "x"}]})
        assert resp.status_code == 200
        assert resp.json()["accepted"] == 1

    async def test_batch_too_large(self, client, ingest_service):
        events = [{"event_type": "x"}] * (ingest_service.max_batch + 1)
        resp = await client.post("/api/ingest/batch", json=events)
        assert resp.status_code == 400

    async def test_batch_must_be_a_list_of_objects(self, client):
        assert (await client.post("/api/ingest/batch", json=[])).status_code == 400
        assert (await client.post("/api/ingest/batch", json=["line"])).status_code == 400

    async def test_syslog(self, client):
        body = FIREWALL_LINE + "\n\nsw01 event=link-down if=Gi0/1\n"
        resp = await client.post(
            "/api/ingest/syslog", content=body, headers={"Content-Type": "text/plain"}
        )
        assert resp.status_code == 200
        assert resp.json() == {"accepted": 2}

        events = (await client.get("/api/events", params={"source": "firewall"})).json()
        assert events["total"] == 1
        assert events["events"][0]["host"] == "fw01"
        assert events["events"][0]["dst_port"] == 53

    async def test_syslog_requires_tenant_header(self, client):
        resp = await client.post(
            "/api/ingest/syslog", content=FIREWALL_LINE, headers={"X-Tenant-ID": ""}
        )
        assert resp.status_code == 400

    async def test_file_json_array(self, client, recording_queue):
        body = json.dumps([
            {"source": "edr", "event_type": "process_start", "host": "ws-01"},
            {"source": "cloud", "event_type": "ConsoleLogin"},
        ]).encode()
        files = {"file": ("events.json", io.BytesIO(body), "application/json")}
        resp = await client.post("/api/ingest/file", files=files)
        assert resp.status_code == 200
        assert resp.json() == {"accepted": 2, "filename": "events.json"}
        assert len(recording_queue.events) == 2

    async def test_file_ndjson_with_syslog_lines(self, client):
        body = "\n".join([
            json.dumps({"source": "edr", "event_type": "process_start"}),
            "",
            FIREWALL_LINE,
        ]).encode()
        files = {"file": ("mixed.log", io.BytesIO(body), "text/plain")}
        resp = await client.post("/api/ingest/file", files=files)
        assert resp.json()["accepted"] == 2

        sources = (await client.get("/api/events/sources")).json()["sources"]
        assert sources == ["edr", "firewall"]

    async def test_file_rejections(self, client, ingest_service):
        empty = {"file": ("empty.log", io.BytesIO(b"  \n"), "text/plain")}
        assert (await client.post("/api/ingest/file", files=empty)).status_code == 400

        not_objects = {"file": ("bad.json", io.BytesIO(b"[1, 2]"), "application/json")}
        assert (await client.post("/api/ingest/file", files=not_objects)).status_code == 400

        lines = "\n".join([FIREWALL_LINE] * (ingest_service.max_batch + 1)).encode()
        too_many = {"file": ("big.log", io.BytesIO(lines), "text/plain")}
        assert (await client.post("/api/ingest/file", files=too_many)).status_code == 400

        no_tenant = {"file": ("fw.log", io.BytesIO(FIREWALL_LINE.encode()), "text/plain")}
        resp = await client.post("/api/ingest/file", files=no_tenant, headers={"X-Tenant-ID": ""})
        assert resp.status_code == 400


@pytest.mark.asyncio
class TestEventEndpoints:
    async def test_query_filters(self, client):
        await client.post("/api/ingest/batch", json=[
            {"source": "edr", "event_type": "malware_detected", "severity": 8},
            {"source": "edr", "event_type": "process_start", "severity": 2},
            {"event_type": "login_failed", "user": "alice"},
        ])

        resp = await client.get("/api/events", params={"severity_min": 7})
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["events"][0]["event_type"] == "malware_detected"
        assert "malware" in data["events"][0]["_tags"]

        by_tag = (await client.get("/api/events", params={"tag": "auth-failure"})).json()
        assert [e["user"] for e in by_tag["events"]] == ["alice"]

        page = (await client.get("/api/events", params={"limit": 2})).json()
        assert page["total"] == 3
        assert len(page["events"]) == 2

    async def test_sources(self, client):
        await client.post("/api/ingest/batch", json=[
            {"source": "edr", "event_type": "a"}, {"source": "cloud", "event_type": "b"},
        ])
        resp = await client.get("/api/events/sources")
        assert resp.json() == {"sources": ["cloud", "edr"]}

    async def test_get_event_and_tenant_isolation(self, client):
        created = (await client.post("/api/ingest/event", json={"event_type": "x"})).json()
        resp = await client.get(f"/api/events/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["tenant_id"] == "acme"

        other = await client.get(f"/api/events/{created['id']}", headers={"X-Tenant-ID": "globex"})
        assert other.status_code == 404

    async def test_unknown_event(self, client):
        assert (await client.get("/api/events/doesnotexist")).status_code == 404

    async def test_tenant_header_required(self, client):
        resp = await client.get("/api/events", headers={"X-Tenant-ID": ""})
        assert resp.status_code == 400

    async def test_stats(self, client):
        await client.post("/api/ingest/batch", json=[
            {"source": "edr", "event_type": "process_start", "action": "quarantine",
             "event_time": "2025-01-02T00:00:00Z"},
            {"source": "edr", "event_type": "process_start", "action": "alert",
             "event_time": "2025-01-10T00:00:00Z"},
            {"source": "cloud", "event_type": "ConsoleLogin",
             "event_time": "2025-01-12T00:00:00Z"},
        ])
        await client.post("/api/ingest/event", json={"source": "edr", "event_type": "x"},
                          headers={"X-Tenant-ID": "globex"})

        stats = (await client.get("/api/events/stats")).json()
        assert stats["total"] == 3
        assert stats["by_source"] == {"edr": 2, "cloud": 1}
        assert sum(stats["by_severity"].values()) == 3
        assert stats["by_action"]["deny"] == 1
        assert stats["by_action"]["alert"] == 1

        ranged = (await client.get("/api/events/stats", params={
            "start": "2025-01-05T00:00:00Z", "end": "2025-01-11T00:00:00Z",
        })).json()
        assert ranged["total"] == 1
        assert ranged["by_action"] == {"alert": 1}

    async def test_delete_event(self, client):
        created = (await client.post("/api/ingest/event", json={"event_type": "x"})).json()
        other = await client.delete(f"/api/events/{created['id']}", headers={"X-Tenant-ID": "globex"})
        assert other.status_code == 404

        assert (await client.delete(f"/api/events/{created['id']}")).json() == {"ok": True}
        assert (await client.get(f"/api/events/{created['id']}")).status_code == 404
        assert (await client.delete(f"/api/events/{created['id']}")).status_code == 404

    async def test_bulk_delete(self, client):
        await client.post("/api/ingest/batch", json=[
            {"source": "edr", "event_type": "old", "event_time": "2025-01-01T00:00:00Z"},
            {"source": "cloud", "event_type": "old", "event_time": "2025-01-01T00:00:00Z"},
            {"source": "edr", "event_type": "new", "event_time": "2025-02-01T00:00:00Z"},
        ])
        await client.post("/api/ingest/event", json={
            "source": "edr", "event_type": "old", "event_time": "2025-01-01T00:00:00Z",
        }, headers={"X-Tenant-ID": "globex"})

        assert (await client.delete("/api/events")).status_code == 400

        resp = await client.delete("/api/events", params={
            "before": "2025-01-15T00:00:00Z", "source": "edr",
        })
        assert resp.json() == {"deleted": 1}
        resp = await client.delete("/api/events", params={"before": "2025-01-15T00:00:00Z"})
        assert resp.json() == {"deleted": 1}

        remaining = (await client.get("/api/events")).json()
        assert [e["event_type"] for e in remaining["events"]] == ["new"]
        globex = (await client.get("/api/events", headers={"X-Tenant-ID": "globex"})).json()
        assert globex["total"] == 1


@pytest.mark.asyncio
class TestAlertRuleEndpoints:
    async def test_create_and_list(self, client):
        resp = await client.post("/api/alerts/rules", json=RULE_BODY)
        assert resp.status_code == 201
        rule = resp.json()
        assert rule["tenant_id"] == "acme"
        assert rule["cooldown_seconds"] == 300

        rules = (await client.get("/api/alerts/rules")).json()["rules"]
        assert [r["id"] for r in rules] == [rule["id"]]
        other = (await client.get("/api/alerts/rules", headers={"X-Tenant-ID": "globex"})).json()
        assert other["rules"] == []

    @pytest.mark.parametrize("override", [
        {"threshold_window_seconds": 30},
        {"cooldown_seconds": -1},
        {"alert_severity": 11},
        {"rule_type": "anomaly"},
        {"threshold_count": 0},
    ])
    async def test_validation(self, client, override):
        resp = await client.post("/api/alerts/rules", json={**RULE_BODY, **override})
        assert resp.status_code == 422

    async def test_get_rule(self, client):
        rule = (await client.post("/api/alerts/rules", json=RULE_BODY)).json()
        resp = await client.get(f"/api/alerts/rules/{rule['id']}")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Repeated Failed Logins"
        assert resp.json()["group_by"] == ["src_ip"]

        other = await client.get(f"/api/alerts/rules/{rule['id']}", headers={"X-Tenant-ID": "globex"})
        assert other.status_code == 404
        assert (await client.get("/api/alerts/rules/nope")).status_code == 404

    async def test_update_and_delete(self, client):
        rule = (await client.post("/api/alerts/rules", json=RULE_BODY)).json()
        resp = await client.put(f"/api/alerts/rules/{rule['id']}", json={"enabled": False})
        assert resp.status_code == 200
        assert resp.json()["enabled"] is False
        assert resp.json()["threshold_count"] == 5

        assert (await client.delete(f"/api/alerts/rules/{rule['id']}")).status_code == 200
        assert (await client.delete(f"/api/alerts/rules/{rule['id']}")).status_code == 404
        missing = await client.put("/api/alerts/rules/nope", json={"enabled": True})
        assert missing.status_code == 404

    async def test_defaults(self, client):
        resp = await client.post("/api/alerts/rules/defaults", json={})
        assert resp.status_code == 200
        assert resp.json()["created"] == 1
        again = await client.post("/api/alerts/rules/defaults")
        assert again.json()["created"] == 0


@pytest.mark.asyncio
class TestAlertEndpoints:
    async def _seed_alert(self, session_factory, tenant_id="acme") -> str:
        async with session_factory() as session:
            rule = await AlertRuleRepository(session).create_rule(
                tenant_id, name="r", conditions={"field": "x", "operator": "exists"}
            )
            alert = await AlertRepository(session).create_alert(
                tenant_id=tenant_id, rule_id=rule.id, rule_name="r", title="Something", severity=7
            )
            await session.commit()
            return alert.id

    async def test_list_and_get(self, client, session_factory):
        alert_id = await self._seed_alert(session_factory)
        data = (await client.get("/api/alerts")).json()
        assert data["total"] == 1
        assert data["alerts"][0]["id"] == alert_id

        assert (await client.get("/api/alerts", params={"severity_min": 8})).json()["total"] == 0
        assert (await client.get(f"/api/alerts/{alert_id}")).json()["title"] == "Something"
        assert (await client.get("/api/alerts/nope")).status_code == 404

    async def test_status_transitions(self, client, session_factory):
        alert_id = await self._seed_alert(session_factory)
        url = f"/api/alerts/{alert_id}/status"

        resp = await client.put(url, json={"status": "acknowledged"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "acknowledged"

        resp = await client.put(url, json={"status": "resolved", "resolved_by": "analyst"})
        assert resp.json()["resolved_by"] == "analyst"
        assert resp.json()["resolved_at"] is not None

        assert (await client.put(url, json={"status": "open"})).status_code == 409
        assert (await client.put(url, json={"status": "snoozed"})).status_code == 422
        assert (await client.get("/api/alerts", params={"status": "resolved"})).json()["total"] == 1

    async def test_other_tenant_cannot_update(self, client, session_factory):
        alert_id = await self._seed_alert(session_factory, tenant_id="globex")
        resp = await client.put(f"/api/alerts/{alert_id}/status", json={"status": "closed"})
        assert resp.status_code == 404


@pytest.mark.asyncio
class TestRetentionEndpoints:
    async def test_default_policy(self, client):
        data = (await client.get("/api/retention/policy")).json()
        assert data["is_default"] is True
        assert data["retention_days"] == 30

    async def test_put_clamps_to_floor(self, client):
        resp = await client.put("/api/retention/policy", json={
            "retention_days": 3,
            "source_overrides": {"firewall": 1},
            "severity_overrides": {"9": 365},
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["retention_days"] == 7
        assert data["source_overrides"] == {"firewall": 7}
        assert data["severity_overrides"] == {"9": 365}

        current = (await client.get("/api/retention/policy")).json()
        assert current["is_default"] is False

        updated = (await client.put("/api/retention/policy", json={"enabled": False})).json()
        assert updated["enabled"] is False
        assert updated["retention_days"] == 7

    async def test_delete_policy(self, client):
        assert (await client.delete("/api/retention/policy")).status_code == 404
        await client.put("/api/retention/policy", json={"retention_days": 14})
        assert (await client.delete("/api/retention/policy")).status_code == 200
        assert (await client.get("/api/retention/policy")).json()["is_default"] is True

    async def test_manual_cleanup(self, client):
        await client.post("/api/ingest/batch", json=[
            {"event_type": "old", "timestamp": "2024-01-01T00:00:00Z"},
            {"event_type": "recent", "timestamp": "2025-01-14T00:00:00Z"},
        ])
        resp = await client.post("/api/retention/cleanup")
        assert resp.status_code == 200
        assert resp.json() == {"deleted": 1}
        remaining = (await client.get("/api/events")).json()
        assert [e["event_type"] for e in remaining["events"]] == ["recent"]

    async def test_stats(self, client):
        await client.post("/api/ingest/event", json={"event_type": "x"})
        resp = await client.get("/api/retention/stats")
        assert resp.status_code == 200
        assert resp.json()["min_retention_days"] == 7
