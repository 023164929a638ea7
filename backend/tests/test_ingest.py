"""Tests for the ingestion service — normalize, enrich, persist, queue."""

import pytest

from logward.db.repositories.events import EventFilter, EventRepository
from logward.services.enrichment import EnrichmentPipeline
from logward.services.evaluation_queue import EvaluationQueue
from logward.services.ingest import (
    BatchTooLargeError,
    IngestService,
    TenantRequiredError,
    parse_upload,
    resolve_tenant,
)

FIREWALL_LINE = (
    "<134>Aug 20 12:44:56 fw01 vendor=demo product=ngfw action=deny "
    "src=10.0.1.10 dst=8.8.8.8 spt=5353 dpt=53 proto=udp"
)


def test_resolve_tenant():
    assert resolve_tenant({"tenant_id": "globex"}, "acme") == "acme"
    assert resolve_tenant({"tenant_id": " globex "}, None) == "globex"
    assert resolve_tenant({"tenant": "initech"}, "") == "initech"
    with pytest.raises(TenantRequiredError):
        resolve_tenant({"event_type": "x"}, None)
    with pytest.raises(TenantRequiredError):
        resolve_tenant("a syslog line", None)


class TestParseUpload:
    def test_json_array(self):
        assert parse_upload(' [{"a": 1}, {"b": 2}]\n') == [{"a": 1}, {"b": 2}]

    @pytest.mark.parametrize("body", ["[1, 2]", '[{"a": 1}', '[{"a": 1}, "line"]'])
    def test_bad_json_array(self, body):
        with pytest.raises(ValueError):
            parse_upload(body)

    def test_ndjson_and_raw_lines(self):
        body = '{"event_type": "x"}\n\n  {not json}\n' + FIREWALL_LINE + '\n["array"]\n'
        assert parse_upload(body) == [
            {"event_type": "x"},
            "{not json}",
            FIREWALL_LINE,
            '["array"]',
        ]

    def test_blank_file(self):
        assert parse_upload("\n \n") == []


@pytest.mark.asyncio
class TestIngestService:
    async def test_single_event_is_stored_and_queued(self, db_session, ingest_service, recording_queue):
        row = await ingest_service.ingest_event(
            db_session, {"source": "ad", "event_id": 4624, "logon_type": 10, "user": "bob"}, "acme"
        )
        assert row.id
        assert row.tenant_id == "acme"
        assert row.source == "directory"
        assert "rdp" in row.tags

        stored = await EventRepository(db_session).get_event("acme", row.id)
        assert stored is not None
        assert [e["id"] for e in recording_queue.events] == [row.id]
        assert recording_queue.events[0]["_tags"] == row.tags

    async def test_missing_tenant_is_rejected_before_storage(self, db_session, ingest_service, recording_queue):
        with pytest.raises(TenantRequiredError):
            await ingest_service.ingest_event(db_session, {"event_type": "login"}, None)
        assert await EventRepository(db_session).count_events("acme") == 0
        assert recording_queue.events == []

    async def test_batch_keeps_order(self, db_session, ingest_service, recording_queue):
        payloads = [{"event_type": f"step_{i}"} for i in range(5)]
        rows = await ingest_service.ingest_batch(db_session, payloads, "acme")
        assert [r.event_type for r in rows] == [f"step_{i}" for i in range(5)]
        assert [e["id"] for e in recording_queue.events] == [r.id for r in rows]

    async def test_batch_limit(self, db_session, recording_queue):
        service = IngestService(
            pipeline=EnrichmentPipeline(enabled=False), queue=recording_queue, max_batch=2
        )
        with pytest.raises(BatchTooLargeError):
            await service.ingest_batch(db_session, [{}, {}, {}], "acme")
        assert recording_queue.events == []

    async def test_syslog_lines(self, db_session, ingest_service):
        rows = await ingest_service.ingest_syslog(
            db_session, [FIREWALL_LINE, "", "sw01 event=link-down if=Gi0/1"], "acme",
            peer_address="192.0.2.10",
        )
        assert [r.source for r in rows] == ["firewall", "network"]
        assert rows[0].src_ip == "10.0.1.10"
        assert rows[1].src_ip == "192.0.2.10"
        assert rows[0].raw == FIREWALL_LINE

    async def test_syslog_requires_tenant(self, db_session, ingest_service):
        with pytest.raises(TenantRequiredError):
            await ingest_service.ingest_syslog(db_session, [FIREWALL_LINE], None)

    async def test_enrichment_runs_before_storage(self, db_session, recording_queue, fake_dns):
        fake_dns.answers = {"8.8.8.8": "dns.google"}
        service = IngestService(
            pipeline=EnrichmentPipeline(
                dns_provider=fake_dns, enabled=True, dns_enabled=True, geoip_enabled=False
            ),
            queue=recording_queue,
        )
        row = await service.ingest_event(db_session, FIREWALL_LINE, "acme")
        assert row.dst_hostname == "dns.google"
        assert row.src_hostname is None
        assert fake_dns.calls == ["8.8.8.8"]

    async def test_stored_events_are_queryable_by_tag(self, db_session, ingest_service):
        await ingest_service.ingest_batch(db_session, [
            {"source": "edr", "event_type": "malware_detected"},
            {"source": "edr", "event_type": "process_start"},
        ], "acme")
        repo = EventRepository(db_session)
        malware = await repo.list_events("acme", EventFilter(tag="malware"))
        assert [e.event_type for e in malware] == ["malware_detected"]
        assert await repo.count_events("acme", EventFilter(source="edr")) == 2
        assert await repo.count_events("globex") == 0


@pytest.mark.asyncio
async def test_full_evaluation_backlog_is_reported(db_session, caplog):
    queue = EvaluationQueue(workers=1, max_backlog=1, put_timeout=0.05)
    service = IngestService(pipeline=EnrichmentPipeline(enabled=False), queue=queue)

    with caplog.at_level("ERROR"):
        rows = await service.ingest_batch(db_session, [{"event_type": f"e{i}"} for i in range(3)], "acme")

    assert len(rows) == 3
    assert await EventRepository(db_session).count_events("acme") == 3
    assert queue.get_stats()["dropped"] == 2
    assert "2 of 3 stored events for tenant acme were not queued" in caplog.text
