"""Ingestion service — normalize, enrich, persist, then queue for evaluation.

The tenant is a hard boundary: it comes from the caller (``X-Tenant-ID``) or
from the payload's ``tenant_id``/``tenant`` field, and a payload without one
is rejected before any normalization happens. Everything after that is
best-effort: malformed payloads are still stored with whatever could be
parsed.
"""

import json
import logging
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncSession

from logward.config import settings
from logward.db.models import Event
from logward.db.repositories.events import EventRepository, event_to_dict
from logward.services.enrichment import EnrichmentPipeline, enrichment_pipeline
from logward.services.evaluation_queue import EvaluationQueue, evaluation_queue
from logward.services.normalizers import CanonicalEvent, normalize

logger = logging.getLogger(__name__)

Payload = Union[str, Mapping[str, Any]]


class TenantRequiredError(ValueError):
    def __init__(self):
        super().__init__("tenant_id is required")


class BatchTooLargeError(ValueError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Batch of {size} events exceeds the limit of {limit}")
        self.size = size
        self.limit = limit


def parse_upload(text: str) -> list[Payload]:
    """Split an uploaded log file into payloads.

    A file starting with ``[`` must be a JSON array of objects. Anything else
    is read line by line: lines holding a JSON object become records (NDJSON),
    every other non-blank line is kept as raw text for the syslog path.
    """
    stripped = text.strip()
    if stripped.startswith("["):
        try:
            decoded = json.loads(stripped)
        except ValueError as e:
            raise ValueError(f"Invalid JSON array: {e}") from e
        if not isinstance(decoded, list) or not all(isinstance(e, dict) for e in decoded):
            raise ValueError("JSON array must contain only objects")
        return decoded

    payloads: list[Payload] = []
    for line in stripped.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("{"):
            try:
                decoded = json.loads(line)
            except ValueError:
                decoded = None
            if isinstance(decoded, dict):
                payloads.append(decoded)
                continue
        payloads.append(line)
    return payloads


def resolve_tenant(payload: Payload, tenant_id: Optional[str]) -> str:
    if tenant_id and str(tenant_id).strip():
        return str(tenant_id).strip()
    if isinstance(payload, Mapping):
        for key in ("tenant_id", "tenant"):
            value = payload.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
    raise TenantRequiredError()


class IngestService:
    def __init__(
        self,
        pipeline: EnrichmentPipeline | None = None,
        queue: EvaluationQueue | None = None,
        max_batch: int | None = None,
    ):
        self.pipeline = pipeline or enrichment_pipeline
        self.queue = queue or evaluation_queue
        self.max_batch = settings.INGEST_MAX_BATCH if max_batch is None else max_batch

    def normalize_payload(self, payload: Payload, tenant_id: Optional[str]) -> CanonicalEvent:
        tenant = resolve_tenant(payload, tenant_id)
        event = normalize(payload, tenant)
        if not event.tenant_id:
            event.tenant_id = tenant
        return event

    async def ingest_event(
        self, session: AsyncSession, payload: Payload, tenant_id: Optional[str] = None
    ) -> Event:
        event = self.normalize_payload(payload, tenant_id)
        event = await self.pipeline.enrich(event)
        row = await EventRepository(session).create_event(event)
        await session.commit()
        await self._enqueue([row])
        logger.debug(f"Ingested event {row.id} for tenant {row.tenant_id}")
        return row

    async def ingest_batch(
        self,
        session: AsyncSession,
        payloads: Sequence[Payload],
        tenant_id: Optional[str] = None,
    ) -> list[Event]:
        if len(payloads) > self.max_batch:
            raise BatchTooLargeError(len(payloads), self.max_batch)
        events = [self.normalize_payload(p, tenant_id) for p in payloads]
        if not events:
            return []
        events = await self.pipeline.enrich_batch(events)
        rows = await EventRepository(session).bulk_create(events)
        await session.commit()
        await self._enqueue(rows)
        logger.info(f"Ingested {len(rows)} events for tenant {tenant_id or rows[0].tenant_id}")
        return rows

    async def ingest_syslog(
        self,
        session: AsyncSession,
        lines: Iterable[str],
        tenant_id: Optional[str],
        peer_address: Optional[str] = None,
    ) -> list[Event]:
        """Ingest raw syslog lines; the sender's address fills a missing src_ip."""
        if not tenant_id or not str(tenant_id).strip():
            raise TenantRequiredError()
        messages = [line.strip() for line in lines if line and line.strip()]
        if len(messages) > self.max_batch:
            raise BatchTooLargeError(len(messages), self.max_batch)

        events = []
        for message in messages:
            event = self.normalize_payload(message, tenant_id)
            if peer_address and not event.src_ip:
                event.src_ip = peer_address
            events.append(event)
        if not events:
            return []
        events = await self.pipeline.enrich_batch(events)
        rows = await EventRepository(session).bulk_create(events)
        await session.commit()
        await self._enqueue(rows)
        logger.info(f"Ingested {len(rows)} syslog lines for tenant {tenant_id}")
        return rows

    async def _enqueue(self, rows: list[Event]) -> int:
        """Hand stored rows to the evaluation queue; returns how many were dropped."""
        dropped = 0
        for row in rows:
            # After one timed-out wait the rest of the batch does not wait again
            timeout = 0 if dropped else None
            if not await self.queue.put(event_to_dict(row), timeout=timeout):
                dropped += 1
        if dropped:
            logger.error(
                f"{dropped} of {len(rows)} stored events for tenant {rows[0].tenant_id} "
                f"were not queued for alert evaluation"
            )
        return dropped


# Singleton
ingest_service = IngestService()
