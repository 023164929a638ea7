"""Event enrichment pipeline — reverse DNS and GeoIP for public addresses.

Enrichment is strictly additive: a stage only fills fields that are still
empty, and any lookup failure simply leaves the field unset. Private,
loopback and link-local addresses never reach a provider.
"""

import asyncio
import ipaddress
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import dns.asyncresolver
import dns.exception
import geoip2.database
import geoip2.errors

from logward.config import settings
from logward.services.normalizers.base import CanonicalEvent, dedupe_tags

logger = logging.getLogger(__name__)

NON_ROUTABLE_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
]


def is_public_ip(value: Optional[str]) -> bool:
    """True only for addresses worth an external lookup."""
    if not value:
        return False
    try:
        addr = ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    if addr.version == 4:
        return not any(addr in net for net in NON_ROUTABLE_NETWORKS)
    return addr.is_global


# ── Providers ─────────────────────────────────────────────────────────


class ReverseDnsProvider:
    """PTR lookups through dnspython's async resolver, with a TTL cache.

    Misses and timeouts are cached too, so a dead resolver costs at most one
    timeout per address per TTL. The cache is ordered by lookup time: expired
    entries are pruned from the front on every insert, and the oldest entries
    go first once ``max_entries`` is reached.
    """

    name = "dns"

    def __init__(
        self,
        timeout: float | None = None,
        cache_ttl: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = settings.DNS_TIMEOUT_SECONDS if timeout is None else timeout
        self.cache_ttl = settings.DNS_CACHE_TTL_SECONDS if cache_ttl is None else cache_ttl
        self.max_entries = settings.DNS_CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self._clock = clock
        self._cache: OrderedDict[str, tuple[Optional[str], float]] = OrderedDict()

    @property
    def is_available(self) -> bool:
        return True

    async def resolve(self, ip: str) -> Optional[str]:
        now = self._clock()
        cached = self._cache.get(ip)
        if cached is not None:
            if now - cached[1] < self.cache_ttl:
                return cached[0]
            del self._cache[ip]

        hostname: Optional[str] = None
        try:
            hostname = await asyncio.wait_for(self._lookup(ip), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.debug(f"PTR lookup for {ip} timed out after {self.timeout}s")
        except (dns.exception.DNSException, ValueError) as e:
            logger.debug(f"PTR lookup for {ip} failed: {e}")

        self._store(ip, hostname, now)
        return hostname

    def _store(self, ip: str, hostname: Optional[str], now: float) -> None:
        self._cache.pop(ip, None)
        self._cache[ip] = (hostname, now)
        while self._cache:
            oldest = next(iter(self._cache))
            if now - self._cache[oldest][1] < self.cache_ttl:
                break
            del self._cache[oldest]
        while len(self._cache) > max(1, self.max_entries):
            self._cache.popitem(last=False)

    async def _lookup(self, ip: str) -> Optional[str]:
        answer = await dns.asyncresolver.resolve_address(ip, lifetime=self.timeout)
        for record in answer:
            return str(record).rstrip(".")
        return None

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)


@dataclass
class GeoLocation:
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None


class GeoIPProvider:
    """Lookups against a local MaxMind City database via ``geoip2``."""

    name = "geoip"

    def __init__(self, database_path: str | None = None):
        self.database_path = database_path or settings.GEOIP_DATABASE_PATH
        self._reader: Optional[geoip2.database.Reader] = None
        self._load_failed = False

    @property
    def is_available(self) -> bool:
        return self._get_reader() is not None

    def _get_reader(self) -> Optional[geoip2.database.Reader]:
        if self._reader is not None or self._load_failed:
            return self._reader
        if not Path(self.database_path).exists():
            logger.warning(f"GeoIP database not found: {self.database_path}; GeoIP disabled")
            self._load_failed = True
            return None
        try:
            self._reader = geoip2.database.Reader(self.database_path)
            logger.info(f"GeoIP database loaded from {self.database_path}")
        except Exception as e:
            logger.error(f"Failed to open GeoIP database: {e}")
            self._load_failed = True
        return self._reader

    async def lookup(self, ip: str) -> Optional[GeoLocation]:
        reader = self._get_reader()
        if reader is None:
            return None
        try:
            response = reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None
        subdivision = response.subdivisions.most_specific
        return GeoLocation(
            country=response.country.iso_code,
            region=subdivision.iso_code if subdivision else None,
            city=response.city.name,
            latitude=response.location.latitude,
            longitude=response.location.longitude,
            timezone=response.location.time_zone,
        )

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None


# ── Stages ────────────────────────────────────────────────────────────


class EnrichmentStage:
    """Base class for pipeline stages."""

    name: str = "base"

    @property
    def is_available(self) -> bool:
        return True

    async def apply(self, event: CanonicalEvent) -> None:
        raise NotImplementedError


class ReverseDnsStage(EnrichmentStage):
    name = "dns"

    def __init__(self, provider: ReverseDnsProvider):
        self.provider = provider

    @property
    def is_available(self) -> bool:
        return self.provider.is_available

    async def apply(self, event: CanonicalEvent) -> None:
        await asyncio.gather(
            self._resolve_into(event, "src_ip", "src_hostname"),
            self._resolve_into(event, "dst_ip", "dst_hostname"),
        )

    async def _resolve_into(self, event: CanonicalEvent, ip_field: str, host_field: str) -> None:
        ip = getattr(event, ip_field)
        if getattr(event, host_field) or not is_public_ip(ip):
            return
        hostname = await self.provider.resolve(ip)
        if hostname and not getattr(event, host_field):
            setattr(event, host_field, hostname)


class GeoIPStage(EnrichmentStage):
    name = "geoip"

    def __init__(self, provider: GeoIPProvider):
        self.provider = provider

    @property
    def is_available(self) -> bool:
        return self.provider.is_available

    async def apply(self, event: CanonicalEvent) -> None:
        await asyncio.gather(
            self._locate_into(event, "src"),
            self._locate_into(event, "dst"),
        )

    async def _locate_into(self, event: CanonicalEvent, prefix: str) -> None:
        ip = getattr(event, f"{prefix}_ip")
        if not is_public_ip(ip):
            return
        geo = await self.provider.lookup(ip)
        if geo is None:
            return
        for attr, value in (
            ("country", geo.country),
            ("city", geo.city),
            ("latitude", geo.latitude),
            ("longitude", geo.longitude),
        ):
            target = f"{prefix}_geo_{attr}"
            if value is not None and getattr(event, target) is None:
                setattr(event, target, value)
        if prefix == "src" and geo.country:
            event.add_tags(f"country:{geo.country}")


# ── Pipeline ──────────────────────────────────────────────────────────


class EnrichmentPipeline:
    """Runs the enabled stages over events; never raises."""

    def __init__(
        self,
        dns_provider: ReverseDnsProvider | None = None,
        geoip_provider: GeoIPProvider | None = None,
        enabled: bool | None = None,
        dns_enabled: bool | None = None,
        geoip_enabled: bool | None = None,
        batch_concurrency: int | None = None,
    ):
        self.enabled = settings.ENRICHMENT_ENABLED if enabled is None else enabled
        self.dns_enabled = settings.ENRICHMENT_DNS if dns_enabled is None else dns_enabled
        self.geoip_enabled = settings.ENRICHMENT_GEOIP if geoip_enabled is None else geoip_enabled
        self.batch_concurrency = (
            settings.ENRICHMENT_BATCH_CONCURRENCY if batch_concurrency is None else batch_concurrency
        )
        self.stages: list[EnrichmentStage] = []
        if self.dns_enabled:
            self.stages.append(ReverseDnsStage(dns_provider or ReverseDnsProvider()))
        if self.geoip_enabled:
            self.stages.append(GeoIPStage(geoip_provider or GeoIPProvider()))

    @property
    def active_stages(self) -> list[EnrichmentStage]:
        if not self.enabled:
            return []
        return [s for s in self.stages if s.is_available]

    async def enrich(self, event: CanonicalEvent) -> CanonicalEvent:
        stages = self.active_stages
        if not stages:
            return event
        results = await asyncio.gather(
            *(stage.apply(event) for stage in stages), return_exceptions=True
        )
        for stage, result in zip(stages, results):
            if isinstance(result, Exception):
                logger.debug(f"Enrichment stage {stage.name} failed: {result}")
        event.tags = dedupe_tags(event.tags)
        return event

    async def enrich_batch(self, events: list[CanonicalEvent]) -> list[CanonicalEvent]:
        """Enrich many events with bounded concurrency, preserving order."""
        if not self.active_stages or not events:
            return events
        sem = asyncio.Semaphore(max(1, self.batch_concurrency))

        async def _enrich_one(event: CanonicalEvent) -> CanonicalEvent:
            async with sem:
                return await self.enrich(event)

        return list(await asyncio.gather(*(_enrich_one(e) for e in events)))

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "stages": {s.name: {"available": s.is_available} for s in self.stages},
        }

    async def cleanup(self) -> None:
        for stage in self.stages:
            if isinstance(stage, GeoIPStage):
                stage.provider.close()


# Singleton
enrichment_pipeline = EnrichmentPipeline()
