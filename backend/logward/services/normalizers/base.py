"""Normalizer base: canonical event shape, source kinds, and shared helpers.

Every source-specific normalizer turns a raw payload (a structured record or a
single free-text line) into a :class:`CanonicalEvent`. Normalizers never raise
on malformed input: unparseable fields are left empty while ``raw``,
``tenant_id`` and ``source`` are always populated.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

logger = logging.getLogger(__name__)

RawPayload = Union[str, Mapping[str, Any]]


class SourceKind(str, Enum):
    FIREWALL = "firewall"
    NETWORK = "network"
    API = "api"
    EDR = "edr"
    CLOUD = "cloud"
    PRODUCTIVITY = "productivity"
    DIRECTORY = "directory"


# Vendor-flavoured names accepted in a record's ``source`` field
SOURCE_ALIASES: dict[str, SourceKind] = {
    "generic-api": SourceKind.API,
    "generic_api": SourceKind.API,
    "crowdstrike": SourceKind.EDR,
    "endpoint": SourceKind.EDR,
    "aws": SourceKind.CLOUD,
    "cloudtrail": SourceKind.CLOUD,
    "m365": SourceKind.PRODUCTIVITY,
    "o365": SourceKind.PRODUCTIVITY,
    "productivity-suite": SourceKind.PRODUCTIVITY,
    "ad": SourceKind.DIRECTORY,
    "active-directory": SourceKind.DIRECTORY,
}


def resolve_source(value: Any) -> SourceKind | None:
    """Map a declared source name (kind or known alias) to a SourceKind."""
    if isinstance(value, SourceKind):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    key = value.strip().lower()
    try:
        return SourceKind(key)
    except ValueError:
        return SOURCE_ALIASES.get(key)


# ── Actions ───────────────────────────────────────────────────────────


CANONICAL_ACTIONS = frozenset({"allow", "deny", "create", "delete", "login", "logout", "alert"})

ACTION_MAP: dict[str, str] = {
    "quarantine": "deny",
    "block": "deny",
    "blocked": "deny",
    "kill_process": "deny",
    "success": "allow",
    "failure": "deny",
    "failed": "deny",
    "violation-restrict": "deny",
    "drop": "deny",
}


def map_action(value: Any) -> str | None:
    """Map a vendor action word onto the canonical action vocabulary."""
    if not isinstance(value, str) or not value:
        return None
    normalized = value.strip().lower()
    if normalized in ACTION_MAP:
        return ACTION_MAP[normalized]
    return normalized if normalized in CANONICAL_ACTIONS else None


# ── Scalar coercion ───────────────────────────────────────────────────


DEFAULT_SEVERITY = 3


def to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return None


def clamp_severity(value: Any) -> int | None:
    number = to_int(value)
    if number is None:
        return None
    return min(10, max(0, number))


def to_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def first_present(data: Mapping[str, Any], *keys: str) -> Any:
    """Return the first non-empty value among ``keys``."""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def dig(data: Any, *path: str) -> Any:
    """Safe nested lookup: ``dig(d, "cloud", "service")``."""
    current = data
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


_TIMESTAMP_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
]


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings, datetimes and epoch seconds/milliseconds into UTC."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = float(value)
        # Values past year 33658 in seconds are epoch milliseconds
        if seconds > 1e12:
            seconds /= 1000.0
        try:
            dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = None
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    dt = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if dt is None:
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dedupe_tags(tags: Iterable[Any]) -> list[str]:
    """Set semantics for tags, keeping the first occurrence order."""
    seen: set[str] = set()
    out: list[str] = []
    for tag in tags:
        if tag is None:
            continue
        text = str(tag)
        if text and text not in seen:
            seen.add(text)
            out.append(text)
    return out


# ── Keyword rule tables ───────────────────────────────────────────────


@dataclass(frozen=True)
class KeywordRule:
    """Keyword heuristic: any keyword found in the text applies the rule."""
    keywords: tuple[str, ...]
    tags: tuple[str, ...] = ()
    min_severity: Optional[int] = None
    action: Optional[str] = None

    def matches(self, text: str) -> bool:
        return any(k in text for k in self.keywords)


@dataclass
class KeywordOutcome:
    action: Optional[str]
    severity: int
    tags: list[str]


def apply_keyword_rules(
    text: str,
    rules: Sequence[KeywordRule],
    severity: int,
    first_match: bool = False,
) -> KeywordOutcome:
    """Run a keyword table against ``text``.

    With ``first_match`` only the first matching rule applies (used for action
    tables where the branches are mutually exclusive); otherwise every matching
    rule contributes its tags and severity floor, and the last action wins.
    """
    action: Optional[str] = None
    tags: list[str] = []
    for rule in rules:
        if not rule.matches(text):
            continue
        tags.extend(rule.tags)
        if rule.min_severity is not None:
            severity = max(severity, rule.min_severity)
        if rule.action is not None:
            action = rule.action
        if first_match:
            break
    return KeywordOutcome(action=action, severity=severity, tags=tags)


# ── Canonical event ───────────────────────────────────────────────────


@dataclass
class CanonicalEvent:
    tenant_id: str
    source: SourceKind
    event_time: datetime
    raw: str
    vendor: Optional[str] = None
    product: Optional[str] = None
    event_type: Optional[str] = None
    event_subtype: Optional[str] = None
    severity: Optional[int] = None
    action: Optional[str] = None
    src_ip: Optional[str] = None
    src_port: Optional[int] = None
    dst_ip: Optional[str] = None
    dst_port: Optional[int] = None
    protocol: Optional[str] = None
    user: Optional[str] = None
    host: Optional[str] = None
    process: Optional[str] = None
    url: Optional[str] = None
    http_method: Optional[str] = None
    status_code: Optional[int] = None
    rule_name: Optional[str] = None
    rule_id: Optional[str] = None
    cloud_account_id: Optional[str] = None
    cloud_region: Optional[str] = None
    cloud_service: Optional[str] = None
    src_hostname: Optional[str] = None
    dst_hostname: Optional[str] = None
    src_geo_country: Optional[str] = None
    src_geo_city: Optional[str] = None
    src_geo_latitude: Optional[float] = None
    src_geo_longitude: Optional[float] = None
    dst_geo_country: Optional[str] = None
    dst_geo_city: Optional[str] = None
    dst_geo_latitude: Optional[float] = None
    dst_geo_longitude: Optional[float] = None
    tags: list[str] = field(default_factory=list)

    def add_tags(self, *tags: str) -> None:
        self.tags.extend(t for t in tags if t)

    def to_record(self) -> dict[str, Any]:
        """Column values for the events table."""
        record = asdict(self)
        record["source"] = self.source.value
        record["tags"] = dedupe_tags(self.tags)
        return record

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]


def serialize_raw(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, default=str)
    except (TypeError, ValueError):
        return str(payload)


# ── Base normalizer ───────────────────────────────────────────────────


class BaseNormalizer(ABC):
    """Interface every normalizer implements.

    ``normalize`` is the public entry point and never raises; subclasses
    implement ``normalize_record`` and, for sources that arrive as syslog,
    ``normalize_line``.
    """

    kind: SourceKind

    def matches(self, payload: RawPayload) -> bool:
        """Content predicate used by the source detector."""
        if isinstance(payload, str):
            return self.matches_line(payload)
        if isinstance(payload, Mapping):
            return resolve_source(payload.get("source")) == self.kind
        return False

    def matches_line(self, line: str) -> bool:
        return False

    def normalize(self, payload: RawPayload, tenant_id: str) -> CanonicalEvent:
        try:
            if isinstance(payload, str):
                event = self.normalize_line(payload, tenant_id)
            elif isinstance(payload, Mapping):
                event = self.normalize_record(payload, tenant_id)
            else:
                event = self.base_event(payload, tenant_id)
        except Exception as e:
            logger.warning(f"{self.kind.value} normalizer fell back to raw event: {e}")
            event = self.base_event(payload, tenant_id)
        return self.finalize(event)

    @abstractmethod
    def normalize_record(self, data: Mapping[str, Any], tenant_id: str) -> CanonicalEvent: ...

    def normalize_line(self, line: str, tenant_id: str) -> CanonicalEvent:
        """Free text for a record-oriented source: accept a JSON object line."""
        try:
            decoded = json.loads(line)
        except ValueError:
            decoded = None
        if isinstance(decoded, Mapping):
            event = self.normalize_record(decoded, tenant_id)
            event.raw = line
            return event
        return self.base_event(line, tenant_id)

    def base_event(self, payload: Any, tenant_id: str) -> CanonicalEvent:
        data = payload if isinstance(payload, Mapping) else {}
        event_time = parse_timestamp(first_present(data, "@timestamp", "event_time", "timestamp"))
        tenant = tenant_id or to_str(data.get("tenant_id")) or to_str(data.get("tenant")) or ""
        return CanonicalEvent(
            tenant_id=tenant,
            source=self.kind,
            event_time=event_time or utcnow(),
            raw=serialize_raw(payload),
        )

    def finalize(self, event: CanonicalEvent) -> CanonicalEvent:
        """Clamp severity and append the base tags every normalizer emits."""
        severity = clamp_severity(event.severity)
        event.severity = DEFAULT_SEVERITY if severity is None else severity
        event.action = map_action(event.action)
        event.source = self.kind

        tags = list(event.tags)
        tags.append(f"source:{self.kind.value}")
        if event.event_type:
            tags.append(f"type:{event.event_type}")
        if event.severity >= 7:
            tags.append("high-severity")
        if event.severity >= 9:
            tags.append("critical")
        event.tags = dedupe_tags(tags)
        return event


def incoming_tags(data: Mapping[str, Any]) -> list[str]:
    """Tags supplied by the producer itself (``_tags`` or ``tags``)."""
    value = data.get("_tags", data.get("tags"))
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v not in (None, "")]
    return []
