"""Network device normalizer: switch/router syslog and structured records."""

from __future__ import annotations

from typing import Any, Mapping

from .base import (
    BaseNormalizer,
    CanonicalEvent,
    SourceKind,
    first_present,
    incoming_tags,
    map_action,
    to_int,
    to_str,
)
from .syslog import parse_syslog

NETWORK_EVENT_MARKERS = ("event=link", "event=port", "event=stp", "event=lacp", "event=vlan")
SECURITY_EVENTS = frozenset({"port-security", "vlan-mismatch"})
FLAP_COUNT_LIMIT = 3


def _apply_event_heuristics(event: CanonicalEvent, event_type: str) -> None:
    if "down" in event_type or event_type == "link-flap":
        if not event.severity:
            event.severity = 5
        event.add_tags("outage")
    if event_type in SECURITY_EVENTS:
        event.add_tags("security")


def _apply_flap_count(event: CanonicalEvent, count: Any) -> None:
    number = to_int(count)
    if number is not None and number > FLAP_COUNT_LIMIT:
        event.severity = max(event.severity or 0, 6)
        event.add_tags("flapping")


class NetworkNormalizer(BaseNormalizer):
    kind = SourceKind.NETWORK

    def matches_line(self, line: str) -> bool:
        return any(marker in line for marker in NETWORK_EVENT_MARKERS)

    def normalize_line(self, line: str, tenant_id: str) -> CanonicalEvent:
        event = self.base_event(line, tenant_id)
        parsed = parse_syslog(line)
        if parsed.severity is not None:
            event.severity = parsed.severity
        if parsed.timestamp is not None:
            event.event_time = parsed.timestamp
        event.host = parsed.host

        for key, value in parsed.pairs:
            if key == "if":
                event.event_subtype = value
                event.add_tags(f"interface:{value}")
            elif key == "event":
                event.event_type = value
                _apply_event_heuristics(event, value)
            elif key == "mac":
                event.add_tags(f"mac:{value}")
            elif key == "reason":
                event.add_tags(f"reason:{value}")
            elif key == "action":
                event.action = map_action(value)
            elif key == "speed":
                event.add_tags(f"speed:{value}")
            elif key == "count":
                _apply_flap_count(event, value)
        return event

    def normalize_record(self, data: Mapping[str, Any], tenant_id: str) -> CanonicalEvent:
        event = self.base_event(data, tenant_id)
        event.event_type = to_str(first_present(data, "event_type", "event"))
        event.event_subtype = to_str(first_present(data, "event_subtype", "interface"))
        event.severity = to_int(data.get("severity"))
        event.action = map_action(data.get("action"))
        event.host = to_str(data.get("host"))
        event.add_tags(*incoming_tags(data))

        if event.event_type:
            _apply_event_heuristics(event, event.event_type)
        if data.get("count") is not None:
            _apply_flap_count(event, data.get("count"))
        return event
