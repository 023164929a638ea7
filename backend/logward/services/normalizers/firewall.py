"""Firewall normalizer: syslog key=value lines and structured records."""

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


class FirewallNormalizer(BaseNormalizer):
    kind = SourceKind.FIREWALL

    def matches_line(self, line: str) -> bool:
        return "action=" in line or "vendor=" in line

    def normalize_line(self, line: str, tenant_id: str) -> CanonicalEvent:
        event = self.base_event(line, tenant_id)
        parsed = parse_syslog(line)
        if parsed.severity is not None:
            event.severity = parsed.severity
        if parsed.timestamp is not None:
            event.event_time = parsed.timestamp
        event.host = parsed.host

        for key, value in parsed.pairs:
            if key == "vendor":
                event.vendor = value
            elif key == "product":
                event.product = value
            elif key == "action":
                event.action = map_action(value)
                if value.lower() in ("deny", "block"):
                    event.add_tags("blocked")
                elif value.lower() == "alert":
                    event.add_tags("alert")
            elif key == "src":
                event.src_ip = value
            elif key == "dst":
                event.dst_ip = value
            elif key == "spt":
                event.src_port = to_int(value)
            elif key == "dpt":
                event.dst_port = to_int(value)
            elif key == "proto":
                event.protocol = value
                event.add_tags(f"proto:{value}")
            elif key in ("policy", "rule"):
                event.rule_name = value
            elif key == "msg":
                event.event_type = "_".join(value.split()) or None
        return event

    def normalize_record(self, data: Mapping[str, Any], tenant_id: str) -> CanonicalEvent:
        event = self.base_event(data, tenant_id)
        event.vendor = to_str(data.get("vendor"))
        event.product = to_str(data.get("product"))
        event.event_type = to_str(data.get("event_type"))
        event.severity = to_int(data.get("severity"))
        event.action = map_action(data.get("action"))
        event.src_ip = to_str(first_present(data, "src_ip", "src"))
        event.src_port = to_int(first_present(data, "src_port", "spt"))
        event.dst_ip = to_str(first_present(data, "dst_ip", "dst"))
        event.dst_port = to_int(first_present(data, "dst_port", "dpt"))
        event.protocol = to_str(first_present(data, "protocol", "proto"))
        event.rule_name = to_str(first_present(data, "rule_name", "policy"))
        event.host = to_str(data.get("host"))
        event.add_tags(*incoming_tags(data))
        return event
