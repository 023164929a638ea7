"""Endpoint detection & response (EDR) normalizer."""

from __future__ import annotations

from typing import Any, Mapping

from .base import (
    BaseNormalizer,
    CanonicalEvent,
    KeywordRule,
    SourceKind,
    apply_keyword_rules,
    first_present,
    incoming_tags,
    map_action,
    to_int,
    to_str,
)

EDR_THREAT_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(("malware",), tags=("malware",), min_severity=7),
    KeywordRule(("ransomware",), tags=("ransomware", "critical-threat"), min_severity=9),
    KeywordRule(("credential", "mimikatz"), tags=("credential-theft",), min_severity=8),
    KeywordRule(("injection",), tags=("process-injection",), min_severity=8),
    KeywordRule(("lateral",), tags=("lateral-movement",), min_severity=7),
    KeywordRule(("c2", "command_and_control"), tags=("c2",), min_severity=8),
    KeywordRule(("suspicious",), tags=("suspicious",)),
)

PREVENTED_ACTIONS = frozenset({"quarantine", "kill_process", "blocked"})
MASS_FILE_LIMIT = 100


class EdrNormalizer(BaseNormalizer):
    kind = SourceKind.EDR

    def normalize_record(self, data: Mapping[str, Any], tenant_id: str) -> CanonicalEvent:
        event = self.base_event(data, tenant_id)
        event.event_type = to_str(data.get("event_type"))
        event.dst_ip = to_str(data.get("dst_ip"))
        event.dst_port = to_int(data.get("dst_port"))
        event.user = to_str(data.get("user"))
        event.host = to_str(data.get("host"))
        event.process = to_str(data.get("process"))
        event.url = to_str(first_present(data, "url", "domain"))
        event.add_tags(*incoming_tags(data))

        severity = to_int(data.get("severity"))
        if severity is None:
            severity = 5
        text = (event.event_type or "").lower()
        if data.get("category") == "command_and_control":
            text += " command_and_control"
        threats = apply_keyword_rules(text, EDR_THREAT_RULES, severity)
        event.severity = threats.severity
        event.add_tags(*threats.tags)

        if data.get("technique"):
            event.add_tags(f"mitre:{data['technique']}")
        if data.get("sha256"):
            event.add_tags("has-hash")

        vendor_action = str(data.get("action") or "").lower()
        if vendor_action in PREVENTED_ACTIONS:
            event.action = "deny"
            event.add_tags("prevented")
        elif vendor_action == "alert":
            event.action = "alert"
            event.add_tags("detection-only")
        else:
            event.action = map_action(vendor_action)

        if data.get("parent_process"):
            event.add_tags(f"parent:{data['parent_process']}")
        if data.get("command_line"):
            event.add_tags("has-cmdline")
        files = to_int(data.get("files_affected"))
        if files is not None and files > 0:
            event.add_tags("file-modification")
            if files > MASS_FILE_LIMIT:
                event.add_tags("mass-file-operation")
        return event
