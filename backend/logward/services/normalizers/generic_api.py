"""Generic API / application audit log normalizer."""

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
    to_int,
    to_str,
)

# Mutually exclusive; the first match sets the action
API_ACTION_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(("fail",), tags=("auth-failure",), min_severity=4, action="deny"),
    KeywordRule(("login",), tags=("auth-success",), action="login"),
    KeywordRule(("logout",), action="logout"),
    KeywordRule(("create",), action="create"),
    KeywordRule(("delete",), action="delete"),
)

API_TAG_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(("permission", "role"), tags=("privilege-change",), min_severity=5),
    KeywordRule(("api_key",), tags=("api-key",), min_severity=5),
    KeywordRule(("password",), tags=("password-change",), min_severity=4),
    KeywordRule(("download", "file"), tags=("file-access",)),
)


class GenericApiNormalizer(BaseNormalizer):
    kind = SourceKind.API

    def normalize_record(self, data: Mapping[str, Any], tenant_id: str) -> CanonicalEvent:
        event = self.base_event(data, tenant_id)
        event.event_type = to_str(data.get("event_type"))
        event.event_subtype = to_str(data.get("event_subtype"))
        event.src_ip = to_str(first_present(data, "src_ip", "ip"))
        event.user = to_str(data.get("user"))
        event.host = to_str(data.get("host"))
        event.url = to_str(first_present(data, "url", "file"))
        event.http_method = to_str(first_present(data, "http_method", "method"))
        event.status_code = to_int(data.get("status_code"))
        event.add_tags(*incoming_tags(data))

        severity = to_int(data.get("severity"))
        if severity is None:
            severity = 3
        text = (event.event_type or "").lower()

        actions = apply_keyword_rules(text, API_ACTION_RULES, severity, first_match=True)
        extras = apply_keyword_rules(text, API_TAG_RULES, actions.severity)
        event.action = actions.action
        event.severity = extras.severity
        event.add_tags(*actions.tags, *extras.tags)

        if data.get("reason"):
            event.add_tags(f"reason:{data['reason']}")
        if data.get("target_user"):
            event.add_tags(f"target:{data['target_user']}")
        return event
