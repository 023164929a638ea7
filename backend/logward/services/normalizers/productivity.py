"""Productivity suite (Microsoft 365 style) audit normalizer."""

from __future__ import annotations

from typing import Any, Mapping

from logward.config import settings

from .base import (
    BaseNormalizer,
    CanonicalEvent,
    SourceKind,
    first_present,
    incoming_tags,
    to_int,
    to_str,
)

WORKLOAD_TAGS = {
    "Exchange": "exchange",
    "SharePoint": "sharepoint",
    "OneDrive": "onedrive",
    "AzureActiveDirectory": "aad",
}


class ProductivityNormalizer(BaseNormalizer):
    kind = SourceKind.PRODUCTIVITY

    def __init__(self, bulk_threshold: int | None = None):
        self.bulk_threshold = (
            settings.BULK_MAILBOX_THRESHOLD if bulk_threshold is None else bulk_threshold
        )

    def normalize_record(self, data: Mapping[str, Any], tenant_id: str) -> CanonicalEvent:
        event = self.base_event(data, tenant_id)
        event_type = to_str(data.get("event_type")) or ""
        workload = to_str(data.get("workload")) or ""
        status = to_str(data.get("status"))

        event.event_type = event_type or None
        event.src_ip = to_str(first_present(data, "src_ip", "ip"))
        event.user = to_str(data.get("user"))
        event.url = to_str(data.get("file_path"))
        event.add_tags(*incoming_tags(data))

        severity = to_int(data.get("severity"))
        if severity is None:
            severity = 3

        if "LoggedIn" in event_type or "Login" in event_type:
            if status == "Success":
                event.action = "login"
                event.add_tags("auth-success")
            else:
                event.action = "deny"
                severity = max(severity, 4)
                event.add_tags("auth-failure")

        if "Accessed" in event_type or "Downloaded" in event_type:
            event.action = "allow"
            event.add_tags("file-access")

        if "Sharing" in event_type:
            event.action = "create"
            event.add_tags("sharing")
            if data.get("sharing_type") == "AnonymousLink":
                severity = max(severity, 6)
                event.add_tags("anonymous-sharing", "data-exposure-risk")

        if "MemberAdded" in event_type or "GroupMember" in event_type:
            event.action = "create"
            severity = max(severity, 5)
            event.add_tags("group-change")

        if "MailItems" in event_type or "Mailbox" in event_type:
            event.add_tags("email")
            count = to_int(data.get("item_count"))
            if count is not None and count > self.bulk_threshold:
                severity = max(severity, 5)
                event.add_tags("bulk-access")

        if workload:
            event.add_tags(f"workload:{workload.lower()}")
            if workload in WORKLOAD_TAGS:
                event.add_tags(WORKLOAD_TAGS[workload])

        if status == "Failure":
            event.add_tags("failed")
            reason = to_str(data.get("failure_reason"))
            if reason:
                event.add_tags(f"failure:{reason.lower()}")

        if data.get("group_name"):
            event.add_tags(f"group:{data['group_name']}")
        if data.get("member_added"):
            event.add_tags(f"member:{data['member_added']}")
        if data.get("target_mailbox"):
            event.add_tags(f"target:{data['target_mailbox']}")

        event.severity = severity
        return event
