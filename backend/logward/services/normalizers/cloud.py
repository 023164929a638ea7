"""Cloud audit trail normalizer (CloudTrail-style records)."""

from __future__ import annotations

from typing import Any, Mapping

from .base import (
    BaseNormalizer,
    CanonicalEvent,
    SourceKind,
    dig,
    first_present,
    incoming_tags,
    to_int,
    to_str,
)

CREATE_PREFIXES = ("Create", "Put", "Run", "Attach", "Add")
DELETE_PREFIXES = ("Delete", "Remove", "Terminate")

# Services that only contribute their own name as a tag
PLAIN_SERVICE_TAGS = {
    "cloudtrail": ("cloudtrail",),
    "lambda": ("lambda",),
    "rds": ("rds", "database"),
}


def _service_name(data: Mapping[str, Any]) -> str:
    service = first_present(data, "cloud_service") or dig(data, "cloud", "service")
    if not service:
        # "iam.amazonaws.com" -> "iam"
        source = dig(data, "raw", "eventSource")
        if isinstance(source, str) and source:
            service = source.split(".", 1)[0]
    return str(service or "").lower()


class CloudNormalizer(BaseNormalizer):
    kind = SourceKind.CLOUD

    def normalize_record(self, data: Mapping[str, Any], tenant_id: str) -> CanonicalEvent:
        event = self.base_event(data, tenant_id)
        event_type = to_str(data.get("event_type")) or to_str(dig(data, "raw", "eventName")) or ""
        service = _service_name(data)

        event.event_type = event_type or None
        event.src_ip = to_str(
            first_present(data, "src_ip", "sourceIPAddress") or dig(data, "raw", "sourceIPAddress")
        )
        event.user = to_str(
            data.get("user") or dig(data, "userIdentity", "userName")
            or dig(data, "raw", "userIdentity", "userName")
        )
        event.cloud_account_id = to_str(
            dig(data, "cloud", "account_id") or dig(data, "raw", "recipientAccountId")
        )
        event.cloud_region = to_str(dig(data, "cloud", "region") or dig(data, "raw", "awsRegion"))
        event.cloud_service = service or None
        event.add_tags(*incoming_tags(data))

        severity = to_int(data.get("severity"))
        if severity is None:
            severity = 3

        if event_type == "StopLogging":
            event.action = "delete"
            severity = 9
            event.add_tags("audit-tampering", "critical")
        elif event_type.startswith(DELETE_PREFIXES):
            event.action = "delete"
            severity = max(severity, 5)
        elif event_type.startswith(CREATE_PREFIXES):
            event.action = "create"
        elif event_type.startswith("Detach"):
            event.action = "delete"
        elif event_type == "AssumeRole" or "Login" in event_type:
            event.action = "login"

        if service == "iam":
            event.add_tags("iam")
            if "Policy" in event_type and "Admin" in event_type:
                severity = max(severity, 7)
                event.add_tags("privilege-escalation")
            if event_type in ("CreateUser", "DeleteUser"):
                severity = max(severity, 5)
                event.add_tags("user-management")
        elif service == "s3":
            event.add_tags("s3")
            if "BucketPolicy" in event_type or "BucketAcl" in event_type:
                severity = max(severity, 6)
                event.add_tags("policy-change")
        elif service == "ec2":
            event.add_tags("ec2")
            if event_type == "RunInstances":
                event.add_tags("resource-creation")
        elif service == "sts":
            event.add_tags("sts")
            if event_type == "AssumeRole":
                event.add_tags("role-assumption")
                role_arn = dig(data, "raw", "requestParameters", "roleArn") or ""
                if "Admin" in str(role_arn):
                    severity = max(severity, 6)
                    event.add_tags("admin-access")
        else:
            event.add_tags(*PLAIN_SERVICE_TAGS.get(service, ()))

        event.severity = severity
        return event
