"""Directory service (Active Directory security log) normalizer.

Windows security events are keyed by a numeric event id. When a producer
sends only a textual event type, the id is inferred from it through
``EVENT_TYPE_TO_ID`` so the same heuristics apply.
"""

from __future__ import annotations

from typing import Any, Mapping, NamedTuple, Optional

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


class EventIdInfo(NamedTuple):
    event_type: str
    action: Optional[str]
    severity: int


LOGON_TYPES: dict[int, str] = {
    2: "Interactive",
    3: "Network",
    4: "Batch",
    5: "Service",
    7: "Unlock",
    8: "NetworkCleartext",
    9: "NewCredentials",
    10: "RemoteInteractive",
    11: "CachedInteractive",
}

EVENT_ID_MAP: dict[int, EventIdInfo] = {
    4624: EventIdInfo("LogonSuccess", "login", 2),
    4625: EventIdInfo("LogonFailed", "deny", 4),
    4634: EventIdInfo("LogoffSuccess", "logout", 1),
    4648: EventIdInfo("ExplicitCredentialLogon", "login", 5),
    4720: EventIdInfo("UserCreated", "create", 5),
    4722: EventIdInfo("UserEnabled", "create", 4),
    4723: EventIdInfo("PasswordChangeAttempt", "alert", 4),
    4724: EventIdInfo("PasswordReset", "alert", 5),
    4725: EventIdInfo("UserDisabled", "delete", 5),
    4726: EventIdInfo("UserDeleted", "delete", 6),
    4728: EventIdInfo("MemberAddedToGroup", "create", 5),
    4729: EventIdInfo("MemberRemovedFromGroup", "delete", 5),
    4732: EventIdInfo("MemberAddedToLocalGroup", "create", 5),
    4733: EventIdInfo("MemberRemovedFromLocalGroup", "delete", 5),
    4740: EventIdInfo("AccountLockedOut", "deny", 6),
    4756: EventIdInfo("MemberAddedToUniversalGroup", "create", 5),
    4757: EventIdInfo("MemberRemovedFromUniversalGroup", "delete", 5),
    4767: EventIdInfo("AccountUnlocked", "allow", 4),
    4768: EventIdInfo("KerberosTGTRequest", "login", 2),
    4769: EventIdInfo("KerberosServiceTicket", "allow", 2),
    4771: EventIdInfo("KerberosPreAuthFailed", "deny", 4),
    4776: EventIdInfo("NTLMAuthentication", "login", 3),
}

# Normalised event-type text (lower case, "-" and spaces as "_") -> event id
EVENT_TYPE_TO_ID: dict[str, int] = {
    "logonsuccess": 4624,
    "login_success": 4624,
    "logon_success": 4624,
    "successful_logon": 4624,
    "logonfailed": 4625,
    "login_failure": 4625,
    "logon_failure": 4625,
    "failed_logon": 4625,
    "login_failed": 4625,
    "logon_failed": 4625,
    "logoffsuccess": 4634,
    "logoff": 4634,
    "logout": 4634,
    "explicitcredentiallogon": 4648,
    "explicit_credential_logon": 4648,
    "runas": 4648,
    "usercreated": 4720,
    "user_created": 4720,
    "userenabled": 4722,
    "user_enabled": 4722,
    "passwordchangeattempt": 4723,
    "password_change": 4723,
    "passwordreset": 4724,
    "password_reset": 4724,
    "userdisabled": 4725,
    "user_disabled": 4725,
    "userdeleted": 4726,
    "user_deleted": 4726,
    "memberaddedtogroup": 4728,
    "member_added_to_group": 4728,
    "memberremovedfromgroup": 4729,
    "member_removed_from_group": 4729,
    "accountlockedout": 4740,
    "account_locked": 4740,
    "lockout": 4740,
    "accountunlocked": 4767,
    "account_unlocked": 4767,
    "kerberostgtrequest": 4768,
    "kerberos_tgt": 4768,
    "kerberosserviceticket": 4769,
    "kerberos_service_ticket": 4769,
    "kerberospreauthfailed": 4771,
    "kerberos_preauth_failed": 4771,
    "ntlmauthentication": 4776,
    "ntlm_auth": 4776,
}

EVENT_ID_KEYS = ("event_id", "EventID", "eventId", "EventId", "eventID")
USER_MANAGEMENT_IDS = frozenset({4720, 4722, 4725, 4726})
GROUP_CHANGE_IDS = frozenset({4728, 4729, 4732, 4733, 4756, 4757})
KERBEROS_IDS = frozenset({4768, 4769, 4771})
RDP_LOGON_TYPE = 10
NETWORK_LOGON_TYPE = 3


def infer_event_id(event_type: str | None) -> int | None:
    if not event_type:
        return None
    key = event_type.lower().replace("-", "_").replace(" ", "_")
    return EVENT_TYPE_TO_ID.get(key)


class DirectoryNormalizer(BaseNormalizer):
    kind = SourceKind.DIRECTORY

    def normalize_record(self, data: Mapping[str, Any], tenant_id: str) -> CanonicalEvent:
        event = self.base_event(data, tenant_id)
        declared_type = to_str(data.get("event_type"))

        event_id = to_int(first_present(data, *EVENT_ID_KEYS))
        if event_id is None:
            event_id = infer_event_id(declared_type)
        info = EVENT_ID_MAP.get(event_id) if event_id is not None else None

        severity = to_int(data.get("severity"))
        if severity is None:
            severity = info.severity if info else 3

        event.event_type = declared_type or (info.event_type if info else None)
        event.action = (info.action if info else None) or map_action(data.get("action"))
        event.src_ip = to_str(first_present(data, "src_ip", "ip"))
        event.user = to_str(data.get("user"))
        event.host = to_str(data.get("host"))
        event.add_tags(*incoming_tags(data))

        if event_id is not None:
            event.event_subtype = f"EventID-{event_id}"
            event.add_tags(f"eventid:{event_id}")

        if event_id in (4624, 4625):
            logon_type = to_int(data.get("logon_type"))
            if logon_type:
                name = LOGON_TYPES.get(logon_type, f"Type{logon_type}")
                event.add_tags(f"logon:{name.lower()}")
                if logon_type == RDP_LOGON_TYPE:
                    severity = max(severity, 4)
                    event.add_tags("rdp")
                if logon_type == NETWORK_LOGON_TYPE and event_id == 4625:
                    event.add_tags("network-auth-failure")

        if event_id == 4624:
            event.add_tags("auth-success")
        elif event_id == 4625:
            event.add_tags("auth-failure")
            if data.get("failure_reason"):
                event.add_tags("has-failure-reason")
        elif event_id == 4648:
            severity = max(severity, 5)
            event.add_tags("explicit-creds", "lateral-movement-indicator")
        elif event_id == 4740:
            event.add_tags("lockout", "brute-force-indicator")

        if event_id in USER_MANAGEMENT_IDS:
            event.add_tags("user-management")

        group_name = to_str(data.get("group_name"))
        if event_id in GROUP_CHANGE_IDS:
            event.add_tags("group-change")
            if group_name and "admin" in group_name.lower():
                severity = max(severity, 7)
                event.add_tags("admin-group-change")

        if event_id in KERBEROS_IDS:
            event.add_tags("kerberos")
            if event_id == 4771:
                event.add_tags("kerberos-failure", "auth-failure")

        if data.get("target_user"):
            event.add_tags(f"target:{data['target_user']}")
        if data.get("target_server"):
            event.add_tags(f"target-server:{data['target_server']}")
        if group_name:
            event.add_tags(f"group:{group_name}")

        event.severity = severity
        return event
