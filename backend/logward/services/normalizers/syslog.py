"""BSD syslog line parsing shared by the firewall and network normalizers.

A line looks like::

    <134>Aug 20 12:44:56 fw01 vendor=demo action=deny src=10.0.0.1 msg="port scan"

The ``<PRI>`` prefix, timestamp and hostname are each optional; everything
after them is scanned for ``key=value`` tokens.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

_PRI_RE = re.compile(r"^<(\d{1,3})>")
_BSD_TS_RE = re.compile(r"^([A-Z][a-z]{2})\s+(\d{1,2})\s+(\d{2}):(\d{2}):(\d{2})\s+")
_HOST_RE = re.compile(r"^(\S+)\s+")
_KV_RE = re.compile(r'(\w+)=(?:"([^"]*)"|(\S+))')

_MONTHS = {
    "Jan": 1, "Feb": 2, "Mar": 3, "Apr": 4, "May": 5, "Jun": 6,
    "Jul": 7, "Aug": 8, "Sep": 9, "Oct": 10, "Nov": 11, "Dec": 12,
}


def syslog_severity(pri: int) -> int:
    """Canonical 0-10 severity from a PRI value: emergency (0) is 10, debug (7) is 3."""
    return 10 - (pri % 8)


@dataclass
class SyslogLine:
    severity: Optional[int] = None
    timestamp: Optional[datetime] = None
    host: Optional[str] = None
    pairs: list[tuple[str, str]] = field(default_factory=list)


def _parse_bsd_timestamp(match: re.Match, now: datetime) -> Optional[datetime]:
    month = _MONTHS.get(match.group(1))
    if month is None:
        return None
    try:
        ts = datetime(
            now.year, month, int(match.group(2)),
            int(match.group(3)), int(match.group(4)), int(match.group(5)),
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None
    # December lines read in early January belong to last year
    if ts - now > timedelta(days=1):
        try:
            ts = ts.replace(year=now.year - 1)
        except ValueError:
            return None
    return ts


def parse_syslog(line: str, now: Optional[datetime] = None) -> SyslogLine:
    """Split a syslog line into header fields and ordered key/value pairs."""
    now = now or datetime.now(timezone.utc)
    parsed = SyslogLine()
    rest = line.strip()

    pri = _PRI_RE.match(rest)
    if pri:
        parsed.severity = syslog_severity(int(pri.group(1)))
        rest = rest[pri.end():]

    ts = _BSD_TS_RE.match(rest)
    if ts:
        parsed.timestamp = _parse_bsd_timestamp(ts, now)
        rest = rest[ts.end():]

    host = _HOST_RE.match(rest)
    if host and "=" not in host.group(1):
        parsed.host = host.group(1)
        rest = rest[host.end():]

    for m in _KV_RE.finditer(rest):
        value = m.group(2) if m.group(2) is not None else m.group(3)
        parsed.pairs.append((m.group(1).lower(), value))
    return parsed
