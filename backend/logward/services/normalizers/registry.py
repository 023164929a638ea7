"""Normalizer registry: source detection and dispatch.

Every SourceKind is bound to exactly one normalizer instance. Detection
trusts a declared ``source`` field first, then asks each normalizer's
content predicate in a fixed order.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from .base import BaseNormalizer, CanonicalEvent, RawPayload, SourceKind, resolve_source
from .cloud import CloudNormalizer
from .directory import DirectoryNormalizer
from .edr import EdrNormalizer
from .firewall import FirewallNormalizer
from .generic_api import GenericApiNormalizer
from .network import NetworkNormalizer
from .productivity import ProductivityNormalizer

logger = logging.getLogger(__name__)

NORMALIZERS: dict[SourceKind, BaseNormalizer] = {
    SourceKind.FIREWALL: FirewallNormalizer(),
    SourceKind.NETWORK: NetworkNormalizer(),
    SourceKind.API: GenericApiNormalizer(),
    SourceKind.EDR: EdrNormalizer(),
    SourceKind.CLOUD: CloudNormalizer(),
    SourceKind.PRODUCTIVITY: ProductivityNormalizer(),
    SourceKind.DIRECTORY: DirectoryNormalizer(),
}

DETECTION_ORDER: tuple[SourceKind, ...] = (
    SourceKind.FIREWALL,
    SourceKind.NETWORK,
    SourceKind.API,
    SourceKind.EDR,
    SourceKind.CLOUD,
    SourceKind.PRODUCTIVITY,
    SourceKind.DIRECTORY,
)

DEFAULT_LINE_SOURCE = SourceKind.FIREWALL
DEFAULT_RECORD_SOURCE = SourceKind.API


def normalizer_for(kind: SourceKind | str) -> BaseNormalizer:
    """Return the normalizer bound to ``kind`` (a SourceKind or alias)."""
    resolved = resolve_source(kind)
    if resolved is None:
        raise ValueError(f"Unknown source kind: {kind!r}")
    return NORMALIZERS[resolved]


def detect_source(payload: Any) -> SourceKind:
    """Classify a raw payload into a SourceKind. Pure and idempotent."""
    if isinstance(payload, Mapping):
        declared = resolve_source(payload.get("source"))
        if declared is not None:
            return declared
    elif not isinstance(payload, str):
        return DEFAULT_RECORD_SOURCE

    for kind in DETECTION_ORDER:
        if NORMALIZERS[kind].matches(payload):
            return kind
    return DEFAULT_LINE_SOURCE if isinstance(payload, str) else DEFAULT_RECORD_SOURCE


def normalize(payload: RawPayload, tenant_id: str) -> CanonicalEvent:
    """Detect the source of ``payload`` and normalize it."""
    kind = detect_source(payload)
    logger.debug(f"Detected source {kind.value} for tenant {tenant_id}")
    return NORMALIZERS[kind].normalize(payload, tenant_id)
