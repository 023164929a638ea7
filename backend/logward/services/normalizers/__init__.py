"""Source detection and per-source normalization into canonical events."""

from .base import (
    BaseNormalizer,
    CanonicalEvent,
    KeywordRule,
    SourceKind,
    apply_keyword_rules,
    dedupe_tags,
    map_action,
    resolve_source,
)
from .registry import NORMALIZERS, detect_source, normalize, normalizer_for

__all__ = [
    "BaseNormalizer",
    "CanonicalEvent",
    "KeywordRule",
    "SourceKind",
    "NORMALIZERS",
    "apply_keyword_rules",
    "dedupe_tags",
    "detect_source",
    "map_action",
    "normalize",
    "normalizer_for",
    "resolve_source",
]
