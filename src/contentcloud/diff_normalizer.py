"""Semantic comparison of desired and live Kubernetes objects.

The API server echoes objects back with defaults filled in, quantities
canonicalized and server-managed metadata added. Comparing a desired object
to its live counterpart verbatim would report drift on every pass, so the
comparison is:

- Subset based: only fields present in the desired object are compared;
  anything the server added is ignored.
- Normalized: values are passed through kind/path-scoped rules before
  they are compared.

COMMON FALSE POSITIVES HANDLED:
1. Server-managed metadata (resourceVersion, uid, managedFields, ...)
2. Status, which the operator never writes
3. Empty list/map in desired vs missing in live
4. Numeric strings vs numbers (``"3306"`` vs ``3306``)
5. Storage quantities in different units (``1024Mi`` vs ``1Gi``)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Metadata fields owned by the API server
SERVER_MANAGED_METADATA = frozenset(
    {
        "creationTimestamp",
        "deletionGracePeriodSeconds",
        "deletionTimestamp",
        "generation",
        "managedFields",
        "resourceVersion",
        "selfLink",
        "uid",
    }
)

# Top-level fields never compared
IGNORED_TOP_LEVEL = frozenset({"status"})

_QUANTITY_PATTERN = re.compile(r"^([0-9]+(?:\.[0-9]+)?)(Ki|Mi|Gi|Ti|Pi|Ei|k|M|G|T|P|E)?$")
_QUANTITY_FACTORS = {
    None: 1,
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
    "k": 1000,
    "M": 1000**2,
    "G": 1000**3,
    "T": 1000**4,
    "P": 1000**5,
    "E": 1000**6,
}


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null and missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Resource quantity normalization: "1024Mi" == "1Gi"
    QUANTITY = "quantity"

    # Whitespace normalization for multi-line strings
    WHITESPACE_NORMALIZE = "whitespace_normalize"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Kubernetes kind to match (``*`` matches any)
        path_pattern: Dotted field path pattern (supports ``*`` and ``**``)
        normalization_type: Type of normalization to apply
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        """Check if this rule applies to a kind and path."""
        if self.kind != "*" and self.kind != kind:
            return False
        return self.path_pattern == "*" or _glob_match(path, self.path_pattern)


def _glob_match(value: str, pattern: str) -> bool:
    """Glob matching where ``*`` spans one path segment and ``**`` any."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i : i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"
    return bool(re.match(regex_pattern, value))


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        kind="*",
        path_pattern="**",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty values are pruned by the API server",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.port",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Ports may be given as strings",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.targetPort",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Target ports may be given as strings",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="spec.replicas",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Replica counts may be given as strings",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.resources.requests.*",
        normalization_type=NormalizationType.QUANTITY,
        reason="Quantities are canonicalized by the API server",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.resources.limits.*",
        normalization_type=NormalizationType.QUANTITY,
        reason="Quantities are canonicalized by the API server",
    ),
    NormalizationRule(
        kind="ConfigMap",
        path_pattern="data.*",
        normalization_type=NormalizationType.WHITESPACE_NORMALIZE,
        reason="Trailing whitespace in embedded files is insignificant",
    ),
]


class DiffNormalizer:
    """Decides whether a live object already satisfies a desired one."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        """Initialize normalizer.

        Args:
            rules: Custom normalization rules.
            enable_default_rules: Whether to include default rules.
        """
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Normalize a scalar value based on applicable rules."""
        normalized = value
        for rule in self._rules:
            if rule.matches(kind, path):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return _normalize_empty(value)
            case NormalizationType.NUMERIC_STRING:
                return _normalize_numeric_string(value)
            case NormalizationType.QUANTITY:
                return _normalize_quantity(value)
            case NormalizationType.WHITESPACE_NORMALIZE:
                return _normalize_whitespace(value)
            case _:
                return value

    def are_equivalent(self, desired: dict[str, Any], live: dict[str, Any]) -> bool:
        """Check whether ``live`` already satisfies ``desired``.

        Server-managed metadata and status are ignored.
        """
        kind = desired.get("kind", "")
        for key, value in desired.items():
            if key in IGNORED_TOP_LEVEL:
                continue
            if key == "metadata":
                value = {k: v for k, v in (value or {}).items() if k not in SERVER_MANAGED_METADATA}
            if not self.is_subset(value, live.get(key), kind, key):
                logger.debug(
                    "Resource differs from live state",
                    extra={"kind": kind, "resource_name": _name_of(desired), "path": key},
                )
                return False
        return True

    def is_subset(self, desired: Any, live: Any, kind: str, path: str) -> bool:
        """Recursive subset comparison of ``desired`` against ``live``.

        Maps compare key by key over the desired keys only. Lists compare
        element-wise and must have the same length.
        """
        if isinstance(desired, dict):
            if not desired:
                return self.normalize_value(live, kind, path) in (None, {})
            if not isinstance(live, dict):
                return False
            return all(
                self.is_subset(value, live.get(key), kind, f"{path}.{key}")
                for key, value in desired.items()
            )

        if isinstance(desired, list):
            if not desired:
                return self.normalize_value(live, kind, path) in (None, [])
            if not isinstance(live, list) or len(live) != len(desired):
                return False
            return all(
                self.is_subset(d, v, kind, f"{path}.{i}")
                for i, (d, v) in enumerate(zip(desired, live, strict=True))
            )

        return self.normalize_value(desired, kind, path) == self.normalize_value(live, kind, path)


def _name_of(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def _normalize_empty(value: Any) -> Any:
    """[], {}, "" and None all become None."""
    if value in ("", [], {}):
        return None
    return value


def _normalize_numeric_string(value: Any) -> Any:
    """Convert numeric strings: "100" -> 100, "3.14" -> 3.14."""
    if isinstance(value, str):
        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            return value
    return value


def _normalize_quantity(value: Any) -> Any:
    """Convert a binary or decimal quantity string to a number of units."""
    if isinstance(value, int | float) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        match = _QUANTITY_PATTERN.match(value)
        if match:
            return float(match.group(1)) * _QUANTITY_FACTORS[match.group(2)]
    return value


def _normalize_whitespace(value: Any) -> Any:
    """Normalize line endings and strip trailing whitespace per line."""
    if isinstance(value, str):
        value = value.replace("\r\n", "\n").replace("\r", "\n")
        return "\n".join(line.rstrip() for line in value.split("\n")).strip()
    return value

