"""Model identity parsing utilities for pricing lookups."""
from __future__ import annotations

import re


_DATE_SUFFIX_PATTERN = re.compile(r"(?:-\d{8}|-\d{4}-\d{2}-\d{2})+$")


def canonical_model_name(raw_model: str | None) -> str:
    """Return a canonical model identifier with build/date suffixes removed.

    Example:
      claude-opus-4-5-20251101 -> claude-opus-4-5
      claude_sonnet_4 -> claude-sonnet-4
    """
    raw = (raw_model or "").strip().lower()
    if not raw:
        return ""
    normalized = re.sub(r"[\s_]+", "-", raw)
    normalized = re.sub(r"-{2,}", "-", normalized).strip("-")
    stripped = _DATE_SUFFIX_PATTERN.sub("", normalized).strip("-")
    return stripped or normalized


def is_long_context_eligible(raw_model: str | None) -> bool:
    """Sonnet 4.x models bill a premium above the long-context threshold."""
    return "sonnet-4" in canonical_model_name(raw_model)
