"""
Filter specification validation and hashing.

A filter specification selects which annotated messages go into a training
export. It is validated once at the boundary and then frozen into a
FilterSpec whose hash drives snapshot deduplication.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from ..core.exceptions import ValidationError
from ..core.types import FilterSpec


logger = logging.getLogger(__name__)


# Predicate name -> expected shape
STRING_LIST_KEYS = frozenset({
    "emotions",
    "tones",
    "topics",
    "sourceTypes",
    "users",
    "reviewedBy",
    "supportingTherapists",
    "messageRole",
    "flagReasons",
    "goals",
})
RANGE_KEYS = frozenset({"intensity", "alignment_score", "agreement"})
BOOLEAN_KEYS = frozenset({"includeCorrected", "highRiskOnly", "flaggedOnly"})
DATE_KEYS = frozenset({"startDate", "endDate"})
COUNT_KEYS = frozenset({"topN", "minEmotionFrequency"})
NUMBER_KEYS = frozenset({"scoreCutoff"})

KNOWN_KEYS = STRING_LIST_KEYS | RANGE_KEYS | BOOLEAN_KEYS | DATE_KEYS | COUNT_KEYS | NUMBER_KEYS


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_date(value: str) -> Optional[datetime]:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    try:
        parsed = date.fromisoformat(text)
    except ValueError:
        return None
    return datetime(parsed.year, parsed.month, parsed.day)


def validate_filters(raw: Optional[Mapping[str, Any]]) -> List[str]:
    """
    Validate a raw filter mapping.
    
    Returns a list of validation errors (empty if valid).
    """
    if raw is None:
        return ["filters are required"]
    if not isinstance(raw, Mapping):
        return ["filters must be an object"]
    
    errors = []
    for key, value in raw.items():
        if key not in KNOWN_KEYS:
            errors.append(f"Unknown filter: {key}")
        elif value is None:
            continue
        elif key in STRING_LIST_KEYS:
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                errors.append(f"{key} must be a list of strings")
        elif key in RANGE_KEYS:
            if (
                not isinstance(value, (list, tuple))
                or len(value) != 2
                or not all(_is_number(v) for v in value)
            ):
                errors.append(f"{key} must be a [low, high] pair of numbers")
            elif value[0] > value[1]:
                errors.append(f"{key} low bound exceeds high bound")
        elif key in BOOLEAN_KEYS:
            if not isinstance(value, bool):
                errors.append(f"{key} must be a boolean")
        elif key in DATE_KEYS:
            if not isinstance(value, str) or _parse_date(value) is None:
                errors.append(f"{key} must be an ISO-8601 date")
        elif key in COUNT_KEYS:
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                errors.append(f"{key} must be a non-negative integer")
        elif key in NUMBER_KEYS:
            if not _is_number(value):
                errors.append(f"{key} must be a number")
    
    start, end = raw.get("startDate"), raw.get("endDate")
    if isinstance(start, str) and isinstance(end, str):
        start_at, end_at = _parse_date(start), _parse_date(end)
        if start_at and end_at and start_at.replace(tzinfo=None) > end_at.replace(tzinfo=None):
            errors.append("startDate is after endDate")
    
    return errors


def parse_filter_spec(raw: Union[FilterSpec, Mapping[str, Any], None]) -> FilterSpec:
    """
    Validate raw filters and freeze them into a FilterSpec.
    
    Predicates set to None are dropped, and ranges are normalized to lists, so
    semantically equal specifications hash identically.
    
    Raises:
        ValidationError: If the filters are malformed
    """
    if isinstance(raw, FilterSpec):
        return raw
    
    errors = validate_filters(raw)
    if errors:
        logger.warning(f"Rejected filter specification: {errors}")
        raise ValidationError("Invalid filter specification", validation_errors=errors)
    
    predicates: Dict[str, Any] = {}
    for key, value in raw.items():
        if value is None:
            continue
        predicates[key] = list(value) if isinstance(value, tuple) else value
    return FilterSpec(predicates=predicates)


def hash_filters(raw: Union[FilterSpec, Mapping[str, Any]]) -> str:
    """
    Compute the deduplication hash of a filter specification.
    
    Example:
        >>> hash_filters({"tones": ["calm"], "topN": 50}) == hash_filters({"topN": 50, "tones": ["calm"]})
        True
    """
    return parse_filter_spec(raw).filter_hash
