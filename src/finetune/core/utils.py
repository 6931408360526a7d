"""
Core Utilities - Shared helper functions for the fine-tune module.

Provides hashing and timestamp helpers used by the snapshot builder,
the storage backends and the runners.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional


def canonical_json(value: Any) -> str:
    """
    Serialize a value to canonical JSON.
    
    Keys are sorted at every nesting level and separators are compact, so two
    equal values always produce the same string regardless of key order.
    
    Args:
        value: JSON-serializable value
        
    Returns:
        Canonical JSON string
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_content_hash(content: str) -> str:
    """
    Compute SHA256 hash of text content.
    
    Args:
        content: Text content to hash
        
    Returns:
        Hex-encoded SHA256 hash (64 characters)
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def compute_filter_hash(predicates: Any) -> str:
    """
    Compute the deduplication fingerprint of a filter specification.
    
    Example:
        >>> compute_filter_hash({"b": 1, "a": 2}) == compute_filter_hash({"a": 2, "b": 1})
        True
    """
    return compute_content_hash(canonical_json(predicates))


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """
    Format a datetime as a fixed-width UTC ISO-8601 string.
    
    The fixed width (always microseconds, always +00:00) keeps stored
    timestamps lexicographically comparable.
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO string or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def version_label(value: datetime) -> str:
    """
    Build a snapshot version label from a timestamp.
    
    Example:
        >>> version_label(datetime(2026, 10, 19, 8, 30, 5, 123000, tzinfo=timezone.utc))
        '2026-10-19T08-30-05-123Z'
    """
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H-%M-%S-") + f"{value.microsecond // 1000:03d}Z"
