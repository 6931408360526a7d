"""
Snapshot subpackage: filter hashing and snapshot creation.
"""

from .filters import hash_filters, parse_filter_spec, validate_filters
from .builder import CreateSnapshotResult, DuplicateCheck, SnapshotBuilder

__all__ = [
    "hash_filters",
    "parse_filter_spec",
    "validate_filters",
    "CreateSnapshotResult",
    "DuplicateCheck",
    "SnapshotBuilder",
]
