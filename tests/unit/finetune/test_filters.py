"""
Unit tests for filter validation and hashing.

Tests for:
- validate_filters vocabulary and shapes
- parse_filter_spec normalization
- hash_filters determinism
- version labels
"""

from datetime import datetime, timezone

import pytest

from finetune.core.exceptions import ValidationError
from finetune.core.types import FilterSpec
from finetune.core.utils import canonical_json, compute_filter_hash, version_label
from finetune.snapshots.filters import hash_filters, parse_filter_spec, validate_filters


class TestValidateFilters:
    """Tests for validate_filters."""
    
    def test_valid_filters(self):
        """A filter using every predicate family passes."""
        filters = {
            "emotions": ["joy", "anger"],
            "intensity": [0.2, 0.9],
            "highRiskOnly": False,
            "startDate": "2026-01-01",
            "endDate": "2026-06-30T00:00:00Z",
            "topN": 100,
            "scoreCutoff": 0.5,
        }
        
        assert validate_filters(filters) == []
    
    def test_missing_filters(self):
        """None is rejected."""
        assert validate_filters(None) == ["filters are required"]
    
    def test_unknown_key(self):
        """Keys outside the vocabulary are rejected."""
        errors = validate_filters({"colour": ["red"]})
        
        assert errors == ["Unknown filter: colour"]
    
    @pytest.mark.parametrize("filters,fragment", [
        ({"emotions": "joy"}, "list of strings"),
        ({"intensity": [0.9, 0.1]}, "low bound exceeds high bound"),
        ({"intensity": [0.1]}, "[low, high]"),
        ({"flaggedOnly": "yes"}, "boolean"),
        ({"startDate": "last tuesday"}, "ISO-8601"),
        ({"topN": -1}, "non-negative integer"),
        ({"topN": True}, "non-negative integer"),
        ({"scoreCutoff": "high"}, "number"),
        ({"startDate": "2026-05-01", "endDate": "2026-04-01"}, "startDate is after endDate"),
    ])
    def test_invalid_shapes(self, filters, fragment):
        """Each malformed predicate yields a specific error."""
        errors = validate_filters(filters)
        
        assert len(errors) == 1
        assert fragment in errors[0]
    
    def test_none_values_are_ignored(self):
        """Predicates explicitly set to None are treated as absent."""
        assert validate_filters({"emotions": None, "topN": None}) == []


class TestParseFilterSpec:
    """Tests for parse_filter_spec."""
    
    def test_raises_validation_error_with_details(self):
        """Invalid filters raise ValidationError carrying every problem."""
        with pytest.raises(ValidationError) as exc_info:
            parse_filter_spec({"emotions": "joy", "bogus": 1})
        
        assert len(exc_info.value.validation_errors) == 2
    
    def test_drops_none_and_normalizes_tuples(self):
        """None predicates are dropped and tuple ranges become lists."""
        spec = parse_filter_spec({"intensity": (0.1, 0.5), "tones": None})
        
        assert spec.predicates == {"intensity": [0.1, 0.5]}
    
    def test_filter_spec_passes_through(self):
        """An existing FilterSpec is returned unchanged."""
        spec = FilterSpec({"emotions": ["joy"]})
        
        assert parse_filter_spec(spec) is spec


class TestHashFilters:
    """Tests for filter hashing."""
    
    def test_key_order_does_not_matter(self):
        """Equal filters hash equally regardless of key order."""
        a = {"emotions": ["joy"], "topN": 10, "intensity": [0.1, 1]}
        b = {"intensity": [0.1, 1], "topN": 10, "emotions": ["joy"]}
        
        assert hash_filters(a) == hash_filters(b)
    
    def test_value_changes_change_hash(self):
        """Different predicate values produce different hashes."""
        assert hash_filters({"emotions": ["joy"]}) != hash_filters({"emotions": ["anger"]})
    
    def test_hash_is_sha256_of_canonical_json(self):
        """The hash is the SHA-256 hex digest of compact, key-sorted JSON."""
        filters = {"topN": 5, "emotions": ["joy"]}
        
        assert canonical_json(filters) == '{"emotions":["joy"],"topN":5}'
        assert hash_filters(filters) == compute_filter_hash(filters)
        assert len(hash_filters(filters)) == 64
    
    def test_none_predicates_do_not_affect_hash(self):
        """Dropping None predicates keeps the fingerprint stable."""
        assert hash_filters({"emotions": ["joy"], "tones": None}) == hash_filters({"emotions": ["joy"]})
    
    def test_filter_spec_round_trips_through_json(self):
        """A stored FilterSpec reloads with the same hash."""
        spec = parse_filter_spec({"emotions": ["joy"], "agreement": [0.5, 1.0]})
        
        reloaded = FilterSpec.from_json(spec.canonical_json())
        
        assert reloaded.filter_hash == spec.filter_hash


class TestVersionLabel:
    """Tests for snapshot version labels."""
    
    def test_colons_and_dots_replaced(self):
        """Labels are ISO timestamps with ':' and '.' replaced by '-'."""
        at = datetime(2026, 10, 19, 8, 30, 5, 123456, tzinfo=timezone.utc)
        
        assert version_label(at) == "2026-10-19T08-30-05-123Z"
